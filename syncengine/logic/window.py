"""Resolve the date window a sync run covers."""

from __future__ import annotations

import logging
from datetime import date, timedelta

from syncengine.errors import InvalidSyncWindowError
from syncengine.ingest.models import ConnectionState, SyncWindow
from syncengine.utils.dates import parse_iso_date

logger = logging.getLogger(__name__)

MODE_EXPLICIT = "explicit"
MODE_INCREMENTAL = "incremental"
MODE_BACKFILL = "backfill"
MODES = (MODE_EXPLICIT, MODE_INCREMENTAL, MODE_BACKFILL)


def _parse(value: str | date, label: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError) as exc:
        raise InvalidSyncWindowError(f"{label} must be a YYYY-MM-DD date, got {value!r}") from exc


def explicit_window(date_from: str | date | None, date_to: str | date | None, *, max_days: int) -> SyncWindow:
    if not date_from or not date_to:
        raise InvalidSyncWindowError("Explicit range needs both dateFrom and dateTo")
    start = _parse(date_from, "dateFrom")
    end = _parse(date_to, "dateTo")
    if start > end:
        raise InvalidSyncWindowError(f"dateFrom {start} is after dateTo {end}")
    span = (end - start).days + 1
    if span > max_days:
        raise InvalidSyncWindowError(f"Range of {span} days exceeds the {max_days}-day limit")
    # Manual ranges never move the cursor.
    return SyncWindow(start=start, end=end, mode=MODE_EXPLICIT, next_state={})


def incremental_window(state: ConnectionState, today: date, *, lookback_days: int) -> SyncWindow:
    start = today - timedelta(days=lookback_days)
    if state.sync_start_date and state.sync_start_date > start:
        start = state.sync_start_date
    start = min(start, today)
    return SyncWindow(start=start, end=today, mode=MODE_INCREMENTAL, next_state={"last_sync_day": today.isoformat()})


def backfill_window(state: ConnectionState, today: date, *, lookback_days: int) -> SyncWindow:
    """One calendar day per run, starting at the anchor and advancing on success."""
    cursor = state.backfill_cursor or state.backfill_since
    if cursor is None or cursor >= today:
        logger.info("Backfill finished or absent (cursor %s, today %s); running incremental", cursor, today)
        window = incremental_window(state, today, lookback_days=lookback_days)
        window.next_state.update({"backfill_cursor": None, "backfill_since": None})
        return window
    following = cursor + timedelta(days=1)
    if following >= today:
        next_state = {"backfill_cursor": None, "backfill_since": None, "last_sync_day": cursor.isoformat()}
    else:
        next_state = {"backfill_cursor": following.isoformat(), "last_sync_day": cursor.isoformat()}
    return SyncWindow(start=cursor, end=cursor, mode=MODE_BACKFILL, next_state=next_state)


def resolve_window(
    state: ConnectionState,
    *,
    today: date,
    mode: str | None = None,
    date_from: str | date | None = None,
    date_to: str | date | None = None,
    lookback_days: int = 3,
    max_range_days: int = 90,
) -> SyncWindow:
    if mode is not None and mode not in MODES:
        raise InvalidSyncWindowError(f"Unknown sync mode {mode!r}")
    if mode == MODE_EXPLICIT or (mode is None and (date_from or date_to)):
        return explicit_window(date_from, date_to, max_days=max_range_days)
    if mode == MODE_BACKFILL or (mode is None and state.in_backfill):
        return backfill_window(state, today, lookback_days=lookback_days)
    return incremental_window(state, today, lookback_days=lookback_days)
