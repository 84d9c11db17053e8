"""Merge Google Ads metric and conversion-action reports into daily rows."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Any, Iterable, Mapping

from syncengine.errors import RecordTransformError
from syncengine.ingest.models import AdsPerformanceRow

logger = logging.getLogger(__name__)

MergeKey = tuple[str, str, str, str, str]


def merge_key(record: Mapping[str, Any]) -> MergeKey:
    return (
        str(record["date"]),
        str(record["campaign_id"]),
        str(record["ad_group_id"]),
        str(record["country_criterion_id"]),
        str(record["location_type"]),
    )


def merge_reports(
    metrics: Iterable[Mapping[str, Any]],
    actions: Iterable[Mapping[str, Any]],
    *,
    customer_id: str,
    country_codes: Mapping[str, str] | None = None,
) -> list[AdsPerformanceRow]:
    """Join the two reports on (date, campaign, ad group, country, location type).

    The metrics report is authoritative for impressions, clicks, cost and
    conversion totals. The conversion-action report contributes the
    per-action breakdown; keys it has that the metrics report lacks become
    rows with zero delivery metrics.
    """
    country_codes = country_codes or {}
    merged: dict[MergeKey, dict[str, Any]] = {}
    for record in metrics:
        key = merge_key(record)
        row = merged.get(key)
        if row is None:
            merged[key] = dict(record)
            continue
        # The same key can repeat across stream batches; add the metrics up.
        for field in ("impressions", "clicks", "cost_micros", "conversions", "conversions_value"):
            row[field] = (row.get(field) or 0) + (record.get(field) or 0)

    breakdown: dict[MergeKey, dict[str, list[float]]] = defaultdict(dict)
    for record in actions:
        action = record.get("conversion_action_id")
        if not action:
            continue
        key = merge_key(record)
        totals = breakdown[key].setdefault(action, [0.0, 0.0])
        totals[0] += float(record.get("conversions") or 0)
        totals[1] += float(record.get("conversions_value") or 0)
        if key not in merged:
            merged[key] = {
                **record,
                "impressions": 0,
                "clicks": 0,
                "cost_micros": 0,
                "conversions": 0.0,
                "conversions_value": 0.0,
                "from_actions_only": True,
            }

    rows: list[AdsPerformanceRow] = []
    for key, record in merged.items():
        actions_for_key = breakdown.get(key, {})
        if record.pop("from_actions_only", False):
            record["conversions"] = sum(values[0] for values in actions_for_key.values())
            record["conversions_value"] = sum(values[1] for values in actions_for_key.values())
        top_action = None
        if actions_for_key:
            top_action = max(sorted(actions_for_key), key=lambda action: actions_for_key[action][0])
        try:
            rows.append(
                AdsPerformanceRow(
                    customer_id=str(record.get("customer_id") or customer_id),
                    date=date.fromisoformat(key[0]),
                    campaign_id=key[1],
                    campaign_name=record.get("campaign_name"),
                    ad_group_id=key[2],
                    ad_group_name=record.get("ad_group_name"),
                    country_criterion_id=key[3],
                    location_type=key[4],
                    country_code=country_codes.get(key[3]),
                    impressions=int(record.get("impressions") or 0),
                    clicks=int(record.get("clicks") or 0),
                    cost_micros=int(record.get("cost_micros") or 0),
                    conversions=float(record.get("conversions") or 0),
                    conversions_value=float(record.get("conversions_value") or 0),
                    conversion_action_id=top_action,
                    conversion_actions={action: round(values[0], 6) for action, values in sorted(actions_for_key.items())},
                )
            )
        except ValueError as exc:
            logger.warning("Skipping Google Ads row %s", RecordTransformError("/".join(key), str(exc)))
    rows.sort(key=lambda row: (row.date, row.campaign_id, row.ad_group_id, row.country_criterion_id, row.location_type))
    return rows
