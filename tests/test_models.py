from datetime import date

from syncengine.ingest.models import GoogleAdsConnectionState, ShopifyConnectionState


def test_legacy_keys_are_normalized():
    state = GoogleAdsConnectionState.model_validate(
        {"selected_customer_id": "123-456-7890", "login_customer_id": "999-000-1111", "last_synced_at": "2024-03-01T00:00:00Z"}
    )
    assert state.customer_id == "1234567890"
    assert state.login_customer_id == "9990001111"
    assert state.last_sync_at == "2024-03-01T00:00:00Z"


def test_shop_alias_and_dates():
    state = ShopifyConnectionState.model_validate({"shop": "demo.myshopify.com", "backfill_since": "2024-01-01", "backfill_cursor": ""})
    assert state.shop_domain == "demo.myshopify.com"
    assert state.backfill_since == date(2024, 1, 1)
    assert state.backfill_cursor is None
    assert state.in_backfill


def test_unknown_keys_survive_round_trip():
    state = ShopifyConnectionState.model_validate({"shop_domain": "a.myshopify.com", "plan": "plus"})
    meta = state.to_meta()
    assert meta["plan"] == "plus"
    assert meta["version"] == 1
