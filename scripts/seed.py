"""Seed a development tenant with Shopify and Google Ads connections."""

from __future__ import annotations

import json
import os

from dotenv import load_dotenv
from sqlalchemy import text

from syncengine.config import SOURCE_GOOGLE_ADS, SOURCE_SHOPIFY, EngineConfig
from syncengine.db.migrate import run_migrations
from syncengine.db.repository import json_param
from syncengine.db.session import create_engine_from_env
from syncengine.utils.dates import to_utc_iso, utcnow
from syncengine.utils.vault import CredentialVault

DEMO_TENANT = os.environ.get("SEED_TENANT_ID", "demo-tenant")

DEMO_CONNECTIONS = [
    {
        "source": SOURCE_SHOPIFY,
        "access_token": os.environ.get("SEED_SHOPIFY_TOKEN", "shpat_demo"),
        "refresh_token": None,
        "meta": {"shop_domain": "demo-shop.myshopify.com", "timezone": "Europe/Stockholm"},
    },
    {
        "source": SOURCE_GOOGLE_ADS,
        "access_token": os.environ.get("SEED_GOOGLE_ACCESS_TOKEN", "ya29.demo"),
        "refresh_token": os.environ.get("SEED_GOOGLE_REFRESH_TOKEN", "1//demo-refresh"),
        "meta": {"customer_id": "123-456-7890"},
    },
]


def main() -> None:
    load_dotenv()
    config = EngineConfig.from_env()
    vault = CredentialVault(config.encryption_key)
    engine = create_engine_from_env(config.database_url)
    run_migrations(engine)
    now = to_utc_iso(utcnow())
    with engine.begin() as conn:
        for connection in DEMO_CONNECTIONS:
            refresh = connection["refresh_token"]
            conn.execute(
                text(
                    f"""
                    INSERT INTO connections (
                        tenant_id, source, status, access_token_enc, refresh_token_enc, meta, created_at, updated_at
                    ) VALUES (
                        :tenant_id, :source, 'connected', :access, :refresh, {json_param(conn, "meta")}, :now, :now
                    )
                    ON CONFLICT (tenant_id, source) DO UPDATE SET
                      status = 'connected',
                      access_token_enc = EXCLUDED.access_token_enc,
                      refresh_token_enc = EXCLUDED.refresh_token_enc,
                      updated_at = EXCLUDED.updated_at
                    """
                ),
                {
                    "tenant_id": DEMO_TENANT,
                    "source": connection["source"],
                    "access": vault.encrypt_text(connection["access_token"], DEMO_TENANT),
                    "refresh": vault.encrypt_text(refresh, DEMO_TENANT) if refresh else None,
                    "meta": json.dumps(connection["meta"]),
                    "now": now,
                },
            )
    print(f"Seed complete for tenant {DEMO_TENANT} (key {vault.fingerprint})")


if __name__ == "__main__":
    main()
