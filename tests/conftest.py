import json

import pytest
from sqlalchemy import Boolean, Column, Date, Integer, JSON, MetaData, Numeric, Table, Text, UniqueConstraint, create_engine
from sqlalchemy.pool import StaticPool

from syncengine.config import EngineConfig
from syncengine.db.repository import Repository
from syncengine.utils.dates import to_utc_iso, utcnow
from syncengine.utils.vault import CredentialVault

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
OTHER_KEY = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"

metadata = MetaData()

connections = Table(
    "connections",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Text, nullable=False),
    Column("source", Text, nullable=False),
    Column("status", Text, nullable=False, default="disconnected"),
    Column("access_token_enc", Text),
    Column("refresh_token_enc", Text),
    Column("expires_at", Text),
    Column("meta", JSON, nullable=False, default={}),
    Column("state_version", Integer, nullable=False, default=0),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
    UniqueConstraint("tenant_id", "source"),
)

shopify_orders = Table(
    "shopify_orders",
    metadata,
    Column("tenant_id", Text, primary_key=True),
    Column("order_id", Text, primary_key=True),
    Column("name", Text),
    Column("created_at", Text, nullable=False),
    Column("processed_at", Text),
    Column("cancelled_at", Text),
    Column("order_date", Date, nullable=False),
    Column("financial_status", Text),
    Column("is_test", Boolean, nullable=False, default=False),
    Column("currency", Text),
    Column("customer_id", Text),
    Column("customer_type", Text, nullable=False, default="GUEST"),
    Column("is_first_order", Boolean, nullable=False, default=False),
    Column("gross_cents", Integer, nullable=False, default=0),
    Column("discounts_cents", Integer, nullable=False, default=0),
    Column("returns_cents", Integer, nullable=False, default=0),
    Column("net_cents", Integer, nullable=False, default=0),
    Column("tax_cents", Integer),
    Column("shipping_cents", Integer),
    Column("revenue_cents", Integer, nullable=False, default=0),
    Column("counted", Boolean, nullable=False, default=False),
    Column("raw", JSON),
    Column("synced_at", Text, nullable=False),
)

shopify_refunds = Table(
    "shopify_refunds",
    metadata,
    Column("tenant_id", Text, primary_key=True),
    Column("order_id", Text, primary_key=True),
    Column("refund_id", Text, primary_key=True),
    Column("refund_date", Date, nullable=False),
    Column("returns_cents", Integer, nullable=False, default=0),
    Column("synced_at", Text, nullable=False),
)

customer_ledger = Table(
    "customer_ledger",
    metadata,
    Column("tenant_id", Text, primary_key=True),
    Column("customer_id", Text, primary_key=True),
    Column("first_order_at", Text, nullable=False),
    Column("first_order_id", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

google_ads_daily = Table(
    "google_ads_daily",
    metadata,
    Column("tenant_id", Text, primary_key=True),
    Column("customer_id", Text, primary_key=True),
    Column("date", Date, primary_key=True),
    Column("campaign_id", Text, primary_key=True),
    Column("campaign_name", Text),
    Column("ad_group_id", Text, primary_key=True),
    Column("ad_group_name", Text),
    Column("country_criterion_id", Text, primary_key=True),
    Column("location_type", Text, primary_key=True),
    Column("country_code", Text),
    Column("impressions", Integer, nullable=False, default=0),
    Column("clicks", Integer, nullable=False, default=0),
    Column("cost_micros", Integer, nullable=False, default=0),
    Column("conversions", Numeric, nullable=False, default=0),
    Column("conversions_value", Numeric, nullable=False, default=0),
    Column("conversion_action_id", Text),
    Column("conversion_actions", JSON),
    Column("synced_at", Text, nullable=False),
)

kpi_daily = Table(
    "kpi_daily",
    metadata,
    Column("tenant_id", Text, primary_key=True),
    Column("date", Date, primary_key=True),
    Column("source", Text, primary_key=True),
    Column("spend", Numeric),
    Column("clicks", Integer),
    Column("conversions", Numeric),
    Column("revenue", Numeric),
    Column("gross_sales", Numeric),
    Column("net_sales", Numeric),
    Column("aov", Numeric),
    Column("cos", Numeric),
    Column("roas", Numeric),
)

shopify_daily_sales = Table(
    "shopify_daily_sales",
    metadata,
    Column("tenant_id", Text, primary_key=True),
    Column("date", Date, primary_key=True),
    Column("gross_cents", Integer, nullable=False, default=0),
    Column("discounts_cents", Integer, nullable=False, default=0),
    Column("returns_cents", Integer, nullable=False, default=0),
    Column("net_cents", Integer, nullable=False, default=0),
    Column("tax_cents", Integer, nullable=False, default=0),
    Column("shipping_cents", Integer, nullable=False, default=0),
    Column("orders_count", Integer, nullable=False, default=0),
    Column("new_customer_orders", Integer, nullable=False, default=0),
    Column("new_customer_net_sales_cents", Integer, nullable=False, default=0),
    Column("returning_customer_net_sales_cents", Integer, nullable=False, default=0),
    Column("guest_net_sales_cents", Integer, nullable=False, default=0),
    Column("currency", Text),
)

jobs_log = Table(
    "jobs_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Text, nullable=False),
    Column("source", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("started_at", Text, nullable=False),
    Column("finished_at", Text),
    Column("error", Text),
    Column("details", JSON),
)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def repository(engine):
    return Repository(engine)


@pytest.fixture()
def vault():
    return CredentialVault(TEST_KEY)


@pytest.fixture()
def other_vault():
    return CredentialVault(OTHER_KEY)


@pytest.fixture()
def config():
    return EngineConfig.from_env(
        {
            "DATABASE_URL": "sqlite:///:memory:",
            "ENCRYPTION_KEY": TEST_KEY,
            "GOOGLE_DEVELOPER_TOKEN": "dev-token",
            "GOOGLE_CLIENT_ID": "client-id",
            "GOOGLE_CLIENT_SECRET": "client-secret",
            "RETRY_BASE_DELAY": "0",
            "SYNC_API_TOKEN": "secret-token",
        },
        dotenv=False,
    )


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def no_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture()
def add_connection(engine, vault):
    def _add(
        tenant_id,
        source,
        *,
        meta=None,
        access_token="token",
        refresh_token=None,
        expires_at=None,
        status="connected",
        sealer=None,
    ):
        sealer = sealer or vault
        now = to_utc_iso(utcnow())
        with engine.begin() as conn:
            conn.execute(
                connections.insert(),
                {
                    "tenant_id": tenant_id,
                    "source": source,
                    "status": status,
                    "access_token_enc": sealer.encrypt_text(access_token) if access_token else None,
                    "refresh_token_enc": sealer.encrypt_text(refresh_token) if refresh_token else None,
                    "expires_at": expires_at,
                    "meta": meta or {},
                    "state_version": 0,
                    "created_at": now,
                    "updated_at": now,
                },
            )

    return _add


@pytest.fixture()
def load_meta(engine):
    def _load(tenant_id, source):
        with engine.connect() as conn:
            row = conn.execute(
                connections.select().where(connections.c.tenant_id == tenant_id, connections.c.source == source)
            ).mappings().one()
        meta = row["meta"]
        return (json.loads(meta) if isinstance(meta, str) else meta), row["state_version"]

    return _load
