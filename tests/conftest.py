# tests/conftest.py
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="kosan-payments-tests-")
os.environ.setdefault("DATABASE_URL", "sqlite:///" +
                      os.path.join(_DB_DIR, "test.sqlite3"))
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("AUDIT_HMAC_SECRET", "test-audit-secret")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "1")

import pytest  # noqa: E402
from datetime import timedelta  # noqa: E402
from app import create_app  # noqa: E402
from models.base import Base, init_engine_and_session  # noqa: E402
from models.tenants_store import create_property, create_room, create_tenant  # noqa: E402
from services.datetimex import now_utc  # noqa: E402
from services.notifications import Notifier, install_notifier  # noqa: E402
from services.payments.manual_gateway import ManualGateway  # noqa: E402
from services.payments.midtrans_gateway import MidtransGateway  # noqa: E402
from services.payments.orchestrator import PaymentOrchestrator  # noqa: E402
from services.payments.registry import install_gateways  # noqa: E402
from services.payments.status import PaymentMethod  # noqa: E402
from services.payments.stripe_gateway import StripeGateway  # noqa: E402
from tests.utils import (  # noqa: E402
    API_TOKENS, MIDTRANS_KEY, STRIPE_WHSEC,
    FakeMidtransSession, FakeStripeClient, RecordingChannel,
)


@pytest.fixture(scope="session")
def app():
    return create_app({"TESTING": True, "API_TOKENS": API_TOKENS})


@pytest.fixture(scope="session")
def db_engine():
    engine, _Session = init_engine_and_session()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(autouse=True)
def _db_clean(db_engine):
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture()
def midtrans_http():
    return FakeMidtransSession()


@pytest.fixture()
def stripe_client():
    return FakeStripeClient()


@pytest.fixture()
def channel():
    return RecordingChannel()


@pytest.fixture()
def gateways(app, midtrans_http, stripe_client, channel):
    gws = {
        PaymentMethod.MANUAL: ManualGateway(),
        PaymentMethod.MIDTRANS: MidtransGateway(MIDTRANS_KEY, session=midtrans_http),
        PaymentMethod.STRIPE: StripeGateway("sk_test_dummy", webhook_secret=STRIPE_WHSEC,
                                            client=stripe_client),
    }
    install_gateways(app, gws)
    install_notifier(app, Notifier(channel))
    return gws


@pytest.fixture()
def orch(gateways, channel):
    return PaymentOrchestrator(gateways, Notifier(channel), orphan_ttl=timedelta(hours=24))


@pytest.fixture()
def client(app, gateways):
    return app.test_client()


@pytest.fixture()
def house():
    """One property owned by 'owner' with a room and an active tenant."""
    pid = create_property("owner", "Kos Mawar", "Jl. Mawar 5")
    rid = create_room(pid, "101", 1500000)
    tid = create_tenant(rid, "Budi", "budi@example.com", "081234567890")
    return {"property_id": pid, "room_id": rid, "tenant_id": tid}


@pytest.fixture()
def tomorrow():
    return now_utc() + timedelta(days=1)
