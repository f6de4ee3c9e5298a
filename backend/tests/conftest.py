"""Shared pytest fixtures for test suite"""
import itertools
import json
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest
import stripe as real_stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read once at import; pin them before the app loads
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ALLOWED_GUILD_ID"] = "111"
os.environ["GATEWAY_SHARED_SECRET"] = "test-gateway-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_dummy"
os.environ["REFUND_APPROVER_USER_ID"] = ""
os.environ["TICKET_PANEL_CHANNEL_ID"] = ""

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from storefront.main import app
from storefront.core.errors import ChatPlatformError
from storefront.db.session import get_db
from storefront.models import Base
from storefront.models.purchase import Purchase
from storefront.services import catalog_service
from storefront.services.chat_platform import GUILD_TEXT, ChatPlatform, get_chat_platform
from storefront.services.config_service import config_store
from storefront.services.cooldown import checkout_cooldown

GUILD_ID = "111"
ADMIN_ID = "500"
BUYER_ID = "700"
OTHER_ID = "701"
GATEWAY_HEADERS = {"X-Gateway-Token": "test-gateway-secret"}

# Fixed clock for services that accept ``now``
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite needs these for SAVEPOINT (begin_nested) to work
@event.listens_for(test_engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(test_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeChatPlatform(ChatPlatform):
    """In-memory chat platform; add an action name to ``fail`` to make it raise"""

    def __init__(self):
        self.channels = {}
        self.messages = []
        self.dms = []
        self.roles = set()
        self.deleted = []
        self.fail = set()
        self._ids = itertools.count(1000)

    def _next_id(self) -> str:
        return str(next(self._ids))

    def _maybe_fail(self, action: str) -> None:
        if action in self.fail:
            raise ChatPlatformError(f"{action} failed")

    @property
    def bot_user_id(self) -> str:
        return "999"

    def channel_exists(self, channel_id):
        return channel_id in self.channels

    def find_channel(self, guild_id, name, channel_type=GUILD_TEXT):
        for channel_id, channel in self.channels.items():
            if channel["guild_id"] == guild_id and channel["name"] == name and channel["type"] == channel_type:
                return channel_id
        return None

    def create_channel(self, guild_id, name, overwrites, parent_id=None, channel_type=GUILD_TEXT):
        self._maybe_fail("create_channel")
        channel_id = self._next_id()
        self.channels[channel_id] = {
            "guild_id": guild_id,
            "name": name,
            "type": channel_type,
            "parent_id": parent_id,
            "overwrites": [o.to_payload() for o in overwrites],
        }
        return channel_id

    def delete_channel(self, channel_id, reason=None):
        self._maybe_fail("delete_channel")
        self.channels.pop(channel_id, None)
        self.deleted.append(channel_id)

    def send_message(self, channel_id, payload):
        self._maybe_fail("send_message")
        message_id = self._next_id()
        self.messages.append({"channel_id": channel_id, "message_id": message_id, "payload": payload})
        return message_id

    def edit_message(self, channel_id, message_id, payload):
        self._maybe_fail("edit_message")
        for message in self.messages:
            if message["channel_id"] == channel_id and message["message_id"] == message_id:
                message["payload"] = payload
                return True
        return False

    def send_dm(self, user_id, payload):
        self._maybe_fail("send_dm")
        self.dms.append((user_id, payload))
        return self._next_id()

    def add_role(self, guild_id, user_id, role_id, reason=None):
        self._maybe_fail("add_role")
        self.roles.add((guild_id, user_id, role_id))

    def remove_role(self, guild_id, user_id, role_id, reason=None):
        self._maybe_fail("remove_role")
        self.roles.discard((guild_id, user_id, role_id))

    # Test helpers
    def payloads_in(self, channel_id):
        return [m["payload"] for m in self.messages if m["channel_id"] == channel_id]

    def channel_named(self, name):
        return next((cid for cid, c in self.channels.items() if c["name"] == name), None)


def embed_titles(payloads):
    return [p["embeds"][0]["title"] for p in payloads if p.get("embeds")]


def make_event(event_type: str, obj: dict, event_id: str = None) -> bytes:
    """Serialized webhook delivery; the mocked verifier parses it back"""
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "data": {"object": obj},
    }).encode()


def session_object(purchase: Purchase, session_id: str = None, **extra) -> dict:
    """A checkout.session.completed object carrying the purchase's metadata"""
    metadata = {
        "purchase_id": purchase.purchase_id,
        "guild_id": purchase.guild_id,
        "user_id": purchase.user_id,
        "type": purchase.kind,
    }
    for key in ("product_id", "product_name", "plan_key", "role_id", "amount_minor", "currency", "reference_code"):
        value = getattr(purchase, key)
        if value is not None:
            metadata[key] = str(value)
    obj = {
        "id": session_id or purchase.stripe_session_id,
        "metadata": metadata,
        "payment_intent": None,
        "subscription": None,
    }
    obj.update(extra)
    return obj


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(autouse=True)
def clear_caches():
    """Config cache and cooldowns are process-wide"""
    config_store.cache.clear()
    checkout_cooldown.cache.clear()
    yield
    config_store.cache.clear()
    checkout_cooldown.cache.clear()


@pytest.fixture(autouse=True)
def mock_stripe():
    """Replace the Stripe SDK in stripe_service; error classes stay real"""
    session_ids = itertools.count(1)

    def create_session(**params):
        n = next(session_ids)
        return {"id": f"cs_test_{n}", "url": f"https://checkout.stripe.com/c/pay/cs_test_{n}"}

    with patch("storefront.services.stripe_service.stripe") as stripe_mock:
        stripe_mock.StripeError = real_stripe.StripeError
        stripe_mock.SignatureVerificationError = real_stripe.SignatureVerificationError
        stripe_mock.checkout.Session.create.side_effect = create_session
        stripe_mock.Webhook.construct_event.side_effect = lambda payload, sig, secret: json.loads(payload)
        stripe_mock.Refund.create.return_value = {"id": "re_test_1"}
        stripe_mock.Subscription.retrieve.return_value = {
            "id": "sub_test_1",
            "status": "active",
            "cancel_at_period_end": False,
            "current_period_end": 1775000000,
        }
        stripe_mock.Subscription.modify.return_value = {
            "id": "sub_test_1",
            "status": "active",
            "cancel_at_period_end": True,
            "current_period_end": 1775000000,
        }
        yield stripe_mock


@pytest.fixture(scope="function")
def platform() -> FakeChatPlatform:
    return FakeChatPlatform()


@pytest.fixture(scope="function")
def client(db_session: Session, platform: FakeChatPlatform) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and the fake chat platform"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chat_platform] = lambda: platform

    try:
        # Disable OpenTelemetry and schema creation on the real engine
        with patch("storefront.main.initialize_otel", return_value=False):
            with patch("storefront.main.init_db"):
                with patch("storefront.main.instrument_sqlalchemy"):
                    with patch("storefront.main.get_chat_platform", return_value=platform):
                        with TestClient(app) as test_client:
                            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture
def admin():
    return {"user_id": ADMIN_ID, "is_admin": True, "role_ids": []}


@pytest.fixture
def buyer():
    return {"user_id": BUYER_ID, "is_admin": False, "role_ids": []}


@pytest.fixture
def product(db_session: Session):
    """Product with one-time, monthly and lifetime plans (annual disabled)"""
    return catalog_service.add_product(
        db_session, GUILD_ID, "Windows Tweaks Pack", "FPS and latency tweaks", "800",
        {"one_time": "9.99", "monthly": "4.99", "lifetime": "29.99"},
    )


@pytest.fixture
def make_purchase(db_session: Session):
    """Factory for purchase rows in any status"""
    counter = itertools.count(1)

    def _make(product=None, user_id=BUYER_ID, plan_key="one_time", status="paid", paid_at=NOW,
              kind="product", subscription_id=None, payment_intent_id="pi_test_1", **extra):
        n = next(counter)
        purchase = Purchase(
            purchase_id=f"VT-TEST-{n:05d}",
            stripe_session_id=f"cs_fixture_{n}",
            guild_id=GUILD_ID,
            user_id=user_id,
            kind=kind,
            product_id=product.id if product is not None else None,
            product_name=product.name if product is not None else None,
            plan_key=plan_key if kind == "product" else None,
            role_id=product.role_id if product is not None else None,
            amount_minor=(product.prices.get(plan_key) if product is not None else 500) or 500,
            currency="gbp",
            status=status,
            stripe_payment_intent_id=payment_intent_id if status != "created" else None,
            stripe_subscription_id=subscription_id,
            paid_at=paid_at if status != "created" else None,
            **extra,
        )
        db_session.add(purchase)
        db_session.commit()
        db_session.refresh(purchase)
        return purchase

    return _make
