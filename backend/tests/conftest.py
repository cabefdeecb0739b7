"""
Shared fixtures: in-memory ledger, scripted gateway and recording sinks.
"""

import json
from collections import deque
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest

from coursebilling.container import build_container
from coursebilling.core.config import (
    BillingConfig,
    Config,
    DatabaseConfig,
    SecurityConfig,
    WebhookConfig,
)
from coursebilling.core.security import sign_payload
from coursebilling.db import create_db_engine
from coursebilling.db.models import PaymentType
from coursebilling.integrations.payment_client import (
    BasePaymentProvider,
    ChargeApproved,
    ChargeDeclined,
    InstrumentCreated,
    InstrumentFailure,
    PaymentClient,
    TokenizeFailure,
    TokenizeSuccess,
)
from coursebilling.services.analytics import AnalyticsSink
from coursebilling.services.notifications import NotificationKind, NotificationSink

WEBHOOK_SECRET = "whsec_test_shared_secret"


class ScriptedProvider(BasePaymentProvider):
    """Gateway double: approves by default, declines on demand, never touches the network."""

    def __init__(self, provider_name: str, reference_prefix: str, currency: str):
        super().__init__(base_url="https://gateway.test", secret_key="sk_test", currency=currency)
        self.provider_name = provider_name
        self.reference_prefix = reference_prefix
        self.outcomes = deque()
        self.decline_all: Optional[str] = None
        self.charges: List[Dict[str, Any]] = []

    async def initialize(self) -> None:
        pass

    async def cleanup(self) -> None:
        pass

    def decline_next(self, reason_code: str = "card_declined", retryable: bool = False) -> None:
        self.outcomes.append(ChargeDeclined(reason_code, "Declined by issuer", self.provider_name, retryable))

    async def charge(self, user_id, amount, currency, payment_token, reference):
        self.charges.append({
            "user_id": user_id,
            "amount": amount,
            "currency": currency,
            "token": payment_token,
            "reference": reference,
        })
        if self.outcomes:
            return self.outcomes.popleft()
        if self.decline_all:
            return ChargeDeclined(self.decline_all, "Declined by issuer", self.provider_name)
        return ChargeApproved(gateway_reference=f"gw_{reference}", provider=self.provider_name)

    async def tokenize_instrument(self, payment_type, raw_details):
        if raw_details.get("reject"):
            return TokenizeFailure("invalid_card", "Card number failed validation")
        number = str(raw_details.get("number", "4242424242424242"))
        return TokenizeSuccess(
            token=f"tok_{number[-4:]}_{len(self.charges)}",
            last_four=number[-4:],
            brand=raw_details.get("brand", "visa"),
            expiry_month=raw_details.get("exp_month"),
            expiry_year=raw_details.get("exp_year"),
        )

    async def create_alternative_instrument(self, kind, params, reference=None):
        if params.get("reject"):
            return InstrumentFailure("channel_unavailable", "Channel is not available")
        return InstrumentCreated(kind, {"account_number": "8808000123", "amount": str(params["amount"])}, "va_1")


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.sent: List[Tuple[int, NotificationKind, Dict[str, Any]]] = []

    def _deliver(self, user_id, kind, payload):
        self.sent.append((user_id, kind, payload))

    def kinds(self) -> List[NotificationKind]:
        return [kind for _, kind, _ in self.sent]


class RecordingAnalytics(AnalyticsSink):
    def __init__(self):
        self.events: List[Tuple[str, Dict[str, str]]] = []

    def _emit(self, name, properties):
        self.events.append((name, properties))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


@pytest.fixture
def config() -> Config:
    return Config(
        environment="testing",
        database=DatabaseConfig(url="sqlite://"),
        security=SecurityConfig(secret_key="test-secret-key-that-is-long-enough-32"),
        billing=BillingConfig(scheduler_enabled=False, renewal_concurrency=3),
        webhook=WebhookConfig(secret=WEBHOOK_SECRET),
    )


@pytest.fixture
def card_provider() -> ScriptedProvider:
    return ScriptedProvider("card", "TXN", "USD")


@pytest.fixture
def regional_provider() -> ScriptedProvider:
    return ScriptedProvider("regional", "XND", "IDR")


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def analytics() -> RecordingAnalytics:
    return RecordingAnalytics()


@pytest.fixture
def container(config, card_provider, regional_provider, notifier, analytics):
    gateway = PaymentClient(card_provider, regional_provider, timeout_seconds=5)
    container = build_container(
        config,
        engine=create_db_engine(config.database),
        gateway=gateway,
        notifier=notifier,
        analytics=analytics,
    )
    container.store.create_all()
    yield container
    container.store.dispose()


@pytest.fixture
def store(container):
    return container.store


@pytest.fixture
def user_id(store) -> int:
    with store.unit_of_work() as uow:
        return uow.users.create(email="ada@example.com", name="Ada Lovelace").id


@pytest.fixture
def other_user_id(store) -> int:
    with store.unit_of_work() as uow:
        return uow.users.create(email="grace@example.com", name="Grace Hopper").id


@pytest.fixture
def course_id(store) -> int:
    with store.unit_of_work() as uow:
        return uow.courses.create(title="Distributed Systems", price=Decimal("49.99")).id


@pytest.fixture
def second_course_id(store) -> int:
    with store.unit_of_work() as uow:
        return uow.courses.create(title="Compilers", price=Decimal("29.99")).id


@pytest.fixture
def card_method_id(container, user_id) -> int:
    """A stored Visa card, made the user's default."""
    with container.store.unit_of_work() as uow:
        method = uow.payment_methods.create(
            user_id=user_id,
            type=PaymentType.CREDIT_CARD,
            last_four_digits="4242",
            expiry_month=12,
            expiry_year=2030,
            card_brand="visa",
            is_default=True,
            encrypted_token=container.payments.encryption.encrypt("tok_visa"),
        )
        return method.id


@pytest.fixture
def sign():
    """Serialize a webhook payload and compute its signature header value."""
    def _sign(payload: Dict[str, Any], secret: str = WEBHOOK_SECRET) -> Tuple[str, str]:
        body = json.dumps(payload)
        return body, sign_payload(secret, body)
    return _sign
