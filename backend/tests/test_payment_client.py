import asyncio
from decimal import Decimal

from coursebilling.core.config import GatewayConfig
from coursebilling.db.models import PaymentType
from coursebilling.integrations.payment_client import (
    BasePaymentProvider,
    ChargeApproved,
    PaymentClient,
    TokenizeFailure,
)


class SlowProvider(BasePaymentProvider):
    """Answers after `delay` seconds, as a gateway that needed a retry would."""

    provider_name = "card"

    def __init__(self, delay: float, **kwargs):
        super().__init__(base_url="https://gateway.test", secret_key="sk_test", **kwargs)
        self.delay = delay

    async def initialize(self) -> None:
        pass

    async def cleanup(self) -> None:
        pass

    async def charge(self, user_id, amount, currency, payment_token, reference):
        await asyncio.sleep(self.delay)
        return ChargeApproved(gateway_reference=f"gw_{reference}", provider=self.provider_name)

    async def tokenize_instrument(self, payment_type, raw_details):
        return TokenizeFailure("unsupported", "test provider")


def test_call_budget_covers_every_attempt_and_backoff():
    provider = SlowProvider(0, timeout_seconds=30, max_retries=3)

    # 3 attempts of 30s, then 1s and 2s between them
    assert provider.call_budget == 93


def test_budget_comes_from_the_provider_unless_set():
    provider = SlowProvider(0, timeout_seconds=30, max_retries=3)

    assert PaymentClient(provider, provider).budget_for(provider) == 93
    assert PaymentClient(provider, provider, timeout_seconds=5).budget_for(provider) == 5


def test_from_config_derives_the_budget():
    client = PaymentClient.from_config(GatewayConfig(request_timeout_seconds=10, max_retries=2))

    assert client.timeout_seconds is None
    assert client.budget_for(client.card_provider) == 21


async def test_charge_outlasting_one_attempt_still_settles():
    provider = SlowProvider(0.1, timeout_seconds=0.05, max_retries=3)
    client = PaymentClient(provider, provider)

    outcome = await client.charge(1, Decimal("9.99"), None, "tok_1", PaymentType.CREDIT_CARD, "ref_slow")

    assert outcome.ok
    assert outcome.gateway_reference == "gw_ref_slow"


async def test_explicit_timeout_still_bounds_the_call():
    provider = SlowProvider(0.1, timeout_seconds=0.05, max_retries=3)
    client = PaymentClient(provider, provider, timeout_seconds=0.05)

    outcome = await client.charge(1, Decimal("9.99"), None, "tok_1", PaymentType.CREDIT_CARD, "ref_slow")

    assert not outcome.ok
    assert outcome.reason_code == "timeout"
    assert outcome.retryable
