"""
Payment gateway client with two provider implementations.

Supports:
- Card network provider (cards and card-backed wallets)
- Regional multi-method provider (bank transfer, virtual accounts, e-wallets,
  retail outlet codes, QR codes)

Ordinary business failures (declines, invalid instruments, provider errors) are
returned as result values. Providers never touch the ledger.
"""

import asyncio
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import GatewayConfig
from ..core.constants import GatewayConstants, ReferenceConstants
from ..core.exceptions import GatewayError
from ..core.logging_config import get_logger
from ..db.models import PaymentType

logger = get_logger(__name__)


# ============ Result Models ============

@dataclass(frozen=True)
class ChargeApproved:
    gateway_reference: str
    provider: str
    raw_status: Optional[str] = None

    ok = True


@dataclass(frozen=True)
class ChargeDeclined:
    reason_code: str
    message: str = ""
    provider: Optional[str] = None
    retryable: bool = False

    ok = False

    def to_error(self) -> GatewayError:
        return GatewayError(
            message=self.message or f"Charge declined: {self.reason_code}",
            reason_code=self.reason_code,
            provider=self.provider,
            retryable=self.retryable,
        )


ChargeOutcome = Union[ChargeApproved, ChargeDeclined]


@dataclass(frozen=True)
class TokenizeSuccess:
    token: str
    last_four: Optional[str] = None
    brand: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None

    ok = True


@dataclass(frozen=True)
class TokenizeFailure:
    reason: str
    message: str = ""

    ok = False


TokenizeOutcome = Union[TokenizeSuccess, TokenizeFailure]


class InstrumentKind(str, Enum):
    """Non-card payment instruments."""
    VIRTUAL_ACCOUNT = "virtual_account"
    EWALLET = "ewallet"
    QR_CODE = "qr_code"
    RETAIL_OUTLET = "retail_outlet"


class EWalletType(str, Enum):
    OVO = "OVO"
    DANA = "DANA"
    LINKAJA = "LINKAJA"
    SHOPEEPAY = "SHOPEEPAY"
    GOPAY = "GOPAY"


class RetailOutletType(str, Enum):
    ALFAMART = "ALFAMART"
    INDOMARET = "INDOMARET"


@dataclass(frozen=True)
class InstrumentCreated:
    kind: InstrumentKind
    handle: Dict[str, Any] = field(default_factory=dict)
    provider_reference: Optional[str] = None

    ok = True


@dataclass(frozen=True)
class InstrumentFailure:
    reason: str
    message: str = ""

    ok = False


InstrumentOutcome = Union[InstrumentCreated, InstrumentFailure]


# ============ References ============

def generate_reference(prefix: str) -> str:
    """`<PREFIX>-<8 hex chars>-<unix millis>`; webhooks look transactions up by it."""
    random_part = secrets.token_hex(ReferenceConstants.RANDOM_PART_LENGTH // 2)
    millis = int(time.time() * 1000)
    return ReferenceConstants.SEPARATOR.join([prefix, random_part, str(millis)])


def refund_reference(original_reference: str) -> str:
    return f"{ReferenceConstants.REFUND_PREFIX}{ReferenceConstants.SEPARATOR}{original_reference}"


RETRY_WAIT_MAX_SECONDS = 10


def _utc_in(seconds: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


# ============ Abstract Base Class ============

class BasePaymentProvider(ABC):
    """Abstract base class for payment providers."""

    provider_name = "base"
    reference_prefix = ReferenceConstants.CARD_PREFIX

    def __init__(
        self,
        base_url: str = "",
        secret_key: Optional[str] = None,
        currency: str = "USD",
        timeout_seconds: float = GatewayConstants.DEFAULT_TIMEOUT,
        max_retries: int = GatewayConstants.DEFAULT_RETRY_ATTEMPTS,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.currency = currency
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.session: Optional[aiohttp.ClientSession] = None

    @property
    def configured(self) -> bool:
        return bool(self.secret_key and self.base_url)

    @property
    def call_budget(self) -> float:
        """Longest one call can take: every attempt timing out, plus the backoff between them."""
        backoff = sum(min(2 ** n, RETRY_WAIT_MAX_SECONDS) for n in range(self.max_retries - 1))
        return self.timeout_seconds * self.max_retries + backoff

    async def initialize(self) -> None:
        """Open the HTTP session. Unconfigured providers decline every call."""
        if self.session is not None:
            return
        if not self.configured:
            logger.warning(f"Payment provider {self.provider_name} is not configured")
            return
        self.session = aiohttp.ClientSession(
            headers=self._auth_headers(),
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
        )
        logger.info(f"Initialized payment provider: {self.provider_name}")

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    def new_reference(self) -> str:
        return generate_reference(self.reference_prefix)

    @abstractmethod
    async def charge(
        self,
        user_id: int,
        amount: Decimal,
        currency: str,
        payment_token: Optional[str],
        reference: str,
    ) -> ChargeOutcome:
        """Charge a stored instrument."""

    @abstractmethod
    async def tokenize_instrument(self, payment_type: PaymentType, raw_details: Dict[str, Any]) -> TokenizeOutcome:
        """Exchange raw instrument details for a gateway token."""

    async def create_alternative_instrument(
        self,
        kind: InstrumentKind,
        params: Dict[str, Any],
        reference: Optional[str] = None,
    ) -> InstrumentOutcome:
        return InstrumentFailure("unsupported_instrument", f"{self.provider_name} does not support {kind.value}")

    async def _request(self, method: str, path: str, **kwargs) -> Tuple[int, Dict[str, Any]]:
        """
        One HTTP round trip with transient-error retry.

        Only network errors and timeouts are retried; any HTTP response,
        including a decline, is returned to the caller as is.
        """
        if self.session is None:
            await self.initialize()
        if self.session is None:
            raise GatewayError(
                f"{self.provider_name} is not configured",
                reason_code="provider_not_configured",
                provider=self.provider_name,
            )

        url = f"{self.base_url}/{path.lstrip('/')}"
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=1, max=RETRY_WAIT_MAX_SECONDS),
            retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
            reraise=True,
        ):
            with attempt:
                async with self.session.request(method, url, **kwargs) as response:
                    data = await response.json(content_type=None)
                    return response.status, data or {}
        raise GatewayError("unreachable", provider=self.provider_name)

    def _declined_from_response(self, status: int, data: Dict[str, Any]) -> ChargeDeclined:
        error = data.get("error") if isinstance(data.get("error"), dict) else data
        return ChargeDeclined(
            reason_code=str(error.get("code") or error.get("error_code") or f"http_{status}").lower(),
            message=str(error.get("message") or f"HTTP {status}"),
            provider=self.provider_name,
            retryable=status >= 500 or status == 429,
        )

    async def _guarded_charge(self, call) -> ChargeOutcome:
        try:
            return await call()
        except GatewayError as e:
            return ChargeDeclined(e.reason_code, e.message, self.provider_name, e.retryable)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"{self.provider_name} charge failed after retries: {e}")
            return ChargeDeclined("network_error", str(e), self.provider_name, retryable=True)

    async def cleanup(self) -> None:
        """Clean up resources."""
        if self.session:
            await self.session.close()
            self.session = None


# ============ Concrete Providers ============

class CardNetworkProvider(BasePaymentProvider):
    """Card network provider; also carries wallet-tokenized cards."""

    provider_name = "card"
    reference_prefix = ReferenceConstants.CARD_PREFIX

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "CardNetworkProvider":
        return cls(
            base_url=config.card_base_url,
            secret_key=config.card_secret_key,
            currency=config.card_currency,
            timeout_seconds=config.request_timeout_seconds,
            max_retries=config.max_retries,
        )

    async def charge(self, user_id, amount, currency, payment_token, reference) -> ChargeOutcome:
        if not payment_token:
            return ChargeDeclined("missing_payment_method", "No payment instrument on file", self.provider_name)

        async def call() -> ChargeOutcome:
            data = {
                "amount": int(Decimal(amount) * 100),
                "currency": (currency or self.currency).lower(),
                "source": payment_token,
                "description": f"Course purchase {reference}",
                "metadata[reference]": reference,
                "metadata[user_id]": str(user_id),
            }
            # The reference doubles as the gateway idempotency key for this attempt
            status, body = await self._request("POST", "/charges", data=data, headers={"Idempotency-Key": reference})
            if status < 300 and str(body.get("status")) in GatewayConstants.SUCCESS_STATUSES:
                return ChargeApproved(str(body.get("id", reference)), self.provider_name, str(body.get("status")))
            if status < 300:
                return ChargeDeclined(
                    str(body.get("failure_code") or body.get("status") or "declined").lower(),
                    str(body.get("failure_message") or "Charge not captured"),
                    self.provider_name,
                )
            return self._declined_from_response(status, body)

        return await self._guarded_charge(call)

    async def tokenize_instrument(self, payment_type, raw_details) -> TokenizeOutcome:
        if not payment_type.is_card:
            # Wallets (PayPal, Google Pay, Apple Pay) hand us a token from their own SDK
            token = raw_details.get("token")
            if not token:
                return TokenizeFailure("missing_token", f"{payment_type.value} requires a wallet token")
            return TokenizeSuccess(
                token=str(token),
                last_four=raw_details.get("last_four"),
                brand=raw_details.get("brand") or payment_type.value.replace("_", " ").title(),
            )

        number = "".join(ch for ch in str(raw_details.get("number", "")) if ch.isdigit())
        if len(number) < 12:
            return TokenizeFailure("invalid_card_number", "Card number is too short")
        try:
            exp_month = int(raw_details.get("exp_month"))
            exp_year = int(raw_details.get("exp_year"))
        except (TypeError, ValueError):
            return TokenizeFailure("invalid_expiry", "Card expiry month and year are required")
        if not 1 <= exp_month <= 12:
            return TokenizeFailure("invalid_expiry", "Expiry month must be between 1 and 12")

        data = {
            "card[number]": number,
            "card[exp_month]": exp_month,
            "card[exp_year]": exp_year,
            "card[cvc]": raw_details.get("cvc", ""),
        }
        try:
            status, body = await self._request("POST", "/tokens", data=data)
        except GatewayError as e:
            return TokenizeFailure(e.reason_code, e.message)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Card tokenization failed: {e}")
            return TokenizeFailure("network_error", str(e))

        if status >= 300:
            declined = self._declined_from_response(status, body)
            return TokenizeFailure(declined.reason_code, declined.message)

        card = body.get("card", {})
        return TokenizeSuccess(
            token=str(body["id"]),
            last_four=str(card.get("last4") or number[-4:]),
            brand=card.get("brand"),
            expiry_month=int(card.get("exp_month") or exp_month),
            expiry_year=int(card.get("exp_year") or exp_year),
        )


class RegionalPaymentProvider(BasePaymentProvider):
    """Regional multi-method provider (bank transfer and alternative instruments)."""

    provider_name = "regional"
    reference_prefix = ReferenceConstants.REGIONAL_PREFIX

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "RegionalPaymentProvider":
        return cls(
            base_url=config.regional_base_url,
            secret_key=config.regional_secret_key,
            currency=config.regional_currency,
            timeout_seconds=config.request_timeout_seconds,
            max_retries=config.max_retries,
        )

    def _auth_headers(self) -> Dict[str, str]:
        # Basic auth with the secret key as username and an empty password
        return {"Authorization": aiohttp.BasicAuth(self.secret_key or "", "").encode()}

    @staticmethod
    def _amount(amount: Any) -> int:
        return int(Decimal(str(amount)))

    async def charge(self, user_id, amount, currency, payment_token, reference) -> ChargeOutcome:
        if not payment_token:
            return ChargeDeclined("missing_payment_method", "No payment instrument on file", self.provider_name)

        async def call() -> ChargeOutcome:
            payload = {
                "reference_id": reference,
                "amount": self._amount(amount),
                "currency": currency or self.currency,
                "payment_method_id": payment_token,
                "metadata": {"user_id": str(user_id)},
            }
            status, body = await self._request("POST", "/payment_requests", json=payload, headers={"Idempotency-key": reference})
            if status < 300 and str(body.get("status")) in GatewayConstants.SUCCESS_STATUSES:
                return ChargeApproved(str(body.get("id", reference)), self.provider_name, str(body.get("status")))
            if status < 300:
                return ChargeDeclined(
                    str(body.get("failure_code") or body.get("status") or "declined").lower(),
                    "Payment request not completed",
                    self.provider_name,
                )
            return self._declined_from_response(status, body)

        return await self._guarded_charge(call)

    async def tokenize_instrument(self, payment_type, raw_details) -> TokenizeOutcome:
        if payment_type != PaymentType.BANK_TRANSFER:
            return TokenizeFailure("unsupported_type", f"{payment_type.value} is not handled by the regional provider")

        account_number = str(raw_details.get("account_number", "")).strip()
        bank_code = raw_details.get("bank_code")
        if not account_number or not bank_code:
            return TokenizeFailure("invalid_bank_account", "Bank code and account number are required")

        payload = {
            "type": "DIRECT_DEBIT",
            "reusability": "MULTIPLE_USE",
            "direct_debit": {
                "channel_code": bank_code,
                "channel_properties": {
                    "account_number": account_number,
                    "account_holder_name": raw_details.get("account_holder_name"),
                },
            },
        }
        try:
            status, body = await self._request("POST", "/v2/payment_methods", json=payload)
        except GatewayError as e:
            return TokenizeFailure(e.reason_code, e.message)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Bank account tokenization failed: {e}")
            return TokenizeFailure("network_error", str(e))

        if status >= 300:
            declined = self._declined_from_response(status, body)
            return TokenizeFailure(declined.reason_code, declined.message)
        return TokenizeSuccess(token=str(body["id"]), last_four=account_number[-4:], brand=str(bank_code))

    async def create_alternative_instrument(self, kind, params, reference=None) -> InstrumentOutcome:
        reference = reference or self.new_reference()
        try:
            if kind == InstrumentKind.VIRTUAL_ACCOUNT:
                return await self._create_virtual_account(params, reference)
            if kind == InstrumentKind.EWALLET:
                return await self._create_ewallet_charge(params, reference)
            if kind == InstrumentKind.QR_CODE:
                return await self._create_qr_code(params, reference)
            if kind == InstrumentKind.RETAIL_OUTLET:
                return await self._create_retail_outlet(params, reference)
        except (KeyError, ValueError) as e:
            return InstrumentFailure("invalid_params", f"Invalid {kind.value} parameters: {e}")
        except GatewayError as e:
            return InstrumentFailure(e.reason_code, e.message)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Creating {kind.value} failed: {e}")
            return InstrumentFailure("network_error", str(e))
        return InstrumentFailure("unsupported_instrument", f"Unknown instrument kind {kind}")

    def _failure(self, status: int, body: Dict[str, Any]) -> InstrumentFailure:
        declined = self._declined_from_response(status, body)
        return InstrumentFailure(declined.reason_code, declined.message)

    async def _create_virtual_account(self, params: Dict[str, Any], reference: str) -> InstrumentOutcome:
        amount = self._amount(params["amount"])
        expires = _utc_in(GatewayConstants.VIRTUAL_ACCOUNT_EXPIRY_HOURS * 3600)
        payload = {
            "external_id": reference,
            "bank_code": params["bank_code"],
            "name": params["name"],
            "expected_amount": amount,
            "is_closed": True,
            "is_single_use": True,
            "expiration_date": expires.isoformat(),
        }
        status, body = await self._request("POST", "/callback_virtual_accounts", json=payload)
        if status >= 300:
            return self._failure(status, body)
        return InstrumentCreated(
            kind=InstrumentKind.VIRTUAL_ACCOUNT,
            handle={
                "account_number": body.get("account_number"),
                "bank_code": body.get("bank_code", params["bank_code"]),
                "amount": body.get("expected_amount", amount),
                "expiration_date": body.get("expiration_date", expires.isoformat()),
            },
            provider_reference=body.get("id"),
        )

    async def _create_ewallet_charge(self, params: Dict[str, Any], reference: str) -> InstrumentOutcome:
        wallet = EWalletType(str(params["type"]).upper())
        amount = self._amount(params["amount"])
        payload = {
            "reference_id": reference,
            "currency": self.currency,
            "amount": amount,
            "checkout_method": "ONE_TIME_PAYMENT",
            "channel_code": f"ID_{wallet.value}",
            "channel_properties": {"mobile_number": params["phone"]},
        }
        status, body = await self._request("POST", "/ewallets/charges", json=payload)
        if status >= 300:
            return self._failure(status, body)
        actions = body.get("actions") or {}
        return InstrumentCreated(
            kind=InstrumentKind.EWALLET,
            handle={
                "charge_id": body.get("id"),
                "status": body.get("status"),
                "checkout_url": actions.get("desktop_web_checkout_url") or actions.get("mobile_web_checkout_url"),
            },
            provider_reference=body.get("id"),
        )

    async def _create_qr_code(self, params: Dict[str, Any], reference: str) -> InstrumentOutcome:
        amount = self._amount(params["amount"])
        expires_in = int(params.get("expires_in", GatewayConstants.QR_CODE_EXPIRES_IN))
        expires = _utc_in(expires_in)
        payload = {
            "reference_id": reference,
            "type": "DYNAMIC",
            "currency": self.currency,
            "amount": amount,
            "expires_at": expires.isoformat(),
        }
        status, body = await self._request("POST", "/qr_codes", json=payload)
        if status >= 300:
            return self._failure(status, body)
        return InstrumentCreated(
            kind=InstrumentKind.QR_CODE,
            handle={
                "qr_string": body.get("qr_string"),
                "amount": body.get("amount", amount),
                "expires_at": body.get("expires_at", expires.isoformat()),
            },
            provider_reference=body.get("id"),
        )

    async def _create_retail_outlet(self, params: Dict[str, Any], reference: str) -> InstrumentOutcome:
        outlet = RetailOutletType(str(params["type"]).upper())
        amount = self._amount(params["amount"])
        expires = _utc_in(GatewayConstants.RETAIL_OUTLET_EXPIRY_HOURS * 3600)
        payload = {
            "external_id": reference,
            "retail_outlet_name": outlet.value,
            "name": params["name"],
            "expected_amount": amount,
            "expiration_date": expires.isoformat(),
        }
        status, body = await self._request("POST", "/fixed_payment_code", json=payload)
        if status >= 300:
            return self._failure(status, body)
        return InstrumentCreated(
            kind=InstrumentKind.RETAIL_OUTLET,
            handle={
                "payment_code": body.get("payment_code"),
                "amount": body.get("expected_amount", amount),
                "expires_at": body.get("expiration_date", expires.isoformat()),
            },
            provider_reference=body.get("id"),
        )


# ============ Payment Client ============

REGIONAL_PAYMENT_TYPES = frozenset({PaymentType.BANK_TRANSFER})


class PaymentClient:
    """
    Uniform gateway facade.

    Routes each call to a provider by the payment method's recorded type and
    bounds every call with a timeout.
    """

    def __init__(
        self,
        card_provider: BasePaymentProvider,
        regional_provider: BasePaymentProvider,
        timeout_seconds: Optional[float] = None,
    ):
        self.card_provider = card_provider
        self.regional_provider = regional_provider
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "PaymentClient":
        return cls(CardNetworkProvider.from_config(config), RegionalPaymentProvider.from_config(config))

    def budget_for(self, provider: BasePaymentProvider) -> float:
        """Outer bound for one call; without an explicit timeout the provider's retries fit inside it."""
        if self.timeout_seconds is not None:
            return self.timeout_seconds
        return provider.call_budget

    async def initialize(self) -> None:
        for provider in (self.card_provider, self.regional_provider):
            await provider.initialize()

    def provider_for(self, payment_type: Optional[PaymentType]) -> BasePaymentProvider:
        if payment_type in REGIONAL_PAYMENT_TYPES:
            return self.regional_provider
        return self.card_provider

    def new_reference(self, payment_type: Optional[PaymentType] = None) -> str:
        return self.provider_for(payment_type).new_reference()

    async def charge(
        self,
        user_id: int,
        amount: Decimal,
        currency: Optional[str],
        payment_token: Optional[str],
        payment_type: Optional[PaymentType],
        reference: str,
    ) -> ChargeOutcome:
        provider = self.provider_for(payment_type)
        try:
            return await asyncio.wait_for(
                provider.charge(user_id, amount, currency or provider.currency, payment_token, reference),
                timeout=self.budget_for(provider),
            )
        except asyncio.TimeoutError:
            logger.warning(f"Charge {reference} timed out after {self.budget_for(provider)}s")
            return ChargeDeclined("timeout", "Gateway did not answer in time", provider.provider_name, retryable=True)
        except Exception as e:
            logger.error(f"Charge {reference} raised unexpectedly: {e}", exc_info=True)
            return ChargeDeclined("gateway_error", str(e), provider.provider_name, retryable=True)

    async def tokenize_instrument(self, payment_type: PaymentType, raw_details: Dict[str, Any]) -> TokenizeOutcome:
        provider = self.provider_for(payment_type)
        try:
            return await asyncio.wait_for(
                provider.tokenize_instrument(payment_type, raw_details),
                timeout=self.budget_for(provider),
            )
        except asyncio.TimeoutError:
            return TokenizeFailure("timeout", "Gateway did not answer in time")

    async def create_alternative_instrument(
        self,
        kind: InstrumentKind,
        params: Dict[str, Any],
        reference: Optional[str] = None,
    ) -> InstrumentOutcome:
        try:
            return await asyncio.wait_for(
                self.regional_provider.create_alternative_instrument(kind, params, reference),
                timeout=self.budget_for(self.regional_provider),
            )
        except asyncio.TimeoutError:
            return InstrumentFailure("timeout", "Gateway did not answer in time")

    async def cleanup(self) -> None:
        """Clean up all providers."""
        for provider in (self.card_provider, self.regional_provider):
            await provider.cleanup()
        logger.info("Payment client cleaned up")
