"""
Result values returned by billing operations.

Ordinary business failures (declines, duplicates, unknown ids) come back as a
`Failure` instead of being raised, so callers can always persist a terminal state
and report a typed error.
"""

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar, Union

from ..core.exceptions import AppException

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T

    ok = True


@dataclass(frozen=True)
class Failure:
    error: AppException

    ok = False

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.message

    @property
    def retryable(self) -> bool:
        return bool(getattr(self.error, "retryable", False))

    def to_dict(self) -> Dict[str, Any]:
        return self.error.to_dict()


Result = Union[Success[T], Failure]


class WebhookOutcome:
    """Terminal states of one webhook delivery."""
    APPLIED = "applied"
    SKIPPED = "skipped"          # already processed, idempotent replay
    IGNORED = "ignored"          # verified but unknown type, stored only
    REJECTED = "rejected"        # signature mismatch or malformed payload
    FAILED = "failed"            # dispatch raised, gateway should redeliver


@dataclass(frozen=True)
class WebhookReceipt:
    event_id: Optional[str]
    outcome: str
    event_type: Optional[str] = None
    detail: Optional[str] = None
    error: Optional[AppException] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (WebhookOutcome.APPLIED, WebhookOutcome.SKIPPED, WebhookOutcome.IGNORED)
