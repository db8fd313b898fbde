"""
Upstream outcomes and the stale-fallback policy.

A failed upstream call may be answered from the stale tier only when the
failure signals that the upstream is unavailable (timeouts, connection and
DNS failures, 5xx). Client errors mean the request itself is wrong, so they
are always surfaced.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from shared.errors import ExternalServiceError
from .freshness_store import CacheEntry


class OutcomeKind(str, Enum):
    """Result classification of an upstream call."""
    SUCCESS = "success"
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    DNS_FAILURE = "dns_failure"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    OTHER = "other"


RETRYABLE_KINDS = frozenset({
    OutcomeKind.TIMEOUT,
    OutcomeKind.CONNECTION_REFUSED,
    OutcomeKind.DNS_FAILURE,
    OutcomeKind.SERVER_ERROR,
})


@dataclass(frozen=True)
class UpstreamSuccess:
    """Upstream returned a JSON payload."""
    payload: Any

    @property
    def kind(self) -> OutcomeKind:
        return OutcomeKind.SUCCESS


@dataclass(frozen=True)
class UpstreamFailure:
    """Upstream call failed."""
    kind: OutcomeKind
    status: Optional[int] = None
    detail: Any = None

    def __post_init__(self):
        if self.kind == OutcomeKind.SUCCESS:
            raise ValueError("UpstreamFailure cannot have kind 'success'")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "status": self.status, "detail": self.detail}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpstreamFailure":
        return cls(kind=OutcomeKind(data["kind"]), status=data.get("status"), detail=data.get("detail"))


UpstreamOutcome = Union[UpstreamSuccess, UpstreamFailure]


def classify_status(status: int) -> OutcomeKind:
    """Map a non-2xx HTTP status to a failure kind."""
    if status >= 500:
        return OutcomeKind.SERVER_ERROR
    if 400 <= status < 500:
        return OutcomeKind.CLIENT_ERROR
    return OutcomeKind.OTHER


def is_retryable_upstream_failure(outcome: UpstreamOutcome) -> bool:
    """True when a stale entry may stand in for this outcome."""
    if not isinstance(outcome, UpstreamFailure):
        return False
    if outcome.kind not in RETRYABLE_KINDS:
        return False
    if outcome.kind == OutcomeKind.SERVER_ERROR:
        return outcome.status is None or outcome.status >= 500
    return True


def stale_supersedes(fresh_entry: Optional[CacheEntry], stale_entry: Optional[CacheEntry]) -> bool:
    """A cached fresh-tier error is never shown while a valid stale payload exists."""
    return (
        fresh_entry is not None
        and fresh_entry.is_error
        and stale_entry is not None
        and not stale_entry.is_error
    )


ENDPOINT_LABELS = {
    "service": "Services",
    "unit": "Units",
    "announcement": "Announcements",
}


def endpoint_label(endpoint_type: str) -> str:
    return ENDPOINT_LABELS.get(endpoint_type, endpoint_type.title())


class UpstreamError(ExternalServiceError):
    """An upstream failure that could not be absorbed by the stale tier."""

    _MESSAGES = {
        OutcomeKind.TIMEOUT: "{label} API is not responding",
        OutcomeKind.CONNECTION_REFUSED: "Failed to connect to {lower} API",
        OutcomeKind.DNS_FAILURE: "Failed to connect to {lower} API",
        OutcomeKind.SERVER_ERROR: "{label} API server error",
        OutcomeKind.CLIENT_ERROR: "{label} API rejected the request",
        OutcomeKind.OTHER: "Failed to fetch {lower} data",
    }

    def __init__(self, endpoint_type: str, failure: UpstreamFailure):
        self.endpoint_type = endpoint_type
        self.failure = failure
        label = endpoint_label(endpoint_type)
        message = self._MESSAGES[failure.kind].format(label=label, lower=label.lower())
        super().__init__(
            service=f"{label} API",
            message=message,
            details={
                "endpoint_type": endpoint_type,
                "kind": failure.kind.value,
                "upstream_status": failure.status,
                "upstream_detail": failure.detail,
            },
            code=f"UPSTREAM_{failure.kind.value.upper()}",
        )
        self.message = message

    @property
    def kind(self) -> OutcomeKind:
        return self.failure.kind

    @property
    def upstream_status(self) -> Optional[int]:
        return self.failure.status
