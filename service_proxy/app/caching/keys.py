"""
Cache key construction for proxied endpoints.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Tuple, Union
from urllib.parse import urlencode


class EndpointType(str, Enum):
    """Upstream endpoint families served by the proxy."""
    SERVICE = "service"
    UNIT = "unit"
    ANNOUNCEMENT = "announcement"


def normalize_endpoint_type(endpoint_type: Union[EndpointType, str]) -> str:
    """Return the plain string identifier for an endpoint type.

    Unknown identifiers are accepted so new endpoint families can be added
    without touching the enum, but they must be non-empty and free of ``:``
    which separates the type from the signature in rendered keys.
    """
    value = endpoint_type.value if isinstance(endpoint_type, EndpointType) else str(endpoint_type)
    if not value or ":" in value:
        raise ValueError(f"Invalid endpoint type: {value!r}")
    return value


def canonical_signature(path: str, query: Iterable[Tuple[str, str]] = ()) -> str:
    """Build the canonical request signature: path plus sorted query pairs.

    Pairs are sorted by name and then value; repeated names are kept so
    ``?a=1&a=2`` and ``?a=1`` never collide.
    """
    pairs = sorted((str(name), str(value)) for name, value in query)
    if not pairs:
        return path
    return f"{path}?{urlencode(pairs)}"


@dataclass(frozen=True)
class CacheKey:
    """Composite cache key of endpoint type and request signature."""
    endpoint_type: str
    signature: str

    @classmethod
    def build(cls, endpoint_type: Union[EndpointType, str], signature: str) -> "CacheKey":
        return cls(normalize_endpoint_type(endpoint_type), signature)

    def __str__(self) -> str:
        return f"{self.endpoint_type}:{self.signature}"
