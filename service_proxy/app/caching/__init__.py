"""
Proxy caching package.

Provides the fresh/stale freshness stores, the upstream fallback policy and
the orchestrator that ties them to upstream calls. Error responses are
cached in the fresh tier only; the stale tier only ever holds successful
payloads.
"""

from .fallback import (
    OutcomeKind,
    UpstreamError,
    UpstreamFailure,
    UpstreamOutcome,
    UpstreamSuccess,
    is_retryable_upstream_failure,
)
from .freshness_store import CacheEntry, FreshnessStore
from .keys import CacheKey, EndpointType, canonical_signature
from .orchestrator import CacheOrchestrator, CacheResult
from .tiers import TierConfig, TierPolicy

__all__ = [
    "CacheEntry",
    "CacheKey",
    "CacheOrchestrator",
    "CacheResult",
    "EndpointType",
    "FreshnessStore",
    "OutcomeKind",
    "TierConfig",
    "TierPolicy",
    "UpstreamError",
    "UpstreamFailure",
    "UpstreamOutcome",
    "UpstreamSuccess",
    "canonical_signature",
    "is_retryable_upstream_failure",
]
