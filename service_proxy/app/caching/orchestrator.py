"""
Two-tier cache orchestration around upstream calls.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TYPE_CHECKING, Union

from shared.logging import get_logger
from .fallback import (
    OutcomeKind,
    UpstreamError,
    UpstreamFailure,
    UpstreamOutcome,
    UpstreamSuccess,
    is_retryable_upstream_failure,
    stale_supersedes,
)
from .freshness_store import FreshnessStore
from .keys import CacheKey, EndpointType
from .tiers import TierConfig, TierPolicy

if TYPE_CHECKING:  # pragma: no cover
    from shared.metrics import MetricsCollector


FetchFn = Callable[[str, str], Awaitable[UpstreamOutcome]]
MissHook = Callable[[CacheKey], None]

SOURCE_FRESH = "fresh"
SOURCE_STALE = "stale"
SOURCE_UPSTREAM = "upstream"


@dataclass(frozen=True)
class CacheResult:
    """What a request was answered with, and how."""
    value: Any
    is_hit: bool
    outcome_kind: OutcomeKind
    source: str
    key: CacheKey
    stale_fallback: bool = False


class CacheOrchestrator:
    """Serves requests from the fresh/stale tiers and commits upstream outcomes.

    Hits (a live fresh payload, or a stale payload superseding a cached fresh
    error) never reach upstream. Misses call ``on_miss`` once and then the
    upstream fetch; the fetch and its commit run in a task shielded from the
    caller so a client disconnect does not lose the result. With
    ``single_flight`` enabled, concurrent misses for one key share that task.
    """

    def __init__(
        self,
        tiers: Optional[TierPolicy] = None,
        *,
        fresh_store: Optional[FreshnessStore] = None,
        stale_store: Optional[FreshnessStore] = None,
        clock: Callable[[], float] = time.monotonic,
        single_flight: bool = True,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.tiers = tiers or TierPolicy()
        self.fresh = fresh_store or FreshnessStore("fresh", clock=clock)
        self.stale = stale_store or FreshnessStore("stale", clock=clock)
        self.single_flight = single_flight
        self.metrics = metrics
        self.logger = get_logger("proxy.cache_orchestrator")

        self._inflight: Dict[str, "asyncio.Task[CacheResult]"] = {}
        self._background: Set["asyncio.Task[CacheResult]"] = set()
        self._counters = {
            "hits": 0,
            "stale_hits": 0,
            "misses": 0,
            "coalesced_misses": 0,
            "stale_fallbacks": 0,
            "upstream_failures": 0,
        }

    def tier_config(self, endpoint_type: Union[EndpointType, str]) -> TierConfig:
        return self.tiers.for_type(endpoint_type)

    def lookup(self, key: CacheKey) -> Optional[CacheResult]:
        """Return a hit for key if either tier can answer it, else None."""
        fresh_entry = self.fresh.get(key)
        if fresh_entry is None:
            return None

        if not fresh_entry.is_error:
            return CacheResult(
                value=fresh_entry.value,
                is_hit=True,
                outcome_kind=OutcomeKind.SUCCESS,
                source=SOURCE_FRESH,
                key=key,
            )

        stale_entry = self.stale.get(key)
        if stale_supersedes(fresh_entry, stale_entry):
            return CacheResult(
                value=stale_entry.value,
                is_hit=True,
                outcome_kind=OutcomeKind.SUCCESS,
                source=SOURCE_STALE,
                key=key,
            )

        # Cached error, no stale payload: miss.
        return None

    async def handle(
        self,
        endpoint_type: Union[EndpointType, str],
        signature: str,
        fetch: FetchFn,
        *,
        on_miss: Optional[MissHook] = None,
    ) -> CacheResult:
        """Answer one request.

        Raises UpstreamError when the upstream failed and the failure could
        not be absorbed by the stale tier. Anything ``on_miss`` raises (for
        example a rate-limit rejection) propagates before upstream is called.
        """
        key = CacheKey.build(endpoint_type, signature)

        result = self.lookup(key)
        if result is not None:
            self._record_hit(result)
            return result

        self._counters["misses"] += 1
        self._record_cache_metric(key.endpoint_type, "miss")
        self.logger.debug("Cache miss", key=str(key))

        if on_miss is not None:
            on_miss(key)

        task = self._inflight.get(str(key)) if self.single_flight else None
        if task is None:
            task = self._spawn_resolution(key, fetch)
        else:
            self._counters["coalesced_misses"] += 1
            self.logger.debug("Joining in-flight upstream call", key=str(key))

        return await asyncio.shield(task)

    def _spawn_resolution(self, key: CacheKey, fetch: FetchFn) -> "asyncio.Task[CacheResult]":
        task = asyncio.ensure_future(self._resolve_miss(key, fetch))
        key_str = str(key)
        if self.single_flight:
            self._inflight[key_str] = task

        def _done(finished: "asyncio.Task[CacheResult]") -> None:
            if self._inflight.get(key_str) is finished:
                del self._inflight[key_str]
            self._background.discard(finished)
            if not finished.cancelled():
                finished.exception()

        self._background.add(task)
        task.add_done_callback(_done)
        return task

    async def _resolve_miss(self, key: CacheKey, fetch: FetchFn) -> CacheResult:
        tier = self.tiers.for_type(key.endpoint_type)
        outcome = await self._call_upstream(key, fetch)

        if isinstance(outcome, UpstreamSuccess):
            self.fresh.set(key, outcome.payload, tier.fresh_ttl)
            self.stale.set(key, outcome.payload, tier.stale_ttl)
            self.logger.debug(
                "Cached upstream response",
                key=str(key),
                fresh_ttl=tier.fresh_ttl,
                stale_ttl=tier.stale_ttl,
            )
            return CacheResult(
                value=outcome.payload,
                is_hit=False,
                outcome_kind=OutcomeKind.SUCCESS,
                source=SOURCE_UPSTREAM,
                key=key,
            )

        self._counters["upstream_failures"] += 1
        self._increment("upstream_failures_total", endpoint_type=key.endpoint_type, kind=outcome.kind.value)

        # Error entries go to the fresh tier only.
        self.fresh.set(key, outcome.to_dict(), tier.fresh_ttl, is_error=True)

        if is_retryable_upstream_failure(outcome):
            stale_entry = self.stale.get(key)
            if stale_entry is not None and not stale_entry.is_error:
                self._counters["stale_fallbacks"] += 1
                self._record_cache_metric(key.endpoint_type, "stale_fallback")
                self.logger.warning(
                    "Serving stale response after upstream failure",
                    key=str(key),
                    kind=outcome.kind.value,
                    upstream_status=outcome.status,
                )
                return CacheResult(
                    value=stale_entry.value,
                    is_hit=False,
                    outcome_kind=outcome.kind,
                    source=SOURCE_STALE,
                    key=key,
                    stale_fallback=True,
                )

        self.logger.warning(
            "Upstream failure surfaced to caller",
            key=str(key),
            kind=outcome.kind.value,
            upstream_status=outcome.status,
            retryable=is_retryable_upstream_failure(outcome),
        )
        raise UpstreamError(key.endpoint_type, outcome)

    async def _call_upstream(self, key: CacheKey, fetch: FetchFn) -> UpstreamOutcome:
        start = time.perf_counter()
        try:
            outcome = await fetch(key.endpoint_type, key.signature)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.error("Upstream handler raised", key=str(key), error=str(exc), exc_info=True)
            outcome = UpstreamFailure(OutcomeKind.OTHER, detail=str(exc))
        finally:
            self._observe("upstream_request_duration_seconds", time.perf_counter() - start,
                          endpoint_type=key.endpoint_type)

        if not isinstance(outcome, (UpstreamSuccess, UpstreamFailure)):
            self.logger.error("Upstream handler returned an unexpected value", key=str(key),
                              value_type=type(outcome).__name__)
            outcome = UpstreamFailure(OutcomeKind.OTHER, detail="invalid upstream outcome")
        return outcome

    def _record_hit(self, result: CacheResult) -> None:
        if result.source == SOURCE_STALE:
            self._counters["stale_hits"] += 1
            self._record_cache_metric(result.key.endpoint_type, "stale_hit")
            self.logger.info("Cached error superseded by stale entry", key=str(result.key))
        else:
            self._counters["hits"] += 1
            self._record_cache_metric(result.key.endpoint_type, "hit")
            self.logger.debug("Cache hit", key=str(result.key))

    def _record_cache_metric(self, endpoint_type: str, result: str) -> None:
        self._increment("cache_requests_total", endpoint_type=endpoint_type, result=result)

    def _increment(self, metric_name: str, **labels) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.increment_counter(metric_name, **labels)
        except Exception as exc:  # pragma: no cover
            self.logger.debug("Failed to record metric", metric=metric_name, error=str(exc))

    def _observe(self, metric_name: str, value: float, **labels) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.observe_histogram(metric_name, value, **labels)
        except Exception as exc:  # pragma: no cover
            self.logger.debug("Failed to record metric", metric=metric_name, error=str(exc))

    def clear(self) -> Dict[str, int]:
        """Drop every entry from both tiers."""
        return {"fresh": self.fresh.clear(), "stale": self.stale.clear()}

    def clear_matching(self, pattern: str) -> Dict[str, int]:
        """Drop entries whose key contains pattern from both tiers."""
        return {
            "fresh": self.fresh.delete_matching(pattern),
            "stale": self.stale.delete_matching(pattern),
        }

    def purge_expired(self) -> Dict[str, int]:
        return {"fresh": self.fresh.purge_expired(), "stale": self.stale.purge_expired()}

    def stats(self) -> Dict[str, Any]:
        """Per-tier stats plus orchestrator counters."""
        return {
            "fresh": self.fresh.stats(),
            "stale": self.stale.stats(),
            "requests": dict(self._counters),
            "in_flight": len(self._background),
            "ttl_config": self.tiers.to_dict(),
        }
