"""
Miss-gated rate limiter for the caching proxy.

Only requests that have to go upstream are counted. Cache hits are never
charged and never rejected, so a client can keep reading cached data while
its upstream budget is exhausted.
"""

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TYPE_CHECKING

from fastapi import Request

from shared.logging import get_logger
from shared.errors import RateLimitError
from ..caching.fallback import endpoint_label
from ..caching.keys import CacheKey, normalize_endpoint_type

if TYPE_CHECKING:  # pragma: no cover
    from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class RateLimitPolicy:
    """Uncached request budget per client and endpoint type."""
    limit: int = 10
    window_seconds: float = 60.0

    def __post_init__(self):
        if self.limit < 1:
            raise ValueError("limit must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass
class RateWindow:
    """Fixed counting window for one (client, endpoint type) pair."""
    window_start: float
    limit: int
    window_seconds: float
    count: int = 0

    def has_lapsed(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds

    def reset_in(self, now: float) -> float:
        return max(0.0, self.window_start + self.window_seconds - now)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""
    allowed: bool
    charged: bool
    current_count: int
    limit: int
    reset_in_seconds: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_count)

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.reset_in_seconds))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "charged": self.charged,
            "current_count": self.current_count,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_in_seconds": math.ceil(self.reset_in_seconds),
        }


class MissGatedRateLimiter:
    """Fixed-window counter per (client, endpoint type), charged on cache misses only."""

    def __init__(
        self,
        policy: Optional[RateLimitPolicy] = None,
        *,
        overrides: Optional[Mapping[str, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.default_policy = policy or RateLimitPolicy()
        self.overrides: Dict[str, RateLimitPolicy] = {
            normalize_endpoint_type(name): value for name, value in (overrides or {}).items()
        }
        self.metrics = metrics
        self.logger = get_logger("proxy.rate_limiter")
        self._clock = clock
        self._windows: Dict[Tuple[str, str], RateWindow] = {}

    def policy_for(self, endpoint_type: str) -> RateLimitPolicy:
        return self.overrides.get(normalize_endpoint_type(endpoint_type), self.default_policy)

    def _current_window(self, client_id: str, endpoint_type: str, now: float) -> RateWindow:
        """Return the live window for the pair, creating or rolling it over lazily."""
        key = (client_id, endpoint_type)
        window = self._windows.get(key)
        if window is None or window.has_lapsed(now):
            policy = self.policy_for(endpoint_type)
            window = RateWindow(window_start=now, limit=policy.limit, window_seconds=policy.window_seconds)
            self._windows[key] = window
        return window

    def check(self, client_id: str, endpoint_type: str, *, is_hit: bool) -> RateLimitDecision:
        """Account for one request.

        Hits are admitted without touching the window. Misses increment the
        count and are admitted while it stays within the limit.
        """
        endpoint_type = normalize_endpoint_type(endpoint_type)
        now = self._clock()

        if is_hit:
            window = self._windows.get((client_id, endpoint_type))
            if window is None or window.has_lapsed(now):
                policy = self.policy_for(endpoint_type)
                return RateLimitDecision(True, False, 0, policy.limit, policy.window_seconds)
            return RateLimitDecision(True, False, window.count, window.limit, window.reset_in(now))

        window = self._current_window(client_id, endpoint_type, now)
        window.count += 1
        allowed = window.count <= window.limit
        decision = RateLimitDecision(allowed, True, window.count, window.limit, window.reset_in(now))

        if not allowed:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=client_id,
                endpoint_type=endpoint_type,
                current_count=window.count,
                limit=window.limit,
            )
            if self.metrics:
                self.metrics.increment_counter("rate_limit_rejections_total", endpoint_type=endpoint_type)
        return decision

    def enforce(self, client_id: str, endpoint_type: str) -> RateLimitDecision:
        """Charge a miss, raising RateLimitError when the window is exhausted."""
        decision = self.check(client_id, endpoint_type, is_hit=False)
        if not decision.allowed:
            label = endpoint_label(normalize_endpoint_type(endpoint_type))
            raise RateLimitError(
                message=(
                    f"Rate limit exceeded for {label} API. You can make up to "
                    f"{decision.limit} uncached requests per {self._describe_window(endpoint_type)}."
                ),
                details={
                    "endpoint_type": normalize_endpoint_type(endpoint_type),
                    "limit": decision.limit,
                    "current_count": decision.current_count,
                    "retry_after": decision.retry_after,
                    "tip": "Cached responses are not rate limited. This request would have "
                           "been allowed if data was in cache.",
                },
                retry_after=decision.retry_after,
            )
        return decision

    def _describe_window(self, endpoint_type: str) -> str:
        seconds = self.policy_for(endpoint_type).window_seconds
        if seconds == 60:
            return "minute"
        return f"{seconds:g} seconds"

    def status(self, client_id: str, endpoint_type: str) -> Dict[str, Any]:
        """Current window state for a client and endpoint type."""
        endpoint_type = normalize_endpoint_type(endpoint_type)
        now = self._clock()
        policy = self.policy_for(endpoint_type)
        window = self._windows.get((client_id, endpoint_type))
        if window is None or window.has_lapsed(now):
            requests, reset_in = 0, policy.window_seconds
        else:
            requests, reset_in = window.count, window.reset_in(now)

        return {
            "requests": requests,
            "limit": policy.limit,
            "remaining": max(0, policy.limit - requests),
            "reset_in_seconds": math.ceil(reset_in),
            "window_seconds": policy.window_seconds,
        }

    def snapshot(self) -> List[Dict[str, Any]]:
        """All live windows, for operational inspection."""
        now = self._clock()
        return [
            {
                "client_id": client_id,
                "endpoint_type": endpoint_type,
                "count": window.count,
                "limit": window.limit,
                "reset_in_seconds": math.ceil(window.reset_in(now)),
            }
            for (client_id, endpoint_type), window in sorted(self._windows.items())
            if not window.has_lapsed(now)
        ]

    def reset(self, client_id: str, endpoint_type: str) -> bool:
        """Forget the window for a client and endpoint type."""
        removed = self._windows.pop((client_id, normalize_endpoint_type(endpoint_type)), None) is not None
        if removed:
            self.logger.info("Rate limit reset", client_id=client_id, endpoint_type=endpoint_type)
        return removed

    def purge_idle(self) -> int:
        """Drop lapsed windows; they would be recreated on next use anyway."""
        now = self._clock()
        idle = [key for key, window in list(self._windows.items()) if window.has_lapsed(now)]
        for key in idle:
            self._windows.pop(key, None)
        return len(idle)

    def get_global_stats(self) -> Dict[str, Any]:
        """Aggregate counters across live windows."""
        windows = self.snapshot()
        total_requests = sum(w["count"] for w in windows)
        return {
            "active_windows": len(windows),
            "total_uncached_requests": total_requests,
            "limited_windows": sum(1 for w in windows if w["count"] > w["limit"]),
            "default_policy": {
                "limit": self.default_policy.limit,
                "window_seconds": self.default_policy.window_seconds,
            },
        }


class RateLimitMiddleware:
    """Binds the limiter to incoming requests."""

    def __init__(self, rate_limiter: MissGatedRateLimiter, *, trust_proxy_headers: bool = False):
        self.rate_limiter = rate_limiter
        self.trust_proxy_headers = trust_proxy_headers
        self.logger = get_logger("proxy.rate_limit_middleware")

    def miss_hook(self, client_id: str) -> Callable[[CacheKey], None]:
        """Hook for the cache orchestrator: charge the client when a request misses."""

        def _charge(key: CacheKey) -> None:
            self.rate_limiter.enforce(client_id, key.endpoint_type)

        return _charge

    def get_client_id(self, request: Request) -> str:
        """Extract client identity from request."""
        if self.trust_proxy_headers:
            forwarded_for = request.headers.get('X-Forwarded-For')
            if isinstance(forwarded_for, str) and forwarded_for:
                return forwarded_for.split(',')[0].strip()

            real_ip = request.headers.get('X-Real-IP')
            if isinstance(real_ip, str) and real_ip:
                return real_ip

        return request.client.host if request.client else 'unknown'
