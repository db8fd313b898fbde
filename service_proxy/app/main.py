"""
Caching proxy service for the Service Map API.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ServiceError
from shared.logging import set_client_context
from .adapters.servicemap_client import ServiceMapClient
from .caching.fallback import OutcomeKind, UpstreamError
from .caching.keys import EndpointType, canonical_signature
from .caching.orchestrator import SOURCE_STALE, CacheOrchestrator, CacheResult
from .caching.tiers import TierPolicy
from .ratelimit.miss_gated import MissGatedRateLimiter, RateLimitMiddleware, RateLimitPolicy

PROXY_ROUTES = (
    ("/api/services", EndpointType.SERVICE),
    ("/api/units", EndpointType.UNIT),
    ("/api/announcements", EndpointType.ANNOUNCEMENT),
)


def status_for_failure(kind: OutcomeKind, upstream_status: Optional[int]) -> int:
    """Transport status for an upstream failure that reached the caller."""
    if kind == OutcomeKind.TIMEOUT:
        return 504
    if kind in (OutcomeKind.CONNECTION_REFUSED, OutcomeKind.DNS_FAILURE):
        return 503
    if kind == OutcomeKind.SERVER_ERROR:
        return upstream_status if upstream_status and upstream_status >= 500 else 502
    if kind == OutcomeKind.CLIENT_ERROR:
        return upstream_status if upstream_status and 400 <= upstream_status < 500 else 400
    return 500


class ProxyService(BaseService):
    """Caching reverse proxy in front of the Service Map API."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__("proxy", config=config)

        self.tier_policy = TierPolicy.from_settings(self.config.cache_tiers)
        self.cache = CacheOrchestrator(
            self.tier_policy,
            clock=clock,
            single_flight=self.config.cache_single_flight,
            metrics=self.metrics,
        )
        self.rate_limiter = MissGatedRateLimiter(
            RateLimitPolicy(
                limit=self.config.rate_limit_max_requests,
                window_seconds=self.config.rate_limit_window_seconds,
            ),
            clock=clock,
            metrics=self.metrics,
        )
        self.rate_limit_middleware = RateLimitMiddleware(
            self.rate_limiter,
            trust_proxy_headers=self.config.trust_proxy_headers,
        )
        self.upstream = ServiceMapClient(
            self.config.upstream_base_url,
            user_agent=self.config.upstream_user_agent,
            timeouts=self.config.upstream_timeouts,
            default_timeout=self.config.upstream_default_timeout,
            transport=upstream_transport,
        )
        self._sweeper: Optional[asyncio.Task] = None

        @self.app.on_event("startup")
        async def _startup():
            interval = self.config.cache_sweep_interval_seconds
            if interval > 0:
                self._sweeper = asyncio.ensure_future(self._sweep_loop(interval))
            self.logger.info(
                "Proxy started",
                upstream=self.upstream.base_url,
                ttl_config=self.tier_policy.to_dict(),
                rate_limit=self.rate_limiter.default_policy.limit,
            )

        @self.app.on_event("shutdown")
        async def _shutdown():
            if self._sweeper is not None:
                self._sweeper.cancel()
                try:
                    await self._sweeper
                except asyncio.CancelledError:
                    pass
                self._sweeper = None
            await self.upstream.close()

        @self.app.exception_handler(UpstreamError)
        async def upstream_error_handler(request: Request, exc: UpstreamError):
            """Map unabsorbed upstream failures to transport status codes."""
            status_code = status_for_failure(exc.kind, exc.upstream_status)
            self.logger.error(
                "Upstream failure returned to client",
                endpoint_type=exc.endpoint_type,
                kind=exc.kind.value,
                upstream_status=exc.upstream_status,
                status_code=status_code,
                path=request.url.path,
            )
            self.metrics.record_error(exc.code)
            return JSONResponse(status_code=status_code, content=exc.to_response().model_dump())

        self._setup_proxy_routes()
        self._setup_cache_routes()

        self.app.state.proxy_service = self

    def _setup_proxy_routes(self):
        """Register one GET route per proxied endpoint type."""

        @self.app.get("/")
        async def root():
            return {
                "service": self.service_name,
                "message": "Service Map caching proxy",
                "endpoints": [path for path, _ in PROXY_ROUTES],
            }

        for path, endpoint_type in PROXY_ROUTES:
            self.app.add_api_route(
                path,
                self._make_proxy_endpoint(endpoint_type),
                methods=["GET"],
                name=f"proxy_{endpoint_type.value}",
            )

    def _make_proxy_endpoint(self, endpoint_type: EndpointType):
        async def proxy_endpoint(request: Request) -> Response:
            return await self.proxy_request(request, endpoint_type)

        proxy_endpoint.__doc__ = f"Proxy {endpoint_type.value} requests through the cache."
        return proxy_endpoint

    async def proxy_request(self, request: Request, endpoint_type: EndpointType) -> Response:
        """Serve one proxied request through the cache and the miss-gated limiter."""
        client_id = self.rate_limit_middleware.get_client_id(request)
        set_client_context(client_id, endpoint_type.value)
        signature = canonical_signature(request.url.path, request.query_params.multi_items())

        result = await self.cache.handle(
            endpoint_type,
            signature,
            self.upstream.fetch,
            on_miss=self.rate_limit_middleware.miss_hook(client_id),
        )

        response = JSONResponse(content=result.value)
        response.headers["X-Cache"] = self._cache_header(result)
        if not result.is_hit:
            self._set_rate_limit_headers(response, self.rate_limiter.status(client_id, endpoint_type.value))
        return response

    @staticmethod
    def _cache_header(result: CacheResult) -> str:
        if result.source == SOURCE_STALE:
            return "STALE"
        return "HIT" if result.is_hit else "MISS"

    def _set_rate_limit_headers(self, response: Response, status: Dict[str, Any]) -> None:
        """Propagate rate limiting metadata via standard headers."""
        response.headers["X-RateLimit-Limit"] = str(status["limit"])
        response.headers["X-RateLimit-Remaining"] = str(status["remaining"])
        response.headers["X-RateLimit-Reset"] = str(status["reset_in_seconds"])

    def _setup_cache_routes(self):
        """Operational routes for inspecting and clearing the cache."""

        @self.app.get("/api/cache/status")
        async def cache_status():
            """Per-tier key counts, counters, TTL configuration and rate-limit windows."""
            try:
                stats = self.cache.stats()
                return {
                    "status": "OK",
                    "timestamp": self._now_iso(),
                    "cache": {
                        "fresh": {**stats["fresh"], "key_list": self.cache.fresh.keys()},
                        "stale": {**stats["stale"], "key_list": self.cache.stale.keys()},
                        "requests": stats["requests"],
                        "in_flight": stats["in_flight"],
                        "ttl_config": stats["ttl_config"],
                    },
                    "rate_limit": {
                        **self.rate_limiter.get_global_stats(),
                        "windows": self.rate_limiter.snapshot(),
                    },
                }
            except Exception as exc:
                self.logger.error("Cache status error", error=str(exc))
                raise ServiceError("Failed to get cache status", details={"error": str(exc)})

        @self.app.delete("/api/cache/clear")
        async def clear_cache():
            """Clear both cache tiers."""
            try:
                cleared = self.cache.clear()
            except Exception as exc:
                self.logger.error("Cache clear error", error=str(exc))
                raise ServiceError("Failed to clear cache", details={"error": str(exc)})

            self.logger.info("Cache cleared", cleared=cleared)
            return {
                "status": "OK",
                "message": "All cache cleared",
                "timestamp": self._now_iso(),
                "cleared": cleared,
            }

        @self.app.delete("/api/cache/clear/{pattern}")
        async def clear_cache_by_pattern(pattern: str):
            """Clear entries whose key contains the pattern, in both tiers."""
            try:
                cleared = self.cache.clear_matching(pattern)
            except Exception as exc:
                self.logger.error("Cache clear by pattern error", pattern=pattern, error=str(exc))
                raise ServiceError("Failed to clear cache by pattern", details={"error": str(exc)})

            cleared_count = cleared["fresh"] + cleared["stale"]
            return {
                "status": "OK",
                "message": f"Cleared {cleared_count} cache entries matching pattern: {pattern}",
                "timestamp": self._now_iso(),
                "cleared_count": cleared_count,
                "cleared": cleared,
            }

        @self.app.get("/api/rate-limit/status")
        async def rate_limit_status(request: Request):
            """The caller's uncached-request budget per endpoint type."""
            client_id = self.rate_limit_middleware.get_client_id(request)
            return {
                "client_id": client_id,
                "limits": {
                    endpoint_type.value: self.rate_limiter.status(client_id, endpoint_type.value)
                    for _, endpoint_type in PROXY_ROUTES
                },
            }

    async def _sweep_loop(self, interval: float) -> None:
        """Periodically evict expired entries and idle rate windows."""
        while True:
            await asyncio.sleep(interval)
            try:
                purged = self.cache.purge_expired()
                idle_windows = self.rate_limiter.purge_idle()
                self.logger.debug("Cache sweep completed", purged=purged, idle_windows=idle_windows)
            except Exception as exc:
                self.logger.error("Cache sweep failed", error=str(exc))

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report local component state; the upstream itself is not probed."""
        return {
            "cache": "ok",
            "rate_limiter": "ok",
            "upstream_client": await self.upstream.check_health(),
        }


def create_app(config: Optional[ServiceConfig] = None):
    """Create FastAPI application."""
    service = ProxyService(config)
    return service.app


if __name__ == "__main__":
    service = ProxyService()
    service.run()
