"""
Service Map upstream client.
"""

from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlsplit
import asyncio
import time

import httpx

from shared.logging import get_logger
from ..caching.fallback import (
    OutcomeKind,
    UpstreamFailure,
    UpstreamOutcome,
    UpstreamSuccess,
    classify_status,
)

DNS_ERROR_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo",
    "no address associated with hostname",
    "name resolution",
)


def classify_exception(exc: Exception) -> UpstreamFailure:
    """Map an httpx transport exception to a failure outcome."""
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamFailure(OutcomeKind.TIMEOUT, detail=str(exc) or "timed out")

    if isinstance(exc, httpx.ConnectError):
        message = str(exc).lower()
        if any(marker in message for marker in DNS_ERROR_MARKERS):
            return UpstreamFailure(OutcomeKind.DNS_FAILURE, detail=str(exc))
        return UpstreamFailure(OutcomeKind.CONNECTION_REFUSED, detail=str(exc))

    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return UpstreamFailure(OutcomeKind.CONNECTION_REFUSED, detail=str(exc))

    return UpstreamFailure(OutcomeKind.OTHER, detail=str(exc))


class ServiceMapClient:
    """Fetches Service Map API resources and reports typed outcomes."""

    def __init__(
        self,
        base_url: str,
        *,
        user_agent: str = "Outdoors-Sports-Map-Backend/1.0",
        timeouts: Optional[Mapping[str, float]] = None,
        default_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/') + '/'
        self.user_agent = user_agent
        self.timeouts: Dict[str, float] = dict(timeouts or {})
        self.default_timeout = default_timeout
        self.logger = get_logger("proxy.servicemap_client")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    def timeout_for(self, endpoint_type: str) -> float:
        return self.timeouts.get(endpoint_type, self.default_timeout)

    def url_for(self, endpoint_type: str) -> str:
        return f"{self.base_url}{endpoint_type}/"

    async def fetch(self, endpoint_type: str, signature: str) -> UpstreamOutcome:
        """Fetch the upstream resource for an endpoint type and request signature.

        Query parameters are taken from the signature and forwarded as-is.
        """
        url = self.url_for(endpoint_type)
        params = parse_qsl(urlsplit(signature).query, keep_blank_values=True)
        timeout = self.timeout_for(endpoint_type)
        start = time.perf_counter()

        self.logger.info("Fetching from upstream", url=url, params=params, timeout=timeout)

        try:
            # Whole-call deadline; httpx timeouts are per phase.
            response = await asyncio.wait_for(
                self._get_client().get(url, params=params, timeout=timeout),
                timeout,
            )
        except asyncio.TimeoutError:
            self.logger.error(
                "Upstream request exceeded time limit",
                url=url,
                timeout=timeout,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return UpstreamFailure(OutcomeKind.TIMEOUT, detail=f"no complete response within {timeout:g}s")
        except httpx.HTTPError as exc:
            failure = classify_exception(exc)
            self.logger.error(
                "Upstream request failed",
                url=url,
                kind=failure.kind.value,
                error=str(exc),
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return failure

        if response.is_success:
            try:
                payload = response.json()
            except ValueError as exc:
                self.logger.error("Upstream returned invalid JSON", url=url, error=str(exc))
                return UpstreamFailure(OutcomeKind.OTHER, status=response.status_code,
                                       detail="Upstream returned invalid JSON")
            self.logger.debug(
                "Upstream response received",
                url=url,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return UpstreamSuccess(payload)

        failure = UpstreamFailure(
            classify_status(response.status_code),
            status=response.status_code,
            detail=self._error_body(response),
        )
        self.logger.error(
            "Upstream returned error status",
            url=url,
            status_code=response.status_code,
            kind=failure.kind.value,
        )
        return failure

    @staticmethod
    def _error_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def check_health(self) -> str:
        """Report whether the upstream client is usable (does not call upstream)."""
        return "ok" if self._client is None or not self._client.is_closed else "closed"

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
