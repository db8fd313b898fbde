"""
Unit tests for the Service Map upstream client.
"""

import asyncio
import time

import httpx
import pytest
import pytest_asyncio

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_proxy.app.adapters.servicemap_client import ServiceMapClient, classify_exception
from service_proxy.app.caching.fallback import OutcomeKind, UpstreamFailure, UpstreamSuccess
from shared.test_helpers import TestDataFactory

BASE_URL = "https://api.hel.fi/servicemap/v2/"


def make_client(handler, **kwargs) -> ServiceMapClient:
    return ServiceMapClient(BASE_URL, transport=httpx.MockTransport(handler), **kwargs)


class TestServiceMapClient:
    """Test cases for ServiceMapClient."""

    @pytest.mark.asyncio
    async def test_success_returns_payload(self):
        """Test that a 200 response becomes a success outcome."""
        payload = TestDataFactory.create_units(service=33418)
        client = make_client(lambda request: httpx.Response(200, json=payload))

        outcome = await client.fetch("unit", "/api/units?service=33418")

        assert isinstance(outcome, UpstreamSuccess)
        assert outcome.payload == payload
        await client.close()

    @pytest.mark.asyncio
    async def test_request_shape(self):
        """Test URL, forwarded query parameters and headers."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = f"{request.url.scheme}://{request.url.host}{request.url.path}"
            seen["params"] = sorted(request.url.params.multi_items())
            seen["user_agent"] = request.headers["User-Agent"]
            seen["accept"] = request.headers["Accept"]
            return httpx.Response(200, json={"results": []})

        client = make_client(handler, user_agent="Outdoors-Sports-Map-Backend/1.0")
        await client.fetch("unit", "/api/units?page_size=1000&service=33418&service=33483")

        assert seen["url"] == "https://api.hel.fi/servicemap/v2/unit/"
        assert seen["params"] == [("page_size", "1000"), ("service", "33418"), ("service", "33483")]
        assert seen["user_agent"] == "Outdoors-Sports-Map-Backend/1.0"
        assert seen["accept"] == "application/json"
        await client.close()

    @pytest.mark.asyncio
    async def test_server_error(self):
        """Test that a 5xx becomes a retryable server error."""
        client = make_client(lambda request: httpx.Response(503, text="Service Unavailable"))

        outcome = await client.fetch("service", "/api/services")

        assert outcome == UpstreamFailure(OutcomeKind.SERVER_ERROR, status=503, detail="Service Unavailable")
        await client.close()

    @pytest.mark.asyncio
    async def test_client_error_keeps_body(self):
        """Test that a 4xx carries upstream's error body."""
        client = make_client(lambda request: httpx.Response(400, json={"detail": "Invalid filter"}))

        outcome = await client.fetch("unit", "/api/units?bbox=nope")

        assert outcome.kind == OutcomeKind.CLIENT_ERROR
        assert outcome.status == 400
        assert outcome.detail == {"detail": "Invalid filter"}
        await client.close()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Test that an unparseable success body is an 'other' failure."""
        client = make_client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

        outcome = await client.fetch("announcement", "/api/announcements")

        assert outcome.kind == OutcomeKind.OTHER
        assert outcome.status == 200
        await client.close()

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        outcome = await make_client(handler).fetch("unit", "/api/units")

        assert outcome.kind == OutcomeKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

        outcome = await make_client(handler).fetch("unit", "/api/units")

        assert outcome.kind == OutcomeKind.CONNECTION_REFUSED

    @pytest.mark.asyncio
    async def test_dns_failure(self):
        def handler(request):
            raise httpx.ConnectError("[Errno -2] Name or service not known", request=request)

        outcome = await make_client(handler).fetch("unit", "/api/units")

        assert outcome.kind == OutcomeKind.DNS_FAILURE

    def test_timeouts_per_endpoint_type(self):
        """Test configured per-type timeouts with a default for others."""
        client = ServiceMapClient(BASE_URL, timeouts={"unit": 15.0, "service": 10.0}, default_timeout=7.0)

        assert client.timeout_for("unit") == 15.0
        assert client.timeout_for("service") == 10.0
        assert client.timeout_for("event") == 7.0

    def test_base_url_normalized(self):
        client = ServiceMapClient("https://api.hel.fi/servicemap/v2")
        assert client.url_for("service") == "https://api.hel.fi/servicemap/v2/service/"

    @pytest.mark.asyncio
    async def test_health_and_close(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        assert await client.check_health() == "ok"

        await client.fetch("unit", "/api/units")
        await client.close()

        assert await client.check_health() == "ok"


class TestClassifyException:
    """Test cases for classify_exception."""

    def test_pool_timeout_is_timeout(self):
        assert classify_exception(httpx.PoolTimeout("pool exhausted")).kind == OutcomeKind.TIMEOUT

    def test_protocol_error_is_connection_failure(self):
        assert classify_exception(httpx.RemoteProtocolError("peer closed")).kind == OutcomeKind.CONNECTION_REFUSED

    def test_unknown_error_is_other(self):
        assert classify_exception(httpx.TooManyRedirects("loop")).kind == OutcomeKind.OTHER


class TestUpstreamDeadline:
    """Test cases for the whole-call upstream time limit."""

    @pytest_asyncio.fixture
    async def trickling_server(self):
        """Local HTTP server that sends a complete JSON body one byte at a time."""
        handlers = []
        body = b'{"count": 0}\n'

        async def handle(reader, writer):
            handlers.append(asyncio.current_task())
            try:
                await reader.readuntil(b"\r\n\r\n")
                writer.write(
                    b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
                    b"Content-Length: %d\r\n\r\n" % len(body)
                )
                for byte in body:
                    writer.write(bytes([byte]))
                    await writer.drain()
                    await asyncio.sleep(0.25)
            except (ConnectionError, asyncio.IncompleteReadError):
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        yield f"http://127.0.0.1:{port}/"

        server.close()
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_slow_body_times_out_within_budget(self, trickling_server):
        """Test that a response trickling in past the budget becomes a timeout."""
        client = ServiceMapClient(trickling_server, timeouts={"unit": 1.0})

        start = time.monotonic()
        outcome = await client.fetch("unit", "/api/units")
        elapsed = time.monotonic() - start
        await client.close()

        assert isinstance(outcome, UpstreamFailure)
        assert outcome.kind == OutcomeKind.TIMEOUT
        assert elapsed < 1.5

    @pytest.mark.asyncio
    async def test_slow_body_within_budget_succeeds(self, trickling_server):
        client = ServiceMapClient(trickling_server, timeouts={"unit": 10.0})

        outcome = await client.fetch("unit", "/api/units")
        await client.close()

        assert outcome == UpstreamSuccess({"count": 0})


class TestRedirects:
    """Test cases for upstream redirects."""

    @pytest.mark.asyncio
    async def test_redirect_is_followed(self):
        """Test that a 301 from upstream is followed to the payload."""
        payload = TestDataFactory.create_services()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/servicemap/v2/service/":
                return httpx.Response(301, headers={"Location": "https://api.hel.fi/servicemap/v2.1/service/"})
            return httpx.Response(200, json=payload)

        client = make_client(handler)
        outcome = await client.fetch("service", "/api/services")
        await client.close()

        assert outcome == UpstreamSuccess(payload)
