"""
Unit tests for upstream outcome classification and stale fallback policy.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_proxy.app.caching.fallback import (
    OutcomeKind,
    UpstreamError,
    UpstreamFailure,
    UpstreamSuccess,
    classify_status,
    is_retryable_upstream_failure,
    stale_supersedes,
)
from service_proxy.app.caching.freshness_store import CacheEntry


class TestRetryablePolicy:
    """Test cases for is_retryable_upstream_failure."""

    @pytest.mark.parametrize("kind", [
        OutcomeKind.TIMEOUT,
        OutcomeKind.CONNECTION_REFUSED,
        OutcomeKind.DNS_FAILURE,
    ])
    def test_unavailability_is_retryable(self, kind):
        """Test that transient unavailability allows stale substitution."""
        assert is_retryable_upstream_failure(UpstreamFailure(kind)) is True

    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    def test_server_errors_are_retryable(self, status):
        """Test that 5xx responses allow stale substitution."""
        assert is_retryable_upstream_failure(UpstreamFailure(OutcomeKind.SERVER_ERROR, status=status)) is True

    @pytest.mark.parametrize("status", [400, 404, 429])
    def test_client_errors_are_not_retryable(self, status):
        """Test that 4xx responses are never papered over."""
        assert is_retryable_upstream_failure(UpstreamFailure(OutcomeKind.CLIENT_ERROR, status=status)) is False

    def test_other_is_not_retryable(self):
        """Test that unclassified failures are surfaced."""
        assert is_retryable_upstream_failure(UpstreamFailure(OutcomeKind.OTHER, detail="boom")) is False

    def test_server_error_with_low_status_is_not_retryable(self):
        """Test that a mislabelled server error below 500 is not retryable."""
        assert is_retryable_upstream_failure(UpstreamFailure(OutcomeKind.SERVER_ERROR, status=418)) is False

    def test_success_is_not_retryable(self):
        """Test that a success never triggers fallback."""
        assert is_retryable_upstream_failure(UpstreamSuccess({"count": 0})) is False


class TestClassifyStatus:
    """Test cases for classify_status."""

    def test_statuses(self):
        assert classify_status(503) == OutcomeKind.SERVER_ERROR
        assert classify_status(404) == OutcomeKind.CLIENT_ERROR
        assert classify_status(304) == OutcomeKind.OTHER


class TestStaleSupersedes:
    """Test cases for stale_supersedes."""

    def _entry(self, is_error: bool) -> CacheEntry:
        return CacheEntry(value="v", is_error=is_error, stored_at=0.0, ttl=60.0)

    def test_fresh_error_superseded_by_stale_payload(self):
        assert stale_supersedes(self._entry(True), self._entry(False)) is True

    def test_fresh_payload_not_superseded(self):
        assert stale_supersedes(self._entry(False), self._entry(False)) is False

    def test_no_stale_entry(self):
        assert stale_supersedes(self._entry(True), None) is False

    def test_no_fresh_entry(self):
        assert stale_supersedes(None, self._entry(False)) is False


class TestUpstreamFailure:
    """Test cases for failure values and errors."""

    def test_success_kind_rejected(self):
        """Test that a failure cannot claim success."""
        with pytest.raises(ValueError):
            UpstreamFailure(OutcomeKind.SUCCESS)

    def test_dict_round_trip(self):
        """Test that cached error entries decode to the same failure."""
        failure = UpstreamFailure(OutcomeKind.SERVER_ERROR, status=502, detail="Bad gateway")
        assert UpstreamFailure.from_dict(failure.to_dict()) == failure

    def test_upstream_error_names_endpoint(self):
        """Test that errors carry kind, status and a descriptive message."""
        error = UpstreamError("unit", UpstreamFailure(OutcomeKind.TIMEOUT))

        assert error.kind == OutcomeKind.TIMEOUT
        assert error.upstream_status is None
        assert error.code == "UPSTREAM_TIMEOUT"
        assert error.message == "Units API is not responding"
        assert error.details["endpoint_type"] == "unit"

    def test_upstream_error_connection_message(self):
        error = UpstreamError("service", UpstreamFailure(OutcomeKind.CONNECTION_REFUSED))
        assert error.message == "Failed to connect to services API"
