"""Tests for retryability classification."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from uptime_operator.classifier import (
    RETRYABLE_STATUS_CODES,
    TransportErrorCategory,
    categorize_transport_error,
    is_retryable_error,
    is_retryable_status,
)


class TestStatusClassification:
    """Tests for HTTP status classification."""

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status: int) -> None:
        """Test rate limiting and gateway failures are retryable."""
        assert is_retryable_status(status)

    @pytest.mark.parametrize("status", [200, 204, 400, 401, 403, 404, 409, 422, 501, 505])
    def test_non_retryable_statuses(self, status: int) -> None:
        """Test everything else fails immediately."""
        assert not is_retryable_status(status)

    def test_retryable_set_is_exact(self) -> None:
        assert RETRYABLE_STATUS_CODES == frozenset({429, 500, 502, 503, 504})


class TestTransportClassification:
    """Tests for transport error categorisation."""

    def test_httpx_timeout(self) -> None:
        """Test httpx timeouts are categorised structurally."""
        assert categorize_transport_error(httpx.ReadTimeout("read timed out")) is (
            TransportErrorCategory.TIMEOUT
        )

    def test_builtin_timeout(self) -> None:
        assert categorize_transport_error(TimeoutError()) is TransportErrorCategory.TIMEOUT

    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (ConnectionRefusedError(111, "refused"), TransportErrorCategory.CONNECTION_REFUSED),
            (ConnectionResetError(104, "reset"), TransportErrorCategory.CONNECTION_RESET),
            (BrokenPipeError(32, "pipe"), TransportErrorCategory.BROKEN_PIPE),
            (asyncio.IncompleteReadError(b"", 10), TransportErrorCategory.PREMATURE_CLOSE),
            (httpx.RemoteProtocolError("peer closed"), TransportErrorCategory.PREMATURE_CLOSE),
        ],
    )
    def test_structured_os_errors(self, error: BaseException, category: TransportErrorCategory) -> None:
        """Test OS-level exception types map to their categories."""
        assert categorize_transport_error(error) is category

    def test_cause_chain_is_walked(self) -> None:
        """Test a wrapped ConnectionRefusedError is found through __cause__."""
        error = httpx.ConnectError("connect failed")
        error.__cause__ = ConnectionRefusedError(111, "refused")
        assert categorize_transport_error(error) is TransportErrorCategory.CONNECTION_REFUSED

    def test_context_chain_is_walked(self) -> None:
        """Test implicit chaining via __context__ is also inspected."""
        try:
            try:
                raise ConnectionResetError(104, "reset")
            except ConnectionResetError:
                raise httpx.ReadError("read failed")  # noqa: B904
        except httpx.ReadError as e:
            assert categorize_transport_error(e) is TransportErrorCategory.CONNECTION_RESET

    @pytest.mark.parametrize(
        ("message", "category"),
        [
            ("dial tcp: Connection Refused", TransportErrorCategory.CONNECTION_REFUSED),
            ("read: connection reset by peer", TransportErrorCategory.CONNECTION_RESET),
            ("write: broken pipe", TransportErrorCategory.BROKEN_PIPE),
            ("unexpected EOF", TransportErrorCategory.PREMATURE_CLOSE),
            ("server sent EOF", TransportErrorCategory.PREMATURE_CLOSE),
        ],
    )
    def test_message_fallback(self, message: str, category: TransportErrorCategory) -> None:
        """Test message fragments are used when no structured signal exists."""
        assert categorize_transport_error(httpx.ConnectError(message)) is category

    def test_eof_match_is_case_sensitive(self) -> None:
        """Test lowercase 'eof' inside another word does not count."""
        error = httpx.ConnectError("geofence lookup failed")
        assert categorize_transport_error(error) is TransportErrorCategory.OTHER

    def test_unknown_error_is_other(self) -> None:
        """Test unrecognised failures are not retryable."""
        error = httpx.UnsupportedProtocol("Request URL has an unsupported protocol")
        assert categorize_transport_error(error) is TransportErrorCategory.OTHER
        assert not is_retryable_error(error)

    def test_none_is_not_retryable(self) -> None:
        assert not is_retryable_error(None)

    def test_retryable_error(self) -> None:
        assert is_retryable_error(httpx.ConnectTimeout("timed out"))

    def test_self_referencing_chain_terminates(self) -> None:
        """Test a cyclic exception chain does not loop forever."""
        first = ValueError("first")
        second = ValueError("second")
        first.__cause__ = second
        second.__cause__ = first
        assert categorize_transport_error(first) is TransportErrorCategory.OTHER
