"""
Tests for error classification and retry handling.
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from supamigrate.core.error_handler import (
    ErrorCategory,
    RetryConfig,
    RetryHandler,
    classify_status,
    create_transfer_retry_config,
    effective_status,
    functions_error_from_response,
    transfer_error_from_exception,
    transfer_error_from_response,
)
from supamigrate.core.exceptions import (
    PermanentFunctionsError,
    PermanentTransferError,
    TransientFunctionsError,
    TransientTransferError,
)


class TestClassification:
    """Test mapping HTTP failures onto transient and permanent errors."""

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408, 429])
    def test_transient_statuses(self, status):
        assert classify_status(status) == ErrorCategory.TRANSIENT

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 413])
    def test_permanent_statuses(self, status):
        assert classify_status(status) == ErrorCategory.PERMANENT

    def test_effective_status_from_body(self):
        """Test the storage API's 400-with-embedded-status responses."""
        response = httpx.Response(400, json={"statusCode": "503", "error": "unavailable"})
        assert effective_status(response) == 503

    def test_effective_status_plain(self):
        assert effective_status(httpx.Response(400, text="bad request")) == 400
        assert effective_status(httpx.Response(404, json={"statusCode": "500"})) == 404

    def test_transfer_error_from_response(self):
        transient = transfer_error_from_response(httpx.Response(400, json={"statusCode": "500"}), "Download a/b")
        permanent = transfer_error_from_response(httpx.Response(403, json={"message": "denied"}), "Download a/b")
        assert isinstance(transient, TransientTransferError)
        assert transient.status_code == 500
        assert isinstance(permanent, PermanentTransferError)
        assert "Download a/b failed: HTTP 403" in str(permanent)

    def test_transfer_error_from_exception(self):
        request = httpx.Request("GET", "https://x.supabase.co/")
        assert isinstance(
            transfer_error_from_exception(httpx.ConnectError("refused", request=request), "List"),
            TransientTransferError,
        )
        assert isinstance(
            transfer_error_from_exception(httpx.UnsupportedProtocol("ftp"), "List"),
            PermanentTransferError,
        )

    def test_functions_error_from_response(self):
        assert isinstance(functions_error_from_response(httpx.Response(502), "Deploy"), TransientFunctionsError)
        assert isinstance(functions_error_from_response(httpx.Response(422), "Deploy"), PermanentFunctionsError)


class TestRetryHandler:
    """Test retry with backoff."""

    def setup_method(self):
        """Set up test fixtures."""
        self.handler = RetryHandler()
        self.config = create_transfer_retry_config(max_attempts=3, base_delay=0.0)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        func = AsyncMock(side_effect=[TransientTransferError("busy"), TransientTransferError("busy"), "done"])
        attempts = []

        result = await self.handler.retry_with_backoff(func, "arg", retry_config=self.config, on_attempt=attempts.append)

        assert result == "done"
        assert func.await_count == 3
        assert attempts == [1, 2, 3]
        func.assert_awaited_with("arg")

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_last_error(self):
        func = AsyncMock(side_effect=TransientTransferError("still busy"))
        with pytest.raises(TransientTransferError, match="still busy"):
            await self.handler.retry_with_backoff(func, retry_config=self.config)
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        func = AsyncMock(side_effect=PermanentTransferError("forbidden"))
        with pytest.raises(PermanentTransferError):
            await self.handler.retry_with_backoff(func, retry_config=self.config)
        assert func.await_count == 1

    def test_delay_grows_and_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert config.delay_for(0) == 1.0
        assert config.delay_for(1) == 2.0
        assert config.delay_for(10) == 5.0
