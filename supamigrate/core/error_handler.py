"""
Error classification and retry logic for Supamigrate.

This module maps HTTP-level failures onto the transient/permanent split
used by the transfer and function pipelines, and provides retry with
exponential backoff for the operations that are allowed to retry.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Type

import httpx

from .exceptions import (
    FunctionsError,
    PermanentFunctionsError,
    PermanentTransferError,
    TransferError,
    TransientFunctionsError,
    TransientTransferError,
)

logger = logging.getLogger(__name__)

# 408 and 429 behave like transient server conditions even though they are 4xx.
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class ErrorCategory(str, Enum):
    """Whether a failure is worth another attempt."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass
class RetryConfig:
    """Configuration for retry logic."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given zero-based attempt."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


def classify_status(status_code: int) -> ErrorCategory:
    """Classify an HTTP status code."""
    if status_code >= 500 or status_code in TRANSIENT_STATUS_CODES:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.PERMANENT


def effective_status(response: httpx.Response) -> int:
    """
    Return the status code that describes the failure.

    The storage API sometimes answers 400 with the real status in the JSON
    body (``{"statusCode": "404", "error": "not_found"}``).
    """
    status = response.status_code
    if status == 400:
        try:
            body = response.json()
        except ValueError:
            return status
        if isinstance(body, dict):
            embedded = body.get("statusCode")
            try:
                return int(embedded)
            except (TypeError, ValueError):
                return status
    return status


def transfer_error_from_response(response: httpx.Response, action: str) -> TransferError:
    """Build the transfer error matching a failed storage API response."""
    status = effective_status(response)
    message = f"{action} failed: HTTP {status} - {response.text[:200]}"
    if classify_status(status) == ErrorCategory.TRANSIENT:
        return TransientTransferError(message, status_code=status)
    return PermanentTransferError(message, status_code=status)


def transfer_error_from_exception(exc: httpx.HTTPError, action: str) -> TransferError:
    """Map an httpx transport exception onto a transfer error."""
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return TransientTransferError(f"{action} failed: {type(exc).__name__}: {exc}")
    return PermanentTransferError(f"{action} failed: {type(exc).__name__}: {exc}")


def functions_error_from_response(response: httpx.Response, action: str) -> FunctionsError:
    """Build the functions error matching a failed management API response."""
    status = response.status_code
    message = f"{action} failed: HTTP {status} - {response.text[:200]}"
    if classify_status(status) == ErrorCategory.TRANSIENT:
        return TransientFunctionsError(message, status_code=status)
    return PermanentFunctionsError(message, status_code=status)


def functions_error_from_exception(exc: httpx.HTTPError, action: str) -> FunctionsError:
    """Map an httpx transport exception onto a functions error."""
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return TransientFunctionsError(f"{action} failed: {type(exc).__name__}: {exc}")
    return PermanentFunctionsError(f"{action} failed: {type(exc).__name__}: {exc}")


class RetryHandler:
    """Executes coroutines with retry and exponential backoff."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    async def retry_with_backoff(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        retry_config: Optional[RetryConfig] = None,
        on_attempt: Optional[Callable[[int], None]] = None,
        **kwargs
    ) -> Any:
        """
        Execute a coroutine function with retry logic and exponential backoff.

        Args:
            func: Coroutine function to execute
            *args: Positional arguments for the function
            retry_config: Retry configuration
            on_attempt: Called with the one-based attempt number before each attempt
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function execution

        Raises:
            The last exception if all retries are exhausted, or the first
            exception that is not retryable
        """
        config = retry_config or RetryConfig()
        last_exception: Optional[Exception] = None

        for attempt in range(config.max_attempts):
            if on_attempt:
                on_attempt(attempt + 1)
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                last_exception = e
                setattr(e, '_retry_count', attempt + 1)

                if config.retryable_exceptions and not any(
                    isinstance(e, exc_type) for exc_type in config.retryable_exceptions
                ):
                    self.logger.debug(f"{type(e).__name__} is not retryable: {e}")
                    raise

                if attempt == config.max_attempts - 1:
                    break

                delay = config.delay_for(attempt)
                self.logger.info(
                    f"{e}; retrying in {delay:.2f}s (attempt {attempt + 1}/{config.max_attempts})"
                )
                await asyncio.sleep(delay)

        if last_exception:
            raise last_exception
        raise RuntimeError("retry_with_backoff called with max_attempts < 1")


def create_transfer_retry_config(max_attempts: int = 3, base_delay: float = 1.0) -> RetryConfig:
    """Create retry configuration for storage object transfers."""
    return RetryConfig(
        max_attempts=max_attempts,
        base_delay=base_delay,
        max_delay=30.0,
        retryable_exceptions=[TransientTransferError]
    )


def create_functions_retry_config(max_attempts: int = 3, base_delay: float = 1.0) -> RetryConfig:
    """Create retry configuration for management API calls."""
    return RetryConfig(
        max_attempts=max_attempts,
        base_delay=base_delay,
        max_delay=30.0,
        retryable_exceptions=[TransientFunctionsError]
    )
