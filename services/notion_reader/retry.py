"""Retry policy and error classification for Notion API requests."""

import json
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from notion_client.errors import APIErrorCode, HTTPResponseError, RequestTimeoutError

logger = logging.getLogger(__name__)


RETRYABLE_API_CODES = (
    APIErrorCode.RateLimited,
    APIErrorCode.InternalServerError,
    APIErrorCode.ServiceUnavailable,
)


@dataclass
class RetryPolicy:
    """
    Backoff settings for retryable Notion API failures.

    Attributes:
        max_attempts: Maximum number of attempts per request, None for no limit
        base_delay: Delay in seconds before the first exponential retry
        max_delay: Upper bound in seconds for the exponential part
        max_jitter: Upper bound (exclusive) in seconds for random jitter
    """
    max_attempts: Optional[int] = None
    base_delay: float = 1.0
    max_delay: float = 15.0
    max_jitter: float = 0.5
    random_fn: Callable[[], float] = random.random

    def allows_retry(self, attempts_made: int) -> bool:
        return self.max_attempts is None or attempts_made < self.max_attempts

    def compute_delay(self, backoff_count: int, retry_after: Optional[float] = None) -> float:
        """
        Calculate how long to wait before the next attempt.

        Args:
            backoff_count: Exponential backoffs already taken for this request
            retry_after: Server-provided wait in seconds, honored exactly

        Returns:
            Delay in seconds
        """
        if retry_after is not None:
            return retry_after
        exponential = min(self.base_delay * (2 ** backoff_count), self.max_delay)
        return exponential + self.random_fn() * self.max_jitter


def error_status(error: BaseException) -> Optional[int]:
    status = getattr(error, 'status', None)
    return status if isinstance(status, int) else None


def is_retryable(error: BaseException) -> bool:
    """Return True for rate limits, server errors and timeouts."""
    if isinstance(error, (RequestTimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True

    status = error_status(error)
    if status is not None:
        return status == 429 or 500 <= status < 600

    return getattr(error, 'code', None) in RETRYABLE_API_CODES


def extract_retry_after(error: BaseException) -> Optional[float]:
    """
    Extract the retry-after hint from a Notion API error.

    Checks the Retry-After header first, then a retry_after field in the
    JSON body.

    Args:
        error: Error raised by the Notion client

    Returns:
        Number of seconds to wait, or None if the server gave no hint
    """
    if not isinstance(error, HTTPResponseError):
        return None

    headers = getattr(error, 'headers', None)
    if headers is not None:
        retry_after = headers.get('Retry-After')
        if retry_after:
            try:
                return max(float(retry_after), 0.0)
            except ValueError:
                logger.warning(f"Ignoring malformed Retry-After header: {retry_after!r}")

    body = getattr(error, 'body', None)
    if body:
        try:
            payload = json.loads(body)
        except (TypeError, ValueError):
            return None
        if isinstance(payload, dict) and payload.get('retry_after') is not None:
            try:
                return max(float(payload['retry_after']), 0.0)
            except (TypeError, ValueError):
                return None

    return None


def classify_error(error: BaseException) -> str:
    """Classify an error for user feedback."""
    if isinstance(error, (RequestTimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return 'network'

    code = getattr(error, 'code', None)
    status = error_status(error)
    if code == APIErrorCode.RateLimited or status == 429:
        return 'rate_limit'
    if code == APIErrorCode.Unauthorized or status in (401, 403):
        return 'auth'
    if code == APIErrorCode.ObjectNotFound or status == 404:
        return 'not_found'
    if code == APIErrorCode.ValidationError or status == 400:
        return 'validation'
    return 'unknown'


_USER_MESSAGES = {
    'network': "Network connection issue. Please try again.",
    'auth': "Authentication failed. Please check your Notion API key.",
    'rate_limit': "Rate limited by Notion. Please try again shortly.",
    'not_found': "Database not found. Please verify your database ID.",
    'validation': "Notion rejected the request. Please check your configuration.",
}


def user_message(error: BaseException) -> str:
    """Short human-readable message for an error that ended a sync."""
    kind = classify_error(error)
    if kind in _USER_MESSAGES:
        return _USER_MESSAGES[kind]
    return str(error) or error.__class__.__name__
