"""
Store interfaces for the hosted CRUD and object-storage primitives.

The project data lives behind two independent services: a table API that
only offers single-call selects and inserts (no transactions), and an object
storage API that addresses binary files by (bucket, path). The backup engine
talks to both exclusively through the abstract classes defined here, so the
same exporter and importer run against a live deployment (see
`teamvault.store.rest`) or an in-process store (see `teamvault.store.memory`).

Design Principles:
    - Every call is independent; nothing is ever rolled back
    - Filters are plain dicts: a scalar means equality, a list/tuple/set
      means membership, None means "is null"
    - Transport failures surface as StoreError subclasses only
    - Built-in rate limiting and retry logic for remote clients
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

# -----------------------------------------------------------------------------
# Error Classes
# -----------------------------------------------------------------------------


class StoreError(Exception):
    """Base exception for data store and object storage errors."""

    def __init__(self, message: str, resource: str | None = None) -> None:
        self.message = message
        self.resource = resource
        super().__init__(f"[{resource}] {message}" if resource else message)


class AuthenticationError(StoreError):
    """
    Raised when the deployment rejects the service key.

    This includes invalid keys and row-level permission denials.
    """

    pass


class RateLimitError(StoreError):
    """
    Raised when the deployment rate limit is exceeded.

    Attributes:
        retry_after: Seconds to wait before retrying (if provided by the API).
    """

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, resource)
        self.retry_after = retry_after


class StoreConnectionError(StoreError):
    """
    Raised when the deployment cannot be reached.

    Named StoreConnectionError to avoid shadowing built-in ConnectionError.
    """

    pass


class ObjectNotFoundError(StoreError):
    """Raised when a (bucket, path) does not exist in object storage."""

    pass


# -----------------------------------------------------------------------------
# Interfaces
# -----------------------------------------------------------------------------


class DataStore(ABC):
    """Table API: filtered selects and single-row inserts."""

    @abstractmethod
    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch rows from a table.

        Args:
            table: Table name.
            filters: Column -> value. A list, tuple or set value matches any
                of its members (an empty collection matches nothing); None
                matches null.
            order_by: Column to sort by.
            descending: Sort direction.
            limit: Maximum number of rows to return.

        Returns:
            List of row dicts.

        Raises:
            StoreError: On any transport or permission failure.
        """

    @abstractmethod
    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """
        Insert one row and return it as stored (including its new "id").

        Raises:
            StoreError: If the row was not created.
        """

    def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        """Fetch a single row by id, or None."""
        rows = self.select(table, {"id": row_id}, limit=1)
        return rows[0] if rows else None


class ObjectStorage(ABC):
    """Bucket/path addressed binary storage."""

    @abstractmethod
    def download(self, bucket: str, path: str) -> bytes:
        """
        Fetch the bytes stored at (bucket, path).

        Raises:
            ObjectNotFoundError: If nothing is stored there.
            StoreError: On any other failure.
        """

    @abstractmethod
    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str | None = None,
    ) -> None:
        """
        Store bytes at (bucket, path). Existing objects are never overwritten.

        Raises:
            StoreError: If the upload failed or the path is taken.
        """


# -----------------------------------------------------------------------------
# Shared client behaviour
# -----------------------------------------------------------------------------


class RetryingClient:
    """
    Rate limiting and retry behaviour shared by remote store clients.

    Subclasses wrap each network call in `_with_retry()`. Authentication
    errors are never retried; connection errors and rate limits are retried
    with exponential backoff, honoring Retry-After when the server sends it.
    """

    default_rate_limit_delay: float = 0.0
    default_max_retries: int = 3
    default_retry_base_delay: float = 1.0
    default_retry_max_delay: float = 60.0

    def __init__(self, name: str) -> None:
        self.logger = logging.getLogger(f"teamvault.store.{name}")
        self._last_api_call: float = 0.0
        self._rate_limit_delay = self.default_rate_limit_delay
        self._max_retries = self.default_max_retries
        self._retry_base_delay = self.default_retry_base_delay
        self._retry_max_delay = self.default_retry_max_delay

    def _rate_limit(self) -> None:
        """Sleep if needed to keep the configured delay between calls."""
        if self._rate_limit_delay <= 0:
            return
        wait = self._last_api_call + self._rate_limit_delay - time.time()
        if wait > 0:
            self.logger.debug(f"Rate limiting: sleeping {wait:.3f}s")
            time.sleep(wait)
        self._last_api_call = time.time()

    def _backoff(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retry number `attempt + 1`."""
        if retry_after:
            return retry_after
        return min(self._retry_base_delay * (2**attempt), self._retry_max_delay)

    def _with_retry(
        self,
        func: Any,
        *args: Any,
        max_retries: int | None = None,
        **kwargs: Any,
    ) -> Any:
        """
        Call `func`, retrying transient store failures.

        RateLimitError waits for its Retry-After (or the backoff delay) and
        StoreConnectionError waits for the backoff delay. Every other error,
        AuthenticationError included, propagates on the first attempt.

        Raises:
            The error of the final attempt once retries are exhausted.
        """
        retries = self._max_retries if max_retries is None else max_retries
        attempt = 0
        while True:
            self._rate_limit()
            try:
                return func(*args, **kwargs)
            except (RateLimitError, StoreConnectionError) as e:
                if attempt >= retries:
                    raise
                if isinstance(e, RateLimitError):
                    delay = self._backoff(attempt, e.retry_after)
                    reason = "rate limited"
                else:
                    delay = self._backoff(attempt)
                    reason = f"connection error: {e.message}"
                attempt += 1
                self.logger.warning(
                    f"{e.resource or 'store'} {reason}; "
                    f"retry {attempt}/{retries} in {delay:.1f}s"
                )
                time.sleep(delay)

    def _log_api_call(
        self,
        method: str,
        endpoint: str,
        status_code: int | None = None,
        duration_ms: float | None = None,
    ) -> None:
        status = status_code if status_code is not None else "-"
        timing = f" ({duration_ms:.0f}ms)" if duration_ms is not None else ""
        self.logger.debug(f"{method} {endpoint} -> {status}{timing}")
