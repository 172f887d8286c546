"""
REST clients for a hosted deployment.

The table API is PostgREST-style (`/rest/v1/<table>`) and object storage is
addressed as `/storage/v1/object/<bucket>/<path>`. Both authenticate with the
deployment's service key, sent as the `apikey` header and as a bearer token.

Filter encoding:
    {"group_id": "g1"}            -> group_id=eq.g1
    {"task_id": ["t1", "t2"]}     -> task_id=in.("t1","t2")
    {"parent_id": None}           -> parent_id=is.null

Long membership lists are split into chunks so request URLs stay bounded;
results are paginated with limit/offset until a short page comes back.
"""

from __future__ import annotations

import time
from typing import Any
from urllib.parse import quote

import requests

from teamvault.store.base import (
    AuthenticationError,
    DataStore,
    ObjectNotFoundError,
    ObjectStorage,
    RateLimitError,
    RetryingClient,
    StoreConnectionError,
    StoreError,
)

IN_CHUNK_SIZE = 100
DEFAULT_PAGE_SIZE = 1000

_MEMBERSHIP_TYPES = (list, tuple, set, frozenset)


def _format_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote_member(value: Any) -> str:
    text = _format_scalar(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def encode_filter(value: Any) -> str:
    """Encode one filter value as a PostgREST operator expression."""
    if value is None:
        return "is.null"
    if isinstance(value, _MEMBERSHIP_TYPES):
        return "in.(" + ",".join(_quote_member(v) for v in value) + ")"
    return f"eq.{_format_scalar(value)}"


def _json_body(response: requests.Response, resource: str) -> Any:
    """Decode a 2xx body, e.g. a proxy error page becomes a StoreError."""
    try:
        return response.json()
    except ValueError as e:
        raise StoreError("Unexpected response body", resource=resource) from e


class RestClient(RetryingClient):
    """Session handling and status mapping shared by both REST clients."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 30.0,
        name: str = "rest",
    ) -> None:
        super().__init__(name)
        url = base_url.strip()
        if not url.startswith("http"):
            url = f"https://{url}"
        self.base_url = url.rstrip("/")
        self.timeout = timeout
        self._service_key = service_key
        self._session: requests.Session | None = None

    def _get_session(self) -> requests.Session:
        if self._session is not None:
            return self._session

        if not self._service_key:
            raise AuthenticationError("No service key configured", resource=self.base_url)

        self._session = requests.Session()
        self._session.headers.update(
            {
                "apikey": self._service_key,
                "Authorization": f"Bearer {self._service_key}",
                "Accept": "application/json",
            }
        )
        return self._session

    def _request(
        self,
        method: str,
        endpoint: str,
        resource: str,
        **kwargs: Any,
    ) -> requests.Response:
        """
        Make one HTTP request and map failure statuses to store errors.

        Raises:
            AuthenticationError: On 401/403.
            RateLimitError: On 429.
            ObjectNotFoundError: On 404.
            StoreConnectionError: If the request fails in transit.
            StoreError: On any other non-2xx status.
        """
        session = self._get_session()
        url = f"{self.base_url}{endpoint}"
        start_time = time.time()

        try:
            response = session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise StoreConnectionError(
                f"Failed to connect to {self.base_url}: {e}", resource=resource
            ) from e
        except requests.exceptions.Timeout as e:
            raise StoreConnectionError(
                f"Request timed out: {e}", resource=resource
            ) from e
        except requests.exceptions.RequestException as e:
            # e.g. a chunked body cut off mid-transfer
            raise StoreConnectionError(
                f"Request failed: {e}", resource=resource
            ) from e

        duration_ms = (time.time() - start_time) * 1000
        self._log_api_call(method, endpoint, response.status_code, duration_ms)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Rate limit exceeded",
                resource=resource,
                retry_after=float(retry_after) if retry_after else None,
            )

        if response.status_code == 401:
            raise AuthenticationError(
                "Authentication failed. Check the service key.", resource=resource
            )

        if response.status_code == 403:
            raise AuthenticationError("Permission denied", resource=resource)

        if response.status_code == 404:
            raise ObjectNotFoundError("Not found", resource=resource)

        if response.status_code >= 400:
            raise StoreError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                resource=resource,
            )

        return response


class RestDataStore(RestClient, DataStore):
    """Table API client."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        super().__init__(base_url, service_key, timeout, name="rest.data")
        self.page_size = page_size

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        filters = dict(filters or {})

        chunk_column = None
        for column, value in filters.items():
            if isinstance(value, _MEMBERSHIP_TYPES):
                if not value:
                    return []
                if len(value) > IN_CHUNK_SIZE and chunk_column is None:
                    chunk_column = column

        if chunk_column is None:
            return self._select_paginated(table, filters, order_by, descending, limit)

        values = list(filters[chunk_column])
        rows: list[dict[str, Any]] = []
        for start in range(0, len(values), IN_CHUNK_SIZE):
            chunk_filters = dict(filters)
            chunk_filters[chunk_column] = values[start : start + IN_CHUNK_SIZE]
            rows.extend(
                self._select_paginated(table, chunk_filters, order_by, descending, None)
            )

        if order_by:
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=descending)
            rows = present + missing
        if limit is not None:
            rows = rows[:limit]
        return rows

    def _select_paginated(
        self,
        table: str,
        filters: dict[str, Any],
        order_by: str | None,
        descending: bool,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"select": "*"}
        for column, value in filters.items():
            params[column] = encode_filter(value)
        if order_by:
            direction = "desc" if descending else "asc"
            params["order"] = f"{order_by}.{direction}.nullslast"

        all_rows: list[dict[str, Any]] = []
        offset = 0

        while True:
            page_size = self.page_size
            if limit is not None:
                page_size = min(page_size, limit - len(all_rows))
            response = self._with_retry(
                self._request,
                "GET",
                f"/rest/v1/{table}",
                table,
                params={**params, "limit": page_size, "offset": offset},
            )
            page = _json_body(response, table) if response.content else []
            if not isinstance(page, list):
                raise StoreError("Unexpected response shape", resource=table)

            all_rows.extend(page)

            if len(page) < page_size:
                break
            if limit is not None and len(all_rows) >= limit:
                break
            offset += len(page)

        return all_rows

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        response = self._with_retry(
            self._request,
            "POST",
            f"/rest/v1/{table}",
            table,
            json=row,
            headers={"Prefer": "return=representation"},
        )
        created = _json_body(response, table) if response.content else None
        if isinstance(created, list):
            created = created[0] if created else None
        if not isinstance(created, dict) or "id" not in created:
            raise StoreError("Insert returned no row", resource=table)
        return created


class RestObjectStorage(RestClient, ObjectStorage):
    """Object storage client."""

    def __init__(self, base_url: str, service_key: str, timeout: float = 60.0) -> None:
        super().__init__(base_url, service_key, timeout, name="rest.storage")

    def _object_endpoint(self, bucket: str, path: str) -> str:
        return f"/storage/v1/object/{quote(bucket)}/{quote(path, safe='/')}"

    def download(self, bucket: str, path: str) -> bytes:
        response = self._with_retry(
            self._request, "GET", self._object_endpoint(bucket, path), bucket
        )
        return response.content

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str | None = None,
    ) -> None:
        headers = {
            "Content-Type": content_type or "application/octet-stream",
            "x-upsert": "false",
        }
        self._with_retry(
            self._request,
            "POST",
            self._object_endpoint(bucket, path),
            bucket,
            data=data,
            headers=headers,
        )


def connect(
    base_url: str,
    service_key: str,
    timeout: float = 30.0,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[RestDataStore, RestObjectStorage]:
    """Build the table and storage clients for one deployment."""
    return (
        RestDataStore(base_url, service_key, timeout=timeout, page_size=page_size),
        RestObjectStorage(base_url, service_key, timeout=max(timeout, 60.0)),
    )
