"""Low-level HTTP client for the ServiceNow Table API.

Handles authentication, request defaults, error mapping and paging headers.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import requests

from .exceptions import (
    PartialRevokeError,
    ResourceNotFoundError,
    ResponseDecodeError,
    ServiceNowAPIError,
    ServiceNowError,
)
from .models import HasMore, NoSignal, Page, PageSignal, TotalCount

REQUEST_TIMEOUT = 10

TABLE_API_PATH = "/api/now/table"


def instance_url(deployment: str) -> str:
    """Return the instance base URL for a deployment name (e.g. ``acme``)."""
    return f"https://{deployment}.service-now.com"


class ServiceNowClient:
    """HTTP client for the ServiceNow Table API.

    Features:
    - HTTP Basic authentication on every request
    - Centralized error handling (non-2xx -> ServiceNowAPIError)
    - Page signal decoding from X-Total-Count / Link headers

    Usage:
        client = ServiceNowClient("https://acme.service-now.com", "admin", "password")
        page = client.query("sys_user", "active=true", ["sys_id"], limit=50)
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
    ):
        """Initialize ServiceNow client.

        Args:
            base_url: Instance URL (e.g. https://acme.service-now.com)
            username: Integration user name
            password: Integration user password
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self._auth = (username, password)
        self.timeout = timeout

    def table_url(self, table: str, sys_id: Optional[str] = None) -> str:
        url = f"{self.base_url}{TABLE_API_PATH}/{table}"
        if sys_id:
            url = f"{url}/{sys_id}"
        return url

    def _headers(self, include_body: bool = False) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if include_body:
            headers["X-no-response-body"] = "false"
        return headers

    @staticmethod
    def _params(
        query: str = "",
        fields: Optional[List[str]] = None,
        limit: int = 0,
        offset: int = 0,
    ) -> Dict[str, str]:
        params = {"sysparm_exclude_reference_link": "true"}
        if query:
            params["sysparm_query"] = query
        if fields:
            params["sysparm_fields"] = ",".join(fields)
        if limit:
            params["sysparm_limit"] = str(limit)
        if offset:
            params["sysparm_offset"] = str(offset)
        return params

    def query(
        self,
        table: str,
        query: str = "",
        fields: Optional[List[str]] = None,
        limit: int = 0,
        offset: int = 0,
    ) -> Page:
        """Fetch one page of records matching an encoded query.

        Args:
            table: Table name (e.g. sys_user_has_role)
            query: Encoded query (clauses joined by ^ / ^OR)
            fields: Columns to return
            limit: Page size (0 lets the instance decide)
            offset: Zero-based record offset

        Returns:
            Page with the decoded records and the paging signal

        Raises:
            ServiceNowAPIError: On HTTP error
            ResponseDecodeError: On malformed body or paging headers
        """
        url = self.table_url(table)
        resp = requests.get(
            url,
            params=self._params(query, fields, limit, offset),
            headers=self._headers(),
            auth=self._auth,
            timeout=self.timeout,
        )
        self._handle_error(resp)
        records = self._result(resp)
        if not isinstance(records, list):
            raise ResponseDecodeError(f"Expected a list result from {url}")
        return Page(records=records, signal=self._page_signal(resp))

    def get(self, table: str, sys_id: str, fields: Optional[List[str]] = None) -> Dict[str, Any]:
        """Fetch a single record by sys_id.

        Raises:
            ResourceNotFoundError: If the record does not exist
            ServiceNowAPIError: On any other HTTP error
        """
        url = self.table_url(table, sys_id)
        resp = requests.get(
            url,
            params=self._params(fields=fields),
            headers=self._headers(),
            auth=self._auth,
            timeout=self.timeout,
        )
        if resp.status_code == 404:
            raise ResourceNotFoundError(f"{table} record '{sys_id}' not found")
        self._handle_error(resp)
        return self._record(resp)

    def create(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record and return the stored representation."""
        url = self.table_url(table)
        resp = requests.post(
            url,
            json=payload,
            params=self._params(),
            headers=self._headers(include_body=True),
            auth=self._auth,
            timeout=self.timeout,
        )
        self._handle_error(resp)
        return self._record(resp)

    def update(self, table: str, sys_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Patch columns of an existing record."""
        url = self.table_url(table, sys_id)
        resp = requests.patch(
            url,
            json=payload,
            params=self._params(),
            headers=self._headers(include_body=True),
            auth=self._auth,
            timeout=self.timeout,
        )
        self._handle_error(resp)
        return self._record(resp)

    def delete(self, table: str, sys_id: str) -> None:
        """Delete a record by sys_id."""
        url = self.table_url(table, sys_id)
        resp = requests.delete(
            url,
            headers=self._headers(),
            auth=self._auth,
            timeout=self.timeout,
        )
        self._handle_error(resp)

    def query_all(
        self,
        table: str,
        query: str,
        fields: Optional[List[str]],
        page_size: int,
    ) -> List[Dict[str, Any]]:
        """Collect every record matching ``query`` by paging until the last page."""
        records: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = self.query(table, query, fields, limit=page_size, offset=offset)
            records.extend(page.records)
            if page.is_last(offset, page_size):
                return records
            offset += len(page.records)

    def delete_all(self, table: str, sys_ids: List[str]) -> List[str]:
        """Delete records in order, stopping at the first failure.

        Returns:
            The deleted sys_ids

        Raises:
            PartialRevokeError: If a delete fails after at least one succeeded
            ServiceNowAPIError: If the first delete fails (nothing was changed)
        """
        deleted: List[str] = []
        for sys_id in sys_ids:
            try:
                self.delete(table, sys_id)
            except (ServiceNowError, requests.RequestException) as exc:
                if not deleted:
                    raise
                raise PartialRevokeError(deleted, sys_id, exc) from exc
            deleted.append(sys_id)
        return deleted

    def _handle_error(self, resp: requests.Response) -> None:
        """Centralized error handling for HTTP responses.

        Raises:
            ServiceNowAPIError: If response status indicates error
        """
        if resp.status_code >= 300:
            raise ServiceNowAPIError(resp.status_code, resp.text, resp.url)

    @staticmethod
    def _result(resp: requests.Response) -> Any:
        try:
            body = resp.json()
        except ValueError as exc:
            raise ResponseDecodeError(f"Invalid JSON from {resp.url}: {exc}") from exc
        if not isinstance(body, dict) or "result" not in body:
            raise ResponseDecodeError(f"Missing 'result' in response from {resp.url}")
        return body["result"]

    def _record(self, resp: requests.Response) -> Dict[str, Any]:
        record = self._result(resp)
        if not isinstance(record, dict):
            raise ResponseDecodeError(f"Expected an object result from {resp.url}")
        return record

    @staticmethod
    def _page_signal(resp: requests.Response) -> PageSignal:
        """Decode the paging headers into a page signal.

        X-Total-Count wins when present; otherwise a Link rel="next" header
        means more records exist.
        """
        total_header = resp.headers.get("X-Total-Count")
        if total_header:
            try:
                return TotalCount(int(total_header))
            except ValueError as exc:
                raise ResponseDecodeError(f"Invalid X-Total-Count header: {total_header!r}") from exc

        next_link = (resp.links or {}).get("next")
        if next_link and next_link.get("url"):
            offset = parse_qs(urlparse(next_link["url"]).query).get("sysparm_offset", ["0"])[0]
            try:
                return HasMore(int(offset))
            except ValueError as exc:
                raise ResponseDecodeError(f"Invalid next-page offset: {offset!r}") from exc

        return NoSignal()
