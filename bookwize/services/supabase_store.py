"""Record store backed by a hosted Supabase (PostgREST) project."""

import logging
from typing import Any, Dict, Optional

import httpx

from bookwize.errors import IntegrityViolation, StoreError, TransientStoreFailure, ZeroOrManyRows
from bookwize.services.http_client import create_async_client, request_with_retry
from bookwize.store import Filters, RecordStore

logger = logging.getLogger(__name__)

SINGLE_OBJECT = "application/vnd.pgrst.object+json"


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"is.{str(value).lower()}"
    return f"eq.{value}"


class SupabaseRecordStore(RecordStore):
    """PostgREST client speaking the same select/insert/update/delete contract.

    ``table_names`` maps collection names onto differently named tables.
    """

    def __init__(self, url: str, api_key: str, timeout: float = 10.0,
                 table_names: Optional[Dict[str, str]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self.base_url = url.rstrip("/") + "/rest/v1"
        self.table_names = table_names or {}
        self._client = create_async_client(self.base_url, headers, timeout, transport)

    def _path(self, collection: str) -> str:
        return "/" + self.table_names.get(collection, collection)

    @staticmethod
    def _params(filters: Filters) -> Dict[str, str]:
        return {name: _filter_value(value) for name, value in (filters or {}).items()}

    @staticmethod
    def _headers(single: bool, returning: bool = False) -> Dict[str, str]:
        headers = {}
        if single:
            headers["Accept"] = SINGLE_OBJECT
        if returning:
            headers["Prefer"] = "return=representation"
        return headers

    async def _send(self, collection: str, method: str, *, retry: bool = False, **kwargs) -> httpx.Response:
        path = self._path(collection)
        try:
            if retry:
                response = await request_with_retry(self._client, method, path, **kwargs)
            else:
                response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            logger.error(f"Supabase {method} {path} unreachable: {exc!r}")
            raise TransientStoreFailure(f"Supabase unreachable: {exc}") from exc

        if response.status_code < 400:
            return response
        if response.status_code == 406:
            raise ZeroOrManyRows(collection)
        if response.status_code == 409:
            raise IntegrityViolation(response.text)
        if response.status_code >= 500 or response.status_code == 429:
            logger.error(f"Supabase {method} {path} failed: {response.status_code} - {response.text}")
            raise TransientStoreFailure(f"Supabase returned {response.status_code}")
        raise StoreError(f"Supabase returned {response.status_code}: {response.text}")

    async def select(self, collection, filters=None, *, single=False):
        params = {"select": "*", **self._params(filters)}
        response = await self._send(collection, "GET", retry=True, params=params,
                                    headers=self._headers(single))
        return response.json()

    async def insert(self, collection, record):
        response = await self._send(collection, "POST", json=record,
                                    headers=self._headers(single=False, returning=True))
        rows = response.json()
        return rows[0] if isinstance(rows, list) else rows

    async def update(self, collection, filters, patch, *, single=False):
        response = await self._send(collection, "PATCH", params=self._params(filters), json=patch,
                                    headers=self._headers(single, returning=True))
        return response.json()

    async def delete(self, collection, filters):
        await self._send(collection, "DELETE", params=self._params(filters))

    async def close(self) -> None:
        await self._client.aclose()
