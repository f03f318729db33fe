"""
record_store.py: async clients for the managed backend.

RecordStore talks to the PostgREST collections, ObjectStorage to the storage
bucket holding receipt files. Neither retries nor caches; every failure
surfaces as RecordStoreError.
"""
import logging
from typing import Any, Optional, Union

import httpx

from config import Settings, get_settings
from errors import NotFoundError, RecordStoreError

logger = logging.getLogger(__name__)


def _headers(api_key: str, access_token: Optional[str] = None) -> dict[str, str]:
    return {
        "apikey": api_key,
        "Authorization": f"Bearer {access_token or api_key}",
        "Content-Type": "application/json",
    }


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or payload)
    return str(payload)


class BackendClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        access_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=_headers(api_key, access_token),
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning(f"backend_unreachable: method={method} path={path} error={exc}")
            raise RecordStoreError(f"{method} {path} failed: {exc}") from exc
        if resp.is_error:
            raise RecordStoreError(_error_message(resp), status_code=resp.status_code)
        return resp

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class RecordStore(BackendClient):
    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        service: bool = False,
        access_token: Optional[str] = None,
    ) -> "RecordStore":
        settings = settings or get_settings()
        key = settings.supabase_service_key if service else settings.supabase_anon_key
        if not settings.supabase_url or not key:
            raise ValueError("SUPABASE_URL and an API key must be configured")
        return cls(
            settings.supabase_url,
            key,
            access_token=access_token,
            timeout=settings.http_timeout_secs,
        )

    async def select(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        *,
        order: Optional[str] = None,
        descending: bool = False,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        params: dict[str, str] = {"select": columns}
        for key, value in (filters or {}).items():
            params[key] = _filter_value(value)
        if order:
            params["order"] = f"{order}.{'desc' if descending else 'asc'}"
        resp = await self._request("GET", f"/rest/v1/{table}", params=params)
        return resp.json()

    async def get(self, table: str, record_id: str, *, columns: str = "*") -> dict[str, Any]:
        rows = await self.select(table, {"id": record_id}, columns=columns)
        if not rows:
            raise NotFoundError(f"{table} {record_id} not found")
        return rows[0]

    async def insert(
        self, table: str, data: Union[dict[str, Any], list[dict[str, Any]]]
    ) -> list[dict[str, Any]]:
        resp = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=data,
            headers={"Prefer": "return=representation"},
        )
        result = resp.json()
        return result if isinstance(result, list) else [result]

    async def update(
        self, table: str, record_id: str, data: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        resp = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params={"id": _filter_value(record_id)},
            json=data,
            headers={"Prefer": "return=representation"},
        )
        result = resp.json()
        return result[0] if isinstance(result, list) and result else None

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        if not filters:
            raise ValueError("Refusing to delete without a filter")
        params = {key: _filter_value(value) for key, value in filters.items()}
        await self._request("DELETE", f"/rest/v1/{table}", params=params)


class ObjectStorage(BackendClient):
    def __init__(self, base_url: str, api_key: str, bucket: str, **kwargs: Any) -> None:
        super().__init__(base_url, api_key, **kwargs)
        self.bucket = bucket

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, *, access_token: Optional[str] = None
    ) -> "ObjectStorage":
        settings = settings or get_settings()
        if not settings.supabase_url or not settings.supabase_anon_key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY must be configured")
        return cls(
            settings.supabase_url,
            settings.supabase_anon_key,
            settings.receipts_bucket,
            access_token=access_token,
            timeout=settings.http_timeout_secs,
        )

    async def upload(self, path: str, content: bytes, content_type: str) -> None:
        await self._request(
            "POST",
            f"/storage/v1/object/{self.bucket}/{path}",
            content=content,
            headers={"Content-Type": content_type},
        )

    async def remove(self, paths: list[str]) -> None:
        await self._request(
            "DELETE", f"/storage/v1/object/{self.bucket}", json={"prefixes": paths}
        )

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"
