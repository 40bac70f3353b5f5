"""HTTP RecordStore client."""

from __future__ import annotations

import logging
from typing import Any, List, Tuple

import httpx

from app.stores import RecordStoreError


logger = logging.getLogger("docbind.records")

PAGE_SIZE = 100


def _record_ref(item: dict, table_id: str | None) -> dict:
    return {
        "record_id": item.get("record_id") or item.get("id"),
        "table_id": item.get("table_id") or table_id,
        "fields": item.get("fields") or {},
    }


class HttpRecordStore:
    """RecordStore backed by a JSON API rooted at ``base_url``.

    Endpoints (relative to the base URL)::

        GET  tables/{table}/fields
        GET  tables/{table}/records?page_size=&page_token=
        GET  tables/{table}/records/{record}
        PUT  tables/{table}/records/{record}/fields/{field}
        GET  tables/{table}/records/{record}/related/{field}
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("record_store_unreachable method=%s path=%s error=%s", method, path, exc)
            raise RecordStoreError("RECORD_STORE_UNREACHABLE", str(exc), path) from exc
        if resp.status_code >= 400:
            logger.warning("record_store_error method=%s path=%s status=%s", method, path, resp.status_code)
            raise RecordStoreError(
                "RECORD_STORE_HTTP_ERROR",
                f"{resp.status_code} {resp.text[:200]}",
                path,
                resp.status_code,
            )
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            raise RecordStoreError("RECORD_STORE_BAD_RESPONSE", "Response is not JSON", path, resp.status_code) from exc
        if not isinstance(body, dict):
            raise RecordStoreError("RECORD_STORE_BAD_RESPONSE", "Response must be an object", path, resp.status_code)
        return body

    async def get_field_metadata(self, table_id: str) -> List[dict]:
        body = await self._request("GET", f"tables/{table_id}/fields")
        fields = body.get("fields", body.get("items"))
        return list(fields or [])

    async def get_record(self, table_id: str, record_id: str) -> dict:
        body = await self._request("GET", f"tables/{table_id}/records/{record_id}")
        record = body.get("record") or body
        return dict(record.get("fields") or {})

    async def write_field(self, table_id: str, record_id: str, field_id: str, value: Any) -> Any:
        body = await self._request(
            "PUT",
            f"tables/{table_id}/records/{record_id}/fields/{field_id}",
            json={"value": value},
        )
        return body.get("value", value)

    async def fetch_related(self, table_id: str, record_id: str, relation_field_id: str) -> Tuple[List[dict], str | None]:
        body = await self._request("GET", f"tables/{table_id}/records/{record_id}/related/{relation_field_id}")
        related_table_id = body.get("table_id")
        records = [_record_ref(item, related_table_id) for item in body.get("records") or [] if isinstance(item, dict)]
        return records, related_table_id

    async def list_records(self, table_id: str) -> List[dict]:
        records: List[dict] = []
        page_token = None
        while True:
            params = {"page_size": PAGE_SIZE}
            if page_token:
                params["page_token"] = page_token
            body = await self._request("GET", f"tables/{table_id}/records", params=params)
            items = body.get("items") or body.get("records") or []
            records.extend(_record_ref(item, table_id) for item in items if isinstance(item, dict))
            page_token = body.get("page_token")
            if not body.get("has_more") or not page_token:
                break
        logger.debug("list_records table=%s count=%s", table_id, len(records))
        return records
