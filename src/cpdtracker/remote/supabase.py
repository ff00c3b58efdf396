"""
Supabase adapter (PostgREST tables under /rest/v1, GoTrue under /auth/v1).

Listing uses limit/offset and stops at the first short page. Writes ask for
`Prefer: return=representation` so the stored row, including its generated
id, comes back in the response body.
"""
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from cpdtracker.remote.base import (
    SUPABASE,
    AuthenticationError,
    MissingCollectionError,
    RecordNotFoundError,
    RemoteError,
)
from cpdtracker.remote.http import HttpRemoteAdapter

logger = logging.getLogger(__name__)

RETURN_REPRESENTATION = {"Prefer": "return=representation"}

# PostgREST / Postgres error codes
UNDEFINED_TABLE_CODES = {"42P01", "PGRST205"}
NO_ROWS_CODE = "PGRST116"


class SupabaseAdapter(HttpRemoteAdapter):
    name = "supabase"
    dialect = SUPABASE
    health_path = "/auth/v1/health"

    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.token)

    def _headers(self) -> Dict[str, str]:
        headers = {"apikey": self.api_key}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def is_authenticated(self) -> bool:
        if not self.is_configured():
            return False
        try:
            resp = await self._request("GET", "/auth/v1/user")
        except AuthenticationError as exc:
            logger.info("Supabase session rejected: %s", exc)
            return False
        user = self._json(resp) or {}
        if not self._owner_id and user.get("id"):
            self._owner_id = user["id"]
        return True

    async def list_by_owner(self, collection: str, owner_id: str) -> AsyncIterator[Dict[str, Any]]:
        offset = 0
        while True:
            resp = await self._request(
                "GET",
                f"/rest/v1/{collection}",
                collection=collection,
                params={
                    "select": "*",
                    self.dialect.owner_field: f"eq.{owner_id}",
                    "order": f"{self.dialect.updated_field}.desc,id.asc",
                    "limit": self.page_size,
                    "offset": offset,
                },
            )
            rows = self._json(resp) or []
            for row in rows:
                yield row
            if len(rows) < self.page_size:
                break
            offset += len(rows)

    async def create(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._request(
            "POST",
            f"/rest/v1/{collection}",
            collection=collection,
            headers=RETURN_REPRESENTATION,
            json=payload,
        )
        return self._first_row(resp, collection)

    async def update(
        self, collection: str, remote_id: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        resp = await self._request(
            "PATCH",
            f"/rest/v1/{collection}",
            collection=collection,
            record_id=remote_id,
            headers=RETURN_REPRESENTATION,
            params={"id": f"eq.{remote_id}"},
            json=payload,
        )
        return self._first_row(resp, collection, remote_id)

    async def delete(self, collection: str, remote_id: str) -> None:
        resp = await self._request(
            "DELETE",
            f"/rest/v1/{collection}",
            collection=collection,
            record_id=remote_id,
            headers=RETURN_REPRESENTATION,
            params={"id": f"eq.{remote_id}"},
        )
        self._first_row(resp, collection, remote_id)

    def _first_row(
        self, resp: httpx.Response, collection: str, remote_id: Optional[str] = None
    ) -> Dict[str, Any]:
        rows = self._json(resp)
        if isinstance(rows, dict):
            return rows
        if not rows:
            # PostgREST filters silently match nothing
            raise RecordNotFoundError(f"{collection} record {remote_id} not found")
        return rows[0]

    def _classify(
        self,
        resp: httpx.Response,
        *,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> RemoteError:
        code = self._error_code(resp)
        if code in UNDEFINED_TABLE_CODES and collection:
            return MissingCollectionError(collection, self._error_message(resp))
        if code == NO_ROWS_CODE:
            return RecordNotFoundError(self._error_message(resp) or f"Record {record_id} not found")
        return super()._classify(resp, collection=collection, record_id=record_id)

    @staticmethod
    def _error_code(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return ""
        return str(body.get("code") or "") if isinstance(body, dict) else ""
