"""
PocketBase record-store adapter.

Records live at /api/collections/{collection}/records. Listing is paged with
page/perPage and stops at the server-reported totalPages. The session token
goes into the Authorization header as-is (no "Bearer" prefix).

A 404 on a collection-level call means the collection itself is missing;
PocketBase answers record-level calls on a missing collection with
"Missing collection context.", which is told apart by its message.
"""
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from cpdtracker.remote.base import (
    POCKETBASE,
    AuthenticationError,
    MissingCollectionError,
    RemoteError,
)
from cpdtracker.remote.http import HttpRemoteAdapter

logger = logging.getLogger(__name__)


class PocketBaseAdapter(HttpRemoteAdapter):
    name = "pocketbase"
    dialect = POCKETBASE
    health_path = "/api/health"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": self.token} if self.token else {}

    async def is_authenticated(self) -> bool:
        if not self.is_configured():
            return False
        try:
            resp = await self._request("POST", "/api/collections/users/auth-refresh")
        except AuthenticationError as exc:
            logger.info("PocketBase session rejected: %s", exc)
            return False
        body = self._json(resp)
        record = body.get("record") or {}
        if not self._owner_id and record.get("id"):
            self._owner_id = record["id"]
        if body.get("token"):
            self.token = body["token"]
        return True

    async def list_by_owner(self, collection: str, owner_id: str) -> AsyncIterator[Dict[str, Any]]:
        page = 1
        while True:
            resp = await self._request(
                "GET",
                f"/api/collections/{collection}/records",
                collection=collection,
                params={
                    "page": page,
                    "perPage": self.page_size,
                    "filter": f'{self.dialect.owner_field} = "{owner_id}"',
                    "sort": f"-{self.dialect.updated_field}",
                },
            )
            body = self._json(resp)
            items = body.get("items") or []
            for item in items:
                yield item
            if not items or page >= int(body.get("totalPages") or 1):
                break
            page += 1

    async def create(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._request(
            "POST",
            f"/api/collections/{collection}/records",
            collection=collection,
            json=payload,
        )
        return self._json(resp)

    async def update(
        self, collection: str, remote_id: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        resp = await self._request(
            "PATCH",
            f"/api/collections/{collection}/records/{remote_id}",
            collection=collection,
            record_id=remote_id,
            json=payload,
        )
        return self._json(resp)

    async def delete(self, collection: str, remote_id: str) -> None:
        await self._request(
            "DELETE",
            f"/api/collections/{collection}/records/{remote_id}",
            collection=collection,
            record_id=remote_id,
        )

    def _classify(
        self,
        resp: httpx.Response,
        *,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> RemoteError:
        if resp.status_code == 404 and collection:
            message = self._error_message(resp)
            if record_id is None or "collection" in message.lower():
                return MissingCollectionError(collection)
        return super()._classify(resp, collection=collection, record_id=record_id)
