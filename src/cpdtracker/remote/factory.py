"""Choose the remote adapter from configuration."""
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from cpdtracker.config import Settings
from cpdtracker.remote.base import NotConfiguredError, RemoteAdapter
from cpdtracker.remote.pocketbase import PocketBaseAdapter
from cpdtracker.remote.supabase import SupabaseAdapter

logger = logging.getLogger(__name__)

ADAPTERS = {
    "pocketbase": PocketBaseAdapter,
    "supabase": SupabaseAdapter,
}


class UnconfiguredAdapter(RemoteAdapter):
    """Purely local mode: no backend, every remote call reports so."""

    name = "local"

    def is_configured(self) -> bool:
        return False

    async def is_authenticated(self) -> bool:
        return False

    async def list_by_owner(self, collection: str, owner_id: str) -> AsyncIterator[Dict[str, Any]]:
        raise NotConfiguredError("Sync backend is not configured")
        yield  # pragma: no cover

    async def create(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotConfiguredError("Sync backend is not configured")

    async def update(
        self, collection: str, remote_id: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        raise NotConfiguredError("Sync backend is not configured")

    async def delete(self, collection: str, remote_id: str) -> None:
        raise NotConfiguredError("Sync backend is not configured")

    async def health_check(self) -> bool:
        return False


def build_adapter(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> RemoteAdapter:
    """
    Build the adapter named by settings.sync_backend.

    Raises:
        ValueError: unknown backend name.
    """
    backend = settings.sync_backend.strip().lower()
    if not backend or not settings.backend_url:
        logger.info("No sync backend configured; running in local-only mode")
        return UnconfiguredAdapter()

    adapter_cls = ADAPTERS.get(backend)
    if adapter_cls is None:
        raise ValueError(
            f"Unknown sync backend {settings.sync_backend!r} "
            f"(expected one of: {', '.join(sorted(ADAPTERS))})"
        )
    return adapter_cls(
        settings.backend_url,
        api_key=settings.backend_key,
        token=settings.auth_token,
        owner_id=settings.owner_id,
        page_size=settings.page_size,
        timeout=settings.request_timeout_seconds,
        health_timeout=settings.health_timeout_seconds,
        retry_attempts=settings.retry_attempts,
        retry_wait=settings.retry_wait_seconds,
        transport=transport,
    )
