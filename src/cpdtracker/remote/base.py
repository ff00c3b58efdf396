"""
Remote store interface shared by every sync backend.

The sync engine talks only to RemoteAdapter; it never knows whether records
land in PocketBase or Supabase. Backend differences in wire shape (owner
field name, timestamp fields and format, null handling) are described by a
WireDialect that the record mapper consumes.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional


# ── Exceptions ────────────────────────────────────────────────────────────────

class RemoteError(RuntimeError):
    """Base class for every failure reported by a remote adapter."""


class NotConfiguredError(RemoteError):
    """Raised when no backend URL or credentials are configured."""


class ConnectivityError(RemoteError):
    """Transport failure, timeout or 5xx response. Retryable."""


class AuthenticationError(RemoteError):
    """The backend rejected the session (401/403)."""


class RemoteValidationError(RemoteError):
    """The backend rejected a payload as malformed."""


class MissingCollectionError(RemoteError):
    """The collection/table does not exist on the backend (misconfiguration)."""

    def __init__(self, collection: str, message: str = ""):
        self.collection = collection
        super().__init__(
            message or f"Collection '{collection}' does not exist on the sync backend"
        )


class RecordNotFoundError(RemoteError):
    """The record addressed by remote id does not exist."""


# ── Wire dialects ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WireDialect:
    name: str
    owner_field: str
    updated_field: str
    timestamp_sep: str = "T"
    # PocketBase stores absent values as "" / 0 rather than null
    blank_nulls: bool = False


POCKETBASE = WireDialect(
    name="pocketbase",
    owner_field="user",
    updated_field="updated",
    timestamp_sep=" ",
    blank_nulls=True,
)

SUPABASE = WireDialect(
    name="supabase",
    owner_field="user_id",
    updated_field="updated_at",
)


# ── Interface ─────────────────────────────────────────────────────────────────

class RemoteAdapter(ABC):
    """
    Uniform async contract over a remote record store.

    Implementations raise the RemoteError subclasses above; they never leak
    transport-library exceptions to callers.
    """

    name: str = "remote"
    dialect: WireDialect = POCKETBASE
    base_url: str = ""

    @property
    def owner_id(self) -> Optional[str]:
        """Identifier of the signed-in user, or None when unknown."""
        return None

    @abstractmethod
    def is_configured(self) -> bool:
        """True when URL and credentials are present. Makes no network call."""

    @abstractmethod
    async def is_authenticated(self) -> bool:
        """
        True when the backend accepts the current session.

        Raises:
            ConnectivityError: if the backend cannot be reached.
        """

    @abstractmethod
    def list_by_owner(self, collection: str, owner_id: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield every record of `collection` owned by `owner_id`.

        Pagination is handled internally; callers see one flat stream.
        """

    @abstractmethod
    async def create(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a record. Returns the stored record including its remote id."""

    @abstractmethod
    async def update(
        self, collection: str, remote_id: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Replace a record's fields.

        Raises:
            RecordNotFoundError: no record with that remote id.
        """

    @abstractmethod
    async def delete(self, collection: str, remote_id: str) -> None:
        """
        Delete a record.

        Raises:
            RecordNotFoundError: no record with that remote id.
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """Bounded reachability probe. Never raises; for status display only."""

    async def aclose(self) -> None:
        """Release network resources."""
