"""
httpx plumbing shared by the REST-backed adapters.

Every request goes through _request(), which:
  - refuses to run when the adapter is not configured
  - maps transport failures, timeouts and 5xx responses to ConnectivityError
    and retries those with exponential backoff (tenacity)
  - hands any other non-2xx response to _classify() so each backend can map
    its own error bodies onto the RemoteError taxonomy
"""
import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cpdtracker.remote.base import (
    AuthenticationError,
    ConnectivityError,
    NotConfiguredError,
    RecordNotFoundError,
    RemoteAdapter,
    RemoteError,
    RemoteValidationError,
)

logger = logging.getLogger(__name__)


class HttpRemoteAdapter(RemoteAdapter):
    health_path: str = "/"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        token: str = "",
        owner_id: str = "",
        page_size: int = 100,
        timeout: float = 10.0,
        health_timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_wait: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Backend root URL, e.g. "https://pb.example.com".
            api_key: Project API key (Supabase anon key).
            token: Session token of the signed-in user.
            owner_id: Remote user id; discovered via is_authenticated() if empty.
            page_size: Records per listing request.
            transport: Optional httpx transport (httpx.MockTransport in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.token = token
        self._owner_id = owner_id or None
        self.page_size = page_size
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_wait = retry_wait
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner_id

    def is_configured(self) -> bool:
        return bool(self.base_url and self.token)

    def _headers(self) -> Dict[str, str]:
        return {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        if not self.base_url:
            return False
        try:
            resp = await self._get_client().get(
                self.health_path,
                headers=self._headers(),
                timeout=self.health_timeout,
            )
        except httpx.HTTPError as exc:
            logger.debug("%s health check failed: %s", self.name, exc)
            return False
        return resp.is_success

    # ─── Request pipeline ─────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send one request with retry on connectivity failures.

        Raises:
            NotConfiguredError: URL or credentials missing.
            ConnectivityError: still failing after retry_attempts tries.
            RemoteError: subclass chosen by _classify() for 4xx responses.
        """
        if not self.is_configured():
            raise NotConfiguredError(f"{self.name} sync backend is not configured")

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            retry=retry_if_exception_type(ConnectivityError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                resp = await self._send(method, path, headers=headers, **kwargs)
        if resp.is_success:
            return resp
        raise self._classify(resp, collection=collection, record_id=record_id)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        client = self._get_client()
        try:
            resp = await client.request(
                method, path, headers={**self._headers(), **(headers or {})}, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise ConnectivityError(f"{self.name} request timed out: {method} {path}") from exc
        except httpx.RequestError as exc:
            raise ConnectivityError(f"{self.name} unreachable: {exc}") from exc
        if resp.status_code >= 500:
            raise ConnectivityError(
                f"{self.name} server error {resp.status_code}: {self._error_message(resp)}"
            )
        return resp

    def _classify(
        self,
        resp: httpx.Response,
        *,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> RemoteError:
        """Map a 4xx response onto the RemoteError taxonomy."""
        message = self._error_message(resp)
        status = resp.status_code
        if status in (401, 403):
            return AuthenticationError(message or "Session rejected by the sync backend")
        if status == 404:
            return RecordNotFoundError(message or f"Record {record_id} not found")
        if status in (400, 409, 422):
            return RemoteValidationError(message or "Payload rejected by the sync backend")
        return RemoteError(f"Unexpected response {status}: {message}")

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(body, dict):
            return str(body.get("message") or body.get("msg") or body.get("error") or "")
        return ""

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError(f"Invalid JSON from sync backend: {exc}") from exc
