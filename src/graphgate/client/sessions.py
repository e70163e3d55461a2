"""Workbook session affinity.

Excel workbook operations run inside a session created for one file. The cache
keeps at most one live session per file path, creates it lazily, and makes
concurrent first requests for the same path share a single creation call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable
from urllib.parse import quote

import httpx

from graphgate.errors import GatewayError, UpstreamError

logger = logging.getLogger(__name__)

SESSION_HEADER = "workbook-session-id"


@dataclass(frozen=True)
class SessionCloseResult:
    resource_path: str
    success: bool
    message: str

    def to_dict(self) -> dict[str, object]:
        return {
            "resourcePath": self.resource_path,
            "success": self.success,
            "message": self.message,
        }


class SessionAffinityCache:
    """Maps workbook file paths to session handles.

    Lookups and creations for different paths never block each other; only
    callers racing to create the same path wait on one another.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        timeout: float = 30.0,
        persist_changes: bool = True,
        retry_backoff: float = 1.0,
    ):
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.persist_changes = persist_changes
        self.retry_backoff = retry_backoff
        self._sessions: dict[str, str] = {}  # resource path -> session id
        self._pending: dict[str, asyncio.Task[str]] = {}

    # ================================
    # Access
    # ================================

    def get(self, resource_path: str) -> str | None:
        return self._sessions.get(resource_path)

    @property
    def resource_paths(self) -> list[str]:
        return list(self._sessions)

    def workbook_url(self, resource_path: str, endpoint: str = "") -> str:
        """Resource-scoped URL for an operation on the given file."""
        return f"{self.base_url}/me/drive/root:{quote(resource_path, safe='/')}:{endpoint}"

    # ================================
    # Creation
    # ================================

    async def get_or_create(self, resource_path: str, token: str) -> str:
        """Return the cached session, creating it if needed.

        If another caller is already creating a session for this path, wait
        for that creation instead of issuing a second request.

        Raises:
            UpstreamError: If the session could not be created
        """
        session_id = self._sessions.get(resource_path)
        if session_id is not None:
            return session_id

        task = self._pending.get(resource_path)
        if task is None:
            task = asyncio.create_task(self._create(resource_path, token))
            self._pending[resource_path] = task
            task.add_done_callback(partial(self._forget_pending, resource_path))
        else:
            logger.debug(f"Waiting for in-flight session creation for {resource_path}")

        return await asyncio.shield(task)

    def _forget_pending(self, resource_path: str, task: asyncio.Task[str]) -> None:
        if self._pending.get(resource_path) is task:
            del self._pending[resource_path]

    async def _create(self, resource_path: str, token: str) -> str:
        logger.info(f"Creating workbook session for {resource_path}")
        response = await self._post_create(resource_path, token)

        if not response.is_success:
            logger.error(
                f"Failed to create session for {resource_path}: "
                f"{response.status_code} - {response.text}"
            )
            raise UpstreamError(
                f"Failed to create session for {resource_path}",
                status=response.status_code,
                body=response.text,
            )

        try:
            session_id = response.json()["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamError(
                f"Session response for {resource_path} carried no id",
                status=response.status_code,
                body=response.text,
            ) from e

        self._sessions[resource_path] = session_id
        logger.info(f"Session created for {resource_path}")
        return session_id

    async def _post_create(self, resource_path: str, token: str) -> httpx.Response:
        """Send createSession, retrying once on a timeout or network failure."""
        url = self.workbook_url(resource_path, "/workbook/createSession")
        kwargs = {
            "json": {"persistChanges": self.persist_changes},
            "headers": {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            "timeout": self.timeout,
        }

        try:
            return await self._http_client.post(url, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"Session creation for {resource_path} failed, retrying once: {e}")
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"Failed to create session for {resource_path}: {e}"
            ) from e

        await asyncio.sleep(self.retry_backoff)
        try:
            return await self._http_client.post(url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"Failed to create session for {resource_path}: {e}"
            ) from e

    # ================================
    # Termination
    # ================================

    def invalidate(self, resource_path: str) -> str | None:
        """Drop a cached session without telling the upstream service."""
        return self._sessions.pop(resource_path, None)

    async def close(
        self, resource_path: str, get_token: Callable[[], Awaitable[str]]
    ) -> SessionCloseResult:
        """Close the session for a path. Never raises.

        The session is evicted whether or not the upstream close succeeds.
        """
        session_id = self._sessions.pop(resource_path, None)
        if session_id is None:
            return SessionCloseResult(
                resource_path, False, "No active session for the specified file"
            )

        try:
            token = await get_token()
            response = await self._http_client.post(
                self.workbook_url(resource_path, "/workbook/closeSession"),
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    SESSION_HEADER: session_id,
                },
                timeout=self.timeout,
            )
        except (httpx.HTTPError, GatewayError) as e:
            logger.error(f"Error closing session for {resource_path}: {e}")
            return SessionCloseResult(
                resource_path, False, f"Failed to close session for {resource_path}"
            )

        if not response.is_success:
            logger.error(
                f"Failed to close session for {resource_path}: {response.status_code}"
            )
            return SessionCloseResult(
                resource_path,
                False,
                f"Failed to close session: {response.status_code}",
            )

        logger.info(f"Session for {resource_path} closed")
        return SessionCloseResult(
            resource_path, True, f"Session for {resource_path} closed successfully"
        )

    async def close_all(
        self, get_token: Callable[[], Awaitable[str]]
    ) -> list[SessionCloseResult]:
        """Close every cached session, continuing past individual failures."""
        results = []
        for resource_path in list(self._sessions):
            results.append(await self.close(resource_path, get_token))
        return results
