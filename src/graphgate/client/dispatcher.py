"""Request dispatch with token attachment, session routing and bounded retries."""

from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from graphgate.auth.manager import CredentialManager
from graphgate.client.binding import (
    BoundRequest,
    OperationDescriptor,
    bind_parameters,
)
from graphgate.client.normalizer import NormalizedResponse, normalize_response
from graphgate.client.retry import Action, RetryStateMachine
from graphgate.client.sessions import (
    SESSION_HEADER,
    SessionAffinityCache,
    SessionCloseResult,
)
from graphgate.errors import (
    GatewayError,
    InsufficientScope,
    MissingResourceContext,
    Unauthorized,
    UpstreamError,
)

logger = logging.getLogger(__name__)

# Templates under these prefixes address resources directly, without a session
RESOURCE_SCOPED_PREFIXES = (
    "/drive",
    "/users",
    "/me",
    "/teams",
    "/chats",
    "/planner",
    "/sites",
)


def is_resource_scoped(path: str) -> bool:
    return path.startswith(RESOURCE_SCOPED_PREFIXES)


def unroutable_operations(
    operations: Iterable[OperationDescriptor],
) -> list[OperationDescriptor]:
    """Operations that would always fail with MissingResourceContext.

    They sit outside every resource-scoped prefix and declare no resource
    parameter, so the prefix list does not cover them.
    """
    return [
        operation
        for operation in operations
        if not is_resource_scoped(operation.path) and not operation.resource_parameter
    ]


class RequestDispatcher:
    """Executes catalog operations against the upstream API.

    The dispatcher is the only layer that retries. Each call gets at most one
    retry after a forced token refresh (401) and at most one after a scope
    expansion (403 with a scope error), and the bound request is reused
    unchanged for every attempt.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        sessions: SessionAffinityCache,
        http_client: httpx.AsyncClient,
        base_url: str,
        timeout: float = 30.0,
    ):
        self._credentials = credentials
        self._sessions = sessions
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    # ================================
    # Dispatch
    # ================================

    async def dispatch(
        self,
        descriptor: OperationDescriptor,
        params: dict[str, Any],
        *,
        raw_response: bool = False,
    ) -> NormalizedResponse:
        """Bind, send and normalize one operation call.

        Raises:
            InvalidRequest: If the parameters cannot be bound
            MissingResourceContext: If the operation needs a workbook file
                and none was given
            NoCredential: If nobody is signed in
            Unauthorized: If the token is rejected after a forced refresh
            InsufficientScope: If the call lacks permissions after escalation
            UpstreamError: For any other failure response or a timeout
        """
        request = bind_parameters(descriptor, params)
        url, resource_path = self._route(request)
        logger.info(f"Calling {request.method} {request.path}")

        machine = RetryStateMachine()
        token = await self._credentials.get_token()
        session_id = await self._session_for(request, resource_path, token)
        scope_error_body: str | None = None

        while True:
            response = await self._send(request, url, token, session_id)
            decision = machine.next(
                response.status_code,
                response.text if response.status_code == 403 else "",
                tier_expanded=self._credentials.has_expanded_scope_permissions(),
                can_refresh=not self._credentials.uses_external_token,
            )

            if decision.action is Action.RETURN:
                result = normalize_response(response, raw=raw_response)
                self._log_result(result)
                return result

            if decision.action is Action.REFRESH_AND_RETRY:
                logger.info("Access token rejected, refreshing and retrying")
                token = await self._credentials.get_token(force_refresh=True)
                if session_id is not None:
                    # Sessions may be bound to the token that created them
                    self._sessions.invalidate(resource_path)
                    session_id = await self._sessions.get_or_create(resource_path, token)
                continue

            if decision.action is Action.ESCALATE_AND_RETRY:
                scope_error_body = response.text
                logger.info("403 scope error detected, attempting to expand scopes")
                if not await self._credentials.expand_scope_tier():
                    machine.escalation_refused()
                    raise InsufficientScope(
                        "Microsoft Graph API scope error: 403 and silent scope "
                        "expansion was refused",
                        status=403,
                        body=scope_error_body,
                    )
                token = await self._credentials.get_token()
                logger.info("Retrying request with expanded scopes")
                continue

            raise self._failure(decision.error, response, scope_error_body)

    def _route(self, request: BoundRequest) -> tuple[str, str | None]:
        """Resolve the effective URL and the workbook path, if any."""
        target = request.path_with_query

        if is_resource_scoped(request.path):
            return f"{self.base_url}{target}", None

        if request.resource_path:
            return self._sessions.workbook_url(request.resource_path, target), (
                request.resource_path
            )

        raise MissingResourceContext(
            f"Operation {request.path} acts on a workbook but no file path was given"
        )

    async def _session_for(
        self, request: BoundRequest, resource_path: str | None, token: str
    ) -> str | None:
        """Session to attach. Only write operations create one."""
        if resource_path is None:
            return None
        if request.method == "GET":
            return self._sessions.get(resource_path)
        return await self._sessions.get_or_create(resource_path, token)

    async def _send(
        self,
        request: BoundRequest,
        url: str,
        token: str,
        session_id: str | None,
    ) -> httpx.Response:
        headers = dict(request.headers)
        headers["Authorization"] = f"Bearer {token}"
        if session_id is not None:
            headers[SESSION_HEADER] = session_id

        kwargs: dict[str, Any] = {}
        if request.has_body:
            headers.setdefault("Content-Type", "application/json")
            if isinstance(request.body, str):
                kwargs["content"] = request.body.encode()
            else:
                kwargs["json"] = request.body

        try:
            response = await self._http_client.request(
                request.method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise UpstreamError(
                f"Microsoft Graph API request timed out: {request.method} {request.path}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Microsoft Graph API request failed: {e}") from e

        logger.debug(f"{request.method} {request.path} -> {response.status_code}")
        return response

    def _failure(
        self,
        error: type[GatewayError] | None,
        response: httpx.Response,
        scope_error_body: str | None,
    ) -> GatewayError:
        status = response.status_code
        if error is Unauthorized:
            return Unauthorized(
                "Access token rejected after refresh", status=status, body=response.text
            )
        if error is InsufficientScope:
            return InsufficientScope(
                f"Microsoft Graph API scope error: {status} {response.reason_phrase}",
                status=status,
                body=scope_error_body or response.text,
            )
        logger.error(f"Microsoft Graph API error: {status} {response.reason_phrase}")
        return UpstreamError(
            f"Microsoft Graph API error: {status} {response.reason_phrase}",
            status=status,
            body=response.text,
        )

    def _log_result(self, result: NormalizedResponse) -> None:
        logger.debug(f"Response kind={result.kind.value} size={result.content_length}")
        if isinstance(result.data, dict) and isinstance(result.data.get("value"), list):
            logger.info(f"Response contains {len(result.data['value'])} items")
        if result.next_link:
            logger.info("Response has pagination nextLink")

    # ================================
    # Sessions
    # ================================

    async def close_session(self, resource_path: str) -> SessionCloseResult:
        return await self._sessions.close(resource_path, self._credentials.get_token)

    async def close_all_sessions(self) -> list[SessionCloseResult]:
        return await self._sessions.close_all(self._credentials.get_token)
