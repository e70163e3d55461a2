import asyncio
import json

import httpx
import pytest

from graphgate.client.sessions import SESSION_HEADER, SessionAffinityCache
from graphgate.errors import NoCredential, UpstreamError
from helpers import GraphStub

BASE_URL = "https://graph.example.com/v1.0"
CREATE_PATH = "/v1.0/me/drive/root:/Reports/Q1.xlsx:/workbook/createSession"
CLOSE_PATH = "/v1.0/me/drive/root:/Reports/Q1.xlsx:/workbook/closeSession"


async def token() -> str:
    return "token-1"


class TestSessionCreation:
    def setup_method(self):
        # Arrange
        self.graph = GraphStub()
        self.cache = SessionAffinityCache(self.graph.client(), BASE_URL)

    async def test_concurrent_first_requests_share_one_creation(self):
        # Arrange
        self.graph.add("POST", CREATE_PATH, httpx.Response(201, json={"id": "session-1"}))

        # Act
        handles = await asyncio.gather(
            *(self.cache.get_or_create("/Reports/Q1.xlsx", "token-1") for _ in range(5))
        )

        # Assert
        assert handles == ["session-1"] * 5
        assert len(self.graph.calls("POST", CREATE_PATH)) == 1
        assert self.cache.get("/Reports/Q1.xlsx") == "session-1"

    async def test_creation_requests_persistent_session(self):
        # Arrange
        self.graph.add("POST", CREATE_PATH, httpx.Response(201, json={"id": "session-1"}))

        # Act
        await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")

        # Assert
        request = self.graph.calls("POST", CREATE_PATH)[0]
        assert request.headers["Authorization"] == "Bearer token-1"
        assert json.loads(request.read()) == {"persistChanges": True}

    async def test_cached_session_is_reused(self):
        # Arrange
        self.graph.add("POST", CREATE_PATH, httpx.Response(201, json={"id": "session-1"}))
        await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")

        # Act
        handle = await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")

        # Assert
        assert handle == "session-1"
        assert len(self.graph.requests) == 1

    async def test_failed_creation_raises_and_caches_nothing(self):
        # Arrange
        self.graph.add(
            "POST",
            CREATE_PATH,
            httpx.Response(500, json={"error": {"code": "generalException"}}),
            httpx.Response(201, json={"id": "session-2"}),
        )

        # Act & Assert
        with pytest.raises(UpstreamError) as exc_info:
            await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")
        assert exc_info.value.status == 500
        assert self.cache.get("/Reports/Q1.xlsx") is None

        # A later call tries again
        assert await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1") == "session-2"

    async def test_timeout_during_creation_is_retried_once(self):
        # Arrange
        self.cache.retry_backoff = 0
        self.graph.add(
            "POST",
            CREATE_PATH,
            httpx.ReadTimeout("slow"),
            httpx.Response(201, json={"id": "session-1"}),
        )

        # Act
        handle = await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")

        # Assert
        assert handle == "session-1"
        assert len(self.graph.calls("POST", CREATE_PATH)) == 2

    async def test_second_network_failure_during_creation_raises(self):
        # Arrange
        self.cache.retry_backoff = 0
        self.graph.add("POST", CREATE_PATH, httpx.ConnectError("unreachable"))

        # Act & Assert
        with pytest.raises(UpstreamError, match="unreachable"):
            await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")
        assert len(self.graph.calls("POST", CREATE_PATH)) == 2
        assert self.cache.get("/Reports/Q1.xlsx") is None

    async def test_response_without_id_raises(self):
        # Arrange
        self.graph.add("POST", CREATE_PATH, httpx.Response(201, json={}))

        # Act & Assert
        with pytest.raises(UpstreamError, match="no id"):
            await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")

    def test_workbook_url_encodes_file_path(self):
        # Act
        url = self.cache.workbook_url("/My Files/Q1.xlsx", "/workbook/worksheets")

        # Assert
        assert url == f"{BASE_URL}/me/drive/root:/My%20Files/Q1.xlsx:/workbook/worksheets"


class TestSessionClose:
    def setup_method(self):
        # Arrange
        self.graph = GraphStub()
        self.graph.add("POST", CREATE_PATH, httpx.Response(201, json={"id": "session-1"}))
        self.cache = SessionAffinityCache(self.graph.client(), BASE_URL)

    async def test_close_sends_session_header_and_evicts(self):
        # Arrange
        self.graph.add("POST", CLOSE_PATH, httpx.Response(204))
        await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")

        # Act
        result = await self.cache.close("/Reports/Q1.xlsx", token)

        # Assert
        assert result.success
        assert self.cache.get("/Reports/Q1.xlsx") is None
        close_request = self.graph.calls("POST", CLOSE_PATH)[0]
        assert close_request.headers[SESSION_HEADER] == "session-1"

    async def test_close_without_session_reports_failure(self):
        # Act
        result = await self.cache.close("/Reports/Missing.xlsx", token)

        # Assert
        assert not result.success
        assert result.message == "No active session for the specified file"

    async def test_upstream_failure_still_evicts(self):
        # Arrange
        self.graph.add("POST", CLOSE_PATH, httpx.Response(500))
        await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")

        # Act
        result = await self.cache.close("/Reports/Q1.xlsx", token)

        # Assert
        assert not result.success
        assert self.cache.resource_paths == []

    async def test_close_all_never_raises(self):
        # Arrange
        await self.cache.get_or_create("/Reports/Q1.xlsx", "token-1")

        async def no_token() -> str:
            raise NoCredential("signed out")

        # Act
        results = await self.cache.close_all(no_token)

        # Assert
        assert [r.success for r in results] == [False]
        assert self.cache.resource_paths == []
