"""Account management tools: login, logout and account selection."""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel, Field

from graphgate.auth.manager import CredentialManager
from graphgate.auth.models.accounts import ScopeTier
from graphgate.client.binding import OperationDescriptor, ParameterDescriptor, ParamTag
from graphgate.client.dispatcher import RequestDispatcher
from graphgate.errors import GatewayError
from graphgate.tools.models import Tool, ToolResult
from graphgate.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

VERIFY_OPERATION = OperationDescriptor(
    method="GET",
    path="/me",
    parameters=(ParameterDescriptor(name="select", tag=ParamTag.QUERY),),
    alias="verify-login",
)


class LoginArguments(BaseModel):
    force: bool = Field(False, description="Start a new login even if already signed in")
    expanded: bool = Field(False, description="Request the expanded (organization) scopes")


class NoArguments(BaseModel):
    pass


class AccountArguments(BaseModel):
    account_id: str = Field(..., alias="accountId", description="Home account id")


class ResourceSessionArguments(BaseModel):
    file_path: str = Field(..., alias="filePath", description="Path of the workbook file")


class AuthTools:
    """Handlers for the account tools.

    Login runs the device code grant in the background: the tool returns the
    verification instructions as soon as they are known and the grant keeps
    polling after the call completes.
    """

    def __init__(self, credentials: CredentialManager, dispatcher: RequestDispatcher):
        self.credentials = credentials
        self.dispatcher = dispatcher
        self._login_tasks: set[asyncio.Task] = set()

    def register(self, registry: ToolRegistry) -> None:
        entries = [
            ("login", "Sign in with a device code", LoginArguments, self.login, False),
            ("logout", "Sign out of every account", NoArguments, self.logout, False),
            (
                "verify-login",
                "Check that the current credential works",
                NoArguments,
                self.verify_login,
                True,
            ),
            ("list-accounts", "List cached accounts", NoArguments, self.list_accounts, True),
            (
                "select-account",
                "Switch the account used for requests",
                AccountArguments,
                self.select_account,
                False,
            ),
            (
                "remove-account",
                "Remove a cached account and its tokens",
                AccountArguments,
                self.remove_account,
                False,
            ),
            (
                "close-resource-session",
                "Close the workbook session for a file",
                ResourceSessionArguments,
                self.close_resource_session,
                False,
            ),
        ]
        for name, description, model, handler, read_only in entries:
            registry.register(
                Tool(
                    name=name,
                    description=description,
                    input_schema=model.model_json_schema(by_alias=True),
                    read_only=read_only,
                ),
                model,
                handler,
            )

    # ================================
    # Login
    # ================================

    async def login(self, arguments: LoginArguments) -> ToolResult:
        if not arguments.force and (
            self.credentials.selected_account_id is not None
            or self.credentials.uses_external_token
        ):
            status = await self.check_login()
            if status["success"]:
                return ToolResult.json(
                    {
                        "status": "Already logged in",
                        "userData": status.get("userData"),
                    }
                )

        tier = ScopeTier.EXPANDED if arguments.expanded else None
        instructions = await self.start_login(tier)
        return ToolResult.text(instructions)

    async def start_login(self, tier: ScopeTier | None = None) -> str:
        """Start a device code grant and wait only for its instructions.

        Raises:
            GatewayError: If the grant fails before instructions are issued
        """
        loop = asyncio.get_running_loop()
        instructions: asyncio.Future[str] = loop.create_future()

        def on_instructions(text: str) -> None:
            if not instructions.done():
                instructions.set_result(text)

        task = asyncio.create_task(self.credentials.acquire_interactive(on_instructions, tier))
        self._login_tasks.add(task)
        task.add_done_callback(self._finish_login)

        await asyncio.wait({instructions, task}, return_when=asyncio.FIRST_COMPLETED)
        if instructions.done():
            return instructions.result()

        instructions.cancel()
        task.result()  # Raises the grant failure
        raise GatewayError("Login finished without issuing instructions")

    def _finish_login(self, task: asyncio.Task) -> None:
        self._login_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Device code login failed: {error}")

    async def close(self) -> None:
        """Cancel logins still polling in the background."""
        for task in list(self._login_tasks):
            task.cancel()
        if self._login_tasks:
            await asyncio.wait(self._login_tasks)

    async def logout(self, arguments: NoArguments) -> ToolResult:
        await self.dispatcher.close_all_sessions()
        await self.credentials.logout()
        return ToolResult.json({"message": "Logged out successfully"})

    async def check_login(self) -> dict[str, object]:
        try:
            response = await self.dispatcher.dispatch(
                VERIFY_OPERATION,
                {"select": ["displayName", "mail", "userPrincipalName"]},
            )
        except GatewayError as e:
            return {"success": False, "message": f"Login failed: {e.message}"}

        return {
            "success": True,
            "message": "Login successful",
            "userData": response.data,
        }

    async def verify_login(self, arguments: NoArguments) -> ToolResult:
        return ToolResult.json(await self.check_login())

    # ================================
    # Accounts
    # ================================

    async def list_accounts(self, arguments: NoArguments) -> ToolResult:
        selected = self.credentials.selected_account_id
        return ToolResult.json(
            {
                "accounts": [
                    {
                        "id": account.home_account_id,
                        "username": account.username,
                        "name": account.name,
                        "selected": account.home_account_id == selected,
                    }
                    for account in self.credentials.list_accounts()
                ]
            }
        )

    async def select_account(self, arguments: AccountArguments) -> ToolResult:
        if not await self.credentials.select_account(arguments.account_id):
            return ToolResult.error(
                {"error": "account_not_found", "message": f"Account {arguments.account_id} not found"}
            )
        return ToolResult.json({"message": f"Selected account {arguments.account_id}"})

    async def remove_account(self, arguments: AccountArguments) -> ToolResult:
        if not await self.credentials.remove_account(arguments.account_id):
            return ToolResult.error(
                {"error": "account_not_found", "message": f"Account {arguments.account_id} not found"}
            )
        return ToolResult.json({"message": f"Removed account {arguments.account_id}"})

    async def close_resource_session(self, arguments: ResourceSessionArguments) -> ToolResult:
        result = await self.dispatcher.close_session(arguments.file_path)
        return ToolResult.json(result.to_dict(), is_error=not result.success)
