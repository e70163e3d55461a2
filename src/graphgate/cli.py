"""Command line entry point.

Usage:
    graphgate --login
    graphgate --list-accounts
    graphgate --call list-mail-messages --arguments '{"top": 5}'
    graphgate --call get-excel-range --arguments '{"filePath": "/Q1.xlsx", ...}'

Every command prints one JSON document on stdout. Device code instructions
and logs go to stderr.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from graphgate.app import Gateway
from graphgate.config import Settings
from graphgate.errors import GatewayError, InvalidRequest
from graphgate.tools.models import ToolResult

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="graphgate",
        description="Authenticated gateway to Microsoft Graph operations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    commands = parser.add_mutually_exclusive_group()
    commands.add_argument("--login", action="store_true", help="Sign in with a device code")
    commands.add_argument("--logout", action="store_true", help="Sign out of every account")
    commands.add_argument(
        "--verify-login", action="store_true", help="Check that the current credential works"
    )
    commands.add_argument("--list-accounts", action="store_true", help="List cached accounts")
    commands.add_argument("--select-account", metavar="ID", help="Switch the selected account")
    commands.add_argument("--remove-account", metavar="ID", help="Remove a cached account")
    commands.add_argument("--list-tools", action="store_true", help="List available tools")
    commands.add_argument("--call", metavar="ALIAS", help="Invoke a tool")

    parser.add_argument(
        "--arguments", metavar="JSON", default="{}", help="JSON object of tool arguments"
    )
    parser.add_argument("--catalog", type=Path, help="Operation catalog file")
    parser.add_argument(
        "--read-only", action="store_true", help="Only expose GET operations"
    )
    parser.add_argument(
        "--enabled-tools", metavar="REGEX", help="Only expose tools whose alias matches"
    )
    parser.add_argument(
        "--org-mode",
        "--work-mode",
        dest="org_mode",
        action="store_true",
        help="Request organization scopes from the first login",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if args.catalog is not None:
        settings.catalog_path = args.catalog
    if args.read_only:
        settings.read_only = True
    if args.enabled_tools:
        settings.enabled_tools = args.enabled_tools
    if args.org_mode:
        settings.org_mode = True
    return settings


def emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def emit_result(result: ToolResult) -> int:
    for content in result.content:
        print(content.text)
    return 1 if result.is_error else 0


def parse_arguments(raw: str) -> dict[str, Any]:
    try:
        arguments = json.loads(raw)
    except ValueError as e:
        raise InvalidRequest(f"--arguments is not valid JSON: {e}") from e
    if not isinstance(arguments, dict):
        raise InvalidRequest("--arguments must be a JSON object")
    return arguments


async def run_command(gateway: Gateway, args: argparse.Namespace) -> int:
    registry = gateway.registry

    if args.login:
        await gateway.credentials.acquire_interactive(
            lambda text: print(text, file=sys.stderr, flush=True)
        )
        status = await gateway.auth_tools.check_login()
        emit(status)
        return 0 if status["success"] else 1

    if args.logout:
        return emit_result(await registry.call("logout"))

    if args.verify_login:
        status = await gateway.auth_tools.check_login()
        emit(status)
        return 0 if status["success"] else 1

    if args.list_accounts:
        return emit_result(await registry.call("list-accounts"))

    if args.select_account:
        return emit_result(
            await registry.call("select-account", {"accountId": args.select_account})
        )

    if args.remove_account:
        return emit_result(
            await registry.call("remove-account", {"accountId": args.remove_account})
        )

    if args.list_tools:
        emit(
            [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "readOnly": tool.read_only,
                }
                for tool in registry.list_tools()
            ]
        )
        return 0

    if args.call:
        arguments = parse_arguments(args.arguments)
        try:
            result = await registry.call(args.call, arguments)
        except KeyError:
            emit({"error": "unknown_tool", "message": f"Unknown tool: {args.call}"})
            return 1
        return emit_result(result)

    emit({"error": "no_command", "message": "No command given, see --help"})
    return 1


async def run(args: argparse.Namespace) -> int:
    try:
        settings = apply_overrides(Settings.from_env(), args)
        gateway = await Gateway.create(settings)
    except GatewayError as e:
        logger.error(f"Failed to start: {e.message}")
        emit(e.to_dict())
        return 1
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        emit({"error": "invalid_configuration", "message": str(e)})
        return 1

    async with gateway:
        try:
            return await run_command(gateway, args)
        except GatewayError as e:
            emit(e.to_dict())
            return 1


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        exit_code = asyncio.run(run(args))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
