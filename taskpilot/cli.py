#!/usr/bin/env python3
"""
Command line front end for taskpilot.

Usage:
    taskpilot login [--provider github] [--no-browser]
    taskpilot status
    taskpilot generate "Plan a launch" [--list-id LIST] [--send 1 3 | --send-all]
    taskpilot logout
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from .auth_gateway import SupabaseAuthGateway
from .models import Notification, Session
from .oauth_callback_server import OAuthCallbackServer
from .service_clients import BoardServiceClient, TaskServiceClient
from .settings import Settings
from .view_controller import ViewController

logger = logging.getLogger(__name__)

_ICONS = {
    "success": "✅",
    "info": "ℹ️ ",
}


def _print_notification(notification: Notification) -> None:
    icon = _ICONS.get(notification.kind.value, "❌")
    print(f"{icon} {notification.message}")


def _build_components(settings: Settings, open_browser: bool = True) -> Tuple[SupabaseAuthGateway, TaskServiceClient, BoardServiceClient]:
    gateway = SupabaseAuthGateway.from_settings(settings, open_browser=open_browser)
    task_client = TaskServiceClient.from_settings(settings)
    board_client = BoardServiceClient.from_settings(settings)
    return gateway, task_client, board_client


async def _close_all(*closables) -> None:
    for closable in closables:
        try:
            await closable.close()
        except Exception as e:
            logger.warning(f"Error while closing {type(closable).__name__}: {e}")


async def run_login(settings: Settings, args: argparse.Namespace) -> int:
    gateway, task_client, board_client = _build_components(settings, open_browser=not args.no_browser)
    signed_in = asyncio.Event()
    try:
        async with ViewController(gateway, task_client, board_client, on_notify=_print_notification) as controller:
            if controller.user is not None:
                print(f"✅ Already signed in as {controller.user.display_name}")
                return 0

            def on_change(previous: Optional[Session], current: Optional[Session]) -> None:
                if current is not None:
                    signed_in.set()

            remove_listener = controller.session_store.on_change(on_change)
            redirect = urlparse(settings.redirect_uri)
            server = OAuthCallbackServer(
                gateway,
                host=redirect.hostname or "localhost",
                port=args.port or redirect.port or 8765,
                callback_path=redirect.path or "/auth/callback",
            )
            try:
                async with server:
                    auth_url = controller.sign_in(args.provider)
                    if auth_url is None:
                        return 1
                    print("🔗 Open the following URL in your browser to sign in:")
                    print(f"   {auth_url}")
                    try:
                        await asyncio.wait_for(signed_in.wait(), timeout=args.timeout)
                    except asyncio.TimeoutError:
                        print(f"❌ Timed out after {args.timeout:.0f}s waiting for sign-in.")
                        return 1
            finally:
                remove_listener()

            print(f"✅ Signed in as {controller.user.display_name}")
            return 0
    finally:
        await _close_all(gateway, task_client, board_client)


async def run_logout(settings: Settings, args: argparse.Namespace) -> int:
    gateway, task_client, board_client = _build_components(settings, open_browser=False)
    try:
        async with ViewController(gateway, task_client, board_client, on_notify=_print_notification) as controller:
            if controller.user is None and gateway.session is not None:
                # Stored session could not be restored (e.g. provider unreachable); forget it locally
                gateway.clear_session()
                print("✅ Signed out (removed the stored session)")
                return 0
            return 0 if await controller.sign_out() else 1
    finally:
        await _close_all(gateway, task_client, board_client)


async def run_status(settings: Settings, args: argparse.Namespace) -> int:
    gateway, task_client, board_client = _build_components(settings, open_browser=False)
    try:
        async with ViewController(gateway, task_client, board_client, on_notify=_print_notification) as controller:
            if controller.user is None:
                print("❌ Not signed in")
                return 1
            print(f"✅ Signed in as {controller.user.display_name}")
            return 0
    finally:
        await _close_all(gateway, task_client, board_client)


def _select_tasks(tasks, indices: List[int], send_all: bool):
    if send_all:
        return list(tasks)
    selected = []
    for index in indices:
        if 1 <= index <= len(tasks):
            selected.append(tasks[index - 1])
        else:
            print(f"⚠️  No task #{index}; skipping")
    return selected


async def run_generate(settings: Settings, args: argparse.Namespace) -> int:
    gateway, task_client, board_client = _build_components(settings, open_browser=False)
    try:
        async with ViewController(gateway, task_client, board_client, on_notify=_print_notification) as controller:
            if not args.prompt.strip():
                print("❌ Prompt is empty")
                return 1
            if not await controller.generate(args.prompt):
                return 1

            for number, task in enumerate(controller.tasks, start=1):
                print(f"{number}. [{task.priority.value}] {task.title}")
                if task.description:
                    print(f"   {task.description}")

            to_send = _select_tasks(controller.tasks, args.send or [], args.send_all)
            failures = 0
            for task in to_send:
                if not await controller.send_to_board(task, list_id=args.list_id or ""):
                    failures += 1
            return 1 if failures else 0
    finally:
        await _close_all(gateway, task_client, board_client)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskpilot", description="Generate tasks with AI and send them to Trello")
    parser.add_argument("--env-file", help="Path to a .env file (default: search from the current directory)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Sign in with an identity provider")
    login.add_argument("--provider", default="github", help="OAuth provider name (default: github)")
    login.add_argument("--no-browser", action="store_true", help="Print the sign-in URL without opening a browser")
    login.add_argument("--port", type=int, help="Port for the local callback server (default: from redirect URI)")
    login.add_argument("--timeout", type=float, default=300.0, help="Seconds to wait for sign-in")
    login.set_defaults(handler=run_login)

    logout = subparsers.add_parser("logout", help="Sign out and forget the stored session")
    logout.set_defaults(handler=run_logout)

    status = subparsers.add_parser("status", help="Show the signed-in user")
    status.set_defaults(handler=run_status)

    generate = subparsers.add_parser("generate", help="Generate tasks from a prompt")
    generate.add_argument("prompt", help="What you want to get done")
    generate.add_argument("--list-id", help="Trello list ID to send tasks to")
    send = generate.add_mutually_exclusive_group()
    send.add_argument("--send", type=int, nargs="+", metavar="N", help="Send task number N (1-based) to Trello")
    send.add_argument("--send-all", action="store_true", help="Send every generated task to Trello")
    generate.set_defaults(handler=run_generate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env(args.env_file)
    except ValueError as e:
        print(f"❌ Configuration error: {e}")
        return 1

    logging.getLogger("taskpilot").setLevel(settings.log_level)
    try:
        return asyncio.run(args.handler(settings, args))
    except KeyboardInterrupt:
        print("\n👋 Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
