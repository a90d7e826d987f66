import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from logging.config import dictConfig
from typing import Any, Dict, List, Optional

import aiohttp
import sentry_sdk

from social.skyscraper.app.config import Settings
from social.skyscraper.app.orchestrator import AuthOrchestrator
from social.skyscraper.atproto.errors import AuthError
from social.skyscraper.model.session import SessionStore
from social.skyscraper.resolve.handle import ServerDiscovery

logger = logging.getLogger(__name__)


def configure_logging(level: str = "error", debug: bool = False) -> None:
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(stream=sys.stderr)
    logging.getLogger().setLevel(logging.DEBUG if debug else level.upper())


def configure_sentry(settings: Settings) -> None:
    if settings.sentry_dsn is not None:
        sentry_sdk.init(dsn=settings.sentry_dsn, debug=settings.debug)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="skyscraper", description="Authenticate with Bluesky"
    )
    parser.add_argument(
        "-l",
        "--log-level",
        default="error",
        choices=["critical", "error", "warning", "info", "debug"],
        help="Log level written to stderr.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Log in and store the session.")
    login.add_argument(
        "-u", "--handle", help="Bluesky handle (e.g. alice.bsky.social)."
    )
    login.add_argument(
        "--app-password",
        action="store_true",
        default=None,
        help="Use app password authentication instead of OAuth.",
    )
    login.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL instead of opening a browser.",
    )

    subparsers.add_parser("restore", help="Restore the stored session.")
    subparsers.add_parser("logout", help="Remove the stored session.")

    discover = subparsers.add_parser(
        "discover", help="Resolve a handle to its authorization server."
    )
    discover.add_argument("handle", help="The handle or DID to resolve.")

    return parser


async def run_login(
    settings: Settings,
    orchestrator: AuthOrchestrator,
    store: SessionStore,
    args: Dict[str, Any],
) -> int:
    handle: Optional[str] = (
        args.get("handle") or settings.default_handle or store.last_handle()
    )
    if not handle:
        handle = input("Handle: ").strip()

    use_app_password = args.get("app_password")
    if use_app_password is None:
        use_app_password = settings.prefer_app_password

    if use_app_password:
        password = getpass.getpass("App password: ")
        record = await orchestrator.login_app_password(handle, password)
    else:
        record = await orchestrator.login(
            handle,
            on_authorization_url=lambda url: print(
                f"Open this URL to authorize Skyscraper:\n{url}", file=sys.stderr
            ),
        )

    print(f"Logged in as {record.handle} ({record.did})")
    return 0


async def realMain(argv: Optional[List[str]] = None) -> int:
    args = vars(build_parser().parse_args(argv))

    overrides: Dict[str, Any] = {}
    if args.get("no_browser"):
        overrides["open_browser"] = False
    settings = Settings(**overrides)

    configure_logging(args.get("log_level", "error"), settings.debug)
    configure_sentry(settings)

    store = SessionStore(settings.config_dir)
    command = args.get("command")

    async with aiohttp.ClientSession(timeout=settings.client_timeout()) as http_session:
        orchestrator = AuthOrchestrator(settings, http_session, store)

        try:
            if command == "login":
                return await run_login(settings, orchestrator, store, args)

            if command == "restore":
                record = await orchestrator.restore()
                if record is None:
                    print("Not logged in", file=sys.stderr)
                    return 1
                print(f"Logged in as {record.handle} ({record.did})")
                return 0

            if command == "logout":
                await orchestrator.logout()
                print("Logged out")
                return 0

            if command == "discover":
                discovery = ServerDiscovery(
                    http_session, settings.service, settings.plc_directory
                )
                endpoints = await discovery.discover(args["handle"])
                print(endpoints.model_dump_json(indent=2))
                return 0

        except AuthError as e:
            logger.debug("Command %s failed", command, exc_info=True)
            print(f"Error: {e}", file=sys.stderr)
            return 1

    return 2


def invoke() -> None:
    sys.exit(asyncio.run(realMain()))


if __name__ == "__main__":
    invoke()
