"""
SessionKit Desktop Entry Point.

Bootstraps the session dependency graph via constructor injection,
restores any stored session and, on request, runs a Google sign-in
through the local callback server.  Every subsystem is wired here.

Usage::

    python main.py            # restore and report the current session
    python main.py google     # sign in with Google in the default browser
    python main.py logout     # end the current session
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import sys
import traceback
from typing import Optional

from sessionkit.config import AppConfig, get_config
from sessionkit.events import get_session_events
from sessionkit.logger import StructuredLogger, get_logger
from sessionkit.models.auth_models import AuthResult, GoogleWebSignInResult
from sessionkit.oauth.browser import CallbackWindow, SystemBrowserWindow
from sessionkit.oauth.callback_server import OAuthCallbackServer
from sessionkit.oauth.mailbox import FileMailbox
from sessionkit.oauth.web_relay import GoogleWebRelay
from sessionkit.services import ServiceContainer, create_services, create_storage

_SIGN_IN_TIMEOUT_S: float = 300.0
_DRAIN_INTERVAL_S: float = 1.0


async def _run_google_sign_in(
    config: AppConfig,
    services: ServiceContainer,
    mailbox: FileMailbox,
    logger: StructuredLogger,
) -> Optional[AuthResult]:
    """Open the browser, wait for the callback and exchange the result."""
    auth_service = services["auth_service"]
    relay = services["web_relay"]
    if relay is None:
        logger.error("Google web sign-in is unavailable without a browser.")
        return None

    def relay_factory(window: CallbackWindow) -> GoogleWebRelay:
        return GoogleWebRelay(
            config=config,
            window=window,
            state_storage=services["state_storage"],
            mailbox=mailbox,
            logger=get_logger("sessionkit.callback"),
        )

    server = OAuthCallbackServer(
        config=config,
        relay_factory=relay_factory,
        logger=get_logger("sessionkit.callback"),
    )
    started, reason = server.start()
    if not started:
        return AuthResult(success=False, error_message=reason)

    arrived: asyncio.Queue[GoogleWebSignInResult] = asyncio.Queue()
    stop_watching = relay.watch(arrived.put_nowait)
    try:
        started_result = await auth_service.sign_in_with_google()
        if not started_result.pending:
            return started_result

        logger.info("Waiting for Google sign-in to complete in the browser...")
        deadline = asyncio.get_running_loop().time() + _SIGN_IN_TIMEOUT_S
        while asyncio.get_running_loop().time() < deadline:
            # The watcher may miss a write on some filesystems; poll as well.
            drained = await relay.drain()
            if drained is not None:
                return await auth_service.complete_google_result(drained)
            try:
                result = await asyncio.wait_for(arrived.get(), timeout=_DRAIN_INTERVAL_S)
            except asyncio.TimeoutError:
                continue
            return await auth_service.complete_google_result(result)

        logger.warning("Google sign-in timed out after %.0fs.", _SIGN_IN_TIMEOUT_S)
        return None
    finally:
        stop_watching()
        await relay.join()
        mailbox.stop()
        server.stop()


async def run(command: Optional[str]) -> int:
    """Wire dependencies, restore the session and run *command*."""
    logger: StructuredLogger = get_logger("main")
    logger.info("Starting SessionKit...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Durable session storage (encrypted SQLite)
    # ------------------------------------------------------------------
    storage = create_storage(config, get_logger("sessionkit.storage"))

    # storage.close() is idempotent, so the atexit hook and the finally
    # block below may both run it.
    atexit.register(storage.close)

    # ------------------------------------------------------------------
    # 3. Google relay contexts (default browser + shared mailbox)
    # ------------------------------------------------------------------
    mailbox = FileMailbox(
        directory=config.mailbox_dir,
        logger=get_logger("sessionkit.mailbox"),
    )
    window = SystemBrowserWindow(
        origin=config.callback_origin,
        logger=get_logger("sessionkit.browser"),
    )

    # ------------------------------------------------------------------
    # 4. Service container (single composition root)
    # ------------------------------------------------------------------
    services = create_services(
        config=config,
        storage=storage,
        window=window,
        mailbox=mailbox,
        events=get_session_events(),
    )
    session = services["session"]
    auth_service = services["auth_service"]

    try:
        # --------------------------------------------------------------
        # 5. Restore the stored session, then pick up a relayed result
        # --------------------------------------------------------------
        user = await session.initialize()
        pending = await auth_service.complete_google_sign_in()
        if pending is not None:
            _report(pending, logger)
            user = session.user

        # --------------------------------------------------------------
        # 6. Command
        # --------------------------------------------------------------
        if command == "google":
            result = await _run_google_sign_in(config, services, mailbox, logger)
            if result is None:
                return 1
            _report(result, logger)
            return 0 if result.success else 1

        if command == "logout":
            await auth_service.logout()
            print("Signed out.")
            return 0

        if user is None:
            print("No active session.")
        else:
            print(f"Signed in as {user.full_name or user.email} ({user.email}).")
        return 0
    finally:
        session.close()
        await services["events"].join()
        storage.close()
        logger.info("SessionKit shut down.")


def _report(result: AuthResult, logger: StructuredLogger) -> None:
    if result.success:
        print(f"Signed in as {result.full_name or result.email}.")
    elif result.should_alert:
        logger.warning("Sign-in failed: %s", result.error_message)
        print(f"Sign-in failed: {result.error_message}", file=sys.stderr)
    else:
        print("Sign-in cancelled.")


def _show_fatal_error(exc: BaseException) -> None:
    """Write a fatal error with its traceback to stderr."""
    detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    sys.stderr.write(
        "The application encountered an unexpected error and cannot continue.\n\n"
        f"FATAL: {type(exc).__name__}: {exc}\n{detail}"
    )


def main(argv: Optional[list[str]] = None) -> int:
    """Application entry point."""
    parser = argparse.ArgumentParser(
        prog="sessionkit",
        description="Restore, start or end an authenticated session.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=("status", "google", "logout"),
        default="status",
        help="Action to run after the session is restored.",
    )
    args = parser.parse_args(argv)
    return asyncio.run(run(args.command))


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        _show_fatal_error(exc)
        sys.exit(1)
