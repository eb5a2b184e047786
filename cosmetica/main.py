"""
Main entry point for the Cosmetica session client.

Runs a session for one identity from the command line: either a single
authenticate-and-sync pass (``--once``) or a long-running session with
periodic resync and credential revalidation.
"""

import os
import sys
import json
import signal
import asyncio
import argparse
import logging
from typing import Optional

from cosmetica_shared.logging_config import setup_logging, LogLevel, LogFormat
from cosmetica_shared.exceptions import CosmeticaError
from cosmetica_shared.models import Identity, LoadTarget
from cosmetica.config import ClientConfiguration
from cosmetica.session import Session
from cosmetica.ui import LoggingUserInterface

logger = logging.getLogger(__name__)

ACCESS_TOKEN_ENV = 'COSMETICA_ACCESS_TOKEN'


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Cosmetica session client",
        epilog="""
Examples:
  %(prog)s --uuid <uuid> --username Steve --once     # Authenticate, sync settings and exit
  %(prog)s --uuid <uuid> --username Steve            # Keep the session alive until interrupted

  The platform access token is read from --access-token or $COSMETICA_ACCESS_TOKEN.
  An operator token in $COSMETICA_TOKEN bypasses the token exchange.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument("--once", action="store_true",
                        help="Authenticate, synchronise settings, print a JSON summary and exit")

    identity_group = parser.add_argument_group('Identity')
    identity_group.add_argument("--uuid", type=str, required=True, metavar="UUID",
                                help="User id of the local identity")
    identity_group.add_argument("--username", type=str, required=True, metavar="NAME",
                                help="Display name of the local identity")
    identity_group.add_argument("--access-token", type=str, metavar="TOKEN",
                                help=f"Platform access token (default: ${ACCESS_TOKEN_ENV})")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--api-url", type=str, metavar="URL",
                              help="Override API base URL")
    config_group.add_argument("--timeout", type=float, metavar="SECONDS",
                              help="Give up on --once after this many seconds (default: 60)")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Also log to this file")
    debug_group.add_argument("--log-format", type=str, choices=[f.value for f in LogFormat],
                             help="Log output format")

    return parser.parse_args(argv)


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging from arguments, falling back to configuration."""
    if args.debug:
        log_level = LogLevel.DEBUG
    else:
        try:
            log_level = LogLevel(config.get_log_level())
        except ValueError:
            log_level = LogLevel.INFO

    log_format = LogFormat(args.log_format or config.get_log_format())
    setup_logging(
        log_level=log_level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file()
    )


def build_summary(session: Session) -> dict:
    """Describe the session outcome without exposing credentials."""
    issued = session.coordinator.current_credential
    settings = session.synchronizer.settings
    return {
        'user': session.identity.key,
        'username': session.identity.display_name,
        'state': session.coordinator.state.value,
        'authenticated': session.coordinator.is_authenticated_as(session.identity),
        'credential_source': issued.source.value if issued else None,
        'settings': settings.raw if settings else None,
        'regional_effects_prompt': session.synchronizer.rse_warning_pending,
        'offline': bool(session.api_client.is_offline()),
    }


async def run_once(session: Session, timeout: float) -> int:
    """Authenticate and sync once, then print a JSON summary."""
    await session.start(background=False)
    try:
        session.ui.set_loading(True)
        session.synchronizer.request_load_target(LoadTarget.DEFAULT)
        session.mark_client_loaded()

        try:
            await session.wait_until_idle(timeout)
        except asyncio.TimeoutError:
            logger.error(f"Session did not settle within {timeout} seconds")

        summary = build_summary(session)
    finally:
        await session.close()

    print(json.dumps(summary, indent=2))
    return 0 if summary['authenticated'] else 1


async def run_session(session: Session) -> int:
    """Run the session until interrupted."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # not supported on this platform; KeyboardInterrupt still applies
            pass

    async with session:
        session.mark_client_loaded()
        logger.info("Session running, press Ctrl+C to stop")
        await stop_event.wait()

    return 0


def main(argv=None) -> int:
    """Main entry point for the client."""
    args: Optional[argparse.Namespace] = None
    try:
        args = parse_arguments(argv)

        config = ClientConfiguration(args.config)
        if args.api_url:
            config.set_override('server.api_url', args.api_url)

        configure_logging(args, config)

        identity = Identity(user_id=args.uuid, display_name=args.username)
        access_token = args.access_token or os.environ.get(ACCESS_TOKEN_ENV)
        session = Session(config, identity, access_token=access_token, ui=LoggingUserInterface())

        if args.once:
            return asyncio.run(run_once(session, args.timeout or 60.0))
        return asyncio.run(run_session(session))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except (CosmeticaError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        logger.exception("Fatal error in main")
        return 1


if __name__ == "__main__":
    sys.exit(main())
