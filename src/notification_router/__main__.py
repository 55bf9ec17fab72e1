"""Command-line entry point for notification-router.

Loads the engine configuration and a requests file, runs the requests
through a ``NotificationEngine``, waits for deferred work, and prints a JSON
summary of the resulting notification states.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

from notification_router.core.config import (
    ConfigurationError,
    EnvironmentVariableError,
    load_main_config,
)
from notification_router.core.engine import NotificationEngine
from notification_router.exceptions import NotificationRouterError
from notification_router.storage.memory import InMemoryRecipientDirectory
from notification_router.types.models import utc_now
from notification_router.utils.logging import configure_logging
from notification_router.utils.sanitization import sanitize_exception
from notification_router.workload import Workload, load_workload

__all__ = ["main", "run_workload"]

DEFAULT_CONFIG_PATH: Path = Path("config/notification-router.yaml")

# Exit codes
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 1


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    CLI Arguments:
        --config, -c: Path to the engine configuration file
        --requests, -r: Path to the requests file to submit
        --log-level: Override log level from config
        --no-syslog: Disable syslog integration
        --linger: Seconds to keep running for scheduled and retried work
    """
    parser = argparse.ArgumentParser(
        prog="notification-router",
        description="Route notifications across email, SMS and push channels",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  notification-router --requests requests.yaml
  notification-router --config config.yaml --requests requests.yaml --linger 10
  notification-router -r requests.yaml --log-level DEBUG --no-syslog
        """,
    )

    _ = parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to engine configuration file (default: {DEFAULT_CONFIG_PATH})",
        metavar="PATH",
    )

    _ = parser.add_argument(
        "--requests",
        "-r",
        type=Path,
        required=True,
        help="Path to the YAML requests file",
        metavar="PATH",
    )

    _ = parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration",
        metavar="LEVEL",
    )

    _ = parser.add_argument(
        "--no-syslog",
        action="store_true",
        help="Disable syslog integration (useful for development)",
    )

    _ = parser.add_argument(
        "--linger",
        type=float,
        default=0.0,
        help="Seconds to wait for scheduled deliveries before exiting (default: 0)",
        metavar="SECONDS",
    )

    return parser.parse_args(argv)


async def run_workload(engine: NotificationEngine, workload: Workload, *, linger: float = 0.0) -> dict[str, object]:
    """Submit the workload through a started engine and summarize the outcome.

    Per-request errors (unknown users, past schedule times) are reported in
    the summary instead of aborting the run.
    """
    logger = logging.getLogger(__name__)
    errors: list[dict[str, object]] = []
    submitted: list[int] = []

    for index, entry in enumerate(workload.notifications):
        try:
            notification = await engine.service.send_notification(entry.to_request(utc_now()))
        except (NotificationRouterError, ValueError) as exc:
            logger.warning("Notification request %d rejected: %s", index, exc)
            errors.append({"request": index, "error": sanitize_exception(exc)})
            continue
        if notification.id is not None:
            submitted.append(notification.id)

    batches = [await engine.service.send_batch(request) for request in workload.batches]
    for batch in batches:
        submitted.extend(result.notification_id for result in batch.results if result.notification_id is not None)

    cancellations: list[dict[str, object]] = []
    for notification_id in workload.cancellations:
        result = await engine.service.cancel_notification(notification_id)
        cancellations.append(
            {"notification_id": notification_id, "cancelled": result.cancelled, "message": result.message}
        )

    if linger > 0:
        logger.info("Lingering for %.1fs to let deferred work run", linger)
        await asyncio.sleep(linger)
    await engine.drain()

    notifications: list[dict[str, object]] = []
    for notification_id in dict.fromkeys(submitted):
        stored = await engine.store.get(notification_id)
        if stored is not None:
            notifications.append(stored.to_dict())

    return {
        "notifications": notifications,
        "batches": [batch.to_dict() for batch in batches],
        "cancellations": cancellations,
        "dead_letters": [
            {
                "notification_id": entry.notification_id,
                "reason": entry.reason,
                "recorded_at": entry.recorded_at.isoformat(),
            }
            for entry in engine.dead_letters.entries
        ],
        "errors": errors,
    }


async def async_main(
    *,
    config_path: Path,
    requests_path: Path,
    log_level: str | None = None,
    enable_syslog: bool = True,
    linger: float = 0.0,
) -> dict[str, object]:
    """Load configuration and requests, then run them through the engine.

    Raises:
        ConfigurationError: If configuration or requests are invalid
        EnvironmentVariableError: If a required environment variable is missing
    """
    config = load_main_config(config_path)
    if log_level is not None:
        config.application.log_level = log_level

    configure_logging(
        log_level=config.application.log_level,
        enable_syslog=enable_syslog and config.application.syslog_enabled,
        enable_console=True,
    )
    logger = logging.getLogger(__name__)
    logger.info("Notification router starting", extra={"config_path": str(config_path)})

    workload = load_workload(requests_path)
    directory = InMemoryRecipientDirectory(entry.to_recipient() for entry in workload.recipients)

    async with NotificationEngine(config, directory=directory, channel_stream=sys.stderr) as engine:
        summary = await run_workload(engine, workload, linger=linger)

    logger.info("Notification router shutdown complete")
    return summary


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point.

    Exit Codes:
        0: All requests processed
        1: Configuration error or runtime error
    """
    args = parse_arguments(argv)

    try:
        config_path_arg: Path = args.config  # pyright: ignore[reportAny]  # argparse boundary
        requests_path_arg: Path = args.requests  # pyright: ignore[reportAny]  # argparse boundary
        log_level_arg: str | None = args.log_level  # pyright: ignore[reportAny]  # argparse boundary
        no_syslog_arg: bool = args.no_syslog  # pyright: ignore[reportAny]  # argparse boundary
        linger_arg: float = args.linger  # pyright: ignore[reportAny]  # argparse boundary

        summary = asyncio.run(
            async_main(
                config_path=config_path_arg,
                requests_path=requests_path_arg,
                log_level=log_level_arg,
                enable_syslog=not no_syslog_arg,
                linger=linger_arg,
            )
        )

    except ConfigurationError as exc:
        print(f"Configuration error:\n{exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    except EnvironmentVariableError as exc:
        print(f"Environment variable error:\n{exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    except RuntimeError as exc:
        print(f"Runtime error: {exc}", file=sys.stderr)
        sys.exit(EXIT_RUNTIME_ERROR)

    except KeyboardInterrupt:
        print("\nShutdown complete", file=sys.stderr)
        sys.exit(EXIT_SUCCESS)

    print(json.dumps(summary, indent=2, default=str))
    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
