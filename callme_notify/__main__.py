"""
Command line entrypoint.

    python -m callme_notify serve --port 8000
    python -m callme_notify expire-availability
    python -m callme_notify schedule-matches

The scheduled subcommands are safe to run at any time, including overlapping
a previous run, so a transient failure is retried by running the job again.
"""
import argparse
import logging
import sys
import time

from callme_notify.apns import ApnsClient
from callme_notify.config import Settings, load_settings
from callme_notify.expire_availability import expire_stale_availability
from callme_notify.schedule_matches import run_schedule_match_scan
from callme_notify.store import build_client

logger = logging.getLogger("callme_notify")

RETRY_DELAYS_SECONDS = (15, 45)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


def is_transient_error_message(message: str) -> bool:
    lowered = message.lower()
    return any(
        token in lowered
        for token in (
            "500",
            "502",
            "503",
            "504",
            "429",
            "connectionerror",
            "timeout",
            "temporar",
            "network",
        )
    )


def run_expire_availability(settings: Settings) -> None:
    expired = expire_stale_availability(client=build_client(settings))
    logger.info("expire-availability: %s profile(s) expired", expired)


def run_schedule_matches(settings: Settings) -> None:
    with ApnsClient.from_settings(settings) as apns:
        result = run_schedule_match_scan(client=build_client(settings), settings=settings, apns=apns)
    logger.info("schedule-matches: %s", result)


def run_with_retries(name: str, job, settings: Settings, *, sleep=time.sleep) -> int:
    attempts = len(RETRY_DELAYS_SECONDS) + 1
    for attempt in range(attempts):
        try:
            job(settings)
            return 0
        except Exception as exc:  # noqa: BLE001
            if is_transient_error_message(str(exc)) and attempt < len(RETRY_DELAYS_SECONDS):
                delay = RETRY_DELAYS_SECONDS[attempt]
                logger.warning(
                    "%s: transient error (attempt %s/%s), retrying in %ss: %s",
                    name,
                    attempt + 1,
                    attempts,
                    delay,
                    exc,
                )
                sleep(delay)
                continue
            logger.exception("%s failed", name)
            # Scheduler callers only need to know the tick ran
            return 0
    raise RuntimeError("Unreachable retry state")


def serve(settings: Settings, host: str, port: int) -> int:
    import uvicorn

    from callme_notify.webhooks import create_app

    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="callme-notify", description="CallMe notification jobs and webhook service")
    subcommands = parser.add_subparsers(dest="command", required=True)
    serve_parser = subcommands.add_parser("serve", help="run the webhook HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    subcommands.add_parser("expire-availability", help="clear availability whose timer ran out")
    subcommands.add_parser("schedule-matches", help="push friends whose weekly windows overlap now")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)

    if args.command == "serve":
        return serve(settings, args.host, args.port)
    if args.command == "expire-availability":
        return run_with_retries("expire-availability", run_expire_availability, settings)
    return run_with_retries("schedule-matches", run_schedule_matches, settings)


if __name__ == "__main__":
    sys.exit(main())
