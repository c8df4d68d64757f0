from __future__ import annotations

import argparse
import time

from minutes.config import settings
from minutes.context import get_context
from minutes.logging_utils import configure_logging, get_logger
from minutes.pipeline import release_expired_text_pending


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    parser = argparse.ArgumentParser(
        description="Release jobs that have waited too long for their message text."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sweep and exit.",
    )
    parser.add_argument(
        "--poll-seconds",
        type=int,
        default=settings.sweeper_poll_seconds,
        help="Polling interval in seconds when not using --once.",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=int,
        default=settings.text_pending_timeout_s,
        help="How long a job may wait for its message text before it is released.",
    )
    args = parser.parse_args()

    if args.poll_seconds <= 0:
        raise SystemExit("--poll-seconds must be > 0")
    if args.timeout_seconds < 0:
        raise SystemExit("--timeout-seconds must be >= 0")

    ctx = get_context()
    while True:
        try:
            summary = release_expired_text_pending(ctx, timeout_s=args.timeout_seconds)
            logger.info(
                "text_pending_sweeper.pass pending=%s released=%s",
                summary["pending"],
                summary["released"],
            )
        except Exception as exc:  # pragma: no cover - runtime hardening for service loop
            logger.exception("text_pending_sweeper.pass_failed error=%s", str(exc))
            if args.once:
                raise
        if args.once:
            return
        time.sleep(args.poll_seconds)


if __name__ == "__main__":
    main()
