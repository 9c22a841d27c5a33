"""Classification worker process: ``python -m app.worker``."""

from __future__ import annotations

import argparse
import os
import time

import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.infra.logging_config import configure_logging
from app.services.classification_service import ClassificationWorker

logger = structlog.get_logger()

WORKER_POLL_SECONDS = float(os.getenv("WORKER_POLL_SECONDS", "1.0"))
WORKER_RECOVER_SECONDS = float(os.getenv("WORKER_RECOVER_SECONDS", "300"))


def run_pass(worker: ClassificationWorker) -> int:
    try:
        return len(worker.run_due())
    except (RedisError, SQLAlchemyError) as exc:
        logger.error("classification_worker_pass_failed", error=str(exc), exc_info=exc)
        return 0


def recover(worker: ClassificationWorker) -> int:
    try:
        return worker.recover_pending()
    except (RedisError, SQLAlchemyError) as exc:
        logger.error("classification_worker_recover_failed", error=str(exc), exc_info=exc)
        return 0


def run_forever(worker: ClassificationWorker, poll_seconds: float, recover_seconds: float) -> None:
    logger.info("classification_worker_started", poll_seconds=poll_seconds, recover_seconds=recover_seconds)
    next_recovery = 0.0
    while True:
        if time.monotonic() >= next_recovery:
            recover(worker)
            next_recovery = time.monotonic() + recover_seconds
        if not run_pass(worker):
            time.sleep(poll_seconds)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the damage report classification worker.")
    parser.add_argument("--once", action="store_true", help="process due jobs once and exit")
    parser.add_argument("--poll-seconds", type=float, default=WORKER_POLL_SECONDS)
    parser.add_argument("--recover-seconds", type=float, default=WORKER_RECOVER_SECONDS)
    args = parser.parse_args(argv)

    configure_logging()
    worker = ClassificationWorker()
    if args.once:
        recover(worker)
        processed = run_pass(worker)
        logger.info("classification_worker_pass", processed=processed)
        return 0
    try:
        run_forever(worker, args.poll_seconds, args.recover_seconds)
    except KeyboardInterrupt:
        logger.info("classification_worker_stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
