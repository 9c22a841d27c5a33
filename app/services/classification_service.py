from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from redis.exceptions import RedisError
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.models import (
    ClassificationResult,
    ClassificationRun,
    Report,
    ensure_utc,
    now_utc,
)
from app.domain.state_machine import TERMINAL_RUN_STATUSES, ClassificationRunStatus
from app.infra.db import open_session
from app.infra.events import event_bus
from app.infra.job_queue import JobMessage, RedisJobQueue
from app.services.photo_storage_service import LocalPhotoStorage
from app.services.vision_service import REQUEST_TIMEOUT_SECONDS, VisionClassificationClient

logger = structlog.get_logger()

MAX_ERROR_LENGTH = 1000
# a running run untouched for longer than this lost its worker
STALE_RUN_AFTER = timedelta(seconds=REQUEST_TIMEOUT_SECONDS + 60)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt cap plus the literal delay schedule between attempts.

    The delay before attempt ``n + 1`` is ``backoff_seconds[n - 1]``; when the
    schedule is shorter than the attempt cap its last entry repeats.
    """

    max_attempts: int = 3
    backoff_seconds: tuple[int, ...] = (10, 30, 60)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.backoff_seconds:
            raise ValueError("backoff schedule is empty")

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay_after(self, attempt: int) -> timedelta:
        index = min(attempt - 1, len(self.backoff_seconds) - 1)
        return timedelta(seconds=self.backoff_seconds[max(index, 0)])


DEFAULT_RETRY_POLICY = RetryPolicy()


class ClassificationDispatcher:
    """Creates the run record inside the caller's transaction and enqueues it after commit."""

    def __init__(self, queue: RedisJobQueue | None = None) -> None:
        self._queue = queue

    @property
    def queue(self) -> RedisJobQueue:
        if self._queue is None:
            self._queue = RedisJobQueue()
        return self._queue

    def prepare(self, session: Session, report_id: str) -> ClassificationRun:
        now = now_utc()
        run = ClassificationRun(
            report_id=report_id,
            status=ClassificationRunStatus.QUEUED,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(run)
        return run

    def enqueue(self, run: ClassificationRun) -> None:
        run_at = ensure_utc(run.next_attempt_at) if run.next_attempt_at is not None else now_utc()
        message = JobMessage(run_id=run.id, report_id=run.report_id, attempt=run.attempts + 1)
        try:
            self.queue.enqueue(message, run_at)
        except RedisError as exc:
            # the run row stays queued; ClassificationWorker.recover_pending re-enqueues it
            logger.error(
                "classification_enqueue_failed",
                run_id=run.id,
                report_id=run.report_id,
                error=str(exc),
            )
            return
        logger.info(
            "classification_enqueued",
            run_id=run.id,
            report_id=run.report_id,
            attempt=message.attempt,
        )


class ClassificationError(Exception):
    pass


class ClassificationWorker:
    def __init__(
        self,
        *,
        queue: RedisJobQueue | None = None,
        vision_client: VisionClassificationClient | None = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        clock: Clock = now_utc,
        stale_after: timedelta = STALE_RUN_AFTER,
    ) -> None:
        self._queue = queue or RedisJobQueue()
        self._vision = vision_client or VisionClassificationClient(LocalPhotoStorage.from_env())
        self._policy = policy
        self._clock = clock
        self._stale_after = stale_after

    def run_due(self, limit: int = 10) -> list[ClassificationRun]:
        processed: list[ClassificationRun] = []
        for message in self._queue.claim_due(self._clock(), limit=limit):
            try:
                run = self.process(message)
            except (RedisError, SQLAlchemyError) as exc:
                # the run row is left queued, retrying or running; recover_pending picks it up
                logger.error(
                    "classification_message_failed",
                    run_id=message.run_id,
                    attempt=message.attempt,
                    error=str(exc),
                    exc_info=exc,
                )
                continue
            if run is not None:
                processed.append(run)
        return processed

    def recover_pending(self) -> int:
        """Re-enqueue runs whose queue message may have been lost.

        Queued and retrying runs are re-enqueued as they stand. A run left
        ``running`` for longer than ``stale_after`` belonged to a worker that
        died mid-attempt: that attempt counts against the cap, and the run is
        either rescheduled right away or marked failed.
        """
        current = self._clock()
        stale_before = current - self._stale_after
        pending: list[ClassificationRun] = []
        exhausted: list[ClassificationRun] = []
        with open_session() as session:
            runs = session.exec(
                select(ClassificationRun).where(
                    col(ClassificationRun.status).in_(
                        [
                            ClassificationRunStatus.QUEUED,
                            ClassificationRunStatus.RETRYING,
                            ClassificationRunStatus.RUNNING,
                        ]
                    )
                )
            ).all()
            for run in runs:
                if run.status == ClassificationRunStatus.RUNNING:
                    if ensure_utc(run.updated_at) > stale_before:
                        continue
                    self._release_lost_attempt(run, current)
                    session.add(run)
                if run.status == ClassificationRunStatus.FAILED:
                    exhausted.append(run)
                else:
                    pending.append(run)
            session.commit()

        for run in pending:
            run_at = ensure_utc(run.next_attempt_at) if run.next_attempt_at is not None else current
            self._queue.enqueue(
                JobMessage(run_id=run.id, report_id=run.report_id, attempt=run.attempts + 1),
                run_at,
            )
        for run in exhausted:
            self._publish_failed(run, run.report_id, run.attempts, run.last_error or "")
        if pending or exhausted:
            logger.info("classification_runs_recovered", requeued=len(pending), failed=len(exhausted))
        return len(pending)

    def _release_lost_attempt(self, run: ClassificationRun, now: datetime) -> None:
        logger.warning("classification_attempt_lost", run_id=run.id, attempt=run.attempts)
        run.last_error = f"worker lost during attempt {run.attempts}"
        run.updated_at = now
        if self._policy.has_attempts_left(run.attempts):
            run.status = ClassificationRunStatus.RETRYING
            run.next_attempt_at = now
        else:
            run.status = ClassificationRunStatus.FAILED
            run.next_attempt_at = None
            run.finished_at = now

    def process(self, message: JobMessage) -> ClassificationRun | None:
        with open_session() as session:
            run = session.get(ClassificationRun, message.run_id)
            if run is None or run.status in TERMINAL_RUN_STATUSES or message.attempt <= run.attempts:
                logger.info(
                    "classification_message_ignored",
                    run_id=message.run_id,
                    attempt=message.attempt,
                )
                return run
            report = session.get(Report, message.report_id)
            run.attempts = message.attempt
            run.updated_at = self._clock()
            photo_path = report.photo_path if report is not None else None
            if not photo_path:
                run.status = ClassificationRunStatus.SKIPPED
                run.finished_at = run.updated_at
                run.next_attempt_at = None
                session.add(run)
                session.commit()
                logger.info("classification_skipped", run_id=run.id, report_id=message.report_id)
                return run
            run.status = ClassificationRunStatus.RUNNING
            session.add(run)
            session.commit()

        try:
            result = self._vision.analyze(photo_path)
        except Exception as exc:
            return self._record_failure(message, exc)
        return self._record_success(message, result)

    def _load_run(self, session: Session, run_id: str) -> ClassificationRun:
        run = session.get(ClassificationRun, run_id)
        if run is None:
            raise ClassificationError(f"classification run not found: {run_id}")
        return run

    def _record_success(self, message: JobMessage, result: ClassificationResult) -> ClassificationRun:
        finished_at = self._clock()
        with open_session() as session:
            # all four fields in one statement; status is left alone
            session.execute(
                update(Report)
                .where(Report.id == message.report_id)  # type: ignore[arg-type]
                .values(
                    ai_severity=result.severity,
                    ai_damage_type=result.damage_type,
                    ai_value_impact=result.value_impact,
                    ai_liability=result.liability,
                    updated_at=finished_at,
                )
            )
            run = self._load_run(session, message.run_id)
            run.status = ClassificationRunStatus.SUCCEEDED
            run.last_error = None
            run.next_attempt_at = None
            run.updated_at = finished_at
            run.finished_at = finished_at
            session.add(run)
            session.commit()
            session.refresh(run)

        logger.info(
            "classification_succeeded",
            run_id=run.id,
            report_id=message.report_id,
            attempt=message.attempt,
        )
        event_bus.publish_dict(
            "report.classified",
            report_id=message.report_id,
            payload={"run_id": run.id, **result.model_dump()},
        )
        return run

    def _record_failure(self, message: JobMessage, exc: Exception) -> ClassificationRun:
        error = str(exc)[:MAX_ERROR_LENGTH]
        # the delay counts from when this attempt ended, not from when the batch was claimed
        failed_at = self._clock()
        retry_at: datetime | None = None
        if self._policy.has_attempts_left(message.attempt):
            retry_at = failed_at + self._policy.delay_after(message.attempt)
        with open_session() as session:
            run = self._load_run(session, message.run_id)
            run.last_error = error
            run.updated_at = failed_at
            run.next_attempt_at = retry_at
            if retry_at is not None:
                run.status = ClassificationRunStatus.RETRYING
            else:
                run.status = ClassificationRunStatus.FAILED
                run.finished_at = failed_at
            session.add(run)
            session.commit()
            session.refresh(run)

        if retry_at is not None:
            logger.warning(
                "classification_attempt_failed",
                run_id=run.id,
                report_id=message.report_id,
                attempt=message.attempt,
                retry_at=retry_at.isoformat(),
                error=error,
            )
            self._queue.enqueue(
                JobMessage(run_id=run.id, report_id=message.report_id, attempt=message.attempt + 1),
                retry_at,
            )
            return run

        logger.error(
            "classification_failed",
            run_id=run.id,
            report_id=message.report_id,
            attempts=message.attempt,
            error=error,
            exc_info=exc,
        )
        self._publish_failed(run, message.report_id, message.attempt, error)
        return run

    def _publish_failed(self, run: ClassificationRun, report_id: str, attempts: int, error: str) -> None:
        # report stays submitted with empty AI fields
        event_bus.publish_dict(
            "report.classification_failed",
            report_id=report_id,
            payload={"run_id": run.id, "attempts": attempts, "error": error},
        )
