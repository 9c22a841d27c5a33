from __future__ import annotations

import json
from collections.abc import Callable, Generator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine, select

from app import worker as worker_main
from app.domain.models import (
    ClassificationResult,
    ClassificationRun,
    EventRecord,
    PhotoUpload,
    Report,
    ensure_utc,
    now_utc,
)
from app.domain.permissions import Actor, Role
from app.domain.state_machine import ClassificationRunStatus, ReportStatus
from app.infra import db, events
from app.infra.job_queue import JobMessage, RedisJobQueue
from app.services.classification_service import (
    STALE_RUN_AFTER,
    ClassificationDispatcher,
    ClassificationError,
    ClassificationWorker,
    RetryPolicy,
)
from app.services.photo_storage_service import LocalPhotoStorage
from app.services.report_service import ReportService
from app.services.vision_service import ApiError, VisionClassificationClient

DRIVER = Actor(id="driver-a", role=Role.DRIVER)
GOOD_CONTENT = json.dumps(
    {"severity": "severe", "damage_type": "torn", "value_impact": "high", "liability": "sender"}
)
GOOD_RESULT = ClassificationResult(severity="severe", damage_type="torn", value_impact="high", liability="sender")


class FakeRedis:
    def __init__(self) -> None:
        self._zsets: dict[str, dict[str, float]] = {}

    def zadd(self, name: str, mapping: dict[str, float]) -> int:
        zset = self._zsets.setdefault(name, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    def zrangebyscore(
        self,
        name: str,
        min: float | str,
        max: float | str,
        start: int | None = None,
        num: int | None = None,
    ) -> list[str]:
        low, high = float(min), float(max)
        zset = self._zsets.get(name, {})
        members = [member for member, score in sorted(zset.items(), key=lambda item: (item[1], item[0])) if low <= score <= high]
        if start is not None and num is not None:
            members = members[start : start + num]
        return members

    def zrem(self, name: str, *values: str) -> int:
        zset = self._zsets.get(name, {})
        removed = 0
        for value in values:
            if zset.pop(value, None) is not None:
                removed += 1
        return removed

    def zcard(self, name: str) -> int:
        return len(self._zsets.get(name, {}))

    def ping(self) -> bool:
        return True


class FakeVisionApi:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(503, json={"error": {"message": "Service unavailable"}})


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedVision:
    def __init__(self, action: Callable[[str], ClassificationResult]) -> None:
        self.calls = 0
        self._action = action

    def analyze(self, photo_path: str) -> ClassificationResult:
        self.calls += 1
        return self._action(photo_path)


class WorkerKilled(BaseException):
    pass


@pytest.fixture()
def job_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[dict[str, Any], None, None]:
    db_path = tmp_path / "classification_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)

    storage = LocalPhotoStorage(tmp_path / "storage")
    queue = RedisJobQueue(FakeRedis(), key="test:classification")
    api = FakeVisionApi()
    clock = FakeClock(now_utc() + timedelta(seconds=1))
    vision = VisionClassificationClient(
        storage,
        api_key="test-api-key",
        transport=httpx.MockTransport(api.handler),
    )
    yield {
        "engine": test_engine,
        "storage": storage,
        "queue": queue,
        "api": api,
        "clock": clock,
        "service": ReportService(storage=storage, dispatcher=ClassificationDispatcher(queue)),
        "worker": ClassificationWorker(queue=queue, vision_client=vision, clock=clock),
    }


def _worker_with(env: dict[str, Any], vision: Any, **kwargs: Any) -> ClassificationWorker:
    return ClassificationWorker(queue=env["queue"], vision_client=vision, clock=env["clock"], **kwargs)


def _submit_report(env: dict[str, Any]) -> Report:
    service: ReportService = env["service"]
    return service.create_and_submit(
        DRIVER,
        {"package_id": "PKG-1001", "location": "Dock 4"},
        PhotoUpload(content=b"fake-image-content", filename="damage.jpg", content_type="image/jpeg"),
    )


def _load_report(env: dict[str, Any], report_id: str) -> Report:
    with Session(env["engine"]) as session:
        report = session.get(Report, report_id)
        assert report is not None
        return report


def _load_runs(env: dict[str, Any], report_id: str) -> list[ClassificationRun]:
    with Session(env["engine"]) as session:
        return list(session.exec(select(ClassificationRun).where(ClassificationRun.report_id == report_id)).all())


def _event_types(env: dict[str, Any]) -> list[str]:
    with Session(env["engine"]) as session:
        return [row.event_type for row in session.exec(select(EventRecord)).all()]


def _ai_fields(report: Report) -> list[str | None]:
    return [report.ai_severity, report.ai_damage_type, report.ai_value_impact, report.ai_liability]


def _ok(content: str = GOOD_CONTENT) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def test_retry_policy_uses_literal_schedule() -> None:
    policy = RetryPolicy()
    assert policy.max_attempts == 3
    assert policy.delay_after(1) == timedelta(seconds=10)
    assert policy.delay_after(2) == timedelta(seconds=30)
    assert policy.delay_after(3) == timedelta(seconds=60)
    assert policy.delay_after(7) == timedelta(seconds=60)
    assert policy.has_attempts_left(2)
    assert not policy.has_attempts_left(3)
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_run_report_fk_cascades_like_the_migration() -> None:
    foreign_keys = list(ClassificationRun.__table__.c.report_id.foreign_keys)  # type: ignore[attr-defined]
    assert len(foreign_keys) == 1
    assert foreign_keys[0].target_fullname == "damage_reports.id"
    assert foreign_keys[0].ondelete == "CASCADE"


def test_successful_classification_writes_all_fields(job_env: dict[str, Any]) -> None:
    job_env["api"].responses.append(_ok())
    report = _submit_report(job_env)
    assert job_env["queue"].size() == 1

    processed = job_env["worker"].run_due()

    assert len(processed) == 1
    assert processed[0].status == ClassificationRunStatus.SUCCEEDED
    stored = _load_report(job_env, report.id)
    assert stored.status == ReportStatus.SUBMITTED
    assert _ai_fields(stored) == ["severe", "torn", "high", "sender"]
    assert job_env["queue"].size() == 0
    assert {"report.created", "report.submitted", "report.classified"} <= set(_event_types(job_env))


def test_report_without_photo_skips_http_call(job_env: dict[str, Any]) -> None:
    dispatcher = ClassificationDispatcher(job_env["queue"])
    report = Report(
        owner_id=DRIVER.id,
        package_id="PKG-2",
        location="Van 7",
        status=ReportStatus.SUBMITTED,
        submitted_at=now_utc(),
    )
    with Session(job_env["engine"], expire_on_commit=False) as session:
        session.add(report)
        session.flush()
        run = dispatcher.prepare(session, report.id)
        session.commit()
    dispatcher.enqueue(run)

    processed = job_env["worker"].run_due()

    assert [item.status for item in processed] == [ClassificationRunStatus.SKIPPED]
    assert job_env["api"].requests == []
    assert _ai_fields(_load_report(job_env, report.id)) == [None, None, None, None]


def test_three_failures_follow_backoff_then_stop(job_env: dict[str, Any]) -> None:
    report = _submit_report(job_env)
    worker: ClassificationWorker = job_env["worker"]
    api: FakeVisionApi = job_env["api"]
    clock: FakeClock = job_env["clock"]

    assert len(worker.run_due()) == 1
    assert len(api.requests) == 1
    clock.advance(9)
    assert worker.run_due() == []

    clock.advance(1)
    assert len(worker.run_due()) == 1
    assert len(api.requests) == 2
    clock.advance(29)
    assert worker.run_due() == []

    clock.advance(1)
    last = worker.run_due()
    assert len(api.requests) == 3
    assert last[0].status == ClassificationRunStatus.FAILED
    assert last[0].attempts == 3
    assert "Service unavailable" in (last[0].last_error or "")

    clock.advance(3600)
    assert worker.run_due() == []
    assert len(api.requests) == 3
    assert job_env["queue"].size() == 0

    stored = _load_report(job_env, report.id)
    assert stored.status == ReportStatus.SUBMITTED
    assert _ai_fields(stored) == [None, None, None, None]
    assert _event_types(job_env).count("report.classification_failed") == 1


def test_backoff_counts_from_the_end_of_a_slow_attempt(job_env: dict[str, Any]) -> None:
    report = _submit_report(job_env)
    clock: FakeClock = job_env["clock"]
    claimed_at = clock.now

    def slow_timeout(photo_path: str) -> ClassificationResult:
        clock.advance(60)
        raise ApiError("timed out")

    worker = _worker_with(job_env, ScriptedVision(slow_timeout))
    first = worker.run_due()

    assert first[0].status == ClassificationRunStatus.RETRYING
    assert first[0].next_attempt_at is not None
    assert ensure_utc(first[0].next_attempt_at) == claimed_at + timedelta(seconds=70)
    # still inside the 10 second gap after the failure
    clock.advance(9)
    assert worker.run_due() == []
    clock.advance(1)
    assert len(worker.run_due()) == 1
    assert [run.attempts for run in _load_runs(job_env, report.id)] == [2]


def test_retry_after_invalid_response_then_success(job_env: dict[str, Any]) -> None:
    api: FakeVisionApi = job_env["api"]
    api.responses.append(_ok('{"severity":"moderate","damage_type":"crushed"}'))
    api.responses.append(_ok())
    report = _submit_report(job_env)
    worker: ClassificationWorker = job_env["worker"]

    first = worker.run_due()
    assert first[0].status == ClassificationRunStatus.RETRYING
    assert "Missing required field: value_impact" in (first[0].last_error or "")
    assert _ai_fields(_load_report(job_env, report.id)) == [None, None, None, None]

    job_env["clock"].advance(10)
    second = worker.run_due()
    assert second[0].status == ClassificationRunStatus.SUCCEEDED
    assert second[0].attempts == 2
    assert _ai_fields(_load_report(job_env, report.id)) == ["severe", "torn", "high", "sender"]


def test_missing_photo_file_is_retried_like_other_errors(job_env: dict[str, Any]) -> None:
    report = _submit_report(job_env)
    assert report.photo_path is not None
    job_env["storage"].delete(report.photo_path)

    first = job_env["worker"].run_due()
    assert first[0].status == ClassificationRunStatus.RETRYING
    assert "Image not found at path" in (first[0].last_error or "")
    assert job_env["api"].requests == []


def test_duplicate_delivery_is_ignored(job_env: dict[str, Any]) -> None:
    job_env["api"].responses.append(_ok())
    report = _submit_report(job_env)
    runs = _load_runs(job_env, report.id)
    assert len(runs) == 1
    worker: ClassificationWorker = job_env["worker"]

    worker.run_due()
    job_env["queue"].enqueue(JobMessage(run_id=runs[0].id, report_id=report.id, attempt=1), job_env["clock"]())
    worker.run_due()

    assert len(job_env["api"].requests) == 1
    assert [run.status for run in _load_runs(job_env, report.id)] == [ClassificationRunStatus.SUCCEEDED]


def test_recover_pending_requeues_lost_messages(job_env: dict[str, Any]) -> None:
    report = _submit_report(job_env)
    queue: RedisJobQueue = job_env["queue"]
    queue.claim_due(job_env["clock"]())
    assert queue.size() == 0

    worker: ClassificationWorker = job_env["worker"]
    assert worker.recover_pending() == 1
    assert queue.size() == 1
    # recovering twice does not duplicate the message
    worker.recover_pending()
    assert queue.size() == 1

    claimed = queue.claim_due(job_env["clock"]())
    assert claimed == [JobMessage(run_id=_load_runs(job_env, report.id)[0].id, report_id=report.id, attempt=1)]


def test_attempt_lost_with_its_worker_is_recovered(job_env: dict[str, Any]) -> None:
    report = _submit_report(job_env)
    clock: FakeClock = job_env["clock"]

    def killed(photo_path: str) -> ClassificationResult:
        raise WorkerKilled()

    with pytest.raises(WorkerKilled):
        _worker_with(job_env, ScriptedVision(killed)).run_due()
    assert [run.status for run in _load_runs(job_env, report.id)] == [ClassificationRunStatus.RUNNING]
    assert job_env["queue"].size() == 0

    survivor = _worker_with(job_env, ScriptedVision(lambda path: GOOD_RESULT))
    # a running attempt inside the request timeout belongs to a live worker
    clock.advance(STALE_RUN_AFTER.total_seconds() - 1)
    assert survivor.recover_pending() == 0
    assert job_env["queue"].size() == 0

    clock.advance(2)
    assert survivor.recover_pending() == 1
    runs = _load_runs(job_env, report.id)
    assert runs[0].status == ClassificationRunStatus.RETRYING
    assert "worker lost during attempt 1" in (runs[0].last_error or "")

    processed = survivor.run_due()
    assert [(run.status, run.attempts) for run in processed] == [(ClassificationRunStatus.SUCCEEDED, 2)]
    assert _ai_fields(_load_report(job_env, report.id)) == ["severe", "torn", "high", "sender"]


def test_lost_final_attempt_marks_run_failed(job_env: dict[str, Any]) -> None:
    report = _submit_report(job_env)

    def killed(photo_path: str) -> ClassificationResult:
        raise WorkerKilled()

    with pytest.raises(WorkerKilled):
        _worker_with(job_env, ScriptedVision(killed), policy=RetryPolicy(max_attempts=1)).run_due()

    job_env["clock"].advance(STALE_RUN_AFTER.total_seconds() + 1)
    recovering = _worker_with(job_env, ScriptedVision(lambda path: GOOD_RESULT), policy=RetryPolicy(max_attempts=1))
    assert recovering.recover_pending() == 0

    runs = _load_runs(job_env, report.id)
    assert runs[0].status == ClassificationRunStatus.FAILED
    assert runs[0].finished_at is not None
    assert job_env["queue"].size() == 0
    assert _event_types(job_env).count("report.classification_failed") == 1
    assert _ai_fields(_load_report(job_env, report.id)) == [None, None, None, None]


def test_one_broken_message_does_not_drop_the_batch(
    job_env: dict[str, Any],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    first = _submit_report(job_env)
    second = _submit_report(job_env)
    broken_run_id = _load_runs(job_env, first.id)[0].id
    worker = _worker_with(job_env, ScriptedVision(lambda path: GOOD_RESULT))
    original = worker.process

    def flaky_process(message: JobMessage) -> ClassificationRun | None:
        if message.run_id == broken_run_id:
            raise OperationalError("UPDATE classification_runs", {}, Exception("database is locked"))
        return original(message)

    monkeypatch.setattr(worker, "process", flaky_process)
    processed = worker.run_due()

    assert [run.report_id for run in processed] == [second.id]
    assert _load_runs(job_env, first.id)[0].status == ClassificationRunStatus.QUEUED
    # the broken run comes back on the next recovery pass
    assert worker.recover_pending() == 1
    monkeypatch.setattr(worker, "process", original)
    assert [run.report_id for run in worker.run_due()] == [first.id]


def test_worker_pass_survives_queue_outage(job_env: dict[str, Any], monkeypatch: pytest.MonkeyPatch) -> None:
    _submit_report(job_env)
    queue: RedisJobQueue = job_env["queue"]

    def redis_down(*args: Any, **kwargs: Any) -> list[JobMessage]:
        raise RedisConnectionError("redis down")

    with monkeypatch.context() as patch:
        patch.setattr(queue, "claim_due", redis_down)
        patch.setattr(queue, "enqueue", redis_down)
        assert worker_main.run_pass(job_env["worker"]) == 0
        assert worker_main.recover(job_env["worker"]) == 0

    job_env["api"].responses.append(_ok())
    assert worker_main.run_pass(job_env["worker"]) == 1


def test_run_deleted_mid_attempt_raises_instead_of_writing(job_env: dict[str, Any]) -> None:
    report = _submit_report(job_env)
    run_id = _load_runs(job_env, report.id)[0].id

    def delete_run(photo_path: str) -> ClassificationResult:
        with Session(job_env["engine"]) as session:
            run = session.get(ClassificationRun, run_id)
            assert run is not None
            session.delete(run)
            session.commit()
        return GOOD_RESULT

    worker = _worker_with(job_env, ScriptedVision(delete_run))
    [message] = job_env["queue"].claim_due(job_env["clock"]())

    with pytest.raises(ClassificationError, match=run_id):
        worker.process(message)
    assert _ai_fields(_load_report(job_env, report.id)) == [None, None, None, None]
    assert "report.classified" not in _event_types(job_env)


def test_ai_fields_are_never_partially_written(job_env: dict[str, Any]) -> None:
    api: FakeVisionApi = job_env["api"]
    api.responses.extend(
        [
            _ok('{"severity":"minor"}'),
            httpx.Response(500, json={"error": {"message": "boom"}}),
            _ok(),
        ]
    )
    report = _submit_report(job_env)
    worker: ClassificationWorker = job_env["worker"]

    for offset in (0, 10, 30):
        job_env["clock"].advance(offset)
        worker.run_due()
        fields = _ai_fields(_load_report(job_env, report.id))
        assert all(value is None for value in fields) or all(value is not None for value in fields)

    assert _ai_fields(_load_report(job_env, report.id)) == ["severe", "torn", "high", "sender"]
