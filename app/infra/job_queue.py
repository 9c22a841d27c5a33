"""Delayed job queue on a Redis sorted set.

Messages are scored by their due timestamp. A worker claims a message by
removing it from the set; only the caller whose ZREM succeeds runs it, so
two workers polling the same queue never both claim one message.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

from redis import Redis

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
CLASSIFICATION_QUEUE_KEY = os.getenv("CLASSIFICATION_QUEUE_KEY", "damage-reports:classification")


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False


class _SortedSetClient(Protocol):
    def zadd(self, name: str, mapping: dict[str, float]) -> Any: ...

    def zrangebyscore(
        self,
        name: str,
        min: float | str,
        max: float | str,
        start: int | None = None,
        num: int | None = None,
    ) -> Any: ...

    def zrem(self, name: str, *values: str) -> Any: ...

    def zcard(self, name: str) -> Any: ...


@dataclass(frozen=True)
class JobMessage:
    run_id: str
    report_id: str
    attempt: int

    def encode(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))

    @classmethod
    def decode(cls, raw: str) -> JobMessage:
        data = json.loads(raw)
        return cls(run_id=str(data["run_id"]), report_id=str(data["report_id"]), attempt=int(data["attempt"]))


class RedisJobQueue:
    def __init__(self, redis: _SortedSetClient | None = None, key: str = CLASSIFICATION_QUEUE_KEY) -> None:
        self._redis = redis if redis is not None else get_redis()
        self._key = key

    def enqueue(self, message: JobMessage, run_at: datetime) -> None:
        self._redis.zadd(self._key, {message.encode(): run_at.timestamp()})

    def claim_due(self, now: datetime, limit: int = 10) -> list[JobMessage]:
        raw_items = self._redis.zrangebyscore(self._key, "-inf", now.timestamp(), start=0, num=limit)
        claimed: list[JobMessage] = []
        for raw in raw_items:
            if self._redis.zrem(self._key, raw):
                claimed.append(JobMessage.decode(raw))
        return claimed

    def size(self) -> int:
        return int(self._redis.zcard(self._key))
