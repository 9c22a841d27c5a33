from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog
from sqlmodel import Session

from app.domain.models import EventEnvelope, EventRecord
from app.infra.db import engine

EventHandler = Callable[[EventEnvelope], None]

logger = structlog.get_logger()


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(engine)
        try:
            session.add(
                EventRecord(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    ts=event.ts,
                    actor_id=event.actor_id,
                    report_id=event.report_id,
                    payload=event.payload,
                )
            )
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()

        logger.info(
            "domain_event",
            event_type=event.event_type,
            report_id=event.report_id,
            actor_id=event.actor_id,
        )
        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            handler(event)

    def publish_dict(
        self,
        event_type: str,
        *,
        report_id: str | None,
        actor_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            report_id=report_id,
            actor_id=actor_id,
            payload=payload or {},
        )
        self.publish(event)
        return event


event_bus = EventBus()
