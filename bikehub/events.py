"""Event distribution hub.

Domain events are written to the ``domain_event`` table before anyone hears
about them. Producers inside a unit of work ``record`` events on their session;
the rows commit together with the state change and are fanned out afterwards.
Delivery is at-least-once: a subscriber that reconnects gets the unprocessed
backlog replayed, so consumers must be idempotent by event id
(see ``IdempotentConsumer``).
"""
import logging
import threading
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete, func
from sqlmodel import Session, col, select

from .models import DomainEvent, EventType, UserRole
from .schemas import EventRead

logger = logging.getLogger(__name__)

OUTBOX_KEY = "bikehub.outbox"

EventCallback = Callable[[EventRead], None]


class Subscription:
    def __init__(self, user_id: int, role: UserRole, callback: EventCallback, remember: int = 1000):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.role = role
        self.callback = callback
        self.remember = remember
        self.delivered: "OrderedDict[int, None]" = OrderedDict()

    def matches(self, event: EventRead) -> bool:
        return event.target_user_id == self.user_id and event.target_user_role == self.role

    def mark_delivered(self, event_id: int) -> bool:
        """False if this subscription already got the event."""
        if event_id in self.delivered:
            return False
        self.delivered[event_id] = None
        while len(self.delivered) > self.remember:
            self.delivered.popitem(last=False)
        return True


class EventHub:
    def __init__(self, session_factory: Callable[[], Session], now: Callable[[], datetime] = datetime.utcnow):
        self._session_factory = session_factory
        self._now = now
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    # ---------------- producing ----------------
    def record(
        self,
        session: Session,
        type: EventType,
        target_user_id: int,
        target_user_role: UserRole,
        payload: dict,
        booking_id: Optional[int] = None,
    ) -> DomainEvent:
        """Stage an event in the caller's transaction; fan-out waits for ``flush``."""
        event = DomainEvent(
            type=type,
            target_user_id=target_user_id,
            target_user_role=target_user_role,
            booking_id=booking_id,
            payload=payload,
            created_at=self._now(),
        )
        session.add(event)
        session.info.setdefault(OUTBOX_KEY, []).append(event)
        return event

    def flush(self, session: Session) -> List[EventRead]:
        """Fan out everything the session committed."""
        staged = session.info.pop(OUTBOX_KEY, [])
        events = [EventRead.model_validate(e) for e in staged]
        for event in events:
            self._dispatch(event)
        return events

    def discard(self, session: Session) -> None:
        session.info.pop(OUTBOX_KEY, None)

    def publish(self, event: DomainEvent) -> EventRead:
        with self._session_factory() as session:
            session.add(event)
            session.commit()
            session.refresh(event)
            out = EventRead.model_validate(event)
        self._dispatch(out)
        return out

    # ---------------- consuming ----------------
    def subscribe(self, user_id: int, role: UserRole, callback: EventCallback, replay: bool = True) -> str:
        sub = Subscription(user_id, role, callback)
        with self._lock:
            self._subscriptions[sub.id] = sub
        logger.debug("Subscription %s for %s/%s", sub.id, role.value, user_id)
        if replay:
            for event in self.pending(user_id, role, limit=None):
                self._deliver(sub, event)
        return sub.id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def pending(
        self,
        user_id: int,
        role: UserRole,
        after_id: Optional[int] = None,
        limit: Optional[int] = 50,
    ) -> List[EventRead]:
        stmt = select(DomainEvent).where(
            DomainEvent.target_user_id == user_id,
            DomainEvent.target_user_role == role,
            DomainEvent.processed == False,  # noqa: E712
        )
        if after_id is not None:
            stmt = stmt.where(DomainEvent.id > after_id)
        stmt = stmt.order_by(col(DomainEvent.id))
        if limit:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return [EventRead.model_validate(e) for e in session.exec(stmt).all()]

    def mark_processed(self, event_id: int, user_id: Optional[int] = None) -> bool:
        with self._session_factory() as session:
            event = session.get(DomainEvent, event_id)
            if not event or (user_id is not None and event.target_user_id != user_id):
                return False
            if not event.processed:
                event.processed = True
                event.processed_at = self._now()
                session.add(event)
                session.commit()
            return True

    # ---------------- housekeeping ----------------
    def cleanup(self, older_than_days: int = 7) -> int:
        cutoff = self._now() - timedelta(days=older_than_days)
        with self._session_factory() as session:
            result = session.exec(
                delete(DomainEvent).where(
                    DomainEvent.processed == True,  # noqa: E712
                    DomainEvent.created_at < cutoff,
                )
            )
            session.commit()
            count = result.rowcount or 0
        logger.info("Cleaned up %d old events", count)
        return count

    def stats(self) -> dict:
        with self._session_factory() as session:
            rows = session.exec(
                select(DomainEvent.processed, func.count(DomainEvent.id)).group_by(DomainEvent.processed)
            ).all()
        counts = {bool(processed): n for processed, n in rows}
        return {
            "total_events": sum(counts.values()),
            "unprocessed_events": counts.get(False, 0),
            "processed_events": counts.get(True, 0),
            "timestamp": self._now(),
        }

    # ---------------- internals ----------------
    def _dispatch(self, event: EventRead) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.matches(event)]
        for sub in targets:
            self._deliver(sub, event)

    def _deliver(self, sub: Subscription, event: EventRead) -> None:
        with self._lock:
            if not sub.mark_delivered(event.id):
                return
        try:
            sub.callback(event)
        except Exception:
            # producers never see delivery failures; the row stays unprocessed
            logger.exception("Delivery of event %s to subscription %s failed", event.id, sub.id)


class IdempotentConsumer:
    """Applies each event id once, however many times it is delivered."""

    def __init__(self, handler: EventCallback, remember: int = 1000):
        self._handler = handler
        self._remember = remember
        self._seen: "OrderedDict[int, None]" = OrderedDict()
        self._lock = threading.Lock()

    def __call__(self, event: EventRead) -> bool:
        with self._lock:
            if event.id in self._seen:
                return False
            # claimed before the handler runs so a concurrent duplicate is dropped
            self._seen[event.id] = None
            while len(self._seen) > self._remember:
                self._seen.popitem(last=False)
        try:
            self._handler(event)
        except Exception:
            with self._lock:
                self._seen.pop(event.id, None)
            raise
        return True

    def seen(self, event_id: int) -> bool:
        return event_id in self._seen
