import logging
import threading
from datetime import date, datetime, timedelta

import pytest

from bikehub.errors import Conflict
from bikehub.events import IdempotentConsumer, Subscription
from bikehub.models import DomainEvent, EventType, UserRole
from bikehub.schemas import BookingCreate, DateRange, EventRead

from conftest import RIDER, request_booking


def test_events_are_persisted_before_delivery(engine, hub, bike, pickup):
    seen = []

    def check_row(event):
        with hub._session_factory() as s:
            seen.append(s.get(DomainEvent, event.id) is not None)

    hub.subscribe(pickup.user_id, UserRole.PARTNER, check_row)
    request_booking(engine, RIDER, bike)
    assert seen == [True]


def test_rolled_back_work_publishes_nothing(engine, hub, bike, pickup, inbox):
    events = inbox(pickup.user_id, UserRole.PARTNER)
    with pytest.raises(Conflict):
        with engine.transaction():
            engine.bookings.create(RIDER, _booking_create(bike))
            raise Conflict()
    assert events == []
    assert hub.pending(pickup.user_id, UserRole.PARTNER) == []


def test_only_the_target_hears_an_event(engine, bike, pickup, dropoff, inbox):
    partner_events = inbox(pickup.user_id, UserRole.PARTNER)
    other_partner = inbox(dropoff.user_id, UserRole.PARTNER)
    same_id_rider = inbox(pickup.user_id, UserRole.RIDER)

    request_booking(engine, RIDER, bike)

    assert len(partner_events) == 1
    assert other_partner == []
    assert same_id_rider == []


def test_unprocessed_backlog_is_replayed_on_resubscribe(engine, hub, bike, pickup):
    booking = request_booking(engine, RIDER, bike)
    engine.reject(booking.id, pickup)

    first = []
    hub.subscribe(RIDER.user_id, UserRole.RIDER, first.append)
    assert [e.type for e in first] == [EventType.BOOKING_REJECTED]

    again = []
    hub.subscribe(RIDER.user_id, UserRole.RIDER, again.append)
    assert [e.id for e in again] == [e.id for e in first]

    assert hub.mark_processed(first[0].id, user_id=RIDER.user_id)
    later = []
    hub.subscribe(RIDER.user_id, UserRole.RIDER, later.append)
    assert later == []


def test_mark_processed_checks_the_target(engine, hub, bike, pickup):
    request_booking(engine, RIDER, bike)
    event = hub.pending(pickup.user_id, UserRole.PARTNER)[0]
    assert not hub.mark_processed(event.id, user_id=RIDER.user_id)
    assert not hub.mark_processed(9999)
    assert hub.mark_processed(event.id, user_id=pickup.user_id)
    # second acknowledgement is harmless
    assert hub.mark_processed(event.id, user_id=pickup.user_id)


def test_pending_pages_by_id(engine, hub, bike, pickup):
    for day in (10, 12, 14):
        request_booking(engine, RIDER, bike, start=_d(day), end=_d(day + 1))
    page = hub.pending(pickup.user_id, UserRole.PARTNER, limit=2)
    assert len(page) == 2
    rest = hub.pending(pickup.user_id, UserRole.PARTNER, after_id=page[-1].id)
    assert len(rest) == 1


def test_idempotent_consumer_applies_each_event_once(engine, hub, bike, pickup):
    applied = []
    consumer = IdempotentConsumer(applied.append)
    hub.subscribe(pickup.user_id, UserRole.PARTNER, consumer)
    request_booking(engine, RIDER, bike)

    # reconnect: the same unprocessed event is delivered again
    hub.subscribe(pickup.user_id, UserRole.PARTNER, consumer)

    assert len(applied) == 1
    assert consumer.seen(applied[0].id)


def test_failed_handler_is_retried_on_redelivery():
    calls = []

    def flaky(event):
        calls.append(event.id)
        if len(calls) == 1:
            raise RuntimeError("downstream unavailable")

    consumer = IdempotentConsumer(flaky)
    with pytest.raises(RuntimeError):
        consumer(_fake_event(1))
    assert not consumer.seen(1)
    assert consumer(_fake_event(1))
    assert not consumer(_fake_event(1))


def test_duplicate_delivered_while_handling_is_dropped():
    entered = threading.Event()
    release = threading.Event()
    applied = []

    def slow(event):
        entered.set()
        release.wait(timeout=5)
        applied.append(event.id)

    consumer = IdempotentConsumer(slow)
    worker = threading.Thread(target=consumer, args=(_fake_event(1),))
    worker.start()
    assert entered.wait(timeout=5)

    assert not consumer(_fake_event(1))
    release.set()
    worker.join(timeout=5)
    assert applied == [1]


def test_subscription_remembers_a_bounded_window():
    sub = Subscription(7, UserRole.RIDER, lambda event: None, remember=2)
    assert sub.mark_delivered(1)
    assert sub.mark_delivered(2)
    assert not sub.mark_delivered(2)
    assert sub.mark_delivered(3)
    assert list(sub.delivered) == [2, 3]


def test_subscriber_errors_do_not_reach_producers(engine, hub, bike, pickup, caplog):
    def broken(event):
        raise RuntimeError("socket closed")

    hub.subscribe(pickup.user_id, UserRole.PARTNER, broken)
    with caplog.at_level(logging.ERROR, logger="bikehub.events"):
        booking = request_booking(engine, RIDER, bike)
    assert booking.id is not None
    assert "Delivery of event" in caplog.text


def test_wire_format_is_camel_case(engine, hub, bike, pickup):
    request_booking(engine, RIDER, bike)
    event = hub.pending(pickup.user_id, UserRole.PARTNER)[0]
    wire = event.model_dump(mode="json", by_alias=True)
    assert set(wire) == {"id", "type", "targetUserId", "targetUserRole", "payload", "createdAt"}
    assert wire["type"] == "BOOKING_CREATED"
    assert wire["targetUserRole"] == "partner"


def test_cleanup_and_stats(engine, hub, clock, bike, pickup):
    booking = request_booking(engine, RIDER, bike)
    engine.accept(booking.id, pickup)
    created = hub.pending(pickup.user_id, UserRole.PARTNER)[0]
    hub.mark_processed(created.id)

    stats = hub.stats()
    assert stats["total_events"] == 2
    assert stats["processed_events"] == 1
    assert stats["unprocessed_events"] == 1

    assert hub.cleanup(older_than_days=7) == 0
    clock.advance(days=8)
    # only processed events are removed
    assert hub.cleanup(older_than_days=7) == 1
    assert hub.stats()["total_events"] == 1


def _d(day):
    return date(2026, 3, day)


def _booking_create(bike):
    return BookingCreate(bike_id=bike.id, date_range=DateRange(start=_d(5), end=_d(8)))


def _fake_event(event_id):
    return EventRead(
        id=event_id,
        type=EventType.BOOKING_UPDATED,
        target_user_id=1,
        target_user_role=UserRole.RIDER,
        payload={},
        created_at=datetime(2026, 3, 1) + timedelta(minutes=event_id),
    )


def test_publish_outside_a_unit_of_work(hub, inbox):
    events = inbox(7, UserRole.RIDER)
    out = hub.publish(
        DomainEvent(
            type=EventType.BOOKING_UPDATED,
            target_user_id=7,
            target_user_role=UserRole.RIDER,
            payload={"note": "shop closes early"},
        )
    )
    assert out.id is not None
    assert [e.id for e in events] == [out.id]
    assert hub.pending(7, UserRole.RIDER)[0].payload == {"note": "shop closes early"}
