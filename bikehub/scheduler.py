import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.engine import Engine
from sqlmodel import Session

from .config import Settings
from .engine import BookingEngine
from .events import EventHub
from .gateway import PaymentGateway

logger = logging.getLogger(__name__)


def _with_engine(db: Engine, hub: EventHub, gateway: PaymentGateway, settings: Settings,
                 job: Callable[[BookingEngine], object]) -> None:
    with Session(db) as session:
        job(BookingEngine(session, hub, gateway, settings))


def sweep_expired_requests(db: Engine, hub: EventHub, gateway: PaymentGateway, settings: Settings) -> None:
    try:
        _with_engine(db, hub, gateway, settings, lambda e: e.sweep_expired_requests())
    except Exception:
        logger.exception("Booking request timeout sweep failed")


def poll_open_checkouts(db: Engine, hub: EventHub, gateway: PaymentGateway, settings: Settings) -> None:
    try:
        _with_engine(db, hub, gateway, settings, lambda e: e.poll_due_checkouts())
    except Exception:
        logger.exception("Checkout polling failed")


def cleanup_events(hub: EventHub, settings: Settings) -> None:
    try:
        hub.cleanup(settings.event_retention_days)
    except Exception:
        logger.exception("Event cleanup failed")


def start_scheduler(db: Engine, hub: EventHub, gateway: PaymentGateway, settings: Settings) -> BackgroundScheduler:
    scheduler = BackgroundScheduler()
    args = (db, hub, gateway, settings)
    scheduler.add_job(sweep_expired_requests, "interval", seconds=settings.sweep_interval_seconds,
                      args=args, id="sweep_expired_requests", max_instances=1, coalesce=True)
    scheduler.add_job(poll_open_checkouts, "interval", seconds=settings.checkout_poll_interval_seconds,
                      args=args, id="poll_open_checkouts", max_instances=1, coalesce=True)
    scheduler.add_job(cleanup_events, "interval", hours=6,
                      args=(hub, settings), id="cleanup_events", max_instances=1, coalesce=True)
    scheduler.start()
    logger.info("Background scheduler started")
    return scheduler
