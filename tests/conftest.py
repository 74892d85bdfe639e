from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

import pytest
from sqlmodel import Session

from bikehub.auth import Actor
from bikehub.config import Settings
from bikehub.database import init_db, make_engine
from bikehub.engine import BookingEngine
from bikehub.events import EventHub
from bikehub.gateway import CheckoutSessionInfo, GatewayError, GatewayStatus, SessionStatus
from bikehub.models import PaymentKind, PaymentMethod, UserRole
from bikehub.schemas import BikeCreate, BookingCreate, DateRange, PartnerCreate

ADMIN = Actor(900, UserRole.ADMIN)
RIDER = Actor(7, UserRole.RIDER)
OTHER_RIDER = Actor(8, UserRole.RIDER)

START = date(2026, 3, 5)
END = date(2026, 3, 8)   # three days


class Clock:
    def __init__(self, at: datetime):
        self.at = at

    def __call__(self) -> datetime:
        return self.at

    def advance(self, **kwargs) -> datetime:
        self.at = self.at + timedelta(**kwargs)
        return self.at


class FakeGateway:
    """In-memory checkout provider; tests flip session states by hand."""

    def __init__(self):
        self.sessions: Dict[str, SessionStatus] = {}
        self.created = []
        self.down = False

    def create_checkout_session(self, amount, currency, metadata):
        if self.down:
            raise GatewayError("provider down")
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append({"session_id": session_id, "amount": amount, "currency": currency, "metadata": metadata})
        self.sessions[session_id] = SessionStatus(GatewayStatus.OPEN)
        return CheckoutSessionInfo(session_id=session_id, url=f"https://checkout.test/{session_id}")

    def get_session_status(self, session_id):
        if self.down:
            raise GatewayError("provider down")
        return self.sessions[session_id]

    def mark(self, session_id: str, status: GatewayStatus, transaction_id: Optional[str] = None):
        self.sessions[session_id] = SessionStatus(status, transaction_id)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'bikehub.db'}",
        enable_scheduler=False,
        checkout_poll_max_attempts=3,
    )


@pytest.fixture
def db(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 1, 9, 0))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def hub(db, clock):
    return EventHub(lambda: Session(db), clock)


@pytest.fixture
def session(db):
    with Session(db) as s:
        yield s


@pytest.fixture
def engine(session, hub, gateway, settings, clock):
    return BookingEngine(session, hub, gateway, settings, clock)


@pytest.fixture
def inbox(hub):
    """Collects every event delivered to a (user_id, role) pair."""
    boxes = {}

    def open_box(user_id: int, role: UserRole):
        events = []
        hub.subscribe(user_id, role, events.append)
        boxes[(user_id, role)] = events
        return events

    return open_box


# ------------------------------------------------------------------
# Factories
# ------------------------------------------------------------------
def make_partner(engine: BookingEngine, name: str, location: str) -> Actor:
    with engine.transaction():
        partner = engine.partners.register(
            PartnerCreate(name=name, email=f"{name.lower()}@shops.test", location=location)
        )
        engine.partners.approve(partner.id, ADMIN)
    return Actor(partner.id, UserRole.PARTNER)


def make_bike(engine: BookingEngine, owner: Actor, daily_rate="1000", delivery_fee="50"):
    with engine.transaction():
        bike = engine.partners.add_bike(
            owner,
            BikeCreate(name="Roadster", daily_rate=Decimal(daily_rate), delivery_fee=Decimal(delivery_fee)),
        )
    return bike


def request_booking(engine: BookingEngine, rider: Actor, bike, start=START, end=END, **kwargs):
    return engine.create_booking(
        rider, BookingCreate(bike_id=bike.id, date_range=DateRange(start=start, end=end), **kwargs)
    )


def pay_initial(engine: BookingEngine, gateway: FakeGateway, booking, rider: Actor = RIDER):
    request = engine.payments.open_request(booking.id, PaymentKind.INITIAL)
    request = engine.begin_checkout(request.id, rider, PaymentMethod.CARD)
    gateway.mark(request.session_id, GatewayStatus.PAID, "pi_initial")
    return engine.poll_checkout(request.session_id)


@pytest.fixture
def pickup(engine):
    return make_partner(engine, "Harbour", "Harbour Street 1")


@pytest.fixture
def dropoff(engine):
    return make_partner(engine, "Station", "Station Square 4")


@pytest.fixture
def bike(engine, pickup):
    return make_bike(engine, pickup)
