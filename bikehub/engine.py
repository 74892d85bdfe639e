"""Per-session wiring of the booking engine.

``BookingEngine`` builds the ledger, payment coordinator, assessment module and
state machine over one SQLModel session and runs every public operation as a
single unit of work: commit on success, roll back on any error. Domain events
staged during the unit of work are fanned out only after the commit.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlmodel import Session

from .assessments import DropoffAssessments
from .auth import Actor
from .bookings import BookingStateMachine
from .config import Settings
from .errors import AssessmentMissing, Conflict, InvalidRequest, StaleState, Unauthorized
from .events import EventHub
from .gateway import GatewayStatus, PaymentGateway
from .ledger import InventoryLedger
from .models import (
    Bike,
    Booking,
    DropoffAssessment,
    PaymentKind,
    PaymentMethod,
    PaymentRequest,
    PaymentStatus,
)
from .partners import PartnerRegistry
from .payments import PaymentCoordinator
from .schemas import (
    AssessmentCreate,
    AvailabilityUpdate,
    BookingCreate,
    BookingDetail,
    BookingRead,
    PaymentRequestRead,
)

logger = logging.getLogger(__name__)


class BookingEngine:
    def __init__(
        self,
        session: Session,
        hub: EventHub,
        gateway: PaymentGateway,
        settings: Settings,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session = session
        self.hub = hub
        self.settings = settings
        self.ledger = InventoryLedger(session, now)
        self.payments = PaymentCoordinator(session, hub, gateway, settings, now)
        self.assessments = DropoffAssessments(session, now)
        self.partners = PartnerRegistry(session, now)
        self.bookings = BookingStateMachine(
            session, hub, self.ledger, self.payments, self.assessments, settings, now
        )

    @contextmanager
    def transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            self.hub.discard(self.session)
            raise
        self.hub.flush(self.session)

    # ---------------- bookings ----------------
    def create_booking(self, actor: Actor, data: BookingCreate) -> Booking:
        with self.transaction():
            booking = self.bookings.create(actor, data)
        return booking

    def accept(self, booking_id: int, actor: Actor) -> Booking:
        try:
            with self.transaction():
                booking = self.bookings.accept(booking_id, actor)
        except Conflict:
            # somebody else holds these dates now; the request can never be honoured
            try:
                with self.transaction():
                    self.bookings.reject_unavailable(booking_id)
            except StaleState:
                pass
            raise
        return booking

    def reject(self, booking_id: int, actor: Actor, reason: Optional[str] = None) -> Booking:
        with self.transaction():
            booking = self.bookings.reject(booking_id, actor, reason)
        return booking

    def cancel(self, booking_id: int, actor: Actor, reason: Optional[str] = None) -> Booking:
        with self.transaction():
            booking = self.bookings.cancel(booking_id, actor, reason)
        return booking

    def complete(self, booking_id: int, actor: Actor) -> Booking:
        with self.transaction():
            booking = self.bookings.complete(booking_id, actor)
        return booking

    def detail(self, booking: Booking) -> BookingDetail:
        base = BookingRead.model_validate(booking).model_dump()
        return BookingDetail(
            **base,
            payments=[PaymentRequestRead.model_validate(r) for r in self.payments.for_booking(booking.id)],
            payment_summary=self.payments.summary(booking),
        )

    def visible_booking(self, booking_id: int, actor: Actor) -> Booking:
        booking = self.bookings.get(booking_id)
        allowed = (
            actor.is_admin
            or (actor.is_rider and actor.user_id == booking.rider_id)
            or (actor.is_partner and actor.user_id in (booking.partner_id, booking.dropoff_partner_id))
        )
        if not allowed:
            raise Unauthorized("You cannot view this booking")
        return booking

    # ---------------- drop-off ----------------
    def submit_assessment(
        self, booking_id: int, actor: Actor, submission: AssessmentCreate
    ) -> Tuple[DropoffAssessment, PaymentRequest]:
        with self.transaction():
            record = self.assessments.submit(booking_id, actor, submission)
            request = self.payments.open_remaining(booking_id, submission.additional_charges)
            self.bookings.record_assessment(booking_id, record, request)
        return record, request

    # ---------------- payments ----------------
    def open_payment(self, booking_id: int, kind: PaymentKind, actor: Actor) -> PaymentRequest:
        """Open (or reopen after a failure) the next payment request of a booking."""
        self.visible_booking(booking_id, actor)
        with self.transaction():
            if kind == PaymentKind.INITIAL:
                request = self.payments.open_initial(booking_id)
            else:
                record = self.assessments.get_for(booking_id)
                if record is None:
                    raise AssessmentMissing()
                request = self.payments.open_remaining(booking_id, self.assessments.charges(record))
        return request

    def begin_checkout(self, request_id: int, actor: Actor, method: PaymentMethod) -> PaymentRequest:
        with self.transaction():
            request = self.payments.begin_checkout(request_id, actor, method)
        return request

    def confirm_cash(self, request_id: int, actor: Actor) -> PaymentRequest:
        with self.transaction():
            request = self.payments.record_cash_settlement(request_id, actor)
        self._advance(request.id)
        return request

    def poll_checkout(self, session_id: str) -> PaymentRequest:
        with self.transaction():
            request = self.payments.poll_checkout(session_id)
        if request.status == PaymentStatus.COMPLETED:
            self._advance(request.id)
        return request

    def gateway_notification(self, session_id: str, status: str) -> PaymentRequest:
        try:
            claimed = GatewayStatus.parse(status)
        except ValueError:
            raise InvalidRequest(f"Unknown checkout status: {status}")
        with self.transaction():
            request = self.payments.verify_notification(session_id, claimed)
        if request.status == PaymentStatus.COMPLETED:
            self._advance(request.id)
        return request

    def _advance(self, request_id: int) -> None:
        """Move the booking forward after a payment landed; safe to call twice."""
        try:
            with self.transaction():
                request = self.payments.get(request_id)
                self.bookings.on_payment_completed(request)
        except Conflict:
            request = self.payments.get(request_id)
            logger.warning(
                "Booking %s lost its dates before activation; payment request %s needs a refund",
                request.booking_id, request.id,
            )
            with self.transaction():
                self.bookings.cancel(request.booking_id, None, reason="unavailable")

    # ---------------- inventory ----------------
    def set_availability(self, bike_id: int, actor: Actor, data: AvailabilityUpdate) -> Bike:
        bike = self.ledger.get_bike(bike_id)
        if not (actor.is_admin or (actor.is_partner and actor.user_id == bike.partner_id)):
            raise Unauthorized("Not authorized to update this bike")
        with self.transaction():
            bike = self.ledger.set_availability(bike_id, data.status, data.reason, data.unavailable_ranges)
        return bike

    # ---------------- background work ----------------
    def sweep_expired_requests(self) -> int:
        expired = [b.id for b in self.bookings.expired_requests()]
        count = 0
        for booking_id in expired:
            try:
                with self.transaction():
                    self.bookings.expire(booking_id)
                count += 1
            except StaleState:
                logger.debug("Booking %s moved on before the timeout sweep", booking_id)
        if count:
            logger.info("Timed out %d unanswered booking requests", count)
        return count

    def poll_due_checkouts(self) -> List[PaymentRequest]:
        polled = []
        for session_id in [r.session_id for r in self.payments.due_for_poll()]:
            try:
                polled.append(self.poll_checkout(session_id))
            except Exception:
                logger.exception("Polling checkout session %s failed", session_id)
        return polled
