"""Booking state machine.

    requested -> confirmed -> active -> completed
    requested -> rejected
    requested | confirmed -> cancelled

Every status change is a compare-and-swap on ``booking.status``. If another
writer got there first the update matches no row and ``StaleState`` is raised;
the caller's unit of work is rolled back, so nothing done in the failed
transition survives. Each successful transition records exactly one domain
event for the counterpart of whoever triggered it.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import update
from sqlmodel import Session, col, select

from .assessments import DropoffAssessments
from .auth import Actor
from .config import Settings
from .errors import (
    AssessmentMissing,
    Conflict,
    InvalidRequest,
    NotFound,
    PaymentIncomplete,
    StaleState,
    Unauthorized,
)
from .events import EventHub
from .ledger import InventoryLedger, booking_range
from .models import (
    Booking,
    BookingStatus,
    DropoffAssessment,
    EventType,
    Partner,
    PartnerStatus,
    PaymentKind,
    PaymentMethod,
    PaymentRequest,
    PaymentStatus,
    UserRole,
)
from .payments import PaymentCoordinator, money
from .schemas import BookingCreate

logger = logging.getLogger(__name__)

TRANSITIONS = {
    BookingStatus.REQUESTED: {BookingStatus.CONFIRMED, BookingStatus.REJECTED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.ACTIVE, BookingStatus.CANCELLED},
    BookingStatus.ACTIVE: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.REJECTED: set(),
    BookingStatus.CANCELLED: set(),
}

# status_reason values set by the engine itself
REASON_TIMEOUT = "timeout"
REASON_UNAVAILABLE = "unavailable"


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def new_booking_number() -> str:
    return "BK-" + uuid.uuid4().hex[:10].upper()


class BookingStateMachine:
    def __init__(
        self,
        session: Session,
        hub: EventHub,
        ledger: InventoryLedger,
        payments: PaymentCoordinator,
        assessments: DropoffAssessments,
        settings: Settings,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session = session
        self.hub = hub
        self.ledger = ledger
        self.payments = payments
        self.assessments = assessments
        self.settings = settings
        self.now = now

    # ---------------- reads ----------------
    def get(self, booking_id: int) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        return booking

    def for_rider(self, rider_id: int) -> List[Booking]:
        stmt = select(Booking).where(Booking.rider_id == rider_id)
        return list(self.session.exec(stmt.order_by(col(Booking.created_at).desc())).all())

    def for_partner(self, partner_id: int, side: str = "pickup") -> List[Booking]:
        column = Booking.partner_id if side == "pickup" else Booking.dropoff_partner_id
        stmt = select(Booking).where(column == partner_id)
        return list(self.session.exec(stmt.order_by(col(Booking.created_at).desc())).all())

    def all(self, status: Optional[BookingStatus] = None) -> List[Booking]:
        stmt = select(Booking)
        if status is not None:
            stmt = stmt.where(Booking.status == status)
        return list(self.session.exec(stmt.order_by(col(Booking.created_at).desc())).all())

    def expired_requests(self) -> List[Booking]:
        cutoff = self.now() - timedelta(minutes=self.settings.request_timeout_minutes)
        return list(self.session.exec(
            select(Booking).where(
                Booking.status == BookingStatus.REQUESTED,
                Booking.created_at < cutoff,
            )
        ).all())

    # ---------------- transitions ----------------
    def create(self, actor: Actor, data: BookingCreate) -> Booking:
        if not actor.is_rider:
            raise Unauthorized("Only riders can book bikes")
        dates = data.date_range
        if dates.start < self.now().date():
            raise InvalidRequest("Rental cannot start in the past")

        bike = self.ledger.get_bike(data.bike_id)
        owner = self.session.get(Partner, bike.partner_id)
        if owner is None or owner.status != PartnerStatus.ACTIVE:
            raise Conflict("This bike is not available for booking")

        dropoff_id = data.dropoff_partner_id or bike.partner_id
        dropoff = self.session.get(Partner, dropoff_id)
        if dropoff is None:
            raise NotFound("Drop-off partner not found")
        if dropoff.status != PartnerStatus.ACTIVE:
            raise InvalidRequest("Drop-off partner is not accepting returns")

        # requested bookings don't hold dates; this only rejects dates already taken
        self.ledger.check_available(bike.id, dates)

        delivery_fee = (bike.delivery_fee or 0) if data.delivery_address else 0
        total = money(bike.daily_rate * dates.days + delivery_fee)
        booking = Booking(
            booking_number=new_booking_number(),
            rider_id=actor.user_id,
            bike_id=bike.id,
            partner_id=bike.partner_id,
            dropoff_partner_id=dropoff_id,
            start_date=dates.start,
            end_date=dates.end,
            delivery_address=data.delivery_address,
            daily_rate=bike.daily_rate,
            delivery_fee=money(delivery_fee),
            total_price=total,
            currency=self.settings.currency,
            status=BookingStatus.REQUESTED,
            created_at=self.now(),
            updated_at=self.now(),
        )
        self.session.add(booking)
        self.session.flush()
        logger.info("Booking %s requested by rider %s for bike %s", booking.id, actor.user_id, bike.id)
        self._emit(booking, EventType.BOOKING_CREATED, (booking.partner_id, UserRole.PARTNER))
        return booking

    def accept(self, booking_id: int, actor: Actor) -> Booking:
        booking = self.get(booking_id)
        self._require_pickup_partner(booking, actor)
        if booking.status != BookingStatus.REQUESTED:
            if booking.status == BookingStatus.REJECTED and booking.status_reason == REASON_UNAVAILABLE:
                raise Conflict()
            raise StaleState()

        # re-check at accept time: the first accepted request wins the dates
        self.ledger.reserve(booking.bike_id, booking_range(booking), booking.id)
        self._transition(booking, BookingStatus.CONFIRMED, confirmed_at=self.now())
        request = self.payments.open_initial(booking.id)
        self._emit(
            booking,
            EventType.BOOKING_ACCEPTED,
            (booking.rider_id, UserRole.RIDER),
            paymentRequestId=request.id,
            amountDue=str(request.amount),
        )
        return booking

    def reject(self, booking_id: int, actor: Actor, reason: Optional[str] = None) -> Booking:
        booking = self.get(booking_id)
        self._require_pickup_partner(booking, actor)
        return self._reject(booking, reason or "rejected by partner")

    def expire(self, booking_id: int) -> Booking:
        """Timeout sweep: a request nobody answered in time."""
        return self._reject(self.get(booking_id), REASON_TIMEOUT)

    def reject_unavailable(self, booking_id: int) -> Optional[Booking]:
        booking = self.get(booking_id)
        if booking.status != BookingStatus.REQUESTED:
            return None
        return self._reject(booking, REASON_UNAVAILABLE)

    def _reject(self, booking: Booking, reason: str) -> Booking:
        self._transition(booking, BookingStatus.REJECTED, status_reason=reason, closed_at=self.now())
        self._emit(booking, EventType.BOOKING_REJECTED, (booking.rider_id, UserRole.RIDER), reason=reason)
        return booking

    def activate(self, booking_id: int, request: PaymentRequest, actor: Optional[Actor] = None) -> Booking:
        booking = self.get(booking_id)
        if (
            request.booking_id != booking.id
            or request.kind != PaymentKind.INITIAL
            or request.status != PaymentStatus.COMPLETED
        ):
            raise PaymentIncomplete("Initial payment has not been completed")
        if booking.status != BookingStatus.CONFIRMED:
            raise StaleState()

        self.ledger.finalize(booking.id)
        self._transition(booking, BookingStatus.ACTIVE, activated_at=self.now())
        self._emit(
            booking,
            EventType.PAYMENT_COMPLETED,
            self._counterpart(booking, actor, booking.partner_id),
            paymentRequestId=request.id,
            kind=request.kind.value,
            amount=str(request.amount),
        )

        # anyone still waiting on these dates has lost them
        for other in self.ledger.overlapping_requests(booking):
            self._reject(other, REASON_UNAVAILABLE)
        return booking

    def complete(self, booking_id: int, actor: Actor) -> Booking:
        booking = self.get(booking_id)
        if not (actor.is_admin or (actor.is_partner and actor.user_id == booking.dropoff_partner_id)):
            raise Unauthorized("Only the drop-off partner can complete this booking")
        return self._complete(booking, actor)

    def _complete(self, booking: Booking, actor: Optional[Actor]) -> Booking:
        if booking.status != BookingStatus.ACTIVE:
            raise StaleState()
        assessment = self.assessments.get_for(booking.id)
        if assessment is None:
            raise AssessmentMissing()
        remaining = self.payments.completed_request(booking.id, PaymentKind.REMAINING)
        if remaining is None:
            raise PaymentIncomplete("Remaining payment has not been completed")

        self._transition(booking, BookingStatus.COMPLETED, completed_at=self.now())
        bike = self.ledger.transfer_ownership(booking.bike_id, booking.dropoff_partner_id)
        bike.condition = self.assessments.overall_condition(assessment)
        self.session.add(bike)
        self.ledger.release_booking(booking.id)
        self._emit(
            booking,
            EventType.BOOKING_COMPLETED,
            self._counterpart(booking, actor, booking.dropoff_partner_id),
            paymentRequestId=remaining.id,
            amount=str(remaining.amount),
        )
        return booking

    def cancel(self, booking_id: int, actor: Optional[Actor], reason: Optional[str] = None) -> Booking:
        """Cancel before the rental starts. ``actor=None`` is the engine itself."""
        booking = self.get(booking_id)
        if actor is not None and not (
            actor.is_admin
            or (actor.is_rider and actor.user_id == booking.rider_id)
            or (actor.is_partner and actor.user_id == booking.partner_id)
        ):
            raise Unauthorized("You cannot cancel this booking")
        if not can_transition(booking.status, BookingStatus.CANCELLED):
            raise StaleState()

        voided = self.payments.void_open(booking.id)
        self.ledger.release_booking(booking.id)
        self._transition(
            booking,
            BookingStatus.CANCELLED,
            status_reason=reason or "cancelled",
            closed_at=self.now(),
        )
        self._emit(
            booking,
            EventType.BOOKING_UPDATED,
            self._counterpart(booking, actor, booking.partner_id),
            reason=reason or "cancelled",
            voidedPaymentRequests=[r.id for r in voided],
        )
        return booking

    def on_payment_completed(self, request: PaymentRequest) -> Booking:
        """Advance the booking a completed payment unlocks; no-op if already advanced."""
        booking = self.get(request.booking_id)
        payer = self._payer(booking, request)
        if request.kind == PaymentKind.INITIAL and booking.status == BookingStatus.CONFIRMED:
            return self.activate(booking.id, request, payer)
        if request.kind == PaymentKind.REMAINING and booking.status == BookingStatus.ACTIVE:
            return self._complete(booking, payer)
        return booking

    def record_assessment(
        self, booking_id: int, record: DropoffAssessment, request: PaymentRequest
    ) -> None:
        booking = self.get(booking_id)
        self._emit(
            booking,
            EventType.BOOKING_UPDATED,
            (booking.rider_id, UserRole.RIDER),
            assessmentId=record.id,
            additionalCharges=list(record.additional_charges or []),
            paymentRequestId=request.id,
            amountDue=str(request.amount),
        )

    # ---------------- internals ----------------
    def _transition(self, booking: Booking, target: BookingStatus, **values) -> None:
        current = booking.status
        if not can_transition(current, target):
            raise StaleState()
        result = self.session.exec(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == current)
            .values(status=target, updated_at=self.now(), **values)
        )
        if result.rowcount != 1:
            logger.warning("Booking %s changed underneath %s -> %s", booking.id, current.value, target.value)
            raise StaleState()
        self.session.refresh(booking)
        logger.info("Booking %s: %s -> %s", booking.id, current.value, target.value)

    def _require_pickup_partner(self, booking: Booking, actor: Actor) -> None:
        if not actor.is_partner or actor.user_id != booking.partner_id:
            raise Unauthorized("Only the owning partner can respond to this booking")
        partner = self.session.get(Partner, actor.user_id)
        if partner is None or partner.status != PartnerStatus.ACTIVE:
            raise Unauthorized("Partner account is not active")

    @staticmethod
    def _payer(booking: Booking, request: PaymentRequest) -> Actor:
        if request.method == PaymentMethod.CASH:
            partner_id = booking.partner_id if request.kind == PaymentKind.INITIAL else booking.dropoff_partner_id
            return Actor(partner_id, UserRole.PARTNER)
        return Actor(booking.rider_id, UserRole.RIDER)

    @staticmethod
    def _counterpart(booking: Booking, actor: Optional[Actor], partner_id: int) -> Tuple[int, UserRole]:
        if actor is not None and actor.is_rider:
            return partner_id, UserRole.PARTNER
        return booking.rider_id, UserRole.RIDER

    def _emit(self, booking: Booking, type: EventType, target: Tuple[int, UserRole], **extra) -> None:
        payload = {
            "bookingId": booking.id,
            "bookingNumber": booking.booking_number,
            "status": booking.status.value,
            "bikeId": booking.bike_id,
            "startDate": booking.start_date.isoformat(),
            "endDate": booking.end_date.isoformat(),
        }
        payload.update(extra)
        self.hub.record(self.session, type, target[0], target[1], payload, booking_id=booking.id)
