"""Payment coordinator: the split-payment protocol behind booking transitions.

Every booking is paid in two requests. The ``initial`` request is a configured
share of the total and moves a confirmed booking to active. The ``remaining``
request is the balance plus drop-off charges and completes the booking. Each
request runs ``pending -> processing -> completed | failed``. A failed request
is never retried in place; a new request supersedes it.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional, Sequence

from sqlmodel import Session, col, select

from .auth import Actor
from .config import Settings
from .errors import NotFound, PaymentFailed, PaymentIncomplete, StaleState, Unauthorized
from .events import EventHub
from .gateway import GatewayError, GatewayStatus, PaymentGateway
from .models import (
    Booking,
    BookingStatus,
    EventType,
    PaymentKind,
    PaymentMethod,
    PaymentRequest,
    PaymentStatus,
    UserRole,
)
from .schemas import AdditionalCharge, PaymentSummary

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# booking status each kind of request may be paid in
PAYABLE_IN = {
    PaymentKind.INITIAL: BookingStatus.CONFIRMED,
    PaymentKind.REMAINING: BookingStatus.ACTIVE,
}


def money(amount) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def charges_total(charges: Sequence[AdditionalCharge]) -> Decimal:
    return money(sum((c.amount for c in charges), Decimal("0")))


def _charge_key(charges: Sequence[AdditionalCharge]):
    return sorted((c.type.value, c.description, money(c.amount)) for c in charges)


class PaymentCoordinator:
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
        self.gateway = gateway
        self.settings = settings
        self.now = now

    # ---------------- lookups ----------------
    def get(self, request_id: int) -> PaymentRequest:
        request = self.session.get(PaymentRequest, request_id)
        if not request:
            raise NotFound("Payment request not found")
        return request

    def by_session(self, session_id: str) -> PaymentRequest:
        request = self.session.exec(
            select(PaymentRequest).where(PaymentRequest.session_id == session_id)
        ).first()
        if not request:
            raise NotFound("Checkout session not found")
        return request

    def for_booking(self, booking_id: int, kind: Optional[PaymentKind] = None) -> List[PaymentRequest]:
        stmt = select(PaymentRequest).where(PaymentRequest.booking_id == booking_id)
        if kind is not None:
            stmt = stmt.where(PaymentRequest.kind == kind)
        return list(self.session.exec(stmt.order_by(col(PaymentRequest.id))).all())

    def open_request(self, booking_id: int, kind: PaymentKind) -> Optional[PaymentRequest]:
        for request in self.for_booking(booking_id, kind):
            if request.status.is_open:
                return request
        return None

    def completed_request(self, booking_id: int, kind: PaymentKind) -> Optional[PaymentRequest]:
        for request in self.for_booking(booking_id, kind):
            if request.status == PaymentStatus.COMPLETED:
                return request
        return None

    def _booking(self, booking_id: int) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        return booking

    # ---------------- amounts ----------------
    def initial_amount(self, booking: Booking) -> Decimal:
        return money(booking.total_price * self.settings.initial_payment_percent / Decimal("100"))

    def remaining_amount(self, booking: Booking, charges: Sequence[AdditionalCharge]) -> Decimal:
        initial = self.completed_request(booking.id, PaymentKind.INITIAL)
        paid = initial.amount if initial else self.initial_amount(booking)
        return money(booking.total_price - paid + charges_total(charges))

    # ---------------- opening requests ----------------
    def open_initial(self, booking_id: int) -> PaymentRequest:
        booking = self._booking(booking_id)
        if booking.status != BookingStatus.CONFIRMED:
            raise StaleState()
        if self.completed_request(booking_id, PaymentKind.INITIAL):
            raise StaleState("Initial payment already completed")
        existing = self.open_request(booking_id, PaymentKind.INITIAL)
        if existing:
            return existing
        return self._create(booking, PaymentKind.INITIAL, self.initial_amount(booking), [])

    def open_remaining(self, booking_id: int, additional_charges: Sequence[AdditionalCharge] = ()) -> PaymentRequest:
        booking = self._booking(booking_id)
        if booking.status != BookingStatus.ACTIVE:
            raise StaleState()
        if not self.completed_request(booking_id, PaymentKind.INITIAL):
            raise PaymentIncomplete("Initial payment has not been completed")
        if self.completed_request(booking_id, PaymentKind.REMAINING):
            raise StaleState("Remaining payment already completed")

        existing = self.open_request(booking_id, PaymentKind.REMAINING)
        if existing:
            current = [AdditionalCharge.model_validate(c) for c in existing.additional_charges or []]
            if _charge_key(current) == _charge_key(additional_charges):
                return existing
            self._fail(existing, "superseded", notify=False)
            self.session.flush()

        amount = self.remaining_amount(booking, additional_charges)
        return self._create(booking, PaymentKind.REMAINING, amount, additional_charges)

    def _create(
        self,
        booking: Booking,
        kind: PaymentKind,
        amount: Decimal,
        charges: Sequence[AdditionalCharge],
    ) -> PaymentRequest:
        previous = [r for r in self.for_booking(booking.id, kind) if r.status == PaymentStatus.FAILED]
        request = PaymentRequest(
            booking_id=booking.id,
            kind=kind,
            amount=amount,
            currency=booking.currency,
            status=PaymentStatus.PENDING,
            supersedes_id=previous[-1].id if previous else None,
            additional_charges=[c.model_dump(mode="json") for c in charges],
            created_at=self.now(),
            updated_at=self.now(),
        )
        self.session.add(request)
        self.session.flush()
        logger.info(
            "Opened %s payment request %s for booking %s: %s %s",
            kind.value, request.id, booking.id, amount, booking.currency,
        )
        return request

    # ---------------- settling ----------------
    def begin_checkout(self, request_id: int, actor: Actor, method: PaymentMethod = PaymentMethod.CARD) -> PaymentRequest:
        request = self.get(request_id)
        booking = self._booking(request.booking_id)
        if not actor.is_rider or actor.user_id != booking.rider_id:
            raise Unauthorized("Only the rider can pay for this booking")
        self._require_payable(request, booking)

        if method == PaymentMethod.CASH:
            if request.status == PaymentStatus.PROCESSING:
                raise StaleState("A card checkout is already in progress")
            request.method = PaymentMethod.CASH
            request.updated_at = self.now()
            self.session.add(request)
            return request

        if request.status == PaymentStatus.PROCESSING and request.session_id:
            return request

        try:
            info = self.gateway.create_checkout_session(
                request.amount,
                request.currency,
                {
                    "booking_id": str(booking.id),
                    "payment_request_id": str(request.id),
                    "kind": request.kind.value,
                    "description": f"{booking.booking_number} ({request.kind.value} payment)",
                },
            )
        except GatewayError:
            raise PaymentFailed("Payment provider is unavailable, please try again")

        request.method = PaymentMethod.CARD
        request.status = PaymentStatus.PROCESSING
        request.session_id = info.session_id
        request.checkout_url = info.url
        request.poll_attempts = 0
        request.last_polled_at = None
        request.updated_at = self.now()
        self.session.add(request)
        logger.info("Checkout session %s opened for payment request %s", info.session_id, request.id)
        return request

    def record_cash_settlement(self, request_id: int, actor: Actor) -> PaymentRequest:
        request = self.get(request_id)
        booking = self._booking(request.booking_id)
        responsible = booking.partner_id if request.kind == PaymentKind.INITIAL else booking.dropoff_partner_id
        if not actor.is_partner or actor.user_id != responsible:
            raise Unauthorized("Only the handling partner can confirm a cash payment")

        if request.status == PaymentStatus.COMPLETED and request.method == PaymentMethod.CASH:
            return request
        self._require_payable(request, booking)
        if request.status == PaymentStatus.PROCESSING:
            raise StaleState("A card checkout is in progress for this payment")

        self._complete(request, PaymentMethod.CASH, None)
        return request

    def poll_checkout(self, session_id: str) -> PaymentRequest:
        request = self.by_session(session_id)
        if not request.status.is_open:
            return request

        # only one poll per interval counts towards the attempt limit
        interval = timedelta(seconds=self.settings.checkout_poll_interval_seconds)
        counted = request.last_polled_at is None or self.now() - request.last_polled_at >= interval
        if counted:
            request.poll_attempts += 1
            request.last_polled_at = self.now()
        exhausted = counted and request.poll_attempts >= self.settings.checkout_poll_max_attempts
        try:
            result = self.gateway.get_session_status(session_id)
        except GatewayError:
            if exhausted:
                self._fail(request, "checkout timed out")
            elif counted:
                self.session.add(request)
            return request

        if result.status == GatewayStatus.OPEN and not exhausted:
            self.session.add(request)
            return request
        return self._apply(request, result.status, result.transaction_id)

    def verify_notification(self, session_id: str, claimed: GatewayStatus) -> PaymentRequest:
        """Settle a session from the provider's own record.

        Notifications are unauthenticated, so ``claimed`` only decides whether we
        log a mismatch; the state applied is always the one the provider reports.
        """
        request = self.by_session(session_id)
        try:
            result = self.gateway.get_session_status(session_id)
        except GatewayError:
            logger.warning("Could not verify checkout session %s, leaving it to polling", session_id)
            return request
        if result.status != claimed:
            logger.warning(
                "Notification for session %s claimed %s but the provider reports %s",
                session_id, claimed.value, result.status.value,
            )
        return self.apply_gateway_update(session_id, result.status, result.transaction_id)

    def apply_gateway_update(self, session_id: str, status: GatewayStatus, transaction_id: Optional[str] = None) -> PaymentRequest:
        request = self.by_session(session_id)
        if not request.status.is_open:
            if status == GatewayStatus.PAID and request.status == PaymentStatus.FAILED:
                logger.warning(
                    "Session %s paid after payment request %s was closed (%s); refund needed",
                    session_id, request.id, request.failure_reason,
                )
            return request
        if status == GatewayStatus.OPEN:
            return request
        return self._apply(request, status, transaction_id)

    def _apply(self, request: PaymentRequest, status: GatewayStatus, transaction_id: Optional[str]) -> PaymentRequest:
        if status == GatewayStatus.PAID:
            self._complete(request, PaymentMethod.CARD, transaction_id)
        elif status == GatewayStatus.EXPIRED:
            self._fail(request, "checkout session expired")
        elif status == GatewayStatus.FAILED:
            self._fail(request, "payment declined")
        else:
            self._fail(request, "checkout timed out")
        return request

    def void_open(self, booking_id: int) -> List[PaymentRequest]:
        voided = []
        for request in self.for_booking(booking_id):
            if request.status.is_open:
                self._fail(request, "voided", notify=False)
                voided.append(request)
        return voided

    def due_for_poll(self) -> List[PaymentRequest]:
        cutoff = self.now() - timedelta(seconds=self.settings.checkout_poll_interval_seconds)
        rows = self.session.exec(
            select(PaymentRequest).where(
                PaymentRequest.status == PaymentStatus.PROCESSING,
                PaymentRequest.method == PaymentMethod.CARD,
                col(PaymentRequest.session_id).is_not(None),
            )
        ).all()
        return [r for r in rows if r.last_polled_at is None or r.last_polled_at <= cutoff]

    # ---------------- summary ----------------
    def summary(self, booking: Booking) -> PaymentSummary:
        requests = self.for_booking(booking.id)
        done = [r for r in requests if r.status == PaymentStatus.COMPLETED]
        initial_paid = any(r.kind == PaymentKind.INITIAL for r in done)
        remaining_paid = any(r.kind == PaymentKind.REMAINING for r in done)

        live_remaining = [r for r in requests if r.kind == PaymentKind.REMAINING and r.status != PaymentStatus.FAILED]
        charges = [AdditionalCharge.model_validate(c) for c in (live_remaining[-1].additional_charges if live_remaining else [])]

        next_due = None
        if booking.status in (BookingStatus.CONFIRMED, BookingStatus.ACTIVE):
            if not initial_paid:
                next_due = PaymentKind.INITIAL
            elif not remaining_paid:
                next_due = PaymentKind.REMAINING
        return PaymentSummary(
            initial_paid=initial_paid,
            remaining_paid=remaining_paid,
            is_fully_paid=initial_paid and remaining_paid,
            total_paid=money(sum((r.amount for r in done), Decimal("0"))),
            total_additional_charges=charges_total(charges),
            next_payment_due=next_due,
        )

    # ---------------- internals ----------------
    def _require_payable(self, request: PaymentRequest, booking: Booking) -> None:
        if request.status == PaymentStatus.FAILED:
            raise PaymentFailed()
        if request.status == PaymentStatus.COMPLETED:
            raise StaleState("This payment has already been completed")
        if booking.status != PAYABLE_IN[request.kind]:
            raise StaleState()

    def _complete(self, request: PaymentRequest, method: PaymentMethod, transaction_id: Optional[str]) -> None:
        request.status = PaymentStatus.COMPLETED
        request.method = method
        request.transaction_id = transaction_id
        request.completed_at = self.now()
        request.updated_at = self.now()
        self.session.add(request)
        logger.info("Payment request %s completed (%s)", request.id, method.value)

    def _fail(self, request: PaymentRequest, reason: str, notify: bool = True) -> None:
        request.status = PaymentStatus.FAILED
        request.failure_reason = reason
        request.updated_at = self.now()
        self.session.add(request)
        logger.warning("Payment request %s failed: %s", request.id, reason)
        if notify:
            booking = self._booking(request.booking_id)
            self.hub.record(
                self.session,
                EventType.BOOKING_UPDATED,
                booking.rider_id,
                UserRole.RIDER,
                {
                    "bookingId": booking.id,
                    "paymentRequestId": request.id,
                    "kind": request.kind.value,
                    "paymentStatus": PaymentStatus.FAILED.value,
                    "reason": reason,
                },
                booking_id=booking.id,
            )
