"""Inventory ledger: who owns a bike, and which dates it is spoken for.

Requested bookings never hold dates; only bookings in ``confirmed`` or
``active`` state block a reservation. Date ranges written by the ledger into a
bike's availability record carry the owning ``booking_id``; ranges entered by
the partner don't, and a partner toggle only ever replaces its own ranges.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlmodel import Session, col, select

from .errors import Conflict, NotFound
from .models import (
    AvailabilityStatus,
    Bike,
    BikeReservation,
    Booking,
    BookingStatus,
    Partner,
)
from .schemas import DateRange, UnavailableRange

logger = logging.getLogger(__name__)

HOLDING_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.ACTIVE)


def _range(entry: dict) -> UnavailableRange:
    return UnavailableRange.model_validate(entry)


def _entry(date_range: DateRange, booking_id: Optional[int] = None) -> dict:
    return {"start": date_range.start.isoformat(), "end": date_range.end.isoformat(), "booking_id": booking_id}


def booking_range(booking: Booking) -> DateRange:
    return DateRange(start=booking.start_date, end=booking.end_date)


class InventoryLedger:
    def __init__(self, session: Session, now: Callable[[], datetime] = datetime.utcnow):
        self.session = session
        self.now = now

    def get_bike(self, bike_id: int) -> Bike:
        bike = self.session.get(Bike, bike_id)
        if not bike:
            raise NotFound("Bike not found")
        return bike

    # ---------------- queries ----------------
    def holding_reservations(self, bike_id: int, exclude_booking_id: Optional[int] = None) -> List[BikeReservation]:
        stmt = (
            select(BikeReservation)
            .join(Booking, Booking.id == BikeReservation.booking_id)
            .where(
                BikeReservation.bike_id == bike_id,
                col(Booking.status).in_(HOLDING_STATUSES),
            )
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(BikeReservation.booking_id != exclude_booking_id)
        return list(self.session.exec(stmt).all())

    def check_available(self, bike_id: int, date_range: DateRange, exclude_booking_id: Optional[int] = None) -> Bike:
        """Raise ``Conflict`` unless the bike can be held for ``date_range``."""
        bike = self.get_bike(bike_id)
        if bike.availability_status != AvailabilityStatus.AVAILABLE:
            raise Conflict(bike.availability_reason or "Bike is currently unavailable")

        for entry in bike.unavailable_ranges or []:
            blocked = _range(entry)
            if blocked.booking_id is None and blocked.overlaps(date_range):
                raise Conflict()

        for held in self.holding_reservations(bike_id, exclude_booking_id):
            if DateRange(start=held.start_date, end=held.end_date).overlaps(date_range):
                logger.info("Bike %s already held by booking %s", bike_id, held.booking_id)
                raise Conflict()
        return bike

    def overlapping_requests(self, booking: Booking) -> List[Booking]:
        """Other still-requested bookings for the same bike and overlapping dates."""
        rows = self.session.exec(
            select(Booking).where(
                Booking.bike_id == booking.bike_id,
                Booking.id != booking.id,
                Booking.status == BookingStatus.REQUESTED,
                Booking.start_date < booking.end_date,
                Booking.end_date > booking.start_date,
            )
        ).all()
        return list(rows)

    def active_window_covers(self, bike_id: int, day) -> bool:
        for held in self.holding_reservations(bike_id):
            booking = self.session.get(Booking, held.booking_id)
            if booking.status == BookingStatus.ACTIVE and held.start_date <= day < held.end_date:
                return True
        return False

    # ---------------- reservations ----------------
    def reserve(self, bike_id: int, date_range: DateRange, booking_id: int) -> BikeReservation:
        """Soft-hold the dates for ``booking_id``; raises ``Conflict`` on overlap."""
        self.check_available(bike_id, date_range, exclude_booking_id=booking_id)
        reservation = self.session.exec(
            select(BikeReservation).where(BikeReservation.booking_id == booking_id)
        ).first()
        if reservation is None:
            reservation = BikeReservation(bike_id=bike_id, booking_id=booking_id, created_at=self.now())
        reservation.start_date = date_range.start
        reservation.end_date = date_range.end
        self.session.add(reservation)
        return reservation

    def finalize(self, booking_id: int) -> BikeReservation:
        """Firm up a soft hold once the booking is paid; re-validates the overlap."""
        reservation = self.session.exec(
            select(BikeReservation).where(BikeReservation.booking_id == booking_id)
        ).first()
        if reservation is None:
            raise Conflict("Reservation for this booking no longer exists")
        dates = DateRange(start=reservation.start_date, end=reservation.end_date)

        bike = self.get_bike(reservation.bike_id)
        for held in self.holding_reservations(bike.id, exclude_booking_id=booking_id):
            if held.firm and DateRange(start=held.start_date, end=held.end_date).overlaps(dates):
                raise Conflict()

        reservation.firm = True
        self.session.add(reservation)
        ranges = [e for e in bike.unavailable_ranges or [] if e.get("booking_id") != booking_id]
        ranges.append(_entry(dates, booking_id))
        self._write_ranges(bike, ranges)
        return reservation

    def release(self, bike_id: int, date_range: DateRange) -> int:
        """Drop every reservation of ``bike_id`` lying inside ``date_range``."""
        held = self.session.exec(
            select(BikeReservation).where(
                BikeReservation.bike_id == bike_id,
                BikeReservation.start_date >= date_range.start,
                BikeReservation.end_date <= date_range.end,
            )
        ).all()
        for reservation in held:
            self._drop(reservation)
        return len(held)

    def release_booking(self, booking_id: int) -> None:
        reservation = self.session.exec(
            select(BikeReservation).where(BikeReservation.booking_id == booking_id)
        ).first()
        if reservation is not None:
            self._drop(reservation)

    def _drop(self, reservation: BikeReservation) -> None:
        bike = self.session.get(Bike, reservation.bike_id)
        if bike is not None:
            ranges = [e for e in bike.unavailable_ranges or [] if e.get("booking_id") != reservation.booking_id]
            self._write_ranges(bike, ranges)
        self.session.delete(reservation)

    # ---------------- ownership & availability ----------------
    def transfer_ownership(self, bike_id: int, new_partner_id: int) -> Bike:
        bike = self.get_bike(bike_id)
        previous = bike.partner_id
        bike.partner_id = new_partner_id
        partner = self.session.get(Partner, new_partner_id)
        if partner is not None and partner.location:
            bike.location = partner.location
        bike.updated_at = self.now()
        self.session.add(bike)
        logger.info("Bike %s transferred from partner %s to %s", bike_id, previous, new_partner_id)
        return bike

    def set_availability(
        self,
        bike_id: int,
        status: AvailabilityStatus,
        reason: Optional[str] = None,
        unavailable_ranges: Optional[Iterable[DateRange]] = None,
    ) -> Bike:
        bike = self.get_bike(bike_id)
        if status != bike.availability_status and self.active_window_covers(bike_id, self.now().date()):
            raise Conflict("Bike is out on an active rental")

        bike.availability_status = status
        if status == AvailabilityStatus.AVAILABLE:
            bike.availability_reason = ""
        elif reason is not None:
            bike.availability_reason = reason

        if unavailable_ranges is not None:
            held = [e for e in bike.unavailable_ranges or [] if e.get("booking_id") is not None]
            self._write_ranges(bike, held + [_entry(r) for r in unavailable_ranges])
        else:
            bike.updated_at = self.now()
            self.session.add(bike)
        return bike

    def _write_ranges(self, bike: Bike, ranges: List[dict]) -> None:
        # JSON columns only persist on reassignment
        bike.unavailable_ranges = sorted(ranges, key=lambda e: e["start"])
        bike.updated_at = self.now()
        self.session.add(bike)
