from typing import List, Optional
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import SQLModel, Field, UniqueConstraint


# ------------------------------------------------------------------
# Enumerations (stored by name)
# ------------------------------------------------------------------
class UserRole(str, Enum):
    RIDER = "rider"
    PARTNER = "partner"
    ADMIN = "admin"


class PartnerStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    MAINTENANCE = "maintenance"


class BookingStatus(str, Enum):
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.COMPLETED, BookingStatus.REJECTED, BookingStatus.CANCELLED)


class PaymentKind(str, Enum):
    INITIAL = "initial"
    REMAINING = "remaining"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_open(self) -> bool:
        return self in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH = "cash"


class ConditionRating(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    DAMAGED = "damaged"

    @property
    def rank(self) -> int:
        # higher is better
        return {"excellent": 3, "good": 2, "fair": 1, "damaged": 0}[self.value]


class ConditionPart(str, Enum):
    FRAME = "frame"
    WHEELS = "wheels"
    BRAKES = "brakes"
    DRIVETRAIN = "drivetrain"
    HANDLEBARS = "handlebars"
    SEAT = "seat"
    LIGHTS = "lights"
    ACCESSORIES = "accessories"


class ChargeType(str, Enum):
    DAMAGE = "damage"
    CLEANING = "cleaning"
    LATE_RETURN = "late_return"
    FUEL = "fuel"
    OTHER = "other"


class EventType(str, Enum):
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_ACCEPTED = "BOOKING_ACCEPTED"
    BOOKING_REJECTED = "BOOKING_REJECTED"
    BOOKING_UPDATED = "BOOKING_UPDATED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"


# ------------------------------------------------------------------
# Tables
# ------------------------------------------------------------------
class Partner(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("email"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str
    location: str
    status: PartnerStatus = Field(default=PartnerStatus.PENDING, index=True)
    verified_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Bike(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    partner_id: int = Field(foreign_key="partner.id", index=True)   # current owner
    name: str
    bike_type: str = "city"
    location: str
    daily_rate: Decimal = Field(max_digits=12, decimal_places=2)
    delivery_fee: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    condition: ConditionRating = ConditionRating.GOOD
    availability_status: AvailabilityStatus = AvailabilityStatus.AVAILABLE
    availability_reason: str = ""
    # [{"start": iso, "end": iso, "booking_id": int | None}]
    unavailable_ranges: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Booking(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("booking_number"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_number: str
    rider_id: int = Field(index=True)
    bike_id: int = Field(foreign_key="bike.id", index=True)
    partner_id: int = Field(foreign_key="partner.id", index=True)
    dropoff_partner_id: int = Field(foreign_key="partner.id", index=True)
    start_date: date = Field(index=True)
    end_date: date
    delivery_address: Optional[str] = None
    daily_rate: Decimal = Field(max_digits=12, decimal_places=2)
    delivery_fee: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    total_price: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = "USD"
    status: BookingStatus = Field(default=BookingStatus.REQUESTED, index=True)
    status_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    confirmed_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None   # rejected / cancelled

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days


class BikeReservation(SQLModel, table=True):
    __tablename__ = "bike_reservation"
    __table_args__ = (UniqueConstraint("booking_id"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    bike_id: int = Field(foreign_key="bike.id", index=True)
    booking_id: int = Field(foreign_key="booking.id")
    start_date: date
    end_date: date
    firm: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)


class PaymentRequest(SQLModel, table=True):
    __tablename__ = "payment_request"
    __table_args__ = (
        # at most one open request per booking and kind
        Index(
            "uq_payment_request_open_kind",
            "booking_id", "kind",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'PROCESSING')"),
            postgresql_where=text("status IN ('PENDING', 'PROCESSING')"),
        ),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: int = Field(foreign_key="booking.id", index=True)
    kind: PaymentKind
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = "USD"
    method: Optional[PaymentMethod] = None
    status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    session_id: Optional[str] = Field(default=None, index=True)
    checkout_url: Optional[str] = None
    transaction_id: Optional[str] = None
    poll_attempts: int = 0
    last_polled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    supersedes_id: Optional[int] = Field(default=None, foreign_key="payment_request.id")
    additional_charges: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


class DropoffAssessment(SQLModel, table=True):
    __tablename__ = "dropoff_assessment"
    __table_args__ = (UniqueConstraint("booking_id"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: int = Field(foreign_key="booking.id")
    partner_id: int = Field(foreign_key="partner.id")
    condition_items: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    additional_charges: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    notes: str = ""
    photos: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class DomainEvent(SQLModel, table=True):
    __tablename__ = "domain_event"
    id: Optional[int] = Field(default=None, primary_key=True)
    type: EventType
    target_user_id: int = Field(index=True)
    target_user_role: UserRole
    booking_id: Optional[int] = Field(default=None, index=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    processed: bool = Field(default=False, index=True)
    processed_at: Optional[datetime] = None
