from typing import List, Optional
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import (
    AvailabilityStatus,
    BookingStatus,
    ChargeType,
    ConditionPart,
    ConditionRating,
    EventType,
    PartnerStatus,
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    UserRole,
)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ------------------------------------------------------------------
# Value types
# ------------------------------------------------------------------
class DateRange(BaseModel):
    """Rental window; ``end`` is exclusive, so 1..4 is three days."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def overlaps(self, other: "DateRange") -> bool:
        return self.start < other.end and other.start < self.end


class UnavailableRange(DateRange):
    booking_id: Optional[int] = None


class AdditionalCharge(BaseModel):
    type: ChargeType
    description: str = ""
    amount: Decimal = Field(ge=0, max_digits=12, decimal_places=2)


class ConditionItem(BaseModel):
    part: ConditionPart
    rating: ConditionRating
    notes: Optional[str] = None


# ------------------------------------------------------------------
# Partners & bikes
# ------------------------------------------------------------------
class PartnerCreate(ORMModel):
    name: str
    email: str
    location: str


class PartnerRead(ORMModel):
    id: int
    name: str
    email: str
    location: str
    status: PartnerStatus
    verified_at: Optional[datetime] = None


class BikeCreate(ORMModel):
    name: str
    bike_type: str = "city"
    location: Optional[str] = None    # defaults to the partner's location
    daily_rate: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    delivery_fee: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)


class BikeRead(ORMModel):
    id: int
    partner_id: int
    name: str
    bike_type: str
    location: str
    daily_rate: Decimal
    delivery_fee: Optional[Decimal] = None
    condition: ConditionRating
    availability_status: AvailabilityStatus
    availability_reason: str
    unavailable_ranges: List[UnavailableRange] = []


class AvailabilityUpdate(ORMModel):
    status: AvailabilityStatus
    reason: Optional[str] = None
    # None keeps the current manual ranges, [] clears them
    unavailable_ranges: Optional[List[DateRange]] = None


# ------------------------------------------------------------------
# Bookings
# ------------------------------------------------------------------
class BookingCreate(ORMModel):
    bike_id: int
    date_range: DateRange
    delivery_address: Optional[str] = None
    dropoff_partner_id: Optional[int] = None   # defaults to the pickup partner


class BookingRead(ORMModel):
    id: int
    booking_number: str
    rider_id: int
    bike_id: int
    partner_id: int
    dropoff_partner_id: int
    start_date: date
    end_date: date
    delivery_address: Optional[str] = None
    daily_rate: Decimal
    delivery_fee: Decimal
    total_price: Decimal
    currency: str
    status: BookingStatus
    status_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PaymentSummary(BaseModel):
    initial_paid: bool
    remaining_paid: bool
    is_fully_paid: bool
    total_paid: Decimal
    total_additional_charges: Decimal
    next_payment_due: Optional[PaymentKind] = None


class PaymentRequestRead(ORMModel):
    id: int
    booking_id: int
    kind: PaymentKind
    amount: Decimal
    currency: str
    method: Optional[PaymentMethod] = None
    status: PaymentStatus
    session_id: Optional[str] = None
    checkout_url: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    supersedes_id: Optional[int] = None
    additional_charges: List[AdditionalCharge] = []
    created_at: datetime
    completed_at: Optional[datetime] = None


class BookingDetail(BookingRead):
    payments: List[PaymentRequestRead] = []
    payment_summary: PaymentSummary


class ReasonBody(ORMModel):
    reason: Optional[str] = None


# ------------------------------------------------------------------
# Payments
# ------------------------------------------------------------------
class CheckoutRequest(ORMModel):
    method: PaymentMethod = PaymentMethod.CARD


class CheckoutSession(ORMModel):
    request_id: int
    method: PaymentMethod
    status: PaymentStatus
    session_id: Optional[str] = None
    checkout_url: Optional[str] = None


class CheckoutStatus(ORMModel):
    request_id: int
    status: PaymentStatus
    transaction_id: Optional[str] = None
    poll_attempts: int = 0


class GatewayNotification(ORMModel):
    session_id: str
    status: str


# ------------------------------------------------------------------
# Drop-off assessment
# ------------------------------------------------------------------
class AssessmentCreate(ORMModel):
    condition_items: List[ConditionItem]
    additional_charges: List[AdditionalCharge] = []
    notes: str = ""
    photos: List[str] = []

    @field_validator("condition_items")
    @classmethod
    def _full_checklist(cls, items: List[ConditionItem]) -> List[ConditionItem]:
        parts = [i.part for i in items]
        missing = [p.value for p in ConditionPart if p not in parts]
        if missing:
            raise ValueError(f"missing checklist items: {', '.join(missing)}")
        if len(parts) != len(set(parts)):
            raise ValueError("each checklist item may only appear once")
        return items


class AssessmentRead(ORMModel):
    id: int
    booking_id: int
    partner_id: int
    condition_items: List[ConditionItem]
    additional_charges: List[AdditionalCharge]
    notes: str
    photos: List[str]
    submitted_at: datetime
    updated_at: datetime


# ------------------------------------------------------------------
# Events (camelCase on the wire)
# ------------------------------------------------------------------
class EventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: int
    type: EventType
    target_user_id: int
    target_user_role: UserRole
    payload: dict
    created_at: datetime


class EventCleanup(ORMModel):
    older_than_days: int = Field(default=7, ge=0)


class EventStats(ORMModel):
    total_events: int
    unprocessed_events: int
    processed_events: int
    timestamp: datetime
