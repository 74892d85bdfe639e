import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlmodel import Session, select

from .auth import Actor
from .errors import NotFound, StaleState, Unauthorized
from .models import Booking, BookingStatus, ConditionRating, DropoffAssessment
from .schemas import AdditionalCharge, AssessmentCreate, ConditionItem

logger = logging.getLogger(__name__)


class DropoffAssessments:
    """Condition checklist and extra charges recorded when a bike comes back.

    Never touches booking status; the charges feed the remaining payment and
    the record is kept for disputes.
    """

    def __init__(self, session: Session, now: Callable[[], datetime] = datetime.utcnow):
        self.session = session
        self.now = now

    def get_for(self, booking_id: int) -> Optional[DropoffAssessment]:
        return self.session.exec(
            select(DropoffAssessment).where(DropoffAssessment.booking_id == booking_id)
        ).first()

    def submit(self, booking_id: int, actor: Actor, submission: AssessmentCreate) -> DropoffAssessment:
        booking = self.session.get(Booking, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        if not actor.is_partner or actor.user_id != booking.dropoff_partner_id:
            raise Unauthorized("Only the drop-off partner can assess this bike")
        # overwriting is only allowed while the rental is still open
        if booking.status != BookingStatus.ACTIVE:
            raise StaleState()

        record = self.get_for(booking_id)
        if record is None:
            record = DropoffAssessment(booking_id=booking_id, partner_id=actor.user_id, submitted_at=self.now())
        else:
            logger.info("Overwriting drop-off assessment for booking %s", booking_id)
        record.partner_id = actor.user_id
        record.condition_items = [i.model_dump(mode="json") for i in submission.condition_items]
        record.additional_charges = [c.model_dump(mode="json") for c in submission.additional_charges]
        record.notes = submission.notes
        record.photos = list(submission.photos)
        record.updated_at = self.now()
        self.session.add(record)
        self.session.flush()
        return record

    @staticmethod
    def charges(record: DropoffAssessment) -> List[AdditionalCharge]:
        return [AdditionalCharge.model_validate(c) for c in record.additional_charges or []]

    @staticmethod
    def overall_condition(record: DropoffAssessment) -> ConditionRating:
        items = [ConditionItem.model_validate(i) for i in record.condition_items or []]
        if not items:
            return ConditionRating.GOOD
        return min((i.rating for i in items), key=lambda r: r.rank)
