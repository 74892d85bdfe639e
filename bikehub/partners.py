import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlmodel import Session, col, select

from .auth import Actor
from .errors import InvalidRequest, NotFound, StaleState, Unauthorized
from .models import Bike, Partner, PartnerStatus
from .schemas import BikeCreate, PartnerCreate

logger = logging.getLogger(__name__)

# admin action -> (required status, resulting status)
PARTNER_ACTIONS = {
    "approve": (PartnerStatus.PENDING, PartnerStatus.ACTIVE),
    "reject": (PartnerStatus.PENDING, PartnerStatus.INACTIVE),
    "suspend": (PartnerStatus.ACTIVE, PartnerStatus.INACTIVE),
    "reactivate": (PartnerStatus.INACTIVE, PartnerStatus.ACTIVE),
}


class PartnerRegistry:
    def __init__(self, session: Session, now: Callable[[], datetime] = datetime.utcnow):
        self.session = session
        self.now = now

    def get(self, partner_id: int) -> Partner:
        partner = self.session.get(Partner, partner_id)
        if not partner:
            raise NotFound("Partner not found")
        return partner

    def list(self, status: Optional[PartnerStatus] = None) -> List[Partner]:
        stmt = select(Partner)
        if status is not None:
            stmt = stmt.where(Partner.status == status)
        return list(self.session.exec(stmt.order_by(col(Partner.id))).all())

    def register(self, data: PartnerCreate) -> Partner:
        email = data.email.strip().lower()
        if self.session.exec(select(Partner).where(Partner.email == email)).first():
            raise InvalidRequest("A partner with this email already exists")
        partner = Partner(name=data.name, email=email, location=data.location, created_at=self.now())
        self.session.add(partner)
        self.session.flush()
        logger.info("Partner %s registered, awaiting approval", partner.id)
        return partner

    def apply(self, partner_id: int, action: str, actor: Actor) -> Partner:
        if not actor.is_admin:
            raise Unauthorized("Admin access required")
        if action not in PARTNER_ACTIONS:
            raise InvalidRequest(f"Unknown action: {action}")
        partner = self.get(partner_id)
        source, target = PARTNER_ACTIONS[action]

        values = {"status": target, "updated_at": self.now()}
        if action == "approve":
            values["verified_at"] = self.now()
        result = self.session.exec(
            update(Partner).where(Partner.id == partner.id, Partner.status == source).values(**values)
        )
        if result.rowcount != 1:
            raise StaleState("Partner status has changed, please refresh")
        self.session.refresh(partner)
        logger.info("Partner %s: %s -> %s (%s)", partner.id, source.value, target.value, action)
        return partner

    def approve(self, partner_id: int, actor: Actor) -> Partner:
        return self.apply(partner_id, "approve", actor)

    def reject(self, partner_id: int, actor: Actor) -> Partner:
        return self.apply(partner_id, "reject", actor)

    def suspend(self, partner_id: int, actor: Actor) -> Partner:
        return self.apply(partner_id, "suspend", actor)

    def reactivate(self, partner_id: int, actor: Actor) -> Partner:
        return self.apply(partner_id, "reactivate", actor)

    def add_bike(self, actor: Actor, data: BikeCreate) -> Bike:
        if not actor.is_partner:
            raise Unauthorized("Only partners can list bikes")
        partner = self.get(actor.user_id)
        if partner.status != PartnerStatus.ACTIVE:
            raise Unauthorized("Partner account is not active")
        bike = Bike(
            partner_id=partner.id,
            name=data.name,
            bike_type=data.bike_type,
            location=data.location or partner.location,
            daily_rate=data.daily_rate,
            delivery_fee=data.delivery_fee,
            created_at=self.now(),
            updated_at=self.now(),
        )
        self.session.add(bike)
        self.session.flush()
        return bike

    def bikes_of(self, partner_id: int) -> List[Bike]:
        return list(self.session.exec(select(Bike).where(Bike.partner_id == partner_id)).all())
