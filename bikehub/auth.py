# bikehub/auth.py
# Credentials are issued upstream; the gateway in front of this service
# forwards the verified identity as X-User-Id / X-User-Role.
from dataclasses import dataclass
from typing import Mapping

from fastapi import HTTPException, Request

from .models import UserRole


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_rider(self) -> bool:
        return self.role == UserRole.RIDER

    @property
    def is_partner(self) -> bool:
        return self.role == UserRole.PARTNER


def actor_from_headers(headers: Mapping[str, str]) -> Actor:
    uid = headers.get("X-User-Id") or headers.get("x-user-id")
    if not uid:
        raise HTTPException(401, "Missing X-User-Id header")
    try:
        user_id = int(uid)
    except ValueError:
        raise HTTPException(400, "Invalid X-User-Id")

    raw_role = (headers.get("X-User-Role") or headers.get("x-user-role") or "rider").lower()
    try:
        role = UserRole(raw_role)
    except ValueError:
        raise HTTPException(400, "Invalid X-User-Role")
    return Actor(user_id=user_id, role=role)


def get_current_actor(request: Request) -> Actor:
    return actor_from_headers(request.headers)


def require_role(actor: Actor, *roles: UserRole) -> Actor:
    if actor.role not in roles:
        raise HTTPException(403, "Not allowed for your role")
    return actor
