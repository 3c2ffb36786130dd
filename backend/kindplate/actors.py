# Overview: Who is acting on a request or job.

from __future__ import annotations

from dataclasses import dataclass

ACTOR_USER = "user"
ACTOR_BUSINESS = "business"
ACTOR_ADMIN = "admin"
ACTOR_SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """
    Authenticated caller as handed to us by the auth gateway.

    For actor_type "user" actor_id is the customer id, for "business" it
    is the business id. Jobs act as SYSTEM.
    """
    actor_type: str
    actor_id: int | None = None

    @property
    def is_user(self) -> bool:
        return self.actor_type == ACTOR_USER

    @property
    def is_business(self) -> bool:
        return self.actor_type == ACTOR_BUSINESS

    @property
    def is_admin(self) -> bool:
        return self.actor_type == ACTOR_ADMIN


SYSTEM = Actor(ACTOR_SYSTEM, None)
