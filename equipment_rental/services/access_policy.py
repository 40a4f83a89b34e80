from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from equipment_rental.models.rental_models import Role
from equipment_rental.services.errors import ForbiddenError


EQUIPMENT_READ = "equipment.read"
EQUIPMENT_READ_RENTED = "equipment.read_rented"
EQUIPMENT_WRITE = "equipment.write"
CUSTOMER_LIST = "customer.list"
CUSTOMER_READ = "customer.read"
CUSTOMER_UPDATE = "customer.update"
CUSTOMER_CHANGE_ROLE = "customer.change_role"
CUSTOMER_DELETE = "customer.delete"
CUSTOMER_RENTALS = "customer.rentals"
RENTAL_LIST = "rental.list"
RENTAL_READ = "rental.read"
RENTAL_ISSUE = "rental.issue"
RENTAL_RETURN = "rental.return"
RENTAL_EXTEND = "rental.extend"
RENTAL_CANCEL = "rental.cancel"
RENTAL_OVERDUE = "rental.overdue"
RENTAL_EQUIPMENT_HISTORY = "rental.equipment_history"

# Operation -> whether a non-admin owner of the target may perform it.
# Operations missing from the table are denied to everyone but admins.
OWNER_ALLOWED = {
    EQUIPMENT_READ: None,
    EQUIPMENT_READ_RENTED: False,
    EQUIPMENT_WRITE: False,
    CUSTOMER_LIST: False,
    CUSTOMER_READ: True,
    CUSTOMER_UPDATE: True,
    CUSTOMER_CHANGE_ROLE: False,
    CUSTOMER_DELETE: False,
    CUSTOMER_RENTALS: True,
    RENTAL_LIST: True,
    RENTAL_READ: True,
    RENTAL_ISSUE: True,
    RENTAL_RETURN: True,
    RENTAL_EXTEND: False,
    RENTAL_CANCEL: False,
    RENTAL_OVERDUE: False,
    RENTAL_EQUIPMENT_HISTORY: False,
}

DENIED_MESSAGES = {
    EQUIPMENT_READ_RENTED: "Admin role required.",
    EQUIPMENT_WRITE: "Admin role required.",
    CUSTOMER_LIST: "Admin role required.",
    CUSTOMER_CHANGE_ROLE: "Only admins can change a customer's role.",
    CUSTOMER_DELETE: "Admin role required.",
    RENTAL_EXTEND: "Only admins can extend rentals.",
    RENTAL_CANCEL: "Only admins can cancel rentals.",
    RENTAL_OVERDUE: "Admin role required.",
    RENTAL_EQUIPMENT_HISTORY: "Admin role required.",
}


@dataclass(frozen=True)
class Actor:
    customer_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @classmethod
    def from_session(cls, session: dict[str, Any]) -> "Actor":
        return cls(
            customer_id=int(session.get("customerID") or 0),
            role=normalize_role(session.get("role")),
        )


def normalize_role(raw_role: Any) -> str:
    role = str(getattr(raw_role, "value", raw_role) or "").strip()
    if role == Role.ADMIN.value:
        return Role.ADMIN.value
    return Role.USER.value


def is_allowed(actor: Actor | None, operation: str, owner_id: int | None = None) -> bool:
    if actor is None:
        return False
    if actor.is_admin:
        return True
    if operation not in OWNER_ALLOWED:
        return False
    owner_allowed = OWNER_ALLOWED[operation]
    if owner_allowed is None:
        return True
    if not owner_allowed or owner_id is None:
        return False
    return int(actor.customer_id) == int(owner_id)


def authorize(actor: Actor | None, operation: str, owner_id: int | None = None) -> None:
    if not is_allowed(actor, operation, owner_id):
        raise ForbiddenError(DENIED_MESSAGES.get(operation, "You can only access your own records."))


def scope_customer_id(actor: Actor | None, operation: str = RENTAL_LIST) -> int | None:
    """Customer filter for listings: None for admins, the actor's own id otherwise."""
    authorize(actor, operation, owner_id=actor.customer_id if actor else None)
    if actor.is_admin:
        return None
    return actor.customer_id
