from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from equipment_rental.models.rental_models import Condition, Customer, Equipment, Rental, RentalStatus
from equipment_rental.services import access_policy
from equipment_rental.services.access_policy import Actor
from equipment_rental.services.common import commit_or_rollback, to_naive_utc, utcnow
from equipment_rental.services.errors import ConflictError, NotFoundError, ValidationFailed


LEDGER_LOGGER = logging.getLogger("equipment_rental.ledger")

_LOCKS_GUARD = threading.Lock()
# One lock per equipment or customer id, kept for the life of the process.
# Entries are never evicted: a lock may still be held when its row is deleted.
_KEYED_LOCKS: dict[tuple[str, int], threading.Lock] = {}


def derive_status(returned_at: datetime | None, due_date: datetime, now: datetime) -> str:
    if returned_at is not None:
        return RentalStatus.COMPLETED.value
    if due_date < now:
        return RentalStatus.OVERDUE.value
    return RentalStatus.ACTIVE.value


def rental_status(rental: Rental, now: datetime | None = None) -> str:
    return derive_status(rental.ReturnedAt, rental.DueDate, now or utcnow())


def _lock_for(key: tuple[str, int]) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = _KEYED_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _KEYED_LOCKS[key] = lock
        return lock


@contextmanager
def ledger_lock(equipment_id: int | None, customer_id: int | None) -> Iterator[None]:
    """Serialize check-then-write sequences touching the same equipment or customer."""
    keys = []
    if equipment_id is not None:
        keys.append(("equipment", int(equipment_id)))
    if customer_id is not None:
        keys.append(("customer", int(customer_id)))
    acquired: list[threading.Lock] = []
    try:
        for key in sorted(keys):
            lock = _lock_for(key)
            lock.acquire()
            acquired.append(lock)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()


def _rental_query():
    return select(Rental).options(selectinload(Rental.Customer), selectinload(Rental.Equipment))


def _load_rental(db: Session, rental_id: int, *, fresh: bool = False) -> Rental:
    stmt = _rental_query().where(Rental.RentalID == rental_id)
    if fresh:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    rental = db.execute(stmt).scalars().first()
    if not rental:
        raise NotFoundError("Rental not found")
    return rental


def _open_rental_for_customer(db: Session, customer_id: int) -> Rental | None:
    stmt = (
        _rental_query()
        .where(Rental.CustomerID == customer_id)
        .where(Rental.ReturnedAt.is_(None))
        .order_by(Rental.IssuedAt.desc())
    )
    return db.execute(stmt).scalars().first()


def _release_equipment(db: Session, equipment_id: int) -> None:
    equipment = db.get(Equipment, equipment_id, populate_existing=True, with_for_update=True)
    if equipment is None:
        LEDGER_LOGGER.info("Equipment row missing, availability left untouched equipment_id=%s", equipment_id)
        return
    equipment.IsAvailable = True


def get_rental(db: Session, rental_id: int) -> Rental:
    return _load_rental(db, rental_id)


def list_rentals(db: Session, customer_id: int | None = None) -> list[Rental]:
    stmt = _rental_query().order_by(Rental.IssuedAt.desc(), Rental.RentalID.desc())
    if customer_id is not None:
        stmt = stmt.where(Rental.CustomerID == customer_id)
    return list(db.execute(stmt).scalars().all())


def list_rentals_by_status(
    db: Session,
    status: str | RentalStatus,
    customer_id: int | None = None,
    now: datetime | None = None,
) -> list[Rental]:
    wanted = RentalStatus(status).value
    current = now or utcnow()
    return [
        rental
        for rental in list_rentals(db, customer_id=customer_id)
        if derive_status(rental.ReturnedAt, rental.DueDate, current) == wanted
    ]


def get_active_rental_for_customer(db: Session, customer_id: int) -> Rental | None:
    return _open_rental_for_customer(db, customer_id)


def list_rentals_for_equipment(db: Session, equipment_id: int) -> list[Rental]:
    if db.get(Equipment, equipment_id) is None:
        raise NotFoundError("Equipment not found")
    stmt = (
        _rental_query()
        .where(Rental.EquipmentID == equipment_id)
        .order_by(Rental.IssuedAt.desc(), Rental.RentalID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def issue_rental(
    db: Session,
    *,
    equipment_id: int,
    customer_id: int,
    due_date: datetime,
    actor: Actor,
) -> Rental:
    access_policy.authorize(actor, access_policy.RENTAL_ISSUE, owner_id=customer_id)
    due = to_naive_utc(due_date)

    with ledger_lock(equipment_id, customer_id):
        customer = db.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError("Customer not found")
        equipment = db.get(Equipment, equipment_id, populate_existing=True, with_for_update=True)
        if equipment is None:
            raise NotFoundError("Equipment not found")
        if not equipment.IsAvailable:
            raise ConflictError("Equipment is not available.")
        if _open_rental_for_customer(db, customer_id) is not None:
            raise ConflictError("Customer already has an active rental. Return it first.")

        now = utcnow()
        if due <= now:
            raise ValidationFailed("Due date must be in the future.")

        rental = Rental(
            EquipmentID=equipment.EquipmentID,
            CustomerID=customer.CustomerID,
            IssuedAt=now,
            DueDate=due,
        )
        db.add(rental)
        equipment.IsAvailable = False
        commit_or_rollback(db, "issue rental", LEDGER_LOGGER)

    db.refresh(rental)
    LEDGER_LOGGER.info(
        "Rental issued rental_id=%s equipment_id=%s customer_id=%s by=%s",
        rental.RentalID,
        equipment_id,
        customer_id,
        actor.customer_id,
    )
    return rental


def return_rental(
    db: Session,
    *,
    rental_id: int,
    condition_on_return: Condition | str,
    notes: str | None,
    actor: Actor,
) -> Rental:
    rental = _load_rental(db, rental_id)
    access_policy.authorize(actor, access_policy.RENTAL_RETURN, owner_id=rental.CustomerID)
    try:
        condition = Condition(condition_on_return).value
    except ValueError as exc:
        raise ValidationFailed("Unknown return condition.") from exc

    with ledger_lock(rental.EquipmentID, rental.CustomerID):
        rental = _load_rental(db, rental_id, fresh=True)
        # Overdue is a read-time view; any open rental can be returned.
        if rental.ReturnedAt is not None:
            raise ConflictError("Only active rentals can be returned.")

        rental.ReturnedAt = utcnow()
        rental.ConditionOnReturn = condition
        rental.Notes = notes
        _release_equipment(db, rental.EquipmentID)
        commit_or_rollback(db, "return rental", LEDGER_LOGGER)

    db.refresh(rental)
    LEDGER_LOGGER.info("Rental returned rental_id=%s by=%s", rental_id, actor.customer_id)
    return rental


def extend_rental(db: Session, *, rental_id: int, new_due_date: datetime, actor: Actor) -> Rental:
    access_policy.authorize(actor, access_policy.RENTAL_EXTEND)
    rental = _load_rental(db, rental_id)
    new_due = to_naive_utc(new_due_date)

    with ledger_lock(rental.EquipmentID, rental.CustomerID):
        rental = _load_rental(db, rental_id, fresh=True)
        if rental.ReturnedAt is not None:
            raise ConflictError("Only active rentals can be extended.")
        if new_due <= rental.DueDate:
            raise ConflictError("New due date must be after current due date.")

        rental.DueDate = new_due
        commit_or_rollback(db, "extend rental", LEDGER_LOGGER)

    db.refresh(rental)
    LEDGER_LOGGER.info("Rental extended rental_id=%s due=%s by=%s", rental_id, new_due.isoformat(), actor.customer_id)
    return rental


def cancel_rental(db: Session, *, rental_id: int, actor: Actor) -> None:
    access_policy.authorize(actor, access_policy.RENTAL_CANCEL)
    rental = _load_rental(db, rental_id)

    with ledger_lock(rental.EquipmentID, rental.CustomerID):
        rental = _load_rental(db, rental_id, fresh=True)
        if rental_status(rental) == RentalStatus.COMPLETED.value:
            raise ConflictError("Cannot cancel completed rentals.")

        _release_equipment(db, rental.EquipmentID)
        db.delete(rental)
        commit_or_rollback(db, "cancel rental", LEDGER_LOGGER)

    LEDGER_LOGGER.info("Rental cancelled rental_id=%s by=%s", rental_id, actor.customer_id)


def serialize_rental(rental: Rental, now: datetime | None = None) -> dict:
    equipment = rental.Equipment
    customer = rental.Customer
    return {
        "rentalID": rental.RentalID,
        "equipmentID": rental.EquipmentID,
        "customerID": rental.CustomerID,
        "issuedAt": rental.IssuedAt,
        "dueDate": rental.DueDate,
        "returnedAt": rental.ReturnedAt,
        "conditionOnReturn": rental.ConditionOnReturn,
        "notes": rental.Notes,
        "status": rental_status(rental, now),
        "equipment": {
            "equipmentID": equipment.EquipmentID,
            "name": equipment.Name,
            "category": equipment.Category,
            "isAvailable": bool(equipment.IsAvailable),
        } if equipment else None,
        "customer": {
            "customerID": customer.CustomerID,
            "name": customer.Name,
            "username": customer.Username,
        } if customer else None,
    }
