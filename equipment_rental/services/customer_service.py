from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from equipment_rental.models.rental_models import Customer, Rental, Role
from equipment_rental.schemas.customers import CustomerUpsert
from equipment_rental.services import access_policy
from equipment_rental.services.access_policy import Actor
from equipment_rental.services.common import commit_or_rollback, utcnow
from equipment_rental.services.errors import ConflictError, DuplicateError, NotFoundError, ValidationFailed


REGISTRY_LOGGER = logging.getLogger("equipment_rental.registry")
MIN_PASSWORD_LENGTH = 4


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _set_password(customer: Customer, password: str) -> None:
    trimmed = str(password).strip()
    if len(trimmed) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    salt = secrets.token_hex(16)
    customer.PasswordSalt = salt
    customer.PasswordHash = _password_hash(trimmed, salt)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = str(value).strip()
    return trimmed or None


def _username_taken(db: Session, username: str, exclude_customer_id: int | None = None) -> bool:
    stmt = select(Customer.CustomerID).where(Customer.Username == username)
    if exclude_customer_id is not None:
        stmt = stmt.where(Customer.CustomerID != exclude_customer_id)
    return db.execute(stmt).first() is not None


def _has_open_rental(db: Session, customer_id: int) -> bool:
    count = db.execute(
        select(func.count(Rental.RentalID))
        .where(Rental.CustomerID == customer_id)
        .where(Rental.ReturnedAt.is_(None))
    ).scalar()
    return bool(count)


def list_customers(db: Session) -> list[Customer]:
    return list(db.execute(select(Customer).order_by(Customer.CustomerID)).scalars().all())


def get_customer(db: Session, customer_id: int) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer not found")
    return customer


def get_customer_by_username(db: Session, username: str) -> Customer | None:
    cleaned = _clean(username)
    if not cleaned:
        return None
    return db.execute(select(Customer).where(Customer.Username == cleaned)).scalars().first()


def create_customer(
    db: Session,
    *,
    name: str | None,
    username: str | None,
    password: str | None,
    email: str | None = None,
    role: str | Role | None = None,
    actor: Actor | None = None,
) -> Customer:
    clean_name = _clean(name)
    clean_username = _clean(username)
    if not clean_name:
        raise ValidationFailed("Name is required.")
    if not clean_username:
        raise ValidationFailed("Username is required.")
    if not _clean(password):
        raise ValidationFailed("Password is required.")

    next_role = access_policy.normalize_role(role)
    if next_role == Role.ADMIN.value:
        access_policy.authorize(actor, access_policy.CUSTOMER_CHANGE_ROLE)

    if _username_taken(db, clean_username):
        raise DuplicateError("Username is already taken.")

    customer = Customer(
        Name=clean_name,
        Email=_clean(email),
        Username=clean_username,
        Role=next_role,
        CreatedDate=utcnow(),
    )
    _set_password(customer, str(password))
    db.add(customer)
    commit_or_rollback(db, "create customer", REGISTRY_LOGGER)
    db.refresh(customer)
    REGISTRY_LOGGER.info("Customer created customer_id=%s role=%s", customer.CustomerID, customer.Role)
    return customer


def update_customer(db: Session, customer_id: int, payload: CustomerUpsert, actor: Actor) -> Customer:
    customer = get_customer(db, customer_id)
    access_policy.authorize(actor, access_policy.CUSTOMER_UPDATE, owner_id=customer.CustomerID)

    changes = payload.model_dump(exclude_unset=True)

    if "role" in changes and changes["role"] is not None:
        next_role = access_policy.normalize_role(changes["role"])
        if next_role != customer.Role:
            access_policy.authorize(actor, access_policy.CUSTOMER_CHANGE_ROLE)
    else:
        next_role = customer.Role

    next_name = customer.Name
    if "name" in changes:
        next_name = _clean(changes["name"])
        if not next_name:
            raise ValidationFailed("Name cannot be empty.")

    next_username = customer.Username
    if "username" in changes:
        next_username = _clean(changes["username"])
        if not next_username and not customer.ExternalID:
            raise ValidationFailed("Username cannot be empty.")
        if next_username and _username_taken(db, next_username, exclude_customer_id=customer.CustomerID):
            raise DuplicateError("Username is already taken.")

    password = _clean(changes.get("password"))
    if password is not None and len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

    customer.Name = next_name
    customer.Username = next_username
    customer.Role = next_role
    if "email" in changes:
        customer.Email = _clean(changes["email"])
    if password is not None:
        _set_password(customer, password)

    commit_or_rollback(db, "update customer", REGISTRY_LOGGER)
    db.refresh(customer)
    REGISTRY_LOGGER.info("Customer updated customer_id=%s by=%s", customer_id, actor.customer_id)
    return customer


def delete_customer(db: Session, customer_id: int) -> None:
    customer = get_customer(db, customer_id)
    if _has_open_rental(db, customer.CustomerID):
        raise ConflictError("Customer has an active rental and cannot be deleted.")
    db.delete(customer)
    commit_or_rollback(db, "delete customer", REGISTRY_LOGGER)
    REGISTRY_LOGGER.info("Customer deleted customer_id=%s", customer_id)


def authenticate_customer(db: Session, username: str | None, password: str | None) -> Customer | None:
    candidate = (password or "").strip()
    if not candidate:
        return None
    customer = get_customer_by_username(db, username or "")
    if not customer or not customer.PasswordHash or not customer.PasswordSalt:
        return None
    expected = _password_hash(candidate, customer.PasswordSalt)
    if not hmac.compare_digest(expected, customer.PasswordHash):
        return None
    return customer


def provision_external_customer(
    db: Session,
    *,
    provider: str,
    external_id: str,
    email: str,
    name: str | None = None,
    admin_emails: Iterable[str] = (),
) -> Customer:
    """Find or create the customer behind a single sign-on identity.

    Matches on external id first, then on email. New accounts have no
    username or password; admins are recognised by email.
    """
    clean_external_id = _clean(external_id)
    clean_email = _clean(email)
    if not clean_external_id or not clean_email:
        raise ValidationFailed("Email and external id are required.")

    is_admin_email = clean_email.lower() in {str(item).strip().lower() for item in admin_emails if item}

    customer = db.execute(
        select(Customer).where(Customer.ExternalID == clean_external_id)
    ).scalars().first()
    if customer is None:
        customer = db.execute(
            select(Customer).where(func.lower(Customer.Email) == clean_email.lower())
        ).scalars().first()

    if customer is None:
        customer = Customer(
            Name=_clean(name) or clean_email.split("@")[0],
            Email=clean_email,
            Username=None,
            Role=Role.ADMIN.value if is_admin_email else Role.USER.value,
            ExternalProvider=provider,
            ExternalID=clean_external_id,
            CreatedDate=utcnow(),
        )
        db.add(customer)
        action = "created"
    else:
        if is_admin_email:
            customer.Role = Role.ADMIN.value
        if not customer.ExternalID:
            customer.ExternalID = clean_external_id
            customer.ExternalProvider = provider
        if not customer.Name and _clean(name):
            customer.Name = _clean(name)
        if customer.Email != clean_email:
            customer.Email = clean_email
        action = "linked"

    commit_or_rollback(db, "provision external customer", REGISTRY_LOGGER)
    db.refresh(customer)
    REGISTRY_LOGGER.info(
        "External customer %s customer_id=%s provider=%s", action, customer.CustomerID, provider
    )
    return customer


def serialize_customer(customer: Customer) -> dict:
    return {
        "customerID": customer.CustomerID,
        "name": customer.Name,
        "email": customer.Email,
        "username": customer.Username,
        "role": customer.Role,
        "externalProvider": customer.ExternalProvider,
        "hasPassword": bool(customer.PasswordHash),
        "createdDate": customer.CreatedDate,
    }
