from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_rental.models.rental_models import Category, Condition, Equipment
from equipment_rental.schemas.equipment import EquipmentCreate, EquipmentUpsert
from equipment_rental.services.common import commit_or_rollback, utcnow
from equipment_rental.services.errors import NotFoundError, ValidationFailed


REGISTRY_LOGGER = logging.getLogger("equipment_rental.registry")

_FIELD_MAP = {
    "name": "Name",
    "description": "Description",
    "category": "Category",
    "condition": "Condition",
    "rentalPrice": "RentalPrice",
    "imageUrl": "ImageUrl",
}


def _map_equipment_field(field: str) -> str:
    return _FIELD_MAP[field]


def _enum_value(value):
    return getattr(value, "value", value)


def _to_price(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def list_equipment(db: Session) -> list[Equipment]:
    return list(db.execute(select(Equipment).order_by(Equipment.Name, Equipment.EquipmentID)).scalars().all())


def list_equipment_by_availability(db: Session, available: bool) -> list[Equipment]:
    stmt = (
        select(Equipment)
        .where(Equipment.IsAvailable == bool(available))
        .order_by(Equipment.Name, Equipment.EquipmentID)
    )
    return list(db.execute(stmt).scalars().all())


def get_equipment(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFoundError("Equipment not found")
    return equipment


def create_equipment(db: Session, payload: EquipmentCreate) -> Equipment:
    name = (payload.name or "").strip()
    if not name:
        raise ValidationFailed("Equipment name is required.")
    if payload.rentalPrice is not None and payload.rentalPrice < 0:
        raise ValidationFailed("Rental price cannot be negative.")

    equipment = Equipment(
        Name=name,
        Description=payload.description,
        Category=Category(payload.category).value,
        Condition=Condition(payload.condition or Condition.NEW).value,
        RentalPrice=_to_price(payload.rentalPrice),
        ImageUrl=payload.imageUrl,
        IsAvailable=True,
        CreatedDate=utcnow(),
    )
    db.add(equipment)
    commit_or_rollback(db, "create equipment", REGISTRY_LOGGER)
    db.refresh(equipment)
    REGISTRY_LOGGER.info("Equipment created equipment_id=%s", equipment.EquipmentID)
    return equipment


def update_equipment(db: Session, equipment_id: int, payload: EquipmentUpsert) -> Equipment:
    equipment = get_equipment(db, equipment_id)

    updates: dict[str, object] = {}
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field == "name":
            value = (value or "").strip()
            if not value:
                raise ValidationFailed("Equipment name is required.")
        if field in {"category", "condition"}:
            if value is None:
                raise ValidationFailed(f"{field} cannot be empty.")
            value = _enum_value(value)
        if field == "rentalPrice":
            if value is None or value < 0:
                raise ValidationFailed("Rental price cannot be negative.")
            value = _to_price(value)
        updates[_map_equipment_field(field)] = value

    for column, value in updates.items():
        setattr(equipment, column, value)
    commit_or_rollback(db, "update equipment", REGISTRY_LOGGER)
    db.refresh(equipment)
    REGISTRY_LOGGER.info("Equipment updated equipment_id=%s", equipment_id)
    return equipment


def delete_equipment(db: Session, equipment_id: int) -> None:
    equipment = get_equipment(db, equipment_id)
    db.delete(equipment)
    commit_or_rollback(db, "delete equipment", REGISTRY_LOGGER)
    REGISTRY_LOGGER.info("Equipment deleted equipment_id=%s", equipment_id)


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "name": equipment.Name,
        "description": equipment.Description,
        "category": equipment.Category,
        "condition": equipment.Condition,
        "rentalPrice": float(equipment.RentalPrice) if equipment.RentalPrice is not None else 0.0,
        "isAvailable": bool(equipment.IsAvailable),
        "imageUrl": equipment.ImageUrl,
        "createdDate": equipment.CreatedDate,
    }
