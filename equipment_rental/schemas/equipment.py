from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from equipment_rental.models.rental_models import Category, Condition


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    category: Category
    condition: Condition = Condition.NEW
    rentalPrice: float = Field(default=0, ge=0)
    imageUrl: Optional[str] = None


class EquipmentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    category: Optional[Category] = None
    condition: Optional[Condition] = None
    rentalPrice: Optional[float] = Field(default=None, ge=0)
    imageUrl: Optional[str] = None
