from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from equipment_rental.models.rental_models import Condition


class IssueRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    customerID: int
    dueDate: datetime


class ReturnRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalID: int
    conditionOnReturn: Condition
    notes: Optional[str] = None


class ExtendRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newDueDate: datetime
