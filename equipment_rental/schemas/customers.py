from typing import Optional

from pydantic import BaseModel, ConfigDict

from equipment_rental.models.rental_models import Role


class CustomerUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    role: Optional[Role] = None
