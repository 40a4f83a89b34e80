from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from equipment_rental.db.base import Base


class Category(str, Enum):
    HEAVY_MACHINERY = "HeavyMachinery"
    POWER_TOOLS = "PowerTools"
    VEHICLES = "Vehicles"
    SAFETY = "Safety"
    SURVEYING = "Surveying"


class Condition(str, Enum):
    NEW = "New"
    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"


class Role(str, Enum):
    ADMIN = "Admin"
    USER = "User"


class RentalStatus(str, Enum):
    ACTIVE = "Active"
    OVERDUE = "Overdue"
    COMPLETED = "Completed"


class Equipment(Base):
    __tablename__ = "Equipment"
    # Rentals reference equipment by plain id, so deleted ids must never be reused.
    __table_args__ = {"sqlite_autoincrement": True}

    EquipmentID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Description = Column(String(500))
    Category = Column(String(50), nullable=False)
    Condition = Column(String(50), nullable=False, default=Condition.NEW.value)
    RentalPrice = Column(Numeric(18, 2), nullable=False, default=0)
    IsAvailable = Column(Boolean, nullable=False, default=True)
    ImageUrl = Column(String(500))
    CreatedDate = Column(DateTime, nullable=False)


class Customer(Base):
    __tablename__ = "Customers"
    __table_args__ = {"sqlite_autoincrement": True}

    CustomerID = Column(Integer, primary_key=True)
    Name = Column(String(255))
    Email = Column(String(255))
    Username = Column(String(100), unique=True)
    PasswordHash = Column(String(128))
    PasswordSalt = Column(String(64))
    Role = Column(String(20), nullable=False, default=Role.USER.value)
    ExternalProvider = Column(String(50))
    ExternalID = Column(String(255), unique=True)
    CreatedDate = Column(DateTime, nullable=False)

    Rentals = relationship("Rental", back_populates="Customer", cascade="all, delete-orphan")


class Rental(Base):
    __tablename__ = "Rentals"
    __table_args__ = {"sqlite_autoincrement": True}

    RentalID = Column(Integer, primary_key=True)
    # Equipment rows may be deleted while rentals still point at them.
    EquipmentID = Column(Integer, nullable=False, index=True)
    CustomerID = Column(Integer, ForeignKey("Customers.CustomerID"), nullable=False, index=True)
    IssuedAt = Column(DateTime, nullable=False)
    DueDate = Column(DateTime, nullable=False)
    ReturnedAt = Column(DateTime)
    ConditionOnReturn = Column(String(50))
    Notes = Column(String(1000))

    Customer = relationship("Customer", back_populates="Rentals")
    Equipment = relationship(
        "Equipment",
        primaryjoin="foreign(Rental.EquipmentID) == Equipment.EquipmentID",
        viewonly=True,
    )
