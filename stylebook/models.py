"""SQLAlchemy models for services, clients, appointments and admins.

Storage is the final arbiter of the slot and phone uniqueness invariants:
- clients.phone_normalized is unique
- a partial unique index allows one occupying appointment per slot
"""
import uuid
from datetime import datetime, UTC
from enum import Enum

import bcrypt
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utc_now() -> datetime:
    """Get current UTC timestamp (naive, as stored)."""
    return datetime.now(UTC).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class AppointmentStatus(str, Enum):
    """Appointment lifecycle states."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


OCCUPYING_SQL = "status IN ('PENDING', 'CONFIRMED')"


class ServiceCatalog(Base):
    """Bookable service offered by the shop."""
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(120), nullable=False, unique=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    duration_minutes = Column(Integer, nullable=False, default=30)
    description = Column(String(500), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<ServiceCatalog(id={self.id}, name={self.name}, active={self.active})>"


class Client(Base):
    """Client identity; phone_normalized is the identity key, phone is display-only."""
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(120), nullable=False)
    phone = Column(String(40), nullable=False)
    phone_normalized = Column(String(20), nullable=False, unique=True, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<Client(id={self.id}, phone_normalized={self.phone_normalized})>"


class Appointment(Base):
    """Booking of one service slot by one client."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_occupied_slot",
            "service_id",
            "appointment_at",
            unique=True,
            sqlite_where=text(OCCUPYING_SQL),
            postgresql_where=text(OCCUPYING_SQL),
        ),
        Index("ix_appointments_client_id", "client_id"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    # Naive UTC, truncated to the minute
    appointment_at = Column(DateTime, nullable=False)
    status = Column(
        SQLEnum(AppointmentStatus, native_enum=False, length=20),
        nullable=False,
        default=AppointmentStatus.PENDING,
    )
    notes = Column(String(300), nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    client = relationship("Client", lazy="joined")
    service = relationship("ServiceCatalog", lazy="joined")

    def __repr__(self):
        return f"<Appointment(id={self.id}, at={self.appointment_at}, status={self.status})>"


class AdminUser(Base):
    """Staff account allowed to use the admin API."""
    __tablename__ = "admin_users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(120), nullable=False, unique=True, index=True)
    password_hash = Column(String(120), nullable=False)
    role = Column(String(30), nullable=False, default="ADMIN")
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash password using bcrypt."""
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        """Verify password against hash."""
        try:
            return bcrypt.checkpw(password.encode(), password_hash.encode())
        except ValueError:
            return False

    def __repr__(self):
        return f"<AdminUser(email={self.email}, role={self.role}, active={self.active})>"
