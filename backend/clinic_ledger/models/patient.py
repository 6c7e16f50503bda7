"""
SQLAlchemy models for the clinic collaborators
Project: Clinic Ledger

Contains:
- Patient: who an invoice and its credit notes belong to
- Product: catalog product/service with price and stock
- Appointment: optional visit an invoice settles

These tables are owned by the rest of the clinic application; the ledger
only reads them, adjusts product stock and moves appointment status.
"""

from __future__ import annotations

import datetime
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from clinic_ledger.models import Base
from clinic_ledger.models.mixins import TimestampMixin, UUIDMixin


class Patient(Base, UUIDMixin, TimestampMixin):
    """A clinic patient."""

    __tablename__ = "patients"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Full name",
    )

    phone: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        doc="Contact phone number",
    )

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, name={self.name})>"


class Product(Base, UUIDMixin, TimestampMixin):
    """
    Catalog product or service.

    Attributes:
        name: Display name, snapshotted onto invoice items
        price: Current unit price, snapshotted onto invoice items
        stock_quantity: Units on hand, never negative
    """

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Product name",
    )

    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
        doc="Unit price",
    )

    stock_quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Units on hand",
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price_positive"),
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_positive"),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, name={self.name}, stock={self.stock_quantity})>"


class Appointment(Base, UUIDMixin, TimestampMixin):
    """
    Scheduled visit.

    Linking an invoice completes the appointment; deleting the invoice puts
    it back to scheduled. The appointment always survives its invoice.
    """

    __tablename__ = "appointments"

    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        doc="Patient the appointment is for",
    )

    scheduled_at: Mapped[Optional[datetime.datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Scheduled date and time",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="scheduled",
        doc="scheduled, completed, cancelled",
    )

    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
        doc="Invoice settling this appointment",
    )

    __table_args__ = (
        Index("ix_appointments_patient_id", "patient_id"),
        CheckConstraint(
            "status IN ('scheduled', 'completed', 'cancelled')",
            name="ck_appointments_status_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<Appointment(id={self.id}, status={self.status}, invoice_id={self.invoice_id})>"
