"""
SQLAlchemy models for invoicing
Project: Clinic Ledger

Contains:
- Invoice: one billing event for a patient
- InvoiceItem: invoice line (catalog product or manual entry)
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinic_ledger.models import Base
from clinic_ledger.models.mixins import TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from clinic_ledger.models.credit_note import CreditNote, CreditNoteApplication
    from clinic_ledger.models.patient import Appointment


class Invoice(Base, UUIDMixin, TimestampMixin):
    """
    Invoice model.

    Money columns are maintained by the ledger services:

    - total_amount = subtotal - discount_amount
    - credit_applied_amount = sum of active credit note applications on it
    - refunded_amount = sum of credit notes issued from it (voids lower it)
    - status is derived from the columns above and stored for querying

    Attributes:
        invoice_no: Sequence number (INV-000123), unique and immutable
        patient_id: Billed patient
        subtotal: Sum of item totals before the invoice-level discount
        discount: Raw invoice-level discount as entered
        discount_type: percentage or fixed
        discount_amount: Computed invoice-level discount
        total_amount: Amount owed
        paid_amount: Direct payment recorded on the invoice
        credit_applied_amount: Paid through credit notes
        refunded_amount: Refunded through credit notes issued from it
        status: unpaid, partial, paid
        created_by: User who created the invoice, notified on status changes

    Relationships:
        items: Invoice lines (owned)
        appointment: Linked appointment, if any
        credit_applications: Credit notes spent on this invoice
        issued_credit_notes: Credit notes refunding this invoice
    """

    __tablename__ = "invoices"

    # ------------------------------------------------------------
    # Identification
    # ------------------------------------------------------------
    invoice_no: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        unique=True,
        doc="Invoice number (INV-000123)",
    )

    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("patients.id", ondelete="RESTRICT"),
        nullable=False,
        doc="Billed patient",
    )

    branch: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="Clinic branch",
    )

    # ------------------------------------------------------------
    # Amounts
    # ------------------------------------------------------------
    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        doc="Sum of item totals",
    )

    discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        doc="Invoice discount as entered",
    )

    discount_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="fixed",
        doc="percentage or fixed",
    )

    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        doc="Computed invoice discount",
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        doc="Final amount owed",
    )

    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        doc="Direct payment received",
    )

    credit_applied_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        doc="Active credit note applications on this invoice",
    )

    refunded_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        doc="Credit notes issued from this invoice",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="unpaid",
        doc="unpaid, partial, paid",
    )

    # ------------------------------------------------------------
    # Notes and audit
    # ------------------------------------------------------------
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
        doc="User who created the invoice",
    )

    # ------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------
    items: Mapped[List["InvoiceItem"]] = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.position",
        lazy="selectin",
    )

    appointment: Mapped[Optional["Appointment"]] = relationship(
        "Appointment",
        primaryjoin="Invoice.id == foreign(Appointment.invoice_id)",
        uselist=False,
        viewonly=True,
        lazy="selectin",
    )

    credit_applications: Mapped[List["CreditNoteApplication"]] = relationship(
        "CreditNoteApplication",
        primaryjoin="Invoice.id == foreign(CreditNoteApplication.applied_invoice_id)",
        viewonly=True,
        lazy="selectin",
    )

    issued_credit_notes: Mapped[List["CreditNote"]] = relationship(
        "CreditNote",
        primaryjoin="Invoice.id == foreign(CreditNote.invoice_id)",
        viewonly=True,
        lazy="selectin",
    )

    # ------------------------------------------------------------
    # Indexes and constraints
    # ------------------------------------------------------------
    __table_args__ = (
        Index("ix_invoices_patient_id", "patient_id"),
        Index("ix_invoices_created_by", "created_by"),
        Index("ix_invoices_status", "status"),
        CheckConstraint("subtotal >= 0", name="ck_invoices_subtotal_positive"),
        CheckConstraint("discount >= 0", name="ck_invoices_discount_positive"),
        CheckConstraint("total_amount >= 0", name="ck_invoices_total_positive"),
        CheckConstraint("paid_amount >= 0", name="ck_invoices_paid_positive"),
        CheckConstraint("credit_applied_amount >= 0", name="ck_invoices_credit_positive"),
        CheckConstraint("refunded_amount >= 0", name="ck_invoices_refunded_positive"),
        CheckConstraint(
            "discount_type IN ('percentage', 'fixed')",
            name="ck_invoices_discount_type_valid",
        ),
        CheckConstraint(
            "status IN ('unpaid', 'partial', 'paid')",
            name="ck_invoices_status_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, number={self.invoice_no}, total={self.total_amount}, status={self.status})>"


class InvoiceItem(Base, UUIDMixin, TimestampMixin):
    """
    Invoice line.

    Catalog lines reference a product (price and name are snapshots taken
    when the invoice was saved). Manual lines have no product and never
    touch stock. Items are replaced wholesale when the invoice is edited.
    """

    __tablename__ = "invoice_items"

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
        doc="Catalog product, NULL for manual lines",
    )

    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        doc="Line number within the invoice",
    )

    product_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Name snapshot, authoritative over the live product name",
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        doc="Price snapshot",
    )

    discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    discount_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="fixed",
    )

    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        doc="quantity * unit_price - discount_amount",
    )

    is_manual: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    invoice: Mapped["Invoice"] = relationship(
        "Invoice",
        back_populates="items",
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_invoice_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_invoice_items_unit_price_positive"),
        CheckConstraint("total >= 0", name="ck_invoice_items_total_positive"),
        CheckConstraint(
            "discount_type IN ('percentage', 'fixed')",
            name="ck_invoice_items_discount_type_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<InvoiceItem(id={self.id}, product={self.product_name}, qty={self.quantity})>"
