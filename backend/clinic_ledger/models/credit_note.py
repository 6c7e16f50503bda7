"""
SQLAlchemy models for credit notes
Project: Clinic Ledger

Contains:
- CreditNote: refund instrument issued from an invoice
- CreditNoteApplication: spend of a credit note against an invoice
- CreditNoteHistory: append-only audit trail of a credit note
"""

from __future__ import annotations

import datetime
import uuid
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinic_ledger.models import Base
from clinic_ledger.models.mixins import TimestampMixin, UUIDMixin

class CreditNote(Base, UUIDMixin, TimestampMixin):
    """
    Credit note model.

    For a note that has not been voided:
    remaining_amount = total_amount - sum(active applications).

    Attributes:
        credit_no: Sequence number (CN-000045), unique
        invoice_id: Invoice the credit was issued from
        patient_id: Patient the credit belongs to
        type: full or partial, fixed at issuance
        status: open, partial, closed (derived from remaining vs total)
        total_amount: Amount issued, immutable
        remaining_amount: Balance still available to spend
        issued_by: User who issued the note
        voided_at / voided_by: Set once the note is voided
    """

    __tablename__ = "credit_notes"

    credit_no: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        unique=True,
        doc="Credit note number (CN-000045)",
    )

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("invoices.id", ondelete="RESTRICT"),
        nullable=False,
        doc="Originating invoice",
    )

    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("patients.id", ondelete="RESTRICT"),
        nullable=False,
    )

    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="full or partial",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="open",
        doc="open, partial, closed",
    )

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    remaining_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    issued_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    voided_at: Mapped[Optional[datetime.datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    voided_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # ------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------
    applications: Mapped[List["CreditNoteApplication"]] = relationship(
        "CreditNoteApplication",
        lazy="selectin",
        viewonly=True,
    )

    history: Mapped[List["CreditNoteHistory"]] = relationship(
        "CreditNoteHistory",
        order_by="CreditNoteHistory.created_at",
        lazy="selectin",
        viewonly=True,
    )

    __table_args__ = (
        Index("ix_credit_notes_invoice_id", "invoice_id"),
        Index("ix_credit_notes_patient_id", "patient_id"),
        CheckConstraint("total_amount > 0", name="ck_credit_notes_total_positive"),
        CheckConstraint(
            "remaining_amount >= 0 AND remaining_amount <= total_amount",
            name="ck_credit_notes_remaining_range",
        ),
        CheckConstraint("type IN ('full', 'partial')", name="ck_credit_notes_type_valid"),
        CheckConstraint(
            "status IN ('open', 'partial', 'closed')",
            name="ck_credit_notes_status_valid",
        ),
    )

    @property
    def is_voided(self) -> bool:
        return self.voided_at is not None

    def __repr__(self) -> str:
        return f"<CreditNote(id={self.id}, number={self.credit_no}, remaining={self.remaining_amount})>"


class CreditNoteApplication(Base, UUIDMixin, TimestampMixin):
    """
    "This credit note paid this much of that invoice."

    Rows are deleted, not archived, when released.
    """

    __tablename__ = "credit_note_applications"

    credit_note_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("credit_notes.id", ondelete="CASCADE"),
        nullable=False,
    )

    applied_invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("invoices.id", ondelete="RESTRICT"),
        nullable=False,
        doc="Invoice being paid down",
    )

    applied_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    applied_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    __table_args__ = (
        Index("ix_credit_note_applications_credit_note_id", "credit_note_id"),
        Index("ix_credit_note_applications_invoice_id", "applied_invoice_id"),
        CheckConstraint("applied_amount > 0", name="ck_credit_note_applications_amount_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditNoteApplication(id={self.id}, credit_note_id={self.credit_note_id}, "
            f"invoice_id={self.applied_invoice_id}, amount={self.applied_amount})>"
        )


class CreditNoteHistory(Base, UUIDMixin, TimestampMixin):
    """Audit entry. Written in the same transaction as the change it records; never updated."""

    __tablename__ = "credit_note_history"

    credit_note_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("credit_notes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    action: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="created, applied, released, voided",
    )

    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
        doc="invoiceId, amount and reason at the time of the action",
    )

    __table_args__ = (
        CheckConstraint(
            "action IN ('created', 'applied', 'released', 'voided')",
            name="ck_credit_note_history_action_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<CreditNoteHistory(credit_note_id={self.credit_note_id}, action={self.action})>"
