"""
Pydantic schemas for credit notes
Project: Clinic Ledger
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from clinic_ledger.schemas.invoice import CreditApplicationRead, InvoiceStatus


class CreditNoteStatus(str, Enum):
    OPEN = "open"
    PARTIAL = "partial"
    CLOSED = "closed"


class CreditNoteType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class CreditNoteAction(str, Enum):
    """Audit trail actions."""
    CREATED = "created"
    APPLIED = "applied"
    RELEASED = "released"
    VOIDED = "voided"


# -------------------------------------------------------------------
# Input
# -------------------------------------------------------------------

class CreditNoteIssue(BaseModel):
    """Refund part or all of an invoice as a credit note."""

    invoice_id: uuid.UUID = Field(..., description="Invoice being refunded")
    amount: Decimal = Field(..., gt=0, description="Amount to refund")
    reason: Optional[str] = Field(None, max_length=1000)
    notes: Optional[str] = Field(None)


class CreditNoteApply(BaseModel):
    """Spend a credit note on an invoice."""

    credit_note_id: uuid.UUID = Field(..., description="Credit note to spend")
    invoice_id: uuid.UUID = Field(..., description="Invoice to pay down")
    amount: Decimal = Field(..., gt=0, description="Amount to apply")


class CreditNoteVoid(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


# -------------------------------------------------------------------
# Output
# -------------------------------------------------------------------

class CreditNoteHistoryRead(BaseModel):
    id: uuid.UUID
    action: CreditNoteAction
    actor_id: Optional[uuid.UUID] = Field(None, alias="actorId")
    # ORM classes expose `metadata` (the table registry), so read the attribute name first
    event_metadata: Optional[dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices("event_metadata", "metadata"),
        serialization_alias="metadata",
    )
    created_at: datetime = Field(..., alias="createdAt")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class CreditNoteRead(BaseModel):
    id: uuid.UUID
    credit_no: str = Field(..., alias="creditNo")
    invoice_id: uuid.UUID = Field(..., alias="invoiceId")
    patient_id: uuid.UUID = Field(..., alias="patientId")
    type: CreditNoteType
    status: CreditNoteStatus
    total_amount: Decimal = Field(..., alias="totalAmount")
    remaining_amount: Decimal = Field(..., alias="remainingAmount")
    reason: Optional[str] = None
    notes: Optional[str] = None
    issued_by: Optional[uuid.UUID] = Field(None, alias="issuedBy")
    voided_at: Optional[datetime] = Field(None, alias="voidedAt")
    voided_by: Optional[uuid.UUID] = Field(None, alias="voidedBy")
    created_at: datetime = Field(..., alias="createdAt")

    applications: list[CreditApplicationRead] = Field(default_factory=list)
    history: Optional[list[CreditNoteHistoryRead]] = None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class CreditNoteList(BaseModel):
    items: list[CreditNoteRead] = Field(default_factory=list)
    total: int = Field(..., alias="totalItems")
    page: int = Field(..., alias="currentPage")
    per_page: int = Field(..., alias="itemsPerPage")
    total_pages: int = Field(..., alias="totalPages")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class CreditApplicationResult(BaseModel):
    """Outcome of spending a credit note: the spend and both updated balances."""

    application: CreditApplicationRead
    credit_note: CreditNoteRead = Field(..., alias="creditNote")
    invoice_id: uuid.UUID = Field(..., alias="invoiceId")
    invoice_status: InvoiceStatus = Field(..., alias="invoiceStatus")
    invoice_credit_applied_amount: Decimal = Field(
        ...,
        alias="invoiceCreditAppliedAmount",
    )

    model_config = ConfigDict(populate_by_name=True)
