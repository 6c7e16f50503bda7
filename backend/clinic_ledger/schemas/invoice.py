"""
Pydantic schemas for invoicing
Project: Clinic Ledger

Contains:
- Enums: InvoiceStatus, DiscountType, AppointmentStatus
- Line items: CatalogLine | ManualLine (discriminated on `kind`)
- Invoice payload (create and full-replace update)
- Read schemas and the paginated list
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    model_validator,
)

from clinic_ledger.core.exceptions import BusinessValidationError
from clinic_ledger.services.calculator import outstanding_balance


# -------------------------------------------------------------------
# Enums
# -------------------------------------------------------------------

class InvoiceStatus(str, Enum):
    """Invoice status derived from the amount owed and received."""
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DiscountMixin(BaseModel):
    """Discount fields shared by lines and invoices."""

    discount: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Discount value: percent (0-100) or fixed amount",
    )
    discount_type: DiscountType = Field(
        default=DiscountType.FIXED,
        description="percentage or fixed",
        serialization_alias="discountType",
    )

    @model_validator(mode="after")
    def validate_percentage(self):
        if self.discount_type == DiscountType.PERCENTAGE and self.discount > 100:
            raise BusinessValidationError("Percentage discount cannot exceed 100")
        return self


# -------------------------------------------------------------------
# Line items
# -------------------------------------------------------------------

class CatalogLine(DiscountMixin):
    """Line billed from the product catalog; price and name come from the product."""

    kind: Literal["catalog"] = "catalog"
    product_id: uuid.UUID = Field(..., description="Catalog product")
    # Checked by the ledger so that the error names the product
    quantity: int = Field(..., description="Units sold")


class ManualLine(DiscountMixin):
    """Free-text line, does not touch stock."""

    kind: Literal["manual"] = "manual"
    product_name: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Description printed on the invoice",
    )
    unit_price: Decimal = Field(..., ge=0, description="Unit price")
    quantity: int = Field(..., description="Units sold")


LineItem = Annotated[Union[CatalogLine, ManualLine], Field(discriminator="kind")]


class AppliedCredit(BaseModel):
    """Credit note spent on the invoice being saved."""

    credit_note_id: uuid.UUID = Field(..., description="Credit note to spend")
    amount: Decimal = Field(..., gt=0, description="Amount to apply")


# -------------------------------------------------------------------
# Invoice payload
# -------------------------------------------------------------------

class InvoicePayload(DiscountMixin):
    """Full invoice as entered on the invoice form."""

    patient_id: uuid.UUID = Field(..., description="Billed patient")
    items: list[LineItem] = Field(
        default_factory=list,
        description="Invoice lines",
    )
    paid_amount: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Direct payment received",
    )
    appointment_id: Optional[uuid.UUID] = Field(
        None,
        description="Scheduled appointment settled by this invoice",
    )
    applied_credits: list[AppliedCredit] = Field(
        default_factory=list,
        description="Credit notes spent on this invoice",
    )
    branch: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None)


class InvoiceCreate(InvoicePayload):
    """Payload for creating an invoice."""

    # NOT included:
    # - invoice_no (generated by the sequence)
    # - subtotal / discount_amount / total_amount / status (computed)
    # - credit_applied_amount / refunded_amount (maintained by the ledger)


class InvoiceUpdate(InvoicePayload):
    """Payload for editing an invoice: replaces items and applied credits wholesale."""


# -------------------------------------------------------------------
# Read schemas
# -------------------------------------------------------------------

class InvoiceItemRead(BaseModel):
    id: uuid.UUID
    product_id: Optional[uuid.UUID] = Field(None, alias="productId")
    product_name: str = Field(..., alias="productName")
    quantity: int
    unit_price: Decimal = Field(..., alias="unitPrice")
    discount: Decimal
    discount_type: DiscountType = Field(..., alias="discountType")
    discount_amount: Decimal = Field(..., alias="discountAmount")
    total: Decimal
    is_manual: bool = Field(..., alias="isManual")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class CreditApplicationRead(BaseModel):
    """One credit note spend."""

    id: uuid.UUID
    credit_note_id: uuid.UUID = Field(..., alias="creditNoteId")
    applied_invoice_id: uuid.UUID = Field(..., alias="appliedInvoiceId")
    applied_amount: Decimal = Field(..., alias="appliedAmount")
    applied_by: Optional[uuid.UUID] = Field(None, alias="appliedBy")
    created_at: datetime = Field(..., alias="createdAt")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class IssuedCreditNoteSummary(BaseModel):
    """Credit note issued from an invoice, as listed on that invoice."""

    id: uuid.UUID
    credit_no: str = Field(..., alias="creditNo")
    type: str
    status: str
    total_amount: Decimal = Field(..., alias="totalAmount")
    remaining_amount: Decimal = Field(..., alias="remainingAmount")
    voided_at: Optional[datetime] = Field(None, alias="voidedAt")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class AppointmentSummary(BaseModel):
    id: uuid.UUID
    status: AppointmentStatus
    scheduled_at: Optional[datetime] = Field(None, alias="scheduledAt")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class InvoiceRead(BaseModel):
    """Invoice with its lines, linked appointment and credit activity."""

    id: uuid.UUID
    invoice_no: str = Field(..., alias="invoiceNo")
    patient_id: uuid.UUID = Field(..., alias="patientId")
    branch: Optional[str] = None
    notes: Optional[str] = None

    subtotal: Decimal
    discount: Decimal
    discount_type: DiscountType = Field(..., alias="discountType")
    discount_amount: Decimal = Field(..., alias="discountAmount")
    total_amount: Decimal = Field(..., alias="totalAmount")
    paid_amount: Decimal = Field(..., alias="paidAmount")
    credit_applied_amount: Decimal = Field(..., alias="creditAppliedAmount")
    refunded_amount: Decimal = Field(..., alias="refundedAmount")
    status: InvoiceStatus

    created_by: Optional[uuid.UUID] = Field(None, alias="createdBy")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    items: list[InvoiceItemRead] = Field(default_factory=list)
    appointment: Optional[AppointmentSummary] = None
    credit_applications: list[CreditApplicationRead] = Field(
        default_factory=list,
        alias="creditApplications",
    )
    issued_credit_notes: list[IssuedCreditNoteSummary] = Field(
        default_factory=list,
        alias="issuedCreditNotes",
    )

    @computed_field(alias="balanceDue")
    @property
    def balance_due(self) -> Decimal:
        """Amount still owed by the patient."""
        return outstanding_balance(
            self.total_amount,
            self.paid_amount,
            self.credit_applied_amount,
            self.refunded_amount,
        )

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class InvoiceList(BaseModel):
    """Paginated invoice list."""

    items: list[InvoiceRead] = Field(default_factory=list)
    total: int = Field(..., description="Total number of invoices", alias="totalItems")
    page: int = Field(..., description="Current page", alias="currentPage")
    per_page: int = Field(..., description="Items per page", alias="itemsPerPage")
    total_pages: int = Field(..., description="Total pages", alias="totalPages")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
