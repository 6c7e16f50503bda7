"""
Pydantic schemas for Clinic Ledger

Request validation and response serialization for the ledger API.
"""

from clinic_ledger.schemas.actor import Actor, Permission
from clinic_ledger.schemas.invoice import (
    AppliedCredit,
    AppointmentStatus,
    CatalogLine,
    CreditApplicationRead,
    DiscountType,
    InvoiceCreate,
    InvoiceItemRead,
    InvoiceList,
    InvoiceRead,
    InvoiceStatus,
    InvoiceUpdate,
    LineItem,
    ManualLine,
)
from clinic_ledger.schemas.credit_note import (
    CreditApplicationResult,
    CreditNoteAction,
    CreditNoteApply,
    CreditNoteHistoryRead,
    CreditNoteIssue,
    CreditNoteList,
    CreditNoteRead,
    CreditNoteStatus,
    CreditNoteType,
    CreditNoteVoid,
)
from clinic_ledger.schemas.notification import InvoiceStatusChange

__all__ = [
    "Actor",
    "Permission",
    "AppliedCredit",
    "AppointmentStatus",
    "CatalogLine",
    "CreditApplicationRead",
    "DiscountType",
    "InvoiceCreate",
    "InvoiceItemRead",
    "InvoiceList",
    "InvoiceRead",
    "InvoiceStatus",
    "InvoiceUpdate",
    "LineItem",
    "ManualLine",
    "CreditApplicationResult",
    "CreditNoteAction",
    "CreditNoteApply",
    "CreditNoteHistoryRead",
    "CreditNoteIssue",
    "CreditNoteList",
    "CreditNoteRead",
    "CreditNoteStatus",
    "CreditNoteType",
    "CreditNoteVoid",
    "InvoiceStatusChange",
]
