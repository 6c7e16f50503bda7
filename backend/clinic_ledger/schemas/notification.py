"""
Pydantic schemas for notifications
Project: Clinic Ledger
"""

import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from clinic_ledger.schemas.invoice import InvoiceStatus


class InvoiceStatusChange(BaseModel):
    """Raised after commit when a ledger operation moved an invoice to a new status."""

    invoice_id: uuid.UUID
    invoice_no: str
    old_status: InvoiceStatus
    new_status: InvoiceStatus
    actor_id: uuid.UUID
    actor_name: Optional[str] = None
    recipient_id: Optional[uuid.UUID] = Field(
        None,
        description="Invoice creator; nobody is notified when unknown",
    )

    model_config = ConfigDict(frozen=True)
