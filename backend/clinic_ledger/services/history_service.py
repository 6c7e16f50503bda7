"""
Service: credit note audit trail
Project: Clinic Ledger

History rows are only ever inserted, in the caller's transaction, so an
entry exists exactly when the change it describes was committed.
"""

import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.models.credit_note import CreditNoteHistory
from clinic_ledger.schemas.credit_note import CreditNoteAction


class CreditNoteHistoryService:

    def record(
        self,
        db: AsyncSession,
        credit_note_id: uuid.UUID,
        action: CreditNoteAction,
        actor_id: Optional[uuid.UUID],
        invoice_id: Optional[uuid.UUID] = None,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> CreditNoteHistory:
        entry = CreditNoteHistory(
            credit_note_id=credit_note_id,
            action=action.value,
            actor_id=actor_id,
            event_metadata={
                "invoiceId": str(invoice_id) if invoice_id else None,
                "amount": str(amount) if amount is not None else None,
                "reason": reason,
            },
        )
        db.add(entry)
        return entry

    async def list_for(self, db: AsyncSession, credit_note_id: uuid.UUID) -> list[CreditNoteHistory]:
        result = await db.execute(
            select(CreditNoteHistory)
            .where(CreditNoteHistory.credit_note_id == credit_note_id)
            .order_by(CreditNoteHistory.created_at)
        )
        return list(result.scalars().all())
