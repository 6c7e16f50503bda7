import asyncio
import os
import sys

# Add backend/ to the path to import clinic_ledger.*
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "backend"))

from clinic_ledger.core.config import settings
from clinic_ledger.core.database import AsyncSessionLocal, close_db
from clinic_ledger.models.credit_note import CreditNote
from clinic_ledger.models.invoice import Invoice
from clinic_ledger.services.sequence_service import (
    CREDIT_NOTE_COUNTER,
    INVOICE_COUNTER,
    SequenceService,
)


async def init_counters():
    """Align the number counters with invoices and credit notes already stored."""
    service = SequenceService()
    async with AsyncSessionLocal() as db:
        invoices = await service.initialize_counter(
            db, INVOICE_COUNTER, settings.invoice_number_prefix, Invoice.invoice_no
        )
        credit_notes = await service.initialize_counter(
            db, CREDIT_NOTE_COUNTER, settings.credit_note_number_prefix, CreditNote.credit_no
        )
    await close_db()
    print(f"Invoice counter: {invoices}, credit note counter: {credit_notes}")


if __name__ == "__main__":
    asyncio.run(init_counters())
