import asyncio
import os
import sys

# Add backend/ to the path to import clinic_ledger.*
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "backend"))

from clinic_ledger.core.config import settings
from clinic_ledger.core.database import AsyncSessionLocal, close_db, engine
from clinic_ledger.models import Base
from clinic_ledger.services.sequence_service import (
    CREDIT_NOTE_COUNTER,
    INVOICE_COUNTER,
    SequenceService,
    format_document_number,
)


async def reset():
    """Rebuild the ledger schema and restart document numbering from 1."""
    if settings.app_env == "production":
        print("Refusing to reset a production ledger.")
        sys.exit(1)

    print("Dropping ledger tables...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    print(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")

    service = SequenceService()
    async with AsyncSessionLocal() as db:
        for name in (INVOICE_COUNTER, CREDIT_NOTE_COUNTER):
            await service.reset_counter(db, name)
    await close_db()
    print(
        "Next numbers: "
        f"{format_document_number(settings.invoice_number_prefix, 1)}, "
        f"{format_document_number(settings.credit_note_number_prefix, 1)}"
    )


if __name__ == "__main__":
    asyncio.run(reset())
