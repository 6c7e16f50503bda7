"""
Service: document number sequences
Project: Clinic Ledger

Hands out INV-000123 / CN-000045 numbers from named counters stored in the
`counters` table.

Each increment is committed on its own session, outside the caller's
transaction: two concurrent callers never receive the same value, and a
caller that rolls back leaves a gap instead of a reused number.
"""

import logging
import re
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from clinic_ledger.core.config import settings
from clinic_ledger.core.database import side_session
from clinic_ledger.models.counter import Counter

logger = logging.getLogger(__name__)

INVOICE_COUNTER = "invoice_counter"
CREDIT_NOTE_COUNTER = "credit_note_counter"


def format_document_number(prefix: str, value: int, digits: Optional[int] = None) -> str:
    """`format_document_number("INV", 7)` -> "INV-000007"."""
    digits = digits or settings.document_number_digits
    return f"{prefix}-{value:0{digits}d}"


def is_valid_document_number(prefix: str, number: str, digits: Optional[int] = None) -> bool:
    digits = digits or settings.document_number_digits
    return re.fullmatch(rf"{re.escape(prefix)}-\d{{{digits}}}", number or "") is not None


def parse_document_number(prefix: str, number: str) -> Optional[int]:
    """Numeric part of a well-formed document number, None otherwise."""
    match = re.fullmatch(rf"{re.escape(prefix)}-(\d+)", number or "")
    return int(match.group(1)) if match else None


class SequenceService:
    """Atomic named counters."""

    async def next_value(self, db: AsyncSession, name: str) -> int:
        """
        Increment counter `name` and return the new value.

        Uses INSERT ... ON CONFLICT DO UPDATE ... RETURNING where the dialect
        supports it, otherwise a row lock. Storage errors propagate; there is
        no retry.

        Args:
            db: Caller session (only its engine is used)
            name: Counter name

        Returns:
            int: The value reserved for the caller
        """
        async with side_session(db) as session:
            async with session.begin():
                dialect = session.bind.dialect.name
                if dialect in ("postgresql", "sqlite"):
                    insert = pg_insert if dialect == "postgresql" else sqlite_insert
                    stmt = (
                        insert(Counter)
                        .values(name=name, value=1)
                        .on_conflict_do_update(
                            index_elements=[Counter.name],
                            set_={"value": Counter.value + 1},
                        )
                        .returning(Counter.value)
                    )
                    value = (await session.execute(stmt)).scalar_one()
                else:
                    counter = (
                        await session.execute(
                            select(Counter).where(Counter.name == name).with_for_update()
                        )
                    ).scalar_one_or_none()
                    if counter is None:
                        counter = Counter(name=name, value=0)
                        session.add(counter)
                    counter.value += 1
                    value = counter.value

        logger.debug("Counter %s advanced to %s", name, value)
        return value

    async def next_invoice_no(self, db: AsyncSession) -> str:
        value = await self.next_value(db, INVOICE_COUNTER)
        return format_document_number(settings.invoice_number_prefix, value)

    async def next_credit_no(self, db: AsyncSession) -> str:
        value = await self.next_value(db, CREDIT_NOTE_COUNTER)
        return format_document_number(settings.credit_note_number_prefix, value)

    async def current_value(self, db: AsyncSession, name: str) -> int:
        result = await db.execute(select(Counter.value).where(Counter.name == name))
        return result.scalar_one_or_none() or 0

    async def initialize_counter(
        self,
        db: AsyncSession,
        name: str,
        prefix: str,
        column: InstrumentedAttribute,
    ) -> int:
        """
        Make sure counter `name` is not behind the numbers already stored in `column`.

        Used once when numbering is introduced on a database that already
        holds documents. The counter never moves backwards.

        Returns:
            int: The counter value after initialization
        """
        result = await db.execute(
            select(column).where(column.like(f"{prefix}-%"))
        )
        highest = max(
            (n for n in (parse_document_number(prefix, v) for v in result.scalars()) if n is not None),
            default=0,
        )

        counter = (
            await db.execute(select(Counter).where(Counter.name == name).with_for_update())
        ).scalar_one_or_none()
        if counter is None:
            counter = Counter(name=name, value=highest)
            db.add(counter)
        elif counter.value < highest:
            counter.value = highest

        await db.commit()
        logger.info("Counter %s initialized at %s", name, counter.value)
        return counter.value

    async def reset_counter(self, db: AsyncSession, name: str, value: int = 0) -> None:
        """Force a counter to `value`. Meant for tests and data migrations."""
        counter = (
            await db.execute(select(Counter).where(Counter.name == name))
        ).scalar_one_or_none()
        if counter is None:
            db.add(Counter(name=name, value=value))
        else:
            counter.value = value
        await db.commit()
        logger.warning("Counter %s reset to %s", name, value)

