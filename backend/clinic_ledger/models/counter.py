"""
SQLAlchemy model for named sequence counters
Project: Clinic Ledger
"""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_ledger.models import Base


class Counter(Base):
    """
    One row per sequence (invoice_counter, credit_note_counter).

    `value` is the last number handed out. It only ever grows: deleting a
    document never gives its number back.
    """

    __tablename__ = "counters"

    name: Mapped[str] = mapped_column(
        String(50),
        primary_key=True,
        doc="Sequence name",
    )

    value: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Last value issued",
    )

    def __repr__(self) -> str:
        return f"<Counter(name={self.name}, value={self.value})>"
