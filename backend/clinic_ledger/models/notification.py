"""
SQLAlchemy model for in-app notifications
Project: Clinic Ledger
"""

import uuid
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from clinic_ledger.models import Base
from clinic_ledger.models.mixins import TimestampMixin, UUIDMixin


class Notification(Base, UUIDMixin, TimestampMixin):
    """Message shown to a user, e.g. when one of their invoices changes status."""

    __tablename__ = "notifications"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        doc="Recipient user ID",
    )

    type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        doc="Notification type (invoice_status)",
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    message: Mapped[str] = mapped_column(Text, nullable=False)

    data: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        doc="Structured payload (invoice id, old and new status)",
    )

    is_read: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    __table_args__ = (
        Index("ix_notifications_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type})>"
