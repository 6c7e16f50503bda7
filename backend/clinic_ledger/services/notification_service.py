"""
Service: invoice status notifications
Project: Clinic Ledger

Called after the ledger transaction has committed. Delivery is best effort:
a failure is logged and never reaches the caller, and the financial change
stays committed.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.config import settings
from clinic_ledger.core.database import side_session
from clinic_ledger.models.notification import Notification
from clinic_ledger.schemas.invoice import InvoiceStatus
from clinic_ledger.schemas.notification import InvoiceStatusChange

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE_INVOICE_STATUS = "invoice_status"

STATUS_LABELS = {
    InvoiceStatus.UNPAID: "Unpaid",
    InvoiceStatus.PARTIAL: "Partially Paid",
    InvoiceStatus.PAID: "Paid",
}


def build_status_notification(event: InvoiceStatusChange) -> Notification:
    label = STATUS_LABELS[event.new_status]
    actor = event.actor_name or "A team member"
    return Notification(
        user_id=event.recipient_id,
        type=NOTIFICATION_TYPE_INVOICE_STATUS,
        title=f"Invoice {event.invoice_no} {label}",
        message=f"{actor} marked this invoice as {label.lower()}.",
        data={
            "invoiceId": str(event.invoice_id),
            "invoiceNo": event.invoice_no,
            "oldStatus": event.old_status.value,
            "newStatus": event.new_status.value,
        },
    )


class NotificationService:

    def should_notify(self, event: InvoiceStatusChange) -> bool:
        if not settings.notifications_enabled:
            return False
        if event.old_status == event.new_status:
            return False
        # Nobody to tell, or the creator made the change themselves
        if event.recipient_id is None or event.recipient_id == event.actor_id:
            return False
        return True

    async def emit(self, db: AsyncSession, event: InvoiceStatusChange) -> None:
        """
        Persist a notification for the invoice creator.

        Args:
            db: Session of the committed ledger operation (only its engine is used)
            event: Status change to report
        """
        if not self.should_notify(event):
            return

        try:
            async with side_session(db) as session:
                session.add(build_status_notification(event))
                await session.commit()
        except Exception:
            logger.exception(
                "Failed to notify user %s about invoice %s",
                event.recipient_id,
                event.invoice_no,
            )
            return

        logger.info(
            "Notified user %s: invoice %s %s -> %s",
            event.recipient_id,
            event.invoice_no,
            event.old_status.value,
            event.new_status.value,
        )
