"""
Tests for invoice status notifications and the UnitOfWork that triggers them.
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from clinic_ledger.core.exceptions import BusinessValidationError, ConflictError
from clinic_ledger.core.unit_of_work import UnitOfWork
from clinic_ledger.models.notification import Notification
from clinic_ledger.schemas.credit_note import CreditNoteApply, CreditNoteIssue
from clinic_ledger.schemas.invoice import InvoiceStatus, InvoiceUpdate
from clinic_ledger.schemas.notification import InvoiceStatusChange
from clinic_ledger.services.credit_note_service import CreditNoteService
from clinic_ledger.services.invoice_service import InvoiceService
from clinic_ledger.services.notification_service import (
    NotificationService,
    build_status_notification,
)

from conftest import invoice_payload, manual


def make_event(**overrides) -> InvoiceStatusChange:
    values = {
        "invoice_id": uuid.uuid4(),
        "invoice_no": "INV-000042",
        "old_status": InvoiceStatus.UNPAID,
        "new_status": InvoiceStatus.PAID,
        "actor_id": uuid.uuid4(),
        "actor_name": "Dr. Hossain",
        "recipient_id": uuid.uuid4(),
    }
    values.update(overrides)
    return InvoiceStatusChange(**values)


def paid_update(patient) -> InvoiceUpdate:
    """The 30.00 consultation, now paid in full."""
    return InvoiceUpdate(patient_id=patient.id, items=[manual("Consultation", "30")], paid_amount=Decimal("30"))


async def notifications_for(db, user_id) -> list[Notification]:
    result = await db.execute(select(Notification).where(Notification.user_id == user_id))
    return list(result.scalars().all())


# ============================================================
# Message building
# ============================================================


class TestBuildNotification:

    def test_paid_message(self):
        event = make_event()

        notification = build_status_notification(event)

        assert notification.user_id == event.recipient_id
        assert notification.type == "invoice_status"
        assert notification.title == "Invoice INV-000042 Paid"
        assert notification.message == "Dr. Hossain marked this invoice as paid."
        assert notification.data["oldStatus"] == "unpaid"
        assert notification.data["newStatus"] == "paid"

    def test_partial_message_without_actor_name(self):
        notification = build_status_notification(
            make_event(new_status=InvoiceStatus.PARTIAL, actor_name=None)
        )

        assert notification.title == "Invoice INV-000042 Partially Paid"
        assert notification.message == "A team member marked this invoice as partially paid."


class TestShouldNotify:

    def setup_method(self):
        self.service = NotificationService()

    def test_status_change_for_someone_else(self):
        assert self.service.should_notify(make_event()) is True

    def test_unchanged_status(self):
        assert self.service.should_notify(make_event(new_status=InvoiceStatus.UNPAID)) is False

    def test_actor_is_the_creator(self):
        actor_id = uuid.uuid4()
        assert self.service.should_notify(make_event(actor_id=actor_id, recipient_id=actor_id)) is False

    def test_no_recipient(self):
        assert self.service.should_notify(make_event(recipient_id=None)) is False

    def test_disabled_by_settings(self):
        with patch("clinic_ledger.services.notification_service.settings") as fake_settings:
            fake_settings.notifications_enabled = False
            assert self.service.should_notify(make_event()) is False


class TestEmit:

    async def test_emit_persists_notification(self, db):
        event = make_event()

        await NotificationService().emit(db, event)

        [notification] = await notifications_for(db, event.recipient_id)
        assert notification.title == "Invoice INV-000042 Paid"
        assert notification.is_read is False

    async def test_emit_failure_is_swallowed(self, db):
        event = make_event()

        with patch(
            "clinic_ledger.services.notification_service.build_status_notification",
            side_effect=RuntimeError("boom"),
        ):
            await NotificationService().emit(db, event)

        assert await notifications_for(db, event.recipient_id) == []


# ============================================================
# Notifications from ledger operations
# ============================================================


class TestLedgerNotifications:

    async def test_status_change_by_another_user_notifies_creator(self, db, patient, editor, manager):
        invoices = InvoiceService()
        credit_notes = CreditNoteService()
        source = await invoices.create(db, invoice_payload(patient, [manual("Surgery", "100")]), editor)
        target = await invoices.create(db, invoice_payload(patient, [manual("Consultation", "30")]), editor)
        note = await credit_notes.issue(db, CreditNoteIssue(invoice_id=source.id, amount=Decimal("30")), editor)

        await credit_notes.apply(
            db,
            CreditNoteApply(credit_note_id=note.id, invoice_id=target.id, amount=Decimal("30")),
            manager,
        )

        [notification] = await notifications_for(db, editor.id)
        assert notification.title == f"Invoice {target.invoice_no} Paid"
        assert notification.message == "Dr. Hossain marked this invoice as paid."

    async def test_creator_is_not_notified_of_own_change(self, db, patient, editor):
        invoices = InvoiceService()
        invoice = await invoices.create(db, invoice_payload(patient, [manual("Consultation", "30")]), editor)

        await invoices.update(db, invoice.id, paid_update(patient), editor)

        assert await notifications_for(db, editor.id) == []

    async def test_invoice_creation_never_notifies(self, db, patient, manager):
        invoices = InvoiceService()

        await invoices.create(
            db, invoice_payload(patient, [manual("Consultation", "30")], paid_amount=Decimal("30")), manager
        )

        assert (await db.execute(select(Notification))).scalars().all() == []

    async def test_notification_failure_does_not_undo_the_change(self, db, patient, editor, manager):
        notifier = NotificationService()
        notifier.emit = AsyncMock(side_effect=RuntimeError("mail server down"))
        invoices = InvoiceService(credit_note_service=CreditNoteService(notification_service=notifier))
        invoice = await invoices.create(db, invoice_payload(patient, [manual("Consultation", "30")]), editor)

        updated = await invoices.update(db, invoice.id, paid_update(patient), manager)

        assert updated.status == InvoiceStatus.PAID.value
        notifier.emit.assert_awaited_once()


# ============================================================
# UnitOfWork
# ============================================================


class TestUnitOfWork:

    async def test_commit_then_hooks(self, mock_db):
        calls = []

        async def hook():
            calls.append(mock_db.commit.await_count)

        async with UnitOfWork(mock_db) as uow:
            uow.after_commit(hook)
            assert calls == []

        assert uow.committed is True
        assert calls == [1]

    async def test_rollback_skips_hooks(self, mock_db):
        hook = AsyncMock()

        with pytest.raises(BusinessValidationError):
            async with UnitOfWork(mock_db) as uow:
                uow.after_commit(hook)
                raise BusinessValidationError("Invoice must have at least one item")

        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()
        hook.assert_not_awaited()
        assert uow.committed is False

    async def test_integrity_error_becomes_conflict(self, mock_db):
        mock_db.commit.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

        with pytest.raises(ConflictError, match="Could not create the invoice"):
            async with UnitOfWork(mock_db, "Could not create the invoice"):
                pass

        mock_db.rollback.assert_awaited_once()

    async def test_failing_hook_is_logged_not_raised(self, mock_db, caplog):
        async def broken():
            raise RuntimeError("boom")

        second = AsyncMock()

        async with UnitOfWork(mock_db) as uow:
            uow.after_commit(broken)
            uow.after_commit(second)

        second.assert_awaited_once()
        assert "After-commit hook failed" in caplog.text
