"""
Service: credit note ledger
Project: Clinic Ledger

Issues credit notes against an invoice's refundable balance and spends
them on invoices' outstanding balances.

Every mutation runs in one UnitOfWork together with the invoice balance
it moves and the history entry that records it. Invoice and credit note
rows are read with SELECT ... FOR UPDATE, and a credit note balance is
only written if it still holds the value that was read, so two requests
spending the same note cannot overdraw it.
"""

import datetime
import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from clinic_ledger.core.exceptions import (
    AuthorizationError,
    BusinessValidationError,
    ConflictError,
    NotFoundError,
)
from clinic_ledger.core.unit_of_work import UnitOfWork
from clinic_ledger.models.credit_note import CreditNote, CreditNoteApplication
from clinic_ledger.models.invoice import Invoice
from clinic_ledger.schemas.actor import Actor, Permission
from clinic_ledger.schemas.credit_note import (
    CreditApplicationResult,
    CreditNoteAction,
    CreditNoteApply,
    CreditNoteIssue,
    CreditNoteList,
    CreditNoteRead,
    CreditNoteStatus,
    CreditNoteType,
)
from clinic_ledger.schemas.invoice import CreditApplicationRead, InvoiceStatus
from clinic_ledger.schemas.notification import InvoiceStatusChange
from clinic_ledger.services.calculator import (
    TOLERANCE,
    credit_note_status,
    invoice_status,
    outstanding_balance,
    refundable_balance,
    to_money,
)
from clinic_ledger.services.history_service import CreditNoteHistoryService
from clinic_ledger.services.notification_service import NotificationService
from clinic_ledger.services.sequence_service import SequenceService

logger = logging.getLogger(__name__)


def ensure_permission(actor: Actor, permission: Permission, action: str) -> None:
    if not actor.has(permission):
        raise AuthorizationError(f"You do not have permission to {action}")


def require_invoice_access(actor: Actor, invoice: Invoice) -> None:
    """Creator of the invoice or VIEW_ALL_INVOICES."""
    if not actor.can_access(invoice.created_by):
        raise AuthorizationError("You do not have access to this invoice")


def refresh_invoice_status(invoice: Invoice) -> tuple[str, str]:
    """Recompute and store the invoice status. Returns (old, new)."""
    old_status = invoice.status
    invoice.status = invoice_status(
        invoice.total_amount,
        invoice.paid_amount,
        invoice.credit_applied_amount,
        invoice.refunded_amount,
    )
    return old_status, invoice.status


class CreditNoteService:
    """Credit note issuance, application, release and void."""

    def __init__(
        self,
        sequence_service: Optional[SequenceService] = None,
        history_service: Optional[CreditNoteHistoryService] = None,
        notification_service: Optional[NotificationService] = None,
    ) -> None:
        self.sequence_service = sequence_service or SequenceService()
        self.history_service = history_service or CreditNoteHistoryService()
        self.notification_service = notification_service or NotificationService()

    # ------------------------------------------------------------
    # Row locking
    # ------------------------------------------------------------

    async def lock_invoice(self, db: AsyncSession, invoice_id: uuid.UUID) -> Invoice:
        """
        Raises:
            NotFoundError: If the invoice does not exist
        """
        result = await db.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update(of=(Invoice,))
            .execution_options(populate_existing=True)
        )
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    async def lock_credit_note(self, db: AsyncSession, credit_note_id: uuid.UUID) -> CreditNote:
        """
        Raises:
            NotFoundError: If the credit note does not exist
        """
        result = await db.execute(
            select(CreditNote)
            .where(CreditNote.id == credit_note_id)
            .with_for_update(of=(CreditNote,))
            .execution_options(populate_existing=True)
        )
        credit_note = result.scalar_one_or_none()
        if not credit_note:
            raise NotFoundError(f"Credit note {credit_note_id} not found")
        return credit_note

    # ------------------------------------------------------------
    # Building blocks shared with the invoice ledger
    # ------------------------------------------------------------

    def ensure_spendable(self, credit_note: CreditNote, patient_id: uuid.UUID) -> None:
        """
        Raises:
            BusinessValidationError: Other patient, voided or exhausted note
        """
        if credit_note.patient_id != patient_id:
            raise BusinessValidationError("Credit note and invoice must belong to the same patient")
        if (
            credit_note.is_voided
            or credit_note.status == CreditNoteStatus.CLOSED.value
            or credit_note.remaining_amount <= 0
        ):
            raise BusinessValidationError("Credit note has no remaining balance")

    async def spend(
        self,
        db: AsyncSession,
        credit_note: CreditNote,
        invoice: Invoice,
        amount: Decimal,
        actor: Actor,
    ) -> CreditNoteApplication:
        """
        Move `amount` from the credit note to the invoice.

        The amount must already be validated and capped by the caller. The
        invoice status is not recomputed here.

        The note balance is written with a compare-and-swap on the balance
        that was read, so a concurrent spend of the same note makes this one
        fail instead of overdrawing it.

        Raises:
            ConflictError: The note changed since it was read
        """
        amount = to_money(amount)
        await db.flush()

        expected = to_money(credit_note.remaining_amount)
        remaining = expected - amount
        status = credit_note_status(remaining, credit_note.total_amount)
        result = await db.execute(
            update(CreditNote)
            .where(
                CreditNote.id == credit_note.id,
                CreditNote.remaining_amount == expected,
                CreditNote.voided_at.is_(None),
            )
            .values(remaining_amount=remaining, status=status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Concurrent change on credit note %s, spend refused", credit_note.credit_no)
            raise ConflictError(
                f"Credit note {credit_note.credit_no} was changed by another request, please retry"
            )
        set_committed_value(credit_note, "remaining_amount", remaining)
        set_committed_value(credit_note, "status", status)

        invoice.credit_applied_amount = to_money(invoice.credit_applied_amount) + amount

        application = CreditNoteApplication(
            id=uuid.uuid4(),
            credit_note_id=credit_note.id,
            applied_invoice_id=invoice.id,
            applied_amount=amount,
            applied_by=actor.id,
        )
        db.add(application)
        self.history_service.record(
            db,
            credit_note.id,
            CreditNoteAction.APPLIED,
            actor.id,
            invoice_id=invoice.id,
            amount=amount,
        )
        return application

    async def release(
        self,
        db: AsyncSession,
        application: CreditNoteApplication,
        credit_note: CreditNote,
        invoice: Invoice,
        actor: Actor,
    ) -> None:
        """
        Undo one application: the credit goes back to the note and the
        application row is deleted. The invoice status is not recomputed here.
        """
        amount = to_money(application.applied_amount)
        credit_note.remaining_amount = min(
            to_money(credit_note.total_amount),
            to_money(credit_note.remaining_amount) + amount,
        )
        credit_note.status = credit_note_status(credit_note.remaining_amount, credit_note.total_amount)

        invoice.credit_applied_amount = max(
            Decimal("0.00"),
            to_money(invoice.credit_applied_amount) - amount,
        )

        self.history_service.record(
            db,
            credit_note.id,
            CreditNoteAction.RELEASED,
            actor.id,
            invoice_id=invoice.id,
            amount=amount,
        )
        await db.delete(application)

    def notify_on_change(
        self,
        uow: UnitOfWork,
        db: AsyncSession,
        invoice: Invoice,
        old_status: str,
        actor: Actor,
    ) -> None:
        """Queue a status-change notification for after the commit."""
        if old_status == invoice.status:
            return
        event = InvoiceStatusChange(
            invoice_id=invoice.id,
            invoice_no=invoice.invoice_no,
            old_status=InvoiceStatus(old_status),
            new_status=InvoiceStatus(invoice.status),
            actor_id=actor.id,
            actor_name=actor.name,
            recipient_id=invoice.created_by,
        )
        uow.after_commit(lambda: self.notification_service.emit(db, event))

    # ------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------

    async def issue(self, db: AsyncSession, data: CreditNoteIssue, actor: Actor) -> CreditNote:
        """
        Refund part or all of an invoice as a credit note.

        Steps:
        1. Lock the invoice and check access
        2. Check the amount against max(0, total - refunded)
        3. Reserve a CN number
        4. Insert the note (open, remaining = total = amount), raise the
           invoice's refunded amount, recompute its status, write history

        Args:
            db: Database session
            data: Invoice, amount and reason
            actor: Calling user

        Returns:
            CreditNote: The new credit note

        Raises:
            AuthorizationError: Missing CREATE_INVOICE or no access to the invoice
            NotFoundError: Invoice not found
            BusinessValidationError: Nothing refundable or amount too large
        """
        ensure_permission(actor, Permission.CREATE_INVOICE, "issue credit notes")

        async with UnitOfWork(db, "Could not issue the credit note") as uow:
            invoice = await self.lock_invoice(db, data.invoice_id)
            require_invoice_access(actor, invoice)

            amount = to_money(data.amount)
            if amount <= 0:
                raise BusinessValidationError("Amount must be greater than zero")

            max_refundable = refundable_balance(invoice.total_amount, invoice.refunded_amount)
            if max_refundable <= 0:
                raise BusinessValidationError("Invoice has no refundable balance")
            if amount - TOLERANCE > max_refundable:
                raise BusinessValidationError("Refund amount exceeds available balance")

            amount = min(amount, max_refundable)
            note_type = (
                CreditNoteType.FULL
                if amount + TOLERANCE >= max_refundable
                else CreditNoteType.PARTIAL
            )

            credit_no = await self.sequence_service.next_credit_no(db)

            credit_note = CreditNote(
                id=uuid.uuid4(),
                credit_no=credit_no,
                invoice_id=invoice.id,
                patient_id=invoice.patient_id,
                type=note_type.value,
                status=CreditNoteStatus.OPEN.value,
                total_amount=amount,
                remaining_amount=amount,
                reason=data.reason,
                notes=data.notes,
                issued_by=actor.id,
            )
            db.add(credit_note)
            await db.flush()

            invoice.refunded_amount = to_money(invoice.refunded_amount) + amount
            old_status, _ = refresh_invoice_status(invoice)

            self.history_service.record(
                db,
                credit_note.id,
                CreditNoteAction.CREATED,
                actor.id,
                invoice_id=invoice.id,
                amount=amount,
                reason=data.reason,
            )
            self.notify_on_change(uow, db, invoice, old_status, actor)

        logger.info(
            "Credit note %s issued for %s on invoice %s by %s",
            credit_no, amount, invoice.invoice_no, actor.id,
        )
        return await self.get_by_id(db, credit_note.id)

    # ------------------------------------------------------------
    # Apply / release
    # ------------------------------------------------------------

    async def apply(self, db: AsyncSession, data: CreditNoteApply, actor: Actor) -> CreditApplicationResult:
        """
        Spend a credit note on an invoice's outstanding balance.

        The target invoice may differ from the one the credit was issued from,
        but both must belong to the same patient.

        Raises:
            AuthorizationError: Missing CREATE_INVOICE or no access to the invoice
            NotFoundError: Credit note or invoice not found
            BusinessValidationError: Exhausted note, settled invoice or amount too large
        """
        ensure_permission(actor, Permission.CREATE_INVOICE, "apply credit notes")

        async with UnitOfWork(db, "Could not apply the credit note") as uow:
            credit_note = await self.lock_credit_note(db, data.credit_note_id)
            invoice = await self.lock_invoice(db, data.invoice_id)
            require_invoice_access(actor, invoice)

            amount = to_money(data.amount)
            if amount <= 0:
                raise BusinessValidationError("Amount must be greater than zero")

            self.ensure_spendable(credit_note, invoice.patient_id)

            remaining_due = outstanding_balance(
                invoice.total_amount,
                invoice.paid_amount,
                invoice.credit_applied_amount,
                invoice.refunded_amount,
            )
            if remaining_due <= 0:
                raise BusinessValidationError("Invoice has no outstanding balance")

            available = min(to_money(credit_note.remaining_amount), remaining_due)
            if amount - TOLERANCE > available:
                raise BusinessValidationError("Amount exceeds available credit or invoice balance")

            application = await self.spend(db, credit_note, invoice, min(amount, available), actor)
            old_status, _ = refresh_invoice_status(invoice)
            self.notify_on_change(uow, db, invoice, old_status, actor)

        logger.info(
            "Credit note %s applied %s to invoice %s by %s",
            credit_note.credit_no, application.applied_amount, invoice.invoice_no, actor.id,
        )

        refreshed = await self.get_by_id(db, credit_note.id)
        return CreditApplicationResult(
            application=CreditApplicationRead.model_validate(
                await self._get_application(db, application.id)
            ),
            credit_note=CreditNoteRead.model_validate(refreshed),
            invoice_id=invoice.id,
            invoice_status=InvoiceStatus(invoice.status),
            invoice_credit_applied_amount=invoice.credit_applied_amount,
        )

    async def release_application(self, db: AsyncSession, application_id: uuid.UUID, actor: Actor) -> None:
        """
        Cancel one credit application and give the amount back to the note.

        Raises:
            AuthorizationError: Missing CREATE_INVOICE or no access to the invoice
            NotFoundError: Application not found
        """
        ensure_permission(actor, Permission.CREATE_INVOICE, "release credit applications")

        async with UnitOfWork(db, "Could not release the credit application") as uow:
            application = await self._get_application(db, application_id, for_update=True)
            invoice = await self.lock_invoice(db, application.applied_invoice_id)
            require_invoice_access(actor, invoice)
            credit_note = await self.lock_credit_note(db, application.credit_note_id)

            await self.release(db, application, credit_note, invoice, actor)
            old_status, _ = refresh_invoice_status(invoice)
            self.notify_on_change(uow, db, invoice, old_status, actor)

        logger.info(
            "Credit application %s released from invoice %s by %s",
            application_id, invoice.invoice_no, actor.id,
        )

    # ------------------------------------------------------------
    # Void
    # ------------------------------------------------------------

    async def void(
        self,
        db: AsyncSession,
        credit_note_id: uuid.UUID,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> CreditNote:
        """
        Cancel a credit note that has not been spent.

        The originating invoice's refunded amount goes back down by the note
        total. The note is kept, closed, with voided_at set.

        Raises:
            AuthorizationError: Missing CREATE_INVOICE or no access to the invoice
            NotFoundError: Credit note not found
            BusinessValidationError: Already voided or still applied somewhere
        """
        ensure_permission(actor, Permission.CREATE_INVOICE, "void credit notes")

        async with UnitOfWork(db, "Could not void the credit note") as uow:
            credit_note = await self.lock_credit_note(db, credit_note_id)
            invoice = await self.lock_invoice(db, credit_note.invoice_id)
            require_invoice_access(actor, invoice)

            if credit_note.is_voided:
                raise BusinessValidationError("Credit note is already voided")

            active = await self._count_applications(db, credit_note.id)
            if active:
                raise BusinessValidationError(
                    "Credit note has active applications; release them before voiding"
                )

            credit_note.remaining_amount = Decimal("0.00")
            credit_note.status = CreditNoteStatus.CLOSED.value
            credit_note.voided_at = datetime.datetime.now(datetime.timezone.utc)
            credit_note.voided_by = actor.id

            invoice.refunded_amount = max(
                Decimal("0.00"),
                to_money(invoice.refunded_amount) - to_money(credit_note.total_amount),
            )
            old_status, _ = refresh_invoice_status(invoice)

            self.history_service.record(
                db,
                credit_note.id,
                CreditNoteAction.VOIDED,
                actor.id,
                invoice_id=invoice.id,
                amount=credit_note.total_amount,
                reason=reason,
            )
            self.notify_on_change(uow, db, invoice, old_status, actor)

        logger.info("Credit note %s voided by %s", credit_note.credit_no, actor.id)
        return await self.get_by_id(db, credit_note.id)

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    async def get_by_id(self, db: AsyncSession, credit_note_id: uuid.UUID) -> CreditNote:
        """
        Credit note with applications and history.

        Raises:
            NotFoundError: Credit note not found
        """
        result = await db.execute(
            select(CreditNote)
            .where(CreditNote.id == credit_note_id)
            .execution_options(populate_existing=True)
        )
        credit_note = result.scalar_one_or_none()
        if not credit_note:
            raise NotFoundError(f"Credit note {credit_note_id} not found")
        return credit_note

    async def get_all(
        self,
        db: AsyncSession,
        patient_id: Optional[uuid.UUID] = None,
        invoice_id: Optional[uuid.UUID] = None,
        status_filter: Optional[CreditNoteStatus] = None,
        include_history: bool = False,
        page: int = 1,
        per_page: int = 10,
    ) -> CreditNoteList:
        """Paginated credit notes, newest first."""
        conditions = []
        if patient_id:
            conditions.append(CreditNote.patient_id == patient_id)
        if invoice_id:
            conditions.append(CreditNote.invoice_id == invoice_id)
        if status_filter:
            conditions.append(CreditNote.status == CreditNoteStatus(status_filter).value)

        count_stmt = select(func.count(CreditNote.id))
        stmt = select(CreditNote).execution_options(populate_existing=True)
        if conditions:
            count_stmt = count_stmt.where(and_(*conditions))
            stmt = stmt.where(and_(*conditions))

        total = (await db.execute(count_stmt)).scalar_one()

        stmt = (
            stmt.order_by(CreditNote.created_at.desc(), CreditNote.credit_no.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        credit_notes = (await db.execute(stmt)).scalars().all()

        items = [self.to_read(cn, include_history) for cn in credit_notes]
        total_pages = (total + per_page - 1) // per_page if total > 0 else 1

        return CreditNoteList(
            items=items,
            total=total,
            page=page,
            per_page=per_page,
            total_pages=total_pages,
        )

    async def get_by_invoice(self, db: AsyncSession, invoice_id: uuid.UUID) -> list[CreditNote]:
        """Credit notes issued from one invoice."""
        result = await db.execute(
            select(CreditNote)
            .where(CreditNote.invoice_id == invoice_id)
            .order_by(CreditNote.created_at)
        )
        return list(result.scalars().all())

    async def get_available_for_patient(self, db: AsyncSession, patient_id: uuid.UUID) -> list[CreditNote]:
        """Credit notes the patient can still spend, oldest first."""
        result = await db.execute(
            select(CreditNote)
            .where(
                CreditNote.patient_id == patient_id,
                CreditNote.status.in_([CreditNoteStatus.OPEN.value, CreditNoteStatus.PARTIAL.value]),
                CreditNote.voided_at.is_(None),
                CreditNote.remaining_amount > 0,
            )
            .order_by(CreditNote.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    def to_read(credit_note: CreditNote, include_history: bool = True) -> CreditNoteRead:
        read = CreditNoteRead.model_validate(credit_note)
        if not include_history:
            read = read.model_copy(update={"history": None})
        return read

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    async def _get_application(
        self,
        db: AsyncSession,
        application_id: uuid.UUID,
        for_update: bool = False,
    ) -> CreditNoteApplication:
        stmt = select(CreditNoteApplication).where(CreditNoteApplication.id == application_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt.execution_options(populate_existing=True))
        application = result.scalar_one_or_none()
        if not application:
            raise NotFoundError(f"Credit application {application_id} not found")
        return application

    async def _count_applications(self, db: AsyncSession, credit_note_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.count(CreditNoteApplication.id))
            .where(CreditNoteApplication.credit_note_id == credit_note_id)
        )
        return result.scalar_one()
