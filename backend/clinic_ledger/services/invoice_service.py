"""
Service: invoice ledger
Project: Clinic Ledger

Creates, edits and deletes invoices. One invoice save touches several
tables (invoice, items, product stock, appointment, credit notes,
applications, history); each operation runs in a single UnitOfWork so all
of them change together or not at all.
"""

import logging
import uuid
from decimal import Decimal
from typing import NamedTuple, Optional, Sequence

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.exceptions import BusinessValidationError, NotFoundError
from clinic_ledger.core.unit_of_work import UnitOfWork
from clinic_ledger.models.credit_note import CreditNote, CreditNoteApplication
from clinic_ledger.models.invoice import Invoice, InvoiceItem
from clinic_ledger.schemas.actor import Actor, Permission
from clinic_ledger.schemas.invoice import (
    AppliedCredit,
    CatalogLine,
    InvoiceCreate,
    InvoiceList,
    InvoiceRead,
    InvoiceStatus,
    InvoiceUpdate,
    LineItem,
)
from clinic_ledger.services.appointment_service import AppointmentService
from clinic_ledger.services.calculator import (
    TOLERANCE,
    ZERO,
    calculate_invoice_totals,
    calculate_line,
    outstanding_balance,
    to_money,
)
from clinic_ledger.services.credit_note_service import (
    CreditNoteService,
    ensure_permission,
    refresh_invoice_status,
    require_invoice_access,
)
from clinic_ledger.services.inventory_service import (
    Allocation,
    InventoryService,
    build_allocation,
)
from clinic_ledger.services.patient_service import PatientService
from clinic_ledger.services.product_service import ProductService
from clinic_ledger.services.sequence_service import SequenceService

logger = logging.getLogger(__name__)


class PreparedLines(NamedTuple):
    items: list[InvoiceItem]
    allocation: Allocation


class InvoiceService:
    """
    Invoice ledger.

    Collaborators are injectable so tests can swap the notification or
    sequence behaviour.
    """

    def __init__(
        self,
        credit_note_service: Optional[CreditNoteService] = None,
        sequence_service: Optional[SequenceService] = None,
        patient_service: Optional[PatientService] = None,
        product_service: Optional[ProductService] = None,
        appointment_service: Optional[AppointmentService] = None,
        inventory_service: Optional[InventoryService] = None,
    ) -> None:
        self.sequence_service = sequence_service or SequenceService()
        self.credit_note_service = credit_note_service or CreditNoteService(
            sequence_service=self.sequence_service,
        )
        self.patient_service = patient_service or PatientService()
        self.product_service = product_service or ProductService()
        self.appointment_service = appointment_service or AppointmentService()
        self.inventory_service = inventory_service or InventoryService(self.product_service)

    # ------------------------------------------------------------
    # Create
    # ------------------------------------------------------------

    async def create(self, db: AsyncSession, data: InvoiceCreate, actor: Actor) -> Invoice:
        """
        Create an invoice.

        Steps:
        1. Patient must exist, at least one item
        2. Lock catalog products, price the lines, check unreserved stock
        3. Compute subtotal, invoice discount and total
        4. Validate the appointment (same patient, scheduled, not invoiced)
        5. Validate applied credits against notes and total
        6. Reserve an INV number, then write invoice, items, stock,
           appointment, credit applications and history

        Args:
            db: Database session
            data: Invoice payload
            actor: Calling user

        Returns:
            Invoice: The created invoice with relations loaded

        Raises:
            AuthorizationError: Missing CREATE_INVOICE
            NotFoundError: Patient, product, appointment or credit note not found
            BusinessValidationError: Any ledger rule violated
        """
        ensure_permission(actor, Permission.CREATE_INVOICE, "create invoices")

        async with UnitOfWork(db, "Could not create the invoice"):
            # Step 1: patient and items
            patient = await self.patient_service.get_by_id(db, data.patient_id)
            self._ensure_items(data.items)

            # Step 2-3: lines and totals
            prepared = await self._prepare_lines(db, data.items, previous={})
            totals = calculate_invoice_totals(
                (item.total for item in prepared.items),
                data.discount,
                data.discount_type.value,
            )
            paid_amount = self._validate_paid_amount(data.paid_amount, totals.total_amount)

            # Step 4: appointment
            appointment = None
            if data.appointment_id:
                appointment = await self.appointment_service.get_linkable(
                    db, data.appointment_id, patient.id
                )

            # Step 5: credits
            credits = await self._collect_credits(
                db, data.applied_credits, patient.id, totals.total_amount, paid_amount
            )

            # Step 6: writes
            invoice_no = await self.sequence_service.next_invoice_no(db)

            invoice = Invoice(
                id=uuid.uuid4(),
                invoice_no=invoice_no,
                patient_id=patient.id,
                branch=data.branch,
                notes=data.notes,
                subtotal=totals.subtotal,
                discount=to_money(data.discount),
                discount_type=data.discount_type.value,
                discount_amount=totals.discount_amount,
                total_amount=totals.total_amount,
                paid_amount=paid_amount,
                credit_applied_amount=ZERO,
                refunded_amount=ZERO,
                status=InvoiceStatus.UNPAID.value,
                created_by=actor.id,
                items=prepared.items,
            )
            db.add(invoice)
            await db.flush()

            await self.inventory_service.apply(db, {}, prepared.allocation)

            if appointment:
                self.appointment_service.link(appointment, invoice.id)

            for credit_note, amount in credits:
                await self.credit_note_service.spend(db, credit_note, invoice, amount, actor)

            refresh_invoice_status(invoice)

        logger.info(
            "Invoice %s created by %s: total %s, status %s",
            invoice.invoice_no, actor.id, invoice.total_amount, invoice.status,
        )
        return await self.get_by_id(db, invoice.id, actor)

    # ------------------------------------------------------------
    # Update
    # ------------------------------------------------------------

    async def update(
        self,
        db: AsyncSession,
        invoice_id: uuid.UUID,
        data: InvoiceUpdate,
        actor: Actor,
    ) -> Invoice:
        """
        Replace an invoice's content.

        Items and applied credits are replaced wholesale. Stock only moves by
        the net difference between the old and new lines. Credits applied to
        this invoice are released first, so the notes' balances are free when
        the new selection is checked.

        Args:
            db: Database session
            invoice_id: UUID of the invoice
            data: New invoice content
            actor: Calling user

        Returns:
            Invoice: The updated invoice

        Raises:
            AuthorizationError: Missing CREATE_INVOICE or not the creator
            NotFoundError: Invoice or any referenced record not found
            BusinessValidationError: Any ledger rule violated
        """
        ensure_permission(actor, Permission.CREATE_INVOICE, "edit invoices")

        async with UnitOfWork(db, "Could not update the invoice") as uow:
            invoice = await self.credit_note_service.lock_invoice(db, invoice_id)
            require_invoice_access(actor, invoice)
            original_status = invoice.status

            patient = await self.patient_service.get_by_id(db, data.patient_id)
            if patient.id != invoice.patient_id and await self._has_issued_credit_notes(db, invoice.id):
                raise BusinessValidationError(
                    "Cannot change the patient of an invoice with issued credit notes"
                )
            self._ensure_items(data.items)

            previous = build_allocation((item.product_id, item.quantity) for item in invoice.items)
            prepared = await self._prepare_lines(db, data.items, previous=previous)
            totals = calculate_invoice_totals(
                (item.total for item in prepared.items),
                data.discount,
                data.discount_type.value,
            )
            if totals.total_amount + TOLERANCE < to_money(invoice.refunded_amount):
                raise BusinessValidationError(
                    "Invoice total cannot be lower than the amount already refunded "
                    f"({to_money(invoice.refunded_amount)})"
                )
            paid_amount = self._validate_paid_amount(data.paid_amount, totals.total_amount)

            # Release every credit applied to this invoice
            await self._release_all(db, invoice, actor)

            # Apply the new credit selection
            credits = await self._collect_credits(
                db,
                data.applied_credits,
                patient.id,
                totals.total_amount,
                paid_amount,
                invoice.refunded_amount,
            )

            await self._relink_appointment(db, invoice, data.appointment_id, patient.id)

            invoice.items = prepared.items
            invoice.patient_id = patient.id
            invoice.branch = data.branch
            invoice.notes = data.notes
            invoice.subtotal = totals.subtotal
            invoice.discount = to_money(data.discount)
            invoice.discount_type = data.discount_type.value
            invoice.discount_amount = totals.discount_amount
            invoice.total_amount = totals.total_amount
            invoice.paid_amount = paid_amount
            await db.flush()

            await self.inventory_service.apply(db, previous, prepared.allocation)

            for credit_note, amount in credits:
                await self.credit_note_service.spend(db, credit_note, invoice, amount, actor)

            refresh_invoice_status(invoice)
            self.credit_note_service.notify_on_change(uow, db, invoice, original_status, actor)

        logger.info(
            "Invoice %s updated by %s: total %s, status %s -> %s",
            invoice.invoice_no, actor.id, invoice.total_amount, original_status, invoice.status,
        )
        return await self.get_by_id(db, invoice.id, actor)

    # ------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------

    async def delete(self, db: AsyncSession, invoice_id: uuid.UUID, actor: Actor) -> None:
        """
        Delete an invoice, restock its products and reopen its appointment.

        Invoices entangled with credit notes (spent on it or issued from it)
        cannot be deleted.

        Raises:
            AuthorizationError: Missing CREATE_INVOICE or not the creator
            NotFoundError: Invoice not found
            BusinessValidationError: Credit notes reference the invoice
        """
        ensure_permission(actor, Permission.CREATE_INVOICE, "delete invoices")

        async with UnitOfWork(db, "Could not delete the invoice"):
            invoice = await self.credit_note_service.lock_invoice(db, invoice_id)
            require_invoice_access(actor, invoice)

            if await self._count_applications(db, invoice.id):
                raise BusinessValidationError(
                    "Invoice has credit notes applied to it; release them before deleting"
                )
            if await self._has_issued_credit_notes(db, invoice.id):
                raise BusinessValidationError(
                    "Invoice has issued credit notes and cannot be deleted"
                )

            previous = build_allocation((item.product_id, item.quantity) for item in invoice.items)
            await self.inventory_service.restock(db, previous)

            appointment = await self.appointment_service.find_by_invoice(db, invoice.id)
            if appointment:
                self.appointment_service.unlink(appointment)
                await db.flush()

            invoice_no = invoice.invoice_no
            await db.delete(invoice)

        logger.info("Invoice %s deleted by %s", invoice_no, actor.id)

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    async def get_by_id(self, db: AsyncSession, invoice_id: uuid.UUID, actor: Actor) -> Invoice:
        """
        Invoice with items, appointment and credit activity.

        Raises:
            NotFoundError: Invoice not found
            AuthorizationError: The actor may not see it
        """
        result = await db.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        require_invoice_access(actor, invoice)
        return invoice

    async def get_by_invoice_no(self, db: AsyncSession, invoice_no: str, actor: Actor) -> Invoice:
        result = await db.execute(
            select(Invoice)
            .where(Invoice.invoice_no == invoice_no.strip().upper())
            .execution_options(populate_existing=True)
        )
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_no} not found")
        require_invoice_access(actor, invoice)
        return invoice

    async def get_all(
        self,
        db: AsyncSession,
        actor: Actor,
        patient_id: Optional[uuid.UUID] = None,
        status_filter: Optional[InvoiceStatus] = None,
        page: int = 1,
        per_page: int = 10,
    ) -> InvoiceList:
        """
        Paginated invoices, newest first.

        Without VIEW_ALL_INVOICES only the actor's own invoices are listed.
        """
        conditions = []
        if not actor.can_view_all_invoices:
            conditions.append(Invoice.created_by == actor.id)
        if patient_id:
            conditions.append(Invoice.patient_id == patient_id)
        if status_filter:
            conditions.append(Invoice.status == InvoiceStatus(status_filter).value)

        count_stmt = select(func.count(Invoice.id))
        stmt = select(Invoice).execution_options(populate_existing=True)
        if conditions:
            count_stmt = count_stmt.where(and_(*conditions))
            stmt = stmt.where(and_(*conditions))

        total = (await db.execute(count_stmt)).scalar_one()

        stmt = (
            stmt.order_by(Invoice.created_at.desc(), Invoice.invoice_no.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        invoices = (await db.execute(stmt)).scalars().all()
        total_pages = (total + per_page - 1) // per_page if total > 0 else 1

        return InvoiceList(
            items=[InvoiceRead.model_validate(inv) for inv in invoices],
            total=total,
            page=page,
            per_page=per_page,
            total_pages=total_pages,
        )

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    @staticmethod
    def _ensure_items(items: Sequence[LineItem]) -> None:
        if not items:
            raise BusinessValidationError("Invoice must have at least one item")

    @staticmethod
    def _validate_paid_amount(paid_amount: Decimal, total_amount: Decimal) -> Decimal:
        paid_amount = to_money(paid_amount)
        if paid_amount < 0:
            raise BusinessValidationError("Paid amount cannot be negative")
        if paid_amount - TOLERANCE > total_amount:
            raise BusinessValidationError("Paid amount cannot exceed the invoice total")
        return min(paid_amount, total_amount)

    async def _prepare_lines(
        self,
        db: AsyncSession,
        lines: Sequence[LineItem],
        previous: Allocation,
    ) -> PreparedLines:
        """
        Price the lines and check stock.

        Catalog lines take name and price from the product, locked for the
        rest of the transaction.

        Raises:
            NotFoundError: A catalog product does not exist
            BusinessValidationError: Bad quantity or not enough stock
        """
        product_ids = [line.product_id for line in lines if isinstance(line, CatalogLine)]
        products = await self.product_service.find_many_for_update(db, product_ids)

        items: list[InvoiceItem] = []
        stock_lines: list[tuple[uuid.UUID, int]] = []
        for position, line in enumerate(lines, start=1):
            if isinstance(line, CatalogLine):
                product = products.get(line.product_id)
                if product is None:
                    raise NotFoundError(f"Product {line.product_id} not found")
                name, unit_price, product_id = product.name, product.price, product.id
                stock_lines.append((product.id, line.quantity))
            else:
                name, unit_price, product_id = line.product_name, line.unit_price, None

            amounts = calculate_line(
                line.quantity, unit_price, line.discount, line.discount_type.value, name
            )
            items.append(
                InvoiceItem(
                    id=uuid.uuid4(),
                    product_id=product_id,
                    position=position,
                    product_name=name,
                    quantity=line.quantity,
                    unit_price=to_money(unit_price),
                    discount=to_money(line.discount),
                    discount_type=line.discount_type.value,
                    discount_amount=amounts.discount_amount,
                    total=amounts.total,
                    is_manual=product_id is None,
                )
            )

        self.inventory_service.check_availability(products, stock_lines, previous)
        return PreparedLines(items, build_allocation(stock_lines))

    async def _collect_credits(
        self,
        db: AsyncSession,
        requested: Sequence[AppliedCredit],
        patient_id: uuid.UUID,
        total_amount: Decimal,
        paid_amount: Decimal,
        refunded_amount: Decimal = ZERO,
    ) -> list[tuple[CreditNote, Decimal]]:
        """
        Validate the credits selected on the invoice form.

        The same note listed twice counts as one request for the summed
        amount. Returned amounts are capped by the outstanding balance, the
        total less refunds and payments.

        Raises:
            NotFoundError: A credit note does not exist
            BusinessValidationError: Wrong patient, exhausted note or too much credit
        """
        if not requested:
            return []

        merged: dict[uuid.UUID, Decimal] = {}
        for credit in requested:
            amount = to_money(credit.amount)
            if amount <= 0:
                raise BusinessValidationError("Amount must be greater than zero")
            merged[credit.credit_note_id] = merged.get(credit.credit_note_id, ZERO) + amount

        notes: list[tuple[CreditNote, Decimal]] = []
        for credit_note_id in sorted(merged, key=str):
            credit_note = await self.credit_note_service.lock_credit_note(db, credit_note_id)
            self.credit_note_service.ensure_spendable(credit_note, patient_id)
            amount = merged[credit_note_id]
            if amount - TOLERANCE > to_money(credit_note.remaining_amount):
                raise BusinessValidationError(
                    f"Credit note {credit_note.credit_no} has only "
                    f"{to_money(credit_note.remaining_amount)} remaining"
                )
            notes.append((credit_note, amount))

        requested_total = sum((amount for _, amount in notes), ZERO)
        if requested_total - TOLERANCE > total_amount:
            raise BusinessValidationError("Applied credits cannot exceed the invoice total")

        capacity = outstanding_balance(total_amount, paid_amount, ZERO, refunded_amount)
        if requested_total - TOLERANCE > capacity:
            raise BusinessValidationError("Applied credits exceed the outstanding balance")

        credits: list[tuple[CreditNote, Decimal]] = []
        for credit_note, amount in notes:
            amount = min(amount, to_money(credit_note.remaining_amount), capacity)
            if amount <= 0:
                continue
            capacity -= amount
            credits.append((credit_note, amount))
        return credits

    async def _release_all(self, db: AsyncSession, invoice: Invoice, actor: Actor) -> None:
        result = await db.execute(
            select(CreditNoteApplication)
            .where(CreditNoteApplication.applied_invoice_id == invoice.id)
            .order_by(CreditNoteApplication.credit_note_id)
            .with_for_update()
        )
        for application in result.scalars().all():
            credit_note = await self.credit_note_service.lock_credit_note(db, application.credit_note_id)
            await self.credit_note_service.release(db, application, credit_note, invoice, actor)
            await db.flush()

    async def _relink_appointment(
        self,
        db: AsyncSession,
        invoice: Invoice,
        appointment_id: Optional[uuid.UUID],
        patient_id: uuid.UUID,
    ) -> None:
        """Move the appointment link of an edited invoice."""
        current = await self.appointment_service.find_by_invoice(db, invoice.id)
        if current and current.id != appointment_id:
            self.appointment_service.unlink(current)
            await db.flush()

        if appointment_id:
            appointment = await self.appointment_service.get_linkable(
                db, appointment_id, patient_id, invoice_id=invoice.id
            )
            self.appointment_service.link(appointment, invoice.id)

    async def _count_applications(self, db: AsyncSession, invoice_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.count(CreditNoteApplication.id))
            .where(CreditNoteApplication.applied_invoice_id == invoice_id)
        )
        return result.scalar_one()

    async def _has_issued_credit_notes(self, db: AsyncSession, invoice_id: uuid.UUID) -> bool:
        result = await db.execute(
            select(func.count(CreditNote.id)).where(CreditNote.invoice_id == invoice_id)
        )
        return result.scalar_one() > 0
