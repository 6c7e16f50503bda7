"""
Tests for CreditNoteService: issue, apply, release, void and reads.
"""

import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.exceptions import (
    AuthorizationError,
    BusinessValidationError,
    ConflictError,
    NotFoundError,
)
from clinic_ledger.models.credit_note import CreditNote, CreditNoteApplication
from clinic_ledger.models.invoice import Invoice
from clinic_ledger.schemas.credit_note import (
    CreditNoteApply,
    CreditNoteIssue,
    CreditNoteStatus,
    CreditNoteType,
)
from clinic_ledger.schemas.invoice import DiscountType, InvoiceStatus
from clinic_ledger.services.credit_note_service import CreditNoteService
from clinic_ledger.services.invoice_service import InvoiceService

from conftest import catalog, invoice_payload, manual, reload


@pytest.fixture
def service() -> CreditNoteService:
    return CreditNoteService()


@pytest.fixture
def invoice_service() -> InvoiceService:
    return InvoiceService()


@pytest.fixture
async def first_invoice(db, invoice_service, patient, product_a, editor) -> Invoice:
    """Total 85: 2 x 50 with 10% off, then 5 off."""
    return await invoice_service.create(
        db,
        invoice_payload(
            patient,
            [catalog(product_a, 2, "10", DiscountType.PERCENTAGE)],
            discount=Decimal("5"),
        ),
        editor,
    )


@pytest.fixture
async def second_invoice(db, invoice_service, patient, product_b, editor) -> Invoice:
    """Total 60, nothing paid."""
    return await invoice_service.create(db, invoice_payload(patient, [catalog(product_b, 2)]), editor)


def issue(invoice, amount, reason=None) -> CreditNoteIssue:
    return CreditNoteIssue(invoice_id=invoice.id, amount=Decimal(amount), reason=reason)


def apply(credit_note, invoice, amount) -> CreditNoteApply:
    return CreditNoteApply(credit_note_id=credit_note.id, invoice_id=invoice.id, amount=Decimal(amount))


# ============================================================
# Issue
# ============================================================


class TestIssueCreditNote:

    async def test_partial_refund(self, db, service, first_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40", "Unused medicine"), editor)

        assert note.credit_no == "CN-000001"
        assert note.type == CreditNoteType.PARTIAL.value
        assert note.status == CreditNoteStatus.OPEN.value
        assert note.total_amount == Decimal("40.00")
        assert note.remaining_amount == Decimal("40.00")
        assert note.patient_id == first_invoice.patient_id
        assert note.issued_by == editor.id

        invoice = await reload(db, Invoice, first_invoice.id)
        assert invoice.refunded_amount == Decimal("40.00")
        assert invoice.status == InvoiceStatus.UNPAID.value

        [entry] = note.history
        assert entry.action == "created"
        assert entry.event_metadata["amount"] == "40.00"
        assert entry.event_metadata["reason"] == "Unused medicine"

    async def test_full_refund(self, db, service, first_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "85"), editor)

        assert note.type == CreditNoteType.FULL.value

    async def test_within_tolerance_of_balance_counts_as_full(self, db, service, first_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "84.99"), editor)

        assert note.type == CreditNoteType.FULL.value

    async def test_refunds_accumulate_up_to_total(self, db, service, first_invoice, editor):
        invoice_id = first_invoice.id
        await service.issue(db, issue(first_invoice, "40"), editor)

        with pytest.raises(BusinessValidationError, match="Refund amount exceeds available balance"):
            await service.issue(db, CreditNoteIssue(invoice_id=invoice_id, amount=Decimal("45.02")), editor)

        second = await service.issue(db, CreditNoteIssue(invoice_id=invoice_id, amount=Decimal("45")), editor)
        assert second.type == CreditNoteType.FULL.value

        with pytest.raises(BusinessValidationError, match="no refundable balance"):
            await service.issue(db, CreditNoteIssue(invoice_id=invoice_id, amount=Decimal("1")), editor)

    async def test_refund_settles_a_partly_paid_invoice(self, db, service, invoice_service, patient, editor):
        invoice = await invoice_service.create(
            db, invoice_payload(patient, [manual("Surgery", "100")], paid_amount=Decimal("60")), editor
        )
        assert invoice.status == InvoiceStatus.PARTIAL.value

        await service.issue(db, issue(invoice, "40"), editor)

        assert (await reload(db, Invoice, invoice.id)).status == InvoiceStatus.PAID.value

    async def test_unknown_invoice(self, db, service, editor):
        with pytest.raises(NotFoundError):
            await service.issue(db, CreditNoteIssue(invoice_id=uuid.uuid4(), amount=Decimal("1")), editor)

    async def test_requires_permission(self, db, service, first_invoice, viewer):
        with pytest.raises(AuthorizationError, match="permission to issue credit notes"):
            await service.issue(db, issue(first_invoice, "10"), viewer)

    async def test_requires_invoice_access(self, db, service, first_invoice, other_editor, manager):
        payload = issue(first_invoice, "10")

        with pytest.raises(AuthorizationError, match="do not have access"):
            await service.issue(db, payload, other_editor)

        note = await service.issue(db, payload, manager)
        assert note.issued_by == manager.id


# ============================================================
# Apply
# ============================================================


class TestApplyCreditNote:

    async def test_apply_to_another_invoice(self, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)

        result = await service.apply(db, apply(note, second_invoice, "40"), editor)

        assert result.invoice_id == second_invoice.id
        assert result.invoice_credit_applied_amount == Decimal("40.00")
        assert result.invoice_status == InvoiceStatus.PARTIAL
        assert result.application.applied_amount == Decimal("40.00")
        assert result.credit_note.remaining_amount == Decimal("0.00")
        assert result.credit_note.status == CreditNoteStatus.CLOSED

        invoice = await reload(db, Invoice, second_invoice.id)
        assert invoice.credit_applied_amount == Decimal("40.00")
        assert invoice.status == InvoiceStatus.PARTIAL.value

    async def test_closed_note_cannot_be_spent_again(self, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)
        await service.apply(db, apply(note, second_invoice, "40"), editor)

        with pytest.raises(BusinessValidationError, match="Credit note has no remaining balance"):
            await service.apply(db, apply(note, second_invoice, "0.02"), editor)

    async def test_exact_remaining_closes_the_note(self, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "25"), editor)
        await service.apply(db, apply(note, second_invoice, "10"), editor)

        result = await service.apply(db, apply(note, second_invoice, "15.01"), editor)

        assert result.application.applied_amount == Decimal("15.00")
        assert result.credit_note.status == CreditNoteStatus.CLOSED
        assert result.invoice_credit_applied_amount == Decimal("25.00")

    async def test_partial_spend_keeps_note_partial(self, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)

        result = await service.apply(db, apply(note, second_invoice, "15"), editor)

        assert result.credit_note.remaining_amount == Decimal("25.00")
        assert result.credit_note.status == CreditNoteStatus.PARTIAL

    async def test_full_refund_fully_applied_elsewhere(
        self, db, service, invoice_service, first_invoice, patient, product_a, editor
    ):
        target = await invoice_service.create(db, invoice_payload(patient, [catalog(product_a, 2)]), editor)
        note = await service.issue(db, issue(first_invoice, "85"), editor)

        result = await service.apply(db, apply(note, target, "85"), editor)

        assert result.credit_note.status == CreditNoteStatus.CLOSED
        assert result.invoice_credit_applied_amount == Decimal("85.00")
        assert result.invoice_status == InvoiceStatus.PARTIAL

    async def test_more_than_invoice_balance(self, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "80"), editor)

        with pytest.raises(BusinessValidationError, match="exceeds available credit or invoice balance"):
            await service.apply(db, apply(note, second_invoice, "60.02"), editor)

    async def test_more_than_note_balance(self, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "20"), editor)

        with pytest.raises(BusinessValidationError, match="exceeds available credit or invoice balance"):
            await service.apply(db, apply(note, second_invoice, "20.02"), editor)

    async def test_settled_invoice(self, db, service, invoice_service, first_invoice, patient, editor):
        paid = await invoice_service.create(
            db, invoice_payload(patient, [manual("Consultation", "20")], paid_amount=Decimal("20")), editor
        )
        note = await service.issue(db, issue(first_invoice, "10"), editor)

        with pytest.raises(BusinessValidationError, match="no outstanding balance"):
            await service.apply(db, apply(note, paid, "5"), editor)

    async def test_other_patient(self, db, service, invoice_service, first_invoice, other_patient, editor):
        foreign = await invoice_service.create(
            db, invoice_payload(other_patient, [manual("Consultation", "20")]), editor
        )
        note = await service.issue(db, issue(first_invoice, "10"), editor)

        with pytest.raises(BusinessValidationError, match="same patient"):
            await service.apply(db, apply(note, foreign, "5"), editor)

    async def test_history_records_each_spend(self, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)
        await service.apply(db, apply(note, second_invoice, "15"), editor)
        await service.apply(db, apply(note, second_invoice, "5"), editor)

        refreshed = await service.get_by_id(db, note.id)

        assert sorted(entry.action for entry in refreshed.history) == ["applied", "applied", "created"]
        assert {entry.event_metadata["invoiceId"] for entry in refreshed.history if entry.action == "applied"} == {
            str(second_invoice.id)
        }
        assert sorted(a.applied_amount for a in refreshed.applications) == [Decimal("5.00"), Decimal("15.00")]


# ============================================================
# Release and void
# ============================================================


class TestReleaseAndVoid:

    async def test_release_gives_credit_back(self, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)
        result = await service.apply(db, apply(note, second_invoice, "40"), editor)

        await service.release_application(db, result.application.id, editor)

        refreshed = await service.get_by_id(db, note.id)
        assert refreshed.remaining_amount == Decimal("40.00")
        assert refreshed.status == CreditNoteStatus.OPEN.value
        assert refreshed.applications == []
        assert "released" in {entry.action for entry in refreshed.history}

        invoice = await reload(db, Invoice, second_invoice.id)
        assert invoice.credit_applied_amount == Decimal("0.00")
        assert invoice.status == InvoiceStatus.UNPAID.value

    async def test_release_unknown_application(self, db, service, editor):
        with pytest.raises(NotFoundError, match="Credit application"):
            await service.release_application(db, uuid.uuid4(), editor)

    async def test_void_unspent_note(self, db, service, first_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)

        voided = await service.void(db, note.id, editor, reason="Issued by mistake")

        assert voided.remaining_amount == Decimal("0.00")
        assert voided.status == CreditNoteStatus.CLOSED.value
        assert voided.voided_at is not None
        assert voided.voided_by == editor.id
        assert (await reload(db, Invoice, first_invoice.id)).refunded_amount == Decimal("0.00")

        # Voided notes are not spendable and their refund is available again
        again = await service.issue(db, issue(first_invoice, "85"), editor)
        assert again.type == CreditNoteType.FULL.value

    async def test_void_twice(self, db, service, first_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)
        note_id = note.id
        await service.void(db, note_id, editor)

        with pytest.raises(BusinessValidationError, match="already voided"):
            await service.void(db, note_id, editor)

    async def test_void_refused_while_applied(self, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)
        result = await service.apply(db, apply(note, second_invoice, "10"), editor)
        note_id, application_id = note.id, result.application.id

        with pytest.raises(BusinessValidationError, match="release them before voiding"):
            await service.void(db, note_id, editor)

        await service.release_application(db, application_id, editor)
        voided = await service.void(db, note_id, editor)
        assert voided.status == CreditNoteStatus.CLOSED.value

    async def test_void_requires_access(self, db, service, first_invoice, editor, other_editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)

        with pytest.raises(AuthorizationError):
            await service.void(db, note.id, other_editor)


# ============================================================
# Concurrent spends
# ============================================================


class TestConcurrentSpend:

    async def test_stale_balance_is_refused(self, engine, db, service, first_invoice, second_invoice, editor):
        note = await service.issue(db, issue(first_invoice, "40"), editor)
        note_id, target_id = note.id, second_invoice.id
        credit_note = await service.lock_credit_note(db, note_id)
        invoice = await service.lock_invoice(db, target_id)

        async with AsyncSession(bind=engine, expire_on_commit=False, autoflush=False) as other:
            await service.apply(
                other,
                CreditNoteApply(credit_note_id=note_id, invoice_id=target_id, amount=Decimal("30")),
                editor,
            )

        with pytest.raises(ConflictError, match="changed by another request"):
            await service.spend(db, credit_note, invoice, Decimal("30"), editor)
        await db.rollback()

        assert (await reload(db, CreditNote, note_id)).remaining_amount == Decimal("10.00")

    async def test_parallel_spends_never_overdraw(
        self, engine, db, service, invoice_service, first_invoice, second_invoice, patient, editor
    ):
        note = await service.issue(db, issue(first_invoice, "40"), editor)
        third = await invoice_service.create(db, invoice_payload(patient, [manual("Consultation", "60")]), editor)
        note_id = note.id
        targets = [second_invoice.id, third.id]

        async def spend_on(invoice_id):
            async with AsyncSession(bind=engine, expire_on_commit=False, autoflush=False) as session:
                result = await service.apply(
                    session,
                    CreditNoteApply(credit_note_id=note_id, invoice_id=invoice_id, amount=Decimal("30")),
                    editor,
                )
                return result.application.applied_amount

        outcomes = await asyncio.gather(*(spend_on(target) for target in targets), return_exceptions=True)

        succeeded = [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]
        assert len(succeeded) <= 1

        refreshed = await reload(db, CreditNote, note_id)
        applications = (
            await db.execute(
                select(CreditNoteApplication)
                .where(CreditNoteApplication.credit_note_id == note_id)
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
        applied = sum((a.applied_amount for a in applications), Decimal("0.00"))
        assert refreshed.remaining_amount >= 0
        assert applied == Decimal("30.00") * len(succeeded)
        assert refreshed.remaining_amount == Decimal("40.00") - applied


# ============================================================
# Reads
# ============================================================


class TestReadCreditNotes:

    async def test_get_by_id_not_found(self, db, service):
        with pytest.raises(NotFoundError):
            await service.get_by_id(db, uuid.uuid4())

    async def test_get_all_filters(self, db, service, first_invoice, second_invoice, editor):
        first = await service.issue(db, issue(first_invoice, "40"), editor)
        await service.issue(db, issue(second_invoice, "10"), editor)
        await service.apply(db, apply(first, second_invoice, "40"), editor)

        by_invoice = await service.get_all(db, invoice_id=first_invoice.id)
        closed = await service.get_all(db, status_filter=CreditNoteStatus.CLOSED, include_history=True)
        everything = await service.get_all(db, patient_id=first_invoice.patient_id)

        assert [cn.credit_no for cn in by_invoice.items] == ["CN-000001"]
        assert by_invoice.items[0].history is None
        assert [cn.credit_no for cn in closed.items] == ["CN-000001"]
        assert closed.items[0].history is not None
        assert everything.total == 2

    async def test_available_for_patient(self, db, service, first_invoice, second_invoice, other_patient, editor):
        spent = await service.issue(db, issue(first_invoice, "40"), editor)
        voided = await service.issue(db, issue(first_invoice, "5"), editor)
        open_note = await service.issue(db, issue(second_invoice, "10"), editor)
        await service.apply(db, apply(spent, second_invoice, "40"), editor)
        await service.void(db, voided.id, editor)

        available = await service.get_available_for_patient(db, first_invoice.patient_id)

        assert [cn.id for cn in available] == [open_note.id]
        assert await service.get_available_for_patient(db, other_patient.id) == []

    async def test_get_by_invoice(self, db, service, first_invoice, editor):
        await service.issue(db, issue(first_invoice, "10"), editor)
        await service.issue(db, issue(first_invoice, "20"), editor)

        notes = await service.get_by_invoice(db, first_invoice.id)

        assert sorted(cn.total_amount for cn in notes) == [Decimal("10.00"), Decimal("20.00")]


async def test_remaining_matches_applications(db, service, first_invoice, second_invoice, editor):
    """remaining = total - sum(applications) for every note that is not voided."""
    note = await service.issue(db, issue(first_invoice, "50"), editor)
    await service.apply(db, apply(note, second_invoice, "12.34"), editor)
    await service.apply(db, apply(note, second_invoice, "7.66"), editor)

    applied = (
        await db.execute(
            select(func.sum(CreditNoteApplication.applied_amount))
            .where(CreditNoteApplication.credit_note_id == note.id)
        )
    ).scalar_one()
    refreshed = await reload(db, CreditNote, note.id)

    assert Decimal(str(applied)).quantize(Decimal("0.01")) == Decimal("20.00")
    assert refreshed.remaining_amount == Decimal("30.00")
