"""
Tests for the document number sequences.
"""

import uuid

import pytest

from clinic_ledger.models.invoice import Invoice
from clinic_ledger.services.sequence_service import (
    CREDIT_NOTE_COUNTER,
    INVOICE_COUNTER,
    SequenceService,
    format_document_number,
    is_valid_document_number,
    parse_document_number,
)


class TestDocumentNumbers:

    def test_format(self):
        assert format_document_number("INV", 7) == "INV-000007"
        assert format_document_number("CN", 45, digits=4) == "CN-0045"

    def test_wider_than_padding(self):
        assert format_document_number("INV", 1234567) == "INV-1234567"

    @pytest.mark.parametrize(
        "number,expected",
        [
            ("INV-000123", True),
            ("INV-123", False),
            ("CN-000123", False),
            ("INV-00012A", False),
            ("", False),
        ],
    )
    def test_is_valid(self, number, expected):
        assert is_valid_document_number("INV", number) is expected

    def test_parse(self):
        assert parse_document_number("CN", "CN-000045") == 45
        assert parse_document_number("CN", "INV-000045") is None


class TestSequenceService:

    async def test_numbers_are_consecutive_per_counter(self, db):
        service = SequenceService()

        assert await service.next_invoice_no(db) == "INV-000001"
        assert await service.next_invoice_no(db) == "INV-000002"
        assert await service.next_credit_no(db) == "CN-000001"
        assert await service.current_value(db, INVOICE_COUNTER) == 2
        assert await service.current_value(db, CREDIT_NOTE_COUNTER) == 1

    async def test_unknown_counter_starts_at_zero(self, db):
        assert await SequenceService().current_value(db, "missing") == 0

    async def test_rollback_leaves_a_gap(self, db):
        """The increment is committed on its own; it is never handed out twice."""
        service = SequenceService()

        await service.next_invoice_no(db)
        await db.rollback()

        assert await service.next_invoice_no(db) == "INV-000002"

    async def test_initialize_counter_catches_up_with_existing_numbers(self, db):
        patient_id = uuid.uuid4()
        for number in ("INV-000004", "INV-000017", "LEGACY-9"):
            db.add(Invoice(id=uuid.uuid4(), invoice_no=number, patient_id=patient_id))
        await db.commit()

        service = SequenceService()
        value = await service.initialize_counter(db, INVOICE_COUNTER, "INV", Invoice.invoice_no)

        assert value == 17
        assert await service.next_invoice_no(db) == "INV-000018"

    async def test_initialize_counter_never_moves_backwards(self, db):
        service = SequenceService()
        await service.reset_counter(db, INVOICE_COUNTER, 50)

        value = await service.initialize_counter(db, INVOICE_COUNTER, "INV", Invoice.invoice_no)

        assert value == 50

    async def test_reset_counter(self, db):
        service = SequenceService()
        await service.next_credit_no(db)

        await service.reset_counter(db, CREDIT_NOTE_COUNTER)

        assert await service.next_credit_no(db) == "CN-000001"
