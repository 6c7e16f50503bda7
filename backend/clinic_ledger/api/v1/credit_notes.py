"""
FastAPI router for credit notes
Project: Clinic Ledger

Endpoints to issue, spend, release, void and list credit notes.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.database import get_db
from clinic_ledger.core.deps import CurrentActor, InvoiceEditor
from clinic_ledger.schemas.credit_note import (
    CreditApplicationResult,
    CreditNoteApply,
    CreditNoteIssue,
    CreditNoteList,
    CreditNoteRead,
    CreditNoteStatus,
    CreditNoteVoid,
)
from clinic_ledger.services.credit_note_service import CreditNoteService

logger = logging.getLogger(__name__)

credit_note_service = CreditNoteService()

router = APIRouter(
    prefix="/credit-notes",
    tags=["Credit Notes"],
)

# Patient-scoped lookups used by the invoice form
patients_router = APIRouter(
    prefix="/patients",
    tags=["Credit Notes"],
)


@router.get(
    "",
    name="credit_notes_list",
    summary="List credit notes",
    response_model=CreditNoteList,
)
async def get_credit_notes(
    actor: CurrentActor,
    patient_id: Optional[uuid.UUID] = Query(None, description="Filter by patient"),
    invoice_id: Optional[uuid.UUID] = Query(None, description="Filter by originating invoice"),
    status_filter: Optional[CreditNoteStatus] = Query(
        None,
        alias="status",
        description="Filter by status (open, partial, closed)",
    ),
    include_history: bool = Query(False, description="Include the audit trail"),
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> CreditNoteList:
    return await credit_note_service.get_all(
        db=db,
        patient_id=patient_id,
        invoice_id=invoice_id,
        status_filter=status_filter,
        include_history=include_history,
        page=page,
        per_page=per_page,
    )


@router.post(
    "",
    name="credit_notes_issue",
    summary="Issue credit note",
    description="Refunds part or all of an invoice's refundable balance as a credit note.",
    response_model=CreditNoteRead,
    status_code=status.HTTP_201_CREATED,
)
async def issue_credit_note(
    data: CreditNoteIssue,
    actor: InvoiceEditor,
    db: AsyncSession = Depends(get_db),
) -> CreditNoteRead:
    credit_note = await credit_note_service.issue(db, data, actor)
    return CreditNoteRead.model_validate(credit_note)


@router.post(
    "/apply",
    name="credit_notes_apply",
    summary="Apply credit note",
    description="Spends a credit note on an invoice of the same patient.",
    response_model=CreditApplicationResult,
    status_code=status.HTTP_201_CREATED,
)
async def apply_credit_note(
    data: CreditNoteApply,
    actor: InvoiceEditor,
    db: AsyncSession = Depends(get_db),
) -> CreditApplicationResult:
    return await credit_note_service.apply(db, data, actor)


@router.delete(
    "/applications/{application_id}",
    name="credit_notes_release",
    summary="Release credit application",
    description="Cancels one credit application and returns the amount to the credit note.",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def release_credit_application(
    actor: InvoiceEditor,
    application_id: uuid.UUID = Path(..., description="Application UUID"),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await credit_note_service.release_application(db, application_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{credit_note_id}",
    name="credit_notes_detail",
    summary="Credit note detail",
    response_model=CreditNoteRead,
)
async def get_credit_note(
    actor: CurrentActor,
    credit_note_id: uuid.UUID = Path(..., description="Credit note UUID"),
    db: AsyncSession = Depends(get_db),
) -> CreditNoteRead:
    credit_note = await credit_note_service.get_by_id(db, credit_note_id)
    return CreditNoteRead.model_validate(credit_note)


@router.post(
    "/{credit_note_id}/void",
    name="credit_notes_void",
    summary="Void credit note",
    description="Cancels an unspent credit note and lowers the invoice's refunded amount.",
    response_model=CreditNoteRead,
)
async def void_credit_note(
    actor: InvoiceEditor,
    credit_note_id: uuid.UUID = Path(..., description="Credit note UUID"),
    data: Optional[CreditNoteVoid] = None,
    db: AsyncSession = Depends(get_db),
) -> CreditNoteRead:
    reason = data.reason if data else None
    credit_note = await credit_note_service.void(db, credit_note_id, actor, reason=reason)
    return CreditNoteRead.model_validate(credit_note)


@patients_router.get(
    "/{patient_id}/credit-notes/available",
    name="credit_notes_available",
    summary="Spendable credit notes of a patient",
    response_model=list[CreditNoteRead],
)
async def get_available_credit_notes(
    actor: CurrentActor,
    patient_id: uuid.UUID = Path(..., description="Patient UUID"),
    db: AsyncSession = Depends(get_db),
) -> list[CreditNoteRead]:
    credit_notes = await credit_note_service.get_available_for_patient(db, patient_id)
    return [CreditNoteRead.model_validate(cn) for cn in credit_notes]
