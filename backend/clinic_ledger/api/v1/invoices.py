"""
FastAPI router for invoices
Project: Clinic Ledger

Endpoints to create, read, edit and delete invoices.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.database import get_db
from clinic_ledger.core.deps import CurrentActor, InvoiceEditor
from clinic_ledger.schemas.invoice import (
    InvoiceCreate,
    InvoiceList,
    InvoiceRead,
    InvoiceStatus,
    InvoiceUpdate,
)
from clinic_ledger.services.invoice_service import InvoiceService

logger = logging.getLogger(__name__)

invoice_service = InvoiceService()

router = APIRouter(
    prefix="/invoices",
    tags=["Invoices"],
)


@router.get(
    "",
    name="invoices_list",
    summary="List invoices",
    description="Paginated invoices. Without VIEW_ALL_INVOICES only your own invoices are listed.",
    response_model=InvoiceList,
    status_code=status.HTTP_200_OK,
)
async def get_invoices(
    actor: CurrentActor,
    patient_id: Optional[uuid.UUID] = Query(None, description="Filter by patient"),
    status_filter: Optional[InvoiceStatus] = Query(
        None,
        alias="status",
        description="Filter by status (unpaid, partial, paid)",
    ),
    page: int = Query(1, ge=1, description="Page number"),
    per_page: int = Query(10, ge=1, le=100, description="Items per page"),
    db: AsyncSession = Depends(get_db),
) -> InvoiceList:
    return await invoice_service.get_all(
        db=db,
        actor=actor,
        patient_id=patient_id,
        status_filter=status_filter,
        page=page,
        per_page=per_page,
    )


@router.post(
    "",
    name="invoices_create",
    summary="Create invoice",
    description=(
        "Creates an invoice: prices the lines, decrements stock, completes the "
        "linked appointment and spends the selected credit notes atomically."
    ),
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_invoice(
    data: InvoiceCreate,
    actor: InvoiceEditor,
    db: AsyncSession = Depends(get_db),
) -> InvoiceRead:
    invoice = await invoice_service.create(db, data, actor)
    return InvoiceRead.model_validate(invoice)


@router.get(
    "/number/{invoice_no}",
    name="invoices_by_number",
    summary="Invoice by number",
    response_model=InvoiceRead,
)
async def get_invoice_by_number(
    actor: CurrentActor,
    invoice_no: str = Path(..., description="Invoice number, e.g. INV-000123"),
    db: AsyncSession = Depends(get_db),
) -> InvoiceRead:
    invoice = await invoice_service.get_by_invoice_no(db, invoice_no, actor)
    return InvoiceRead.model_validate(invoice)


@router.get(
    "/{invoice_id}",
    name="invoices_detail",
    summary="Invoice detail",
    description="Invoice with items, linked appointment and credit note activity.",
    response_model=InvoiceRead,
)
async def get_invoice(
    actor: CurrentActor,
    invoice_id: uuid.UUID = Path(..., description="Invoice UUID"),
    db: AsyncSession = Depends(get_db),
) -> InvoiceRead:
    invoice = await invoice_service.get_by_id(db, invoice_id, actor)
    return InvoiceRead.model_validate(invoice)


@router.put(
    "/{invoice_id}",
    name="invoices_update",
    summary="Edit invoice",
    description=(
        "Replaces items and applied credits. Stock moves by the net difference; "
        "previously applied credits are released before the new ones are applied."
    ),
    response_model=InvoiceRead,
)
async def update_invoice(
    data: InvoiceUpdate,
    actor: InvoiceEditor,
    invoice_id: uuid.UUID = Path(..., description="Invoice UUID"),
    db: AsyncSession = Depends(get_db),
) -> InvoiceRead:
    invoice = await invoice_service.update(db, invoice_id, data, actor)
    return InvoiceRead.model_validate(invoice)


@router.delete(
    "/{invoice_id}",
    name="invoices_delete",
    summary="Delete invoice",
    description=(
        "Restocks products and puts the linked appointment back to scheduled. "
        "Refused while credit notes reference the invoice."
    ),
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_invoice(
    actor: InvoiceEditor,
    invoice_id: uuid.UUID = Path(..., description="Invoice UUID"),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await invoice_service.delete(db, invoice_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
