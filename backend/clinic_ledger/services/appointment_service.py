"""
Service: appointment linkage
Project: Clinic Ledger

An invoice may settle one scheduled appointment of the same patient. The
appointment is completed when the invoice is saved and goes back to
scheduled if the invoice is deleted or moved to another appointment.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.exceptions import BusinessValidationError, NotFoundError
from clinic_ledger.models.patient import Appointment
from clinic_ledger.schemas.invoice import AppointmentStatus

logger = logging.getLogger(__name__)


class AppointmentService:

    async def find_by_id(
        self,
        db: AsyncSession,
        appointment_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Appointment]:
        stmt = select(Appointment).where(Appointment.id == appointment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_by_invoice(self, db: AsyncSession, invoice_id: uuid.UUID) -> Optional[Appointment]:
        result = await db.execute(
            select(Appointment)
            .where(Appointment.invoice_id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_linkable(
        self,
        db: AsyncSession,
        appointment_id: uuid.UUID,
        patient_id: uuid.UUID,
        invoice_id: Optional[uuid.UUID] = None,
    ) -> Appointment:
        """
        Load an appointment that an invoice of `patient_id` may settle.

        `invoice_id` is the invoice being edited: an appointment already
        linked to it stays acceptable.

        Raises:
            NotFoundError: If the appointment does not exist
            BusinessValidationError: Wrong patient, not scheduled or already invoiced
        """
        appointment = await self.find_by_id(db, appointment_id, for_update=True)
        if not appointment:
            raise NotFoundError(f"Appointment {appointment_id} not found")

        if appointment.patient_id != patient_id:
            raise BusinessValidationError("Appointment does not belong to this patient")

        if invoice_id is not None and appointment.invoice_id == invoice_id:
            return appointment

        if appointment.invoice_id is not None:
            raise BusinessValidationError("Appointment already has an invoice")

        if appointment.status != AppointmentStatus.SCHEDULED.value:
            raise BusinessValidationError(
                f"Only scheduled appointments can be invoiced (current status: {appointment.status})"
            )
        return appointment

    def link(self, appointment: Appointment, invoice_id: uuid.UUID) -> None:
        appointment.invoice_id = invoice_id
        self.set_status(appointment, AppointmentStatus.COMPLETED)

    def unlink(self, appointment: Appointment) -> None:
        appointment.invoice_id = None
        self.set_status(appointment, AppointmentStatus.SCHEDULED)

    def set_status(self, appointment: Appointment, status: AppointmentStatus) -> None:
        if appointment.status != status.value:
            logger.info(
                "Appointment %s: %s -> %s", appointment.id, appointment.status, status.value
            )
        appointment.status = status.value
