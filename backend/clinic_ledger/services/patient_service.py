"""
Service: patient lookups
Project: Clinic Ledger
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.exceptions import NotFoundError
from clinic_ledger.models.patient import Patient


class PatientService:

    async def find_by_id(self, db: AsyncSession, patient_id: uuid.UUID) -> Optional[Patient]:
        result = await db.execute(select(Patient).where(Patient.id == patient_id))
        return result.scalar_one_or_none()

    async def get_by_id(self, db: AsyncSession, patient_id: uuid.UUID) -> Patient:
        """
        Raises:
            NotFoundError: If the patient does not exist
        """
        patient = await self.find_by_id(db, patient_id)
        if not patient:
            raise NotFoundError(f"Patient {patient_id} not found")
        return patient
