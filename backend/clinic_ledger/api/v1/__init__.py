"""
API v1 Routes
Project: Clinic Ledger
"""

from fastapi import APIRouter

from clinic_ledger.api.v1 import credit_notes, invoices

api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(invoices.router)
api_v1_router.include_router(credit_notes.router)
api_v1_router.include_router(credit_notes.patients_router)

__all__ = ["api_v1_router"]
