"""
API Routes
Project: Clinic Ledger

Aggregation of the versioned routers.
"""

from clinic_ledger.api.v1 import api_v1_router

__all__ = ["api_v1_router"]
