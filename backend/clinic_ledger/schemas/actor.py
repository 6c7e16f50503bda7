"""
Schemas Pydantic - Actor
Project: Clinic Ledger

The authenticated caller and its capability set, as handed to the ledger
by the authorization gate.
"""

from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class Permission(str, Enum):
    """Capabilities granted to a user."""
    CREATE_USER = "CREATE_USER"
    MANAGE_PRODUCTS = "MANAGE_PRODUCTS"
    CREATE_INVOICE = "CREATE_INVOICE"
    MANAGE_CATEGORIES = "MANAGE_CATEGORIES"
    VIEW_ALL_INVOICES = "VIEW_ALL_INVOICES"
    MANAGE_PATIENT = "MANAGE_PATIENT"
    SYSTEM_ADMIN = "SYSTEM_ADMIN"


class Actor(BaseModel):
    """Identity of the user performing a ledger operation."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(..., description="User ID")
    name: Optional[str] = Field(None, description="Display name, used in notifications")
    permissions: frozenset[Permission] = Field(
        default_factory=frozenset,
        description="Capabilities granted to the user",
    )

    def has(self, permission: Permission) -> bool:
        return permission in self.permissions

    @property
    def can_view_all_invoices(self) -> bool:
        return self.has(Permission.VIEW_ALL_INVOICES)

    def can_access(self, created_by: Optional[UUID]) -> bool:
        """Creator of the invoice, or holder of VIEW_ALL_INVOICES."""
        return self.can_view_all_invoices or (
            created_by is not None and created_by == self.id
        )
