"""
Service: inventory adjustment for invoices
Project: Clinic Ledger

An invoice allocates catalog products: {product_id: quantity}. Creating,
editing and deleting an invoice all reduce to moving from a previous
allocation to a new one:

    create: {}       -> lines
    update: old items -> new lines
    delete: old items -> {}

Only the net difference per product touches stock, so an edit never sells
or restocks the same unit twice.
"""

import logging
import uuid
from typing import Iterable, Mapping, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.exceptions import BusinessValidationError
from clinic_ledger.models.patient import Product
from clinic_ledger.services.product_service import ProductService

logger = logging.getLogger(__name__)

Allocation = dict[uuid.UUID, int]


def build_allocation(lines: Iterable[Tuple[uuid.UUID, int]]) -> Allocation:
    """Sum quantities per product. Lines without a product are skipped."""
    allocation: Allocation = {}
    for product_id, quantity in lines:
        if product_id is None:
            continue
        allocation[product_id] = allocation.get(product_id, 0) + quantity
    return allocation


def compute_stock_deltas(previous: Mapping[uuid.UUID, int], desired: Mapping[uuid.UUID, int]) -> Allocation:
    """
    Units to take out of stock per product (negative means give back).

    Products whose allocation did not change are left out.
    """
    deltas: Allocation = {}
    for product_id in set(previous) | set(desired):
        delta = desired.get(product_id, 0) - previous.get(product_id, 0)
        if delta != 0:
            deltas[product_id] = delta
    return deltas


class InventoryService:
    """Checks and applies stock movements caused by invoice lines."""

    def __init__(self, product_service: ProductService = None) -> None:
        self.product_service = product_service or ProductService()

    def check_availability(
        self,
        products: Mapping[uuid.UUID, Product],
        lines: Iterable[Tuple[uuid.UUID, int]],
        previous: Mapping[uuid.UUID, int],
    ) -> None:
        """
        Walk the lines in order and make sure each fits in what is left.

        Capacity for a product is its current stock plus what the invoice
        already held before the edit, minus what earlier lines of the same
        invoice took.

        Raises:
            BusinessValidationError: "Insufficient stock for X. Available: N"
        """
        reserved: Allocation = {}
        for product_id, quantity in lines:
            product = products[product_id]
            available = (
                product.stock_quantity
                + previous.get(product_id, 0)
                - reserved.get(product_id, 0)
            )
            if quantity > available:
                raise BusinessValidationError(
                    f"Insufficient stock for {product.name}. Available: {max(available, 0)}"
                )
            reserved[product_id] = reserved.get(product_id, 0) + quantity

    async def apply(
        self,
        db: AsyncSession,
        previous: Mapping[uuid.UUID, int],
        desired: Mapping[uuid.UUID, int],
    ) -> Allocation:
        """
        Move stock from the `previous` allocation to the `desired` one.

        Returns:
            The deltas that were applied
        """
        deltas = compute_stock_deltas(previous, desired)
        for product_id in sorted(deltas, key=str):
            await self.product_service.adjust_stock(db, product_id, -deltas[product_id])
        if deltas:
            logger.debug("Stock deltas applied: %s", deltas)
        return deltas

    async def restock(self, db: AsyncSession, previous: Mapping[uuid.UUID, int]) -> Allocation:
        return await self.apply(db, previous, {})
