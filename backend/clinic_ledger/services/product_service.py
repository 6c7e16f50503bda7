"""
Service: catalog products and stock
Project: Clinic Ledger

Stock only moves through adjust_stock(), a single conditional UPDATE, so
concurrent invoices can never drive a product below zero.
"""

import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.exceptions import BusinessValidationError, NotFoundError
from clinic_ledger.models.patient import Product

logger = logging.getLogger(__name__)


class ProductService:

    async def find_by_id(self, db: AsyncSession, product_id: uuid.UUID) -> Optional[Product]:
        result = await db.execute(select(Product).where(Product.id == product_id))
        return result.scalar_one_or_none()

    async def find_many_for_update(
        self,
        db: AsyncSession,
        product_ids: Iterable[uuid.UUID],
    ) -> dict[uuid.UUID, Product]:
        """
        Lock and load products, always in the same (id) order to avoid deadlocks.

        Returns fresh rows: attributes cached in the session are overwritten.
        """
        ids = sorted(set(product_ids), key=str)
        if not ids:
            return {}
        result = await db.execute(
            select(Product)
            .where(Product.id.in_(ids))
            .order_by(Product.id)
            .with_for_update(of=(Product,))
            .execution_options(populate_existing=True)
        )
        return {p.id: p for p in result.scalars().all()}

    async def adjust_stock(self, db: AsyncSession, product_id: uuid.UUID, delta: int) -> None:
        """
        Add `delta` (negative to sell) to the product's stock.

        Args:
            db: Database session
            product_id: Product UUID
            delta: Stock change, negative for a sale, positive for a restock

        Raises:
            NotFoundError: If the product does not exist
            BusinessValidationError: If the stock would drop below zero
        """
        if delta == 0:
            return

        result = await db.execute(
            update(Product)
            .where(
                Product.id == product_id,
                Product.stock_quantity + delta >= 0,
            )
            .values(stock_quantity=Product.stock_quantity + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.debug("Stock of product %s adjusted by %s", product_id, delta)
            return

        product = (
            await db.execute(
                select(Product)
                .where(Product.id == product_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        raise BusinessValidationError(
            f"Insufficient stock for {product.name}. Available: {product.stock_quantity}"
        )
