"""
Pytest configuration and fixtures for the ledger tests.

Two kinds of fixtures:
- mock_db: AsyncSession mock for pure unit tests of a single collaborator
- db: real AsyncSession on a throwaway SQLite file (aiosqlite), for the
  ledger flows that span several tables
"""

import os

# The application engine is built at import time: keep it off PostgreSQL.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_ENV", "testing")

import uuid
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from clinic_ledger.models import Base
from clinic_ledger.models.patient import Appointment, Patient, Product
from clinic_ledger.schemas.actor import Actor, Permission
from clinic_ledger.schemas.invoice import CatalogLine, DiscountType, InvoiceCreate, ManualLine


# ============================================================
# AsyncSession mock
# ============================================================


@pytest.fixture
def mock_db():
    """AsyncSession mock."""
    db = AsyncMock(spec=AsyncSession)
    db.execute = AsyncMock()
    db.add = MagicMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    db.refresh = AsyncMock()
    db.delete = AsyncMock()
    return db


# ============================================================
# Real database
# ============================================================


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
async def db(engine) -> AsyncGenerator[AsyncSession, None]:
    session = AsyncSession(bind=engine, expire_on_commit=False, autoflush=False)
    try:
        yield session
    finally:
        await session.close()


async def reload(db: AsyncSession, model, pk):
    """Current row state, bypassing the identity map."""
    return await db.get(model, pk, populate_existing=True)


# ============================================================
# Clinic records
# ============================================================


@pytest.fixture
async def patient(db) -> Patient:
    record = Patient(id=uuid.uuid4(), name="Rahim Uddin", phone="01711000000")
    db.add(record)
    await db.commit()
    return record


@pytest.fixture
async def other_patient(db) -> Patient:
    record = Patient(id=uuid.uuid4(), name="Karim Ahmed")
    db.add(record)
    await db.commit()
    return record


@pytest.fixture
async def product_a(db) -> Product:
    record = Product(id=uuid.uuid4(), name="Product A", price=Decimal("50.00"), stock_quantity=10)
    db.add(record)
    await db.commit()
    return record


@pytest.fixture
async def product_b(db) -> Product:
    record = Product(id=uuid.uuid4(), name="Product B", price=Decimal("30.00"), stock_quantity=5)
    db.add(record)
    await db.commit()
    return record


@pytest.fixture
async def appointment(db, patient) -> Appointment:
    record = Appointment(id=uuid.uuid4(), patient_id=patient.id, status="scheduled")
    db.add(record)
    await db.commit()
    return record


# ============================================================
# Actors
# ============================================================


@pytest.fixture
def editor() -> Actor:
    """Receptionist: may create invoices, sees only their own."""
    return Actor(
        id=uuid.uuid4(),
        name="Nadia",
        permissions=frozenset({Permission.CREATE_INVOICE}),
    )


@pytest.fixture
def other_editor() -> Actor:
    return Actor(
        id=uuid.uuid4(),
        name="Tanvir",
        permissions=frozenset({Permission.CREATE_INVOICE}),
    )


@pytest.fixture
def manager() -> Actor:
    """May create invoices and see everyone's."""
    return Actor(
        id=uuid.uuid4(),
        name="Dr. Hossain",
        permissions=frozenset({Permission.CREATE_INVOICE, Permission.VIEW_ALL_INVOICES}),
    )


@pytest.fixture
def viewer() -> Actor:
    return Actor(id=uuid.uuid4(), name="Auditor", permissions=frozenset())


# ============================================================
# Payload builders
# ============================================================


def catalog(product: Product, quantity: int, discount="0", discount_type=DiscountType.FIXED) -> CatalogLine:
    return CatalogLine(
        product_id=product.id,
        quantity=quantity,
        discount=Decimal(discount),
        discount_type=discount_type,
    )


def manual(name: str, unit_price: str, quantity: int = 1) -> ManualLine:
    return ManualLine(product_name=name, unit_price=Decimal(unit_price), quantity=quantity)


def invoice_payload(patient: Patient, items, **kwargs) -> InvoiceCreate:
    return InvoiceCreate(patient_id=patient.id, items=items, **kwargs)
