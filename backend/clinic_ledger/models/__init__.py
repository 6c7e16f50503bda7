"""
SQLAlchemy database models
Project: Clinic Ledger

Central import of every model so that Base.metadata knows all tables.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


from clinic_ledger.models.patient import Patient, Product, Appointment
from clinic_ledger.models.invoice import Invoice, InvoiceItem
from clinic_ledger.models.credit_note import CreditNote, CreditNoteApplication, CreditNoteHistory
from clinic_ledger.models.counter import Counter
from clinic_ledger.models.notification import Notification

__all__ = [
    "Base",
    "Patient",
    "Product",
    "Appointment",
    "Invoice",
    "InvoiceItem",
    "CreditNote",
    "CreditNoteApplication",
    "CreditNoteHistory",
    "Counter",
    "Notification",
]
