"""
Unit of Work - transactional boundary for ledger operations
Project: Clinic Ledger

Every multi-row ledger mutation (invoice, items, stock, credit notes,
applications, history, appointment) runs inside one UnitOfWork: it commits
everything on success and rolls everything back on any error.
"""

import logging
from typing import Awaitable, Callable, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_ledger.core.exceptions import ConflictError

logger = logging.getLogger(__name__)

AfterCommitHook = Callable[[], Awaitable[None]]


class UnitOfWork:
    """
    Async context manager around one AsyncSession transaction.

    Usage:
        async with UnitOfWork(db) as uow:
            db.add(invoice)
            uow.after_commit(lambda: notifier.emit(event))

    Hooks registered with after_commit() run only once the transaction is
    committed. A failing hook is logged and never undoes the commit.
    """

    def __init__(self, db: AsyncSession, conflict_message: str = "The operation conflicts with existing data") -> None:
        self.db = db
        self.conflict_message = conflict_message
        self._hooks: List[AfterCommitHook] = []
        self.committed = False

    def after_commit(self, hook: AfterCommitHook) -> None:
        self._hooks.append(hook)

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            await self.db.rollback()
            self._hooks.clear()
            return False

        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            self._hooks.clear()
            logger.error("Integrity error while committing ledger transaction: %s", e)
            raise ConflictError(self.conflict_message) from e

        self.committed = True
        await self._run_hooks()
        return False

    async def _run_hooks(self) -> None:
        hooks, self._hooks = self._hooks, []
        for hook in hooks:
            try:
                await hook()
            except Exception:
                logger.exception("After-commit hook failed")
