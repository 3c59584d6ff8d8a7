"""
ATOMIC WRITE SCOPE

Implements:
1. Runtime detection of multi-document transaction support
2. atomic() scope: session + transaction when supported
3. Degraded sequential mode with compensating cleanup
4. Write conflicts (TransientTransactionError) surfaced as a retryable
   TransientConflictError

A standalone mongod cannot run transactions. Detection asks the server
once (hello: replica set name or mongos) and caches the answer. When
transactions are unavailable every scope logs a WARNING and writes run
one after another without a session; callbacks registered through
on_rollback() undo the writes already applied if the body raises.
"""

from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, List, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from settlement.exceptions import TransientConflictError

logger = logging.getLogger(__name__)

MODE_AUTO = "auto"
MODE_DISABLED = "disabled"

RETRYABLE_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")

Compensation = Callable[[], Awaitable[Any]]


class AtomicContext:
    """Handle passed to the body of an atomic scope."""

    def __init__(self, session=None):
        self.session = session
        self._compensations: List[Compensation] = []

    @property
    def transactional(self) -> bool:
        return self.session is not None

    def on_rollback(self, callback: Compensation):
        """Register cleanup for degraded mode. Ignored inside a transaction."""
        if self.session is None:
            self._compensations.append(callback)

    async def compensate(self):
        # Newest write first
        while self._compensations:
            callback = self._compensations.pop()
            try:
                await callback()
            except PyMongoError as e:
                logger.error(f"[TRANSACTION] Compensation step failed: {str(e)}")


class TransactionScope:
    """
    Opens atomic write scopes against one Motor client.

    mode="auto" detects support on first use, mode="disabled" always runs
    in degraded sequential mode.
    """

    def __init__(self, client: AsyncIOMotorClient, mode: str = MODE_AUTO):
        if mode not in (MODE_AUTO, MODE_DISABLED):
            raise ValueError(f"Unknown transaction mode: {mode}")
        self.client = client
        self.mode = mode
        self._supported: Optional[bool] = None

    async def supports_transactions(self) -> bool:
        if self.mode == MODE_DISABLED:
            return False
        if self._supported is not None:
            return self._supported

        try:
            hello = await self.client.admin.command("hello")
            self._supported = bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"
        except PyMongoError as e:
            logger.warning(f"[TRANSACTION] Could not query server topology: {str(e)}")
            self._supported = False

        logger.info(f"[TRANSACTION] Multi-document transactions supported: {self._supported}")
        return self._supported

    @asynccontextmanager
    async def atomic(self, label: str = "settlement"):
        """
        Usage:
            async with scope.atomic("add_receipt") as ctx:
                await db.ledgers.insert_one(doc, session=ctx.session)
        """
        if await self.supports_transactions():
            try:
                async with await self.client.start_session() as session:
                    async with session.start_transaction():
                        yield AtomicContext(session)
            except PyMongoError as e:
                if not any(e.has_error_label(name) for name in RETRYABLE_LABELS):
                    raise
                logger.warning(f"[TRANSACTION] {label}: aborted on a write conflict: {str(e)}")
                raise TransientConflictError(label) from e
            return

        logger.warning(f"[TRANSACTION] {label}: running without a transaction (degraded mode)")
        ctx = AtomicContext()
        try:
            yield ctx
        except BaseException:
            logger.warning(f"[TRANSACTION] {label}: failed, compensating applied writes")
            await ctx.compensate()
            raise
