"""
ATOMIC DOCUMENT NUMBERING

Provides:
1. Global named counters ({_id: name, seq}) advanced with $inc + upsert
2. Formatted document numbers (RCPT-000001)
3. Collision retry against the target collection
"""

import asyncio
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from settlement.documents import Collections
from settlement.exceptions import ConflictError

logger = logging.getLogger(__name__)

RECEIPT_COUNTER = "receiptNumber"
RECEIPT_PREFIX = "RCPT"


class SequenceCollisionError(ConflictError):
    """Raised when sequence collision occurs after max retries"""
    pass


class AtomicCounter:
    """
    Named counters shared by every booking.

    find_one_and_update with $inc is atomic on a single document, so two
    callers never receive the same value.
    """

    MAX_RETRIES = 5
    RETRY_DELAY_MS = 50

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def next_value(self, name: str, session=None) -> int:
        result = await self.db[Collections.COUNTERS].find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session
        )
        return result["seq"]

    async def generate_document_number(
        self,
        name: str,
        prefix: str,
        collection: str,
        field: str,
        width: int = 6,
        session=None
    ) -> str:
        """
        Next formatted number that is not already used in collection.field.

        Raises:
            SequenceCollisionError: If max retries exceeded
        """
        for attempt in range(self.MAX_RETRIES):
            sequence = await self.next_value(name, session)
            number = f"{prefix}-{sequence:0{width}d}"

            existing = await self.db[collection].find_one({field: number}, session=session)
            if not existing:
                logger.info(f"[NUMBERING] Generated {field}: {number}")
                return number

            logger.warning(f"[NUMBERING] Collision on {number}, retry {attempt + 1}")
            await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)

        raise SequenceCollisionError(
            f"Failed to generate unique {field} after {self.MAX_RETRIES} attempts",
            details={"counter": name}
        )

    async def next_receipt_number(self, session=None) -> str:
        return await self.generate_document_number(
            RECEIPT_COUNTER, RECEIPT_PREFIX, Collections.RECEIPTS, "receiptNumber", session=session
        )

    async def create_unique_constraints(self):
        try:
            await self.db[Collections.RECEIPTS].create_index(
                [("receiptNumber", 1)],
                unique=True,
                name="unique_receipt_number"
            )
            logger.info("[NUMBERING] Unique receiptNumber index created")
        except Exception as e:
            logger.warning(f"[NUMBERING] Index creation warning: {str(e)}")
