"""
LEDGER STORE

Append-only persistence of booking ledger entries.

Entries are never deleted through this store. Corrections rewrite the
corrected fields in place and bump `revision`, and the audit log keeps
the previous values.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from settlement.documents import Collections
from settlement.exceptions import NotFoundError, ConcurrentModificationError
from settlement.financial_precision import to_decimal, to_float, round_financial, ZERO
from settlement.payment_modes import PaymentInstrument

logger = logging.getLogger(__name__)


class LedgerEntryType(str, Enum):
    BOOKING_PAYMENT = "BOOKING_PAYMENT"
    FINANCE_DISBURSEMENT = "FINANCE_DISBURSEMENT"
    DEBIT_ENTRY = "DEBIT_ENTRY"


class SourceKind(str, Enum):
    RECEIPT = "Receipt"
    FINANCE_DISBURSEMENT = "Finance Disbursement"


SOURCE_MODELS = {
    SourceKind.RECEIPT: "Receipt",
    SourceKind.FINANCE_DISBURSEMENT: "FinanceDisbursement",
}

SOURCE_COLLECTIONS = {
    SourceKind.RECEIPT.value: Collections.RECEIPTS,
    SourceKind.FINANCE_DISBURSEMENT.value: Collections.FINANCE_DISBURSEMENTS,
}


def build_credit_entry(
    booking_id: ObjectId,
    entry_type: LedgerEntryType,
    instrument: PaymentInstrument,
    amount: Decimal,
    source_kind: SourceKind,
    source_id: ObjectId,
    received_by: Optional[str],
    transaction_reference: Optional[str] = None,
    remark: Optional[str] = None,
    receipt_date: Optional[datetime] = None
) -> Dict[str, Any]:
    now = datetime.utcnow()
    entry = {
        "_id": ObjectId(),
        "booking": booking_id,
        "type": entry_type.value,
        "amount": to_float(amount),
        "isDebit": False,
        "transactionReference": transaction_reference,
        "remark": remark,
        "source": {
            "kind": source_kind.value,
            "refId": source_id,
            "refModel": SOURCE_MODELS[source_kind],
        },
        "receivedBy": received_by,
        "receiptDate": receipt_date or now,
        "revision": 0,
        "createdAt": now,
        "updatedAt": now,
    }
    entry.update(instrument.ledger_fields())
    return entry


def build_debit_entry(
    booking_id: ObjectId,
    amount: Decimal,
    debit_reason: str,
    received_by: Optional[str],
    remark: Optional[str] = None
) -> Dict[str, Any]:
    now = datetime.utcnow()
    return {
        "_id": ObjectId(),
        "booking": booking_id,
        "type": LedgerEntryType.DEBIT_ENTRY.value,
        "amount": to_float(amount),
        "isDebit": True,
        "debitReason": debit_reason,
        "remark": remark,
        "receivedBy": received_by,
        "receiptDate": now,
        "revision": 0,
        "createdAt": now,
        "updatedAt": now,
    }


class LedgerStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[Collections.LEDGERS]

    async def insert_entry(self, entry: Dict[str, Any], session=None) -> Dict[str, Any]:
        await self.collection.insert_one(entry, session=session)
        logger.info(
            f"[LEDGER] {entry['type']} {entry['amount']} recorded for booking {entry['booking']} "
            f"(entry {entry['_id']})"
        )
        return entry

    async def remove_failed_insert(self, entry_id: ObjectId):
        """Compensation for an insert whose operation failed in degraded mode."""
        await self.collection.delete_one({"_id": entry_id})
        logger.warning(f"[LEDGER] Removed entry {entry_id} of a failed operation")

    async def get_entry(self, entry_id: ObjectId, session=None) -> Dict[str, Any]:
        entry = await self.collection.find_one({"_id": entry_id}, session=session)
        if not entry:
            raise NotFoundError(
                f"Ledger entry {entry_id} not found",
                details={"entry_id": str(entry_id)}
            )
        return entry

    async def list_entries(
        self,
        booking_id: ObjectId,
        is_debit: Optional[bool] = None,
        session=None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"booking": booking_id}
        if is_debit is not None:
            query["isDebit"] = is_debit
        return await self.collection.find(query, session=session).sort("createdAt", 1).to_list(length=None)

    async def apply_correction(
        self,
        entry: Dict[str, Any],
        changes: Dict[str, Any],
        actor: Optional[str],
        session=None
    ) -> Dict[str, Any]:
        """
        Rewrite corrected fields, guarded by the entry's current revision.
        """
        revision = entry.get("revision", 0)
        query: Dict[str, Any] = {"_id": entry["_id"]}
        query["revision"] = revision if "revision" in entry else {"$exists": False}

        updated = await self.collection.find_one_and_update(
            query,
            {
                "$set": {**changes, "updatedBy": actor, "updatedAt": datetime.utcnow()},
                "$inc": {"revision": 1},
            },
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if updated is None:
            raise ConcurrentModificationError(entry["booking"], revision)

        logger.info(f"[LEDGER] Entry {entry['_id']} corrected to revision {updated['revision']}: {sorted(changes)}")
        return updated

    async def sum_credits(self, booking_id: ObjectId, session=None) -> Decimal:
        """Sum of credit entries. Used by integrity checks and summaries only."""
        total = ZERO
        async for entry in self.collection.find({"booking": booking_id, "isDebit": False}, session=session):
            total += to_decimal(entry.get("amount"))
        return round_financial(total)

    async def sum_debits(self, booking_id: ObjectId, session=None) -> Decimal:
        total = ZERO
        async for entry in self.collection.find({"booking": booking_id, "isDebit": True}, session=session):
            total += to_decimal(entry.get("amount"))
        return round_financial(total)
