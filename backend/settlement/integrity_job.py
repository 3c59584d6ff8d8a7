"""
LEDGER INTEGRITY JOB

Out-of-band drift detection between bookings and their ledgers.

For each booking:
1. Sum credit ledger entries and compare with stored receivedAmount
2. For bookings without debits, compare balanceAmount with
   max(0, discountedAmount - receivedAmount)
3. Check booking invariants
Then flag receipts / disbursements whose ledger entry is missing.

Reports mismatches but does NOT auto-fix.

Usage:
    job = LedgerIntegrityJob(db)
    report = await job.run()
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from settlement.documents import Collections, to_object_id
from settlement.financial_precision import to_decimal, round_financial, to_float, ZERO
from settlement.invariant_validator import collect_booking_violations
from settlement.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class LedgerIntegrityJob:
    """
    Compares stored booking totals against values recomputed from the ledger.
    """

    # Tolerance for floating point comparison (0.01 = 1 paisa)
    TOLERANCE = Decimal('0.01')

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.store = LedgerStore(db)
        self.mismatches: List[Dict[str, Any]] = []
        self.orphans: List[Dict[str, Any]] = []
        self.checked_count = 0

    async def run(self, booking_ids: Optional[List[Any]] = None) -> Dict[str, Any]:
        """
        Run the integrity check, over all bookings or the given ids.

        Returns:
            Report with check results and any mismatches found
        """
        start_time = datetime.utcnow()
        self.mismatches = []
        self.orphans = []
        self.checked_count = 0

        logger.info("[INTEGRITY_JOB] Starting ledger integrity check...")

        query: Dict[str, Any] = {}
        if booking_ids:
            query["_id"] = {"$in": [to_object_id(b, "booking") for b in booking_ids]}

        async for booking in self.db[Collections.BOOKINGS].find(query):
            await self._check_booking(booking)

        await self._find_orphans(query.get("_id"))

        end_time = datetime.utcnow()
        duration_ms = (end_time - start_time).total_seconds() * 1000

        report = {
            "job_name": "LedgerIntegrityJob",
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round(duration_ms, 2),
            "bookings_checked": self.checked_count,
            "mismatches_found": len(self.mismatches),
            "mismatches": self.mismatches,
            "orphans_found": len(self.orphans),
            "orphans": self.orphans,
        }

        if self.mismatches or self.orphans:
            logger.warning(
                f"[INTEGRITY_JOB] Completed with {len(self.mismatches)} mismatched bookings and "
                f"{len(self.orphans)} orphaned records out of {self.checked_count} bookings"
            )
        else:
            logger.info(
                f"[INTEGRITY_JOB] Completed successfully. "
                f"All {self.checked_count} bookings verified."
            )

        return report

    async def _check_booking(self, booking: Dict[str, Any]):
        self.checked_count += 1
        discrepancies = []

        credits = await self.store.sum_credits(booking["_id"])
        debits = await self.store.sum_debits(booking["_id"])
        received = round_financial(booking.get("receivedAmount"))

        if abs(received - credits) > self.TOLERANCE:
            discrepancies.append(self._discrepancy("receivedAmount", received, credits))

        if debits == ZERO:
            expected_balance = round_financial(max(ZERO, to_decimal(booking.get("discountedAmount")) - received))
            stored_balance = round_financial(booking.get("balanceAmount"))
            if abs(stored_balance - expected_balance) > self.TOLERANCE:
                discrepancies.append(self._discrepancy("balanceAmount", stored_balance, expected_balance))

        violations = collect_booking_violations(booking, after_credit=False)

        if discrepancies or violations:
            self.mismatches.append({
                "booking_id": str(booking["_id"]),
                "bookingNumber": booking.get("bookingNumber"),
                "checked_at": datetime.utcnow().isoformat(),
                "discrepancies": discrepancies,
                "invariant_violations": violations,
            })
            logger.warning(
                f"[INTEGRITY_JOB] MISMATCH found: booking={booking['_id']}, "
                f"discrepancies={len(discrepancies)}, violations={len(violations)}"
            )
            for d in discrepancies:
                logger.warning(
                    f"  - {d['field']}: stored={d['stored']}, calculated={d['calculated']}, "
                    f"diff={d['difference']}"
                )

    def _discrepancy(self, field: str, stored: Decimal, calculated: Decimal) -> Dict[str, Any]:
        return {
            "field": field,
            "stored": to_float(stored),
            "calculated": to_float(calculated),
            "difference": to_float(stored - calculated),
        }

    async def _find_orphans(self, booking_filter: Optional[Dict[str, Any]]):
        owner_query: Dict[str, Any] = {}
        if booking_filter is not None:
            owner_query["booking"] = booking_filter

        async for receipt in self.db[Collections.RECEIPTS].find(owner_query):
            if not await self._entry_exists(receipt.get("details")):
                self.orphans.append({
                    "kind": "Receipt",
                    "id": str(receipt["_id"]),
                    "booking_id": str(receipt.get("booking")),
                    "ledger_entry": str(receipt.get("details")),
                })

        async for disbursement in self.db[Collections.FINANCE_DISBURSEMENTS].find(owner_query):
            if not await self._entry_exists(disbursement.get("ledgerEntry")):
                self.orphans.append({
                    "kind": "FinanceDisbursement",
                    "id": str(disbursement["_id"]),
                    "booking_id": str(disbursement.get("booking")),
                    "ledger_entry": str(disbursement.get("ledgerEntry")),
                })

        for orphan in self.orphans:
            logger.warning(f"[INTEGRITY_JOB] ORPHAN {orphan['kind']} {orphan['id']} (booking {orphan['booking_id']})")

    async def _entry_exists(self, entry_id) -> bool:
        if entry_id is None:
            return False
        return await self.db[Collections.LEDGERS].find_one({"_id": entry_id}) is not None
