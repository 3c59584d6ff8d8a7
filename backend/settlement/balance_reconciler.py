"""
BALANCE RECONCILER

Maintains receivedAmount / balanceAmount on a booking after every ledger
mutation.

Rules:
1. Credit:  receivedAmount += delta, balanceAmount = max(0, discounted - received)
2. Debit:   balanceAmount += delta, receivedAmount unchanged
3. The remaining allowance for a new credit is recomputed from the stored
   booking at call time (discountedAmount - receivedAmount)

The ledger is never summed here. Drift between the stored totals and the
ledger is reported out-of-band by LedgerIntegrityJob.
"""

from dataclasses import dataclass
from decimal import Decimal
from datetime import datetime
from typing import Any, Dict
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from settlement.documents import Collections
from settlement.exceptions import ConcurrentModificationError, BookingNotFoundError
from settlement.financial_precision import (
    to_decimal, round_financial, safe_subtract, to_float, Numeric, ZERO
)
from settlement.invariant_validator import validate_booking_invariants

logger = logging.getLogger(__name__)

VERSION_FIELD = "ledgerVersion"


@dataclass(frozen=True)
class BalanceState:
    discounted_amount: Decimal
    received_amount: Decimal
    balance_amount: Decimal

    @classmethod
    def from_booking(cls, booking: Dict[str, Any]) -> "BalanceState":
        return cls(
            discounted_amount=to_decimal(booking.get("discountedAmount")),
            received_amount=to_decimal(booking.get("receivedAmount")),
            balance_amount=to_decimal(booking.get("balanceAmount")),
        )

    def as_fields(self) -> Dict[str, float]:
        return {
            "receivedAmount": to_float(self.received_amount),
            "balanceAmount": to_float(self.balance_amount),
        }


def apply_credit(state: BalanceState, delta: Numeric) -> BalanceState:
    received = round_financial(state.received_amount + to_decimal(delta))
    return BalanceState(
        discounted_amount=state.discounted_amount,
        received_amount=received,
        balance_amount=round_financial(max(ZERO, state.discounted_amount - received)),
    )


def apply_debit(state: BalanceState, delta: Numeric) -> BalanceState:
    delta = to_decimal(delta)
    balance = state.balance_amount + delta
    if delta < ZERO:
        balance = max(ZERO, balance)
    return BalanceState(
        discounted_amount=state.discounted_amount,
        received_amount=state.received_amount,
        balance_amount=round_financial(balance),
    )


def current_balance(booking: Dict[str, Any]) -> Decimal:
    """Amount still creditable: discountedAmount - receivedAmount"""
    return round_financial(safe_subtract(booking.get("discountedAmount"), booking.get("receivedAmount")))


def version_filter(booking: Dict[str, Any]) -> Dict[str, Any]:
    version = booking.get(VERSION_FIELD)
    if version is None:
        return {VERSION_FIELD: {"$exists": False}}
    return {VERSION_FIELD: version}


class BookingBalanceReconciler:
    """Applies a ledger delta to the stored booking with an optimistic version check."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def load_booking(self, booking_id, session=None) -> Dict[str, Any]:
        booking = await self.db[Collections.BOOKINGS].find_one({"_id": booking_id}, session=session)
        if not booking:
            raise BookingNotFoundError(booking_id)
        return booking

    async def reconcile(
        self,
        booking: Dict[str, Any],
        delta: Numeric,
        is_debit: bool,
        ledger_entry_id=None,
        receipt_id=None,
        session=None
    ) -> Dict[str, Any]:
        """
        Write the post-mutation balance for `booking`.

        `booking` must be the document the caller validated against; its
        ledgerVersion guards the write. Returns the updated booking.
        """
        state = BalanceState.from_booking(booking)
        new_state = apply_debit(state, delta) if is_debit else apply_credit(state, delta)

        prospective = dict(booking)
        prospective.update(new_state.as_fields())
        validate_booking_invariants(prospective, after_credit=not is_debit)

        update: Dict[str, Any] = {
            "$set": {**new_state.as_fields(), "updatedAt": datetime.utcnow()},
            "$inc": {VERSION_FIELD: 1},
        }
        push: Dict[str, Any] = {}
        if ledger_entry_id is not None:
            push["ledgerEntries"] = ledger_entry_id
        if receipt_id is not None:
            push["receipts"] = receipt_id
        if push:
            update["$push"] = push

        query = {"_id": booking["_id"], **version_filter(booking)}
        updated = await self.db[Collections.BOOKINGS].find_one_and_update(
            query,
            update,
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if updated is None:
            logger.warning(
                f"[RECONCILE] Version check lost for booking {booking['_id']} "
                f"(expected {VERSION_FIELD}={booking.get(VERSION_FIELD)})"
            )
            raise ConcurrentModificationError(booking["_id"], booking.get(VERSION_FIELD))

        logger.info(
            f"[RECONCILE] Booking {booking['_id']}: {'debit' if is_debit else 'credit'} {to_float(delta)} -> "
            f"received={updated.get('receivedAmount')}, balance={updated.get('balanceAmount')}"
        )
        return updated
