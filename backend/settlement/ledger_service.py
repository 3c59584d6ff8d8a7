"""
LEDGER SERVICE - RECEIPTS, DEBITS AND ENTRY CORRECTIONS

Implements:
1. add_receipt: ledger credit + Receipt (1:1) + booking balance, atomically
2. add_debit: debit entry raising balanceAmount (no upper bound)
3. update_ledger_entry: corrections applied as a delta, owner kept in sync
4. Ledger reads: entries, debits, summary and running-balance statement

Every mutation validates before writing and runs the reconciler inside the
same atomic scope as the ledger write.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from settlement.balance_reconciler import BookingBalanceReconciler, current_balance
from settlement.document_numbering import AtomicCounter
from settlement.documents import Collections, to_object_id, to_utc_datetime
from settlement.exceptions import (
    AmountExceedsBalanceError, StateError, ValidationError
)
from settlement.financial_precision import (
    to_decimal, to_float, round_financial, validate_positive, safe_add, safe_subtract, ZERO
)
from settlement.ledger_store import (
    LedgerStore, LedgerEntryType, SourceKind, SOURCE_COLLECTIONS,
    build_credit_entry, build_debit_entry
)
from settlement.payment_modes import (
    PaymentMode, LocationResolver, build_instrument, disbursement_instrument, parse_payment_mode
)
from settlement.transaction_scope import TransactionScope, AtomicContext

logger = logging.getLogger(__name__)

RECEIPT_ACTIVE = "active"
RECEIPT_CANCELLED = "cancelled"
DISBURSEMENT_CANCELLED = "CANCELLED"

CORRECTABLE_FIELDS = {
    "amount", "paymentMode", "cashLocation", "bank",
    "transactionReference", "remark", "debitReason"
}
INSTRUMENT_FIELDS = {"paymentMode", "cashLocation", "bank"}


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class LedgerService:
    """
    Receipt issuer, debit posting and ledger corrections for bookings.
    """

    def __init__(self, db: AsyncIOMotorDatabase, scope: TransactionScope, audit=None):
        self.db = db
        self.scope = scope
        self.audit = audit
        self.store = LedgerStore(db)
        self.reconciler = BookingBalanceReconciler(db)
        self.locations = LocationResolver(db)
        self.counter = AtomicCounter(db)

    # =========================================================================
    # RECEIPTS
    # =========================================================================

    async def add_receipt(
        self,
        booking_id: Any,
        payment_mode: Any,
        amount: Any,
        cash_location: Any = None,
        bank: Any = None,
        transaction_reference: Optional[str] = None,
        remark: Optional[str] = None,
        receipt_date: Optional[datetime] = None,
        actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record a customer payment against a booking.

        Returns {"ledger_entry", "receipt", "booking"}.
        Raises AmountExceedsBalanceError when amount > discounted - received.
        """
        amount = validate_positive(amount, "amount")
        booking_oid = to_object_id(booking_id, "booking")
        instrument = build_instrument(payment_mode, cash_location, bank)
        if receipt_date is not None:
            receipt_date = to_utc_datetime(receipt_date, "receiptDate")

        async with self.scope.atomic("add_receipt") as ctx:
            booking = await self.reconciler.load_booking(booking_oid, session=ctx.session)
            self.check_credit_allowance(booking, amount)
            await self.locations.resolve(instrument, session=ctx.session)

            receipt_id = ObjectId()
            entry = build_credit_entry(
                booking_oid,
                LedgerEntryType.BOOKING_PAYMENT,
                instrument,
                amount,
                SourceKind.RECEIPT,
                receipt_id,
                received_by=actor,
                transaction_reference=_clean_text(transaction_reference),
                remark=remark,
                receipt_date=receipt_date
            )
            await self.store.insert_entry(entry, session=ctx.session)
            ctx.on_rollback(lambda: self.store.remove_failed_insert(entry["_id"]))

            receipt = {
                "_id": receipt_id,
                "booking": booking_oid,
                "receiptNumber": await self.counter.next_receipt_number(session=ctx.session),
                "amount": to_float(amount),
                "paymentMode": instrument.mode.value,
                "details": entry["_id"],
                "generatedBy": actor,
                "status": RECEIPT_ACTIVE,
                "createdAt": datetime.utcnow(),
            }
            await self.db[Collections.RECEIPTS].insert_one(receipt, session=ctx.session)
            ctx.on_rollback(lambda: self._remove_failed_receipt(receipt_id))

            updated_booking = await self.reconciler.reconcile(
                booking, amount, is_debit=False,
                ledger_entry_id=entry["_id"], receipt_id=receipt_id,
                session=ctx.session
            )

        logger.info(
            f"[LEDGER] Receipt {receipt['receiptNumber']} of {to_float(amount)} ({instrument.mode.value}) "
            f"issued for booking {booking_oid}"
        )
        await self.record_audit("RECEIPT", receipt_id, "CREATE", actor, booking_oid, new_value=receipt)

        return {"ledger_entry": entry, "receipt": receipt, "booking": updated_booking}

    async def _remove_failed_receipt(self, receipt_id: ObjectId):
        await self.db[Collections.RECEIPTS].delete_one({"_id": receipt_id})
        logger.warning(f"[LEDGER] Removed receipt {receipt_id} of a failed operation")

    def check_credit_allowance(self, booking: Dict[str, Any], amount, already_counted=ZERO):
        """
        A credit may take receivedAmount up to discountedAmount and no further.
        `already_counted` is the part of `amount` already included in receivedAmount.
        """
        remaining = current_balance(booking)
        if round_financial(safe_subtract(amount, already_counted)) > remaining:
            allowed = max(ZERO, remaining + to_decimal(already_counted))
            logger.warning(
                f"[LEDGER] Credit of {to_float(amount)} rejected for booking {booking['_id']}: "
                f"maximum allowed {to_float(allowed)}"
            )
            raise AmountExceedsBalanceError(to_float(amount), to_float(allowed))

    # =========================================================================
    # DEBITS
    # =========================================================================

    async def add_debit(
        self,
        booking_id: Any,
        amount: Any,
        debit_reason: Optional[str],
        remark: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Post an administrative debit. balanceAmount += amount, receivedAmount unchanged.
        Debits are not capped against the booking balance.
        """
        amount = validate_positive(amount, "amount")
        booking_oid = to_object_id(booking_id, "booking")
        debit_reason = _clean_text(debit_reason)
        if not debit_reason:
            raise ValidationError("Debit reason is required", details={"field": "debitReason"})

        async with self.scope.atomic("add_debit") as ctx:
            booking = await self.reconciler.load_booking(booking_oid, session=ctx.session)

            entry = build_debit_entry(booking_oid, amount, debit_reason, received_by=actor, remark=remark)
            await self.store.insert_entry(entry, session=ctx.session)
            ctx.on_rollback(lambda: self.store.remove_failed_insert(entry["_id"]))

            updated_booking = await self.reconciler.reconcile(
                booking, amount, is_debit=True,
                ledger_entry_id=entry["_id"],
                session=ctx.session
            )

        await self.record_audit("LEDGER_ENTRY", entry["_id"], "CREATE", actor, booking_oid, new_value=entry)

        return {"ledger_entry": entry, "booking": updated_booking}

    # =========================================================================
    # CORRECTIONS
    # =========================================================================

    async def update_ledger_entry(
        self,
        entry_id: Any,
        changes: Dict[str, Any],
        actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Correct an existing entry. The booking is reconciled with
        new amount - old amount, never with the absolute amount.
        """
        entry_oid = to_object_id(entry_id, "entry")
        changes = self._validate_change_keys(changes)

        async with self.scope.atomic("update_ledger_entry") as ctx:
            result = await self.apply_entry_correction(ctx, entry_oid, changes, actor)

        await self.record_audit(
            "LEDGER_ENTRY", entry_oid, "UPDATE", actor, result["ledger_entry"]["booking"],
            old_value=result["previous"], new_value=result["ledger_entry"]
        )
        return result

    def _validate_change_keys(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in (changes or {}).items() if v is not None}
        unknown = set(changes) - CORRECTABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields cannot be corrected: {', '.join(sorted(unknown))}",
                details={"fields": sorted(unknown)}
            )
        if not changes:
            raise ValidationError("No fields to update")
        return changes

    async def apply_entry_correction(
        self,
        ctx: AtomicContext,
        entry_id: ObjectId,
        changes: Dict[str, Any],
        actor: Optional[str]
    ) -> Dict[str, Any]:
        """
        Correction body shared with the disbursement service. Must run inside
        an atomic scope opened by the caller.
        """
        session = ctx.session
        entry = await self.store.get_entry(entry_id, session=session)
        owner = await self._load_owner(entry, session)
        is_debit = bool(entry.get("isDebit"))

        update_fields: Dict[str, Any] = {}

        if is_debit:
            rejected = INSTRUMENT_FIELDS & set(changes)
            if rejected:
                raise ValidationError(
                    "Debit entries carry no payment mode or location",
                    details={"fields": sorted(rejected)}
                )
            if "debitReason" in changes:
                reason = _clean_text(changes["debitReason"])
                if not reason:
                    raise ValidationError("Debit reason is required", details={"field": "debitReason"})
                update_fields["debitReason"] = reason
        else:
            if "debitReason" in changes:
                raise ValidationError("Only debit entries have a debit reason", details={"field": "debitReason"})
            if INSTRUMENT_FIELDS & set(changes):
                update_fields.update(await self._corrected_instrument(entry, changes, session))

        if "transactionReference" in changes:
            update_fields["transactionReference"] = _clean_text(changes["transactionReference"])
        if "remark" in changes:
            update_fields["remark"] = changes["remark"]

        old_amount = round_financial(entry.get("amount"))
        new_amount = validate_positive(changes["amount"], "amount") if "amount" in changes else old_amount
        delta = round_financial(safe_subtract(new_amount, old_amount))
        if delta != ZERO:
            update_fields["amount"] = to_float(new_amount)

        booking = await self.reconciler.load_booking(entry["booking"], session=session)
        if not is_debit and delta > ZERO:
            self.check_credit_allowance(booking, new_amount, already_counted=old_amount)

        updated_entry = await self.store.apply_correction(entry, update_fields, actor, session=session)
        ctx.on_rollback(lambda: self.store.collection.replace_one({"_id": entry["_id"]}, entry))

        if owner is not None:
            await self._sync_owner(ctx, entry, owner, updated_entry)

        updated_booking = booking
        if delta != ZERO:
            updated_booking = await self.reconciler.reconcile(booking, delta, is_debit=is_debit, session=session)

        return {
            "ledger_entry": updated_entry,
            "previous": entry,
            "delta": to_float(delta),
            "booking": updated_booking,
        }

    async def _load_owner(self, entry: Dict[str, Any], session) -> Optional[Dict[str, Any]]:
        source = entry.get("source") or {}
        collection = SOURCE_COLLECTIONS.get(source.get("kind"))
        if collection is None or source.get("refId") is None:
            return None

        owner = await self.db[collection].find_one({"_id": source["refId"]}, session=session)
        if owner is None:
            return None

        if owner.get("status") in (RECEIPT_CANCELLED, DISBURSEMENT_CANCELLED):
            raise StateError(
                f"Ledger entry {entry['_id']} belongs to a cancelled {source.get('refModel')} and cannot be changed",
                details={"entry_id": str(entry["_id"]), "owner_id": str(owner["_id"])}
            )
        return owner

    async def _corrected_instrument(self, entry: Dict[str, Any], changes: Dict[str, Any], session) -> Dict[str, Any]:
        mode = parse_payment_mode(changes.get("paymentMode", entry.get("paymentMode")))
        source_kind = (entry.get("source") or {}).get("kind")
        if source_kind == SourceKind.FINANCE_DISBURSEMENT.value and mode != PaymentMode.FINANCE_DISBURSEMENT:
            raise StateError(
                "Payment mode of a finance disbursement entry cannot be changed",
                details={"entry_id": str(entry["_id"])}
            )

        bank = changes.get("bank", entry.get("bank"))
        if source_kind == SourceKind.FINANCE_DISBURSEMENT.value:
            instrument = disbursement_instrument(bank)
        else:
            instrument = build_instrument(mode, changes.get("cashLocation", entry.get("cashLocation")), bank)
        await self.locations.resolve(instrument, session=session)
        return instrument.ledger_fields()

    async def _sync_owner(self, ctx: AtomicContext, entry, owner, updated_entry):
        source = entry["source"]
        collection = SOURCE_COLLECTIONS[source["kind"]]
        synced = {"amount": updated_entry["amount"]}
        if source["kind"] == SourceKind.RECEIPT.value:
            synced["paymentMode"] = updated_entry.get("paymentMode")
        else:
            synced["updatedAt"] = datetime.utcnow()

        previous = {key: owner.get(key) for key in synced}
        await self.db[collection].update_one({"_id": owner["_id"]}, {"$set": synced}, session=ctx.session)
        ctx.on_rollback(lambda: self.db[collection].update_one({"_id": owner["_id"]}, {"$set": previous}))

    # =========================================================================
    # READS
    # =========================================================================

    async def get_ledger_entries(self, booking_id: Any) -> List[Dict[str, Any]]:
        booking_oid = to_object_id(booking_id, "booking")
        await self.reconciler.load_booking(booking_oid)
        return await self.store.list_entries(booking_oid)

    async def get_debits(self, booking_id: Any) -> List[Dict[str, Any]]:
        booking_oid = to_object_id(booking_id, "booking")
        await self.reconciler.load_booking(booking_oid)
        return await self.store.list_entries(booking_oid, is_debit=True)

    async def get_ledger_summary(self, booking_id: Any) -> Dict[str, Any]:
        """Stored booking totals next to totals summed from the ledger."""
        booking_oid = to_object_id(booking_id, "booking")
        booking = await self.reconciler.load_booking(booking_oid)
        entries = await self.store.list_entries(booking_oid)

        credits = [e for e in entries if not e.get("isDebit")]
        debits = [e for e in entries if e.get("isDebit")]
        total_credits = round_financial(safe_add(*[e.get("amount") for e in credits]))
        total_debits = round_financial(safe_add(*[e.get("amount") for e in debits]))

        return {
            "booking_id": str(booking_oid),
            "bookingNumber": booking.get("bookingNumber"),
            "discountedAmount": to_float(booking.get("discountedAmount")),
            "receivedAmount": to_float(booking.get("receivedAmount")),
            "balanceAmount": to_float(booking.get("balanceAmount")),
            "totalCredits": to_float(total_credits),
            "totalDebits": to_float(total_debits),
            "creditEntries": len(credits),
            "debitEntries": len(debits),
            "inSync": total_credits == round_financial(booking.get("receivedAmount")),
        }

    async def get_ledger_statement(self, booking_id: Any) -> Dict[str, Any]:
        """
        Chronological statement. The booking's discounted amount is the
        opening debit; credits reduce and debits raise the running balance.
        """
        booking_oid = to_object_id(booking_id, "booking")
        booking = await self.reconciler.load_booking(booking_oid)
        entries = await self.store.list_entries(booking_oid)

        running = round_financial(booking.get("discountedAmount"))
        rows = [{
            "date": booking.get("createdAt"),
            "description": "Booking amount",
            "debit": to_float(running),
            "credit": 0.0,
            "balance": to_float(running),
        }]

        for entry in entries:
            amount = round_financial(entry.get("amount"))
            if entry.get("isDebit"):
                running += amount
                description = entry.get("debitReason") or "Debit"
            else:
                running -= amount
                description = f"{entry.get('paymentMode')} payment"
            rows.append({
                "date": entry.get("receiptDate") or entry.get("createdAt"),
                "entry_id": entry["_id"],
                "type": entry.get("type"),
                "description": description,
                "transactionReference": entry.get("transactionReference"),
                "debit": to_float(amount) if entry.get("isDebit") else 0.0,
                "credit": 0.0 if entry.get("isDebit") else to_float(amount),
                "balance": to_float(running),
            })

        return {
            "booking_id": str(booking_oid),
            "bookingNumber": booking.get("bookingNumber"),
            "rows": rows,
            "closingBalance": to_float(running),
        }

    async def record_audit(self, entity_type, entity_id, action, actor, booking_id, old_value=None, new_value=None):
        if self.audit is None:
            return
        await self.audit.log_action(
            entity_type=entity_type,
            entity_id=entity_id,
            action_type=action,
            user_id=actor,
            booking_id=booking_id,
            old_value=old_value,
            new_value=new_value
        )
