"""
FINANCE DISBURSEMENT ISSUER

Implements:
1. Duplicate disbursementReference protection (lookup + unique index)
2. create_disbursement: disbursement + ledger credit + booking balance, atomically
3. update_disbursement: amount corrections through the ledger delta path,
   status changes; cancelled disbursements are frozen
4. Per-booking listing with totals
5. Filtered, paginated listing across bookings
"""

from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from settlement.documents import Collections, paginate, to_object_id, to_utc_datetime, same_id
from settlement.exceptions import (
    DuplicateReferenceError, NotFoundError, StateError, ValidationError
)
from settlement.financial_precision import (
    to_float, round_financial, safe_add, validate_positive
)
from settlement.ledger_service import LedgerService
from settlement.ledger_store import LedgerEntryType, SourceKind, build_credit_entry
from settlement.payment_modes import PaymentMode, disbursement_instrument

logger = logging.getLogger(__name__)


class DisbursementStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


FINANCE_BOOKING = "FINANCE"


class DuplicateReferenceProtection:
    """
    Service for preventing reuse of a disbursementReference.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def check_duplicate_reference(self, reference: str, session=None) -> bool:
        """
        Returns True if NO disbursement carries this reference.

        Raises:
            DuplicateReferenceError if one does
        """
        existing = await self.db[Collections.FINANCE_DISBURSEMENTS].find_one(
            {"disbursementReference": reference},
            session=session
        )
        if existing:
            raise DuplicateReferenceError(reference, existing_id=str(existing["_id"]))

        logger.debug(f"[DISBURSEMENT] Reference {reference} is unused")
        return True

    async def create_unique_constraint_index(self):
        try:
            await self.db[Collections.FINANCE_DISBURSEMENTS].create_index(
                [("disbursementReference", 1)],
                unique=True,
                name="unique_disbursement_reference"
            )
            logger.info("[DISBURSEMENT] Created unique disbursementReference index")
        except Exception as e:
            # Index may already exist
            logger.warning(f"[DISBURSEMENT] Index creation result: {str(e)}")


class FinanceDisbursementService:
    def __init__(self, db: AsyncIOMotorDatabase, ledger: LedgerService):
        self.db = db
        self.ledger = ledger
        self.scope = ledger.scope
        self.duplicates = DuplicateReferenceProtection(db)
        self.collection = db[Collections.FINANCE_DISBURSEMENTS]

    async def create_disbursement(
        self,
        booking_id: Any,
        finance_provider_id: Any,
        reference: Optional[str],
        amount: Any,
        disbursement_date: Optional[datetime] = None,
        bank: Any = None,
        actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record money received from the booking's finance provider.

        Raises:
            DuplicateReferenceError: reference already used
            ValidationError: not a finance booking, or provider mismatch
            AmountExceedsBalanceError: amount above discounted - received
        """
        booking_oid = to_object_id(booking_id, "booking")
        provider_oid = to_object_id(finance_provider_id, "financeProvider")
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("Disbursement reference is required", details={"field": "disbursementReference"})
        amount = validate_positive(amount, "amount")
        instrument = disbursement_instrument(bank)
        if disbursement_date is not None:
            disbursement_date = to_utc_datetime(disbursement_date, "disbursementDate")

        await self.duplicates.check_duplicate_reference(reference)

        async with self.scope.atomic("create_disbursement") as ctx:
            booking = await self.ledger.reconciler.load_booking(booking_oid, session=ctx.session)
            payment = booking.get("payment") or {}
            if payment.get("type") != FINANCE_BOOKING:
                raise ValidationError(
                    "Booking is not a finance booking",
                    details={"booking_id": str(booking_oid), "payment_type": payment.get("type")}
                )
            if not same_id(payment.get("financer"), provider_oid):
                raise ValidationError(
                    "Finance provider does not match booking finance provider",
                    details={"booking_financer": str(payment.get("financer")), "finance_provider": str(provider_oid)}
                )

            provider = await self.db[Collections.FINANCE_PROVIDERS].find_one({"_id": provider_oid}, session=ctx.session)
            if not provider or not provider.get("is_active", True):
                raise NotFoundError(
                    f"Finance provider {provider_oid} not found or inactive",
                    details={"finance_provider": str(provider_oid)}
                )

            self.ledger.check_credit_allowance(booking, amount)
            await self.ledger.locations.resolve(instrument, session=ctx.session)

            now = datetime.utcnow()
            disbursement_id = ObjectId()
            entry = build_credit_entry(
                booking_oid,
                LedgerEntryType.FINANCE_DISBURSEMENT,
                instrument,
                amount,
                SourceKind.FINANCE_DISBURSEMENT,
                disbursement_id,
                received_by=actor,
                transaction_reference=reference,
                remark=f"Finance disbursement from {provider.get('name', provider_oid)}",
                receipt_date=disbursement_date
            )
            disbursement = {
                "_id": disbursement_id,
                "booking": booking_oid,
                "financeProvider": provider_oid,
                "disbursementReference": reference,
                "disbursementDate": disbursement_date or now,
                "amount": to_float(amount),
                "paymentMode": PaymentMode.FINANCE_DISBURSEMENT.value,
                "status": DisbursementStatus.COMPLETED.value,
                "createdBy": actor,
                "ledgerEntry": entry["_id"],
                "createdAt": now,
                "updatedAt": now,
            }

            try:
                await self.collection.insert_one(disbursement, session=ctx.session)
            except DuplicateKeyError:
                logger.warning(f"[DISBURSEMENT] Unique index rejected reference {reference}")
                raise DuplicateReferenceError(reference)
            ctx.on_rollback(lambda: self._remove_failed_insert(disbursement_id))

            await self.ledger.store.insert_entry(entry, session=ctx.session)
            ctx.on_rollback(lambda: self.ledger.store.remove_failed_insert(entry["_id"]))

            updated_booking = await self.ledger.reconciler.reconcile(
                booking, amount, is_debit=False,
                ledger_entry_id=entry["_id"],
                session=ctx.session
            )

        logger.info(
            f"[DISBURSEMENT] {reference}: {to_float(amount)} from provider {provider_oid} "
            f"credited to booking {booking_oid}"
        )
        await self.ledger.record_audit(
            "FINANCE_DISBURSEMENT", disbursement_id, "CREATE", actor, booking_oid, new_value=disbursement
        )

        return {"disbursement": disbursement, "ledger_entry": entry, "booking": updated_booking}

    async def _remove_failed_insert(self, disbursement_id: ObjectId):
        await self.collection.delete_one({"_id": disbursement_id})
        logger.warning(f"[DISBURSEMENT] Removed disbursement {disbursement_id} of a failed operation")

    async def get_disbursement(self, disbursement_id: Any, session=None) -> Dict[str, Any]:
        disbursement_oid = to_object_id(disbursement_id, "disbursement")
        disbursement = await self.collection.find_one({"_id": disbursement_oid}, session=session)
        if not disbursement:
            raise NotFoundError(
                f"Finance disbursement {disbursement_oid} not found",
                details={"disbursement_id": str(disbursement_oid)}
            )
        return disbursement

    async def update_disbursement(
        self,
        disbursement_id: Any,
        amount: Any = None,
        status: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Correct the amount and/or change the status of a disbursement.

        An amount change is applied to the linked ledger entry as a delta.
        Cancelling only changes the status; the credit stays on the ledger
        until a correcting debit is posted.
        """
        if status is not None and status not in DisbursementStatus._value2member_map_:
            raise ValidationError(
                f"Invalid disbursement status: {status}",
                details={"status": status, "allowed": [s.value for s in DisbursementStatus]}
            )
        if amount is None and status is None:
            raise ValidationError("No fields to update")

        previous = await self.get_disbursement(disbursement_id)
        if previous.get("status") == DisbursementStatus.CANCELLED.value:
            raise StateError(
                "Cannot update cancelled disbursement",
                details={"disbursement_id": str(previous["_id"])}
            )

        async with self.scope.atomic("update_disbursement") as ctx:
            current = await self.get_disbursement(previous["_id"], session=ctx.session)
            if current.get("status") == DisbursementStatus.CANCELLED.value:
                raise StateError(
                    "Cannot update cancelled disbursement",
                    details={"disbursement_id": str(current["_id"])}
                )

            if amount is not None:
                if not current.get("ledgerEntry"):
                    raise StateError(
                        "Disbursement has no ledger entry to correct",
                        details={"disbursement_id": str(current["_id"])}
                    )
                await self.ledger.apply_entry_correction(
                    ctx, current["ledgerEntry"], {"amount": amount}, actor
                )

            if status is not None and status != current.get("status"):
                await self.collection.update_one(
                    {"_id": current["_id"]},
                    {"$set": {"status": status, "updatedBy": actor, "updatedAt": datetime.utcnow()}},
                    session=ctx.session
                )
                ctx.on_rollback(lambda: self.collection.update_one(
                    {"_id": current["_id"]}, {"$set": {"status": current.get("status")}}
                ))

            updated = await self.get_disbursement(current["_id"], session=ctx.session)

        logger.info(
            f"[DISBURSEMENT] {updated['disbursementReference']} updated: "
            f"amount {previous.get('amount')} -> {updated.get('amount')}, "
            f"status {previous.get('status')} -> {updated.get('status')}"
        )
        await self.ledger.record_audit(
            "FINANCE_DISBURSEMENT", updated["_id"], "UPDATE", actor, updated["booking"],
            old_value=previous, new_value=updated
        )
        return updated

    async def get_disbursements_by_booking(self, booking_id: Any) -> Dict[str, Any]:
        booking_oid = to_object_id(booking_id, "booking")
        await self.ledger.reconciler.load_booking(booking_oid)

        disbursements: List[Dict[str, Any]] = await self.collection.find(
            {"booking": booking_oid}
        ).sort("disbursementDate", -1).to_list(length=None)

        counted = [d for d in disbursements if d.get("status") != DisbursementStatus.CANCELLED.value]
        total = round_financial(safe_add(*[d.get("amount") for d in counted]))

        return {
            "booking_id": str(booking_oid),
            "disbursements": disbursements,
            "count": len(disbursements),
            "totalDisbursed": to_float(total),
        }

    async def list_disbursements(
        self,
        booking_id: Any = None,
        finance_provider_id: Any = None,
        status: Optional[str] = None,
        date_from: Any = None,
        date_to: Any = None,
        page: Any = 1,
        limit: Any = 20
    ) -> Dict[str, Any]:
        """
        Disbursements newest first. Malformed ids and unknown statuses are
        ignored as filters; date_to covers the whole of its day.
        """
        query: Dict[str, Any] = {}
        if booking_id and ObjectId.is_valid(str(booking_id)):
            query["booking"] = ObjectId(str(booking_id))
        if finance_provider_id and ObjectId.is_valid(str(finance_provider_id)):
            query["financeProvider"] = ObjectId(str(finance_provider_id))
        if status in DisbursementStatus._value2member_map_:
            query["status"] = status

        if date_from is not None or date_to is not None:
            query["disbursementDate"] = {}
            if date_from is not None:
                query["disbursementDate"]["$gte"] = to_utc_datetime(date_from, "from")
            if date_to is not None:
                end = to_utc_datetime(date_to, "to")
                if end.time() == time.min:
                    end = datetime.combine(end.date(), time(23, 59, 59, 999000))
                query["disbursementDate"]["$lte"] = end

        disbursements, pagination = await paginate(
            self.collection, query, [("disbursementDate", -1)], page, limit
        )
        return {"disbursements": disbursements, "pagination": pagination}
