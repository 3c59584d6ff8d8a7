"""
SETTLEMENT API ROUTES

Thin HTTP boundary over the settlement core:
- Booking ledger: receipts, debits, entry corrections, statements
- Finance disbursements
- Commission masters and commission reports
- Ledger integrity check

Services raise settlement errors; this module alone maps them to HTTP
status codes. Authorization is not enforced here: any authenticated user
may call these endpoints.

To integrate: Add to main server.py with:
    services = create_settlement_services(client, db, audit_service)
    app.include_router(create_settlement_routes(services))
"""

from fastapi import APIRouter, HTTPException, Query, status, Depends
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from typing import Optional
from datetime import datetime
import logging

from auth import get_current_user
from audit_service import AuditService
from settlement_models import (
    ReceiptCreate, DebitCreate, LedgerEntryUpdate,
    DisbursementCreate, DisbursementUpdate,
    CommissionRatesUpsert, CommissionDateRange, CommissionMasterStatus,
    IntegrityRunRequest
)
from settlement.documents import serialize_doc
from settlement.exceptions import (
    SettlementError, ValidationError, NotFoundError, ConflictError, StateError,
    InvariantViolationError
)
from settlement.transaction_scope import TransactionScope, MODE_AUTO
from settlement.ledger_service import LedgerService
from settlement.disbursement_service import FinanceDisbursementService
from settlement.commission_store import CommissionRateStore
from settlement.commission_resolver import CommissionCalculator
from settlement.integrity_job import LedgerIntegrityJob
from settlement.document_numbering import AtomicCounter

logger = logging.getLogger(__name__)


class SettlementServices:
    """Settlement services sharing one database and one transaction scope"""

    def __init__(
        self,
        client: AsyncIOMotorClient,
        db: AsyncIOMotorDatabase,
        audit_service: Optional[AuditService] = None,
        transaction_mode: str = MODE_AUTO
    ):
        self.db = db
        self.scope = TransactionScope(client, transaction_mode)
        self.ledger = LedgerService(db, self.scope, audit_service)
        self.disbursements = FinanceDisbursementService(db, self.ledger)
        self.commission_store = CommissionRateStore(db, audit_service)
        self.commission_calculator = CommissionCalculator(db)

    async def create_indexes(self):
        await AtomicCounter(self.db).create_unique_constraints()
        await self.disbursements.duplicates.create_unique_constraint_index()
        await self.commission_store.create_indexes()


def create_settlement_services(
    client: AsyncIOMotorClient,
    db: AsyncIOMotorDatabase,
    audit_service: Optional[AuditService] = None,
    transaction_mode: str = MODE_AUTO
) -> SettlementServices:
    return SettlementServices(client, db, audit_service, transaction_mode)


def to_http_exception(error: SettlementError) -> HTTPException:
    """Map a settlement error to its HTTP status"""
    if isinstance(error, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ConflictError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(error, (ValidationError, StateError, InvariantViolationError)):
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    logger.warning(f"[API] {type(error).__name__}: {error.message}")
    return HTTPException(
        status_code=status_code,
        detail={"message": error.message, "details": serialize_doc(error.details)}
    )


def create_settlement_routes(services: SettlementServices) -> APIRouter:
    """Create settlement API router with all ledger and commission endpoints"""

    router = APIRouter(prefix="/api/v2/settlement", tags=["Settlement"])

    # ============================================
    # LEDGER ENDPOINTS
    # ============================================

    @router.post("/ledger/receipts", status_code=status.HTTP_201_CREATED)
    async def add_receipt(
        receipt_data: ReceiptCreate,
        current_user: dict = Depends(get_current_user)
    ):
        """
        Record a customer payment. Creates the ledger entry and its receipt
        and advances the booking balance in one atomic write.
        """
        try:
            result = await services.ledger.add_receipt(
                booking_id=receipt_data.booking_id,
                payment_mode=receipt_data.payment_mode,
                amount=receipt_data.amount,
                cash_location=receipt_data.cash_location,
                bank=receipt_data.bank,
                transaction_reference=receipt_data.transaction_reference,
                remark=receipt_data.remark,
                receipt_date=receipt_data.receipt_date,
                actor=current_user["user_id"]
            )
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(result)

    @router.post("/ledger/debits", status_code=status.HTTP_201_CREATED)
    async def add_debit(
        debit_data: DebitCreate,
        current_user: dict = Depends(get_current_user)
    ):
        """Post an administrative debit (raises balanceAmount, no upper bound)"""
        try:
            result = await services.ledger.add_debit(
                booking_id=debit_data.booking_id,
                amount=debit_data.amount,
                debit_reason=debit_data.debit_reason,
                remark=debit_data.remark,
                actor=current_user["user_id"]
            )
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(result)

    @router.patch("/ledger/entries/{entry_id}")
    async def update_ledger_entry(
        entry_id: str,
        update_data: LedgerEntryUpdate,
        current_user: dict = Depends(get_current_user)
    ):
        """Correct a ledger entry; the booking is reconciled with the amount delta"""
        try:
            result = await services.ledger.update_ledger_entry(
                entry_id,
                update_data.dict(by_alias=True, exclude_none=True),
                actor=current_user["user_id"]
            )
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(result)

    @router.get("/ledger/bookings/{booking_id}")
    async def get_ledger_entries(
        booking_id: str,
        debits_only: bool = False,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            if debits_only:
                entries = await services.ledger.get_debits(booking_id)
            else:
                entries = await services.ledger.get_ledger_entries(booking_id)
        except SettlementError as e:
            raise to_http_exception(e)
        return [serialize_doc(entry) for entry in entries]

    @router.get("/ledger/bookings/{booking_id}/summary")
    async def get_ledger_summary(
        booking_id: str,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            return serialize_doc(await services.ledger.get_ledger_summary(booking_id))
        except SettlementError as e:
            raise to_http_exception(e)

    @router.get("/ledger/bookings/{booking_id}/statement")
    async def get_ledger_statement(
        booking_id: str,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            return serialize_doc(await services.ledger.get_ledger_statement(booking_id))
        except SettlementError as e:
            raise to_http_exception(e)

    # ============================================
    # FINANCE DISBURSEMENT ENDPOINTS
    # ============================================

    @router.post("/finance-disbursements", status_code=status.HTTP_201_CREATED)
    async def create_disbursement(
        disbursement_data: DisbursementCreate,
        current_user: dict = Depends(get_current_user)
    ):
        """
        Record a finance-provider disbursement.
        A reused disbursementReference is rejected with 409.
        """
        try:
            result = await services.disbursements.create_disbursement(
                booking_id=disbursement_data.booking_id,
                finance_provider_id=disbursement_data.finance_provider_id,
                reference=disbursement_data.disbursement_reference,
                amount=disbursement_data.amount,
                disbursement_date=disbursement_data.disbursement_date,
                bank=disbursement_data.bank,
                actor=current_user["user_id"]
            )
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(result)

    @router.get("/finance-disbursements")
    async def list_disbursements(
        booking_id: Optional[str] = None,
        finance_provider_id: Optional[str] = None,
        disbursement_status: Optional[str] = Query(default=None, alias="status"),
        date_from: Optional[str] = Query(default=None, alias="from"),
        date_to: Optional[str] = Query(default=None, alias="to"),
        page: int = 1,
        limit: int = 20,
        current_user: dict = Depends(get_current_user)
    ):
        """Disbursements across bookings, newest first (to date inclusive)"""
        try:
            result = await services.disbursements.list_disbursements(
                booking_id=booking_id,
                finance_provider_id=finance_provider_id,
                status=disbursement_status,
                date_from=date_from,
                date_to=date_to,
                page=page,
                limit=limit
            )
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(result)

    @router.get("/finance-disbursements/{disbursement_id}")
    async def get_disbursement(
        disbursement_id: str,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            return serialize_doc(await services.disbursements.get_disbursement(disbursement_id))
        except SettlementError as e:
            raise to_http_exception(e)

    @router.patch("/finance-disbursements/{disbursement_id}")
    async def update_disbursement(
        disbursement_id: str,
        update_data: DisbursementUpdate,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            result = await services.disbursements.update_disbursement(
                disbursement_id,
                amount=update_data.amount,
                status=update_data.status,
                actor=current_user["user_id"]
            )
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(result)

    @router.get("/finance-disbursements/bookings/{booking_id}")
    async def get_disbursements_by_booking(
        booking_id: str,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            return serialize_doc(await services.disbursements.get_disbursements_by_booking(booking_id))
        except SettlementError as e:
            raise to_http_exception(e)

    # ============================================
    # COMMISSION MASTER ENDPOINTS
    # ============================================
    # Fixed-prefix listings are registered before the {subdealer_id}/{model_id} routes

    @router.get("/commission-masters/subdealers/{subdealer_id}")
    async def list_commission_masters_by_subdealer(
        subdealer_id: str,
        page: int = 1,
        limit: int = 50,
        current_user: dict = Depends(get_current_user)
    ):
        """Active commission masters of a subdealer, most recently updated first"""
        try:
            result = await services.commission_store.list_masters_by_subdealer(subdealer_id, page, limit)
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(result)

    @router.get("/commission-masters/models/{model_id}")
    async def list_commission_masters_by_model(
        model_id: str,
        page: int = 1,
        limit: int = 50,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            result = await services.commission_store.list_masters_by_model(model_id, page, limit)
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(result)

    @router.patch("/commission-masters/{master_id}/status")
    async def set_commission_master_status(
        master_id: str,
        status_data: CommissionMasterStatus,
        current_user: dict = Depends(get_current_user)
    ):
        """Activate or deactivate a whole commission master"""
        try:
            master = await services.commission_store.set_master_status(
                master_id, status_data.is_active, actor=current_user["user_id"]
            )
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(master)


    @router.put("/commission-masters/{subdealer_id}/{model_id}")
    async def upsert_commission_rates(
        subdealer_id: str,
        model_id: str,
        rates_data: CommissionRatesUpsert,
        current_user: dict = Depends(get_current_user)
    ):
        """
        Replace the commission rates for (subdealer, model).
        Changes are appended to rate_history as CREATED / UPDATED / DEACTIVATED.
        """
        try:
            master = await services.commission_store.upsert_rates(
                subdealer_id,
                model_id,
                [rate.dict() for rate in rates_data.commission_rates],
                actor=current_user["user_id"]
            )
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(master)

    @router.get("/commission-masters/{subdealer_id}/{model_id}")
    async def get_commission_master(
        subdealer_id: str,
        model_id: str,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            return serialize_doc(await services.commission_store.get_master(subdealer_id, model_id))
        except SettlementError as e:
            raise to_http_exception(e)

    @router.get("/commission-masters/{subdealer_id}/{model_id}/history")
    async def get_commission_rate_history(
        subdealer_id: str,
        model_id: str,
        header_id: Optional[str] = None,
        current_user: dict = Depends(get_current_user)
    ):
        """Rate history, newest change first"""
        try:
            history = await services.commission_store.get_rate_history(subdealer_id, model_id, header_id)
        except SettlementError as e:
            raise to_http_exception(e)
        return [serialize_doc(entry) for entry in history]

    @router.post("/commission-masters/{subdealer_id}/date-range")
    async def set_commission_date_range(
        subdealer_id: str,
        range_data: CommissionDateRange,
        current_user: dict = Depends(get_current_user)
    ):
        """Apply one effective window to every rate of the subdealer"""
        try:
            counts = await services.commission_store.set_date_range(
                subdealer_id,
                range_data.from_date,
                range_data.to_date,
                actor=current_user["user_id"]
            )
        except SettlementError as e:
            raise to_http_exception(e)
        return {"message": "Commission date range updated successfully", **counts}

    # ============================================
    # COMMISSION REPORT ENDPOINTS
    # ============================================

    @router.get("/commission/{subdealer_id}")
    async def calculate_commission(
        subdealer_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            report = await services.commission_calculator.calculate_commission(subdealer_id, start_date, end_date)
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(report)

    @router.get("/commission/{subdealer_id}/monthly")
    async def monthly_commission_report(
        subdealer_id: str,
        year: int,
        month: int,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            report = await services.commission_calculator.monthly_report(subdealer_id, year, month)
        except SettlementError as e:
            raise to_http_exception(e)
        return serialize_doc(report)

    # ============================================
    # INTEGRITY ENDPOINT
    # ============================================

    @router.post("/integrity/run")
    async def run_integrity_check(
        run_data: Optional[IntegrityRunRequest] = None,
        current_user: dict = Depends(get_current_user)
    ):
        """Report drift between stored booking totals and the ledger (no auto-fix)"""
        booking_ids = run_data.booking_ids if run_data else None
        try:
            return await LedgerIntegrityJob(services.db).run(booking_ids)
        except SettlementError as e:
            raise to_http_exception(e)

    return router
