"""
Dealership settlement core: booking ledger, balance reconciliation and commissions
"""
from .exceptions import (
    SettlementError,
    ValidationError,
    NotFoundError,
    ConflictError,
    StateError,
    BookingNotFoundError,
    InvalidLocationError,
    AmountExceedsBalanceError,
    DuplicateReferenceError,
    ConcurrentModificationError,
    TransientConflictError,
    InvariantViolationError
)

from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_positive,
    validate_non_negative,
    calculate_commission
)

from .payment_modes import (
    PaymentMode,
    PaymentInstrument,
    build_instrument
)

from .transaction_scope import TransactionScope

from .balance_reconciler import (
    BalanceState,
    BookingBalanceReconciler,
    apply_credit,
    apply_debit,
    current_balance
)

from .ledger_service import LedgerService
from .disbursement_service import FinanceDisbursementService
from .commission_store import CommissionRateStore
from .commission_resolver import CommissionCalculator, resolve_rate
from .integrity_job import LedgerIntegrityJob

__all__ = [
    # Errors
    'SettlementError',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'StateError',
    'BookingNotFoundError',
    'InvalidLocationError',
    'AmountExceedsBalanceError',
    'DuplicateReferenceError',
    'ConcurrentModificationError',
    'TransientConflictError',
    'InvariantViolationError',
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_positive',
    'validate_non_negative',
    'calculate_commission',
    # Payment Modes
    'PaymentMode',
    'PaymentInstrument',
    'build_instrument',
    # Ledger
    'TransactionScope',
    'BalanceState',
    'BookingBalanceReconciler',
    'apply_credit',
    'apply_debit',
    'current_balance',
    'LedgerService',
    'FinanceDisbursementService',
    # Commission
    'CommissionRateStore',
    'CommissionCalculator',
    'resolve_rate',
    # Integrity
    'LedgerIntegrityJob',
]
