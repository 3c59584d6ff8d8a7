from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

# ============================================
# SETTLEMENT REQUEST MODELS
# ============================================
# Field aliases carry the wire names used by the booking screens.

# ============================================
# LEDGER MODELS
# ============================================
class ReceiptCreate(BaseModel):
    booking_id: str = Field(alias="bookingId")
    payment_mode: str = Field(alias="paymentMode")  # Cash, Bank, Finance Disbursement, Exchange, Pay Order
    amount: float  # Must be > 0 and <= discountedAmount - receivedAmount
    cash_location: Optional[str] = Field(default=None, alias="cashLocation")  # Required for Cash
    bank: Optional[str] = None  # Required for every non-cash mode
    transaction_reference: Optional[str] = Field(default=None, alias="transactionReference")
    remark: Optional[str] = None
    receipt_date: Optional[datetime] = Field(default=None, alias="receiptDate")

    class Config:
        populate_by_name = True

class DebitCreate(BaseModel):
    booking_id: str = Field(alias="bookingId")
    amount: float
    debit_reason: str = Field(alias="debitReason")
    remark: Optional[str] = None

    class Config:
        populate_by_name = True

class LedgerEntryUpdate(BaseModel):
    amount: Optional[float] = None
    payment_mode: Optional[str] = Field(default=None, alias="paymentMode")
    cash_location: Optional[str] = Field(default=None, alias="cashLocation")
    bank: Optional[str] = None
    transaction_reference: Optional[str] = Field(default=None, alias="transactionReference")
    remark: Optional[str] = None
    debit_reason: Optional[str] = Field(default=None, alias="debitReason")

    class Config:
        populate_by_name = True

# ============================================
# FINANCE DISBURSEMENT MODELS
# ============================================
class DisbursementCreate(BaseModel):
    booking_id: str = Field(alias="bookingId")
    finance_provider_id: str = Field(alias="financeProviderId")
    disbursement_reference: str = Field(alias="disbursementReference")  # Globally unique
    amount: float
    disbursement_date: Optional[datetime] = Field(default=None, alias="disbursementDate")
    bank: Optional[str] = None  # Receiving bank, when known

    class Config:
        populate_by_name = True

class DisbursementUpdate(BaseModel):
    amount: Optional[float] = None
    status: Optional[str] = None  # PENDING, COMPLETED, CANCELLED

# ============================================
# COMMISSION MODELS
# ============================================
class CommissionRateInput(BaseModel):
    header_id: str
    commission_rate: float  # 0..100, rounded to 2 places
    is_active: bool = True
    applicable_from: Optional[datetime] = None  # Defaults to now
    applicable_to: Optional[datetime] = None  # None = open-ended

class CommissionRatesUpsert(BaseModel):
    commission_rates: List[CommissionRateInput]

class CommissionMasterStatus(BaseModel):
    is_active: bool

class CommissionDateRange(BaseModel):
    from_date: datetime = Field(alias="fromDate")
    to_date: Optional[datetime] = Field(default=None, alias="toDate")

    class Config:
        populate_by_name = True

# ============================================
# INTEGRITY MODELS
# ============================================
class IntegrityRunRequest(BaseModel):
    booking_ids: Optional[List[str]] = None  # None = every booking
