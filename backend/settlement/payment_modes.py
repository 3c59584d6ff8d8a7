"""
Payment modes as a tagged union.

Each mode names the location field it requires. Building an instrument
checks the mode exhaustively and drops location fields that do not belong
to it, so a Cash entry never carries a bank and vice versa.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import logging

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from settlement.documents import Collections, to_object_id
from settlement.exceptions import ValidationError, InvalidLocationError

logger = logging.getLogger(__name__)


class PaymentMode(str, Enum):
    CASH = "Cash"
    BANK = "Bank"
    FINANCE_DISBURSEMENT = "Finance Disbursement"
    EXCHANGE = "Exchange"
    PAY_ORDER = "Pay Order"


class LocationKind(str, Enum):
    CASH_LOCATION = "cashLocation"
    BANK = "bank"


# Required location field per mode. Every PaymentMode must appear here.
MODE_LOCATION: Dict[PaymentMode, LocationKind] = {
    PaymentMode.CASH: LocationKind.CASH_LOCATION,
    PaymentMode.BANK: LocationKind.BANK,
    PaymentMode.FINANCE_DISBURSEMENT: LocationKind.BANK,
    PaymentMode.EXCHANGE: LocationKind.BANK,
    PaymentMode.PAY_ORDER: LocationKind.BANK,
}

LOCATION_LABELS = {
    LocationKind.CASH_LOCATION: "cash location",
    LocationKind.BANK: "bank",
}

LOCATION_COLLECTIONS = {
    LocationKind.CASH_LOCATION: Collections.CASH_LOCATIONS,
    LocationKind.BANK: Collections.BANKS,
}


@dataclass(frozen=True)
class PaymentInstrument:
    """A payment mode together with the one location it requires"""
    mode: PaymentMode
    location_kind: LocationKind
    location_id: Optional[ObjectId]

    def ledger_fields(self) -> Dict[str, Any]:
        """Location fields as stored on a ledger entry"""
        return {
            "paymentMode": self.mode.value,
            "cashLocation": self.location_id if self.location_kind == LocationKind.CASH_LOCATION else None,
            "bank": self.location_id if self.location_kind == LocationKind.BANK else None,
        }


def parse_payment_mode(value: Any) -> PaymentMode:
    if isinstance(value, PaymentMode):
        return value
    try:
        return PaymentMode(value)
    except ValueError:
        raise ValidationError(
            f"Invalid payment mode: {value}",
            details={"paymentMode": value, "allowed": [m.value for m in PaymentMode]}
        )


def disbursement_instrument(bank: Any = None) -> PaymentInstrument:
    """
    Instrument for a finance-provider credit. The receiving bank is
    validated when given; provider remittances may arrive without one.
    """
    if bank in (None, ""):
        return PaymentInstrument(PaymentMode.FINANCE_DISBURSEMENT, LocationKind.BANK, None)
    return build_instrument(PaymentMode.FINANCE_DISBURSEMENT, bank=bank)


def build_instrument(
    payment_mode: Any,
    cash_location: Any = None,
    bank: Any = None
) -> PaymentInstrument:
    """
    Validate the mode-specific required field and build the instrument.
    Raises ValidationError when the mode is unknown or its field is missing.
    """
    mode = parse_payment_mode(payment_mode)
    kind = MODE_LOCATION[mode]
    raw = cash_location if kind == LocationKind.CASH_LOCATION else bank

    if raw in (None, ""):
        if kind == LocationKind.CASH_LOCATION:
            message = "Cash location is required for cash payments"
        else:
            message = f"Bank is required for {mode.value} payments"
        raise ValidationError(message, details={"paymentMode": mode.value, "field": kind.value})

    return PaymentInstrument(
        mode=mode,
        location_kind=kind,
        location_id=to_object_id(raw, kind.value),
    )


class LocationResolver:
    """Confirms that an instrument's location resolves to an active record."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def resolve(self, instrument: PaymentInstrument, session=None) -> Optional[Dict[str, Any]]:
        if instrument.location_id is None:
            return None
        collection = LOCATION_COLLECTIONS[instrument.location_kind]
        location = await self.db[collection].find_one(
            {"_id": instrument.location_id},
            session=session
        )

        if not location or location.get("status", "active") != "active":
            logger.warning(
                f"[LEDGER] Rejected {instrument.location_kind.value}={instrument.location_id} "
                f"for mode {instrument.mode.value}"
            )
            raise InvalidLocationError(LOCATION_LABELS[instrument.location_kind], instrument.location_id)

        return location
