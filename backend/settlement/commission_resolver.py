"""
COMMISSION RESOLVER

Read-only commission computation.

Rate resolution for (header, as_of):
1. keep rows for the header that are active and whose window contains
   as_of (both ends inclusive, open end when applicable_to is null)
2. the latest applicable_from wins among overlapping rows
3. no surviving row -> rate 0, reported as NO_APPLICABLE_RATE

commission = round2(base * rate / 100), base = discountedValue or,
when absent, originalValue.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, MAXYEAR, MINYEAR
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from settlement.documents import Collections, to_object_id, to_utc_datetime
from settlement.exceptions import ValidationError
from settlement.financial_precision import (
    calculate_commission, round_financial, to_decimal, to_float, ZERO
)

logger = logging.getLogger(__name__)

NO_APPLICABLE_RATE = "NO_APPLICABLE_RATE"
NO_COMMISSION_MASTER = "NO_COMMISSION_MASTER"
COMMISSION_MASTER_INACTIVE = "COMMISSION_MASTER_INACTIVE"


@dataclass(frozen=True)
class RateResolution:
    rate: Decimal
    applicable: bool
    reason: Optional[str] = None
    applicable_from: Optional[datetime] = None
    applicable_to: Optional[datetime] = None


def _window_contains(row: Dict[str, Any], as_of: datetime) -> bool:
    applicable_from = row.get("applicable_from")
    if applicable_from is None or as_of < applicable_from:
        return False
    applicable_to = row.get("applicable_to")
    return applicable_to is None or as_of <= applicable_to


def resolve_rate(commission_rates: List[Dict[str, Any]], header_id: Any, as_of: datetime) -> RateResolution:
    if as_of is None:
        return RateResolution(rate=ZERO, applicable=False, reason=NO_APPLICABLE_RATE)
    key = str(header_id)
    candidates = [
        row for row in commission_rates or []
        if str(row.get("header_id")) == key
        and row.get("is_active", True)
        and _window_contains(row, as_of)
    ]
    if not candidates:
        return RateResolution(rate=ZERO, applicable=False, reason=NO_APPLICABLE_RATE)

    chosen = max(candidates, key=lambda row: row["applicable_from"])
    return RateResolution(
        rate=round_financial(chosen.get("commission_rate")),
        applicable=True,
        applicable_from=chosen.get("applicable_from"),
        applicable_to=chosen.get("applicable_to"),
    )


def component_base(component: Dict[str, Any]) -> Decimal:
    if component.get("discountedValue") is not None:
        return to_decimal(component["discountedValue"])
    return to_decimal(component.get("originalValue"))


def compute_booking_commission(
    booking: Dict[str, Any],
    master: Optional[Dict[str, Any]],
    header_keys: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """
    Per-component breakdown and total for one booking, as of its creation date.
    A deactivated master earns nothing; header_keys maps header id to header_key.
    """
    as_of = booking.get("createdAt")
    rates = (master or {}).get("commission_rates") or []
    header_keys = header_keys or {}

    breakdown = []
    total = ZERO
    for component in booking.get("priceComponents") or []:
        base = component_base(component)
        if master is None:
            resolution = RateResolution(rate=ZERO, applicable=False, reason=NO_COMMISSION_MASTER)
        elif master.get("is_active") is False:
            resolution = RateResolution(rate=ZERO, applicable=False, reason=COMMISSION_MASTER_INACTIVE)
        else:
            resolution = resolve_rate(rates, component.get("header"), as_of)
        commission = calculate_commission(base, resolution.rate)
        total += commission
        breakdown.append({
            "header_id": component.get("header"),
            "header_key": header_keys.get(str(component.get("header"))),
            "base": to_float(base),
            "rate": to_float(resolution.rate),
            "commission": to_float(commission),
            "applicable": resolution.applicable,
            "reason": resolution.reason,
            "applicable_from": resolution.applicable_from,
            "applicable_to": resolution.applicable_to,
        })

    return {
        "booking_id": booking.get("_id"),
        "booking_number": booking.get("bookingNumber"),
        "model_id": booking.get("model"),
        "booking_date": as_of,
        "total_amount": to_float(booking.get("discountedAmount")),
        "commission_breakdown": breakdown,
        "total_commission": to_float(total),
    }


class CommissionCalculator:
    """Aggregates booking commissions for a subdealer. Runs without a transaction."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def calculate_commission(
        self,
        subdealer_id: Any,
        start_date: Any = None,
        end_date: Any = None
    ) -> Dict[str, Any]:
        subdealer_oid = to_object_id(subdealer_id, "subdealer_id")
        start = to_utc_datetime(start_date, "start_date") if start_date is not None else None
        end = to_utc_datetime(end_date, "end_date") if end_date is not None else None
        if start and end and end < start:
            raise ValidationError("end_date must not be before start_date")

        query: Dict[str, Any] = {"subdealer": subdealer_oid}
        if start or end:
            query["createdAt"] = {}
            if start:
                query["createdAt"]["$gte"] = start
            if end:
                query["createdAt"]["$lte"] = end

        bookings = await self.db[Collections.BOOKINGS].find(query).sort("createdAt", 1).to_list(length=None)
        masters = await self.db[Collections.COMMISSION_MASTERS].find(
            {"subdealer_id": subdealer_oid}
        ).to_list(length=None)
        masters_by_model = {str(m["model_id"]): m for m in masters}
        header_keys = await self._header_keys(bookings)

        per_booking = []
        overall = ZERO
        for booking in bookings:
            result = compute_booking_commission(
                booking, masters_by_model.get(str(booking.get("model"))), header_keys
            )
            overall += to_decimal(result["total_commission"])
            per_booking.append(result)

        logger.info(
            f"[COMMISSION] Subdealer {subdealer_oid}: {len(bookings)} bookings, "
            f"total commission {to_float(overall)}"
        )
        return {
            "subdealer_id": subdealer_oid,
            "period": {"start_date": start, "end_date": end},
            "total_bookings": len(bookings),
            "per_booking": per_booking,
            "total": to_float(overall),
        }

    async def _header_keys(self, bookings: List[Dict[str, Any]]) -> Dict[str, str]:
        header_ids = {
            component.get("header")
            for booking in bookings
            for component in booking.get("priceComponents") or []
            if component.get("header") is not None
        }
        if not header_ids:
            return {}
        headers = await self.db[Collections.HEADERS].find(
            {"_id": {"$in": list(header_ids)}}
        ).to_list(length=None)
        return {str(h["_id"]): h.get("header_key") for h in headers}

    async def monthly_report(self, subdealer_id: Any, year: int, month: int) -> Dict[str, Any]:
        if not MINYEAR <= year <= MAXYEAR:
            raise ValidationError(f"year must be between {MINYEAR} and {MAXYEAR}", details={"year": year})
        if not 1 <= month <= 12:
            raise ValidationError("month must be between 1 and 12", details={"month": month})
        last_day = calendar.monthrange(year, month)[1]
        start = datetime(year, month, 1)
        end = datetime(year, month, last_day, 23, 59, 59, 999000)

        report = await self.calculate_commission(subdealer_id, start, end)
        report["year"] = year
        report["month"] = month
        return report
