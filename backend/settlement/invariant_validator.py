"""
BOOKING INVARIANT VALIDATOR

Enforces booking balance constraints:
1. discountedAmount <= totalAmount
2. each price component: discountedValue <= originalValue
3. receivedAmount >= 0
4. after a credit: balanceAmount == max(0, discountedAmount - receivedAmount)

Runs on the prospective booking state inside the atomic scope, so a
violation aborts the write.
"""

from typing import Any, Dict, List
import logging

from settlement.exceptions import InvariantViolationError
from settlement.financial_precision import to_decimal, round_financial, to_float, ZERO

logger = logging.getLogger(__name__)


def collect_booking_violations(booking: Dict[str, Any], after_credit: bool = False) -> List[Dict[str, Any]]:
    violations = []

    total = to_decimal(booking.get("totalAmount"))
    discounted = to_decimal(booking.get("discountedAmount"))
    received = to_decimal(booking.get("receivedAmount"))
    balance = to_decimal(booking.get("balanceAmount"))

    if booking.get("totalAmount") is not None and round_financial(discounted) > round_financial(total):
        violations.append({
            "type": "DISCOUNTED_EXCEEDS_TOTAL",
            "discountedAmount": to_float(discounted),
            "totalAmount": to_float(total),
        })

    for index, component in enumerate(booking.get("priceComponents") or []):
        original = to_decimal(component.get("originalValue"))
        component_discounted = component.get("discountedValue")
        if component_discounted is None:
            continue
        if round_financial(component_discounted) > round_financial(original):
            violations.append({
                "type": "COMPONENT_DISCOUNT_EXCEEDS_ORIGINAL",
                "index": index,
                "header": str(component.get("header")),
                "discountedValue": to_float(component_discounted),
                "originalValue": to_float(original),
            })

    if received < ZERO:
        violations.append({
            "type": "NEGATIVE_RECEIVED",
            "receivedAmount": to_float(received),
        })

    if after_credit:
        expected = max(ZERO, discounted - received)
        if round_financial(balance) != round_financial(expected):
            violations.append({
                "type": "BALANCE_MISMATCH",
                "balanceAmount": to_float(balance),
                "expected": to_float(expected),
            })

    return violations


def validate_booking_invariants(booking: Dict[str, Any], after_credit: bool = False) -> bool:
    """
    Raises InvariantViolationError listing every broken constraint.
    Returns True when all constraints hold.
    """
    violations = collect_booking_violations(booking, after_credit)
    if violations:
        booking_id = str(booking.get("_id"))
        logger.error(f"[RECONCILE] Invariant violation on booking {booking_id}: {violations}")
        raise InvariantViolationError(
            violation_type=violations[0]["type"],
            message=f"Booking {booking_id} violates {len(violations)} balance invariant(s)",
            details={"booking_id": booking_id, "violations": violations}
        )
    return True
