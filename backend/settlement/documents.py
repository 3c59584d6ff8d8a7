"""
Collection names, id parsing, pagination and JSON serialisation for stored documents.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import math

from bson import ObjectId, Decimal128

from settlement.exceptions import ValidationError


class Collections:
    BOOKINGS = "bookings"
    LEDGERS = "ledgers"
    RECEIPTS = "receipts"
    FINANCE_DISBURSEMENTS = "financedisbursements"
    COMMISSION_MASTERS = "commissionmasters"
    HEADERS = "headers"
    MODELS = "models"
    SUBDEALERS = "subdealers"
    CASH_LOCATIONS = "cashlocations"
    BANKS = "banks"
    FINANCE_PROVIDERS = "financeproviders"
    COUNTERS = "counters"
    AUDIT_LOGS = "audit_logs"


def to_object_id(value: Any, field_name: str) -> ObjectId:
    """Parse an id from a request; raises ValidationError on bad input."""
    if isinstance(value, ObjectId):
        return value
    if value is None or not ObjectId.is_valid(str(value)):
        raise ValidationError(
            f"Invalid {field_name} format",
            details={"field": field_name, "value": None if value is None else str(value)}
        )
    return ObjectId(str(value))


def same_id(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return False
    return str(a) == str(b)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        result[key] = _serialize_value(value)
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


def to_utc_datetime(value: Any, field_name: str) -> datetime:
    """
    Naive UTC datetime truncated to milliseconds, the precision MongoDB
    stores. Accepts datetime, date-only or ISO-8601 strings.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(
                f"{field_name} must be a valid date",
                details={"field": field_name, "value": value}
            )
    if not isinstance(value, datetime):
        raise ValidationError(
            f"{field_name} must be a valid date",
            details={"field": field_name, "value": None if value is None else str(value)}
        )
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    return to_utc_datetime(datetime.utcnow(), "now")


MAX_PAGE_SIZE = 200


async def paginate(
    collection,
    query: Dict[str, Any],
    sort: List[Tuple[str, int]],
    page: Any = 1,
    limit: Any = 20
) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """
    One page of `query` plus its pagination block.
    page and limit must be positive integers; limit is capped at MAX_PAGE_SIZE.
    """
    try:
        page = int(page)
        limit = int(limit)
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers", details={"page": page, "limit": limit})
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be at least 1", details={"page": page, "limit": limit})
    limit = min(limit, MAX_PAGE_SIZE)

    total = await collection.count_documents(query)
    docs = await collection.find(query).sort(sort).skip((page - 1) * limit).limit(limit).to_list(length=limit)
    pages = math.ceil(total / limit)
    return docs, {
        "total": total,
        "pages": pages,
        "page": page,
        "limit": limit,
        "hasNext": page < pages,
        "hasPrev": page > 1,
    }
