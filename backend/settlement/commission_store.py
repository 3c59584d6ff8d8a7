"""
COMMISSION RATE STORE

Time-versioned commission rates per (subdealer, model).

Implements:
1. upsert_rates: validated full replacement of commission_rates, diffed
   against the stored rows into CREATED / UPDATED / DEACTIVATED history
2. set_date_range: one effective window across all of a subdealer's rows
3. Reads: master, rate history, active masters per subdealer / per model
4. Master-level activation toggle
5. Unique (subdealer_id, model_id) constraint

Current rows and their history entries are written by a single update, so
the history log can never disagree with the state it describes.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from settlement.documents import Collections, paginate, to_object_id, to_utc_datetime, utc_now
from settlement.exceptions import (
    ConflictError, InvariantViolationError, NotFoundError, StateError, ValidationError
)
from settlement.financial_precision import round_financial, to_float, validate_non_negative, HUNDRED

logger = logging.getLogger(__name__)

CREATED = "CREATED"
UPDATED = "UPDATED"
DEACTIVATED = "DEACTIVATED"


# =============================================================================
# ROW HELPERS (pure)
# =============================================================================

def _same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return to_utc_datetime(a, "date") == to_utc_datetime(b, "date")


def _row_changed(existing: Dict[str, Any], incoming: Dict[str, Any]) -> bool:
    return (
        round_financial(existing.get("commission_rate")) != round_financial(incoming["commission_rate"])
        or bool(existing.get("is_active", True)) != incoming["is_active"]
        or not _same_instant(existing.get("applicable_from"), incoming["applicable_from"])
        or not _same_instant(existing.get("applicable_to"), incoming["applicable_to"])
    )


def _history_entry(
    row: Dict[str, Any],
    change_type: str,
    actor: Optional[str],
    changed_at: datetime,
    previous: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {
        "header_id": row["header_id"],
        "commission_rate": row["commission_rate"],
        "is_active": row["is_active"],
        "applicable_from": row["applicable_from"],
        "applicable_to": row.get("applicable_to"),
        "changed_by": actor,
        "changed_at": changed_at,
        "change_type": change_type,
        "previous_value": previous.get("commission_rate") if previous else None,
        "previous_from": previous.get("applicable_from") if previous else None,
        "previous_to": previous.get("applicable_to") if previous else None,
    }


def diff_commission_rates(
    current: List[Dict[str, Any]],
    incoming: List[Dict[str, Any]],
    actor: Optional[str],
    changed_at: datetime
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Diff a full replacement list against the stored rows, by header.

    Returns (new_rows, history). new_rows is the incoming list; headers
    dropped from it are removed and recorded as DEACTIVATED. Every history
    entry carries the same changed_at.
    """
    current_by_header = {str(row["header_id"]): row for row in current}
    incoming_headers = set()
    history = []

    for row in incoming:
        key = str(row["header_id"])
        incoming_headers.add(key)
        existing = current_by_header.get(key)
        if existing is None:
            history.append(_history_entry(row, CREATED, actor, changed_at))
        elif _row_changed(existing, row):
            history.append(_history_entry(row, UPDATED, actor, changed_at, previous=existing))

    for key, existing in current_by_header.items():
        if key in incoming_headers:
            continue
        deactivated = {
            "header_id": existing["header_id"],
            "commission_rate": 0.0,
            "is_active": False,
            "applicable_from": changed_at,
            "applicable_to": None,
        }
        history.append(_history_entry(deactivated, DEACTIVATED, actor, changed_at, previous=existing))

    return list(incoming), history


def apply_date_range(
    rows: List[Dict[str, Any]],
    from_date: datetime,
    to_date: Optional[datetime],
    actor: Optional[str],
    changed_at: datetime
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Rows with the window applied, plus UPDATED history for rows that moved."""
    new_rows = []
    history = []
    for row in rows:
        if _same_instant(row.get("applicable_from"), from_date) and _same_instant(row.get("applicable_to"), to_date):
            new_rows.append(row)
            continue
        moved = dict(row, applicable_from=from_date, applicable_to=to_date)
        moved["is_active"] = bool(row.get("is_active", True))
        history.append(_history_entry(moved, UPDATED, actor, changed_at, previous=row))
        new_rows.append(moved)
    return new_rows, history


def assert_unique_headers(rows: List[Dict[str, Any]]):
    seen = set()
    duplicates = set()
    for row in rows:
        key = str(row.get("header_id"))
        if key in seen:
            duplicates.add(key)
        seen.add(key)
    if duplicates:
        raise InvariantViolationError(
            violation_type="DUPLICATE_COMMISSION_HEADER",
            message=f"Commission rates contain duplicate headers: {', '.join(sorted(duplicates))}",
            details={"header_ids": sorted(duplicates)}
        )


# =============================================================================
# STORE
# =============================================================================

class CommissionRateStore:
    def __init__(self, db: AsyncIOMotorDatabase, audit=None):
        self.db = db
        self.audit = audit
        self.collection = db[Collections.COMMISSION_MASTERS]

    async def create_indexes(self):
        try:
            await self.collection.create_index(
                [("subdealer_id", 1), ("model_id", 1)],
                unique=True,
                name="unique_subdealer_model"
            )
            logger.info("[COMMISSION] Created unique subdealer/model index")
        except Exception as e:
            logger.warning(f"[COMMISSION] Index creation result: {str(e)}")

    async def _normalize_rates(self, model: Dict[str, Any], rates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not isinstance(rates, list):
            raise ValidationError("Commission rates array is required", details={"field": "commission_rates"})

        header_ids = [to_object_id(rate.get("header_id"), "header_id") for rate in rates]
        headers = await self.db[Collections.HEADERS].find(
            {"_id": {"$in": header_ids}}
        ).to_list(length=None)
        headers_by_id = {str(h["_id"]): h for h in headers}

        now = utc_now()
        seen = set()
        rows = []
        for header_id, rate in zip(header_ids, rates):
            key = str(header_id)
            header = headers_by_id.get(key)
            if header is None:
                raise NotFoundError(f"Header {key} not found", details={"header_id": key})
            if header.get("type") != model.get("type"):
                raise ValidationError(
                    f"Header {key} is not valid for model type {model.get('type')}",
                    details={"header_id": key, "model_type": model.get("type")}
                )
            if header.get("is_discount"):
                raise ValidationError(
                    f"Header {key} is a discount header and cannot carry commission",
                    details={"header_id": key}
                )
            if key in seen:
                raise ValidationError(f"Duplicate header_id found: {key}", details={"header_id": key})
            seen.add(key)

            raw_rate = rate.get("commission_rate")
            if raw_rate is None:
                raise ValidationError("Each commission rate must have a commission_rate", details={"header_id": key})
            value = round_financial(validate_non_negative(raw_rate, "commission_rate"))
            if value > HUNDRED:
                raise ValidationError(
                    "Commission rate must be a number between 0 and 100",
                    details={"header_id": key, "commission_rate": str(raw_rate)}
                )

            applicable_from = (
                to_utc_datetime(rate["applicable_from"], "applicable_from")
                if rate.get("applicable_from") is not None else now
            )
            applicable_to = None
            if rate.get("applicable_to") is not None:
                applicable_to = to_utc_datetime(rate["applicable_to"], "applicable_to")
                if applicable_to <= applicable_from:
                    raise ValidationError(
                        "applicable_to must be after applicable_from",
                        details={"header_id": key}
                    )

            rows.append({
                "header_id": header_id,
                "commission_rate": to_float(value),
                "is_active": rate.get("is_active") is not False,
                "applicable_from": applicable_from,
                "applicable_to": applicable_to,
            })
        return rows

    async def upsert_rates(
        self,
        subdealer_id: Any,
        model_id: Any,
        rates: List[Dict[str, Any]],
        actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Replace the (subdealer, model) rate list and append history for what changed.
        """
        subdealer_oid = to_object_id(subdealer_id, "subdealer_id")
        model_oid = to_object_id(model_id, "model_id")

        if not await self.db[Collections.SUBDEALERS].find_one({"_id": subdealer_oid}):
            raise NotFoundError("Subdealer not found", details={"subdealer_id": str(subdealer_oid)})
        model = await self.db[Collections.MODELS].find_one({"_id": model_oid})
        if not model:
            raise NotFoundError("Model not found", details={"model_id": str(model_oid)})

        incoming = await self._normalize_rates(model, rates)
        assert_unique_headers(incoming)

        changed_at = utc_now()
        master = await self.collection.find_one({"subdealer_id": subdealer_oid, "model_id": model_oid})

        if master is None:
            new_rows, history = diff_commission_rates([], incoming, actor, changed_at)
            master = {
                "_id": ObjectId(),
                "subdealer_id": subdealer_oid,
                "model_id": model_oid,
                "commission_rates": new_rows,
                "rate_history": history,
                "is_active": True,
                "created_by": actor,
                "updated_by": actor,
                "created_at": changed_at,
                "updated_at": changed_at,
            }
            try:
                await self.collection.insert_one(master)
            except DuplicateKeyError:
                raise ConflictError(
                    "Commission master was created concurrently. Please retry.",
                    details={"subdealer_id": str(subdealer_oid), "model_id": str(model_oid)}
                )
            action = "CREATE"
            previous = None
        else:
            new_rows, history = diff_commission_rates(master.get("commission_rates") or [], incoming, actor, changed_at)
            update: Dict[str, Any] = {
                "$set": {"commission_rates": new_rows, "updated_by": actor, "updated_at": changed_at}
            }
            if history:
                update["$push"] = {"rate_history": {"$each": history}}
            await self.collection.update_one({"_id": master["_id"]}, update)
            previous = {"commission_rates": master.get("commission_rates")}
            master = await self.collection.find_one({"_id": master["_id"]})
            action = "UPDATE"

        logger.info(
            f"[COMMISSION] Rates for subdealer {subdealer_oid} / model {model_oid}: "
            f"{len(new_rows)} rows, {len(history)} history entries"
        )
        if self.audit is not None:
            await self.audit.log_action(
                entity_type="COMMISSION_MASTER",
                entity_id=master["_id"],
                action_type=action,
                user_id=actor,
                old_value=previous,
                new_value={"commission_rates": new_rows}
            )
        return master

    async def set_date_range(
        self,
        subdealer_id: Any,
        from_date: Any,
        to_date: Any = None,
        actor: Optional[str] = None
    ) -> Dict[str, int]:
        """
        Apply one effective window to every rate row of the subdealer.

        Returns {"updated_count": masters the window was applied to,
        "changed_count": masters whose rows actually moved}.
        """
        subdealer_oid = to_object_id(subdealer_id, "subdealer_id")
        if from_date is None:
            raise ValidationError("fromDate is required", details={"field": "fromDate"})
        from_date = to_utc_datetime(from_date, "fromDate")
        to_date = to_utc_datetime(to_date, "toDate") if to_date is not None else None
        if to_date is not None and to_date <= from_date:
            raise ValidationError("toDate must be after fromDate", details={"field": "toDate"})

        masters = await self.collection.find({"subdealer_id": subdealer_oid}).to_list(length=None)
        if not masters:
            raise StateError(
                "No commission master found for this subdealer",
                details={"subdealer_id": str(subdealer_oid)}
            )

        changed_at = utc_now()
        changed = 0
        for master in masters:
            new_rows, history = apply_date_range(
                master.get("commission_rates") or [], from_date, to_date, actor, changed_at
            )
            if not history:
                continue
            await self.collection.update_one(
                {"_id": master["_id"]},
                {
                    "$set": {"commission_rates": new_rows, "updated_by": actor, "updated_at": changed_at},
                    "$push": {"rate_history": {"$each": history}},
                }
            )
            changed += 1

        logger.info(
            f"[COMMISSION] Date range {from_date.isoformat()} - "
            f"{to_date.isoformat() if to_date else 'open'} applied to {changed}/{len(masters)} masters "
            f"of subdealer {subdealer_oid}"
        )
        return {"updated_count": len(masters), "changed_count": changed}

    async def get_master(self, subdealer_id: Any, model_id: Any) -> Dict[str, Any]:
        subdealer_oid = to_object_id(subdealer_id, "subdealer_id")
        model_oid = to_object_id(model_id, "model_id")
        master = await self.collection.find_one({"subdealer_id": subdealer_oid, "model_id": model_oid})
        if not master:
            raise NotFoundError(
                "Commission master not found",
                details={"subdealer_id": str(subdealer_oid), "model_id": str(model_oid)}
            )
        return master

    async def get_rate_history(
        self,
        subdealer_id: Any,
        model_id: Any,
        header_id: Any = None
    ) -> List[Dict[str, Any]]:
        master = await self.get_master(subdealer_id, model_id)
        history = master.get("rate_history") or []
        if header_id is not None:
            header_oid = to_object_id(header_id, "header_id")
            history = [h for h in history if str(h.get("header_id")) == str(header_oid)]
        # history is appended in order; reversing first keeps same-instant entries newest first
        return sorted(reversed(history), key=lambda h: h.get("changed_at") or datetime.min, reverse=True)

    async def list_masters_by_subdealer(self, subdealer_id: Any, page: Any = 1, limit: Any = 50) -> Dict[str, Any]:
        subdealer_oid = to_object_id(subdealer_id, "subdealer_id")
        if not await self.db[Collections.SUBDEALERS].find_one({"_id": subdealer_oid}):
            raise NotFoundError("Subdealer not found", details={"subdealer_id": str(subdealer_oid)})
        masters, pagination = await paginate(
            self.collection, {"subdealer_id": subdealer_oid, "is_active": True},
            [("updated_at", -1)], page, limit
        )
        return {"commission_masters": masters, "pagination": pagination}

    async def list_masters_by_model(self, model_id: Any, page: Any = 1, limit: Any = 50) -> Dict[str, Any]:
        model_oid = to_object_id(model_id, "model_id")
        if not await self.db[Collections.MODELS].find_one({"_id": model_oid}):
            raise NotFoundError("Model not found", details={"model_id": str(model_oid)})
        masters, pagination = await paginate(
            self.collection, {"model_id": model_oid, "is_active": True},
            [("updated_at", -1)], page, limit
        )
        return {"commission_masters": masters, "pagination": pagination}

    async def set_master_status(self, master_id: Any, is_active: Any, actor: Optional[str] = None) -> Dict[str, Any]:
        """
        Switch a whole commission master on or off. Rows and history are
        untouched; an inactive master earns no commission.
        """
        master_oid = to_object_id(master_id, "master_id")
        if not isinstance(is_active, bool):
            raise ValidationError("is_active must be a boolean", details={"is_active": str(is_active)})

        previous = await self.collection.find_one({"_id": master_oid})
        if not previous:
            raise NotFoundError("Commission master not found", details={"master_id": str(master_oid)})

        await self.collection.update_one(
            {"_id": master_oid},
            {"$set": {"is_active": is_active, "updated_by": actor, "updated_at": utc_now()}}
        )
        master = await self.collection.find_one({"_id": master_oid})

        logger.info(f"[COMMISSION] Master {master_oid} is_active -> {is_active}")
        if self.audit is not None:
            await self.audit.log_action(
                entity_type="COMMISSION_MASTER",
                entity_id=master_oid,
                action_type="STATUS_CHANGE",
                user_id=actor,
                old_value={"is_active": previous.get("is_active", True)},
                new_value={"is_active": is_active}
            )
        return master
