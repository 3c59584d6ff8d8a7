from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from settlement.documents import Collections, serialize_doc

logger = logging.getLogger(__name__)


class AuditService:
    """Service for immutable audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[Collections.AUDIT_LOGS]

    async def log_action(
        self,
        entity_type: str,
        entity_id: Any,
        action_type: str,
        user_id: Optional[str],
        booking_id: Optional[Any] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ):
        """
        Log an action to audit trail (INSERT ONLY).
        Settlement records are never deleted, so there is no DELETE action.
        """
        try:
            audit_entry = {
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "booking_id": str(booking_id) if booking_id is not None else None,
                "action_type": action_type,
                "old_value_json": serialize_doc(old_value),
                "new_value_json": serialize_doc(new_value),
                "user_id": user_id,
                "timestamp": datetime.utcnow()
            }

            await self.collection.insert_one(audit_entry)
            logger.info(f"[AUDIT] {action_type} on {entity_type}:{entity_id} by user:{user_id}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"[AUDIT] Failed to create audit log: {str(e)}")

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        limit: int = 100
    ):
        """Retrieve audit logs (READ ONLY)"""
        query = {}

        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id
        if booking_id:
            query["booking_id"] = booking_id

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)

        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs
