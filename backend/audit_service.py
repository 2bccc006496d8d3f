from datetime import datetime
from typing import Optional, Dict, Any
import logging

from workflow_core.repository import WorkflowRepository

logger = logging.getLogger(__name__)


class AuditService:
    """Service for immutable audit logging"""

    def __init__(self, repository: WorkflowRepository):
        self.repository = repository

    async def log_action(
        self,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: str,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ):
        """
        Log an action to audit trail (INSERT ONLY).

        Runs after the workflow transaction has committed. A failure here is
        logged and dropped; the committed action stands.
        """
        try:
            audit_entry = {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action_type": action_type,
                "old_value_json": old_value,
                "new_value_json": new_value,
                "user_id": user_id,
                "timestamp": datetime.utcnow()
            }

            await self.repository.insert_audit(audit_entry)
            logger.info(f"[AUDIT] {action_type} on {entity_type}:{entity_id} by user:{user_id}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"[AUDIT] Failed to create audit log: {str(e)}")

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100
    ):
        """Retrieve audit logs (READ ONLY)"""
        query = {}

        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id

        logs = await self.repository.find_audit(query, limit=limit)

        # Convert _id to string
        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs
