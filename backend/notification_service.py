"""
NOTIFICATION HAND-OFF

Workflow actions produce NotificationRequest values; this service writes
them to the notification_outbox collection for an external delivery worker.
Templating and delivery (email, push, in-app) are not done here.
"""

from datetime import datetime
from typing import List, Optional
import logging

from workflow_core.documents import NotificationRequest
from workflow_core.repository import WorkflowRepository

logger = logging.getLogger(__name__)

OUTBOX_PENDING = "PENDING"


class NotificationDispatcher:

    def __init__(self, repository: WorkflowRepository):
        self.repository = repository

    async def dispatch(self, notifications: List[NotificationRequest]) -> int:
        """Queue notifications. Returns the number queued."""
        if not notifications:
            return 0

        now = datetime.utcnow()
        records = [
            {**n.to_dict(), "status": OUTBOX_PENDING, "read": False, "created_at": now}
            for n in notifications
        ]
        await self.repository.insert_notifications(records)

        logger.info(
            f"[NOTIFY] Queued {len(records)} notification(s) for "
            f"{sorted({n.recipient_id for n in notifications})}"
        )
        return len(records)

    async def get_for_recipient(self, recipient_id: str, status: Optional[str] = None, limit: int = 50):
        query = {"recipient_id": recipient_id}
        if status:
            query["status"] = status

        notifications = await self.repository.find_notifications(query, limit=limit)
        for notification in notifications:
            notification["notification_id"] = str(notification.pop("_id"))
        return notifications
