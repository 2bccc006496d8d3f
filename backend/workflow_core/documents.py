"""
Workflow document record and the value types the orchestrator hands back.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import copy

from bson import ObjectId

from .approval_flow import ApprovalFlow


def new_id() -> str:
    """Document ids are ObjectId hex strings."""
    return str(ObjectId())


class HistoryAction:
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    REVISED = "REVISED"
    STATUS_CHANGED = "STATUS_CHANGED"
    AMENDED = "AMENDED"


@dataclass(frozen=True)
class ApprovalHistoryEntry:
    actor_id: str
    action: str
    timestamp: datetime
    remarks: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "actor_id": self.actor_id,
            "action": self.action,
            "timestamp": self.timestamp,
            "from_status": self.from_status,
            "to_status": self.to_status,
        }
        if self.remarks:
            data["remarks"] = self.remarks
        return data


@dataclass
class WorkflowDocument:
    """
    A business record moving through a status lifecycle.

    payload holds the type-specific fields (leave dates and days, PO items
    and totals, ...). revision is the optimistic concurrency token: every
    persisted mutation is conditional on it and increments it.
    """
    id: str
    doc_type: str
    status: str
    owner_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    number: Optional[str] = None
    approver_ids: List[str] = field(default_factory=list)
    approval_flow: Optional[ApprovalFlow] = None
    approval_history: List[Dict[str, Any]] = field(default_factory=list)
    timestamps: Dict[str, datetime] = field(default_factory=dict)
    revision: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve a top-level attribute or payload field by name."""
        if key in ("id", "doc_type", "status", "owner_id", "number"):
            return getattr(self, key)
        return self.payload.get(key, default)

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "doc_type": self.doc_type,
            "status": self.status,
            "owner_id": self.owner_id,
            "number": self.number,
            "payload": copy.deepcopy(self.payload),
            "approver_ids": list(self.approver_ids),
            "approval_flow": self.approval_flow.to_dict() if self.approval_flow else None,
            "approval_history": list(self.approval_history),
            "timestamps": dict(self.timestamps),
            "revision": self.revision,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "WorkflowDocument":
        return cls(
            id=str(doc["_id"]),
            doc_type=doc["doc_type"],
            status=doc["status"],
            owner_id=doc["owner_id"],
            payload=copy.deepcopy(doc.get("payload") or {}),
            number=doc.get("number"),
            approver_ids=list(doc.get("approver_ids") or []),
            approval_flow=ApprovalFlow.from_dict(doc.get("approval_flow")),
            approval_history=list(doc.get("approval_history") or []),
            timestamps=dict(doc.get("timestamps") or {}),
            revision=int(doc.get("revision", 0)),
            created_at=doc.get("created_at") or datetime.utcnow(),
            updated_at=doc.get("updated_at") or datetime.utcnow(),
        )


@dataclass(frozen=True)
class NotificationRequest:
    """Handed to the external dispatcher. The core never delivers these itself."""
    recipient_id: str
    category: str
    title: str
    message: str
    link_url: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "category": self.category,
            "title": self.title,
            "message": self.message,
            "link_url": self.link_url,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
        }


@dataclass
class WorkflowResult:
    document: WorkflowDocument
    notifications: List[NotificationRequest] = field(default_factory=list)
    ledger_effects: List[Dict[str, Any]] = field(default_factory=list)
