"""
APPROVAL FLOW ENGINE

Tracks which approvers must sign off on a document and whether the required
count has been reached.

Rules:
1. Applicant in the approver set => applicant excluded, one approval required
   (self-approval case)
2. Otherwise the resource type's configured count (1 or 2), capped at the
   number of approvers actually available
3. An approver can sign off once; non-members are rejected
4. The owner can never approve or reject their own document, checked at every
   entry point even though flow construction already excluded them
5. is_complete flips exactly once; completion-gated side effects key off the
   incomplete -> complete edge reported by record_approval()
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import logging

from .errors import (
    DuplicateApprovalError,
    SelfApprovalError,
    UnauthorizedApproverError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalPolicy:
    """Per-resource-type approval configuration."""
    required_approval_count: int = 1
    exclude_applicant: bool = True

    def __post_init__(self):
        if self.required_approval_count < 1:
            raise ValidationError("required_approval_count must be at least 1")


@dataclass(frozen=True)
class ApprovalEntry:
    approver_id: str
    approved_at: datetime
    step: int

    def to_dict(self) -> Dict[str, Any]:
        return {"approver_id": self.approver_id, "approved_at": self.approved_at, "step": self.step}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalEntry":
        return cls(
            approver_id=data["approver_id"],
            approved_at=data.get("approved_at") or datetime.utcnow(),
            step=int(data["step"]),
        )


@dataclass(frozen=True)
class ApprovalFlow:
    required_approvers: List[str]
    required_approval_count: int
    approvals: List[ApprovalEntry] = field(default_factory=list)
    is_complete: bool = False
    is_self_approval_case: bool = False

    @property
    def approval_count(self) -> int:
        return len(self.approvals)

    @property
    def current_step(self) -> int:
        return len(self.approvals) + 1

    def has_approved(self, approver_id: str) -> bool:
        return any(a.approver_id == approver_id for a in self.approvals)

    def pending_approvers(self) -> List[str]:
        return [a for a in self.required_approvers if not self.has_approved(a)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required_approvers": list(self.required_approvers),
            "required_approval_count": self.required_approval_count,
            "approvals": [a.to_dict() for a in self.approvals],
            "current_step": self.current_step,
            "is_complete": self.is_complete,
            "is_self_approval_case": self.is_self_approval_case,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ApprovalFlow"]:
        if not data:
            return None
        approvals = [ApprovalEntry.from_dict(a) for a in data.get("approvals", [])]
        count = int(data.get("required_approval_count", 1))
        return cls(
            required_approvers=list(data.get("required_approvers", [])),
            required_approval_count=count,
            approvals=approvals,
            # recomputed, never trusted from storage
            is_complete=len(approvals) >= count,
            is_self_approval_case=bool(data.get("is_self_approval_case", False)),
        )


class ApprovalFlowEngine:
    """Stateless operations over ApprovalFlow values."""

    def init_flow(
        self,
        required_approvers: Iterable[str],
        applicant_id: str,
        policy: ApprovalPolicy
    ) -> ApprovalFlow:
        # Ordered de-duplication keeps notification order stable
        approvers: List[str] = []
        for approver_id in required_approvers:
            if approver_id and approver_id not in approvers:
                approvers.append(approver_id)

        is_self_approval_case = policy.exclude_applicant and applicant_id in approvers

        if is_self_approval_case:
            approvers = [a for a in approvers if a != applicant_id]
            count = 1
        else:
            count = policy.required_approval_count

        if not approvers:
            raise ValidationError("No approvers configured. Please contact an administrator.")

        if count > len(approvers):
            logger.warning(
                f"[APPROVAL] Configured count {count} exceeds available approvers "
                f"({len(approvers)}); capping"
            )
            count = len(approvers)

        return ApprovalFlow(
            required_approvers=approvers,
            required_approval_count=count,
            approvals=[],
            is_complete=False,
            is_self_approval_case=is_self_approval_case,
        )

    def record_approval(
        self,
        flow: ApprovalFlow,
        approver_id: str,
        approved_at: Optional[datetime] = None
    ) -> ApprovalFlow:
        """
        Append an approval and recompute completion.

        Raises:
            DuplicateApprovalError: approver already signed off
            UnauthorizedApproverError: approver not in the required set
            ValidationError: flow already complete
        """
        if flow.has_approved(approver_id):
            raise DuplicateApprovalError(approver_id)

        self.require_approver(flow, approver_id)

        if flow.is_complete:
            raise ValidationError("Approval flow is already complete")

        entry = ApprovalEntry(
            approver_id=approver_id,
            approved_at=approved_at or datetime.utcnow(),
            step=len(flow.approvals) + 1,
        )
        approvals = list(flow.approvals) + [entry]

        return replace(
            flow,
            approvals=approvals,
            is_complete=len(approvals) >= flow.required_approval_count,
        )

    def require_approver(self, flow: Optional[ApprovalFlow], actor_id: str) -> None:
        if flow is None or actor_id not in flow.required_approvers:
            raise UnauthorizedApproverError(actor_id)

    def prevent_self_approval(self, actor_id: str, owner_id: str, action: str = "approve") -> None:
        if actor_id == owner_id:
            logger.warning(f"[APPROVAL] Blocked self-{action} by {actor_id}")
            raise SelfApprovalError(actor_id, action)
