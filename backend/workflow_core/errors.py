"""
WORKFLOW ERROR TAXONOMY

Typed, user-actionable failures raised by the approval core.

Retry policy:
- ConcurrencyConflictError and DependencyUnavailableError are safe to retry
  the whole operation (retryable = True).
- Everything else needs caller correction first.
"""

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base exception for all approval-core failures."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(WorkflowError):
    """Raised when action parameters or configuration are invalid."""
    pass


class NotFoundError(WorkflowError):
    """Raised when a document, ledger account or version does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class InvalidTransitionError(WorkflowError):
    """Raised when attempting a status transition not in the type's graph."""

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(message)


class UnauthorizedApproverError(WorkflowError):
    """Raised when the actor is not one of the required approvers."""

    def __init__(self, actor_id: str, document_id: Optional[str] = None):
        self.actor_id = actor_id
        self.document_id = document_id
        super().__init__(f"User {actor_id} is not authorized to act on this approval")


class SelfApprovalError(WorkflowError):
    """Raised when the document owner tries to approve or reject their own request."""

    def __init__(self, actor_id: str, action: str = "approve"):
        self.actor_id = actor_id
        self.action = action
        super().__init__(f"Self-approval is not allowed: user {actor_id} cannot {action} their own request")


class DuplicateApprovalError(WorkflowError):
    """Raised when an approver signs off on the same flow twice."""

    def __init__(self, approver_id: str):
        self.approver_id = approver_id
        super().__init__(f"Approver {approver_id} has already approved this request")


class InsufficientBalanceError(WorkflowError):
    """Raised when a ledger operation would drive availability below zero."""

    def __init__(self, scope: str, requested: Any, available: Any):
        self.scope = scope
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance for {scope}. Available: {available}, Requested: {requested}"
        )


class ConcurrencyConflictError(WorkflowError):
    """Raised when a concurrent write won the race. Re-read and retry."""

    retryable = True

    def __init__(self, entity: str, entity_id: str, reason: str = "concurrent modification"):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"Concurrency conflict on {entity} {entity_id}: {reason}")


class DependencyUnavailableError(WorkflowError):
    """Raised when the backing store cannot be reached."""

    retryable = True
