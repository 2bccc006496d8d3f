"""
Approval Workflow Core Modules
"""
from .errors import (
    WorkflowError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    UnauthorizedApproverError,
    SelfApprovalError,
    DuplicateApprovalError,
    InsufficientBalanceError,
    ConcurrencyConflictError,
    DependencyUnavailableError
)

from .state_machine import (
    StateMachine,
    StateMachineRegistry,
    TransitionCheck
)

from .approval_flow import (
    ApprovalFlow,
    ApprovalFlowEngine,
    ApprovalPolicy
)

from .ledger import (
    LedgerAccount,
    LedgerKey,
    LedgerOp,
    LedgerPolicy,
    LedgerService
)

from .atomic_numbering import (
    NumberingPolicy,
    SequenceNumberIssuer
)

from .version_store import (
    Change,
    VersionSnapshot,
    VersionStore
)

from .documents import (
    NotificationRequest,
    WorkflowDocument,
    WorkflowResult
)

from .repository import (
    InMemoryWorkflowRepository,
    MotorWorkflowRepository,
    WorkflowRepository
)

from .workflow_types import (
    DocType,
    Status,
    WORKFLOW_TYPES,
    STATE_MACHINES
)

from .orchestrator import (
    WorkflowOrchestrator,
    retry_on_conflict
)

__all__ = [
    # Errors
    'WorkflowError',
    'ValidationError',
    'NotFoundError',
    'InvalidTransitionError',
    'UnauthorizedApproverError',
    'SelfApprovalError',
    'DuplicateApprovalError',
    'InsufficientBalanceError',
    'ConcurrencyConflictError',
    'DependencyUnavailableError',
    # State Machine
    'StateMachine',
    'StateMachineRegistry',
    'TransitionCheck',
    # Approval Flow
    'ApprovalFlow',
    'ApprovalFlowEngine',
    'ApprovalPolicy',
    # Ledger
    'LedgerAccount',
    'LedgerKey',
    'LedgerOp',
    'LedgerPolicy',
    'LedgerService',
    # Numbering
    'NumberingPolicy',
    'SequenceNumberIssuer',
    # Versions
    'Change',
    'VersionSnapshot',
    'VersionStore',
    # Documents
    'NotificationRequest',
    'WorkflowDocument',
    'WorkflowResult',
    # Persistence
    'InMemoryWorkflowRepository',
    'MotorWorkflowRepository',
    'WorkflowRepository',
    # Configuration
    'DocType',
    'Status',
    'WORKFLOW_TYPES',
    'STATE_MACHINES',
    # Orchestration
    'WorkflowOrchestrator',
    'retry_on_conflict',
]
