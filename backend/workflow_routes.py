"""
APPROVAL WORKFLOW API ROUTES

Implements:
- Section 1: Document lifecycle (create, edit, delete, submit, approve, reject, cancel, revise, advance)
- Section 2: Purchase order amendments and version history
- Section 3: Ledger accounts
- Section 4: Approver settings
- Section 5: Notifications outbox and audit trail

Actor identity arrives in the X-Actor-Id header, set by the authentication
layer in front of this service. Workflow errors map to HTTP status codes
in to_http_exception(); retryable errors carry "retryable": true.
"""

from fastapi import APIRouter, HTTPException, Header, Query, Request, status, Depends
from typing import List, Optional
import logging

from models import (
    DraftCreate, DraftUpdate, ActionRequest, RejectRequest, CancelRequest, AdvanceRequest, AmendmentCreate,
    WorkflowDocumentResponse, WorkflowActionResponse, NotificationResponse,
    LedgerAccountOpen, LedgerAdjustment, LedgerAccountResponse,
    VersionResponse, VersionDiffResponse, ChangeResponse,
    ApproverSettingsUpdate, ApproverSettingsResponse
)
from workflow_core.documents import WorkflowDocument, WorkflowResult
from workflow_core.errors import (
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
from workflow_core.ledger import LedgerAccount, LedgerKey, LedgerOp
from workflow_core.orchestrator import WorkflowOrchestrator, retry_on_conflict
from workflow_core.version_store import classify_changes
from workflow_core.workflow_types import get_workflow_type

logger = logging.getLogger(__name__)

# Router
workflow_router = APIRouter(prefix="/api/workflows", tags=["Approval Workflows"])


ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (DuplicateApprovalError, status.HTTP_409_CONFLICT),
    (UnauthorizedApproverError, status.HTTP_403_FORBIDDEN),
    (SelfApprovalError, status.HTTP_403_FORBIDDEN),
    (InsufficientBalanceError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (DependencyUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(error: WorkflowError) -> HTTPException:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"[WORKFLOW] {type(error).__name__}: {error.message}")

    return HTTPException(
        status_code=status_code,
        detail={
            "error": type(error).__name__,
            "message": error.message,
            "retryable": error.retryable,
            **error.details
        }
    )


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    return request.app.state.orchestrator


def get_actor(x_actor_id: str = Header(..., description="Authenticated user id")) -> str:
    if not x_actor_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Actor-Id header is required")
    return x_actor_id.strip()


# =============================================================================
# SERIALIZERS
# =============================================================================

def document_response(document: WorkflowDocument) -> WorkflowDocumentResponse:
    return WorkflowDocumentResponse(
        id=document.id,
        doc_type=document.doc_type,
        status=document.status,
        owner_id=document.owner_id,
        number=document.number,
        payload=document.payload,
        approver_ids=document.approver_ids,
        approval_flow=document.approval_flow.to_dict() if document.approval_flow else None,
        approval_history=document.approval_history,
        timestamps=document.timestamps,
        revision=document.revision,
        created_at=document.created_at,
        updated_at=document.updated_at
    )


def action_response(result: WorkflowResult) -> WorkflowActionResponse:
    return WorkflowActionResponse(
        document=document_response(result.document),
        notifications=[NotificationResponse(**n.to_dict()) for n in result.notifications],
        ledger_effects=result.ledger_effects
    )


def ledger_response(account: LedgerAccount) -> LedgerAccountResponse:
    doc = account.to_document()
    return LedgerAccountResponse(
        subject_id=doc["subject_id"],
        resource_type=doc["resource_type"],
        period=doc["period"],
        entitled=doc["entitled"],
        used=doc["used"],
        pending=doc["pending"],
        carry_forward=doc["carry_forward"],
        available=doc["available"],
        revision=account.revision
    )


# =============================================================================
# SECTION 1: DOCUMENT LIFECYCLE
# =============================================================================

@workflow_router.post("/documents", response_model=WorkflowActionResponse, status_code=status.HTTP_201_CREATED)
async def create_document(
    draft: DraftCreate,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    """Create a DRAFT document owned by the caller."""
    try:
        result = await orchestrator.create_draft(draft.doc_type, actor_id, draft.payload)
        return action_response(result)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.get("/documents", response_model=List[WorkflowDocumentResponse])
async def list_documents(
    doc_type: Optional[str] = None,
    owner_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = 100,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        documents = await orchestrator.list_documents(doc_type, owner_id, status_filter, min(limit, 500))
        return [document_response(d) for d in documents]
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.get("/documents/{doc_id}", response_model=WorkflowDocumentResponse)
async def get_document(
    doc_id: str,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        return document_response(await orchestrator.get_document(doc_id))
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.put("/documents/{doc_id}", response_model=WorkflowActionResponse)
async def update_document(
    doc_id: str,
    update: DraftUpdate,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    """Edit a DRAFT owned by the caller. Derived fields are recomputed."""
    try:
        result = await retry_on_conflict(lambda: orchestrator.update_draft(doc_id, actor_id, update.payload))
        return action_response(result)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.delete("/documents/{doc_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    doc_id: str,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        await retry_on_conflict(lambda: orchestrator.delete_draft(doc_id, actor_id))
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.post("/documents/{doc_id}/submit", response_model=WorkflowActionResponse)
async def submit_document(
    doc_id: str,
    request: ActionRequest = ActionRequest(),
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        result = await retry_on_conflict(lambda: orchestrator.submit(doc_id, actor_id, request.remarks))
        return action_response(result)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.post("/documents/{doc_id}/approve", response_model=WorkflowActionResponse)
async def approve_document(
    doc_id: str,
    request: ActionRequest = ActionRequest(),
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    """
    Record the caller's approval.

    RULES:
    - Caller must be a required approver and not the owner
    - Status becomes APPROVED only when the required count is reached
    """
    try:
        result = await retry_on_conflict(lambda: orchestrator.approve(doc_id, actor_id, request.remarks))
        return action_response(result)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.post("/documents/{doc_id}/reject", response_model=WorkflowActionResponse)
async def reject_document(
    doc_id: str,
    request: RejectRequest,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        result = await retry_on_conflict(lambda: orchestrator.reject(doc_id, actor_id, request.reason))
        return action_response(result)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.post("/documents/{doc_id}/cancel", response_model=WorkflowActionResponse)
async def cancel_document(
    doc_id: str,
    request: CancelRequest = CancelRequest(),
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        result = await retry_on_conflict(lambda: orchestrator.cancel(doc_id, actor_id, request.reason))
        return action_response(result)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.post("/documents/{doc_id}/revise", response_model=WorkflowActionResponse)
async def revise_document(
    doc_id: str,
    request: ActionRequest = ActionRequest(),
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        result = await retry_on_conflict(lambda: orchestrator.revise(doc_id, actor_id, request.remarks))
        return action_response(result)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.post("/documents/{doc_id}/advance", response_model=WorkflowActionResponse)
async def advance_document(
    doc_id: str,
    request: AdvanceRequest,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        result = await retry_on_conflict(
            lambda: orchestrator.advance(doc_id, actor_id, request.to_status, request.remarks)
        )
        return action_response(result)
    except WorkflowError as e:
        raise to_http_exception(e)


# =============================================================================
# SECTION 2: AMENDMENTS & VERSIONS
# =============================================================================

@workflow_router.post(
    "/documents/{po_id}/amendments",
    response_model=WorkflowActionResponse,
    status_code=status.HTTP_201_CREATED
)
async def create_amendment(
    po_id: str,
    amendment: AmendmentCreate,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        result = await orchestrator.create_amendment(po_id, actor_id, amendment.proposed, amendment.reason)
        return action_response(result)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.get("/documents/{entity_id}/versions", response_model=List[VersionResponse])
async def list_versions(
    entity_id: str,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        versions = await orchestrator.versions.get_versions(entity_id)
        return [VersionResponse(**v.to_document()) for v in versions]
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.get("/documents/{entity_id}/versions/diff", response_model=VersionDiffResponse)
async def diff_versions(
    entity_id: str,
    from_version: int,
    to_version: int,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        changes = await orchestrator.versions.diff(entity_id, from_version, to_version)
        return VersionDiffResponse(
            entity_id=entity_id,
            from_version=from_version,
            to_version=to_version,
            amendment_type=classify_changes(changes),
            changes=[ChangeResponse(**c.to_dict()) for c in changes]
        )
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.get("/documents/{entity_id}/audit")
async def get_audit_trail(
    entity_id: str,
    request: Request,
    limit: int = 100,
    actor_id: str = Depends(get_actor)
):
    audit_service = request.app.state.audit_service
    try:
        logs = await audit_service.get_audit_logs(entity_id=entity_id, limit=min(limit, 500))
        return {"entity_id": entity_id, "logs": logs}
    except WorkflowError as e:
        raise to_http_exception(e)


# =============================================================================
# SECTION 3: LEDGER ACCOUNTS
# =============================================================================

@workflow_router.post("/ledger", response_model=LedgerAccountResponse, status_code=status.HTTP_201_CREATED)
async def open_ledger_account(
    account: LedgerAccountOpen,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    """Get-or-create. An existing account is returned unchanged."""
    try:
        key = LedgerKey(account.subject_id, account.resource_type, account.period)
        opened = await orchestrator.ledger.open_account(key, account.entitled, account.carry_forward)
        return ledger_response(opened)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.get("/ledger/{subject_id}/{resource_type}/{period}", response_model=LedgerAccountResponse)
async def get_ledger_account(
    subject_id: str,
    resource_type: str,
    period: str,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        key = LedgerKey(subject_id, resource_type, period)
        return ledger_response(await orchestrator.ledger.get_account(key))
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.post("/ledger/{subject_id}/{resource_type}/{period}/adjust", response_model=LedgerAccountResponse)
async def adjust_ledger_account(
    subject_id: str,
    resource_type: str,
    period: str,
    adjustment: LedgerAdjustment,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    """
    Administrative credit or correction.

    RULES:
    - Only GRANT and DEBIT; reserve / commit / release belong to document actions
    - DEBIT never overdraws
    """
    try:
        operation = adjustment.operation.upper()
        if operation not in (LedgerOp.GRANT, LedgerOp.DEBIT):
            raise ValidationError(f"Unsupported adjustment: {adjustment.operation}")
        key = LedgerKey(subject_id, resource_type, period)
        account = await retry_on_conflict(
            lambda: orchestrator.ledger.apply(key, operation, adjustment.amount, actor_id=actor_id)
        )
        return ledger_response(account)
    except WorkflowError as e:
        raise to_http_exception(e)


# =============================================================================
# SECTION 4: APPROVER SETTINGS
# =============================================================================

@workflow_router.get("/settings/approvers/{doc_type}", response_model=ApproverSettingsResponse)
async def get_approver_settings(
    doc_type: str,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        get_workflow_type(doc_type)
        approvers = await orchestrator.repository.get_approvers(doc_type)
        if approvers is None:
            raise NotFoundError("Approver settings", doc_type)
        return ApproverSettingsResponse(doc_type=doc_type, approver_ids=approvers)
    except WorkflowError as e:
        raise to_http_exception(e)


@workflow_router.put("/settings/approvers/{doc_type}", response_model=ApproverSettingsResponse)
async def update_approver_settings(
    doc_type: str,
    settings: ApproverSettingsUpdate,
    actor_id: str = Depends(get_actor),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)
):
    try:
        get_workflow_type(doc_type)
        approvers = [a for a in dict.fromkeys(settings.approver_ids) if a]
        if not approvers:
            raise ValidationError("At least one approver is required")
        await orchestrator.repository.set_approvers(doc_type, approvers)
        logger.info(f"[WORKFLOW] Approvers for {doc_type} set to {approvers} by {actor_id}")
        return ApproverSettingsResponse(doc_type=doc_type, approver_ids=approvers)
    except WorkflowError as e:
        raise to_http_exception(e)


# =============================================================================
# SECTION 5: NOTIFICATIONS
# =============================================================================

@workflow_router.get("/notifications")
async def get_my_notifications(
    request: Request,
    limit: int = 50,
    actor_id: str = Depends(get_actor)
):
    dispatcher = request.app.state.notification_dispatcher
    try:
        notifications = await dispatcher.get_for_recipient(actor_id, limit=min(limit, 200))
        return {"recipient_id": actor_id, "notifications": notifications}
    except WorkflowError as e:
        raise to_http_exception(e)
