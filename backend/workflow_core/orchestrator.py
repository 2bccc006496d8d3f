"""
WORKFLOW ORCHESTRATOR

Composes the state machine, approval flow engine, ledger, numbering and
version store into the document use cases. Every call is one atomic unit:

    1. Load the document inside a transaction
    2. Validate the status transition (no writes on failure)
    3. Self-approval / approver-membership / duplicate checks
    4. Ledger operation when the action crosses a ledger boundary
    5. Persist status + flow + ledger + appended history, revision-guarded
    6. After commit: notification requests and audit entries

Step 6 is fire-and-forget. A notification or audit failure is logged at
ERROR and never rolls back or fails the committed action, so the outbox and
audit trail can lag behind the documents they describe.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import logging

from .approval_flow import ApprovalFlowEngine
from .atomic_numbering import SequenceNumberIssuer
from .documents import (
    ApprovalHistoryEntry,
    HistoryAction,
    NotificationRequest,
    WorkflowDocument,
    WorkflowResult,
    new_id,
)
from .errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedApproverError,
    ValidationError,
    WorkflowError,
)
from .financial_precision import ZERO, to_decimal, to_float
from .leave_calendar import days_until
from .ledger import LedgerAccount, LedgerOp, LedgerService
from .repository import WorkflowRepository
from .state_machine import StateMachineRegistry
from .version_store import VersionStore, classify_changes, diff_snapshots
from .workflow_types import (
    AMENDABLE_PO_FIELDS,
    STATE_MACHINES,
    DocType,
    Status,
    WorkflowTypeConfig,
    amendment_edits,
    apply_amendment_edits,
    build_purchase_order_payload,
    get_workflow_type,
)

logger = logging.getLogger(__name__)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[Any]],
    attempts: int = 3,
    delay_ms: int = 50
) -> Any:
    """
    Re-run a whole operation while it fails with a retryable error
    (ConcurrencyConflictError / DependencyUnavailableError).
    """
    for attempt in range(attempts):
        try:
            return await operation()
        except WorkflowError as e:
            if not e.retryable or attempt == attempts - 1:
                raise
            logger.info(f"[WORKFLOW] Retrying after {type(e).__name__} (attempt {attempt + 1}): {e}")
            await asyncio.sleep(delay_ms * (attempt + 1) / 1000)


class WorkflowOrchestrator:

    def __init__(
        self,
        repository: WorkflowRepository,
        notifier=None,
        audit=None,
        registry: StateMachineRegistry = STATE_MACHINES
    ):
        self.repository = repository
        self.notifier = notifier
        self.audit = audit
        self.registry = registry
        self.flows = ApprovalFlowEngine()
        self.ledger = LedgerService(repository)
        self.numbering = SequenceNumberIssuer(repository)
        self.versions = VersionStore(repository)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_document(self, doc_id: str, session=None) -> WorkflowDocument:
        doc = await self.repository.find_document(doc_id, session=session)
        if not doc:
            raise NotFoundError("WorkflowDocument", doc_id)
        return WorkflowDocument.from_document(doc)

    async def list_documents(
        self,
        doc_type: Optional[str] = None,
        owner_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100
    ) -> List[WorkflowDocument]:
        filters = {}
        if doc_type:
            filters["doc_type"] = doc_type
        if owner_id:
            filters["owner_id"] = owner_id
        if status:
            filters["status"] = status
        docs = await self.repository.find_documents(filters, limit=limit)
        return [WorkflowDocument.from_document(d) for d in docs]

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_draft(self, doc_type: str, owner_id: str, payload: Dict[str, Any]) -> WorkflowResult:
        config = get_workflow_type(doc_type)
        if doc_type == DocType.PO_AMENDMENT:
            raise ValidationError("Amendments are created from their purchase order")
        if not owner_id:
            raise ValidationError("owner_id is required")

        built = config.build_payload(dict(payload or {})) if config.build_payload else dict(payload or {})
        document = WorkflowDocument(
            id=new_id(),
            doc_type=doc_type,
            status=config.machine.initial_state,
            owner_id=owner_id,
            payload=built,
        )

        await self._check_balance_for_draft(config, document)
        return await self._insert_draft(config, document, owner_id)

    async def create_amendment(
        self,
        purchase_order_id: str,
        actor_id: str,
        proposed: Dict[str, Any],
        reason: Optional[str] = None
    ) -> WorkflowResult:
        """
        Draft a PO_AMENDMENT from the purchase order's current state and a
        proposed state. The amendment only touches the PO once approved.
        """
        po = await self.get_document(purchase_order_id)
        if po.doc_type != DocType.PURCHASE_ORDER:
            raise ValidationError(f"{purchase_order_id} is not a purchase order")
        self.registry.require_transition(DocType.PURCHASE_ORDER, po.status, Status.AMENDED)
        if not reason:
            raise ValidationError("An amendment reason is required")

        unknown = sorted(set(proposed or {}) - set(AMENDABLE_PO_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be amended: {unknown}")

        new_payload = build_purchase_order_payload({**po.payload, **proposed})
        changes = diff_snapshots(po.payload, new_payload, po.payload.get("items", []), new_payload["items"])
        if not changes:
            raise ValidationError("Proposed amendment does not change the purchase order")

        previous_total = to_decimal(po.payload.get("grand_total"))
        new_total = to_decimal(new_payload["grand_total"])
        amendment_number = await self.repository.count_amendments(po.id) + 1

        config = get_workflow_type(DocType.PO_AMENDMENT)
        document = WorkflowDocument(
            id=new_id(),
            doc_type=DocType.PO_AMENDMENT,
            status=config.machine.initial_state,
            owner_id=actor_id,
            payload={
                "purchase_order_id": po.id,
                "purchase_order_number": po.number,
                "project_id": po.payload.get("project_id"),
                "fiscal_year": po.payload.get("fiscal_year"),
                "amendment_number": amendment_number,
                "amendment_type": classify_changes(changes),
                "reason": reason,
                "changes": [c.to_dict() for c in changes],
                "edits": amendment_edits(po.payload, new_payload),
                "proposed": new_payload,
                "previous_grand_total": to_float(previous_total),
                "new_grand_total": to_float(new_total),
                "total_change": to_float(new_total - previous_total),
            },
        )
        return await self._insert_draft(config, document, actor_id)

    async def _insert_draft(self, config: WorkflowTypeConfig, document: WorkflowDocument, actor_id: str) -> WorkflowResult:
        # Numbers are issued outside any transaction so the degraded
        # fallback stays available
        document.number, _ = await self.numbering.generate_document_number(config.numbering)
        document.timestamps["created_at"] = document.created_at
        document.approval_history.append(ApprovalHistoryEntry(
            actor_id=actor_id,
            action=HistoryAction.CREATED,
            timestamp=datetime.utcnow(),
            to_status=document.status,
        ).to_dict())

        await self.repository.insert_document(document.to_document())
        logger.info(f"[WORKFLOW] Created {config.doc_type} {document.number} ({document.id}) for {actor_id}")

        await self._after_commit(config, document, actor_id, HistoryAction.CREATED, [])
        return WorkflowResult(document=document)

    async def _check_balance_for_draft(self, config: WorkflowTypeConfig, document: WorkflowDocument) -> None:
        """A hard-blocking reservation must be coverable when the draft is created."""
        policy = config.ledger_policy
        if not policy or policy.on_submit != LedgerOp.RESERVE or policy.allow_overdraft:
            return
        key = policy.key_for(document)
        amount = policy.amount_for(document)
        account = await self.ledger.get_account(key)
        if account.available < amount:
            raise InsufficientBalanceError(str(key), amount, account.available)

    # =========================================================================
    # EDIT / DELETE DRAFT
    # =========================================================================

    def _require_editable_draft(self, config: WorkflowTypeConfig, document: WorkflowDocument, actor_id: str) -> None:
        if actor_id != document.owner_id:
            raise UnauthorizedApproverError(actor_id, document.id)
        if document.status != config.machine.initial_state:
            raise ValidationError(
                f"Only {config.machine.initial_state} {config.label.lower()}s can be changed "
                f"({document.number} is {document.status})"
            )

    async def update_draft(self, doc_id: str, actor_id: str, payload: Dict[str, Any]) -> WorkflowResult:
        """
        Owner-only edit of a DRAFT. The given fields are merged over the
        current payload and rebuilt, so derived values (days, totals) are
        recomputed.
        """
        async with self.repository.transaction() as session:
            document = await self.get_document(doc_id, session=session)
            config = get_workflow_type(document.doc_type)
            if config.doc_type == DocType.PO_AMENDMENT:
                raise ValidationError("Amendments cannot be edited; cancel and draft a new one")
            self._require_editable_draft(config, document, actor_id)

            merged = {**document.payload, **(payload or {})}
            document.payload = config.build_payload(merged) if config.build_payload else merged
            await self._check_balance_for_draft(config, document)

            entry = self._history(actor_id, HistoryAction.UPDATED, None, document.status, document.status)
            await self._persist(document, entry, session)

        logger.info(f"[WORKFLOW] {actor_id} updated {config.doc_type} {document.number}")
        await self._after_commit(config, document, actor_id, HistoryAction.UPDATED, [])
        return WorkflowResult(document=document)

    async def delete_draft(self, doc_id: str, actor_id: str) -> WorkflowDocument:
        """Owner-only removal of a DRAFT. Its number is not reissued."""
        async with self.repository.transaction() as session:
            document = await self.get_document(doc_id, session=session)
            config = get_workflow_type(document.doc_type)
            self._require_editable_draft(config, document, actor_id)
            await self.repository.delete_document(document.id, document.revision, session=session)

        logger.info(f"[WORKFLOW] {actor_id} deleted {config.doc_type} {document.number}")
        await self._after_commit(config, document, actor_id, HistoryAction.DELETED, [])
        return document

    # =========================================================================
    # SUBMIT
    # =========================================================================

    async def submit(self, doc_id: str, actor_id: str, remarks: Optional[str] = None) -> WorkflowResult:
        async with self.repository.transaction() as session:
            document = await self.get_document(doc_id, session=session)
            config = get_workflow_type(document.doc_type)

            if actor_id != document.owner_id:
                raise UnauthorizedApproverError(actor_id, doc_id)

            from_status = document.status
            self.registry.require_transition(config.doc_type, from_status, config.submitted_status)
            if config.submit_guard:
                config.submit_guard(document)

            approvers = await self.repository.get_approvers(config.doc_type, session=session)
            if not approvers:
                raise ValidationError(f"No approvers configured for {config.label}. Please contact an administrator.")
            flow = self.flows.init_flow(approvers, document.owner_id, config.approval_policy)

            effects = []
            if config.ledger_policy and config.ledger_policy.on_submit:
                effects.append(await self._apply_ledger(config, document, config.ledger_policy.on_submit, actor_id, session))

            document.status = config.submitted_status
            document.approver_ids = list(flow.required_approvers)
            document.approval_flow = flow
            document.timestamps["submitted_at"] = datetime.utcnow()

            entry = self._history(actor_id, HistoryAction.SUBMITTED, remarks, from_status, document.status)
            await self._persist(document, entry, session)

        notifications = [
            self._notification(
                config, document, approver_id,
                f"{config.label} awaiting approval",
                f"{config.label} {document.number} needs your approval"
            )
            for approver_id in flow.required_approvers
        ]
        await self._after_commit(config, document, actor_id, HistoryAction.SUBMITTED, notifications)
        return WorkflowResult(document=document, notifications=notifications, ledger_effects=effects)

    # =========================================================================
    # APPROVE
    # =========================================================================

    async def approve(self, doc_id: str, actor_id: str, remarks: Optional[str] = None) -> WorkflowResult:
        async with self.repository.transaction() as session:
            document = await self.get_document(doc_id, session=session)
            config = get_workflow_type(document.doc_type)

            self.flows.prevent_self_approval(actor_id, document.owner_id, "approve")
            self._require_approvable(config, document, config.approved_status)
            self.flows.require_approver(document.approval_flow, actor_id)

            flow = self.flows.record_approval(document.approval_flow, actor_id)
            completed = flow.is_complete
            from_status = document.status
            to_status = config.approved_status if completed else (config.partial_status or from_status)
            if to_status != from_status:
                self.registry.require_transition(config.doc_type, from_status, to_status)

            effects = []
            if completed:
                if config.ledger_policy and config.ledger_policy.on_approve:
                    effects.append(await self._apply_ledger(config, document, config.ledger_policy.on_approve, actor_id, session))
                if config.doc_type == DocType.PO_AMENDMENT:
                    effects.extend(await self._apply_amendment(document, actor_id, session))

            if not completed:
                progress = f"(Approval {flow.approval_count}/{flow.required_approval_count})"
                remarks = f"{remarks} {progress}" if remarks else progress

            document.status = to_status
            document.approval_flow = flow
            if completed:
                document.timestamps["approved_at"] = datetime.utcnow()

            entry = self._history(actor_id, HistoryAction.APPROVED, remarks, from_status, to_status)
            await self._persist(document, entry, session)

            if completed and config.snapshot_on_approval:
                await self._snapshot(document, actor_id, session=session, notes="Approved")

        if completed:
            title = f"{config.label} approved"
            message = f"Your {config.label.lower()} {document.number} has been approved"
        else:
            title = f"{config.label} partially approved"
            message = (
                f"Your {config.label.lower()} {document.number} has "
                f"{flow.approval_count} of {flow.required_approval_count} approvals"
            )
        notifications = [self._notification(config, document, document.owner_id, title, message)]

        logger.info(
            f"[WORKFLOW] {actor_id} approved {config.doc_type} {document.number}: "
            f"{from_status} -> {to_status} ({flow.approval_count}/{flow.required_approval_count})"
        )
        await self._after_commit(config, document, actor_id, HistoryAction.APPROVED, notifications)
        return WorkflowResult(document=document, notifications=notifications, ledger_effects=effects)

    # =========================================================================
    # REJECT
    # =========================================================================

    async def reject(self, doc_id: str, actor_id: str, reason: Optional[str]) -> WorkflowResult:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        async with self.repository.transaction() as session:
            document = await self.get_document(doc_id, session=session)
            config = get_workflow_type(document.doc_type)

            self.flows.prevent_self_approval(actor_id, document.owner_id, "reject")
            self._require_approvable(config, document, config.rejected_status)
            self.flows.require_approver(document.approval_flow, actor_id)

            from_status = document.status
            self.registry.require_transition(config.doc_type, from_status, config.rejected_status)

            effects = []
            if config.ledger_policy and config.ledger_policy.on_reject:
                effects.append(await self._apply_ledger(config, document, config.ledger_policy.on_reject, actor_id, session))

            document.status = config.rejected_status
            document.payload["rejection_reason"] = reason.strip()
            document.timestamps["rejected_at"] = datetime.utcnow()

            entry = self._history(actor_id, HistoryAction.REJECTED, reason.strip(), from_status, document.status)
            await self._persist(document, entry, session)

        notifications = [self._notification(
            config, document, document.owner_id,
            f"{config.label} rejected",
            f"Your {config.label.lower()} {document.number} was rejected: {reason.strip()}"
        )]
        await self._after_commit(config, document, actor_id, HistoryAction.REJECTED, notifications)
        return WorkflowResult(document=document, notifications=notifications, ledger_effects=effects)

    # =========================================================================
    # CANCEL
    # =========================================================================

    async def cancel(self, doc_id: str, actor_id: str, reason: Optional[str] = None) -> WorkflowResult:
        """
        Owner-only. Pending documents release their reservation; approved
        ones are reversed by the type's compensating ledger operation, and
        only while the cutoff date is at least cancel_cutoff_days away.
        """
        async with self.repository.transaction() as session:
            document = await self.get_document(doc_id, session=session)
            config = get_workflow_type(document.doc_type)

            if actor_id != document.owner_id:
                raise UnauthorizedApproverError(actor_id, doc_id)

            from_status = document.status
            self.registry.require_transition(config.doc_type, from_status, config.cancelled_status)

            policy = config.ledger_policy
            op = None
            if from_status in config.committed_statuses:
                self._check_cancel_cutoff(config, document)
                op = policy.on_cancel_committed if policy else None
            elif from_status in config.reserved_statuses:
                op = policy.on_cancel_reserved if policy else None

            effects = []
            if op:
                effects.append(await self._apply_ledger(config, document, op, actor_id, session))

            was_pending = from_status in config.approvable_statuses
            document.status = config.cancelled_status
            if reason:
                document.payload["cancellation_reason"] = reason
            document.timestamps["cancelled_at"] = datetime.utcnow()

            entry = self._history(actor_id, HistoryAction.CANCELLED, reason, from_status, document.status)
            await self._persist(document, entry, session)

        notifications = []
        if was_pending and document.approval_flow:
            notifications = [
                self._notification(
                    config, document, approver_id,
                    f"{config.label} cancelled",
                    f"{config.label} {document.number} was cancelled by the applicant"
                )
                for approver_id in document.approval_flow.pending_approvers()
            ]
        await self._after_commit(config, document, actor_id, HistoryAction.CANCELLED, notifications)
        return WorkflowResult(document=document, notifications=notifications, ledger_effects=effects)

    def _check_cancel_cutoff(self, config: WorkflowTypeConfig, document: WorkflowDocument) -> None:
        if not config.cancel_cutoff_field:
            return
        cutoff = document.get(config.cancel_cutoff_field)
        if cutoff is None:
            raise ValidationError(f"'{config.cancel_cutoff_field}' is missing; cannot cancel")
        if days_until(cutoff) < config.cancel_cutoff_days:
            raise ValidationError(
                f"Approved {config.label.lower()} can only be cancelled at least "
                f"{config.cancel_cutoff_days} day(s) before {config.cancel_cutoff_field}"
            )

    # =========================================================================
    # REVISE / ADVANCE
    # =========================================================================

    async def revise(self, doc_id: str, actor_id: str, remarks: Optional[str] = None) -> WorkflowResult:
        """Return a rejected document to DRAFT for editing and resubmission."""
        async with self.repository.transaction() as session:
            document = await self.get_document(doc_id, session=session)
            config = get_workflow_type(document.doc_type)

            if actor_id != document.owner_id:
                raise UnauthorizedApproverError(actor_id, doc_id)

            from_status = document.status
            self.registry.require_transition(config.doc_type, from_status, config.machine.initial_state)

            document.status = config.machine.initial_state
            document.approval_flow = None
            document.approver_ids = []
            document.payload.pop("rejection_reason", None)

            entry = self._history(actor_id, HistoryAction.REVISED, remarks, from_status, document.status)
            await self._persist(document, entry, session)

        await self._after_commit(config, document, actor_id, HistoryAction.REVISED, [])
        return WorkflowResult(document=document)

    async def advance(self, doc_id: str, actor_id: str, to_status: str, remarks: Optional[str] = None) -> WorkflowResult:
        """Plain lifecycle steps after approval (issue, acknowledge, complete, convert to RFQ)."""
        async with self.repository.transaction() as session:
            document = await self.get_document(doc_id, session=session)
            config = get_workflow_type(document.doc_type)

            if to_status not in config.plain_transitions:
                raise ValidationError(f"{config.label} cannot be moved to {to_status} directly")
            if actor_id != document.owner_id and actor_id not in document.approver_ids:
                raise UnauthorizedApproverError(actor_id, doc_id)

            from_status = document.status
            self.registry.require_transition(config.doc_type, from_status, to_status)

            document.status = to_status
            document.timestamps[f"{to_status.lower()}_at"] = datetime.utcnow()

            entry = self._history(actor_id, HistoryAction.STATUS_CHANGED, remarks, from_status, to_status)
            await self._persist(document, entry, session)

        notifications = []
        if actor_id != document.owner_id:
            notifications.append(self._notification(
                config, document, document.owner_id,
                f"{config.label} {to_status.replace('_', ' ').lower()}",
                f"{config.label} {document.number} moved to {to_status}"
            ))
        await self._after_commit(config, document, actor_id, HistoryAction.STATUS_CHANGED, notifications)
        return WorkflowResult(document=document, notifications=notifications)

    # =========================================================================
    # AMENDMENT APPLICATION
    # =========================================================================

    async def _apply_amendment(self, amendment: WorkflowDocument, actor_id: str, session) -> List[Dict[str, Any]]:
        """
        Apply an approved amendment to its purchase order in the caller's
        transaction: budget delta, PO -> AMENDED, and a version snapshot on
        either side of the change.
        """
        po_id = amendment.payload["purchase_order_id"]
        po = await self.get_document(po_id, session=session)
        po_config = get_workflow_type(DocType.PURCHASE_ORDER)

        from_status = po.status
        self.registry.require_transition(DocType.PURCHASE_ORDER, from_status, Status.AMENDED)

        if await self.repository.count_versions(po.id, session=session) == 0:
            await self._snapshot(po, actor_id, session=session, notes="Original")

        # Edits are replayed onto the PO as it is now, so amendments approved
        # since this one was drafted are kept
        amended = apply_amendment_edits(po.payload, amendment.payload["edits"])
        previous_total = to_decimal(po.payload.get("grand_total"))
        delta = to_decimal(amended["grand_total"]) - previous_total

        effects = []
        if delta > ZERO:
            effects.append(await self._apply_ledger(po_config, po, LedgerOp.DEBIT, actor_id, session, amount=delta))
        elif delta < ZERO:
            effects.append(await self._apply_ledger(po_config, po, LedgerOp.REFUND, actor_id, session, amount=-delta))

        amendment.payload.update({
            "previous_grand_total": to_float(previous_total),
            "new_grand_total": amended["grand_total"],
            "total_change": to_float(delta),
        })

        po.payload = {**amended, "last_amendment_number": amendment.payload["amendment_number"]}
        po.status = Status.AMENDED
        po.timestamps["amended_at"] = datetime.utcnow()

        entry = self._history(
            actor_id, HistoryAction.AMENDED,
            f"Amendment {amendment.number} applied",
            from_status, Status.AMENDED
        )
        await self._persist(po, entry, session)
        await self._snapshot(
            po, actor_id,
            session=session,
            amendment_id=amendment.id,
            notes=f"Amendment {amendment.payload['amendment_number']}"
        )

        logger.info(
            f"[WORKFLOW] Applied amendment {amendment.number} to {po.number}: "
            f"{amendment.payload['amendment_type']}, total change {delta}"
        )
        return effects

    async def _snapshot(self, po: WorkflowDocument, actor_id: str, session=None, amendment_id=None, notes=None) -> int:
        entity = {k: v for k, v in po.payload.items() if k != "items"}
        entity.update({"number": po.number, "status": po.status})
        return await self.versions.snapshot(
            po.id,
            entity,
            po.payload.get("items", []),
            amendment_id=amendment_id,
            created_by=actor_id,
            notes=notes,
            session=session
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _require_approvable(self, config: WorkflowTypeConfig, document: WorkflowDocument, target: str) -> None:
        if document.status not in config.approvable_statuses:
            raise InvalidTransitionError(
                entity=config.doc_type,
                from_state=document.status,
                to_state=target,
                allowed=config.machine.get_allowed_transitions(document.status)
            )

    async def _apply_ledger(
        self,
        config: WorkflowTypeConfig,
        document: WorkflowDocument,
        op: str,
        actor_id: str,
        session,
        amount=None
    ) -> Dict[str, Any]:
        policy = config.ledger_policy
        key = policy.key_for(document)
        amount = amount if amount is not None else policy.amount_for(document)
        if op == LedgerOp.GRANT:
            # Earned credit opens the account on first use
            await self.ledger.open_account(key, session=session)
        account: LedgerAccount = await self.ledger.apply(
            key, op, amount,
            allow_overdraft=policy.allow_overdraft,
            actor_id=actor_id,
            session=session
        )
        return {
            "operation": op,
            "amount": to_float(amount),
            "subject_id": key.subject_id,
            "resource_type": key.resource_type,
            "period": key.period,
            "available": to_float(account.available),
        }

    def _history(self, actor_id, action, remarks, from_status, to_status) -> Dict[str, Any]:
        return ApprovalHistoryEntry(
            actor_id=actor_id,
            action=action,
            timestamp=datetime.utcnow(),
            remarks=remarks,
            from_status=from_status,
            to_status=to_status,
        ).to_dict()

    async def _persist(self, document: WorkflowDocument, entry: Dict[str, Any], session) -> None:
        fields = {
            "status": document.status,
            "payload": document.payload,
            "approver_ids": document.approver_ids,
            "approval_flow": document.approval_flow.to_dict() if document.approval_flow else None,
            "timestamps": document.timestamps,
        }
        await self.repository.update_document(document.id, document.revision, fields, push_history=[entry], session=session)
        document.revision += 1
        document.approval_history.append(entry)
        document.updated_at = datetime.utcnow()

    def _notification(self, config, document, recipient_id, title, message) -> NotificationRequest:
        return NotificationRequest(
            recipient_id=recipient_id,
            category=config.notification_category,
            title=title,
            message=message,
            link_url=config.link_for(document.id),
            entity_type=config.doc_type,
            entity_id=document.id,
        )

    async def _after_commit(
        self,
        config: WorkflowTypeConfig,
        document: WorkflowDocument,
        actor_id: str,
        action: str,
        notifications: List[NotificationRequest]
    ) -> None:
        if notifications and self.notifier is not None:
            try:
                await self.notifier.dispatch(notifications)
            except Exception as e:
                logger.error(f"[NOTIFY] Failed to hand off {len(notifications)} notification(s) for {document.id}: {e}")

        if self.audit is not None:
            try:
                await self.audit.log_action(
                    entity_type=config.doc_type,
                    entity_id=document.id,
                    action_type=action,
                    user_id=actor_id,
                    new_value={"status": document.status, "number": document.number, "revision": document.revision}
                )
            except Exception as e:
                logger.error(f"[AUDIT] Failed to record {action} on {document.id}: {e}")
