"""
End-to-end workflow tests against the in-memory repository.

Covers the leave, on-duty, purchase request, purchase order and amendment
lifecycles, including ledger effects, rollback and after-commit side effects.
"""
import asyncio
import logging
from datetime import timedelta
from decimal import Decimal

import pytest

from audit_service import AuditService
from notification_service import NotificationDispatcher
from workflow_core.errors import (
    ConcurrencyConflictError,
    DuplicateApprovalError,
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    SelfApprovalError,
    UnauthorizedApproverError,
    ValidationError,
)
from workflow_core.ledger import LedgerKey
from workflow_core.orchestrator import WorkflowOrchestrator, retry_on_conflict
from workflow_core.repository import InMemoryWorkflowRepository
from workflow_core.version_store import AmendmentType
from workflow_core.workflow_types import COMP_OFF, PROJECT_BUDGET, WORKFLOW_TYPES, DocType, Status

from conftest import APPROVERS, RecordingAudit, RecordingNotifier


# =============================================================================
# HELPERS
# =============================================================================

async def configure_approvers(repository, approvers=APPROVERS):
    for doc_type in WORKFLOW_TYPES:
        await repository.set_approvers(doc_type, approvers)


def leave_payload(monday, days=3, leave_type="CASUAL"):
    return {
        "leave_type": leave_type,
        "start_date": monday.isoformat(),
        "end_date": (monday + timedelta(days=days - 1)).isoformat(),
        "reason": "Family function",
    }


def po_payload(quantity=100, unit_price=500, tax_rate=18):
    return {
        "project_id": "project-alpha",
        "vendor_id": "vendor-9",
        "fiscal_year": 2025,
        "tax_rate": tax_rate,
        "payment_terms": "Net 30",
        "items": [{"description": "Cement bags", "quantity": quantity, "unit_price": unit_price}],
    }


async def leave_draft(orchestrator, monday, owner="employee-1", entitled=12, days=3):
    key = LedgerKey(owner, "CASUAL", monday.year)
    await orchestrator.ledger.open_account(key, entitled=entitled)
    result = await orchestrator.create_draft(DocType.LEAVE_REQUEST, owner, leave_payload(monday, days))
    return result.document, key


async def approved_po(orchestrator, budget=100000, **payload):
    key = LedgerKey("project-alpha", PROJECT_BUDGET, 2025)
    await orchestrator.ledger.open_account(key, entitled=budget)
    po = (await orchestrator.create_draft(DocType.PURCHASE_ORDER, "buyer-1", po_payload(**payload))).document
    await orchestrator.submit(po.id, "buyer-1")
    await orchestrator.approve(po.id, "manager-1")
    return await orchestrator.get_document(po.id), key


def approvals_to(document, status):
    return [
        h for h in document.approval_history
        if h["action"] == "APPROVED" and h["to_status"] == status
    ]


# =============================================================================
# LEAVE REQUEST
# =============================================================================

class TestLeaveRequest:

    def test_full_two_step_approval(self, repository, orchestrator, notifier, audit, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, key = await leave_draft(orchestrator, upcoming_monday)
            assert draft.number.startswith(f"LR-{draft.created_at.year}-")
            assert draft.payload["number_of_days"] == 3.0

            submitted = await orchestrator.submit(draft.id, "employee-1")
            reserved = await orchestrator.ledger.get_account(key)

            first = await orchestrator.approve(draft.id, "manager-1", remarks="OK from me")
            after_first = await orchestrator.ledger.get_account(key)

            second = await orchestrator.approve(draft.id, "hr-head")
            final = await orchestrator.ledger.get_account(key)
            stored = await orchestrator.get_document(draft.id)
            return submitted, reserved, first, after_first, second, final, stored

        submitted, reserved, first, after_first, second, final, stored = asyncio.run(scenario())

        assert submitted.document.status == Status.PENDING_APPROVAL
        assert submitted.ledger_effects[0]["operation"] == "RESERVE"
        assert reserved.pending == Decimal("3")
        assert reserved.available == Decimal("9")
        assert sorted(n.recipient_id for n in submitted.notifications) == sorted(APPROVERS)

        assert first.document.status == Status.PARTIALLY_APPROVED
        assert first.ledger_effects == []
        assert after_first.pending == Decimal("3")
        assert stored.approval_history[2]["remarks"] == "OK from me (Approval 1/2)"

        assert second.document.status == Status.APPROVED
        assert second.ledger_effects[0]["operation"] == "COMMIT"
        assert final.pending == Decimal("0")
        assert final.used == Decimal("3")
        assert final.available == Decimal("9")

        assert stored.status == Status.APPROVED
        assert len(approvals_to(stored, Status.APPROVED)) == 1
        assert stored.approval_flow.is_complete
        assert [h["action"] for h in stored.approval_history] == ["CREATED", "SUBMITTED", "APPROVED", "APPROVED"]
        assert [e["action_type"] for e in audit.entries] == ["CREATED", "SUBMITTED", "APPROVED", "APPROVED"]
        assert [n.recipient_id for n in notifier.sent[-2:]] == ["employee-1", "employee-1"]

    def test_applicant_in_approver_set_needs_one_approval(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, key = await leave_draft(orchestrator, upcoming_monday, owner="manager-1")
            submitted = await orchestrator.submit(draft.id, "manager-1")
            approved = await orchestrator.approve(draft.id, "hr-head")
            return submitted, approved, await orchestrator.ledger.get_account(key)

        submitted, approved, account = asyncio.run(scenario())
        flow = submitted.document.approval_flow
        assert flow.is_self_approval_case
        assert flow.required_approvers == ["hr-head"]
        assert flow.required_approval_count == 1
        assert approved.document.status == Status.APPROVED
        assert account.used == Decimal("3")

    def test_resubmitting_is_an_invalid_transition(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, key = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-1")
            with pytest.raises(InvalidTransitionError):
                await orchestrator.submit(draft.id, "employee-1")
            return await orchestrator.ledger.get_account(key)

        assert asyncio.run(scenario()).pending == Decimal("3")

    def test_draft_rejected_when_balance_is_short(self, repository, orchestrator, upcoming_monday):
        with pytest.raises(InsufficientBalanceError):
            asyncio.run(leave_draft(orchestrator, upcoming_monday, entitled=2))

    def test_draft_needs_a_ledger_account(self, orchestrator, upcoming_monday):
        with pytest.raises(NotFoundError):
            asyncio.run(orchestrator.create_draft(DocType.LEAVE_REQUEST, "employee-1", leave_payload(upcoming_monday)))

    def test_failed_reservation_rolls_back_submit(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            first, key = await leave_draft(orchestrator, upcoming_monday, entitled=4)
            second = (await orchestrator.create_draft(
                DocType.LEAVE_REQUEST, "employee-1", leave_payload(upcoming_monday)
            )).document
            await orchestrator.submit(first.id, "employee-1")
            with pytest.raises(InsufficientBalanceError):
                await orchestrator.submit(second.id, "employee-1")
            return await orchestrator.get_document(second.id), await orchestrator.ledger.get_account(key)

        second, account = asyncio.run(scenario())
        assert second.status == Status.DRAFT
        assert second.revision == 0
        assert account.pending == Decimal("3")

    def test_submit_without_approvers(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            draft, key = await leave_draft(orchestrator, upcoming_monday)
            with pytest.raises(ValidationError):
                await orchestrator.submit(draft.id, "employee-1")
            return await orchestrator.get_document(draft.id), await orchestrator.ledger.get_account(key)

        document, account = asyncio.run(scenario())
        assert document.status == Status.DRAFT
        assert account.pending == Decimal("0")

    def test_only_owner_submits(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-2")

        with pytest.raises(UnauthorizedApproverError):
            asyncio.run(scenario())

    def test_unknown_document(self, orchestrator):
        with pytest.raises(NotFoundError):
            asyncio.run(orchestrator.approve("missing", "manager-1"))

    def test_unknown_type(self, orchestrator):
        with pytest.raises(ValidationError):
            asyncio.run(orchestrator.create_draft("TIMESHEET", "employee-1", {}))

    def test_list_documents_filters(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            mine, _ = await leave_draft(orchestrator, upcoming_monday)
            await leave_draft(orchestrator, upcoming_monday, owner="employee-2")
            await orchestrator.submit(mine.id, "employee-1")
            return (
                await orchestrator.list_documents(owner_id="employee-1"),
                await orchestrator.list_documents(status=Status.DRAFT),
                await orchestrator.list_documents(doc_type=DocType.PURCHASE_ORDER),
            )

        by_owner, drafts, orders = asyncio.run(scenario())
        assert [d.owner_id for d in by_owner] == ["employee-1"]
        assert [d.owner_id for d in drafts] == ["employee-2"]
        assert orders == []


class TestApprovalRules:

    def submitted_leave(self, repository, orchestrator, monday):
        async def setup():
            await configure_approvers(repository)
            draft, key = await leave_draft(orchestrator, monday)
            await orchestrator.submit(draft.id, "employee-1")
            return draft.id, key
        return setup

    def test_owner_cannot_approve(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            doc_id, _ = await self.submitted_leave(repository, orchestrator, upcoming_monday)()
            await orchestrator.approve(doc_id, "employee-1")

        with pytest.raises(SelfApprovalError):
            asyncio.run(scenario())

    def test_owner_cannot_approve_even_when_listed(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository, ["employee-1", "hr-head"])
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-1")
            await orchestrator.approve(draft.id, "employee-1")

        with pytest.raises(SelfApprovalError):
            asyncio.run(scenario())

    def test_non_member_cannot_approve(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            doc_id, _ = await self.submitted_leave(repository, orchestrator, upcoming_monday)()
            await orchestrator.approve(doc_id, "stranger")

        with pytest.raises(UnauthorizedApproverError):
            asyncio.run(scenario())

    def test_same_approver_twice(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            doc_id, _ = await self.submitted_leave(repository, orchestrator, upcoming_monday)()
            await orchestrator.approve(doc_id, "manager-1")
            with pytest.raises(DuplicateApprovalError):
                await orchestrator.approve(doc_id, "manager-1")
            return await orchestrator.get_document(doc_id)

        document = asyncio.run(scenario())
        assert document.status == Status.PARTIALLY_APPROVED
        assert document.approval_flow.approval_count == 1

    def test_draft_cannot_be_approved(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.approve(draft.id, "manager-1")

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_concurrent_final_approvals_commit_once(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            doc_id, key = await self.submitted_leave(repository, orchestrator, upcoming_monday)()
            results = await asyncio.gather(
                orchestrator.approve(doc_id, "manager-1"),
                orchestrator.approve(doc_id, "hr-head"),
            )
            return results, await orchestrator.get_document(doc_id), await orchestrator.ledger.get_account(key)

        results, document, account = asyncio.run(scenario())
        assert sorted(r.document.status for r in results) == [Status.APPROVED, Status.PARTIALLY_APPROVED]
        assert document.status == Status.APPROVED
        assert len(approvals_to(document, Status.APPROVED)) == 1
        assert account.used == Decimal("3")
        assert account.pending == Decimal("0")

    def test_concurrent_duplicate_approval(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            doc_id, _ = await self.submitted_leave(repository, orchestrator, upcoming_monday)()
            return await asyncio.gather(
                orchestrator.approve(doc_id, "manager-1"),
                orchestrator.approve(doc_id, "manager-1"),
                return_exceptions=True
            )

        results = asyncio.run(scenario())
        assert sum(1 for r in results if isinstance(r, DuplicateApprovalError)) == 1


class TestRejectAndCancel:

    def test_reject_requires_reason(self, orchestrator):
        with pytest.raises(ValidationError):
            asyncio.run(orchestrator.reject("any", "manager-1", "  "))

    def test_reject_releases_reservation(self, repository, orchestrator, notifier, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, key = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-1")
            await orchestrator.approve(draft.id, "manager-1")
            result = await orchestrator.reject(draft.id, "hr-head", "Project deadline")
            return result, await orchestrator.ledger.get_account(key)

        result, account = asyncio.run(scenario())
        assert result.document.status == Status.REJECTED
        assert result.document.payload["rejection_reason"] == "Project deadline"
        assert account.pending == Decimal("0")
        assert account.available == Decimal("12")
        assert notifier.sent[-1].recipient_id == "employee-1"
        assert "Project deadline" in notifier.sent[-1].message

    def test_owner_cannot_reject(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-1")
            await orchestrator.reject(draft.id, "employee-1", "changed my mind")

        with pytest.raises(SelfApprovalError):
            asyncio.run(scenario())

    def test_cancel_pending_releases_and_notifies_pending_approvers(self, repository, orchestrator, notifier, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, key = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-1")
            await orchestrator.approve(draft.id, "manager-1")
            result = await orchestrator.cancel(draft.id, "employee-1", reason="Plans changed")
            return result, await orchestrator.ledger.get_account(key)

        result, account = asyncio.run(scenario())
        assert result.document.status == Status.CANCELLED
        assert result.ledger_effects[0]["operation"] == "RELEASE"
        assert account.pending == Decimal("0")
        assert [n.recipient_id for n in result.notifications] == ["hr-head"]

    def test_cancel_approved_refunds(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, key = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-1")
            await orchestrator.approve(draft.id, "manager-1")
            await orchestrator.approve(draft.id, "hr-head")
            result = await orchestrator.cancel(draft.id, "employee-1")
            return result, await orchestrator.ledger.get_account(key)

        result, account = asyncio.run(scenario())
        assert result.ledger_effects[0]["operation"] == "REFUND"
        assert result.notifications == []
        assert account.used == Decimal("0")
        assert account.available == Decimal("12")

    def test_cancel_after_start_date_is_refused(self, repository, orchestrator, past_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, key = await leave_draft(orchestrator, past_monday)
            await orchestrator.submit(draft.id, "employee-1")
            await orchestrator.approve(draft.id, "manager-1")
            await orchestrator.approve(draft.id, "hr-head")
            with pytest.raises(ValidationError):
                await orchestrator.cancel(draft.id, "employee-1")
            return await orchestrator.get_document(draft.id), await orchestrator.ledger.get_account(key)

        document, account = asyncio.run(scenario())
        assert document.status == Status.APPROVED
        assert account.used == Decimal("3")

    def test_only_owner_cancels(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.cancel(draft.id, "manager-1")

        with pytest.raises(UnauthorizedApproverError):
            asyncio.run(scenario())

    def test_rejected_leave_is_terminal(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-1")
            await orchestrator.reject(draft.id, "manager-1", "No cover")
            await orchestrator.cancel(draft.id, "employee-1")

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())


# =============================================================================
# ON-DUTY / PURCHASE REQUEST
# =============================================================================

class TestOnDutyRequest:

    def test_approval_grants_comp_off_and_cancel_takes_it_back(self, repository, orchestrator, upcoming_monday):
        key = LedgerKey("employee-1", COMP_OFF, upcoming_monday.year)

        async def scenario():
            await configure_approvers(repository)
            draft = (await orchestrator.create_draft(DocType.ON_DUTY_REQUEST, "employee-1", {
                "date": upcoming_monday.isoformat(),
                "reason": "Site inspection",
            })).document
            await orchestrator.submit(draft.id, "employee-1")
            await orchestrator.approve(draft.id, "manager-1")
            approved = await orchestrator.approve(draft.id, "hr-head")
            granted = await orchestrator.ledger.get_account(key)
            cancelled = await orchestrator.cancel(draft.id, "employee-1")
            return approved, granted, cancelled, await orchestrator.ledger.get_account(key)

        approved, granted, cancelled, final = asyncio.run(scenario())
        assert approved.document.number.startswith("OD-")
        assert approved.ledger_effects[0]["operation"] == "GRANT"
        assert granted.entitled == Decimal("1")
        assert granted.available == Decimal("1")
        assert cancelled.ledger_effects[0]["operation"] == "DEBIT"
        assert final.available == Decimal("0")

    def test_reason_required(self, orchestrator, upcoming_monday):
        with pytest.raises(ValidationError):
            asyncio.run(orchestrator.create_draft(
                DocType.ON_DUTY_REQUEST, "employee-1", {"date": upcoming_monday.isoformat()}
            ))


class TestPurchaseRequest:

    def test_review_approve_and_convert(self, repository, orchestrator, notifier):
        async def scenario():
            await configure_approvers(repository)
            pr = (await orchestrator.create_draft(DocType.PURCHASE_REQUEST, "engineer-1", {
                "project_id": "project-alpha",
                "items": [{"description": "TMT bars", "quantity": 40, "unit": "nos"}],
            })).document
            submitted = await orchestrator.submit(pr.id, "engineer-1")
            reviewing = await orchestrator.advance(pr.id, "manager-1", Status.UNDER_REVIEW)
            approved = await orchestrator.approve(pr.id, "hr-head")
            converted = await orchestrator.advance(pr.id, "engineer-1", Status.CONVERTED_TO_RFQ)
            return pr, submitted, reviewing, approved, converted

        pr, submitted, reviewing, approved, converted = asyncio.run(scenario())
        assert pr.number.startswith("PR/")
        assert pr.payload["items"][0]["id"]
        assert submitted.document.status == Status.SUBMITTED
        assert submitted.document.approval_flow.required_approval_count == 1
        assert reviewing.document.status == Status.UNDER_REVIEW
        assert reviewing.notifications[0].recipient_id == "engineer-1"
        assert approved.document.status == Status.APPROVED
        assert converted.document.status == Status.CONVERTED_TO_RFQ
        assert converted.notifications == []

    def test_submit_needs_items(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            pr = (await orchestrator.create_draft(
                DocType.PURCHASE_REQUEST, "engineer-1", {"project_id": "project-alpha"}
            )).document
            await orchestrator.submit(pr.id, "engineer-1")

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    def test_reject_revise_resubmit(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            pr = (await orchestrator.create_draft(DocType.PURCHASE_REQUEST, "engineer-1", {
                "project_id": "project-alpha",
                "items": [{"description": "Sand", "quantity": 5}],
            })).document
            await orchestrator.submit(pr.id, "engineer-1")
            await orchestrator.reject(pr.id, "manager-1", "Wrong project")
            revised = await orchestrator.revise(pr.id, "engineer-1", remarks="Fixed project")
            resubmitted = await orchestrator.submit(pr.id, "engineer-1")
            return revised, resubmitted

        revised, resubmitted = asyncio.run(scenario())
        assert revised.document.status == Status.DRAFT
        assert revised.document.approval_flow is None
        assert "rejection_reason" not in revised.document.payload
        assert resubmitted.document.status == Status.SUBMITTED
        assert resubmitted.document.approval_flow.approvals == []

    def test_advance_only_to_plain_statuses(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            pr = (await orchestrator.create_draft(DocType.PURCHASE_REQUEST, "engineer-1", {
                "project_id": "project-alpha",
                "items": [{"description": "Sand", "quantity": 5}],
            })).document
            await orchestrator.submit(pr.id, "engineer-1")
            with pytest.raises(ValidationError):
                await orchestrator.advance(pr.id, "manager-1", Status.APPROVED)
            with pytest.raises(UnauthorizedApproverError):
                await orchestrator.advance(pr.id, "stranger", Status.UNDER_REVIEW)
            with pytest.raises(InvalidTransitionError):
                await orchestrator.advance(pr.id, "engineer-1", Status.CONVERTED_TO_RFQ)

        asyncio.run(scenario())


class TestDraftEditing:

    def test_edit_recomputes_leave_days(self, repository, orchestrator, audit, upcoming_monday):
        async def scenario():
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            return await orchestrator.update_draft(draft.id, "employee-1", {
                "end_date": (upcoming_monday + timedelta(days=1)).isoformat(),
                "reason": "Shorter trip",
            })

        result = asyncio.run(scenario())
        assert result.document.status == Status.DRAFT
        assert result.document.payload["number_of_days"] == 2.0
        assert result.document.payload["reason"] == "Shorter trip"
        assert result.document.revision == 1
        assert result.document.approval_history[-1]["action"] == "UPDATED"
        assert audit.entries[-1]["action_type"] == "UPDATED"

    def test_edit_rechecks_balance(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            draft, _ = await leave_draft(orchestrator, upcoming_monday, entitled=3)
            with pytest.raises(InsufficientBalanceError):
                await orchestrator.update_draft(draft.id, "employee-1", {
                    "end_date": (upcoming_monday + timedelta(days=4)).isoformat(),
                })
            return await orchestrator.get_document(draft.id)

        stored = asyncio.run(scenario())
        assert stored.payload["number_of_days"] == 3.0
        assert stored.revision == 0

    def test_rejected_po_is_revised_edited_and_resubmitted(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            key = LedgerKey("project-alpha", PROJECT_BUDGET, 2025)
            await orchestrator.ledger.open_account(key, entitled=100000)
            po = (await orchestrator.create_draft(DocType.PURCHASE_ORDER, "buyer-1", po_payload())).document
            await orchestrator.submit(po.id, "buyer-1")
            await orchestrator.reject(po.id, "manager-1", "Too many bags")
            await orchestrator.revise(po.id, "buyer-1")

            item = dict(po.payload["items"][0], quantity=50)
            edited = await orchestrator.update_draft(po.id, "buyer-1", {"items": [item]})
            resubmitted = await orchestrator.submit(po.id, "buyer-1")
            return edited, resubmitted, await orchestrator.ledger.get_account(key)

        edited, resubmitted, account = asyncio.run(scenario())
        assert edited.document.payload["grand_total"] == 29500.0
        assert resubmitted.ledger_effects[0]["amount"] == 29500.0
        assert account.pending == Decimal("29500")

    def test_only_owner_edits_drafts(self, repository, orchestrator, upcoming_monday):
        async def scenario():
            await configure_approvers(repository)
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            with pytest.raises(UnauthorizedApproverError):
                await orchestrator.update_draft(draft.id, "manager-1", {"reason": "x"})
            with pytest.raises(UnauthorizedApproverError):
                await orchestrator.delete_draft(draft.id, "manager-1")
            await orchestrator.submit(draft.id, "employee-1")
            with pytest.raises(ValidationError):
                await orchestrator.update_draft(draft.id, "employee-1", {"reason": "x"})
            with pytest.raises(ValidationError):
                await orchestrator.delete_draft(draft.id, "employee-1")

        asyncio.run(scenario())

    def test_amendment_drafts_are_not_editable(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, _ = await approved_po(orchestrator)
            amendment = (await orchestrator.create_amendment(
                po.id, "buyer-1", {"payment_terms": "Net 60"}, reason="Vendor request"
            )).document
            await orchestrator.update_draft(amendment.id, "buyer-1", {"reason": "Changed mind"})

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    def test_delete_draft(self, repository, orchestrator, audit, upcoming_monday):
        async def scenario():
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.delete_draft(draft.id, "employee-1")
            with pytest.raises(NotFoundError):
                await orchestrator.get_document(draft.id)
            return await orchestrator.list_documents(owner_id="employee-1")

        assert asyncio.run(scenario()) == []
        assert audit.entries[-1]["action_type"] == "DELETED"


# =============================================================================
# PURCHASE ORDER / AMENDMENT
# =============================================================================

class TestPurchaseOrder:

    def test_budget_reserved_then_committed_and_snapshotted(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, key = await approved_po(orchestrator)
            return po, await orchestrator.ledger.get_account(key), await orchestrator.versions.get_versions(po.id)

        po, account, versions = asyncio.run(scenario())
        assert po.status == Status.APPROVED
        assert po.number.startswith("PO/")
        assert po.payload["subtotal"] == 50000.0
        assert po.payload["grand_total"] == 59000.0
        assert account.used == Decimal("59000")
        assert account.pending == Decimal("0")
        assert [v.version_number for v in versions] == [1]
        assert versions[0].snapshot["grand_total"] == 59000.0
        assert "items" not in versions[0].snapshot

    def test_budget_overrun_only_warns(self, repository, orchestrator, caplog):
        caplog.set_level(logging.WARNING)

        async def scenario():
            await configure_approvers(repository)
            po, key = await approved_po(orchestrator, budget=50000)
            return po, await orchestrator.ledger.get_account(key)

        po, account = asyncio.run(scenario())
        assert po.status == Status.APPROVED
        assert account.available == Decimal("-9000")
        assert "Overdraft" in caplog.text

    def test_lifecycle_after_approval(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, _ = await approved_po(orchestrator)
            for status in (Status.ISSUED, Status.ACKNOWLEDGED, Status.IN_PROGRESS, Status.COMPLETED):
                await orchestrator.advance(po.id, "buyer-1", status)
            return await orchestrator.get_document(po.id)

        po = asyncio.run(scenario())
        assert po.status == Status.COMPLETED
        assert "completed_at" in po.timestamps

    def test_cancel_approved_po_refunds_budget(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, key = await approved_po(orchestrator)
            result = await orchestrator.cancel(po.id, "buyer-1", reason="Vendor withdrew")
            return result, await orchestrator.ledger.get_account(key)

        result, account = asyncio.run(scenario())
        assert result.document.status == Status.CANCELLED
        assert result.document.payload["cancellation_reason"] == "Vendor withdrew"
        assert account.used == Decimal("0")
        assert account.available == Decimal("100000")

    def test_po_requires_items(self, orchestrator):
        with pytest.raises(ValidationError):
            asyncio.run(orchestrator.create_draft(DocType.PURCHASE_ORDER, "buyer-1", {
                "project_id": "project-alpha", "vendor_id": "vendor-9", "items": [],
            }))


class TestAmendment:

    def amend(self, orchestrator, po, quantity):
        item = dict(po.payload["items"][0], quantity=quantity)
        return orchestrator.create_amendment(po.id, "buyer-1", {"items": [item]}, reason="Revised site estimate")

    def test_quantity_increase(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, key = await approved_po(orchestrator)
            amendment = (await self.amend(orchestrator, po, 120)).document
            untouched = await orchestrator.get_document(po.id)
            await orchestrator.submit(amendment.id, "buyer-1")
            approved = await orchestrator.approve(amendment.id, "manager-1")
            return (
                amendment, untouched, approved,
                await orchestrator.get_document(po.id),
                await orchestrator.ledger.get_account(key),
                await orchestrator.versions.get_versions(po.id),
                await orchestrator.versions.diff(po.id, 1, 2),
            )

        amendment, untouched, approved, po, account, versions, changes = asyncio.run(scenario())

        assert amendment.number.startswith("POA/")
        assert amendment.payload["amendment_number"] == 1
        assert amendment.payload["amendment_type"] == AmendmentType.QUANTITY_CHANGE
        assert amendment.payload["total_change"] == 11800.0
        assert untouched.status == Status.APPROVED
        assert untouched.payload["grand_total"] == 59000.0

        assert approved.document.status == Status.APPROVED
        assert approved.ledger_effects[0]["operation"] == "DEBIT"
        assert approved.ledger_effects[0]["amount"] == 11800.0

        assert po.status == Status.AMENDED
        assert po.payload["grand_total"] == 70800.0
        assert po.payload["last_amendment_number"] == 1
        assert account.used == Decimal("70800")

        assert [v.version_number for v in versions] == [1, 2]
        assert versions[1].amendment_id == amendment.id
        by_field = {c.field: c for c in changes}
        assert (by_field["grand_total"].old_value, by_field["grand_total"].new_value) == (59000.0, 70800.0)
        assert by_field["items[0].quantity"].category == "SCOPE"

    def test_price_decrease_refunds_budget(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, key = await approved_po(orchestrator)
            amendment = (await self.amend(orchestrator, po, 80)).document
            await orchestrator.submit(amendment.id, "buyer-1")
            approved = await orchestrator.approve(amendment.id, "manager-1")
            return approved, await orchestrator.ledger.get_account(key)

        approved, account = asyncio.run(scenario())
        assert approved.ledger_effects[0]["operation"] == "REFUND"
        assert account.used == Decimal("47200")

    def test_terms_only_amendment(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, _ = await approved_po(orchestrator)
            return (await orchestrator.create_amendment(
                po.id, "buyer-1", {"payment_terms": "Net 60"}, reason="Vendor request"
            )).document

        amendment = asyncio.run(scenario())
        assert amendment.payload["amendment_type"] == AmendmentType.TERMS_CHANGE
        assert amendment.payload["total_change"] == 0.0

    def test_pending_po_cannot_be_amended(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            await orchestrator.ledger.open_account(LedgerKey("project-alpha", PROJECT_BUDGET, 2025), entitled=100000)
            po = (await orchestrator.create_draft(DocType.PURCHASE_ORDER, "buyer-1", po_payload())).document
            await orchestrator.submit(po.id, "buyer-1")
            await orchestrator.create_amendment(po.id, "buyer-1", {"payment_terms": "Net 60"}, reason="x")

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    @pytest.mark.parametrize("proposed,reason", [
        ({"vendor_id": "vendor-2"}, "Switch vendor"),
        ({"payment_terms": "Net 60"}, None),
        ({"payment_terms": "Net 30"}, "No-op"),
    ])
    def test_invalid_amendments(self, repository, orchestrator, proposed, reason):
        async def scenario():
            await configure_approvers(repository)
            po, _ = await approved_po(orchestrator)
            await orchestrator.create_amendment(po.id, "buyer-1", proposed, reason=reason)

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    def approve_amendment(self, orchestrator, amendment):
        async def run():
            await orchestrator.submit(amendment.id, "buyer-1")
            return await orchestrator.approve(amendment.id, "manager-1")
        return run()

    def test_amendments_drafted_together_keep_each_others_edits(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, key = await approved_po(orchestrator)
            terms = (await orchestrator.create_amendment(
                po.id, "buyer-1", {"payment_terms": "Net 60"}, reason="Vendor request"
            )).document
            quantity = (await self.amend(orchestrator, po, 120)).document
            await self.approve_amendment(orchestrator, terms)
            approved = await self.approve_amendment(orchestrator, quantity)
            return (
                approved,
                await orchestrator.get_document(po.id),
                await orchestrator.ledger.get_account(key),
                await orchestrator.versions.diff(po.id, 2, 3),
            )

        approved, po, account, changes = asyncio.run(scenario())
        assert po.payload["payment_terms"] == "Net 60"
        assert po.payload["items"][0]["quantity"] == 120.0
        assert po.payload["grand_total"] == 70800.0
        assert po.payload["last_amendment_number"] == 2
        assert approved.ledger_effects[0]["amount"] == 11800.0
        assert account.used == Decimal("70800")
        assert {c.field for c in changes} == {"subtotal", "grand_total", "items[0].quantity"}

    def test_item_edits_merge_and_totals_follow_the_current_po(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, key = await approved_po(orchestrator)
            quantity = (await self.amend(orchestrator, po, 120)).document
            item = dict(po.payload["items"][0], unit_price=400)
            price = (await orchestrator.create_amendment(
                po.id, "buyer-1", {"items": [item]}, reason="Negotiated rate"
            )).document
            await self.approve_amendment(orchestrator, quantity)
            approved = await self.approve_amendment(orchestrator, price)
            return approved, await orchestrator.get_document(po.id), await orchestrator.ledger.get_account(key)

        approved, po, account = asyncio.run(scenario())
        line = po.payload["items"][0]
        assert (line["quantity"], line["unit_price"]) == (120.0, 400.0)
        assert po.payload["grand_total"] == 56640.0
        assert approved.ledger_effects[0]["operation"] == "REFUND"
        assert approved.document.payload["total_change"] == -14160.0
        assert account.used == Decimal("56640")

    def test_edit_of_a_removed_item_is_refused(self, repository, orchestrator):
        async def scenario():
            await configure_approvers(repository)
            po, _ = await approved_po(orchestrator)
            replacement = {"description": "Steel rods", "quantity": 10, "unit_price": 1000}
            swap = (await orchestrator.create_amendment(
                po.id, "buyer-1", {"items": [replacement]}, reason="Change of material"
            )).document
            quantity = (await self.amend(orchestrator, po, 120)).document
            await self.approve_amendment(orchestrator, swap)
            with pytest.raises(ValidationError):
                await self.approve_amendment(orchestrator, quantity)
            return await orchestrator.get_document(quantity.id), await orchestrator.get_document(po.id)

        quantity, po = asyncio.run(scenario())
        assert quantity.status == Status.PENDING_APPROVAL
        assert [i["description"] for i in po.payload["items"]] == ["Steel rods"]

    def test_amendments_are_not_drafted_directly(self, orchestrator):
        with pytest.raises(ValidationError):
            asyncio.run(orchestrator.create_draft(DocType.PO_AMENDMENT, "buyer-1", {}))


# =============================================================================
# CONFLICTS AND SIDE EFFECTS
# =============================================================================

class ConflictingRepository(InMemoryWorkflowRepository):
    """Fails the next `conflicts` document writes as if a concurrent writer won."""

    def __init__(self):
        super().__init__()
        self.conflicts = 0

    async def update_document(self, doc_id, expected_revision, set_fields, push_history=None, session=None):
        if self.conflicts:
            self.conflicts -= 1
            raise ConcurrencyConflictError("WorkflowDocument", doc_id, "revision moved")
        return await super().update_document(doc_id, expected_revision, set_fields, push_history, session=session)


class BrokenNotifier:

    async def dispatch(self, notifications):
        raise RuntimeError("outbox offline")


class BrokenAudit:

    async def log_action(self, **entry):
        raise RuntimeError("audit store offline")


class TestConflicts:

    def test_conflict_rolls_back_ledger_and_retry_succeeds(self, upcoming_monday):
        repository = ConflictingRepository()
        notifier = RecordingNotifier()
        orchestrator = WorkflowOrchestrator(repository, notifier=notifier, audit=RecordingAudit())

        async def scenario():
            await configure_approvers(repository)
            draft, key = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-1")
            await orchestrator.approve(draft.id, "manager-1")
            sent_before = len(notifier.sent)

            repository.conflicts = 1
            with pytest.raises(ConcurrencyConflictError):
                await orchestrator.approve(draft.id, "hr-head")
            mid_doc = await orchestrator.get_document(draft.id)
            mid_account = await orchestrator.ledger.get_account(key)
            assert len(notifier.sent) == sent_before

            repository.conflicts = 1
            result = await retry_on_conflict(lambda: orchestrator.approve(draft.id, "hr-head"), delay_ms=0)
            return mid_doc, mid_account, result, await orchestrator.ledger.get_account(key)

        mid_doc, mid_account, result, final = asyncio.run(scenario())
        assert mid_doc.status == Status.PARTIALLY_APPROVED
        assert mid_account.pending == Decimal("3")
        assert mid_account.used == Decimal("0")
        assert result.document.status == Status.APPROVED
        assert final.used == Decimal("3")

    def test_retry_gives_up(self):
        calls = []

        async def always_conflicts():
            calls.append(1)
            raise ConcurrencyConflictError("WorkflowDocument", "d1")

        with pytest.raises(ConcurrencyConflictError):
            asyncio.run(retry_on_conflict(always_conflicts, attempts=3, delay_ms=0))
        assert len(calls) == 3

    def test_non_retryable_errors_are_not_retried(self):
        calls = []

        async def invalid():
            calls.append(1)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            asyncio.run(retry_on_conflict(invalid, delay_ms=0))
        assert len(calls) == 1


class TestSideEffects:

    def test_notification_failure_does_not_fail_the_action(self, upcoming_monday, caplog):
        repository = InMemoryWorkflowRepository()
        orchestrator = WorkflowOrchestrator(repository, notifier=BrokenNotifier(), audit=BrokenAudit())

        async def scenario():
            await configure_approvers(repository)
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            result = await orchestrator.submit(draft.id, "employee-1")
            return result, await orchestrator.get_document(draft.id)

        result, stored = asyncio.run(scenario())
        assert result.document.status == Status.PENDING_APPROVAL
        assert stored.status == Status.PENDING_APPROVAL
        assert "[NOTIFY]" in caplog.text
        assert "[AUDIT]" in caplog.text

    def test_outbox_and_audit_trail(self, upcoming_monday):
        repository = InMemoryWorkflowRepository()
        dispatcher = NotificationDispatcher(repository)
        audit_service = AuditService(repository)
        orchestrator = WorkflowOrchestrator(repository, notifier=dispatcher, audit=audit_service)

        async def scenario():
            await configure_approvers(repository)
            draft, _ = await leave_draft(orchestrator, upcoming_monday)
            await orchestrator.submit(draft.id, "employee-1")
            return (
                draft,
                await dispatcher.get_for_recipient("manager-1"),
                await audit_service.get_audit_logs(entity_id=draft.id),
            )

        draft, inbox, logs = asyncio.run(scenario())
        assert len(inbox) == 1
        assert inbox[0]["status"] == "PENDING"
        assert inbox[0]["entity_id"] == draft.id
        assert inbox[0]["link_url"] == f"/hr/leaves/{draft.id}"
        assert sorted(log["action_type"] for log in logs) == ["CREATED", "SUBMITTED"]
        assert all("audit_id" in log for log in logs)
