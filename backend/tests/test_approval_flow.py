"""
Approval flow engine tests: required approvers, counts, self-approval exclusion
"""
import pytest

from workflow_core.approval_flow import ApprovalFlow, ApprovalFlowEngine, ApprovalPolicy
from workflow_core.errors import (
    DuplicateApprovalError,
    SelfApprovalError,
    UnauthorizedApproverError,
    ValidationError,
)

engine = ApprovalFlowEngine()
TWO = ApprovalPolicy(required_approval_count=2)
ONE = ApprovalPolicy(required_approval_count=1)


class TestInitFlow:

    def test_uses_configured_count(self):
        flow = engine.init_flow(["A", "B"], "applicant", TWO)
        assert flow.required_approvers == ["A", "B"]
        assert flow.required_approval_count == 2
        assert not flow.is_complete
        assert not flow.is_self_approval_case

    def test_applicant_in_set_is_excluded_and_count_drops_to_one(self):
        flow = engine.init_flow(["applicant", "C"], "applicant", TWO)
        assert flow.required_approvers == ["C"]
        assert flow.required_approval_count == 1
        assert flow.is_self_approval_case

    def test_duplicates_and_blanks_are_removed_in_order(self):
        flow = engine.init_flow(["B", "A", "B", "", None], "applicant", ONE)
        assert flow.required_approvers == ["B", "A"]

    def test_count_capped_at_available_approvers(self):
        flow = engine.init_flow(["A"], "applicant", TWO)
        assert flow.required_approval_count == 1

    def test_no_approvers_left_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            engine.init_flow(["applicant"], "applicant", TWO)
        with pytest.raises(ValidationError):
            engine.init_flow([], "applicant", ONE)

    def test_policy_requires_at_least_one(self):
        with pytest.raises(ValidationError):
            ApprovalPolicy(required_approval_count=0)


class TestRecordApproval:

    def test_two_step_completion(self):
        flow = engine.init_flow(["A", "B"], "applicant", TWO)

        flow = engine.record_approval(flow, "A")
        assert not flow.is_complete
        assert flow.approvals[0].step == 1
        assert flow.pending_approvers() == ["B"]

        flow = engine.record_approval(flow, "B")
        assert flow.is_complete
        assert [a.approver_id for a in flow.approvals] == ["A", "B"]
        assert [a.step for a in flow.approvals] == [1, 2]

    def test_self_approval_case_completes_with_one(self):
        flow = engine.init_flow(["applicant", "C"], "applicant", TWO)
        flow = engine.record_approval(flow, "C")
        assert flow.is_complete

    def test_duplicate_approval_rejected(self):
        flow = engine.record_approval(engine.init_flow(["A", "B"], "x", TWO), "A")
        with pytest.raises(DuplicateApprovalError):
            engine.record_approval(flow, "A")

    def test_non_member_rejected(self):
        flow = engine.init_flow(["A", "B"], "x", TWO)
        with pytest.raises(UnauthorizedApproverError):
            engine.record_approval(flow, "Z")

    def test_excluded_applicant_cannot_approve(self):
        flow = engine.init_flow(["applicant", "C"], "applicant", TWO)
        with pytest.raises(UnauthorizedApproverError):
            engine.record_approval(flow, "applicant")

    def test_complete_flow_takes_no_more_approvals(self):
        flow = engine.record_approval(engine.init_flow(["A", "B"], "x", ONE), "A")
        assert flow.is_complete
        with pytest.raises(ValidationError):
            engine.record_approval(flow, "B")

    def test_original_flow_is_not_mutated(self):
        flow = engine.init_flow(["A", "B"], "x", TWO)
        engine.record_approval(flow, "A")
        assert flow.approvals == []

    def test_invariants_hold_for_every_reachable_state(self):
        approvers = ["A", "B", "C"]
        for count in (1, 2, 3):
            flow = engine.init_flow(approvers, "x", ApprovalPolicy(required_approval_count=count))
            for approver in approvers:
                try:
                    flow = engine.record_approval(flow, approver)
                except ValidationError:
                    pass
                ids = [a.approver_id for a in flow.approvals]
                assert len(ids) == len(set(ids))
                assert len(ids) <= flow.required_approval_count
                assert len(ids) <= len(flow.required_approvers)
                assert flow.is_complete == (len(ids) >= flow.required_approval_count)


class TestSelfApproval:

    def test_owner_cannot_approve(self):
        with pytest.raises(SelfApprovalError):
            engine.prevent_self_approval("u1", "u1")

    def test_owner_cannot_reject(self):
        with pytest.raises(SelfApprovalError) as exc:
            engine.prevent_self_approval("u1", "u1", action="reject")
        assert exc.value.action == "reject"

    def test_other_actor_passes(self):
        engine.prevent_self_approval("u2", "u1")


class TestPersistence:

    def test_round_trip_recomputes_completion(self):
        flow = engine.record_approval(engine.init_flow(["A", "B"], "x", TWO), "A")
        data = flow.to_dict()
        data["is_complete"] = True  # stored flag is never trusted
        restored = ApprovalFlow.from_dict(data)
        assert restored.is_complete is False
        assert restored.approvals[0].approver_id == "A"
        assert data["current_step"] == 2

    def test_from_empty(self):
        assert ApprovalFlow.from_dict(None) is None
