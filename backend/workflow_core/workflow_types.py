"""
WORKFLOW TYPE CONFIGURATION

Each resource type is one WorkflowTypeConfig: its state graph, approval
policy, ledger policy, numbering and payload rules. The orchestrator is a
single engine driven by these objects; nothing below branches on type at
the call site.

Types:
1. LEAVE_REQUEST     - 2 approvals, leave ledger (reserve / commit / release / refund)
2. ON_DUTY_REQUEST   - 2 approvals, comp-off ledger (grant on approval)
3. PURCHASE_REQUEST  - 1 approval, no ledger
4. PURCHASE_ORDER    - 1 approval, project budget ledger (overdraft warns)
5. PO_AMENDMENT      - 1 approval, applies its delta to the parent PO on approval
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .approval_flow import ApprovalPolicy
from .atomic_numbering import NumberingPolicy, monthly_policy, yearly_policy
from .documents import new_id
from .errors import ValidationError
from .financial_precision import ZERO, to_decimal, to_float, validate_non_negative, validate_positive
from .leave_calendar import as_date, calculate_leave_days, fiscal_year_for
from .ledger import LedgerOp, LedgerPolicy
from .state_machine import StateMachine, StateMachineRegistry


class DocType:
    LEAVE_REQUEST = "LEAVE_REQUEST"
    ON_DUTY_REQUEST = "ON_DUTY_REQUEST"
    PURCHASE_REQUEST = "PURCHASE_REQUEST"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    PO_AMENDMENT = "PO_AMENDMENT"


class Status:
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PARTIALLY_APPROVED = "PARTIALLY_APPROVED"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    CONVERTED_TO_RFQ = "CONVERTED_TO_RFQ"
    ISSUED = "ISSUED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    AMENDED = "AMENDED"


COMP_OFF = "COMP_OFF"
PROJECT_BUDGET = "PROJECT_BUDGET"

# Fields an amendment may change on a purchase order
AMENDABLE_PO_FIELDS = ("items", "tax_rate", "expected_delivery_date", "payment_terms", "delivery_address")


# =============================================================================
# LEAVE TYPES
# =============================================================================

@dataclass(frozen=True)
class LeaveTypeRule:
    code: str
    name: str
    allow_half_day: bool = True


LEAVE_TYPES: Dict[str, LeaveTypeRule] = {
    rule.code: rule
    for rule in (
        LeaveTypeRule("CASUAL", "Casual Leave"),
        LeaveTypeRule("SICK", "Sick Leave"),
        LeaveTypeRule(COMP_OFF, "Compensatory Off"),
        LeaveTypeRule("EARNED", "Earned Leave", allow_half_day=False),
    )
}


def get_leave_type(code: Any) -> LeaveTypeRule:
    if not code:
        raise ValidationError("'leave_type' is required")
    rule = LEAVE_TYPES.get(code)
    if rule is None:
        raise ValidationError(f"Leave type '{code}' not found", {"known": sorted(LEAVE_TYPES)})
    return rule


# =============================================================================
# PAYLOAD BUILDERS
# =============================================================================

def build_leave_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    leave_type = get_leave_type(payload.get("leave_type"))

    start = as_date(payload.get("start_date"), "start_date")
    end = as_date(payload.get("end_date") or start, "end_date")
    is_half_day = bool(payload.get("is_half_day", False))
    if is_half_day and not leave_type.allow_half_day:
        raise ValidationError(f"{leave_type.name} does not allow half-day leaves")

    days = calculate_leave_days(start, end, is_half_day)
    if days <= ZERO:
        raise ValidationError("Selected dates contain no working days")

    return {
        **payload,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "is_half_day": is_half_day,
        "number_of_days": to_float(days),
        "fiscal_year": fiscal_year_for(start),
    }


def build_on_duty_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    duty_date = as_date(payload.get("date"), "date")
    if not payload.get("reason"):
        raise ValidationError("'reason' is required")
    return {
        **payload,
        "date": duty_date.isoformat(),
        "fiscal_year": fiscal_year_for(duty_date),
        "comp_off_days": 1,
    }


def _normalize_items(items: Any, require_price: bool) -> List[Dict[str, Any]]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("'items' must be a list")

    normalized = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"Item {index + 1} must be an object")
        quantity = validate_positive(item.get("quantity"), f"items[{index}].quantity")
        line = {**item, "id": item.get("id") or new_id(), "quantity": to_float(quantity)}
        if require_price:
            unit_price = validate_non_negative(item.get("unit_price"), f"items[{index}].unit_price")
            line["unit_price"] = to_float(unit_price)
            line["amount"] = to_float(quantity * unit_price)
        normalized.append(line)
    return normalized


def build_purchase_request_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not payload.get("project_id"):
        raise ValidationError("'project_id' is required")
    return {**payload, "items": _normalize_items(payload.get("items"), require_price=False)}


def build_purchase_order_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    for required in ("project_id", "vendor_id"):
        if not payload.get(required):
            raise ValidationError(f"'{required}' is required")

    items = _normalize_items(payload.get("items"), require_price=True)
    if not items:
        raise ValidationError("A purchase order needs at least one item")

    tax_rate = validate_non_negative(payload.get("tax_rate", 0), "tax_rate")
    subtotal = sum((to_decimal(i["quantity"]) * to_decimal(i["unit_price"]) for i in items), ZERO)
    tax_amount = subtotal * tax_rate / Decimal(100)
    grand_total = subtotal + tax_amount
    if grand_total <= ZERO:
        raise ValidationError("Purchase order total must be positive")

    return {
        **payload,
        "items": items,
        "tax_rate": to_float(tax_rate),
        "subtotal": to_float(subtotal),
        "tax_amount": to_float(tax_amount),
        "grand_total": to_float(grand_total),
        "fiscal_year": payload.get("fiscal_year") or datetime.utcnow().year,
    }


def amendment_edits(current: Dict[str, Any], amended: Dict[str, Any]) -> Dict[str, Any]:
    """
    The edits an amendment makes, relative to the purchase order it was
    drafted against: changed header fields, changed item lines by id,
    added lines and removed line ids. Derived totals are not edits.
    """
    fields = {
        name: amended.get(name)
        for name in AMENDABLE_PO_FIELDS
        if name != "items" and amended.get(name) != current.get(name)
    }

    current_items = {item["id"]: item for item in current.get("items", [])}
    kept = set()
    item_edits: Dict[str, Dict[str, Any]] = {}
    added = []
    for item in amended.get("items", []):
        base = current_items.get(item["id"])
        if base is None:
            added.append(item)
            continue
        kept.add(item["id"])
        changed = {k: v for k, v in item.items() if k != "amount" and base.get(k) != v}
        if changed:
            item_edits[item["id"]] = changed

    return {
        "fields": fields,
        "items": item_edits,
        "added_items": added,
        "removed_item_ids": [item_id for item_id in current_items if item_id not in kept],
    }


def apply_amendment_edits(current: Dict[str, Any], edits: Dict[str, Any]) -> Dict[str, Any]:
    """Replay amendment edits onto the purchase order as it is now and rebuild its totals."""
    items_by_id = {item["id"]: dict(item) for item in current.get("items", [])}

    missing = [item_id for item_id in edits.get("items", {}) if item_id not in items_by_id]
    if missing:
        raise ValidationError(f"Amendment edits items no longer on the purchase order: {missing}")

    for item_id, changed in edits.get("items", {}).items():
        items_by_id[item_id].update(changed)

    removed = set(edits.get("removed_item_ids", []))
    items = [items_by_id[item["id"]] for item in current.get("items", []) if item["id"] not in removed]
    items.extend(dict(item) for item in edits.get("added_items", []))

    return build_purchase_order_payload({**current, **edits.get("fields", {}), "items": items})


def require_items(document) -> None:
    if not document.payload.get("items"):
        raise ValidationError("Cannot submit without at least one item")


# =============================================================================
# CONFIGURATION OBJECT
# =============================================================================

@dataclass(frozen=True)
class WorkflowTypeConfig:
    doc_type: str
    label: str
    machine: StateMachine
    approval_policy: ApprovalPolicy
    numbering: NumberingPolicy
    link_path: str
    notification_category: str
    submitted_status: str = Status.PENDING_APPROVAL
    partial_status: Optional[str] = None
    approved_status: str = Status.APPROVED
    rejected_status: str = Status.REJECTED
    cancelled_status: str = Status.CANCELLED
    approvable_statuses: Tuple[str, ...] = (Status.PENDING_APPROVAL,)
    ledger_policy: Optional[LedgerPolicy] = None
    # Statuses in which the ledger holds a reservation / a committed amount
    reserved_statuses: Tuple[str, ...] = ()
    committed_statuses: Tuple[str, ...] = ()
    # Cancel-after-approval is allowed only this many days before the date field
    cancel_cutoff_field: Optional[str] = None
    cancel_cutoff_days: int = 1
    # Targets reachable through a plain status change (no approval / ledger logic)
    plain_transitions: Tuple[str, ...] = ()
    build_payload: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    submit_guard: Optional[Callable[[Any], None]] = None
    snapshot_on_approval: bool = False

    def link_for(self, doc_id: str) -> str:
        return self.link_path.format(id=doc_id)


def _machine(name: str, edges: List[Tuple[str, str]], terminals: Tuple[str, ...] = ()) -> StateMachine:
    machine = StateMachine(name, initial_state=Status.DRAFT)
    machine.register_many(edges)
    for state in terminals:
        machine.add_state(state)
    return machine


_HR_EDGES = [
    (Status.DRAFT, Status.PENDING_APPROVAL),
    (Status.DRAFT, Status.CANCELLED),
    (Status.PENDING_APPROVAL, Status.PARTIALLY_APPROVED),
    (Status.PENDING_APPROVAL, Status.APPROVED),
    (Status.PENDING_APPROVAL, Status.REJECTED),
    (Status.PENDING_APPROVAL, Status.CANCELLED),
    (Status.PARTIALLY_APPROVED, Status.APPROVED),
    (Status.PARTIALLY_APPROVED, Status.REJECTED),
    (Status.PARTIALLY_APPROVED, Status.CANCELLED),
    (Status.APPROVED, Status.CANCELLED),
]

_PR_EDGES = [
    (Status.DRAFT, Status.SUBMITTED),
    (Status.DRAFT, Status.CANCELLED),
    (Status.SUBMITTED, Status.UNDER_REVIEW),
    (Status.SUBMITTED, Status.APPROVED),
    (Status.SUBMITTED, Status.REJECTED),
    (Status.SUBMITTED, Status.CANCELLED),
    (Status.UNDER_REVIEW, Status.APPROVED),
    (Status.UNDER_REVIEW, Status.REJECTED),
    (Status.UNDER_REVIEW, Status.CANCELLED),
    (Status.APPROVED, Status.CONVERTED_TO_RFQ),
    (Status.REJECTED, Status.DRAFT),
]

_PO_EDGES = [
    (Status.DRAFT, Status.PENDING_APPROVAL),
    (Status.DRAFT, Status.CANCELLED),
    (Status.PENDING_APPROVAL, Status.APPROVED),
    (Status.PENDING_APPROVAL, Status.REJECTED),
    (Status.PENDING_APPROVAL, Status.CANCELLED),
    (Status.REJECTED, Status.DRAFT),
    (Status.APPROVED, Status.ISSUED),
    (Status.APPROVED, Status.CANCELLED),
    (Status.APPROVED, Status.AMENDED),
    (Status.ISSUED, Status.ACKNOWLEDGED),
    (Status.ISSUED, Status.AMENDED),
    (Status.ISSUED, Status.CANCELLED),
    (Status.ACKNOWLEDGED, Status.IN_PROGRESS),
    (Status.ACKNOWLEDGED, Status.AMENDED),
    (Status.IN_PROGRESS, Status.COMPLETED),
    (Status.IN_PROGRESS, Status.AMENDED),
    (Status.AMENDED, Status.AMENDED),
    (Status.AMENDED, Status.IN_PROGRESS),
    (Status.AMENDED, Status.COMPLETED),
]

_POA_EDGES = [
    (Status.DRAFT, Status.PENDING_APPROVAL),
    (Status.DRAFT, Status.CANCELLED),
    (Status.PENDING_APPROVAL, Status.APPROVED),
    (Status.PENDING_APPROVAL, Status.REJECTED),
    (Status.PENDING_APPROVAL, Status.CANCELLED),
]


LEAVE_REQUEST = WorkflowTypeConfig(
    doc_type=DocType.LEAVE_REQUEST,
    label="Leave request",
    machine=_machine(DocType.LEAVE_REQUEST, _HR_EDGES, terminals=(Status.REJECTED, Status.CANCELLED)),
    approval_policy=ApprovalPolicy(required_approval_count=2),
    numbering=yearly_policy("LR", "leave-request"),
    link_path="/hr/leaves/{id}",
    notification_category="LEAVE",
    partial_status=Status.PARTIALLY_APPROVED,
    approvable_statuses=(Status.PENDING_APPROVAL, Status.PARTIALLY_APPROVED),
    ledger_policy=LedgerPolicy(
        resource_type_field="leave_type",
        amount_field="number_of_days",
        on_submit=LedgerOp.RESERVE,
        on_approve=LedgerOp.COMMIT,
        on_reject=LedgerOp.RELEASE,
        on_cancel_reserved=LedgerOp.RELEASE,
        on_cancel_committed=LedgerOp.REFUND,
    ),
    reserved_statuses=(Status.PENDING_APPROVAL, Status.PARTIALLY_APPROVED),
    committed_statuses=(Status.APPROVED,),
    cancel_cutoff_field="start_date",
    build_payload=build_leave_payload,
)

ON_DUTY_REQUEST = WorkflowTypeConfig(
    doc_type=DocType.ON_DUTY_REQUEST,
    label="On-duty request",
    machine=_machine(DocType.ON_DUTY_REQUEST, _HR_EDGES, terminals=(Status.REJECTED, Status.CANCELLED)),
    approval_policy=ApprovalPolicy(required_approval_count=2),
    numbering=yearly_policy("OD", "on-duty"),
    link_path="/hr/on-duty/{id}",
    notification_category="ON_DUTY",
    partial_status=Status.PARTIALLY_APPROVED,
    approvable_statuses=(Status.PENDING_APPROVAL, Status.PARTIALLY_APPROVED),
    ledger_policy=LedgerPolicy(
        resource_type=COMP_OFF,
        fixed_amount=Decimal(1),
        on_approve=LedgerOp.GRANT,
        on_cancel_committed=LedgerOp.DEBIT,
    ),
    committed_statuses=(Status.APPROVED,),
    cancel_cutoff_field="date",
    build_payload=build_on_duty_payload,
)

PURCHASE_REQUEST = WorkflowTypeConfig(
    doc_type=DocType.PURCHASE_REQUEST,
    label="Purchase request",
    machine=_machine(DocType.PURCHASE_REQUEST, _PR_EDGES, terminals=(Status.CANCELLED, Status.CONVERTED_TO_RFQ)),
    approval_policy=ApprovalPolicy(required_approval_count=1),
    numbering=monthly_policy("PR"),
    link_path="/procurement/purchase-requests/{id}",
    notification_category="PROCUREMENT",
    submitted_status=Status.SUBMITTED,
    approvable_statuses=(Status.SUBMITTED, Status.UNDER_REVIEW),
    plain_transitions=(Status.UNDER_REVIEW, Status.CONVERTED_TO_RFQ),
    build_payload=build_purchase_request_payload,
    submit_guard=require_items,
)

PURCHASE_ORDER = WorkflowTypeConfig(
    doc_type=DocType.PURCHASE_ORDER,
    label="Purchase order",
    machine=_machine(DocType.PURCHASE_ORDER, _PO_EDGES, terminals=(Status.CANCELLED, Status.COMPLETED)),
    approval_policy=ApprovalPolicy(required_approval_count=1),
    numbering=monthly_policy("PO"),
    link_path="/procurement/purchase-orders/{id}",
    notification_category="PROCUREMENT",
    ledger_policy=LedgerPolicy(
        subject_field="project_id",
        resource_type=PROJECT_BUDGET,
        amount_field="grand_total",
        allow_overdraft=True,
        on_submit=LedgerOp.RESERVE,
        on_approve=LedgerOp.COMMIT,
        on_reject=LedgerOp.RELEASE,
        on_cancel_reserved=LedgerOp.RELEASE,
        on_cancel_committed=LedgerOp.REFUND,
    ),
    reserved_statuses=(Status.PENDING_APPROVAL,),
    committed_statuses=(Status.APPROVED, Status.ISSUED),
    plain_transitions=(Status.ISSUED, Status.ACKNOWLEDGED, Status.IN_PROGRESS, Status.COMPLETED),
    build_payload=build_purchase_order_payload,
    snapshot_on_approval=True,
)

PO_AMENDMENT = WorkflowTypeConfig(
    doc_type=DocType.PO_AMENDMENT,
    label="Purchase order amendment",
    machine=_machine(DocType.PO_AMENDMENT, _POA_EDGES, terminals=(Status.APPROVED, Status.REJECTED, Status.CANCELLED)),
    approval_policy=ApprovalPolicy(required_approval_count=1),
    numbering=monthly_policy("POA"),
    link_path="/procurement/amendments/{id}",
    notification_category="PROCUREMENT",
)


WORKFLOW_TYPES: Dict[str, WorkflowTypeConfig] = {
    config.doc_type: config
    for config in (LEAVE_REQUEST, ON_DUTY_REQUEST, PURCHASE_REQUEST, PURCHASE_ORDER, PO_AMENDMENT)
}

STATE_MACHINES = StateMachineRegistry()
for _config in WORKFLOW_TYPES.values():
    STATE_MACHINES.register(_config.doc_type, _config.machine)


def get_workflow_type(doc_type: str) -> WorkflowTypeConfig:
    config = WORKFLOW_TYPES.get(doc_type)
    if config is None:
        raise ValidationError(f"Unknown document type: {doc_type}", {"known": sorted(WORKFLOW_TYPES)})
    return config
