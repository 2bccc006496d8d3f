from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union
from datetime import datetime

# ============================================
# WORKFLOW DOCUMENT REQUESTS
# ============================================
class DraftCreate(BaseModel):
    doc_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)

class DraftUpdate(BaseModel):
    payload: Dict[str, Any]

class ActionRequest(BaseModel):
    remarks: Optional[str] = None

class RejectRequest(BaseModel):
    reason: str

class CancelRequest(BaseModel):
    reason: Optional[str] = None

class AdvanceRequest(BaseModel):
    to_status: str
    remarks: Optional[str] = None

class AmendmentCreate(BaseModel):
    proposed: Dict[str, Any]
    reason: str

# ============================================
# WORKFLOW DOCUMENT RESPONSES
# ============================================
class ApprovalEntryResponse(BaseModel):
    approver_id: str
    approved_at: datetime
    step: int

class ApprovalFlowResponse(BaseModel):
    required_approvers: List[str]
    required_approval_count: int
    approvals: List[ApprovalEntryResponse] = Field(default_factory=list)
    current_step: int
    is_complete: bool
    is_self_approval_case: bool

class WorkflowDocumentResponse(BaseModel):
    id: str
    doc_type: str
    status: str
    owner_id: str
    number: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    approver_ids: List[str] = Field(default_factory=list)
    approval_flow: Optional[ApprovalFlowResponse] = None
    approval_history: List[Dict[str, Any]] = Field(default_factory=list)
    timestamps: Dict[str, datetime] = Field(default_factory=dict)
    revision: int
    created_at: datetime
    updated_at: datetime

class NotificationResponse(BaseModel):
    recipient_id: str
    category: str
    title: str
    message: str
    link_url: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None

class WorkflowActionResponse(BaseModel):
    document: WorkflowDocumentResponse
    notifications: List[NotificationResponse] = Field(default_factory=list)
    ledger_effects: List[Dict[str, Any]] = Field(default_factory=list)

# ============================================
# LEDGER MODELS
# ============================================
class LedgerAccountOpen(BaseModel):
    subject_id: str
    resource_type: str
    period: Union[int, str]
    entitled: float = 0.0
    carry_forward: float = 0.0

class LedgerAdjustment(BaseModel):
    operation: str  # GRANT or DEBIT
    amount: float

class LedgerAccountResponse(BaseModel):
    subject_id: str
    resource_type: str
    period: Union[int, str]
    entitled: float
    used: float
    pending: float
    carry_forward: float
    available: float
    revision: int

# ============================================
# VERSION MODELS
# ============================================
class VersionResponse(BaseModel):
    entity_id: str
    version_number: int
    snapshot: Dict[str, Any]
    snapshot_items: List[Dict[str, Any]] = Field(default_factory=list)
    amendment_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    notes: Optional[str] = None

class ChangeResponse(BaseModel):
    field: str
    field_label: str
    old_value: Any = None
    new_value: Any = None
    old_value_display: str
    new_value_display: str
    category: str

class VersionDiffResponse(BaseModel):
    entity_id: str
    from_version: int
    to_version: int
    amendment_type: str
    changes: List[ChangeResponse]

# ============================================
# SETTINGS MODELS
# ============================================
class ApproverSettingsUpdate(BaseModel):
    approver_ids: List[str]

class ApproverSettingsResponse(BaseModel):
    doc_type: str
    approver_ids: List[str]
