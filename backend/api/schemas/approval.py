"""Approval schemas."""

from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import List, Optional, Dict, Any


class ApprovalRespondRequest(BaseModel):
    """Request to approve or reject."""

    decision: str = Field(description="APPROVED or REJECTED")
    response: Optional[str] = Field(default=None, description="Optional comment")


class ApprovalBulkRequest(BaseModel):
    """Request to approve or reject several approvals."""

    approval_ids: List[str] = Field(min_length=1, description="Approvals to respond to")
    response: Optional[str] = Field(default=None, description="Optional comment applied to all")


class ApprovalDelegateRequest(BaseModel):
    """Request to hand an approval to another user."""

    to_user_id: str = Field(min_length=1, description="User who becomes an approver")
    reason: Optional[str] = Field(default=None, description="Why the approval was delegated")


class ApprovalResponse(BaseModel):
    """Approval request information."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Approval ID")
    execution_id: str = Field(description="Waiting step execution")
    requested_by: Optional[str] = Field(default=None, description="User who started the instance")
    approver_ids: List[str] = Field(default_factory=list, description="Users allowed to decide")
    title: str = Field(description="Approval title")
    description: str = Field(description="Approval description")
    priority: str = Field(description="LOW, MEDIUM, HIGH or URGENT")
    due_date: Optional[datetime] = Field(default=None, description="Deadline")
    decision: str = Field(description="PENDING, APPROVED, REJECTED or CANCELLED")
    responded_by: Optional[str] = Field(default=None, description="Who decided")
    responded_at: Optional[datetime] = Field(default=None, description="When it was decided")
    response: Optional[str] = Field(default=None, description="Decision comment")
    delegations: List[Dict[str, Any]] = Field(default_factory=list, description="Delegation history")
    created_at: datetime = Field(description="Request timestamp")
    can_approve: Optional[bool] = Field(default=None, description="Caller may decide this approval")
    is_requester: Optional[bool] = Field(default=None, description="Caller requested this approval")


class ApprovalListResponse(BaseModel):
    """Paginated list of approvals."""

    approvals: List[ApprovalResponse] = Field(description="List of approvals")
    total: int = Field(description="Total number of approvals")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")


class BulkResultItem(BaseModel):
    approval_id: str
    success: bool
    error: Optional[str] = None


class ApprovalBulkResponse(BaseModel):
    """Per-approval outcome of a bulk response."""

    results: List[BulkResultItem] = Field(description="Outcome per approval, in request order")
    successful: int = Field(description="Number of approvals responded to")
    failed: int = Field(description="Number of approvals that failed")


class ApprovalMetricsResponse(BaseModel):
    """Approval statistics over a time window."""

    start: datetime = Field(description="Window start")
    end: datetime = Field(description="Window end")
    total: int = Field(description="Requests in the window")
    pending: int = Field(description="Still pending")
    approved: int = Field(description="Approved")
    rejected: int = Field(description="Rejected")
    approval_rate: float = Field(description="Approved as percent of total")
    rejection_rate: float = Field(description="Rejected as percent of total")
    average_response_hours: float = Field(description="Mean hours from request to decision")
    by_priority: Dict[str, int] = Field(description="Requests per priority")
