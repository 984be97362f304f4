"""Approval endpoints: list, metrics, respond, bulk respond, delegate."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.security import TokenPayload
from api.schemas.approval import (
    ApprovalBulkRequest,
    ApprovalBulkResponse,
    ApprovalDelegateRequest,
    ApprovalListResponse,
    ApprovalMetricsResponse,
    ApprovalRespondRequest,
    ApprovalResponse,
)
from api.schemas.common import PaginationParams
from app.dependencies import get_db, get_current_active_user
from core.utils import calculate_offset
from db.models.approval_request import ApprovalRequest
from services.approval_service import ApprovalService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["approvals"])

BULK_ACTIONS = ("approve", "reject")


def _approval_to_response(
    approval: ApprovalRequest,
    can_approve: Optional[bool] = None,
    is_requester: Optional[bool] = None,
) -> ApprovalResponse:
    """Convert an ApprovalRequest ORM object to response schema."""
    response = ApprovalResponse.model_validate(approval)
    response.can_approve = can_approve
    response.is_requester = is_requester
    return response


@router.get("/approvals", response_model=ApprovalListResponse)
async def list_approvals(
    pagination: PaginationParams = Depends(),
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by decision"),
    priority: Optional[str] = Query(None, description="Filter by priority"),
    include_requested: bool = Query(True, description="Include approvals the caller requested"),
    include_assigned: bool = Query(True, description="Include approvals the caller may decide"),
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> ApprovalListResponse:
    """
    List approvals the caller requested or is asked to decide.
    """
    views, total = await ApprovalService(db).list_approvals(
        user_id=current_user.sub,
        organization_id=current_user.org_id,
        status=status_filter,
        priority=priority,
        include_requested=include_requested,
        include_assigned=include_assigned,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return ApprovalListResponse(
        approvals=[_approval_to_response(v.approval, v.can_approve, v.is_requester) for v in views],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/approvals/metrics", response_model=ApprovalMetricsResponse)
async def approval_metrics(
    start: Optional[datetime] = Query(None, description="Window start (default: 30 days ago)"),
    end: Optional[datetime] = Query(None, description="Window end (default: now)"),
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> ApprovalMetricsResponse:
    """
    Approval counts, rates and average response time for the organization.
    """
    metrics = await ApprovalService(db).approval_metrics(current_user.org_id, start=start, end=end)
    return ApprovalMetricsResponse(**metrics)


@router.post("/approvals/bulk/{action}", response_model=ApprovalBulkResponse)
async def bulk_respond(
    action: str,
    request: ApprovalBulkRequest,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> ApprovalBulkResponse:
    """
    Approve or reject several approvals. Each one succeeds or fails on its own.
    """
    if action not in BULK_ACTIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown bulk action '{action}'. Use one of: {', '.join(BULK_ACTIONS)}",
        )

    svc = ApprovalService(db)
    respond = svc.bulk_approve if action == "approve" else svc.bulk_reject
    result = await respond(
        request.approval_ids,
        current_user.sub,
        response_text=request.response,
        organization_id=current_user.org_id,
    )
    logger.info(f"Bulk {action} by {current_user.sub}: {result['successful']} ok, {result['failed']} failed")
    return ApprovalBulkResponse(**result)


@router.post("/approvals/{approval_id}/respond", response_model=ApprovalResponse)
async def respond_to_approval(
    approval_id: str,
    request: ApprovalRespondRequest,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> ApprovalResponse:
    """
    Approve or reject. Approval resumes the instance; rejection fails the waiting step.
    """
    approval = await ApprovalService(db).respond_to_approval(
        approval_id,
        responder_id=current_user.sub,
        decision=request.decision,
        response_text=request.response,
        organization_id=current_user.org_id,
    )
    return _approval_to_response(approval)


@router.post("/approvals/{approval_id}/delegate", response_model=ApprovalResponse)
async def delegate_approval(
    approval_id: str,
    request: ApprovalDelegateRequest,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> ApprovalResponse:
    """
    Hand the caller's approval duty to another user.
    """
    approval = await ApprovalService(db).delegate_approval(
        approval_id,
        from_user_id=current_user.sub,
        to_user_id=request.to_user_id,
        reason=request.reason,
        organization_id=current_user.org_id,
    )
    return _approval_to_response(approval)
