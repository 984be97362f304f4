"""Assignment rule endpoints: CRUD, rule templates, metrics and task auto-assignment."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, status, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.security import TokenPayload
from api.schemas.assignment import (
    AssignmentMetricsResponse,
    AssignmentRuleCreate,
    AssignmentRuleFromTemplateRequest,
    AssignmentRuleListResponse,
    AssignmentRuleResponse,
    AssignmentRuleTemplate,
    AssignmentRuleTemplateListResponse,
    AssignmentRuleUpdate,
    AutoAssignRequest,
    AutoAssignResponse,
)
from api.schemas.common import MessageResponse, PaginationParams
from app.dependencies import get_db, get_current_active_user
from core.utils import calculate_offset
from services.assignment_service import AssignmentService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["assignment"])


@router.post("/assignment-rules", response_model=AssignmentRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    request: AssignmentRuleCreate,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> AssignmentRuleResponse:
    """
    Create an assignment rule in the current organization.
    """
    rule = await AssignmentService(db).create_rule(
        current_user.org_id,
        request.model_dump(),
        created_by=current_user.sub,
    )
    return AssignmentRuleResponse.model_validate(rule)


@router.get("/assignment-rules", response_model=AssignmentRuleListResponse)
async def list_rules(
    pagination: PaginationParams = Depends(),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> AssignmentRuleListResponse:
    """
    List assignment rules, highest priority first.
    """
    rules, total = await AssignmentService(db).list_rules(
        current_user.org_id,
        is_active=is_active,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return AssignmentRuleListResponse(
        rules=[AssignmentRuleResponse.model_validate(r) for r in rules],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/assignment-rules/templates", response_model=AssignmentRuleTemplateListResponse)
async def list_rule_templates(
    current_user: TokenPayload = Depends(get_current_active_user),
) -> AssignmentRuleTemplateListResponse:
    """
    List predefined assignment rule templates.
    """
    return AssignmentRuleTemplateListResponse(
        templates=[AssignmentRuleTemplate(**t) for t in AssignmentService.get_rule_templates()],
    )


@router.post(
    "/assignment-rules/from-template",
    response_model=AssignmentRuleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_rule_from_template(
    request: AssignmentRuleFromTemplateRequest,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> AssignmentRuleResponse:
    """
    Create an assignment rule from a template with optional customizations.
    """
    rule = await AssignmentService(db).create_rule_from_template(
        current_user.org_id,
        request.template_name,
        created_by=current_user.sub,
        customizations=request.customizations,
    )
    logger.info(f"Assignment rule {rule.id} created from template '{request.template_name}'")
    return AssignmentRuleResponse.model_validate(rule)


@router.get("/assignment-rules/metrics", response_model=AssignmentMetricsResponse)
async def assignment_metrics(
    start: Optional[datetime] = Query(None, description="Window start (default: 30 days ago)"),
    end: Optional[datetime] = Query(None, description="Window end (default: now)"),
    department_id: Optional[str] = Query(None, description="Restrict to one department"),
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> AssignmentMetricsResponse:
    """
    Assigned, unassigned and auto-assigned task counts for the organization.
    """
    metrics = await AssignmentService(db).assignment_metrics(
        current_user.org_id,
        start=start,
        end=end,
        department_id=department_id,
    )
    return AssignmentMetricsResponse(**metrics)


@router.put("/assignment-rules/{rule_id}", response_model=AssignmentRuleResponse)
async def update_rule(
    rule_id: str,
    request: AssignmentRuleUpdate,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> AssignmentRuleResponse:
    """
    Partially update an assignment rule.
    """
    rule = await AssignmentService(db).update_rule(
        rule_id,
        current_user.org_id,
        request.model_dump(exclude_unset=True),
    )
    return AssignmentRuleResponse.model_validate(rule)


@router.delete("/assignment-rules/{rule_id}", response_model=MessageResponse)
async def delete_rule(
    rule_id: str,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """
    Soft-delete an assignment rule.
    """
    await AssignmentService(db).delete_rule(rule_id, current_user.org_id)
    logger.info(f"Assignment rule {rule_id} deleted by {current_user.sub}")
    return MessageResponse(message="Assignment rule deleted")


@router.post("/auto-assign", response_model=AutoAssignResponse)
async def auto_assign(
    request: AutoAssignRequest,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> AutoAssignResponse:
    """
    Find an assignee for a task descriptor; updates the task when task_id is given.
    """
    outcome = await AssignmentService(db).auto_assign(
        current_user.org_id,
        request.model_dump(exclude_none=True),
    )
    return AutoAssignResponse(**outcome._asdict())
