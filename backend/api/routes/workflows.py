"""Workflow endpoints: templates and instances (start, list, get, cancel, retry step)."""

from typing import Optional, Sequence

from fastapi import APIRouter, status, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.security import TokenPayload
from api.schemas.workflow import (
    ExecutionSummaryResponse,
    WorkflowExecutionResponse,
    WorkflowInstanceCreate,
    WorkflowInstanceListResponse,
    WorkflowInstanceResponse,
    WorkflowStepResponse,
    WorkflowTemplateCreate,
    WorkflowTemplateListResponse,
    WorkflowTemplateResponse,
    WorkflowTemplateUpdate,
    WorkflowTriggerResponse,
)
from api.schemas.common import PaginationParams
from app.dependencies import get_db, get_current_active_user
from db.models.workflow_execution import WorkflowExecution
from db.models.workflow_instance import WorkflowInstance
from db.models.workflow_template import WorkflowTemplate
from services.instance_service import ExecutionSummary, InstanceService
from services.template_service import TemplateService
from workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


def _template_to_response(template: WorkflowTemplate) -> WorkflowTemplateResponse:
    """Convert a WorkflowTemplate ORM object to response schema."""
    return WorkflowTemplateResponse(
        id=template.id,
        organization_id=template.organization_id,
        name=template.name,
        description=template.description or "",
        category=template.category,
        details=template.details or {},
        version=template.version,
        is_active=template.is_active,
        created_by=template.created_by,
        steps=[
            WorkflowStepResponse(
                id=step.id,
                key=step.key,
                name=step.name,
                description=step.description or "",
                step_type=step.step_type,
                step_order=step.step_order,
                configuration=step.configuration or {},
                depends_on=step.depends_on,
                is_required=step.is_required,
                timeout_minutes=step.timeout_minutes,
            )
            for step in template.steps
        ],
        triggers=[WorkflowTriggerResponse.model_validate(t) for t in template.triggers],
        created_at=template.created_at,
        updated_at=template.updated_at,
    )


def _instance_to_response(
    instance: WorkflowInstance,
    executions: Optional[Sequence[WorkflowExecution]] = None,
    summary: Optional[ExecutionSummary] = None,
) -> WorkflowInstanceResponse:
    """Convert a WorkflowInstance ORM object to response schema."""
    return WorkflowInstanceResponse(
        id=instance.id,
        organization_id=instance.organization_id,
        template_id=instance.template_id,
        template_version=instance.template_version,
        context_data=instance.context_data or {},
        status=instance.status,
        triggered_by=instance.triggered_by,
        started_at=instance.started_at,
        completed_at=instance.completed_at,
        failed_at=instance.failed_at,
        error_message=instance.error_message,
        executions=(
            [WorkflowExecutionResponse.model_validate(e) for e in executions]
            if executions is not None else None
        ),
        execution_summary=ExecutionSummaryResponse(**summary._asdict()) if summary is not None else None,
    )


# ─── Templates ─────────────────────────────────────────────────

@router.post("/templates", response_model=WorkflowTemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    request: WorkflowTemplateCreate,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowTemplateResponse:
    """
    Create a workflow template with its steps, dependencies and triggers.

    Dependencies reference other steps by key; unknown keys and cycles are rejected.
    """
    svc = TemplateService(db)
    template = await svc.create_template(
        organization_id=current_user.org_id,
        data=request.model_dump(),
        created_by=current_user.sub,
    )
    return _template_to_response(template)


@router.get("/templates", response_model=WorkflowTemplateListResponse)
async def list_templates(
    pagination: PaginationParams = Depends(),
    category: Optional[str] = Query(None, description="Filter by category"),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    search: Optional[str] = Query(None, description="Search name and description"),
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowTemplateListResponse:
    """
    List workflow templates in the current organization (paginated).
    """
    svc = TemplateService(db)
    templates, total = await svc.list_templates(
        organization_id=current_user.org_id,
        category=category,
        is_active=is_active,
        search=search,
        page=pagination.page,
        per_page=pagination.per_page,
    )
    return WorkflowTemplateListResponse(
        templates=[_template_to_response(t) for t in templates],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/templates/{template_id}", response_model=WorkflowTemplateResponse)
async def get_template(
    template_id: str,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowTemplateResponse:
    """
    Get a template with its steps and triggers (org-scoped).
    """
    template = await TemplateService(db).get_template(template_id, current_user.org_id)
    return _template_to_response(template)


@router.put("/templates/{template_id}", response_model=WorkflowTemplateResponse)
async def update_template(
    template_id: str,
    request: WorkflowTemplateUpdate,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowTemplateResponse:
    """
    Update template metadata. Bumps the template version.
    """
    template = await TemplateService(db).update_template(
        template_id,
        current_user.org_id,
        request.model_dump(exclude_unset=True),
    )
    return _template_to_response(template)


# ─── Instances ─────────────────────────────────────────────────

@router.post("/instances", response_model=WorkflowInstanceResponse, status_code=status.HTTP_201_CREATED)
async def start_instance(
    request: WorkflowInstanceCreate,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowInstanceResponse:
    """
    Start an instance of a template and run every step that can run.
    """
    engine = WorkflowEngine(db)
    instance = await engine.start_instance(
        template_id=request.template_id,
        context_data=request.context_data,
        triggered_by=current_user.sub,
        organization_id=current_user.org_id,
    )
    executions = await InstanceService(db).get_executions(instance.id)
    logger.info(f"Instance {instance.id} started by {current_user.sub}: {instance.status}")
    return _instance_to_response(instance, executions=executions)


@router.get("/instances", response_model=WorkflowInstanceListResponse)
async def list_instances(
    pagination: PaginationParams = Depends(),
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    template_id: Optional[str] = Query(None, description="Filter by template"),
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowInstanceListResponse:
    """
    List instances in the current organization with execution counts.
    """
    rows, total = await InstanceService(db).list_instances(
        organization_id=current_user.org_id,
        status=status_filter,
        template_id=template_id,
        page=pagination.page,
        per_page=pagination.per_page,
    )
    return WorkflowInstanceListResponse(
        instances=[_instance_to_response(instance, summary=summary) for instance, summary in rows],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/instances/{instance_id}", response_model=WorkflowInstanceResponse)
async def get_instance(
    instance_id: str,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowInstanceResponse:
    """
    Get an instance with its step executions.
    """
    svc = InstanceService(db)
    instance = await svc.get_instance(instance_id, current_user.org_id)
    return _instance_to_response(instance, executions=await svc.get_executions(instance.id))


@router.post("/instances/{instance_id}/cancel", response_model=WorkflowInstanceResponse)
async def cancel_instance(
    instance_id: str,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowInstanceResponse:
    """
    Cancel a running or paused instance. Pending approvals are cancelled.
    """
    instance = await WorkflowEngine(db).cancel_instance(
        instance_id,
        organization_id=current_user.org_id,
        cancelled_by=current_user.sub,
    )
    executions = await InstanceService(db).get_executions(instance.id)
    return _instance_to_response(instance, executions=executions)


@router.post("/instances/{instance_id}/steps/{step_id}/retry", response_model=WorkflowInstanceResponse)
async def retry_step(
    instance_id: str,
    step_id: str,
    current_user: TokenPayload = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowInstanceResponse:
    """
    Re-run a step whose latest execution failed; the instance resumes.
    """
    instance = await WorkflowEngine(db).retry_step(instance_id, step_id, organization_id=current_user.org_id)
    executions = await InstanceService(db).get_executions(instance.id)
    return _instance_to_response(instance, executions=executions)
