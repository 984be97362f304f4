"""Workflow template and instance schemas."""

from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import List, Optional, Dict, Any


# ─── Templates ─────────────────────────────────────────────────

class WorkflowStepCreate(BaseModel):
    """Request to create a workflow step."""

    key: Optional[str] = Field(default=None, description="Unique handle within the template; defaults to name")
    name: str = Field(min_length=1, description="Human-readable step name")
    description: str = Field(default="", description="Step description")
    step_type: str = Field(min_length=1, description="Step type (e.g. TASK_CREATION, APPROVAL, DELAY)")
    step_order: Optional[int] = Field(default=None, ge=0, description="Tie-break order; defaults to position")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Step-specific configuration")
    depends_on: List[str] = Field(default_factory=list, description="Keys of steps that must complete first")
    is_required: bool = Field(default=True, description="Whether a failure of this step fails the instance")
    timeout_minutes: Optional[float] = Field(default=None, gt=0, description="Step timeout in minutes")


class WorkflowTriggerCreate(BaseModel):
    """Request to attach a trigger to a template."""

    name: Optional[str] = Field(default=None, description="Trigger name")
    trigger_type: str = Field(default="MANUAL", description="MANUAL, SCHEDULED, EVENT or WEBHOOK")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Trigger configuration")
    is_active: bool = Field(default=True, description="Whether the trigger is active")


class WorkflowTemplateCreate(BaseModel):
    """Request to create a workflow template."""

    name: str = Field(min_length=1, description="Template name")
    description: str = Field(default="", description="Template description")
    category: Optional[str] = Field(default=None, description="Template category")
    details: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    is_active: bool = Field(default=True, description="Whether new instances may start")
    steps: List[WorkflowStepCreate] = Field(default_factory=list, description="Steps of the template")
    triggers: List[WorkflowTriggerCreate] = Field(default_factory=list, description="Triggers of the template")


class WorkflowTemplateUpdate(BaseModel):
    """Request to update template metadata. Steps cannot be changed."""

    name: Optional[str] = Field(default=None, min_length=1, description="Template name")
    description: Optional[str] = Field(default=None, description="Template description")
    category: Optional[str] = Field(default=None, description="Template category")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Free-form metadata")
    is_active: Optional[bool] = Field(default=None, description="Whether new instances may start")


class WorkflowStepResponse(BaseModel):
    """Workflow step information."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Step ID")
    key: str = Field(description="Step key")
    name: str = Field(description="Step name")
    description: str = Field(description="Step description")
    step_type: str = Field(description="Step type")
    step_order: int = Field(description="Step order")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Step configuration")
    depends_on: List[str] = Field(default_factory=list, description="Keys of dependency steps")
    is_required: bool = Field(description="Whether the step is required")
    timeout_minutes: Optional[float] = Field(default=None, description="Step timeout in minutes")


class WorkflowTriggerResponse(BaseModel):
    """Workflow trigger information."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Trigger ID")
    name: str = Field(description="Trigger name")
    trigger_type: str = Field(description="Trigger type")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Trigger configuration")
    is_active: bool = Field(description="Whether the trigger is active")


class WorkflowTemplateResponse(BaseModel):
    """Workflow template with its steps and triggers."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Template ID")
    organization_id: str = Field(description="Owning organization")
    name: str = Field(description="Template name")
    description: str = Field(description="Template description")
    category: Optional[str] = Field(default=None, description="Template category")
    details: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    version: int = Field(description="Template version number")
    is_active: bool = Field(description="Whether new instances may start")
    created_by: Optional[str] = Field(default=None, description="User ID who created the template")
    steps: List[WorkflowStepResponse] = Field(default_factory=list, description="Steps")
    triggers: List[WorkflowTriggerResponse] = Field(default_factory=list, description="Triggers")
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")


class WorkflowTemplateListResponse(BaseModel):
    """Paginated list of templates."""

    templates: List[WorkflowTemplateResponse] = Field(description="List of templates")
    total: int = Field(description="Total number of templates")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")


# ─── Instances ─────────────────────────────────────────────────

class WorkflowInstanceCreate(BaseModel):
    """Request to start a workflow instance."""

    template_id: str = Field(min_length=1, description="Template to run")
    context_data: Dict[str, Any] = Field(default_factory=dict, description="Initial instance variables")


class WorkflowExecutionResponse(BaseModel):
    """One step execution of an instance."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Execution ID")
    step_id: str = Field(description="Step ID")
    assigned_to: Optional[str] = Field(default=None, description="User the step ran for")
    status: str = Field(description="RUNNING, COMPLETED or FAILED")
    output: Optional[Dict[str, Any]] = Field(default=None, description="Handler output")
    error_message: Optional[str] = Field(default=None, description="Failure message")
    error_type: Optional[str] = Field(default=None, description="Failure type")
    attempts: int = Field(description="Handler invocations")
    started_at: Optional[datetime] = Field(default=None, description="Start time")
    completed_at: Optional[datetime] = Field(default=None, description="Completion time")
    failed_at: Optional[datetime] = Field(default=None, description="Failure time")
    resume_at: Optional[datetime] = Field(default=None, description="Wake-up time of a waiting delay")


class ExecutionSummaryResponse(BaseModel):
    """Execution counts of an instance."""

    total: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0


class WorkflowInstanceResponse(BaseModel):
    """Workflow instance information."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Instance ID")
    organization_id: str = Field(description="Owning organization")
    template_id: str = Field(description="Template ID")
    template_version: int = Field(description="Template version at start")
    context_data: Dict[str, Any] = Field(default_factory=dict, description="Instance variables")
    status: str = Field(description="RUNNING, COMPLETED, FAILED, CANCELLED or PAUSED")
    triggered_by: Optional[str] = Field(default=None, description="User who started the instance")
    started_at: Optional[datetime] = Field(default=None, description="Start time")
    completed_at: Optional[datetime] = Field(default=None, description="Completion time")
    failed_at: Optional[datetime] = Field(default=None, description="Failure time")
    error_message: Optional[str] = Field(default=None, description="Failure or cancellation reason")
    executions: Optional[List[WorkflowExecutionResponse]] = Field(default=None, description="Step executions")
    execution_summary: Optional[ExecutionSummaryResponse] = Field(default=None, description="Execution counts")


class WorkflowInstanceListResponse(BaseModel):
    """Paginated list of instances."""

    instances: List[WorkflowInstanceResponse] = Field(description="List of instances")
    total: int = Field(description="Total number of instances")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")
