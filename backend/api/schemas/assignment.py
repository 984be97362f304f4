"""Assignment rule schemas."""

from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import List, Optional, Dict, Any


class AssignmentRuleCreate(BaseModel):
    """Request to create an assignment rule."""

    name: str = Field(min_length=1, description="Rule name")
    description: str = Field(default="", description="Rule description")
    conditions: Dict[str, Any] = Field(
        default_factory=dict,
        description="field -> {operator, value}; all must hold, empty matches everything",
    )
    assignment_logic: Dict[str, Any] = Field(description="Strategy map with 'type' plus strategy options")
    priority: int = Field(default=100, description="Higher priorities are evaluated first")
    is_active: bool = Field(default=True, description="Whether the rule is evaluated")


class AssignmentRuleUpdate(BaseModel):
    """Partial update of an assignment rule."""

    name: Optional[str] = Field(default=None, min_length=1, description="Rule name")
    description: Optional[str] = Field(default=None, description="Rule description")
    conditions: Optional[Dict[str, Any]] = Field(default=None, description="Rule conditions")
    assignment_logic: Optional[Dict[str, Any]] = Field(default=None, description="Strategy map")
    priority: Optional[int] = Field(default=None, description="Evaluation priority")
    is_active: Optional[bool] = Field(default=None, description="Whether the rule is evaluated")


class AssignmentRuleResponse(BaseModel):
    """Assignment rule information."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Rule ID")
    name: str = Field(description="Rule name")
    description: str = Field(description="Rule description")
    conditions: Dict[str, Any] = Field(default_factory=dict, description="Rule conditions")
    assignment_logic: Dict[str, Any] = Field(default_factory=dict, description="Strategy map")
    priority: int = Field(description="Evaluation priority")
    is_active: bool = Field(description="Whether the rule is evaluated")
    created_by: Optional[str] = Field(default=None, description="User who created the rule")
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")


class AssignmentRuleListResponse(BaseModel):
    """Paginated list of rules."""

    rules: List[AssignmentRuleResponse] = Field(description="List of rules")
    total: int = Field(description="Total number of rules")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")


class AutoAssignRequest(BaseModel):
    """Task descriptor to find an assignee for."""

    task_id: Optional[str] = Field(default=None, description="Task to update with the assignee")
    title: Optional[str] = Field(default=None, description="Task title")
    description: Optional[str] = Field(default=None, description="Task description")
    priority: Optional[str] = Field(default=None, description="Task priority")
    category: Optional[str] = Field(default=None, description="Task category")
    department_id: Optional[str] = Field(default=None, description="Department of the task")
    skills: List[str] = Field(default_factory=list, description="Skills the task requires")


class AutoAssignResponse(BaseModel):
    """Auto-assignment outcome."""

    assignee_id: Optional[str] = Field(default=None, description="Chosen user, if any")
    method: str = Field(description="auto-assigned or unassigned")
    rule_id: Optional[str] = Field(default=None, description="Rule that produced the assignee")


class AssignmentRuleTemplate(BaseModel):
    """Predefined rule that can be instantiated."""

    name: str = Field(description="Template name")
    description: str = Field(description="What the rule does")
    category: str = Field(description="Template category")
    conditions: Dict[str, Any] = Field(default_factory=dict, description="Rule conditions")
    assignment_logic: Dict[str, Any] = Field(description="Strategy map")


class AssignmentRuleTemplateListResponse(BaseModel):
    """Available rule templates."""

    templates: List[AssignmentRuleTemplate] = Field(description="Rule templates")


class AssignmentRuleFromTemplateRequest(BaseModel):
    """Request to create a rule from a template."""

    template_name: str = Field(min_length=1, description="Name of the template")
    customizations: Dict[str, Any] = Field(
        default_factory=dict,
        description="Overrides: name, description, priority, is_active; conditions and assignment_logic are merged",
    )


class AssignmentMetricsResponse(BaseModel):
    """Assignment counts over a time window."""

    start: datetime = Field(description="Window start")
    end: datetime = Field(description="Window end")
    total_tasks: int = Field(description="Tasks created in the window")
    assigned_tasks: int = Field(description="Tasks with an assignee")
    unassigned_tasks: int = Field(description="Tasks without an assignee")
    auto_assigned_tasks: int = Field(description="Assigned by assignment rules")
    manual_assigned_tasks: int = Field(description="Assigned explicitly")
    assignment_rate: float = Field(description="Assigned as percent of total")
    tasks_by_department: Dict[str, int] = Field(description="Tasks per department")
