"""Database models for the workflow orchestration engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow_template import WorkflowTemplate
from db.models.workflow_step import WorkflowStep, workflow_step_dependencies
from db.models.workflow_trigger import WorkflowTrigger
from db.models.workflow_instance import WorkflowInstance
from db.models.workflow_execution import WorkflowExecution
from db.models.approval_request import ApprovalRequest
from db.models.assignment_rule import AssignmentRule
from db.models.user import User
from db.models.task import Task
from db.models.notification import Notification

__all__ = [
    "WorkflowTemplate",
    "WorkflowStep",
    "workflow_step_dependencies",
    "WorkflowTrigger",
    "WorkflowInstance",
    "WorkflowExecution",
    "ApprovalRequest",
    "AssignmentRule",
    "User",
    "Task",
    "Notification",
]
