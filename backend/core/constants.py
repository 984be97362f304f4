"""Constants and enums for the workflow orchestration engine."""

from enum import Enum


class StepType(str, Enum):
    """Workflow step type. Each value has exactly one registered handler."""

    TASK_CREATION = "TASK_CREATION"
    APPROVAL = "APPROVAL"
    NOTIFICATION = "NOTIFICATION"
    ASSIGNMENT = "ASSIGNMENT"
    CONDITION = "CONDITION"
    DELAY = "DELAY"
    EMAIL = "EMAIL"
    DATA_UPDATE = "DATA_UPDATE"


class InstanceStatus(str, Enum):
    """Workflow instance status."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"


class ExecutionStatus(str, Enum):
    """Status of one step execution within an instance."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ApprovalDecision(str, Enum):
    """Approval request decision state."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class Priority(str, Enum):
    """Priority used by tasks and approval requests."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class AssignmentStrategy(str, Enum):
    """Assignment rule strategy discriminator (assignment_logic.type)."""

    ROUND_ROBIN = "ROUND_ROBIN"
    SKILLS_BASED = "SKILLS_BASED"
    WORKLOAD_BASED = "WORKLOAD_BASED"
    AVAILABILITY_BASED = "AVAILABILITY_BASED"
    EXPERIENCE_BASED = "EXPERIENCE_BASED"
    RANDOM = "RANDOM"


class TriggerType(str, Enum):
    """Workflow trigger type (stored only, never fired by the engine)."""

    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    EVENT = "EVENT"
    WEBHOOK = "WEBHOOK"


class UserRole(str, Enum):
    """Directory user role."""

    USER = "USER"
    DEPARTMENT_HEAD = "DEPARTMENT_HEAD"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class TaskStatus(str, Enum):
    """Directory task status."""

    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class AssignmentMethod(str, Enum):
    """How a task got its assignee."""

    AUTO = "AUTO"
    MANUAL = "MANUAL"


class NotificationType(str, Enum):
    """Notification record type."""

    WORKFLOW = "WORKFLOW"
    APPROVAL_REQUEST = "APPROVAL_REQUEST"
    APPROVAL_RESPONSE = "APPROVAL_RESPONSE"
    APPROVAL_DELEGATION = "APPROVAL_DELEGATION"


# Keys the platform writes into instance context; step output never overwrites them.
RESERVED_CONTEXT_KEYS = frozenset({"organization_id", "triggered_by"})

# Entities a DATA_UPDATE step may touch, and the columns it may write.
DATA_UPDATE_ALLOWED_FIELDS: dict[str, frozenset[str]] = {
    "task": frozenset({"title", "description", "priority", "status", "assignee_id", "due_date", "department_id"}),
    "user": frozenset({"name", "department_id", "role", "skills", "is_active"}),
}
