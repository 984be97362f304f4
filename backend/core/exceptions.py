"""Custom exceptions for the workflow orchestration engine."""

from typing import Optional


class WorkflowEngineError(Exception):
    """Base exception for the workflow orchestration engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(WorkflowEngineError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class UnauthorizedError(WorkflowEngineError):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize UnauthorizedError with 401 status code."""
        super().__init__(message, 401)


class ForbiddenError(WorkflowEngineError):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        """Initialize ForbiddenError with 403 status code."""
        super().__init__(message, 403)


class ValidationError(WorkflowEngineError):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class ConflictError(WorkflowEngineError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


# ─── Template / graph errors ───────────────────────────────────

class TemplateNotFoundError(NotFoundError):
    """No template with this id exists for the tenant."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Workflow template not found: {template_id}")


class TemplateInactiveError(ValidationError):
    """The template exists but has been deactivated."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Workflow template is inactive: {template_id}")


class InvalidDependencyError(ValidationError):
    """A step depends on a step that is not part of the same template."""


class CyclicDependencyError(ValidationError):
    """The step dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic step dependency: {' -> '.join(cycle)}")


class DependencyNotSatisfiedError(ConflictError):
    """A step was asked to run before its dependencies completed."""

    def __init__(self, step_name: str, dependency_name: str):
        self.step_name = step_name
        self.dependency_name = dependency_name
        super().__init__(f"Dependency not satisfied for '{step_name}': {dependency_name}")


# ─── Step handler errors ───────────────────────────────────────

class StepHandlerError(WorkflowEngineError):
    """Base class for failures raised while running a step handler."""

    def __init__(self, message: str):
        super().__init__(message, 500)


class UnknownStepTypeError(StepHandlerError):
    """No handler is registered for the step type."""

    def __init__(self, step_type: str):
        self.step_type = step_type
        super().__init__(f"Unknown step type: {step_type}")


class HandlerFailureError(StepHandlerError):
    """A handler raised an unexpected exception. Wraps the cause."""

    def __init__(self, step_type: str, cause: Optional[BaseException] = None):
        self.step_type = step_type
        self.cause = cause
        detail = str(cause) if cause is not None else "unknown error"
        super().__init__(f"{step_type} handler failed: {detail}")


class ConditionNotMetError(StepHandlerError):
    """A CONDITION step evaluated to false."""

    def __init__(self, condition=None):
        self.condition = condition
        super().__init__("Condition not met")


class ConditionSyntaxError(StepHandlerError):
    """A condition uses syntax outside the supported expression language."""


class AssignmentNotFoundError(StepHandlerError):
    """No assignment rule produced an assignee where one was required."""

    def __init__(self, message: str = "No assignee found"):
        super().__init__(message)


class StepTimeoutError(StepHandlerError):
    """A step handler exceeded its time budget."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Step timed out after {timeout_seconds:g}s")


class InvalidRetryConfigError(StepHandlerError):
    """A step's ``retry`` block cannot be parsed."""

    def __init__(self, detail: str):
        super().__init__(f"Invalid retry configuration: {detail}")
