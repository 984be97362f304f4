"""
Step Handler Registry: maps each step type to its handler class.

Every StepType has exactly one handler. Looking up a type with no
handler raises UnknownStepTypeError, which fails the execution.
"""

from typing import Dict, Optional, Type

from core.exceptions import UnknownStepTypeError
from steps.base_step import BaseStepHandler
from steps.implementations.flow_steps import FLOW_STEP_TYPES
from steps.implementations.messaging_steps import MESSAGING_STEP_TYPES
from steps.implementations.task_steps import TASK_STEP_TYPES


class StepHandlerRegistry:
    """Central registry for step handler implementations."""

    def __init__(self):
        self._handlers: Dict[str, Type[BaseStepHandler]] = {}
        self._register_builtin_handlers()

    def _register_builtin_handlers(self):
        """Register all built-in step types."""
        for handlers in (TASK_STEP_TYPES, MESSAGING_STEP_TYPES, FLOW_STEP_TYPES):
            for step_type, handler_class in handlers.items():
                self.register(step_type, handler_class)

    def register(self, step_type: str, handler_class: Type[BaseStepHandler]):
        """Register (or replace) the handler for a step type."""
        self._handlers[step_type] = handler_class

    def get(self, step_type: str) -> Optional[Type[BaseStepHandler]]:
        """Get a handler class by type string."""
        return self._handlers.get(step_type)

    def create_handler(self, step_type: str) -> BaseStepHandler:
        """Instantiate the handler for ``step_type``."""
        handler_class = self.get(step_type)
        if handler_class is None:
            raise UnknownStepTypeError(step_type)
        return handler_class()

    def list_all(self) -> list:
        """List registered step types with metadata."""
        return [cls.describe() for cls in self._handlers.values()]

    @property
    def available_types(self) -> list:
        return list(self._handlers.keys())


# Singleton
_registry: Optional[StepHandlerRegistry] = None


def get_step_registry() -> StepHandlerRegistry:
    """Get or create the singleton step handler registry."""
    global _registry
    if _registry is None:
        _registry = StepHandlerRegistry()
    return _registry
