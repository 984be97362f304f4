"""Workflow template store.

Templates are created together with their steps, dependency edges and
triggers in one transaction. The step graph is validated up front:
unknown ``depends_on`` keys and cycles (self-dependencies included) are
rejected, so the engine only ever sees DAGs.

After creation only metadata changes; every edit bumps ``version``.
"""

from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import TriggerType
from core.exceptions import (
    CyclicDependencyError,
    InvalidDependencyError,
    TemplateNotFoundError,
    ValidationError,
)
from core.utils import calculate_offset
from db.models.workflow_step import WorkflowStep
from db.models.workflow_template import WorkflowTemplate
from db.models.workflow_trigger import WorkflowTrigger
from services.base import BaseService
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)

TEMPLATE_METADATA_FIELDS = ("name", "description", "category", "details", "is_active")


def find_cycle(graph: dict[str, list[str]]) -> Optional[list[str]]:
    """Return one cycle of ``graph`` (key -> dependency keys) as a path, or None.

    The path starts and ends with the same key, e.g. ``["a", "b", "a"]``.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in graph}

    for root in graph:
        if color[root] != WHITE:
            continue
        color[root] = GREY
        path = [root]
        stack = [iter(graph[root])]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                color[path.pop()] = BLACK
                continue
            if color.get(child) == GREY:
                return path[path.index(child):] + [child]
            if color.get(child) == WHITE:
                color[child] = GREY
                path.append(child)
                stack.append(iter(graph[child]))
    return None


def _validate_retry(key: str, retry: Any) -> None:
    try:
        RetryStrategy.from_dict(retry)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Step '{key}' has an invalid retry configuration: {e}") from e


def validate_step_graph(steps: Sequence[dict]) -> dict[str, list[str]]:
    """Check step keys and dependencies; return the key -> depends_on graph.

    Raises:
        ValidationError: missing or duplicate step keys, invalid retry blocks
        InvalidDependencyError: a dependency names no step of the template
        CyclicDependencyError: the dependencies contain a cycle
    """
    graph: dict[str, list[str]] = {}
    for step in steps:
        key = step["key"]
        if not key:
            raise ValidationError("Every step needs a key or a name")
        if key in graph:
            raise ValidationError(f"Duplicate step key: {key}")
        _validate_retry(key, (step.get("configuration") or {}).get("retry"))
        graph[key] = list(dict.fromkeys(step.get("depends_on") or []))

    for key, depends_on in graph.items():
        for dependency in depends_on:
            if dependency not in graph:
                raise InvalidDependencyError(f"Step '{key}' depends on unknown step '{dependency}'")

    cycle = find_cycle(graph)
    if cycle:
        raise CyclicDependencyError(cycle)
    return graph


class TemplateService(BaseService[WorkflowTemplate]):
    """Create, list, read and edit workflow templates."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowTemplate, db)

    async def create_template(
        self,
        organization_id: str,
        data: dict[str, Any],
        created_by: Optional[str] = None,
    ) -> WorkflowTemplate:
        """Create a template with its steps, dependency edges and triggers.

        ``data["steps"]`` items carry ``key`` (defaults to ``name``) and
        ``depends_on`` (list of keys); ``step_order`` defaults to position.
        """
        step_defs = []
        for position, step in enumerate(data.get("steps") or []):
            step = dict(step)
            step["key"] = step.get("key") or step.get("name")
            step_defs.append((position, step))
        graph = validate_step_graph([step for _, step in step_defs])

        triggers = []
        for trigger in data.get("triggers") or []:
            trigger_type = str(trigger.get("trigger_type") or TriggerType.MANUAL.value).upper()
            if trigger_type not in {t.value for t in TriggerType}:
                raise ValidationError(f"Unknown trigger type: {trigger_type}")
            triggers.append(WorkflowTrigger(
                name=trigger.get("name") or trigger_type.lower(),
                trigger_type=trigger_type,
                configuration=trigger.get("configuration") or {},
                is_active=trigger.get("is_active", True),
            ))

        steps_by_key: dict[str, WorkflowStep] = {}
        for position, step_def in step_defs:
            steps_by_key[step_def["key"]] = WorkflowStep(
                key=step_def["key"],
                name=step_def.get("name") or step_def["key"],
                description=step_def.get("description") or "",
                step_type=str(step_def.get("step_type") or "").upper(),
                step_order=step_def["step_order"] if step_def.get("step_order") is not None else position,
                configuration=step_def.get("configuration") or {},
                is_required=step_def.get("is_required", True),
                timeout_minutes=step_def.get("timeout_minutes"),
            )
        for key, depends_on in graph.items():
            steps_by_key[key].dependencies = [steps_by_key[d] for d in depends_on]

        template = WorkflowTemplate(
            organization_id=organization_id,
            created_by=created_by,
            name=data["name"],
            description=data.get("description") or "",
            category=data.get("category"),
            details=data.get("details") or {},
            version=1,
            is_active=data.get("is_active", True),
            steps=list(steps_by_key.values()),
            triggers=triggers,
        )
        self.db.add(template)
        await self.db.commit()
        logger.info(
            "Template created",
            template_id=template.id,
            organization_id=organization_id,
            steps=len(steps_by_key),
        )
        return await self.get_template(template.id, organization_id)

    async def get_template(self, template_id: str, organization_id: str) -> WorkflowTemplate:
        query = self._scoped(select(WorkflowTemplate).where(WorkflowTemplate.id == template_id), organization_id)
        template = (
            await self.db.execute(query.execution_options(populate_existing=True))
        ).scalar_one_or_none()
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def list_templates(
        self,
        organization_id: str,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[Sequence[WorkflowTemplate], int]:
        conditions = []
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(WorkflowTemplate.name.ilike(pattern), WorkflowTemplate.description.ilike(pattern)))
        return await self.list(
            organization_id=organization_id,
            offset=calculate_offset(page, per_page),
            limit=per_page,
            order_by=(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id),
            filters={"category": category, "is_active": is_active},
            conditions=conditions,
        )

    async def update_template(
        self,
        template_id: str,
        organization_id: str,
        data: dict[str, Any],
    ) -> WorkflowTemplate:
        """Edit template metadata. Steps are immutable; any change bumps ``version``."""
        template = await self.get_template(template_id, organization_id)

        changed = False
        for field in TEMPLATE_METADATA_FIELDS:
            value = data.get(field)
            if value is not None and getattr(template, field) != value:
                setattr(template, field, value)
                changed = True

        if changed:
            template.version += 1
            await self.db.commit()
            logger.info("Template updated", template_id=template.id, version=template.version)
        return template
