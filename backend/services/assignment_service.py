"""Assignment rule engine.

Rules are evaluated in descending priority. The first rule whose
conditions match the subject (step configuration merged over instance
context, or a task descriptor) and whose strategy yields a user wins.

Strategies are interchangeable functions over the rule's eligible user
pool, keyed by ``assignment_logic["type"]``:

- ROUND_ROBIN: cursor in ``assignment_logic["last_assigned_index"]``,
  advanced with a compare-and-swap on ``logic_version``
- SKILLS_BASED: least-loaded user whose skills overlap the required ones
- WORKLOAD_BASED: fewest open tasks
- AVAILABILITY_BASED: least-loaded user seen recently
- EXPERIENCE_BASED: most completed tasks
- RANDOM: uniform choice
"""

import asyncio
import copy
import random
import weakref
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, NamedTuple, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import AssignmentMethod, AssignmentStrategy, TaskStatus, UserRole
from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.utils import as_utc, utc_now
from db.models.assignment_rule import AssignmentRule
from db.models.task import Task
from db.models.user import User
from services.base import BaseService

logger = structlog.get_logger(__name__)

# Serializes cursor updates per rule within this process; unused locks are dropped
_rule_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

RULE_OPERATORS = ("equals", "contains", "in", "greater_than", "less_than", "not_empty")

METRICS_DEFAULT_WINDOW = timedelta(days=30)

# Starting points for common rules; see create_rule_from_template
RULE_TEMPLATES: tuple[dict, ...] = (
    {
        "name": "Round Robin Rotation",
        "description": "Rotates tasks through the department in turn",
        "category": "rotation",
        "conditions": {},
        "assignment_logic": {
            "type": AssignmentStrategy.ROUND_ROBIN.value,
            "allowed_roles": [UserRole.USER.value, UserRole.DEPARTMENT_HEAD.value],
        },
    },
    {
        "name": "Urgent Task Priority Assignment",
        "description": "Assigns urgent tasks to the most experienced users",
        "category": "priority_based",
        "conditions": {"priority": {"operator": "in", "value": ["HIGH", "URGENT"]}},
        "assignment_logic": {
            "type": AssignmentStrategy.EXPERIENCE_BASED.value,
            "allowed_roles": [UserRole.USER.value, UserRole.DEPARTMENT_HEAD.value],
            "cross_department": True,
        },
    },
    {
        "name": "Skills-Based Developer Assignment",
        "description": "Assigns development tasks based on technical skills",
        "category": "skills_based",
        "conditions": {"category": {"operator": "contains", "value": "development"}},
        "assignment_logic": {
            "type": AssignmentStrategy.SKILLS_BASED.value,
            "required_skills": ["javascript", "react", "node.js", "python"],
            "allowed_roles": [UserRole.USER.value],
        },
    },
    {
        "name": "Workload Balancing",
        "description": "Distributes tasks evenly across team members",
        "category": "workload_based",
        "conditions": {},
        "assignment_logic": {
            "type": AssignmentStrategy.WORKLOAD_BASED.value,
            "allowed_roles": [UserRole.USER.value],
        },
    },
    {
        "name": "Department Head Approval Tasks",
        "description": "Assigns approval tasks to department heads",
        "category": "approval_based",
        "conditions": {"title": {"operator": "contains", "value": "approval"}},
        "assignment_logic": {
            "type": AssignmentStrategy.RANDOM.value,
            "allowed_roles": [UserRole.DEPARTMENT_HEAD.value, UserRole.ADMIN.value],
        },
    },
)


class AssignmentOutcome(NamedTuple):
    """Result of :meth:`AssignmentService.auto_assign`."""
    assignee_id: Optional[str]
    method: str  # "auto-assigned" | "unassigned"
    rule_id: Optional[str] = None


class SkillMatcher:
    """Decides whether a user covers a set of required skills.

    The default matcher accepts any case-insensitive overlap between the
    required skills and the user's skill tags. Subclass and pass an
    instance to :class:`AssignmentService` for stricter matching.
    """

    def matches(self, required: set[str], user: User) -> bool:
        user_skills = {str(skill).strip().lower() for skill in (user.skills or [])}
        return bool(required & user_skills)


def _as_skill_set(value: Any) -> set[str]:
    if not value:
        return set()
    if isinstance(value, str):
        value = value.split(",")
    return {str(skill).strip().lower() for skill in value if str(skill).strip()}


def _to_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_rule_condition(value: Any, condition: Any) -> bool:
    """Evaluate one ``{operator, value}`` rule condition against a subject value."""
    if not isinstance(condition, dict):
        return value == condition

    op = condition.get("operator")
    expected = condition.get("value")

    if op == "equals":
        return value == expected
    if op == "contains":
        return isinstance(value, str) and expected is not None and str(expected).lower() in value.lower()
    if op == "in":
        return isinstance(expected, list) and value in expected
    if op in ("greater_than", "less_than"):
        left, right = _to_number(value), _to_number(expected)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right
    if op == "not_empty":
        return bool(value)
    return False


def matches_conditions(conditions: Optional[dict], subject: dict) -> bool:
    """All conditions must hold; an empty condition map matches everything."""
    return all(
        evaluate_rule_condition(subject.get(field), condition)
        for field, condition in (conditions or {}).items()
    )


class AssignmentService(BaseService[AssignmentRule]):
    """Assignment rule CRUD plus assignee resolution."""

    def __init__(
        self,
        db: AsyncSession,
        skill_matcher: Optional[SkillMatcher] = None,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(AssignmentRule, db)
        self.skill_matcher = skill_matcher or SkillMatcher()
        self._rng = rng or random.Random()
        self._max_cas_retries = get_settings().ROUND_ROBIN_MAX_CAS_RETRIES
        self._strategies: dict[str, Callable[[AssignmentRule, list[User], dict], Awaitable[Optional[User]]]] = {
            AssignmentStrategy.ROUND_ROBIN.value: self._round_robin,
            AssignmentStrategy.SKILLS_BASED.value: self._skills_based,
            AssignmentStrategy.WORKLOAD_BASED.value: self._workload_based,
            AssignmentStrategy.AVAILABILITY_BASED.value: self._availability_based,
            AssignmentStrategy.EXPERIENCE_BASED.value: self._experience_based,
            AssignmentStrategy.RANDOM.value: self._random,
        }

    # ─── Rule CRUD ─────────────────────────────────────────

    @staticmethod
    def _validate_rule(conditions: Optional[dict], assignment_logic: Optional[dict]) -> None:
        if assignment_logic is not None:
            strategy = (assignment_logic or {}).get("type")
            if strategy not in {s.value for s in AssignmentStrategy}:
                raise ValidationError(f"Unknown assignment strategy: {strategy}")
        for field, condition in (conditions or {}).items():
            if isinstance(condition, dict) and condition.get("operator") not in RULE_OPERATORS:
                raise ValidationError(f"Unknown operator for condition '{field}': {condition.get('operator')}")

    async def create_rule(self, organization_id: str, data: dict, created_by: Optional[str] = None) -> AssignmentRule:
        self._validate_rule(data.get("conditions"), data.get("assignment_logic"))
        rule = await self.create({
            "organization_id": organization_id,
            "created_by": created_by,
            "name": data["name"],
            "description": data.get("description") or "",
            "conditions": data.get("conditions") or {},
            "assignment_logic": data["assignment_logic"],
            "priority": data.get("priority", 100),
            "is_active": data.get("is_active", True),
        })
        await self.db.commit()
        logger.info("Assignment rule created", rule_id=rule.id, strategy=rule.assignment_logic.get("type"))
        return rule

    async def list_rules(
        self,
        organization_id: str,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[AssignmentRule], int]:
        return await self.list(
            organization_id=organization_id,
            offset=offset,
            limit=limit,
            filters={"is_active": is_active},
            order_by=(AssignmentRule.priority.desc(), AssignmentRule.created_at.desc()),
        )

    async def get_rule(self, rule_id: str, organization_id: str) -> AssignmentRule:
        rule = await self.get(rule_id, organization_id)
        if not rule:
            raise NotFoundError(f"Assignment rule not found: {rule_id}")
        return rule

    async def update_rule(self, rule_id: str, organization_id: str, data: dict) -> AssignmentRule:
        self._validate_rule(data.get("conditions"), data.get("assignment_logic"))
        rule = await self.get_rule(rule_id, organization_id)
        if data.get("assignment_logic") is not None:
            data = {**data, "logic_version": rule.logic_version + 1}
        rule = await self.update(rule_id, data, organization_id)
        await self.db.commit()
        return rule

    async def delete_rule(self, rule_id: str, organization_id: str) -> None:
        if not await self.soft_delete(rule_id, organization_id):
            raise NotFoundError(f"Assignment rule not found: {rule_id}")
        await self.db.commit()

    # ─── Rule templates ────────────────────────────────────

    @staticmethod
    def get_rule_templates() -> list[dict]:
        return copy.deepcopy(list(RULE_TEMPLATES))

    async def create_rule_from_template(
        self,
        organization_id: str,
        template_name: str,
        created_by: Optional[str] = None,
        customizations: Optional[dict] = None,
    ) -> AssignmentRule:
        """Create a rule from a named template.

        ``conditions`` and ``assignment_logic`` customizations are merged
        over the template's; other keys replace the template values.
        """
        template = next((t for t in RULE_TEMPLATES if t["name"] == template_name), None)
        if template is None:
            raise NotFoundError(f"Assignment rule template not found: {template_name}")

        custom = customizations or {}
        return await self.create_rule(
            organization_id,
            {
                "name": custom.get("name") or template["name"],
                "description": custom.get("description") or template["description"],
                "conditions": {**template["conditions"], **(custom.get("conditions") or {})},
                "assignment_logic": {**template["assignment_logic"], **(custom.get("assignment_logic") or {})},
                "priority": custom["priority"] if custom.get("priority") is not None else 100,
                "is_active": custom.get("is_active", True),
            },
            created_by=created_by,
        )

    # ─── Resolution ────────────────────────────────────────

    async def _active_rules(self, organization_id: str) -> Sequence[AssignmentRule]:
        result = await self.db.execute(
            select(AssignmentRule)
            .where(
                AssignmentRule.organization_id == organization_id,
                AssignmentRule.is_active == True,  # noqa: E712
                AssignmentRule.is_deleted == False,  # noqa: E712
            )
            .order_by(AssignmentRule.priority.desc(), AssignmentRule.created_at)
        )
        return result.scalars().all()

    async def _walk_rules(self, organization_id: str, subject: dict) -> tuple[Optional[str], Optional[str]]:
        for rule in await self._active_rules(organization_id):
            if not matches_conditions(rule.conditions, subject):
                continue
            assignee_id = await self.apply_rule(rule, subject)
            if assignee_id:
                return assignee_id, rule.id
        return None, None

    async def find_best_assignee(self, config: dict, context_data: dict) -> Optional[str]:
        """Resolve an assignee for an ASSIGNMENT step.

        The subject seen by rule conditions is the step configuration
        merged over the instance context.
        """
        organization_id = context_data.get("organization_id")
        if not organization_id:
            return None
        subject = {**context_data, **(config or {})}
        assignee_id, rule_id = await self._walk_rules(organization_id, subject)
        logger.info("Assignee resolved", assignee_id=assignee_id, rule_id=rule_id)
        return assignee_id

    async def auto_assign(self, organization_id: str, descriptor: dict) -> AssignmentOutcome:
        """Assign a task descriptor, falling back to the least-loaded USER.

        When the descriptor names an existing ``task_id`` the task's
        assignee is updated.
        """
        subject = {**descriptor, "organization_id": organization_id}
        assignee_id, rule_id = await self._walk_rules(organization_id, subject)

        if not assignee_id:
            fallback = await self._default_assignee(organization_id, descriptor.get("department_id"))
            assignee_id = fallback.id if fallback else None

        task_id = descriptor.get("task_id")
        if assignee_id and task_id:
            await self.db.execute(
                update(Task)
                .where(Task.id == task_id, Task.organization_id == organization_id)
                .values(assignee_id=assignee_id, assignment_method=AssignmentMethod.AUTO.value)
            )
            await self.db.commit()

        return AssignmentOutcome(
            assignee_id=assignee_id,
            method="auto-assigned" if assignee_id else "unassigned",
            rule_id=rule_id,
        )

    async def apply_rule(self, rule: AssignmentRule, subject: dict) -> Optional[str]:
        """Run the rule's strategy over its eligible pool; unknown strategies yield None."""
        logic = rule.assignment_logic or {}
        strategy = self._strategies.get(logic.get("type"))
        if strategy is None:
            logger.warning("Unknown assignment strategy", rule_id=rule.id, strategy=logic.get("type"))
            return None

        users = await self.eligible_users(rule, subject)
        if not users:
            return None
        user = await strategy(rule, users, subject)
        return user.id if user else None

    async def eligible_users(self, rule: AssignmentRule, subject: dict) -> list[User]:
        """Active, non-platform users of the tenant, ordered by creation."""
        logic = rule.assignment_logic or {}
        query = select(User).where(
            User.organization_id == rule.organization_id,
            User.is_active == True,  # noqa: E712
            User.is_deleted == False,  # noqa: E712
            User.role != UserRole.SUPER_ADMIN.value,
        )

        department_id = subject.get("department_id")
        if department_id and not logic.get("cross_department"):
            query = query.where(User.department_id == department_id)
        if logic.get("allowed_roles"):
            query = query.where(User.role.in_(logic["allowed_roles"]))
        if logic.get("exclude_users"):
            query = query.where(User.id.not_in(logic["exclude_users"]))

        result = await self.db.execute(query.order_by(User.created_at, User.id))
        return list(result.scalars().all())

    async def _task_counts(self, user_ids: list[str], done: bool) -> dict[str, int]:
        status_clause = Task.status == TaskStatus.DONE.value if done else Task.status != TaskStatus.DONE.value
        result = await self.db.execute(
            select(Task.assignee_id, func.count(Task.id))
            .where(Task.assignee_id.in_(user_ids), Task.is_deleted == False, status_clause)  # noqa: E712
            .group_by(Task.assignee_id)
        )
        return {assignee_id: count for assignee_id, count in result.all()}

    async def _least_loaded(self, users: list[User]) -> Optional[User]:
        if not users:
            return None
        open_counts = await self._task_counts([u.id for u in users], done=False)
        return min(users, key=lambda u: (open_counts.get(u.id, 0), u.id))

    async def _default_assignee(self, organization_id: str, department_id: Optional[str]) -> Optional[User]:
        query = select(User).where(
            User.organization_id == organization_id,
            User.is_active == True,  # noqa: E712
            User.is_deleted == False,  # noqa: E712
            User.role == UserRole.USER.value,
        )
        if department_id:
            query = query.where(User.department_id == department_id)
        result = await self.db.execute(query.order_by(User.created_at, User.id))
        return await self._least_loaded(list(result.scalars().all()))

    # ─── Strategies ────────────────────────────────────────

    async def _read_cursor(self, rule_id: str) -> tuple[dict, int]:
        row = (await self.db.execute(
            select(AssignmentRule.assignment_logic, AssignmentRule.logic_version).where(AssignmentRule.id == rule_id)
        )).one()
        return dict(row.assignment_logic or {}), row.logic_version

    async def _write_cursor(self, rule_id: str, expected_version: int, logic: dict) -> bool:
        """Compare-and-swap ``assignment_logic``; False when another writer got there first."""
        result = await self.db.execute(
            update(AssignmentRule)
            .where(AssignmentRule.id == rule_id, AssignmentRule.logic_version == expected_version)
            .values(assignment_logic=logic, logic_version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _round_robin(self, rule: AssignmentRule, users: list[User], subject: dict) -> Optional[User]:
        lock = _rule_locks.get(rule.id)
        if lock is None:
            lock = _rule_locks[rule.id] = asyncio.Lock()
        async with lock:
            for attempt in range(1, self._max_cas_retries + 1):
                logic, version = await self._read_cursor(rule.id)
                last = logic.get("last_assigned_index")
                if not isinstance(last, int) or isinstance(last, bool):
                    last = -1
                index = (last + 1) % len(users)

                if await self._write_cursor(rule.id, version, {**logic, "last_assigned_index": index}):
                    await self.db.commit()
                    await self.db.refresh(rule)
                    logger.debug("Round-robin cursor advanced", rule_id=rule.id, index=index, pool_size=len(users))
                    return users[index]

                logger.warning("Round-robin cursor conflict", rule_id=rule.id, attempt=attempt)

        raise ConflictError(f"Could not advance round-robin cursor for rule {rule.id}")

    async def _skills_based(self, rule: AssignmentRule, users: list[User], subject: dict) -> Optional[User]:
        required = _as_skill_set(subject.get("skills")) or _as_skill_set((rule.assignment_logic or {}).get("required_skills"))
        if not required:
            return await self._least_loaded(users)

        matched = [user for user in users if self.skill_matcher.matches(required, user)]
        if matched:
            return await self._least_loaded(matched)

        logger.info("No skill match, using first eligible user", rule_id=rule.id, required=sorted(required))
        return users[0]

    async def _workload_based(self, rule: AssignmentRule, users: list[User], subject: dict) -> Optional[User]:
        return await self._least_loaded(users)

    async def _availability_based(self, rule: AssignmentRule, users: list[User], subject: dict) -> Optional[User]:
        window = timedelta(hours=(rule.assignment_logic or {}).get("availability_window_hours", 24))
        threshold = utc_now() - window
        available = [u for u in users if u.last_seen_at and as_utc(u.last_seen_at) >= threshold]
        if available:
            return await self._least_loaded(available)
        return users[0]

    async def _experience_based(self, rule: AssignmentRule, users: list[User], subject: dict) -> Optional[User]:
        done_counts = await self._task_counts([u.id for u in users], done=True)
        return min(users, key=lambda u: (-done_counts.get(u.id, 0), u.id))

    async def _random(self, rule: AssignmentRule, users: list[User], subject: dict) -> Optional[User]:
        return self._rng.choice(users)

    # ─── Metrics ───────────────────────────────────────────

    async def assignment_metrics(
        self,
        organization_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        department_id: Optional[str] = None,
    ) -> dict:
        """Assignment counts over tasks created in a window (default: last 30 days)."""
        end = as_utc(end) or utc_now()
        start = as_utc(start) or end - METRICS_DEFAULT_WINDOW

        query = select(Task).where(
            Task.organization_id == organization_id,
            Task.is_deleted == False,  # noqa: E712
        )
        if department_id:
            query = query.where(Task.department_id == department_id)
        tasks = [t for t in (await self.db.execute(query)).scalars().all() if start <= as_utc(t.created_at) <= end]

        total = len(tasks)
        assigned = [t for t in tasks if t.assignee_id]
        by_department: dict[str, int] = {}
        for task in tasks:
            key = task.department_id or "unassigned"
            by_department[key] = by_department.get(key, 0) + 1

        return {
            "start": start,
            "end": end,
            "total_tasks": total,
            "assigned_tasks": len(assigned),
            "unassigned_tasks": total - len(assigned),
            "auto_assigned_tasks": sum(1 for t in assigned if t.assignment_method == AssignmentMethod.AUTO.value),
            "manual_assigned_tasks": sum(1 for t in assigned if t.assignment_method != AssignmentMethod.AUTO.value),
            "assignment_rate": round(len(assigned) / total * 100, 1) if total else 0.0,
            "tasks_by_department": by_department,
        }
