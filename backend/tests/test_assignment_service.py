"""Tests for assignment rules and assignee resolution strategies."""

import random
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from core.constants import AssignmentMethod, AssignmentStrategy, UserRole
from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.utils import utc_now
from db.models.assignment_rule import AssignmentRule
from db.models.task import Task
from services.assignment_service import (
    RULE_TEMPLATES,
    AssignmentService,
    SkillMatcher,
    _rule_locks,
    evaluate_rule_condition,
    matches_conditions,
)


async def make_rule(db, org_id, strategy, **kwargs) -> AssignmentRule:
    logic = {"type": strategy, **kwargs.pop("logic", {})}
    return await AssignmentService(db).create_rule(org_id, {"name": f"{strategy} rule", "assignment_logic": logic, **kwargs})


async def reload_rule(db, rule_id) -> AssignmentRule:
    return (await db.execute(
        select(AssignmentRule).where(AssignmentRule.id == rule_id).execution_options(populate_existing=True)
    )).scalar_one()


@pytest.fixture
def three_users(make_user):
    async def _make():
        return [await make_user(f"user-{i}") for i in range(3)]
    return _make


# ─── Rule conditions ───

@pytest.mark.unit
class TestRuleConditions:
    def test_equals(self):
        assert evaluate_rule_condition("it", {"operator": "equals", "value": "it"}) is True
        assert evaluate_rule_condition("hr", {"operator": "equals", "value": "it"}) is False

    def test_contains_is_case_insensitive(self):
        assert evaluate_rule_condition("Server DOWN", {"operator": "contains", "value": "down"}) is True
        assert evaluate_rule_condition(None, {"operator": "contains", "value": "down"}) is False

    def test_in(self):
        assert evaluate_rule_condition("HIGH", {"operator": "in", "value": ["HIGH", "URGENT"]}) is True
        assert evaluate_rule_condition("LOW", {"operator": "in", "value": "HIGH"}) is False

    def test_numeric_comparisons(self):
        assert evaluate_rule_condition("1500", {"operator": "greater_than", "value": 1000}) is True
        assert evaluate_rule_condition(5, {"operator": "less_than", "value": "10"}) is True
        assert evaluate_rule_condition("many", {"operator": "greater_than", "value": 1}) is False

    def test_not_empty(self):
        assert evaluate_rule_condition("x", {"operator": "not_empty"}) is True
        assert evaluate_rule_condition("", {"operator": "not_empty"}) is False

    def test_bare_value_means_equality(self):
        assert evaluate_rule_condition("it", "it") is True

    def test_unknown_operator_never_matches(self):
        assert evaluate_rule_condition("x", {"operator": "regex", "value": "x"}) is False

    def test_all_conditions_must_hold(self):
        conditions = {
            "category": {"operator": "equals", "value": "it"},
            "priority": {"operator": "in", "value": ["HIGH"]},
        }
        assert matches_conditions(conditions, {"category": "it", "priority": "HIGH"}) is True
        assert matches_conditions(conditions, {"category": "it", "priority": "LOW"}) is False
        assert matches_conditions({}, {"anything": 1}) is True


# ─── Rule CRUD ───

@pytest.mark.integration
class TestRuleCrud:
    async def test_create_and_list_by_priority(self, db_session, org_id):
        service = AssignmentService(db_session)
        low = await make_rule(db_session, org_id, "RANDOM", priority=10)
        high = await make_rule(db_session, org_id, "ROUND_ROBIN", priority=500)

        rules, total = await service.list_rules(org_id)
        assert total == 2
        assert [r.id for r in rules] == [high.id, low.id]
        assert high.logic_version == 0

    async def test_unknown_strategy_rejected(self, db_session, org_id):
        with pytest.raises(ValidationError, match="Unknown assignment strategy"):
            await make_rule(db_session, org_id, "COIN_FLIP")

    async def test_unknown_condition_operator_rejected(self, db_session, org_id):
        with pytest.raises(ValidationError, match="Unknown operator"):
            await make_rule(db_session, org_id, "RANDOM", conditions={"title": {"operator": "like", "value": "x"}})

    async def test_update_logic_bumps_version(self, db_session, org_id):
        service = AssignmentService(db_session)
        rule = await make_rule(db_session, org_id, "RANDOM")

        rule = await service.update_rule(rule.id, org_id, {"assignment_logic": {"type": "WORKLOAD_BASED"}})
        assert rule.logic_version == 1

    async def test_rule_lock_released_after_pick(self, db_session, three_users, org_id):
        await three_users()
        rule = await make_rule(db_session, org_id, "ROUND_ROBIN")

        await AssignmentService(db_session).apply_rule(rule, {})

        assert rule.id not in _rule_locks
        assert rule.assignment_logic == {"type": "WORKLOAD_BASED"}

        rule = await service.update_rule(rule.id, org_id, {"name": "Renamed"})
        assert rule.logic_version == 1
        assert rule.name == "Renamed"

    async def test_delete_is_soft_and_scoped(self, db_session, org_id):
        service = AssignmentService(db_session)
        rule = await make_rule(db_session, org_id, "RANDOM")

        with pytest.raises(NotFoundError):
            await service.delete_rule(rule.id, "other-org")
        await service.delete_rule(rule.id, org_id)

        with pytest.raises(NotFoundError):
            await service.get_rule(rule.id, org_id)
        _, total = await service.list_rules(org_id)
        assert total == 0


# ─── Round robin ───

@pytest.mark.integration
class TestRoundRobin:
    async def test_wraps_from_last_index(self, db_session, three_users, org_id):
        users = await three_users()
        rule = await make_rule(db_session, org_id, "ROUND_ROBIN", logic={"last_assigned_index": 2})

        assignee = await AssignmentService(db_session).apply_rule(rule, {"department_id": "dept-1"})

        assert assignee == users[0].id
        rule = await reload_rule(db_session, rule.id)
        assert rule.assignment_logic["last_assigned_index"] == 0
        assert rule.logic_version == 1

    async def test_sequential_picks_cycle_through_pool(self, db_session, three_users, org_id):
        users = await three_users()
        rule = await make_rule(db_session, org_id, "ROUND_ROBIN")
        service = AssignmentService(db_session)

        picks = [await service.apply_rule(rule, {}) for _ in range(4)]

        assert picks == [users[0].id, users[1].id, users[2].id, users[0].id]
        assert (await reload_rule(db_session, rule.id)).logic_version == 4

    async def test_stale_cursor_write_is_retried(self, db_session, three_users, org_id, monkeypatch):
        users = await three_users()
        rule = await make_rule(db_session, org_id, "ROUND_ROBIN")
        service = AssignmentService(db_session)
        original_write = service._write_cursor
        writes = []

        async def competing_write(rule_id, expected_version, logic):
            writes.append(expected_version)
            if len(writes) == 1:
                # Another worker advances the cursor between our read and write
                await db_session.execute(
                    update(AssignmentRule)
                    .where(AssignmentRule.id == rule_id)
                    .values(
                        assignment_logic={"type": "ROUND_ROBIN", "last_assigned_index": 0},
                        logic_version=expected_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
            return await original_write(rule_id, expected_version, logic)

        monkeypatch.setattr(service, "_write_cursor", competing_write)

        assignee = await service.apply_rule(rule, {})

        assert writes == [0, 1]
        assert assignee == users[1].id
        rule = await reload_rule(db_session, rule.id)
        assert rule.logic_version == 2
        assert rule.assignment_logic["last_assigned_index"] == 1

    async def test_gives_up_after_repeated_conflicts(self, db_session, three_users, org_id, monkeypatch):
        await three_users()
        rule = await make_rule(db_session, org_id, "ROUND_ROBIN")
        service = AssignmentService(db_session)

        async def always_stale(rule_id, expected_version, logic):
            return False

        monkeypatch.setattr(service, "_write_cursor", always_stale)

        with pytest.raises(ConflictError):
            await service.apply_rule(rule, {})


# ─── Other strategies ───

@pytest.mark.integration
class TestStrategies:
    async def test_skills_based_prefers_matching_user(self, db_session, make_user, org_id):
        await make_user("java", skills=["java"])
        pythonista = await make_user("py", skills=["Python", "sql"])
        await make_user("none")
        rule = await make_rule(db_session, org_id, "SKILLS_BASED")

        assignee = await AssignmentService(db_session).apply_rule(rule, {"skills": ["python"]})

        assert assignee == pythonista.id

    async def test_skills_based_falls_back_to_first_user(self, db_session, make_user, org_id):
        first = await make_user("first", skills=["java"])
        await make_user("second", skills=["go"])
        rule = await make_rule(db_session, org_id, "SKILLS_BASED")

        assignee = await AssignmentService(db_session).apply_rule(rule, {"skills": "cobol"})

        assert assignee == first.id

    async def test_skills_from_rule_logic(self, db_session, make_user, org_id):
        await make_user("java", skills=["java"])
        rust = await make_user("rust", skills=["rust"])
        rule = await make_rule(db_session, org_id, "SKILLS_BASED", logic={"required_skills": ["rust"]})

        assert await AssignmentService(db_session).apply_rule(rule, {}) == rust.id

    async def test_custom_skill_matcher(self, db_session, make_user, make_task, org_id):
        partial = await make_user("partial", skills=["python"])
        full = await make_user("full", skills=["python", "sql"])
        await make_task(assignee_id=full.id)
        rule = await make_rule(db_session, org_id, "SKILLS_BASED")
        subject = {"skills": ["python", "sql"]}

        class RequireAll(SkillMatcher):
            def matches(self, required, user):
                return required <= {s.lower() for s in user.skills}

        # Any overlap: both match, the less loaded one wins
        assert await AssignmentService(db_session).apply_rule(rule, subject) == partial.id
        assert await AssignmentService(db_session, skill_matcher=RequireAll()).apply_rule(rule, subject) == full.id

    async def test_workload_based(self, db_session, make_user, make_task, org_id):
        busy = await make_user("busy")
        idle = await make_user("idle")
        medium = await make_user("medium")
        for _ in range(2):
            await make_task(assignee_id=busy.id)
        await make_task(assignee_id=medium.id)
        await make_task(assignee_id=idle.id, status="DONE")
        rule = await make_rule(db_session, org_id, "WORKLOAD_BASED")

        assert await AssignmentService(db_session).apply_rule(rule, {}) == idle.id

    async def test_availability_based(self, db_session, make_user, org_id):
        never = await make_user("never")
        recent = await make_user("recent", last_seen_at=utc_now() - timedelta(hours=1))
        await make_user("stale", last_seen_at=utc_now() - timedelta(hours=48))
        rule = await make_rule(db_session, org_id, "AVAILABILITY_BASED")
        service = AssignmentService(db_session)

        assert await service.apply_rule(rule, {}) == recent.id

        narrow = await make_rule(db_session, org_id, "AVAILABILITY_BASED", logic={"availability_window_hours": 0.5})
        assert await service.apply_rule(narrow, {}) == never.id

    async def test_experience_based(self, db_session, make_user, make_task, org_id):
        junior = await make_user("junior")
        senior = await make_user("senior")
        await make_task(assignee_id=junior.id, status="DONE")
        for _ in range(3):
            await make_task(assignee_id=senior.id, status="DONE")
        await make_task(assignee_id=junior.id)
        rule = await make_rule(db_session, org_id, "EXPERIENCE_BASED")

        assert await AssignmentService(db_session).apply_rule(rule, {}) == senior.id

    async def test_random_uses_injected_rng(self, db_session, three_users, org_id):
        users = await three_users()
        rule = await make_rule(db_session, org_id, "RANDOM")

        expected = random.Random(7).choice(users)
        assignee = await AssignmentService(db_session, rng=random.Random(7)).apply_rule(rule, {})

        assert assignee == expected.id

    async def test_unknown_stored_strategy_yields_nobody(self, db_session, three_users, org_id):
        await three_users()
        rule = await make_rule(db_session, org_id, "RANDOM")
        rule.assignment_logic = {"type": "LEGACY"}
        await db_session.commit()

        assert await AssignmentService(db_session).apply_rule(rule, {}) is None


# ─── Eligible pool ───

@pytest.mark.integration
class TestEligibleUsers:
    async def test_filters(self, db_session, make_user, org_id):
        member = await make_user("member")
        head = await make_user("head", role=UserRole.DEPARTMENT_HEAD.value)
        await make_user("root", role=UserRole.SUPER_ADMIN.value)
        await make_user("gone", is_active=False)
        other_dept = await make_user("other", department_id="dept-2")
        await make_user("foreign", organization_id="other-org")
        service = AssignmentService(db_session)

        rule = await make_rule(db_session, org_id, "RANDOM")
        pool = await service.eligible_users(rule, {"department_id": "dept-1"})
        assert [u.id for u in pool] == [member.id, head.id]

        cross = await make_rule(db_session, org_id, "RANDOM", logic={"cross_department": True})
        pool = await service.eligible_users(cross, {"department_id": "dept-1"})
        assert [u.id for u in pool] == [member.id, head.id, other_dept.id]

        heads = await make_rule(db_session, org_id, "RANDOM", logic={"allowed_roles": ["DEPARTMENT_HEAD"]})
        assert [u.id for u in await service.eligible_users(heads, {})] == [head.id]

        excluding = await make_rule(db_session, org_id, "RANDOM", logic={"exclude_users": [member.id]})
        pool = await service.eligible_users(excluding, {"department_id": "dept-1"})
        assert [u.id for u in pool] == [head.id]


# ─── Rule walk and auto-assign ───

@pytest.mark.integration
class TestAutoAssign:
    async def test_rules_walked_by_priority_and_conditions(self, db_session, make_user, org_id):
        alice = await make_user("alice")
        bob = await make_user("bob")
        await make_rule(db_session, org_id, "RANDOM", priority=300, logic={"allowed_roles": ["ADMIN"]})
        it_rule = await make_rule(
            db_session, org_id, "RANDOM", priority=200,
            conditions={"category": {"operator": "equals", "value": "it"}},
            logic={"exclude_users": [alice.id]},
        )
        catch_all = await make_rule(db_session, org_id, "RANDOM", priority=100, logic={"exclude_users": [bob.id]})
        service = AssignmentService(db_session)

        assert await service.auto_assign(org_id, {"category": "it"}) == (bob.id, "auto-assigned", it_rule.id)
        assert await service.auto_assign(org_id, {"category": "hr"}) == (alice.id, "auto-assigned", catch_all.id)

    async def test_inactive_rules_are_skipped(self, db_session, make_user, org_id):
        alice = await make_user("alice")
        await make_rule(db_session, org_id, "RANDOM", is_active=False)

        outcome = await AssignmentService(db_session).auto_assign(org_id, {})
        assert outcome == (alice.id, "auto-assigned", None)

    async def test_fallback_picks_least_loaded_plain_user(self, db_session, make_user, make_task, org_id):
        busy = await make_user("busy")
        free = await make_user("free")
        await make_user("boss", role=UserRole.DEPARTMENT_HEAD.value)
        await make_task(assignee_id=busy.id)
        task = await make_task(title="Needs owner")

        outcome = await AssignmentService(db_session).auto_assign(org_id, {"task_id": task.id, "department_id": "dept-1"})

        assert outcome.assignee_id == free.id
        assert outcome.method == "auto-assigned"
        assert outcome.rule_id is None
        refreshed = (await db_session.execute(
            select(Task).where(Task.id == task.id).execution_options(populate_existing=True)
        )).scalar_one()
        assert refreshed.assignee_id == free.id
        assert refreshed.assignment_method == AssignmentMethod.AUTO.value

    async def test_nobody_available(self, db_session, org_id):
        outcome = await AssignmentService(db_session).auto_assign(org_id, {"title": "Orphan"})
        assert outcome == (None, "unassigned", None)

    async def test_find_best_assignee_needs_tenant(self, db_session, make_user, org_id):
        user = await make_user("solo")
        await make_rule(db_session, org_id, AssignmentStrategy.WORKLOAD_BASED.value)
        service = AssignmentService(db_session)

        assert await service.find_best_assignee({}, {}) is None
        assert await service.find_best_assignee({"department_id": "dept-1"}, {"organization_id": org_id}) == user.id


# ─── Rule templates ───

@pytest.mark.integration
class TestRuleTemplates:
    def test_templates_are_copies(self):
        templates = AssignmentService.get_rule_templates()

        assert [t["name"] for t in templates] == [t["name"] for t in RULE_TEMPLATES]
        assert len(templates) == 5
        templates[0]["assignment_logic"]["type"] = "CHANGED"
        assert RULE_TEMPLATES[0]["assignment_logic"]["type"] == AssignmentStrategy.ROUND_ROBIN.value

    async def test_create_from_template_merges_customizations(self, db_session, org_id):
        rule = await AssignmentService(db_session).create_rule_from_template(
            org_id,
            "Skills-Based Developer Assignment",
            created_by="admin-1",
            customizations={
                "priority": 250,
                "conditions": {"department_id": {"operator": "equals", "value": "dept-1"}},
                "assignment_logic": {"required_skills": ["go"]},
            },
        )

        assert rule.name == "Skills-Based Developer Assignment"
        assert rule.priority == 250
        assert rule.created_by == "admin-1"
        assert rule.is_active is True
        assert set(rule.conditions) == {"category", "department_id"}
        assert rule.assignment_logic["type"] == AssignmentStrategy.SKILLS_BASED.value
        assert rule.assignment_logic["required_skills"] == ["go"]
        assert rule.assignment_logic["allowed_roles"] == [UserRole.USER.value]

    async def test_template_defaults(self, db_session, org_id):
        rule = await AssignmentService(db_session).create_rule_from_template(org_id, "Workload Balancing")

        assert rule.priority == 100
        assert rule.description == "Distributes tasks evenly across team members"

    async def test_unknown_template(self, db_session, org_id):
        with pytest.raises(NotFoundError):
            await AssignmentService(db_session).create_rule_from_template(org_id, "Carrier Pigeon")


# ─── Metrics ───

@pytest.mark.integration
class TestAssignmentMetrics:
    async def test_counts_by_method_and_department(self, db_session, make_task, org_id):
        await make_task(assignee_id="u-1", department_id="dept-1", assignment_method=AssignmentMethod.AUTO.value)
        await make_task(assignee_id="u-2", department_id="dept-1", assignment_method=AssignmentMethod.MANUAL.value)
        await make_task(assignee_id="u-3", department_id="dept-2")
        await make_task(department_id="dept-2")
        await make_task(organization_id="other-org", assignee_id="u-9")

        metrics = await AssignmentService(db_session).assignment_metrics(org_id)

        assert metrics["total_tasks"] == 4
        assert metrics["assigned_tasks"] == 3
        assert metrics["unassigned_tasks"] == 1
        assert metrics["auto_assigned_tasks"] == 1
        assert metrics["manual_assigned_tasks"] == 2
        assert metrics["assignment_rate"] == 75.0
        assert metrics["tasks_by_department"] == {"dept-1": 2, "dept-2": 2}

    async def test_department_filter_and_missing_department(self, db_session, make_task, org_id):
        await make_task(assignee_id="u-1", department_id="dept-1")
        await make_task()

        service = AssignmentService(db_session)
        assert (await service.assignment_metrics(org_id))["tasks_by_department"] == {"dept-1": 1, "unassigned": 1}
        filtered = await service.assignment_metrics(org_id, department_id="dept-1")
        assert filtered["total_tasks"] == 1
        assert filtered["assignment_rate"] == 100.0

    async def test_window_excludes_older_tasks(self, db_session, make_task, org_id):
        await make_task(assignee_id="u-1")

        metrics = await AssignmentService(db_session).assignment_metrics(
            org_id, start=utc_now() - timedelta(days=60), end=utc_now() - timedelta(days=31)
        )

        assert metrics["total_tasks"] == 0
        assert metrics["assignment_rate"] == 0.0
