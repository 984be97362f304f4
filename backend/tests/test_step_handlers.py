"""Tests for the built-in step handlers, run through the engine."""

import pytest
from sqlalchemy import select

from core.constants import AssignmentMethod, AssignmentStrategy, ExecutionStatus, InstanceStatus
from core.exceptions import UnknownStepTypeError
from db.models.notification import Notification
from db.models.task import Task
from services.assignment_service import AssignmentService
from services.instance_service import InstanceService
from steps.registry import StepHandlerRegistry


async def only_execution(db, instance_id):
    executions = await InstanceService(db).get_executions(instance_id)
    assert len(executions) == 1
    return executions[0]


async def reload_task(db, task_id) -> Task:
    return (await db.execute(
        select(Task).where(Task.id == task_id).execution_options(populate_existing=True)
    )).scalar_one()


# ─── Registry ───

@pytest.mark.unit
class TestRegistry:
    def test_every_step_type_has_a_handler(self):
        registry = StepHandlerRegistry()
        assert sorted(registry.available_types) == sorted([
            "TASK_CREATION", "APPROVAL", "NOTIFICATION", "ASSIGNMENT",
            "CONDITION", "DELAY", "EMAIL", "DATA_UPDATE",
        ])

    def test_unknown_type(self):
        with pytest.raises(UnknownStepTypeError):
            StepHandlerRegistry().create_handler("TELEPORT")

    def test_describe(self):
        described = {d["step_type"]: d for d in StepHandlerRegistry().list_all()}
        assert described["DELAY"]["config_keys"] == ["delay_minutes"]


# ─── TASK_CREATION ───

@pytest.mark.integration
class TestTaskCreation:
    async def test_creates_task_with_substituted_text(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([{
            "key": "t",
            "step_type": "TASK_CREATION",
            "configuration": {
                "title": "Onboard {{employee}}",
                "description": "Start date {{start}}",
                "priority": "high",
                "due_date": "2030-01-15T09:00:00Z",
            },
        }])

        instance = await workflow_engine.start_instance(
            template.id, {"employee": "Ann", "start": "Monday", "department_id": "dept-9"},
            triggered_by="hr-1", organization_id=org_id,
        )

        execution = await only_execution(db_session, instance.id)
        task = await reload_task(db_session, execution.output["task_id"])
        assert task.title == "Onboard Ann"
        assert task.description == "Start date Monday"
        assert task.priority == "HIGH"
        assert task.department_id == "dept-9"
        assert task.due_date is not None
        assert task.organization_id == org_id
        assert task.assignment_method is None

    async def test_explicit_assignee_is_manual(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([
            {"key": "t", "step_type": "TASK_CREATION", "configuration": {"title": "Fix", "assignee_id": "u-7"}}
        ])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        task = await reload_task(db_session, (await only_execution(db_session, instance.id)).output["task_id"])
        assert task.assignee_id == "u-7"
        assert task.assignment_method == AssignmentMethod.MANUAL.value

    async def test_invalid_priority_fails(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([
            {"key": "t", "step_type": "TASK_CREATION", "configuration": {"priority": "whenever"}}
        ])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.status == ExecutionStatus.FAILED.value
        assert "Invalid priority" in execution.error_message


# ─── DATA_UPDATE ───

@pytest.mark.integration
class TestDataUpdate:
    async def test_updates_matching_task(self, db_session, workflow_engine, make_task, make_template, org_id):
        task = await make_task(title="Close books")
        template = await make_template([{
            "key": "u",
            "step_type": "DATA_UPDATE",
            "configuration": {"entity": "task", "filter": {"id": "{{task_id}}"}, "values": {"status": "DONE"}},
        }])

        instance = await workflow_engine.start_instance(template.id, {"task_id": task.id}, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.output == {"entity": "task", "updated": 1}
        assert instance.status == InstanceStatus.COMPLETED.value
        assert (await reload_task(db_session, task.id)).status == "DONE"

    async def test_other_tenants_are_untouched(self, db_session, workflow_engine, make_task, make_template, org_id):
        foreign = await make_task(title="Theirs", organization_id="other-org")
        template = await make_template([{
            "key": "u",
            "step_type": "DATA_UPDATE",
            "configuration": {"entity": "task", "filter": {"title": "Theirs"}, "values": {"status": "DONE"}},
        }])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        assert (await only_execution(db_session, instance.id)).output["updated"] == 0
        assert (await reload_task(db_session, foreign.id)).status == "TODO"

    async def test_disallowed_field_fails(self, db_session, workflow_engine, make_task, make_template, org_id):
        task = await make_task()
        template = await make_template([{
            "key": "u",
            "step_type": "DATA_UPDATE",
            "configuration": {"entity": "task", "filter": {"id": task.id}, "values": {"organization_id": "x"}},
        }])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.status == ExecutionStatus.FAILED.value
        assert "organization_id" in execution.error_message
        assert instance.status == InstanceStatus.FAILED.value

    async def test_empty_filter_fails(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([{
            "key": "u",
            "step_type": "DATA_UPDATE",
            "configuration": {"entity": "user", "values": {"name": "Everyone"}},
        }])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert "non-empty filter" in execution.error_message


# ─── EMAIL and NOTIFICATION ───

@pytest.mark.integration
class TestMessaging:
    async def test_email_goes_to_transport(self, db_session, workflow_engine, email_transport, make_template, org_id):
        template = await make_template([{
            "key": "mail",
            "step_type": "EMAIL",
            "configuration": {"to": "{{email}}", "subject": "Welcome {{name}}", "body": "Hello {{name}}"},
        }])

        instance = await workflow_engine.start_instance(
            template.id, {"email": "ann@example.com", "name": "Ann"}, organization_id=org_id
        )

        assert len(email_transport.sent) == 1
        sent = email_transport.sent[0]
        assert sent.to == "ann@example.com"
        assert sent.subject == "Welcome Ann"
        assert sent.body == "Hello Ann"
        execution = await only_execution(db_session, instance.id)
        assert execution.output["message_id"] == sent.message_id
        assert sent.metadata["execution_id"] == execution.id

    async def test_email_without_recipient_fails(self, db_session, workflow_engine, email_transport, make_template, org_id):
        template = await make_template([{"key": "mail", "step_type": "EMAIL", "configuration": {"subject": "x"}}])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        assert email_transport.sent == []
        execution = await only_execution(db_session, instance.id)
        assert execution.error_message == "Email step has no recipient"

    async def test_notification_per_recipient(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([{
            "key": "n",
            "step_type": "NOTIFICATION",
            "configuration": {"user_ids": ["u-1", "u-2", "u-1"], "title": "Heads up", "message": "{{what}}"},
        }])

        instance = await workflow_engine.start_instance(template.id, {"what": "deploy"}, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.output == {"notifications_sent": 2}
        rows = (await db_session.execute(
            select(Notification).where(Notification.organization_id == org_id).order_by(Notification.user_id)
        )).scalars().all()
        assert [(n.user_id, n.title, n.message) for n in rows] == [
            ("u-1", "Heads up", "deploy"),
            ("u-2", "Heads up", "deploy"),
        ]


# ─── ASSIGNMENT ───

@pytest.mark.integration
class TestAssignment:
    async def test_assigns_task_from_rule(self, db_session, workflow_engine, make_user, make_task, make_template, org_id):
        user = await make_user("solo")
        task = await make_task()
        await AssignmentService(db_session).create_rule(org_id, {
            "name": "Everyone",
            "assignment_logic": {"type": AssignmentStrategy.WORKLOAD_BASED.value},
        })
        template = await make_template([{
            "key": "assign",
            "step_type": "ASSIGNMENT",
            "configuration": {"task_id": "{{task_id}}", "department_id": "dept-1"},
        }])

        instance = await workflow_engine.start_instance(template.id, {"task_id": task.id}, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.output == {"assignee_id": user.id, "task_id": task.id}
        assert instance.context_data["assignee_id"] == user.id
        refreshed = await reload_task(db_session, task.id)
        assert refreshed.assignee_id == user.id
        assert refreshed.assignment_method == AssignmentMethod.AUTO.value

    async def test_required_without_assignee_fails(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([
            {"key": "assign", "step_type": "ASSIGNMENT", "configuration": {"required": True}}
        ])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.error_type == "AssignmentNotFoundError"
        assert instance.status == InstanceStatus.FAILED.value

    async def test_optional_without_assignee_completes(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([{"key": "assign", "step_type": "ASSIGNMENT"}])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.output == {"assignee_id": None, "task_id": None}
        assert instance.status == InstanceStatus.COMPLETED.value


# ─── APPROVAL / DELAY configuration errors ───

@pytest.mark.integration
class TestFlowConfiguration:
    async def test_approval_without_approvers_fails(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([{"key": "ok", "step_type": "APPROVAL"}])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.error_message == "Approval step requires approver_ids"

    async def test_negative_delay_fails(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([{"key": "w", "step_type": "DELAY", "configuration": {"delay_minutes": -1}}])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.status == ExecutionStatus.FAILED.value

    async def test_condition_syntax_error_fails(self, db_session, workflow_engine, make_template, org_id):
        template = await make_template([
            {"key": "c", "step_type": "CONDITION", "configuration": {"condition": "__import__('os')"}}
        ])

        instance = await workflow_engine.start_instance(template.id, organization_id=org_id)

        execution = await only_execution(db_session, instance.id)
        assert execution.error_type == "ConditionSyntaxError"
        assert instance.status == InstanceStatus.FAILED.value
