"""Tests for the structlog processors and bound workflow context."""

import pytest
import structlog

from app.config import get_settings
from core.logging_config import add_service_context, workflow_log_context


@pytest.mark.unit
class TestServiceContext:
    def test_adds_service_and_environment(self):
        settings = get_settings()

        event = add_service_context(None, "info", {"event": "started"})

        assert event["service"] == settings.APP_NAME
        assert event["environment"] == settings.ENVIRONMENT

    def test_keeps_explicit_values(self):
        event = add_service_context(None, "info", {"event": "started", "service": "worker"})

        assert event["service"] == "worker"


@pytest.mark.unit
class TestWorkflowLogContext:
    def test_binds_instance_for_the_block(self):
        with workflow_log_context("inst-1", "org-1"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["instance_id"] == "inst-1"
            assert bound["organization_id"] == "org-1"

        bound = structlog.contextvars.get_contextvars()
        assert "instance_id" not in bound
        assert "organization_id" not in bound

    def test_organization_is_optional(self):
        with workflow_log_context("inst-2"):
            assert "organization_id" not in structlog.contextvars.get_contextvars()

    def test_nested_blocks_restore_outer_instance(self):
        with workflow_log_context("outer"):
            with workflow_log_context("inner"):
                assert structlog.contextvars.get_contextvars()["instance_id"] == "inner"
            assert structlog.contextvars.get_contextvars()["instance_id"] == "outer"
