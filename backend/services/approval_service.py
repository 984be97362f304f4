"""Approval gate.

APPROVAL steps leave their execution RUNNING behind a PENDING
ApprovalRequest. A decision re-enters the engine:

- APPROVED completes the execution and advances the instance
- REJECTED fails the execution; the engine's failure policy decides
  whether the instance fails

Delegation swaps one approver for another without touching the decision.
"""

from datetime import datetime, timedelta
from typing import NamedTuple, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ApprovalDecision, NotificationType, Priority
from core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    WorkflowEngineError,
)
from core.utils import as_utc, utc_now
from db.models.approval_request import ApprovalRequest
from db.models.workflow_execution import WorkflowExecution
from services.base import BaseService
from services.notification_service import NotificationService
from workflow.engine import WorkflowEngine

logger = structlog.get_logger(__name__)

REJECTED_ERROR_TYPE = "ApprovalRejected"
METRICS_DEFAULT_WINDOW = timedelta(days=30)


class ApprovalView(NamedTuple):
    """An approval as seen by one user."""
    approval: ApprovalRequest
    can_approve: bool
    is_requester: bool


class ApprovalService(BaseService[ApprovalRequest]):
    """Decisions, delegation, listing and metrics for approval requests."""

    def __init__(
        self,
        db: AsyncSession,
        engine: Optional[WorkflowEngine] = None,
        notification_service: Optional[NotificationService] = None,
    ):
        super().__init__(ApprovalRequest, db)
        self.notification_service = notification_service or NotificationService(db)
        self.engine = engine or WorkflowEngine(db, notification_service=self.notification_service)

    async def get_approval(self, approval_id: str, organization_id: Optional[str] = None) -> ApprovalRequest:
        query = self._scoped(select(ApprovalRequest).where(ApprovalRequest.id == approval_id), organization_id)
        approval = (
            await self.db.execute(query.execution_options(populate_existing=True))
        ).scalar_one_or_none()
        if approval is None:
            raise NotFoundError(f"Approval request not found: {approval_id}")
        return approval

    # ─── Decisions ───────────────────────────────────────

    async def respond_to_approval(
        self,
        approval_id: str,
        responder_id: str,
        decision: str,
        response_text: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> ApprovalRequest:
        """Record a decision and hand it to the engine.

        Raises:
            NotFoundError: unknown approval
            ForbiddenError: responder is not one of the approvers
            ConflictError: the request is no longer PENDING
            ValidationError: decision is not APPROVED or REJECTED
        """
        approval = await self.get_approval(approval_id, organization_id)
        if responder_id not in (approval.approver_ids or []):
            raise ForbiddenError("You are not authorized to respond to this approval")
        if approval.decision != ApprovalDecision.PENDING.value:
            raise ConflictError(f"Approval request is already {approval.decision}")

        decision = str(decision or "").upper()
        if decision not in (ApprovalDecision.APPROVED.value, ApprovalDecision.REJECTED.value):
            raise ValidationError(f"Invalid decision: {decision or None}")

        now = utc_now()
        approval.decision = decision
        approval.responded_by = responder_id
        approval.responded_at = now
        approval.response = response_text

        if approval.requested_by:
            await self.notification_service.notify(
                organization_id=approval.organization_id,
                user_id=approval.requested_by,
                title=f"Approval {decision.lower()}: {approval.title}",
                message=response_text or "",
                notification_type=NotificationType.APPROVAL_RESPONSE.value,
                details={"approval_id": approval.id, "decision": decision, "responded_by": responder_id},
            )
        await self.db.commit()
        logger.info("Approval decided", approval_id=approval.id, decision=decision, responded_by=responder_id)

        execution = (await self.db.execute(
            select(WorkflowExecution)
            .where(WorkflowExecution.id == approval.execution_id)
            .execution_options(populate_existing=True)
        )).scalar_one()

        if decision == ApprovalDecision.APPROVED.value:
            await self.engine.complete_execution(execution, {
                "approval_result": decision,
                "approved_by": responder_id,
                "approved_at": now.isoformat(),
            })
        else:
            message = f"Approval rejected: {response_text}" if response_text else "Approval rejected"
            await self.engine.fail_execution(execution, message, REJECTED_ERROR_TYPE)
        return approval

    async def bulk_respond(
        self,
        approval_ids: Sequence[str],
        responder_id: str,
        decision: str,
        response_text: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> dict:
        """Respond to each approval in order. A failure never aborts the batch."""
        results = []
        for approval_id in approval_ids:
            try:
                await self.respond_to_approval(approval_id, responder_id, decision, response_text, organization_id)
                results.append({"approval_id": approval_id, "success": True, "error": None})
            except WorkflowEngineError as e:
                results.append({"approval_id": approval_id, "success": False, "error": e.message})

        successful = sum(1 for r in results if r["success"])
        logger.info("Bulk approval response", decision=decision, successful=successful, failed=len(results) - successful)
        return {"results": results, "successful": successful, "failed": len(results) - successful}

    async def bulk_approve(self, approval_ids, responder_id, response_text=None, organization_id=None) -> dict:
        return await self.bulk_respond(
            approval_ids, responder_id, ApprovalDecision.APPROVED.value, response_text, organization_id
        )

    async def bulk_reject(self, approval_ids, responder_id, response_text=None, organization_id=None) -> dict:
        return await self.bulk_respond(
            approval_ids, responder_id, ApprovalDecision.REJECTED.value, response_text, organization_id
        )

    # ─── Delegation ──────────────────────────────────────

    async def delegate_approval(
        self,
        approval_id: str,
        from_user_id: str,
        to_user_id: str,
        reason: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> ApprovalRequest:
        """Replace ``from_user_id`` with ``to_user_id`` among the approvers."""
        approval = await self.get_approval(approval_id, organization_id)
        if from_user_id not in (approval.approver_ids or []):
            raise ForbiddenError("You are not authorized to delegate this approval")
        if approval.decision != ApprovalDecision.PENDING.value:
            raise ConflictError("Cannot delegate a completed approval request")
        if not to_user_id or to_user_id == from_user_id:
            raise ValidationError("Delegate must be a different user")

        approver_ids = [to_user_id if uid == from_user_id else uid for uid in approval.approver_ids]
        approval.approver_ids = list(dict.fromkeys(approver_ids))
        approval.delegations = [
            *(approval.delegations or []),
            {"from": from_user_id, "to": to_user_id, "reason": reason, "delegated_at": utc_now().isoformat()},
        ]

        await self.notification_service.notify(
            organization_id=approval.organization_id,
            user_id=to_user_id,
            title=f"Approval delegated: {approval.title}",
            message=f"An approval request has been delegated to you: {approval.title}",
            notification_type=NotificationType.APPROVAL_DELEGATION.value,
            details={"approval_id": approval.id, "delegated_from": from_user_id, "reason": reason},
        )
        await self.db.commit()
        logger.info("Approval delegated", approval_id=approval.id, from_user=from_user_id, to_user=to_user_id)
        return approval

    # ─── Queries ─────────────────────────────────────────

    async def list_approvals(
        self,
        user_id: str,
        organization_id: str,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        include_requested: bool = True,
        include_assigned: bool = True,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[ApprovalView], int]:
        """Approvals the user requested and/or may decide, newest first."""
        query = self._scoped(select(ApprovalRequest), organization_id)
        if status:
            query = query.where(ApprovalRequest.decision == status.upper())
        if priority:
            query = query.where(ApprovalRequest.priority == priority.upper())
        query = query.order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id)
        approvals = (await self.db.execute(query)).scalars().all()

        views = []
        for approval in approvals:
            is_approver = user_id in (approval.approver_ids or [])
            is_requester = approval.requested_by == user_id
            if (include_assigned and is_approver) or (include_requested and is_requester):
                views.append(ApprovalView(
                    approval=approval,
                    can_approve=is_approver and approval.decision == ApprovalDecision.PENDING.value,
                    is_requester=is_requester,
                ))
        return views[offset:offset + limit], len(views)

    async def approval_metrics(
        self,
        organization_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict:
        """Counts, rates (percent of all requests) and response time over a window.

        The window defaults to the last 30 days and filters on request time.
        """
        end = as_utc(end) or utc_now()
        start = as_utc(start) or end - METRICS_DEFAULT_WINDOW

        approvals = (await self.db.execute(
            self._scoped(select(ApprovalRequest), organization_id)
        )).scalars().all()
        in_window = [a for a in approvals if start <= as_utc(a.created_at) <= end]

        def count(decision: ApprovalDecision) -> int:
            return sum(1 for a in in_window if a.decision == decision.value)

        total = len(in_window)
        approved = count(ApprovalDecision.APPROVED)
        rejected = count(ApprovalDecision.REJECTED)

        response_hours = [
            (as_utc(a.responded_at) - as_utc(a.created_at)).total_seconds() / 3600
            for a in in_window
            if a.responded_at is not None
            and a.decision in (ApprovalDecision.APPROVED.value, ApprovalDecision.REJECTED.value)
        ]

        by_priority = {p.value: 0 for p in Priority}
        for approval in in_window:
            by_priority[approval.priority] = by_priority.get(approval.priority, 0) + 1

        return {
            "start": start,
            "end": end,
            "total": total,
            "pending": count(ApprovalDecision.PENDING),
            "approved": approved,
            "rejected": rejected,
            "approval_rate": round(approved / total * 100, 1) if total else 0.0,
            "rejection_rate": round(rejected / total * 100, 1) if total else 0.0,
            "average_response_hours": round(sum(response_hours) / len(response_hours), 1) if response_hours else 0.0,
            "by_priority": by_priority,
        }
