"""
ApprovalCoordinator — human-in-the-loop checkpoints for stages.

A stage that declares approvals calls `request()` once per approval and
then `wait()`s.  Waiting suspends the stage coroutine on an asyncio
Future; no thread is held.  The Future is resolved by `decide()` calls
that arrive from elsewhere (typically an API request handled on the
same event loop), by escalation with auto-approve, or by the timeout.

Resolution rule:
    - approved  once distinct approvals reach the required count
                (`minimum_approvers`, or every listed approver when
                `require_all_approvers`)
    - rejected  on the first rejection when `blocked_by_rejection`,
                otherwise once the required count is no longer reachable
    - timeout   when `timeout_seconds` elapse without quorum
    - cancelled when the owning execution is cancelled or times out
Decisions that arrive after resolution are ignored.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from deployflow.core.constants import (
    ApprovalDecision,
    ApprovalStatus,
    LifecycleEventType,
)
from deployflow.core.logging import get_logger
from deployflow.pipeline.definitions import StageApproval
from deployflow.pipeline.errors import ApprovalError, ApprovalNotFoundError
from deployflow.pipeline.events import EventChannel, LifecycleEvent
from deployflow.pipeline.records import (
    ApprovalDecisionRecord,
    ApprovalExecution,
    PipelineExecution,
    StageExecution,
)
from deployflow.pipeline.signals import ExecutionSignal

AUTO_APPROVER = "escalation:auto-approve"


@dataclass
class _PendingApproval:
    record: ApprovalExecution
    definition: StageApproval
    pipeline_id: str
    requested_at: float                      # event-loop clock
    future: asyncio.Future
    eligible: set[str] = field(default_factory=set)


class ApprovalCoordinator:

    def __init__(self, notifier=None, events: EventChannel | None = None) -> None:
        self.notifier = notifier
        self.events = events or EventChannel()
        self._pending: dict[str, _PendingApproval] = {}
        self._resolved: dict[str, ApprovalExecution] = {}
        self.logger = get_logger("pipeline.approvals")

    # ─── Queries ───────────────────────────────────────

    def get(self, approval_execution_id: str) -> ApprovalExecution:
        pending = self._pending.get(approval_execution_id)
        if pending is not None:
            return pending.record
        record = self._resolved.get(approval_execution_id)
        if record is None:
            raise ApprovalNotFoundError(f"Approval {approval_execution_id} not found")
        return record

    def pending(self, execution_id: str | None = None) -> list[ApprovalExecution]:
        return [
            p.record for p in self._pending.values()
            if execution_id is None or p.record.execution_id == execution_id
        ]

    # ─── Request ───────────────────────────────────────

    async def request(
        self,
        execution: PipelineExecution,
        stage_execution: StageExecution,
        approval: StageApproval,
    ) -> ApprovalExecution:
        """Register a pending approval and notify eligible approvers."""
        req = approval.requirements
        required = len(approval.approvers) if req.require_all_approvers else req.minimum_approvers
        record = ApprovalExecution(
            approval_id=approval.id,
            execution_id=execution.id,
            stage_id=stage_execution.stage_id,
            eligible_approvers=list(approval.approver_ids),
            required_approvals=required,
            requested_by=execution.trigger.user,
        )
        loop = asyncio.get_running_loop()
        pending = _PendingApproval(
            record=record,
            definition=approval,
            pipeline_id=execution.pipeline_id,
            requested_at=loop.time(),
            future=loop.create_future(),
            eligible=set(approval.approver_ids),
        )
        self._pending[record.id] = pending
        stage_execution.approvals.append(record)

        self.logger.info(
            "Approval requested",
            execution_id=execution.id,
            stage=stage_execution.name,
            approval_execution_id=record.id,
            approvers=record.eligible_approvers,
            required=required,
        )

        recipients_by_channel: dict[str, list[str]] = defaultdict(list)
        for user in approval.approvers:
            for channel in user.notification_channels:
                recipients_by_channel[channel].append(user.user_id)
        for channel, recipients in recipients_by_channel.items():
            await self._notify(channel, LifecycleEventType.APPROVAL_REQUESTED, recipients, record)

        await self.events.publish(LifecycleEvent(
            type=LifecycleEventType.APPROVAL_REQUESTED,
            pipeline_id=execution.pipeline_id,
            execution_id=execution.id,
            stage_id=stage_execution.stage_id,
            approval_id=record.id,
            status=str(record.status),
            payload={"approvers": record.eligible_approvers, "required": required},
        ))

        # A request can be unsatisfiable from the start (e.g. the only
        # approver triggered the run and self approval is not allowed).
        outcome = self._evaluate(pending)
        if outcome is not None:
            self._resolve(pending, outcome)
        return record

    # ─── Decide ────────────────────────────────────────

    async def decide(
        self,
        approval_execution_id: str,
        decision: ApprovalDecision | str,
        approver: str,
        comments: str | None = None,
    ) -> ApprovalExecution:
        """Record one approver's decision and resolve if quorum is settled."""
        decision = ApprovalDecision(decision)
        pending = self._pending.get(approval_execution_id)
        if pending is None:
            record = self._resolved.get(approval_execution_id)
            if record is None:
                raise ApprovalNotFoundError(f"Approval {approval_execution_id} not found")
            self.logger.warning(
                "Decision ignored, approval already resolved",
                approval_execution_id=approval_execution_id,
                approver=approver,
                status=str(record.status),
            )
            return record

        record = pending.record
        req = pending.definition.requirements

        if approver not in pending.eligible:
            raise ApprovalError(
                f"'{approver}' is not an eligible approver",
                execution_id=record.execution_id,
            )
        if not req.allow_self_approval and approver == record.requested_by:
            raise ApprovalError(
                f"'{approver}' triggered this execution and cannot approve it",
                execution_id=record.execution_id,
            )
        if req.require_comments and not comments:
            raise ApprovalError("This approval requires comments", execution_id=record.execution_id)
        if any(d.approver == approver for d in record.decisions):
            raise ApprovalError(
                f"'{approver}' has already decided on this approval",
                execution_id=record.execution_id,
            )

        record.decisions.append(
            ApprovalDecisionRecord(approver=approver, decision=decision, comments=comments)
        )
        record.approver = approver
        record.comments = comments

        outcome = self._evaluate(pending)
        if outcome is not None:
            self._resolve(pending, outcome)

        self.logger.info(
            "Approval decision recorded",
            approval_execution_id=record.id,
            approver=approver,
            decision=str(decision),
            status=str(record.status),
        )
        await self.events.publish(LifecycleEvent(
            type=LifecycleEventType.APPROVAL_PROCESSED,
            pipeline_id=pending.pipeline_id,
            execution_id=record.execution_id,
            stage_id=record.stage_id,
            approval_id=record.id,
            status=str(record.status),
            payload={"decision": str(decision), "approver": approver, "comments": comments},
        ))
        return record

    # ─── Wait ──────────────────────────────────────────

    async def wait(
        self,
        approval_execution_id: str,
        signal: ExecutionSignal | None = None,
    ) -> ApprovalStatus:
        """
        Suspend until the approval resolves.

        Escalation fires at `escalation.after_seconds` (never later than
        the timeout); the timeout is measured from the request.
        """
        pending = self._pending.get(approval_execution_id)
        if pending is None:
            return self.get(approval_execution_id).status

        definition = pending.definition
        record = pending.record
        timeout_at = pending.requested_at + definition.timeout_seconds

        escalation = definition.escalation
        if escalation is not None and not record.escalated:
            escalate_at = pending.requested_at + min(
                escalation.after_seconds, definition.timeout_seconds
            )
            if not await self._wait_until(pending, escalate_at, signal):
                if signal is not None and signal.is_set:
                    self.withdraw(record.id, signal.reason)
                    return record.status
                await self._escalate(pending)

        if not pending.future.done():
            if not await self._wait_until(pending, timeout_at, signal):
                if signal is not None and signal.is_set:
                    self.withdraw(record.id, signal.reason)
                else:
                    self.logger.warning(
                        "Approval timed out",
                        approval_execution_id=record.id,
                        approvals=len(record.approved_by()),
                        required=record.required_approvals,
                    )
                    self._resolve(pending, ApprovalStatus.TIMEOUT)
                    await self._publish_processed(pending)

        return record.status

    def forget(self, execution_id: str) -> None:
        """Drop resolved approvals of a finished execution; its stage records keep them."""
        for approval_id in [k for k, r in self._resolved.items() if r.execution_id == execution_id]:
            del self._resolved[approval_id]

    def withdraw(self, approval_execution_id: str, reason: str | None = None) -> None:
        """Cancel a pending approval (owning stage gave up on it)."""
        pending = self._pending.get(approval_execution_id)
        if pending is None:
            return
        pending.record.comments = pending.record.comments or reason
        self._resolve(pending, ApprovalStatus.CANCELLED)
        self.logger.info("Approval withdrawn", approval_execution_id=approval_execution_id, reason=reason)

    # ─── Internal ──────────────────────────────────────

    async def _wait_until(
        self,
        pending: _PendingApproval,
        deadline: float,
        signal: ExecutionSignal | None,
    ) -> bool:
        """Wait for resolution until `deadline`; True if resolved."""
        if pending.future.done():
            return True
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            return False

        waiters: set[asyncio.Future] = {pending.future}
        signal_task = None
        if signal is not None:
            signal_task = asyncio.ensure_future(signal.wait())
            waiters.add(signal_task)
        try:
            await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if signal_task is not None:
                signal_task.cancel()
        return pending.future.done()

    async def _escalate(self, pending: _PendingApproval) -> None:
        escalation = pending.definition.escalation
        record = pending.record
        record.escalated = True
        for user_id in escalation.escalate_to:
            if user_id not in pending.eligible:
                pending.eligible.add(user_id)
                record.eligible_approvers.append(user_id)

        self.logger.warning(
            "Approval escalated",
            approval_execution_id=record.id,
            escalate_to=list(escalation.escalate_to),
            auto_approve=escalation.auto_approve,
        )
        if escalation.escalate_to:
            await self._notify(
                "email", LifecycleEventType.APPROVAL_ESCALATED,
                list(escalation.escalate_to), record,
            )
        await self.events.publish(LifecycleEvent(
            type=LifecycleEventType.APPROVAL_ESCALATED,
            pipeline_id=pending.pipeline_id,
            execution_id=record.execution_id,
            stage_id=record.stage_id,
            approval_id=record.id,
            status=str(record.status),
            payload={"escalate_to": list(escalation.escalate_to),
                     "auto_approve": escalation.auto_approve},
        ))

        if escalation.auto_approve:
            record.approver = AUTO_APPROVER
            self._resolve(pending, ApprovalStatus.APPROVED)
            await self._publish_processed(pending)
            return

        outcome = self._evaluate(pending)
        if outcome is not None:
            self._resolve(pending, outcome)
            await self._publish_processed(pending)

    def _evaluate(self, pending: _PendingApproval) -> ApprovalStatus | None:
        record = pending.record
        req = pending.definition.requirements
        approved = record.approved_by()
        rejected = record.rejected_by()

        if rejected and req.blocked_by_rejection:
            return ApprovalStatus.REJECTED
        if len(approved) >= record.required_approvals:
            return ApprovalStatus.APPROVED

        undecided = pending.eligible - approved - rejected
        if not req.allow_self_approval:
            undecided.discard(record.requested_by)
        if len(approved) + len(undecided) < record.required_approvals:
            escalation = pending.definition.escalation
            if escalation is not None and not record.escalated:
                # escalation may still widen the approver set
                return None
            return ApprovalStatus.REJECTED
        return None

    def _resolve(self, pending: _PendingApproval, status: ApprovalStatus) -> None:
        record = pending.record
        if record.is_resolved:
            return
        record.status = status
        record.decided_at = datetime.now(timezone.utc)
        if not pending.future.done():
            pending.future.set_result(status)
        self._pending.pop(record.id, None)
        self._resolved[record.id] = record

    async def _publish_processed(self, pending: _PendingApproval) -> None:
        record = pending.record
        await self.events.publish(LifecycleEvent(
            type=LifecycleEventType.APPROVAL_PROCESSED,
            pipeline_id=pending.pipeline_id,
            execution_id=record.execution_id,
            stage_id=record.stage_id,
            approval_id=record.id,
            status=str(record.status),
            payload={"approver": record.approver, "escalated": record.escalated},
        ))

    async def _notify(self, channel, event, recipients, record: ApprovalExecution) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(channel, str(event), recipients, record.to_dict())
        except Exception as exc:
            self.logger.warning(
                "Approval notification failed",
                channel=channel,
                approval_execution_id=record.id,
                error=str(exc),
            )
