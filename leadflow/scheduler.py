"""Workflow scheduler: enrollment lifecycle and step execution."""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from .actions import ACTION_HANDLERS, ActionContext
from .conditions import evaluate_all, evaluate_condition
from .definitions import parse_workflow_definition
from .errors import (
    ActionFailed,
    EnrollmentNotFound,
    LeadflowError,
    LeadNotFound,
    WorkflowInactive,
    WorkflowLocked,
    WorkflowNotFound,
)
from .models import (
    ActionStep,
    ConditionStep,
    DelayStep,
    EnrollmentStatus,
    TriggerStep,
    WorkflowDefinition,
    WorkflowEnrollment,
    WorkflowTriggerType,
    as_utc,
)
from .notifications import NotificationDispatcher
from .persistence.models import StepExecution, StepStatus
from .persistence.repository import AutomationRepository
from .utils.retry import schedule_retry

if TYPE_CHECKING:
    from .transitions import StageTransitionEvaluator

logger = logging.getLogger(__name__)

# returned by step runners when the enrollment must wait
_PAUSE = object()


class WorkflowScheduler:
    """Own workflow enrollments and advance them step by step.

    ``advance`` for one enrollment is serialised by a per-enrollment lock;
    different enrollments advance concurrently. Every step is claimed in the
    repository under ``(enrollment_id, step_index)`` before its side effects
    run, so repeated or racing advances never execute a step twice.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        dispatcher: NotificationDispatcher,
        transitions: Optional["StageTransitionEvaluator"] = None,
        max_attempts: int = 3,
        backoff_base: float = 1.5,
        backoff_jitter: float = 0.5,
        concurrency: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.transitions = transitions
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_jitter = backoff_jitter
        self.concurrency = concurrency
        self._sleep = sleep
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, enrollment_id: str) -> asyncio.Lock:
        lock = self._locks.get(enrollment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[enrollment_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Workflow definitions
    async def create_workflow(
        self, document: Union[str, Dict[str, Any]], owner_id: Optional[str] = None
    ) -> WorkflowDefinition:
        workflow = parse_workflow_definition(document, owner_id=owner_id)
        await self.repository.save_workflow(workflow)
        logger.info(f"Created workflow {workflow.id} '{workflow.name}' ({len(workflow.steps)} steps)")
        return workflow

    async def update_workflow(
        self, workflow_id: str, document: Union[str, Dict[str, Any]]
    ) -> WorkflowDefinition:
        """Replace a workflow's steps, producing a new version.

        Rejected while any enrollment is still active on the workflow.
        """
        existing = await self._get_workflow(workflow_id)
        active = await self.repository.list_enrollments(
            workflow_id=workflow_id, status=EnrollmentStatus.ACTIVE
        )
        if active:
            raise WorkflowLocked(
                f"Workflow {workflow_id} has {len(active)} active enrollment(s)"
            )
        workflow = parse_workflow_definition(
            document, workflow_id=workflow_id, owner_id=existing.owner_id
        )
        workflow.version = existing.version + 1
        workflow.is_active = existing.is_active
        workflow.created_at = existing.created_at
        await self.repository.save_workflow(workflow)
        logger.info(f"Workflow {workflow_id} updated to version {workflow.version}")
        return workflow

    async def deactivate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self._get_workflow(workflow_id)
        workflow.is_active = False
        await self.repository.save_workflow(workflow)
        return workflow

    async def _get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        return workflow

    # ------------------------------------------------------------------
    # Enrollment
    async def enroll(self, workflow_id: str, entity_id: str, now: datetime) -> str:
        """Enroll ``entity_id`` and run it until the first blocking step.

        Returns the id of the new enrollment, or of the existing active one
        when the entity is already enrolled.
        """
        workflow = await self._get_workflow(workflow_id)
        if not workflow.is_active:
            raise WorkflowInactive(f"Workflow {workflow_id} is not active")

        existing = await self.repository.find_active_enrollment(workflow_id, entity_id)
        if existing is not None:
            logger.debug(f"{entity_id} already enrolled in {workflow_id} as {existing.id}")
            return existing.id

        lead = await self.repository.get_lead(entity_id)
        if lead is None:
            raise LeadNotFound(f"Lead {entity_id} not found")

        enrollment = WorkflowEnrollment(
            workflow_id=workflow_id,
            workflow_version=workflow.version,
            entity_id=entity_id,
            enrolled_at=now,
        )
        trigger = workflow.entry_trigger
        if trigger is not None and not evaluate_all(trigger.conditions, lead.snapshot()):
            enrollment.status = EnrollmentStatus.FAILED
            enrollment.last_error = "Entry trigger conditions not met"
            enrollment.completed_at = now
            await self.repository.create_enrollment(enrollment)
            logger.info(f"Enrollment of {entity_id} in {workflow_id} failed its entry trigger")
            return enrollment.id

        enrollment, created = await self.repository.create_enrollment(enrollment)
        if not created:
            return enrollment.id
        logger.info(f"Enrolled {entity_id} in workflow {workflow_id} ({enrollment.id})")
        await self.advance(enrollment.id, now)
        return enrollment.id

    async def enroll_many(
        self, workflow_id: str, entity_ids: Iterable[str], now: datetime
    ) -> Dict[str, int]:
        """Enroll several leads, reporting how many were enrolled, skipped or failed."""
        summary = {"total": 0, "enrolled": 0, "skipped": 0, "failed": 0}
        for entity_id in entity_ids:
            summary["total"] += 1
            if await self.repository.find_active_enrollment(workflow_id, entity_id):
                summary["skipped"] += 1
                continue
            try:
                enrollment_id = await self.enroll(workflow_id, entity_id, now)
            except LeadflowError as exc:
                logger.warning(f"Could not enroll {entity_id} in {workflow_id}: {exc}")
                summary["failed"] += 1
                continue
            enrollment = await self.repository.get_enrollment(enrollment_id)
            if enrollment is not None and enrollment.status == EnrollmentStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["enrolled"] += 1
        return summary

    async def cancel(self, enrollment_id: str, reason: str, now: datetime) -> WorkflowEnrollment:
        async with self._lock_for(enrollment_id):
            enrollment = await self.repository.get_enrollment(enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
            if enrollment.is_terminal:
                return enrollment
            enrollment.status = EnrollmentStatus.EXITED
            enrollment.exit_reason = reason
            enrollment.completed_at = now
            enrollment.next_wake_at = None
            await self.repository.save_enrollment(enrollment)
            logger.info(f"Cancelled enrollment {enrollment_id}: {reason}")
            return enrollment

    # ------------------------------------------------------------------
    # Advancing
    async def advance(self, enrollment_id: str, now: datetime) -> WorkflowEnrollment:
        """Run steps until the enrollment blocks or reaches a terminal state."""
        async with self._lock_for(enrollment_id):
            enrollment = await self.repository.get_enrollment(enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
            if enrollment.is_terminal:
                return enrollment

            workflow = await self.repository.get_workflow(enrollment.workflow_id)
            if workflow is None:
                self._finish(enrollment, EnrollmentStatus.FAILED, now, error="Workflow no longer exists")
                await self.repository.save_enrollment(enrollment)
                return enrollment

            while enrollment.status == EnrollmentStatus.ACTIVE:
                index = enrollment.current_step_index
                if index is None or index >= len(workflow.steps):
                    self._finish(enrollment, EnrollmentStatus.COMPLETED, now)
                    logger.info(f"Enrollment {enrollment.id} completed")
                    break

                step = workflow.steps[index]
                outcome = await self._run_step(enrollment, workflow, step, now)
                if outcome is _PAUSE or enrollment.is_terminal:
                    break
                enrollment.current_step_index = outcome
                enrollment.next_wake_at = None
                await self.repository.save_enrollment(enrollment)

            await self.repository.save_enrollment(enrollment)
            return enrollment

    def _finish(
        self,
        enrollment: WorkflowEnrollment,
        status: EnrollmentStatus,
        now: datetime,
        error: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        enrollment.status = status
        enrollment.completed_at = now
        enrollment.next_wake_at = None
        if error is not None:
            enrollment.last_error = error
        if reason is not None:
            enrollment.exit_reason = reason

    async def _run_step(self, enrollment, workflow, step, now):
        if isinstance(step, DelayStep):
            return await self._run_delay(enrollment, step, now)
        if isinstance(step, ConditionStep):
            return await self._run_condition(enrollment, step, now)
        if isinstance(step, ActionStep):
            return await self._run_action(enrollment, workflow, step, now)
        if isinstance(step, TriggerStep):
            # evaluated when the enrollment was created
            await self._claim(enrollment, step, now, StepStatus.COMPLETED)
            return step.next_index
        raise TypeError(f"Unsupported step {step!r}")

    async def _claim(
        self, enrollment: WorkflowEnrollment, step, now: datetime, status: StepStatus, **fields
    ) -> StepExecution:
        """Insert the guard record for ``step`` or return the one already there."""
        execution = StepExecution(
            enrollment_id=enrollment.id,
            step_index=step.index,
            step_type=step.type,
            status=status,
            started_at=now,
            completed_at=now if status == StepStatus.COMPLETED else None,
            **fields,
        )
        if await self.repository.claim_step(execution):
            return execution
        return await self.repository.get_step(enrollment.id, step.index)

    async def _run_delay(self, enrollment: WorkflowEnrollment, step: DelayStep, now: datetime):
        wake_at = as_utc(now) + step.duration
        execution = await self.repository.get_step(enrollment.id, step.index)
        if execution is None:
            execution = await self._claim(
                enrollment, step, now, StepStatus.WAITING, result={"wake_at": wake_at.isoformat()}
            )
        if execution.status == StepStatus.COMPLETED:
            return step.next_index

        wake_at = datetime.fromisoformat(execution.result["wake_at"])
        if as_utc(now) < wake_at:
            enrollment.next_wake_at = wake_at
            logger.debug(f"Enrollment {enrollment.id} waiting until {wake_at.isoformat()}")
            return _PAUSE

        execution.status = StepStatus.COMPLETED
        execution.completed_at = now
        await self.repository.update_step(execution)
        return step.next_index

    async def _run_condition(
        self, enrollment: WorkflowEnrollment, step: ConditionStep, now: datetime
    ):
        execution = await self.repository.get_step(enrollment.id, step.index)
        if execution is not None and execution.status == StepStatus.COMPLETED:
            matched = bool(execution.result.get("matched"))
        else:
            lead = await self.repository.get_lead(enrollment.entity_id)
            matched = evaluate_condition(step.condition, lead.snapshot() if lead else {})
            if not matched and step.wait:
                if execution is None:
                    await self._claim(enrollment, step, now, StepStatus.WAITING)
                enrollment.next_wake_at = None
                return _PAUSE
            if execution is None:
                execution = await self._claim(
                    enrollment, step, now, StepStatus.COMPLETED, result={"matched": matched}
                )
                matched = bool(execution.result.get("matched", matched))
            else:
                execution.status = StepStatus.COMPLETED
                execution.completed_at = now
                execution.result = {"matched": matched}
                await self.repository.update_step(execution)

        if matched:
            return step.next_index
        if step.false_index is not None:
            return step.false_index
        self._finish(enrollment, EnrollmentStatus.EXITED, now, reason="condition_not_met")
        logger.info(f"Enrollment {enrollment.id} exited: condition at step {step.index} not met")
        return _PAUSE

    async def _run_action(
        self,
        enrollment: WorkflowEnrollment,
        workflow: WorkflowDefinition,
        step: ActionStep,
        now: datetime,
    ):
        execution = await self.repository.get_step(enrollment.id, step.index)
        if execution is None:
            execution = await self._claim(enrollment, step, now, StepStatus.RUNNING)
        if execution.status == StepStatus.COMPLETED:
            return step.next_index

        lead = await self.repository.get_lead(enrollment.entity_id)
        if lead is None:
            self._finish(enrollment, EnrollmentStatus.FAILED, now, error=f"Lead {enrollment.entity_id} not found")
            return _PAUSE

        ctx = ActionContext(
            enrollment=enrollment,
            workflow=workflow,
            step=step,
            lead=lead,
            now=now,
            repository=self.repository,
            dispatcher=self.dispatcher,
            transitions=self.transitions,
        )
        handler = ACTION_HANDLERS[step.kind]
        last_error: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            execution.attempts = attempt
            try:
                result = await handler(ctx)
            except ActionFailed as exc:
                last_error = str(exc)
                logger.warning(
                    f"Action {step.kind.value} for {enrollment.id} failed (attempt {attempt}): {exc}"
                )
                if not exc.retryable:
                    break
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    f"Action {step.kind.value} for {enrollment.id} errored (attempt {attempt}): {last_error}"
                )
            else:
                execution.status = StepStatus.COMPLETED
                execution.completed_at = now
                execution.result = result or {}
                execution.error = None
                await self.repository.update_step(execution)
                return step.next_index

            execution.error = last_error
            await self.repository.update_step(execution)
            if attempt < self.max_attempts:
                await schedule_retry(
                    attempt, base=self.backoff_base, jitter=self.backoff_jitter, sleep=self._sleep
                )

        execution.status = StepStatus.FAILED
        await self.repository.update_step(execution)
        self._finish(enrollment, EnrollmentStatus.FAILED, now, error=last_error)
        logger.error(f"Enrollment {enrollment.id} failed at step {step.index}: {last_error}")
        return _PAUSE

    # ------------------------------------------------------------------
    # Sweeps and entity hooks
    async def tick(self, now: datetime) -> int:
        """Advance every enrollment whose wake time has passed.

        Safe to call repeatedly for the same wake. Returns the number of
        enrollments advanced without error.
        """
        due = await self.repository.list_due_enrollments(now)
        if not due:
            return 0
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _advance(enrollment_id: str) -> WorkflowEnrollment:
            async with semaphore:
                return await self.advance(enrollment_id, now)

        results = await asyncio.gather(
            *(_advance(e.id) for e in due), return_exceptions=True
        )
        advanced = 0
        for enrollment, result in zip(due, results):
            if isinstance(result, Exception):
                logger.error(f"Advancing enrollment {enrollment.id} failed: {result}")
            else:
                advanced += 1
        return advanced

    async def on_entity_event(self, entity_id: str, now: datetime) -> List[WorkflowEnrollment]:
        """Re-evaluate the entity's active enrollments after its state changed."""
        enrollments = await self.repository.list_enrollments(
            entity_id=entity_id, status=EnrollmentStatus.ACTIVE
        )
        return [await self.advance(e.id, now) for e in enrollments]

    async def _enroll_on(
        self, trigger_type: WorkflowTriggerType, entity_id: str, now: datetime, stage_id: Optional[str] = None
    ) -> List[str]:
        enrolled: List[str] = []
        for workflow in await self.repository.list_workflows():
            trigger = workflow.entry_trigger
            if not workflow.is_active or trigger is None or trigger.trigger_type != trigger_type:
                continue
            if stage_id is not None and trigger.config.get("stage_id") != stage_id:
                continue
            try:
                enrolled.append(await self.enroll(workflow.id, entity_id, now))
            except LeadflowError as exc:
                logger.error(f"Automatic enrollment of {entity_id} in {workflow.id} failed: {exc}")
        return enrolled

    async def on_stage_entered(self, entity_id: str, stage_id: str, now: datetime) -> List[str]:
        """Enroll the entity in active workflows started by entering ``stage_id``."""
        return await self._enroll_on(WorkflowTriggerType.STAGE_ENTERED, entity_id, now, stage_id)

    async def on_lead_created(self, entity_id: str, now: datetime) -> List[str]:
        return await self._enroll_on(WorkflowTriggerType.LEAD_CREATED, entity_id, now)

    async def workflow_stats(self, workflow_id: str) -> Dict[str, int]:
        await self._get_workflow(workflow_id)
        enrollments = await self.repository.list_enrollments(workflow_id=workflow_id)
        stats = {status.value: 0 for status in EnrollmentStatus}
        for enrollment in enrollments:
            stats[enrollment.status.value] += 1
        stats["total"] = len(enrollments)
        return stats
