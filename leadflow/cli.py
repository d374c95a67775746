"""Command line interface for managing and running lead automation."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

from leadflow import build_engine
from leadflow.assignment import PreviewFilter, preview_bulk_enrollment
from leadflow.errors import LeadflowError
from leadflow.models import (
    Condition,
    EnrollmentStatus,
    EventKind,
    StageTransitionTrigger,
    TriggerConfig,
    TriggerType,
    utcnow,
)

app = typer.Typer(help="CLI for lead lifecycle automation")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
enrollment_app = typer.Typer(help="Commands for managing workflow enrollments")
trigger_app = typer.Typer(help="Commands for managing stage transition triggers")
event_app = typer.Typer(help="Commands for reporting lead events")
worker_app = typer.Typer(help="Commands for running the automation worker")

app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(trigger_app, name="trigger")
app.add_typer(event_app, name="event")
app.add_typer(worker_app, name="worker")


@app.callback()
def main() -> None:
    """leadflow CLI entry point."""
    pass


def _run(coro):
    """Run ``coro`` and turn domain errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except LeadflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(raw: Optional[str], option: str):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"{option} is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


@workflow_app.command("create")
def workflow_create(definition: Path, owner: Optional[str] = None) -> None:
    """
    Create a workflow from a JSON definition file.

    The definition is validated before anything is stored: unknown step
    types or action kinds, dangling edges and cycles are rejected.

    Example:
        leadflow workflow create ./welcome_sequence.json --owner advisor-1
    """
    if not definition.exists():
        typer.secho("Specified file does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    engine = build_engine()
    workflow = _run(engine.scheduler.create_workflow(definition.read_text(), owner_id=owner))
    typer.echo(f"Created workflow {workflow.id} ({workflow.name}, {len(workflow.steps)} steps)")


@workflow_app.command("list")
def workflow_list() -> None:
    """List workflows with version and active flag."""
    engine = build_engine()
    workflows = _run(engine.repository.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "active" if wf.is_active else "inactive"
        typer.echo(f"{wf.id}\t{wf.name}\tv{wf.version}\t{state}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's steps and enrollment counts."""
    engine = build_engine()

    async def _load():
        workflow = await engine.repository.get_workflow(workflow_id)
        if workflow is None:
            return None, None
        return workflow, await engine.scheduler.workflow_stats(workflow_id)

    workflow, stats = _run(_load())
    if workflow is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow.id}: {workflow.name} (v{workflow.version})")
    for step in workflow.steps:
        detail = getattr(step, "kind", None)
        label = f"{step.type}:{detail.value}" if detail else step.type
        typer.echo(f"- [{step.index}] {label} {step.title}".rstrip())
    typer.echo("Enrollments: " + ", ".join(f"{k}={v}" for k, v in stats.items()))


@workflow_app.command("deactivate")
def workflow_deactivate(workflow_id: str) -> None:
    """Stop new enrollments into a workflow."""
    engine = build_engine()
    workflow = _run(engine.scheduler.deactivate_workflow(workflow_id))
    typer.echo(f"Workflow {workflow.id} deactivated")


# ---------------------------------------------------------------------------
# Enrollments
# ---------------------------------------------------------------------------


@enrollment_app.command("enroll")
def enrollment_enroll(workflow_id: str, lead_ids: List[str]) -> None:
    """
    Enroll one or more leads in a workflow.

    Leads already actively enrolled are skipped.

    Example:
        leadflow enrollment enroll <workflow_id> lead-1 lead-2
    """
    engine = build_engine()
    now = utcnow()
    if len(lead_ids) == 1:
        enrollment_id = _run(engine.scheduler.enroll(workflow_id, lead_ids[0], now))
        typer.echo(f"Enrollment {enrollment_id}")
        return
    summary = _run(engine.scheduler.enroll_many(workflow_id, lead_ids, now))
    typer.echo(
        f"Total {summary['total']}: enrolled {summary['enrolled']}, "
        f"skipped {summary['skipped']}, failed {summary['failed']}"
    )


@enrollment_app.command("list")
def enrollment_list(
    workflow: Optional[str] = None,
    lead: Optional[str] = None,
    status: Optional[EnrollmentStatus] = None,
) -> None:
    """List enrollments, optionally filtered by workflow, lead or status."""
    engine = build_engine()
    enrollments = _run(
        engine.repository.list_enrollments(workflow_id=workflow, entity_id=lead, status=status)
    )
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(f"{e.id}\t{e.workflow_id}\t{e.entity_id}\t{e.status.value}\tstep {e.current_step_index}")


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """Show an enrollment and its step execution history."""
    engine = build_engine()

    async def _load():
        enrollment = await engine.repository.get_enrollment(enrollment_id)
        steps = await engine.repository.list_steps(enrollment_id) if enrollment else []
        return enrollment, steps

    enrollment, steps = _run(_load())
    if enrollment is None:
        typer.echo("Enrollment not found")
        raise typer.Exit(code=1)
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status.value}")
    if enrollment.next_wake_at:
        typer.echo(f"Next wake: {enrollment.next_wake_at.isoformat()}")
    if enrollment.last_error:
        typer.echo(f"Last error: {enrollment.last_error}")
    if enrollment.exit_reason:
        typer.echo(f"Exit reason: {enrollment.exit_reason}")
    for step in steps:
        typer.echo(f"- [{step.step_index}] {step.step_type}: {step.status.value} (attempts {step.attempts})")


@enrollment_app.command("cancel")
def enrollment_cancel(enrollment_id: str, reason: str = "cancelled") -> None:
    """Exit an enrollment; later advances are ignored."""
    engine = build_engine()
    enrollment = _run(engine.scheduler.cancel(enrollment_id, reason, utcnow()))
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status.value}")


# ---------------------------------------------------------------------------
# Stage triggers and events
# ---------------------------------------------------------------------------


@trigger_app.command("add")
def trigger_add(
    stage_id: str,
    trigger_type: TriggerType,
    target: Optional[str] = None,
    notify_student: bool = False,
    notify_admin: bool = False,
    config: Optional[str] = typer.Option(None, help="Trigger configuration as JSON"),
) -> None:
    """
    Attach a transition trigger to a pipeline stage.

    Example:
        leadflow trigger add review all_documents_approved --notify-student
        leadflow trigger add intake payment_received --config '{"payment_amount": 250}'
    """
    trigger = StageTransitionTrigger(
        stage_id=stage_id,
        trigger_type=trigger_type,
        target_stage_id=target,
        notify_student=notify_student,
        notify_admin=notify_admin,
        config=TriggerConfig(**(_parse_json(config, "--config") or {})),
    )
    engine = build_engine()
    _run(engine.evaluator.add_trigger(trigger))
    typer.echo(f"Added trigger {trigger.id}")


@trigger_app.command("list")
def trigger_list(stage_id: str) -> None:
    """List a stage's triggers in evaluation order."""
    engine = build_engine()
    triggers = _run(engine.repository.list_triggers(stage_id))
    if not triggers:
        typer.echo("No triggers found")
        return
    for t in triggers:
        state = "active" if t.is_active else "inactive"
        typer.echo(f"{t.id}\t{t.trigger_type.value}\t{t.target_stage_id or '(next stage)'}\t{state}")


@event_app.command("send")
def event_send(
    lead_id: str,
    kind: EventKind,
    payload: Optional[str] = typer.Option(None, help="Event payload as JSON"),
) -> None:
    """
    Report a fact about a lead and apply any stage transition it satisfies.

    Example:
        leadflow event send lead-1 document_approved --payload '{"document_id": "doc-2"}'
    """
    engine = build_engine()
    log = _run(
        engine.evaluator.on_event(lead_id, kind, _parse_json(payload, "--payload"), utcnow())
    )
    if log is None:
        typer.echo("No transition")
    else:
        typer.echo(f"Lead {lead_id} moved from {log.from_stage_id} to {log.to_stage_id}")


@app.command("preview")
def preview(
    conditions: str = typer.Option("[]", help="JSON list of {field, operator, value}"),
    created_after: Optional[datetime] = None,
    created_before: Optional[datetime] = None,
    include_assigned: bool = False,
) -> None:
    """Count leads a bulk enrollment rule would match, without changing anything."""
    parsed = [Condition(**c) for c in _parse_json(conditions, "--conditions") or []]
    engine = build_engine()
    result = _run(
        preview_bulk_enrollment(
            engine.repository,
            parsed,
            PreviewFilter(
                created_after=created_after,
                created_before=created_before,
                include_assigned=include_assigned,
            ),
        )
    )
    typer.echo(
        f"Matching: {result.total_matching}, already assigned: {result.already_assigned}, "
        f"eligible: {result.eligible}"
    )


@worker_app.command("run")
def worker_run(
    interval: Optional[float] = None,
    lifespan: Optional[float] = None,
) -> None:
    """
    Run the polling worker.

    Each pass wakes enrollments whose delay has expired and checks
    time-elapsed stage triggers.

    Example:
        leadflow worker run --interval 10 --lifespan 300
    """
    engine = build_engine()
    typer.echo("Starting automation worker")
    _run(engine.run_worker(interval=interval, lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
