import asyncio
import datetime as dt

import pytest

from factories import NOW, RecordingSleep, make_lead
from leadflow.channels import InMemoryChannelSender
from leadflow.config import LeadflowConfig
from leadflow.engine import build_engine
from leadflow.errors import EnrollmentNotFound, LeadNotFound, WorkflowInactive, WorkflowLocked, WorkflowNotFound
from leadflow.models import Channel, EnrollmentStatus
from leadflow.persistence import StepStatus

DAY = dt.timedelta(days=1)

WELCOME = {
    "name": "Welcome sequence",
    "elements": [
        {"id": "email", "type": "action", "config": {"kind": "send_email", "subject": "Welcome {{firstName}}", "content": "Hello"}},
        {"id": "wait", "type": "delay", "config": {"amount": 2, "unit": "days"}},
        {"id": "sms", "type": "action", "config": {"kind": "send_sms", "content": "Any questions, {{firstName}}?"}},
    ],
}

BRANCH = {
    "name": "Score routing",
    "elements": [
        {
            "id": "check",
            "type": "condition",
            "config": {"field": "lead_score", "operator": "greater_than", "value": 50},
            "trueNext": "vip",
            "falseNext": "standard",
        },
        {"id": "standard", "type": "action", "config": {"kind": "create_task", "title": "Standard follow-up"}, "next": None},
        {"id": "vip", "type": "action", "config": {"kind": "create_task", "title": "VIP call"}},
    ],
}


async def _workflow(engine, repository, document, *leads):
    for lead in leads or (make_lead(),):
        await repository.save_lead(lead)
    return await engine.scheduler.create_workflow(document, owner_id="owner-1")


@pytest.mark.asyncio
async def test_email_delay_sms_sequence(engine, repository, senders):
    wf = await _workflow(engine, repository, WELCOME)

    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    enrollment = await repository.get_enrollment(enrollment_id)
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.current_step_index == 1
    assert enrollment.next_wake_at == NOW + 2 * DAY
    assert senders[Channel.EMAIL].outbox[0].subject == "Welcome Ada"
    assert senders[Channel.SMS].outbox == []

    assert await engine.scheduler.tick(NOW + DAY) == 0
    assert await engine.scheduler.tick(NOW + 2 * DAY) == 1

    enrollment = await repository.get_enrollment(enrollment_id)
    assert enrollment.status == EnrollmentStatus.COMPLETED
    assert enrollment.completed_at == NOW + 2 * DAY
    assert senders[Channel.SMS].outbox[0].body == "Any questions, Ada?"
    steps = await repository.list_steps(enrollment_id)
    assert [(s.step_index, s.status) for s in steps] == [
        (0, StepStatus.COMPLETED),
        (1, StepStatus.COMPLETED),
        (2, StepStatus.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_delay_does_not_fire_early(engine, repository, senders):
    wf = await _workflow(engine, repository, WELCOME)
    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    almost = NOW + 2 * DAY - dt.timedelta(seconds=1)
    enrollment = await engine.scheduler.advance(enrollment_id, almost)

    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.next_wake_at == NOW + 2 * DAY
    assert senders[Channel.SMS].outbox == []


@pytest.mark.asyncio
async def test_repeated_advance_runs_each_step_once(engine, repository, senders):
    wf = await _workflow(engine, repository, WELCOME)
    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    # a stale copy of the enrollment still pointing at the first step
    stale = await repository.get_enrollment(enrollment_id)
    stale.current_step_index = 0
    await repository.save_enrollment(stale)

    later = NOW + 3 * DAY
    await asyncio.gather(
        engine.scheduler.advance(enrollment_id, later),
        engine.scheduler.advance(enrollment_id, later),
    )
    await engine.scheduler.advance(enrollment_id, later)
    assert await engine.scheduler.tick(later) == 0

    assert len(senders[Channel.EMAIL].outbox) == 1
    assert len(senders[Channel.SMS].outbox) == 1
    assert (await repository.get_enrollment(enrollment_id)).status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_enrolling_twice_returns_active_enrollment(engine, repository, senders):
    wf = await _workflow(engine, repository, WELCOME)

    first = await engine.scheduler.enroll(wf.id, "lead-1", NOW)
    second = await engine.scheduler.enroll(wf.id, "lead-1", NOW + dt.timedelta(hours=1))

    assert first == second
    assert len(senders[Channel.EMAIL].outbox) == 1

    await engine.scheduler.tick(NOW + 2 * DAY)
    third = await engine.scheduler.enroll(wf.id, "lead-1", NOW + 3 * DAY)
    assert third != first
    assert len(senders[Channel.EMAIL].outbox) == 2


@pytest.mark.asyncio
async def test_action_retries_until_exhausted(repository):
    sleeper = RecordingSleep()
    senders = {Channel.EMAIL: InMemoryChannelSender(fail_with="HTTP 503: unavailable")}
    engine = build_engine(config=LeadflowConfig(), repository=repository, senders=senders, sleep=sleeper)
    wf = await _workflow(engine, repository, WELCOME)

    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    enrollment = await repository.get_enrollment(enrollment_id)
    assert enrollment.status == EnrollmentStatus.FAILED
    assert enrollment.last_error.endswith("email: HTTP 503: unavailable")
    assert senders[Channel.EMAIL].attempts == 3
    assert len(sleeper.delays) == 2
    assert 1.5 <= sleeper.delays[0] <= 2.0
    assert 2.25 <= sleeper.delays[1] <= 2.75
    step = await repository.get_step(enrollment_id, 0)
    assert step.status == StepStatus.FAILED
    assert step.attempts == 3


@pytest.mark.asyncio
async def test_action_succeeds_after_transient_failures(repository):
    sleeper = RecordingSleep()
    senders = {Channel.EMAIL: InMemoryChannelSender(fail_with="timeout", fail_times=2)}
    engine = build_engine(config=LeadflowConfig(), repository=repository, senders=senders, sleep=sleeper)
    wf = await _workflow(engine, repository, WELCOME)

    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    enrollment = await repository.get_enrollment(enrollment_id)
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.current_step_index == 1
    assert len(senders[Channel.EMAIL].outbox) == 1
    assert (await repository.get_step(enrollment_id, 0)).attempts == 3
    assert len(sleeper.delays) == 2


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(engine, repository, sleeper):
    wf = await _workflow(engine, repository, WELCOME, make_lead(email=None))

    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    enrollment = await repository.get_enrollment(enrollment_id)
    assert enrollment.status == EnrollmentStatus.FAILED
    assert "no email address" in enrollment.last_error
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_cancel_stops_pending_steps(engine, repository, senders):
    wf = await _workflow(engine, repository, WELCOME)
    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    cancelled = await engine.scheduler.cancel(enrollment_id, "lead unsubscribed", NOW + DAY)

    assert cancelled.status == EnrollmentStatus.EXITED
    assert cancelled.exit_reason == "lead unsubscribed"
    assert await engine.scheduler.tick(NOW + 3 * DAY) == 0
    await engine.scheduler.advance(enrollment_id, NOW + 3 * DAY)
    assert senders[Channel.SMS].outbox == []

    with pytest.raises(EnrollmentNotFound):
        await engine.scheduler.cancel("missing", "x", NOW)


@pytest.mark.asyncio
@pytest.mark.parametrize("score, title", [(80, "VIP call"), (10, "Standard follow-up")])
async def test_condition_branches(engine, repository, score, title):
    wf = await _workflow(engine, repository, BRANCH, make_lead(lead_score=score))

    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    tasks = await repository.list_tasks("lead-1")
    assert [t.title for t in tasks] == [title]
    assert tasks[0].assigned_to == "owner-1"
    assert (await repository.get_enrollment(enrollment_id)).status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_unmet_condition_without_false_edge_exits(engine, repository, senders):
    document = {
        "name": "New leads only",
        "elements": [
            {"type": "condition", "config": {"field": "status", "operator": "equals", "value": "new"}},
            {"type": "action", "config": {"kind": "send_email", "subject": "Hi"}},
        ],
    }
    wf = await _workflow(engine, repository, document, make_lead(status="contacted"))

    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    enrollment = await repository.get_enrollment(enrollment_id)
    assert enrollment.status == EnrollmentStatus.EXITED
    assert enrollment.exit_reason == "condition_not_met"
    assert senders[Channel.EMAIL].outbox == []


@pytest.mark.asyncio
async def test_waiting_condition_resumes_on_entity_event(engine, repository, senders):
    document = {
        "name": "Hot lead alert",
        "elements": [
            {
                "type": "condition",
                "config": {"field": "lead_score", "operator": "greater_than", "value": 50, "wait": True},
            },
            {"type": "action", "config": {"kind": "send_email", "subject": "You're a great fit"}},
        ],
    }
    wf = await _workflow(engine, repository, document, make_lead(lead_score=10))
    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    enrollment = await repository.get_enrollment(enrollment_id)
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.next_wake_at is None
    assert senders[Channel.EMAIL].outbox == []

    lead = await repository.get_lead("lead-1")
    lead.lead_score = 75
    await repository.save_lead(lead)
    await engine.scheduler.on_entity_event("lead-1", NOW + DAY)

    assert (await repository.get_enrollment(enrollment_id)).status == EnrollmentStatus.COMPLETED
    assert len(senders[Channel.EMAIL].outbox) == 1


@pytest.mark.asyncio
async def test_unmet_entry_trigger_records_failed_enrollment(engine, repository, senders):
    document = {
        "name": "Fresh inquiries",
        "elements": [
            {
                "type": "trigger",
                "config": {
                    "trigger_type": "manual",
                    "conditions": [{"field": "status", "operator": "equals", "value": "new"}],
                },
            },
            {"type": "action", "config": {"kind": "send_email", "subject": "Hi"}},
        ],
    }
    wf = await _workflow(engine, repository, document, make_lead(status="enrolled"))

    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    enrollment = await repository.get_enrollment(enrollment_id)
    assert enrollment.status == EnrollmentStatus.FAILED
    assert enrollment.last_error == "Entry trigger conditions not met"
    assert await repository.find_active_enrollment(wf.id, "lead-1") is None
    assert senders[Channel.EMAIL].outbox == []


@pytest.mark.asyncio
async def test_workflow_edits_are_locked_while_enrollments_are_active(engine, repository):
    wf = await _workflow(engine, repository, WELCOME)
    enrollment_id = await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    with pytest.raises(WorkflowLocked):
        await engine.scheduler.update_workflow(wf.id, BRANCH)

    await engine.scheduler.cancel(enrollment_id, "edit", NOW)
    updated = await engine.scheduler.update_workflow(wf.id, BRANCH)

    assert updated.id == wf.id
    assert updated.version == 2
    assert updated.name == "Score routing"
    assert updated.owner_id == "owner-1"


@pytest.mark.asyncio
async def test_enroll_rejects_bad_targets(engine, repository):
    wf = await _workflow(engine, repository, WELCOME)

    with pytest.raises(LeadNotFound):
        await engine.scheduler.enroll(wf.id, "ghost", NOW)
    with pytest.raises(WorkflowNotFound):
        await engine.scheduler.enroll("missing", "lead-1", NOW)

    await engine.scheduler.deactivate_workflow(wf.id)
    with pytest.raises(WorkflowInactive):
        await engine.scheduler.enroll(wf.id, "lead-1", NOW)


@pytest.mark.asyncio
async def test_enroll_many_and_stats(engine, repository):
    wf = await _workflow(engine, repository, WELCOME, make_lead(), make_lead(id="lead-2", email="b@example.com"))
    await engine.scheduler.enroll(wf.id, "lead-1", NOW)

    summary = await engine.scheduler.enroll_many(wf.id, ["lead-1", "lead-2", "ghost"], NOW)

    assert summary == {"total": 3, "enrolled": 1, "skipped": 1, "failed": 1}
    assert await engine.scheduler.tick(NOW + 2 * DAY) == 2
    stats = await engine.scheduler.workflow_stats(wf.id)
    assert stats["completed"] == 2
    assert stats["active"] == 0
    assert stats["total"] == 2


@pytest.mark.asyncio
async def test_stage_and_creation_hooks_enroll_matching_workflows(engine, repository):
    await repository.save_lead(make_lead())
    on_review = await engine.scheduler.create_workflow(
        {
            "name": "Review reminders",
            "elements": [
                {"type": "trigger", "config": {"trigger_type": "stage_entered", "stage_id": "review"}},
                {"type": "action", "config": {"kind": "create_task", "title": "Check documents"}},
            ],
        }
    )
    on_create = await engine.scheduler.create_workflow(
        {
            "name": "New lead welcome",
            "elements": [
                {"type": "trigger", "config": {"trigger_type": "lead_created"}},
                {"type": "action", "config": {"kind": "create_task", "title": "Say hello"}},
            ],
        }
    )

    assert await engine.scheduler.on_stage_entered("lead-1", "decision", NOW) == []
    assert len(await engine.scheduler.on_stage_entered("lead-1", "review", NOW)) == 1
    assert len(await engine.scheduler.on_lead_created("lead-1", NOW)) == 1

    titles = sorted(t.title for t in await repository.list_tasks("lead-1"))
    assert titles == ["Check documents", "Say hello"]
    assert (await engine.scheduler.workflow_stats(on_review.id))["completed"] == 1
    assert (await engine.scheduler.workflow_stats(on_create.id))["completed"] == 1
