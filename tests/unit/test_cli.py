import asyncio
import json

import pytest
from typer.testing import CliRunner

import leadflow.persistence as persistence
from factories import make_lead, pipeline_stages, review_lead
from leadflow.cli import app
from leadflow.models import EnrollmentStatus, TriggerType
from leadflow.persistence import InMemoryAutomationRepository

WELCOME = {
    "name": "Welcome sequence",
    "elements": [
        {"type": "action", "config": {"kind": "send_email", "subject": "Welcome"}},
        {"type": "delay", "config": {"amount": 2, "unit": "days"}},
        {"type": "action", "config": {"kind": "send_sms", "content": "Hi"}},
    ],
}

runner = CliRunner()


@pytest.fixture
def repo(tmp_path, monkeypatch):
    for name in ("LEADFLOW_CONFIG", "RESEND_API_KEY", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    repo = InMemoryAutomationRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    return repo


def _create_workflow(tmp_path, document=WELCOME):
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(document))
    return runner.invoke(app, ["workflow", "create", str(path), "--owner", "advisor-1"])


def test_workflow_create_list_and_show(repo, tmp_path):
    result = _create_workflow(tmp_path)
    assert result.exit_code == 0, result.output
    assert "(Welcome sequence, 3 steps)" in result.output
    workflow = asyncio.run(repo.list_workflows())[0]
    assert workflow.owner_id == "advisor-1"

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert f"{workflow.id}\tWelcome sequence\tv1\tactive" in result.output

    result = runner.invoke(app, ["workflow", "show", workflow.id])
    assert result.exit_code == 0, result.output
    assert "- [0] action:send_email" in result.output
    assert "- [1] delay" in result.output
    assert "total=0" in result.output

    result = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Workflow not found" in result.output


def test_workflow_create_rejects_bad_input(repo, tmp_path):
    result = runner.invoke(app, ["workflow", "create", str(tmp_path / "nope.json")])
    assert result.exit_code == 1
    assert "Specified file does not exist" in result.output

    cyclic = {
        "name": "Loop",
        "elements": [
            {"id": "a", "type": "delay", "config": {"amount": 1}, "next": "b"},
            {"id": "b", "type": "delay", "config": {"amount": 1}, "next": "a"},
        ],
    }
    result = _create_workflow(tmp_path, cyclic)
    assert result.exit_code == 1
    assert "cycle" in result.output
    assert asyncio.run(repo.list_workflows()) == []


def test_empty_lists(repo):
    assert "No workflows found" in runner.invoke(app, ["workflow", "list"]).output
    assert "No enrollments found" in runner.invoke(app, ["enrollment", "list"]).output
    assert "No triggers found" in runner.invoke(app, ["trigger", "list", "review"]).output


def test_enrollment_commands(repo, tmp_path):
    asyncio.run(repo.save_lead(make_lead()))
    asyncio.run(repo.save_lead(make_lead(id="lead-2")))
    _create_workflow(tmp_path)
    workflow = asyncio.run(repo.list_workflows())[0]

    result = runner.invoke(app, ["enrollment", "enroll", workflow.id, "lead-1"])
    assert result.exit_code == 0, result.output
    enrollment = asyncio.run(repo.list_enrollments())[0]
    assert f"Enrollment {enrollment.id}" in result.output

    result = runner.invoke(app, ["enrollment", "enroll", workflow.id, "lead-1", "lead-2", "ghost"])
    assert "Total 3: enrolled 1, skipped 1, failed 1" in result.output

    result = runner.invoke(app, ["enrollment", "list", "--lead", "lead-1", "--status", "active"])
    assert f"{enrollment.id}\t{workflow.id}\tlead-1\tactive\tstep 1" in result.output

    result = runner.invoke(app, ["enrollment", "show", enrollment.id])
    assert "Next wake:" in result.output
    assert "- [0] action: completed (attempts 1)" in result.output
    assert "- [1] delay: waiting" in result.output

    result = runner.invoke(app, ["enrollment", "cancel", enrollment.id, "--reason", "opted out"])
    assert f"Enrollment {enrollment.id}: exited" in result.output
    stored = asyncio.run(repo.get_enrollment(enrollment.id))
    assert stored.status == EnrollmentStatus.EXITED
    assert stored.exit_reason == "opted out"

    result = runner.invoke(app, ["enrollment", "show", "missing"])
    assert result.exit_code == 1
    assert "Enrollment not found" in result.output

    result = runner.invoke(app, ["workflow", "deactivate", workflow.id])
    assert "deactivated" in result.output
    result = runner.invoke(app, ["enrollment", "enroll", workflow.id, "lead-1"])
    assert result.exit_code == 1
    assert "not active" in result.output


def test_trigger_and_event_commands(repo):
    for stage in pipeline_stages():
        asyncio.run(repo.save_stage(stage))
    asyncio.run(repo.save_lead(review_lead()))

    result = runner.invoke(app, ["trigger", "add", "review", "all_documents_approved", "--notify-student"])
    assert result.exit_code == 0, result.output
    assert "Added trigger" in result.output

    result = runner.invoke(app, ["trigger", "add", "review", "payment_received"])
    assert result.exit_code == 1
    assert "missing required configuration" in result.output

    result = runner.invoke(app, ["trigger", "list", "review"])
    assert "all_documents_approved\t(next stage)\tactive" in result.output

    result = runner.invoke(
        app, ["event", "send", "lead-1", "document_approved", "--payload", '{"document_id": "doc-2"}']
    )
    assert result.exit_code == 0, result.output
    assert "Lead lead-1 moved from review to decision" in result.output
    triggers = asyncio.run(repo.list_triggers("review"))
    assert [t.trigger_type for t in triggers] == [TriggerType.ALL_DOCUMENTS_APPROVED]

    result = runner.invoke(app, ["event", "send", "lead-1", "form_submitted", "--payload", "{oops"])
    assert result.exit_code == 1
    assert "--payload is not valid JSON" in result.output


def test_preview_command(repo):
    asyncio.run(repo.save_lead(make_lead(id="l1", lead_score=80)))
    asyncio.run(repo.save_lead(make_lead(id="l2", lead_score=90, assigned_to="advisor-1")))
    asyncio.run(repo.save_lead(make_lead(id="l3", lead_score=10)))

    conditions = json.dumps([{"field": "lead_score", "operator": "greater_than", "value": 50}])
    result = runner.invoke(app, ["preview", "--conditions", conditions])

    assert result.exit_code == 0, result.output
    assert "Matching: 2, already assigned: 1, eligible: 1" in result.output


def test_worker_runs_single_pass(repo):
    result = runner.invoke(app, ["worker", "run", "--interval", "0", "--lifespan", "0"])
    assert result.exit_code == 0, result.output
    assert "Starting automation worker" in result.output
