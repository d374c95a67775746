import datetime as dt
import json

import pytest

from leadflow.definitions import parse_workflow_definition
from leadflow.errors import InvalidWorkflowDefinition
from leadflow.models import ActionKind, ActionStep, ConditionStep, DelayStep, TriggerStep


def _doc(*elements, name="Nurture"):
    return {"name": name, "elements": list(elements)}


def test_linear_elements_default_to_sequential_edges():
    wf = parse_workflow_definition(
        _doc(
            {"id": "email", "type": "action", "config": {"kind": "send_email", "subject": "Hi"}},
            {"id": "wait", "type": "delay", "config": {"amount": 2, "unit": "days"}},
            {"id": "sms", "type": "action", "config": {"kind": "send_sms"}},
        ),
        owner_id="advisor-1",
    )

    assert [s.next_index for s in wf.steps] == [1, 2, None]
    assert isinstance(wf.steps[0], ActionStep)
    assert wf.steps[0].kind is ActionKind.SEND_EMAIL
    assert wf.steps[0].config == {"subject": "Hi"}
    assert isinstance(wf.steps[1], DelayStep)
    assert wf.steps[1].duration == dt.timedelta(days=2)
    assert wf.owner_id == "advisor-1"
    assert wf.version == 1


def test_condition_edges_resolve_to_positions():
    wf = parse_workflow_definition(
        _doc(
            {
                "id": "check",
                "type": "condition",
                "config": {"field": "lead_score", "operator": "greater_than", "value": 50},
                "trueNext": "vip",
                "falseNext": "std",
            },
            {"id": "std", "type": "action", "config": {"kind": "create_task"}, "next": None},
            {"id": "vip", "type": "action", "config": {"kind": "create_task"}},
        )
    )

    check = wf.steps[0]
    assert isinstance(check, ConditionStep)
    assert check.next_index == 2
    assert check.false_index == 1
    assert wf.steps[1].next_index is None


def test_builder_wait_time_shape_is_accepted():
    wf = parse_workflow_definition(
        _doc({"type": "delay", "config": {"waitTime": {"value": 3, "unit": "hours"}}})
    )

    assert wf.steps[0].id == "step-0"
    assert wf.steps[0].duration == dt.timedelta(hours=3)


def test_json_string_and_trigger_first():
    document = json.dumps(
        _doc(
            {
                "id": "start",
                "type": "trigger",
                "config": {
                    "trigger_type": "stage_entered",
                    "stage_id": "review",
                    "conditions": [{"field": "status", "operator": "equals", "value": "new"}],
                },
            },
            {"id": "task", "type": "action", "config": {"actionType": "create_task"}},
        )
    )
    wf = parse_workflow_definition(document)

    trigger = wf.entry_trigger
    assert isinstance(trigger, TriggerStep)
    assert trigger.trigger_type.value == "stage_entered"
    assert trigger.config == {"stage_id": "review"}
    assert len(trigger.conditions) == 1


@pytest.mark.parametrize(
    "document, message",
    [
        ({"elements": [{"type": "delay", "config": {"amount": 1}}]}, "name"),
        ({"name": "Empty", "elements": []}, "at least one"),
        (_doc({"type": "branch"}), "unknown type"),
        (_doc({"type": "action", "config": {"kind": "launch_rocket"}}), "unknown action kind"),
        (_doc({"type": "action", "config": {"kind": "send_email"}, "next": "nowhere"}), "unknown next target"),
        (_doc({"type": "delay", "config": {}}), "missing an amount"),
        (_doc({"id": "a", "type": "delay", "config": {"amount": 1}}, {"id": "a", "type": "delay", "config": {"amount": 1}}), "unique"),
        (["not", "a", "workflow"], "JSON object"),
        ({"name": "Bad", "elements": "action"}, "must be a list"),
        ({"name": "Bad", "elements": ["action"]}, "Element 0 must be an object"),
        (_doc({"type": "action", "config": "send_email"}), "config must be an object"),
        (_doc({"type": "trigger", "config": {"conditions": ["lead_score > 5"]}}), "list of objects"),
        (_doc({"type": "condition", "config": {"condition": "lead_score > 5"}}), "malformed condition"),
        (_doc({"type": "delay", "config": {"waitTime": "3 days"}}), "malformed waitTime"),
        (_doc({"type": "delay", "config": {"amount": "soon"}}), "amount"),
    ],
)
def test_invalid_documents_are_rejected(document, message):
    with pytest.raises(InvalidWorkflowDefinition) as exc:
        parse_workflow_definition(document)
    assert message in str(exc.value)


def test_trigger_must_be_first_element():
    with pytest.raises(InvalidWorkflowDefinition):
        parse_workflow_definition(
            _doc(
                {"type": "delay", "config": {"amount": 1}},
                {"type": "trigger", "config": {}},
            )
        )


def test_cycles_are_rejected_at_creation():
    with pytest.raises(InvalidWorkflowDefinition) as exc:
        parse_workflow_definition(
            _doc(
                {"id": "a", "type": "action", "config": {"kind": "send_email"}, "next": "b"},
                {
                    "id": "b",
                    "type": "condition",
                    "config": {"field": "status", "operator": "equals", "value": "new"},
                    "trueNext": "a",
                },
            )
        )
    assert "cycle" in str(exc.value)
    assert "a -> b -> a" in str(exc.value)


def test_malformed_condition_is_wrapped():
    with pytest.raises(InvalidWorkflowDefinition):
        parse_workflow_definition(
            _doc({"type": "condition", "config": {"field": "status", "operator": "matches"}})
        )


def test_not_json():
    with pytest.raises(InvalidWorkflowDefinition):
        parse_workflow_definition("{not json")
