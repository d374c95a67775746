"""Parsing and validation of workflow definition documents.

A workflow document has the shape produced by the builder UI and the
generation assistant::

    {"name": "...", "elements": [
        {"id": "a", "type": "action", "title": "...", "config": {...},
         "next": "b"},
        {"id": "b", "type": "condition", "config": {...},
         "trueNext": "c", "falseNext": "d"},
        ...
    ]}

An element without ``next`` falls through to the following element; an
explicit ``"next": null`` ends the workflow after it.

Everything is checked here, at creation time: step types, action kinds,
edge references and the absence of cycles. The scheduler never sees a
definition that has not passed through :func:`parse_workflow_definition`.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .errors import InvalidWorkflowDefinition
from .models import (
    ActionKind,
    ActionStep,
    Condition,
    ConditionStep,
    DelayStep,
    StepType,
    TriggerStep,
    WorkflowDefinition,
)


def _resolve_edge(
    element: Dict[str, Any], key: str, positions: Dict[str, int]
) -> Optional[int]:
    target = element.get(key)
    if target in (None, ""):
        return None
    if target not in positions:
        raise InvalidWorkflowDefinition(
            f"Element '{element['id']}' references unknown {key} target '{target}'"
        )
    return positions[target]


def _default_next(index: int, count: int) -> Optional[int]:
    return index + 1 if index + 1 < count else None


def _build_trigger(element: Dict[str, Any], index: int, next_index: Optional[int]):
    if index != 0:
        raise InvalidWorkflowDefinition(
            f"Trigger element '{element['id']}' must be the first element"
        )
    config = dict(element.get("config") or {})
    trigger_type = config.pop("trigger_type", None) or config.pop("triggerType", "manual")
    raw_conditions = config.pop("conditions", None) or []
    if not isinstance(raw_conditions, list) or not all(isinstance(c, dict) for c in raw_conditions):
        raise InvalidWorkflowDefinition(
            f"Trigger element '{element['id']}' conditions must be a list of objects"
        )
    conditions = [Condition(**c) for c in raw_conditions]
    return TriggerStep(
        id=element["id"],
        index=index,
        title=element.get("title", ""),
        next_index=next_index,
        trigger_type=trigger_type,
        conditions=conditions,
        config=config,
    )


def _build_condition(
    element: Dict[str, Any], index: int, next_index: Optional[int], false_index: Optional[int]
):
    config = element.get("config") or {}
    condition = config.get("condition") or config
    if not isinstance(condition, dict):
        raise InvalidWorkflowDefinition(
            f"Condition element '{element['id']}' has a malformed condition"
        )
    return ConditionStep(
        id=element["id"],
        index=index,
        title=element.get("title", ""),
        next_index=next_index,
        false_index=false_index,
        condition=Condition(
            field=condition.get("field"),
            operator=condition.get("operator"),
            value=condition.get("value"),
        ),
        wait=bool(config.get("wait", False)),
    )


def _build_action(element: Dict[str, Any], index: int, next_index: Optional[int]):
    config = dict(element.get("config") or {})
    raw_kind = config.pop("kind", None) or config.pop("actionType", None)
    try:
        kind = ActionKind(raw_kind)
    except ValueError:
        raise InvalidWorkflowDefinition(
            f"Element '{element['id']}' has unknown action kind '{raw_kind}'"
        ) from None
    return ActionStep(
        id=element["id"],
        index=index,
        title=element.get("title", ""),
        next_index=next_index,
        kind=kind,
        config=config,
    )


def _build_delay(element: Dict[str, Any], index: int, next_index: Optional[int]):
    config = element.get("config") or {}
    wait_time = config.get("waitTime") or {}
    if not isinstance(wait_time, dict):
        raise InvalidWorkflowDefinition(
            f"Delay element '{element['id']}' has a malformed waitTime"
        )
    amount = config.get("amount", wait_time.get("value"))
    unit = config.get("unit", wait_time.get("unit", "days"))
    if amount is None:
        raise InvalidWorkflowDefinition(
            f"Delay element '{element['id']}' is missing an amount"
        )
    return DelayStep(
        id=element["id"],
        index=index,
        title=element.get("title", ""),
        next_index=next_index,
        amount=amount,
        unit=unit,
    )


def _check_acyclic(steps: List[Any]) -> None:
    """Reject definitions whose branch edges form a cycle."""
    edges: Dict[int, List[int]] = {}
    for step in steps:
        targets = [step.next_index]
        if isinstance(step, ConditionStep):
            targets.append(step.false_index)
        edges[step.index] = [t for t in targets if t is not None]

    visiting, done = set(), set()

    def visit(node: int, path: List[int]) -> None:
        if node in done:
            return
        if node in visiting:
            cycle = " -> ".join(steps[i].id for i in path + [node])
            raise InvalidWorkflowDefinition(f"Workflow contains a cycle: {cycle}")
        visiting.add(node)
        for target in edges[node]:
            visit(target, path + [node])
        visiting.discard(node)
        done.add(node)

    for step in steps:
        visit(step.index, [])


def parse_workflow_definition(
    document: Union[str, Dict[str, Any]],
    workflow_id: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> WorkflowDefinition:
    """Validate a workflow document and build a :class:`WorkflowDefinition`."""
    if isinstance(document, str):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as exc:
            raise InvalidWorkflowDefinition(f"Workflow document is not JSON: {exc}") from exc

    if not isinstance(document, dict):
        raise InvalidWorkflowDefinition("Workflow document must be a JSON object")
    name = document.get("name")
    if not name:
        raise InvalidWorkflowDefinition("Workflow name is required")
    elements = document.get("elements") or []
    if not isinstance(elements, list):
        raise InvalidWorkflowDefinition("Workflow elements must be a list")
    if not elements:
        raise InvalidWorkflowDefinition("Workflow must contain at least one element")
    for i, element in enumerate(elements):
        if not isinstance(element, dict):
            raise InvalidWorkflowDefinition(f"Element {i} must be an object")
        if not isinstance(element.get("config") or {}, dict):
            raise InvalidWorkflowDefinition(f"Element {i} config must be an object")

    elements = [dict(e) for e in elements]
    for i, element in enumerate(elements):
        element.setdefault("id", f"step-{i}")
        if not isinstance(element["id"], str):
            raise InvalidWorkflowDefinition(f"Element {i} id must be a string")
    positions = {e["id"]: i for i, e in enumerate(elements)}
    if len(positions) != len(elements):
        raise InvalidWorkflowDefinition("Element ids must be unique")

    steps = []
    count = len(elements)
    try:
        for index, element in enumerate(elements):
            raw_type = element.get("type")
            try:
                step_type = StepType(raw_type)
            except ValueError:
                raise InvalidWorkflowDefinition(
                    f"Element '{element['id']}' has unknown type '{raw_type}'"
                ) from None

            explicit_next = _resolve_edge(element, "next", positions)
            if explicit_next is not None:
                next_index = explicit_next
            elif "next" in element and element["next"] is None:
                # "next": null ends the workflow after this element
                next_index = None
            else:
                next_index = _default_next(index, count)

            if step_type is StepType.TRIGGER:
                steps.append(_build_trigger(element, index, next_index))
            elif step_type is StepType.CONDITION:
                true_index = _resolve_edge(element, "trueNext", positions)
                false_index = _resolve_edge(element, "falseNext", positions)
                steps.append(
                    _build_condition(
                        element,
                        index,
                        true_index if true_index is not None else next_index,
                        false_index,
                    )
                )
            elif step_type is StepType.ACTION:
                steps.append(_build_action(element, index, next_index))
            else:
                steps.append(_build_delay(element, index, next_index))
    except (ValidationError, AttributeError, TypeError, ValueError) as exc:
        raise InvalidWorkflowDefinition(str(exc)) from exc

    _check_acyclic(steps)

    kwargs: Dict[str, Any] = {"name": name, "steps": steps, "owner_id": owner_id}
    if workflow_id:
        kwargs["id"] = workflow_id
    return WorkflowDefinition(**kwargs)
