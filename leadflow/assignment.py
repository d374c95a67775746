"""Advisor selection and side-effect-free bulk enrollment preview."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import BaseModel

from .conditions import evaluate_all
from .models import Advisor, Condition, as_utc
from .persistence.repository import AutomationRepository


def pick_advisor(advisors: Iterable[Advisor]) -> Optional[Advisor]:
    """Return the routing-enabled advisor with the lightest load.

    Advisors at capacity are skipped. Ties go to the lowest id so the choice
    is deterministic.
    """
    candidates = [a for a in advisors if a.routing_enabled and a.has_capacity]
    if not candidates:
        return None
    return min(candidates, key=lambda a: (a.active_assignments, a.id))


class PreviewFilter(BaseModel):
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    include_assigned: bool = False


class BulkEnrollmentPreview(BaseModel):
    total_matching: int
    already_assigned: int
    eligible: int


async def preview_bulk_enrollment(
    repository: AutomationRepository,
    conditions: List[Condition],
    filter: Optional[PreviewFilter] = None,
) -> BulkEnrollmentPreview:
    """Count leads a rule would apply to without changing anything.

    ``total_matching`` counts leads inside the date window whose snapshot
    satisfies every condition. Leads that already have an advisor are
    reported in ``already_assigned`` and excluded from ``eligible`` unless
    the filter asks to include them.
    """
    filter = filter or PreviewFilter()
    matching = []
    for lead in await repository.list_leads():
        created = as_utc(lead.created_at)
        if filter.created_after and created < as_utc(filter.created_after):
            continue
        if filter.created_before and created > as_utc(filter.created_before):
            continue
        if evaluate_all(conditions, lead.snapshot()):
            matching.append(lead)

    assigned = sum(1 for lead in matching if lead.assigned_to)
    eligible = len(matching) if filter.include_assigned else len(matching) - assigned
    return BulkEnrollmentPreview(
        total_matching=len(matching), already_assigned=assigned, eligible=eligible
    )
