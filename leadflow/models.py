"""Domain models shared by the scheduler, the stage evaluator and the dispatcher."""

from __future__ import annotations

import uuid
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Workflow definitions
# ---------------------------------------------------------------------------


class StepType(str, Enum):
    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"
    DELAY = "delay"


class ActionKind(str, Enum):
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CREATE_TASK = "create_task"
    UPDATE_LEAD = "update_lead"
    ASSIGN_ADVISOR = "assign_advisor"
    SEND_NOTIFICATION = "send_notification"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class WorkflowTriggerType(str, Enum):
    """How an entity enters a workflow."""

    MANUAL = "manual"
    LEAD_CREATED = "lead_created"
    STAGE_ENTERED = "stage_entered"


class Condition(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None


class _StepBase(BaseModel):
    id: str
    index: int
    title: str = ""
    next_index: Optional[int] = None


class TriggerStep(_StepBase):
    type: Literal["trigger"] = "trigger"
    trigger_type: WorkflowTriggerType = WorkflowTriggerType.MANUAL
    conditions: List[Condition] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)


class ConditionStep(_StepBase):
    """Branch on the entity snapshot.

    ``next_index`` is the true edge. With ``wait`` set, an unmet condition
    parks the enrollment until an entity event re-evaluates it.
    """

    type: Literal["condition"] = "condition"
    condition: Condition
    false_index: Optional[int] = None
    wait: bool = False


class ActionStep(_StepBase):
    type: Literal["action"] = "action"
    kind: ActionKind
    config: Dict[str, Any] = Field(default_factory=dict)


_UNIT_SECONDS = {
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 3600,
    DelayUnit.DAYS: 86400,
    DelayUnit.WEEKS: 7 * 86400,
}


class DelayStep(_StepBase):
    type: Literal["delay"] = "delay"
    amount: float = Field(ge=0)
    unit: DelayUnit = DelayUnit.DAYS

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self.amount * _UNIT_SECONDS[self.unit])


Step = Annotated[
    Union[TriggerStep, ConditionStep, ActionStep, DelayStep],
    Field(discriminator="type"),
]


class WorkflowDefinition(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    version: int = 1
    is_active: bool = True
    owner_id: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def entry_trigger(self) -> Optional[TriggerStep]:
        if self.steps and isinstance(self.steps[0], TriggerStep):
            return self.steps[0]
        return None


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"


class WorkflowEnrollment(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: int = 1
    entity_id: str
    current_step_index: Optional[int] = 0
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    enrolled_at: datetime = Field(default_factory=utcnow)
    next_wake_at: Optional[datetime] = None
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None
    exit_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != EnrollmentStatus.ACTIVE


# ---------------------------------------------------------------------------
# Leads and pipeline stages
# ---------------------------------------------------------------------------


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LeadDocument(BaseModel):
    id: str
    document_type: str = "general"
    status: ApprovalStatus = ApprovalStatus.PENDING
    required: bool = True
    stage_id: Optional[str] = None


class Requirement(BaseModel):
    id: str
    stage_id: str
    requirement_type: str = "document"
    mandatory: bool = True
    status: ApprovalStatus = ApprovalStatus.PENDING


class Payment(BaseModel):
    id: str
    amount: float
    context: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class FormSubmission(BaseModel):
    id: str
    form_id: str
    submitted_at: datetime = Field(default_factory=utcnow)


class ManualApproval(BaseModel):
    id: Optional[str] = None
    stage_id: str
    approved_by: Optional[str] = None
    approved_at: datetime = Field(default_factory=utcnow)


class Lead(BaseModel):
    """Snapshot of a prospective student as seen by the automation core."""

    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str = "new"
    tags: List[str] = Field(default_factory=list)
    lead_score: int = 0
    priority: Optional[str] = None
    program_interest: Optional[str] = None
    source: Optional[str] = None
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    stage_id: Optional[str] = None
    stage_entered_at: Optional[datetime] = None
    documents: List[LeadDocument] = Field(default_factory=list)
    requirements: List[Requirement] = Field(default_factory=list)
    payments: List[Payment] = Field(default_factory=list)
    form_submissions: List[FormSubmission] = Field(default_factory=list)
    manual_approvals: List[ManualApproval] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def snapshot(self) -> Dict[str, Any]:
        """Flat dict used by condition evaluation. Custom fields sit at top level."""
        data = self.model_dump(mode="json", exclude={"custom_fields"})
        data.update(self.custom_fields)
        data["full_name"] = self.full_name
        data["documents_approved"] = sum(
            1 for d in self.documents if d.status == ApprovalStatus.APPROVED
        )
        data["documents_total"] = len(self.documents)
        return data


class PipelineStage(BaseModel):
    id: str = Field(default_factory=new_id)
    pipeline_id: str = "default"
    name: str
    order_index: int = 0
    admin_user_id: Optional[str] = None


class TriggerType(str, Enum):
    ALL_DOCUMENTS_APPROVED = "all_documents_approved"
    SPECIFIC_DOCUMENT_APPROVED = "specific_document_approved"
    PAYMENT_RECEIVED = "payment_received"
    FORM_SUBMITTED = "form_submitted"
    MANUAL_APPROVAL = "manual_approval"
    TIME_ELAPSED = "time_elapsed"
    ALL_REQUIREMENTS_COMPLETED = "all_requirements_completed"


class TriggerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    document_id: Optional[str] = None
    document_types: List[str] = Field(default_factory=list)
    payment_amount: Optional[float] = None
    payment_context: Optional[str] = None
    form_id: Optional[str] = None
    time_days: Optional[float] = None
    time_hours: Optional[float] = None
    requirement_ids: List[str] = Field(default_factory=list)

    @property
    def elapsed_duration(self) -> Optional[timedelta]:
        if self.time_days is None and self.time_hours is None:
            return None
        return timedelta(days=self.time_days or 0, hours=self.time_hours or 0)


class StageTransitionTrigger(BaseModel):
    id: str = Field(default_factory=new_id)
    stage_id: str
    trigger_type: TriggerType
    target_stage_id: Optional[str] = None
    is_active: bool = True
    notify_student: bool = False
    notify_admin: bool = False
    config: TriggerConfig = Field(default_factory=TriggerConfig)
    created_at: datetime = Field(default_factory=utcnow)


class EventKind(str, Enum):
    """Facts reported to the stage evaluator by external collaborators."""

    DOCUMENT_APPROVED = "document_approved"
    REQUIREMENT_COMPLETED = "requirement_completed"
    PAYMENT_RECEIVED = "payment_received"
    FORM_SUBMITTED = "form_submitted"
    MANUAL_APPROVAL = "manual_approval"
    TIME_ELAPSED = "time_elapsed"


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Channel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"


CHANNEL_ORDER = [Channel.IN_APP, Channel.EMAIL, Channel.SMS]


class QuietHours(BaseModel):
    enabled: bool = False
    start: time = time(22, 0)
    end: time = time(7, 0)
    timezone: str = "UTC"

    def contains(self, moment: datetime) -> bool:
        """True when ``moment`` falls in ``[start, end)`` local time.

        Windows with ``start > end`` wrap past midnight.
        """
        if not self.enabled or self.start == self.end:
            return False
        zone = timezone.utc if self.timezone.upper() == "UTC" else ZoneInfo(self.timezone)
        local = as_utc(moment).astimezone(zone).time()
        local = local.replace(tzinfo=None)
        if self.start < self.end:
            return self.start <= local < self.end
        return local >= self.start or local < self.end


class NotificationPreference(BaseModel):
    user_id: str
    notification_type: str
    channel: Channel
    enabled: bool = True
    frequency: str = "immediate"
    quiet_hours: QuietHours = Field(default_factory=QuietHours)


class NotificationEvent(BaseModel):
    user_id: str
    type: str
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: str = "normal"
    idempotency_key: Optional[str] = None


class UserContact(BaseModel):
    user_id: str
    email: Optional[str] = None
    phone: Optional[str] = None


class Advisor(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    routing_enabled: bool = True
    active_assignments: int = 0
    capacity: int = 50

    @property
    def has_capacity(self) -> bool:
        return self.active_assignments < self.capacity
