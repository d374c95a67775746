"""Data models for persisted automation records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..models import Channel, new_id, utcnow


class StepStatus(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


class StepExecution(BaseModel):
    """Record of one step run for one enrollment.

    ``(enrollment_id, step_index)`` is unique: inserting it is the claim that
    guards a step's side effects against duplicate advances.
    """

    enrollment_id: str
    step_index: int
    step_type: str
    status: StepStatus = StepStatus.RUNNING
    attempts: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class StageTransitionLog(BaseModel):
    id: str = Field(default_factory=new_id)
    lead_id: str
    from_stage_id: Optional[str] = None
    to_stage_id: str
    trigger_id: Optional[str] = None
    trigger_type: Optional[str] = None
    triggered_by: str = "system"
    created_at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    """Durable in-app notification."""

    id: str = Field(default_factory=new_id)
    user_id: str
    type: str
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    priority: str = "normal"
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SUPPRESSED = "suppressed"
    DISABLED = "disabled"
    DUPLICATE = "duplicate"


class DeliveryRecord(BaseModel):
    """One channel attempt for one notification or direct message."""

    id: str = Field(default_factory=new_id)
    channel: Channel
    status: DeliveryStatus
    user_id: Optional[str] = None
    notification_type: Optional[str] = None
    destination: Optional[str] = None
    idempotency_key: Optional[str] = None
    external_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    lead_id: str
    title: str
    description: str = ""
    task_type: str = "follow_up"
    priority: str = "medium"
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    status: str = "pending"
    created_at: datetime = Field(default_factory=utcnow)
