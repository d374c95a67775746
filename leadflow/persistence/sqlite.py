"""SQLite implementation of the automation repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..models import (
    Advisor,
    Channel,
    EnrollmentStatus,
    Lead,
    NotificationPreference,
    PipelineStage,
    StageTransitionTrigger,
    UserContact,
    WorkflowDefinition,
    WorkflowEnrollment,
    as_utc,
)
from .models import (
    DeliveryRecord,
    DeliveryStatus,
    Notification,
    StageTransitionLog,
    StepExecution,
    Task,
)
from .repository import AutomationRepository

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS enrollments (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        status TEXT NOT NULL,
        next_wake_ts REAL,
        data TEXT NOT NULL
    )
    """,
    # at most one active enrollment per (workflow, entity)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_active_enrollment
    ON enrollments (workflow_id, entity_id) WHERE status = 'active'
    """,
    """
    CREATE TABLE IF NOT EXISTS step_executions (
        enrollment_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        started_at TEXT NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (enrollment_id, step_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leads (
        id TEXT PRIMARY KEY,
        stage_id TEXT,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stages (
        id TEXT PRIMARY KEY,
        pipeline_id TEXT NOT NULL,
        order_index INTEGER NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS triggers (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        stage_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transition_logs (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        lead_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS preferences (
        user_id TEXT NOT NULL,
        notification_type TEXT NOT NULL,
        channel TEXT NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (user_id, notification_type, channel)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        user_id TEXT PRIMARY KEY,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deliveries (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        idempotency_key TEXT,
        channel TEXT NOT NULL,
        status TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        lead_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS advisors (
        id TEXT PRIMARY KEY,
        data TEXT NOT NULL
    )
    """,
]


def _wake_ts(enrollment: WorkflowEnrollment) -> float | None:
    if enrollment.next_wake_at is None:
        return None
    return as_utc(enrollment.next_wake_at).timestamp()


class SQLiteAutomationRepository(AutomationRepository):
    """Persist automation state using SQLite.

    Records are stored as JSON documents next to the columns needed for
    lookups and for the uniqueness guarantees the scheduler relies on.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in _SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_enrollment(
        self, enrollment: WorkflowEnrollment
    ) -> tuple[WorkflowEnrollment, bool]:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO enrollments (id, workflow_id, entity_id, status, next_wake_ts, data) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        enrollment.id,
                        enrollment.workflow_id,
                        enrollment.entity_id,
                        enrollment.status.value,
                        _wake_ts(enrollment),
                        enrollment.model_dump_json(),
                    ),
                )
                self._conn.commit()
                return enrollment, True
            except sqlite3.IntegrityError:
                self._conn.rollback()
                row = self._conn.execute(
                    "SELECT data FROM enrollments WHERE workflow_id = ? AND entity_id = ? AND status = 'active'",
                    (enrollment.workflow_id, enrollment.entity_id),
                ).fetchone()
                if row is None:
                    raise
                return WorkflowEnrollment.model_validate_json(row["data"]), False

    def _swap_stage(
        self,
        lead_id: str,
        expected_stage_id: Optional[str],
        new_stage_id: str,
        now: datetime,
    ) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM leads WHERE id = ? AND stage_id IS ?",
                (lead_id, expected_stage_id),
            ).fetchone()
            if row is None:
                return False
            lead = Lead.model_validate_json(row["data"])
            lead.stage_id = new_stage_id
            lead.stage_entered_at = now
            cur = self._conn.execute(
                "UPDATE leads SET stage_id = ?, data = ? WHERE id = ? AND stage_id IS ?",
                (new_stage_id, lead.model_dump_json(), lead_id, expected_stage_id),
            )
            self._conn.commit()
            return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflows (id, data) VALUES (?, ?)",
            workflow.id,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflows WHERE id = ?", workflow_id
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def list_workflows(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT data FROM workflows")
        return [WorkflowDefinition.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Enrollments
    async def create_enrollment(
        self, enrollment: WorkflowEnrollment
    ) -> tuple[WorkflowEnrollment, bool]:
        return await asyncio.to_thread(self._insert_enrollment, enrollment)

    async def save_enrollment(self, enrollment: WorkflowEnrollment) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments
            SET status = ?, next_wake_ts = ?, data = ?
            WHERE id = ?
            """,
            enrollment.status.value,
            _wake_ts(enrollment),
            enrollment.model_dump_json(),
            enrollment.id,
        )

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM enrollments WHERE id = ?", enrollment_id
        )
        return WorkflowEnrollment.model_validate_json(row["data"]) if row else None

    async def find_active_enrollment(
        self, workflow_id: str, entity_id: str
    ) -> WorkflowEnrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM enrollments WHERE workflow_id = ? AND entity_id = ? AND status = 'active'",
            workflow_id,
            entity_id,
        )
        return WorkflowEnrollment.model_validate_json(row["data"]) if row else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[WorkflowEnrollment]:
        clauses, params = [], []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(EnrollmentStatus(status).value)
        query = "SELECT data FROM enrollments"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowEnrollment.model_validate_json(r["data"]) for r in rows]

    async def list_due_enrollments(self, now: datetime) -> list[WorkflowEnrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT data FROM enrollments
            WHERE status = 'active' AND next_wake_ts IS NOT NULL AND next_wake_ts <= ?
            ORDER BY next_wake_ts
            """,
            as_utc(now).timestamp(),
        )
        return [WorkflowEnrollment.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Step guard
    async def claim_step(self, execution: StepExecution) -> bool:
        inserted = await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO step_executions (enrollment_id, step_index, started_at, data) VALUES (?, ?, ?, ?)",
            execution.enrollment_id,
            execution.step_index,
            execution.started_at.isoformat(),
            execution.model_dump_json(),
        )
        return inserted == 1

    async def update_step(self, execution: StepExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE step_executions SET data = ? WHERE enrollment_id = ? AND step_index = ?",
            execution.model_dump_json(),
            execution.enrollment_id,
            execution.step_index,
        )

    async def get_step(self, enrollment_id: str, step_index: int) -> StepExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM step_executions WHERE enrollment_id = ? AND step_index = ?",
            enrollment_id,
            step_index,
        )
        return StepExecution.model_validate_json(row["data"]) if row else None

    async def list_steps(self, enrollment_id: str) -> list[StepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM step_executions WHERE enrollment_id = ? ORDER BY started_at, step_index",
            enrollment_id,
        )
        return [StepExecution.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Leads and stages
    async def save_lead(self, lead: Lead) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO leads (id, stage_id, data) VALUES (?, ?, ?)",
            lead.id,
            lead.stage_id,
            lead.model_dump_json(),
        )

    async def get_lead(self, lead_id: str) -> Lead | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM leads WHERE id = ?", lead_id
        )
        return Lead.model_validate_json(row["data"]) if row else None

    async def list_leads(self) -> list[Lead]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT data FROM leads")
        return [Lead.model_validate_json(r["data"]) for r in rows]

    async def compare_and_set_stage(
        self,
        lead_id: str,
        expected_stage_id: Optional[str],
        new_stage_id: str,
        now: datetime,
    ) -> bool:
        return await asyncio.to_thread(
            self._swap_stage, lead_id, expected_stage_id, new_stage_id, now
        )

    async def save_stage(self, stage: PipelineStage) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO stages (id, pipeline_id, order_index, data) VALUES (?, ?, ?, ?)",
            stage.id,
            stage.pipeline_id,
            stage.order_index,
            stage.model_dump_json(),
        )

    async def get_stage(self, stage_id: str) -> PipelineStage | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM stages WHERE id = ?", stage_id
        )
        return PipelineStage.model_validate_json(row["data"]) if row else None

    async def list_stages(self, pipeline_id: str) -> list[PipelineStage]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM stages WHERE pipeline_id = ? ORDER BY order_index",
            pipeline_id,
        )
        return [PipelineStage.model_validate_json(r["data"]) for r in rows]

    async def save_trigger(self, trigger: StageTransitionTrigger) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO triggers (id, stage_id, data) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET stage_id = excluded.stage_id, data = excluded.data
            """,
            trigger.id,
            trigger.stage_id,
            trigger.model_dump_json(),
        )

    async def list_triggers(self, stage_id: str) -> list[StageTransitionTrigger]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM triggers WHERE stage_id = ? ORDER BY seq",
            stage_id,
        )
        return [StageTransitionTrigger.model_validate_json(r["data"]) for r in rows]

    async def add_transition_log(self, log: StageTransitionLog) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO transition_logs (lead_id, data) VALUES (?, ?)",
            log.lead_id,
            log.model_dump_json(),
        )

    async def list_transition_logs(self, lead_id: str) -> list[StageTransitionLog]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM transition_logs WHERE lead_id = ? ORDER BY seq",
            lead_id,
        )
        return [StageTransitionLog.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Notifications
    async def get_preferences(
        self, user_id: str, notification_type: str
    ) -> list[NotificationPreference]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM preferences WHERE user_id = ? AND notification_type = ?",
            user_id,
            notification_type,
        )
        return [NotificationPreference.model_validate_json(r["data"]) for r in rows]

    async def save_preference(self, preference: NotificationPreference) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO preferences (user_id, notification_type, channel, data) VALUES (?, ?, ?, ?)",
            preference.user_id,
            preference.notification_type,
            preference.channel.value,
            preference.model_dump_json(),
        )

    async def save_contact(self, contact: UserContact) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO contacts (user_id, data) VALUES (?, ?)",
            contact.user_id,
            contact.model_dump_json(),
        )

    async def get_contact(self, user_id: str) -> UserContact | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM contacts WHERE user_id = ?", user_id
        )
        return UserContact.model_validate_json(row["data"]) if row else None

    async def add_notification(self, notification: Notification) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO notifications (user_id, data) VALUES (?, ?)",
            notification.user_id,
            notification.model_dump_json(),
        )

    async def list_notifications(self, user_id: str) -> list[Notification]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM notifications WHERE user_id = ? ORDER BY seq",
            user_id,
        )
        return [Notification.model_validate_json(r["data"]) for r in rows]

    async def add_delivery(self, record: DeliveryRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO deliveries (user_id, idempotency_key, channel, status, data) VALUES (?, ?, ?, ?, ?)",
            record.user_id,
            record.idempotency_key,
            record.channel.value,
            record.status.value,
            record.model_dump_json(),
        )

    async def has_delivery(self, idempotency_key: str, channel: Channel) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 FROM deliveries WHERE idempotency_key = ? AND channel = ? AND status = ? LIMIT 1",
            idempotency_key,
            Channel(channel).value,
            DeliveryStatus.DELIVERED.value,
        )
        return row is not None

    async def list_deliveries(self, user_id: Optional[str] = None) -> list[DeliveryRecord]:
        if user_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT data FROM deliveries ORDER BY seq"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT data FROM deliveries WHERE user_id = ? ORDER BY seq",
                user_id,
            )
        return [DeliveryRecord.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Tasks and advisors
    async def add_task(self, task: Task) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO tasks (lead_id, data) VALUES (?, ?)",
            task.lead_id,
            task.model_dump_json(),
        )

    async def list_tasks(self, lead_id: Optional[str] = None) -> list[Task]:
        if lead_id is None:
            rows = await asyncio.to_thread(self._fetchall, "SELECT data FROM tasks ORDER BY seq")
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT data FROM tasks WHERE lead_id = ? ORDER BY seq",
                lead_id,
            )
        return [Task.model_validate_json(r["data"]) for r in rows]

    async def save_advisor(self, advisor: Advisor) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO advisors (id, data) VALUES (?, ?)",
            advisor.id,
            advisor.model_dump_json(),
        )

    async def list_advisors(self) -> list[Advisor]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT data FROM advisors")
        return [Advisor.model_validate_json(r["data"]) for r in rows]
