"""Database repositories for TaskGate entities."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable
from uuid import UUID, uuid4

from sqlalchemy import and_, case, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from taskgate.db.tables import (
    CreditLedgerTable,
    NotificationPreferenceTable,
    NotificationTable,
    TaskLogTable,
    TaskTable,
)
from taskgate.models import (
    CreditLedgerEntry,
    LedgerEntryKind,
    LogLevel,
    Notification,
    Task,
    TaskError,
    TaskLogEntry,
    TaskStatus,
)
from taskgate.utils.time import ensure_aware, utc_now


def _dump_dependencies(dependencies: Iterable[UUID]) -> list[str]:
    return [str(dep) for dep in dependencies]


def encode_cursor(created_at: datetime, task_id: UUID) -> str:
    """Page cursor pointing just past the given task in newest-first order."""
    return f"{created_at.isoformat()}|{task_id}"


def decode_cursor(cursor: str) -> tuple[datetime, UUID]:
    """Split a cursor from encode_cursor; raises ValueError when malformed."""
    created_at, _, task_id = cursor.partition("|")
    return datetime.fromisoformat(created_at), UUID(task_id)


class TaskRepository:
    """Repository for task operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, task: Task) -> Task:
        """Insert a fully built task."""
        row = TaskTable(
            task_id=task.task_id,
            owner_id=task.owner_id,
            task_type=task.task_type,
            title=task.title,
            description=task.description,
            inputs=task.inputs,
            outputs=task.outputs,
            error=task.error.model_dump() if task.error else None,
            credit_cost=task.credit_cost,
            priority=task.priority,
            dependencies=_dump_dependencies(task.dependencies),
            status=task.status,
            external_ref=task.external_ref,
            next_poll_at=task.next_poll_at,
            created_at=task.created_at,
            updated_at=task.updated_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
            finished_at=task.finished_at,
        )
        self.session.add(row)
        await self.session.flush()
        return task

    async def get(self, task_id: UUID) -> Task | None:
        """Get a task by ID."""
        result = await self.session.execute(
            select(TaskTable)
            .where(TaskTable.task_id == task_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def statuses(self, task_ids: Iterable[UUID]) -> dict[UUID, TaskStatus]:
        """Map existing task ids to their status; unknown ids are absent."""
        ids = list(set(task_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(TaskTable.task_id, TaskTable.status).where(TaskTable.task_id.in_(ids))
        )
        return {task_id: status for task_id, status in result.all()}

    async def dependencies_of(self, task_ids: Iterable[UUID]) -> dict[UUID, list[UUID]]:
        """Outgoing dependency edges for the given tasks."""
        ids = list(set(task_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(TaskTable.task_id, TaskTable.dependencies).where(TaskTable.task_id.in_(ids))
        )
        return {
            task_id: [UUID(dep) for dep in (deps or [])]
            for task_id, deps in result.all()
        }

    async def list(
        self,
        owner_id: str | None = None,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[Task], str | None]:
        """List tasks newest first with optional filtering."""
        query = select(TaskTable)

        if owner_id:
            query = query.where(TaskTable.owner_id == owner_id)
        if status:
            query = query.where(TaskTable.status == status)
        if task_type:
            query = query.where(TaskTable.task_type == task_type)

        # Keyset pagination on (created_at, task_id)
        if cursor:
            cursor_time, cursor_id = decode_cursor(cursor)
            query = query.where(
                or_(
                    TaskTable.created_at < cursor_time,
                    and_(TaskTable.created_at == cursor_time, TaskTable.task_id < cursor_id),
                )
            )

        query = query.order_by(TaskTable.created_at.desc(), TaskTable.task_id.desc()).limit(
            limit + 1
        )

        result = await self.session.execute(query)
        rows = list(result.scalars().all())

        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = encode_cursor(rows[-1].created_at, rows[-1].task_id)

        return [self._row_to_model(r) for r in rows], next_cursor

    async def list_by_status(self, status: TaskStatus) -> list[Task]:
        result = await self.session.execute(
            select(TaskTable).where(TaskTable.status == status).order_by(TaskTable.created_at)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def list_awaiting_external(self, due_before: datetime | None = None) -> list[Task]:
        """Processing tasks parked on an external result, optionally only those due."""
        query = select(TaskTable).where(
            TaskTable.status == TaskStatus.PROCESSING,
            TaskTable.external_ref.is_not(None),
        )
        if due_before is not None:
            query = query.where(TaskTable.next_poll_at <= due_before)
        result = await self.session.execute(query.order_by(TaskTable.next_poll_at))
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def list_interrupted(self) -> list[Task]:
        """Processing tasks with no external result to wait for."""
        result = await self.session.execute(
            select(TaskTable).where(
                TaskTable.status == TaskStatus.PROCESSING,
                TaskTable.external_ref.is_(None),
            )
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def compare_and_set_status(
        self,
        task_id: UUID,
        expected: TaskStatus,
        new_status: TaskStatus,
        **values: Any,
    ) -> bool:
        """Move a task to new_status only if it is still in expected.

        Returns False when another writer changed the status first.
        """
        values = self._serialize_values(values)
        values["status"] = new_status
        result = await self.session.execute(
            update(TaskTable)
            .where(TaskTable.task_id == task_id, TaskTable.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_fields(self, task_id: UUID, **values: Any) -> None:
        """Update non-status fields of a task."""
        values = self._serialize_values(values)
        values.setdefault("updated_at", utc_now())
        await self.session.execute(
            update(TaskTable)
            .where(TaskTable.task_id == task_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def _serialize_values(self, values: dict[str, Any]) -> dict[str, Any]:
        values = dict(values)
        if "status" in values:
            raise ValueError("status changes go through compare_and_set_status")
        if isinstance(values.get("error"), TaskError):
            values["error"] = values["error"].model_dump()
        if "dependencies" in values:
            values["dependencies"] = _dump_dependencies(values["dependencies"])
        return values

    def _row_to_model(self, row: TaskTable) -> Task:
        """Convert database row to model."""
        return Task(
            task_id=row.task_id,
            owner_id=row.owner_id,
            task_type=row.task_type,
            title=row.title,
            description=row.description or "",
            inputs=row.inputs or {},
            outputs=row.outputs or {},
            error=TaskError(**row.error) if row.error else None,
            credit_cost=row.credit_cost,
            priority=row.priority,
            dependencies=[UUID(dep) for dep in (row.dependencies or [])],
            status=row.status,
            external_ref=row.external_ref,
            next_poll_at=ensure_aware(row.next_poll_at),
            created_at=ensure_aware(row.created_at),
            updated_at=ensure_aware(row.updated_at),
            started_at=ensure_aware(row.started_at),
            completed_at=ensure_aware(row.completed_at),
            finished_at=ensure_aware(row.finished_at),
        )


class TaskLogRepository:
    """Repository for task log entries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, task_id: UUID, level: LogLevel, message: str) -> TaskLogEntry:
        row = TaskLogTable(
            entry_id=uuid4(),
            task_id=task_id,
            level=level,
            message=message,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def list(self, task_id: UUID) -> list[TaskLogEntry]:
        """Log entries for a task in append order."""
        result = await self.session.execute(
            select(TaskLogTable).where(TaskLogTable.task_id == task_id).order_by(TaskLogTable.seq)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    def _row_to_model(self, row: TaskLogTable) -> TaskLogEntry:
        return TaskLogEntry(
            entry_id=row.entry_id,
            task_id=row.task_id,
            level=row.level,
            message=row.message,
            created_at=ensure_aware(row.created_at),
        )


class LedgerRepository:
    """Repository for credit ledger entries.

    Entries are only ever inserted; balances and holds are derived by
    aggregation so the ledger remains the single source of truth.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        account_id: str,
        kind: LedgerEntryKind,
        amount: int,
        delta: int,
        reference_task_id: UUID | None = None,
        note: str | None = None,
    ) -> CreditLedgerEntry:
        row = CreditLedgerTable(
            entry_id=uuid4(),
            account_id=account_id,
            kind=kind,
            amount=amount,
            delta=delta,
            reference_task_id=reference_task_id,
            note=note,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def balance(self, account_id: str) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditLedgerTable.delta), 0)).where(
                CreditLedgerTable.account_id == account_id
            )
        )
        return int(result.scalar_one())

    def _unsettled_reservations(self):
        """Reserve entries with no debit or refund for the same task."""
        settle = aliased(CreditLedgerTable)
        return and_(
            CreditLedgerTable.kind == LedgerEntryKind.RESERVE,
            ~exists().where(
                settle.reference_task_id == CreditLedgerTable.reference_task_id,
                settle.kind.in_(list(LedgerEntryKind.settling_kinds())),
            ),
        )

    async def held(self, account_id: str) -> int:
        """Sum of outstanding reservations for an account."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditLedgerTable.amount), 0)).where(
                CreditLedgerTable.account_id == account_id,
                self._unsettled_reservations(),
            )
        )
        return int(result.scalar_one())

    async def totals(self, account_id: str) -> tuple[int, int]:
        """Balance and held for an account from a single statement."""
        held_amount = case(
            (self._unsettled_reservations(), CreditLedgerTable.amount), else_=0
        )
        result = await self.session.execute(
            select(
                func.coalesce(func.sum(CreditLedgerTable.delta), 0),
                func.coalesce(func.sum(held_amount), 0),
            ).where(CreditLedgerTable.account_id == account_id)
        )
        balance, held = result.one()
        return int(balance), int(held)

    async def outstanding_references(self, task_ids: Iterable[UUID]) -> set[UUID]:
        """Subset of task_ids that still hold an unsettled reservation."""
        ids = list(set(task_ids))
        if not ids:
            return set()
        result = await self.session.execute(
            select(CreditLedgerTable.reference_task_id).where(
                CreditLedgerTable.reference_task_id.in_(ids),
                self._unsettled_reservations(),
            )
        )
        return set(result.scalars().all())

    async def entries_for_reference(
        self, reference_task_id: UUID
    ) -> dict[LedgerEntryKind, CreditLedgerEntry]:
        result = await self.session.execute(
            select(CreditLedgerTable).where(
                CreditLedgerTable.reference_task_id == reference_task_id
            )
        )
        return {row.kind: self._row_to_model(row) for row in result.scalars().all()}

    async def list(self, account_id: str, limit: int | None = None) -> list[CreditLedgerEntry]:
        """Entries for an account in append order."""
        query = (
            select(CreditLedgerTable)
            .where(CreditLedgerTable.account_id == account_id)
            .order_by(CreditLedgerTable.seq)
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    def _row_to_model(self, row: CreditLedgerTable) -> CreditLedgerEntry:
        return CreditLedgerEntry(
            entry_id=row.entry_id,
            account_id=row.account_id,
            kind=row.kind,
            amount=row.amount,
            delta=row.delta,
            reference_task_id=row.reference_task_id,
            note=row.note,
            created_at=ensure_aware(row.created_at),
        )


class NotificationRepository:
    """Repository for in-app notifications."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        account_id: str,
        template: str,
        subject: str,
        body: str,
        task_id: UUID | None = None,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        row = NotificationTable(
            notification_id=uuid4(),
            account_id=account_id,
            template=template,
            subject=subject,
            body=body,
            task_id=task_id,
            data=data or {},
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def list(
        self,
        account_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        query = select(NotificationTable).where(NotificationTable.account_id == account_id)
        if unread_only:
            query = query.where(NotificationTable.read_at.is_(None))
        query = query.order_by(NotificationTable.created_at.desc()).limit(limit)
        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def mark_read(self, account_id: str, notification_ids: list[UUID] | None = None) -> int:
        """Mark notifications read; all unread ones when no ids are given."""
        query = update(NotificationTable).where(
            NotificationTable.account_id == account_id,
            NotificationTable.read_at.is_(None),
        )
        if notification_ids is not None:
            query = query.where(NotificationTable.notification_id.in_(notification_ids))
        result = await self.session.execute(
            query.values(read_at=utc_now()).execution_options(synchronize_session=False)
        )
        return result.rowcount

    def _row_to_model(self, row: NotificationTable) -> Notification:
        return Notification(
            notification_id=row.notification_id,
            account_id=row.account_id,
            template=row.template,
            subject=row.subject,
            body=row.body,
            task_id=row.task_id,
            data=row.data or {},
            read_at=ensure_aware(row.read_at),
            created_at=ensure_aware(row.created_at),
        )


class NotificationPreferenceRepository:
    """Repository for per-account notification preferences.

    Only explicitly set templates are stored; anything absent is enabled.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, account_id: str) -> dict[str, bool]:
        result = await self.session.execute(
            select(NotificationPreferenceTable).where(
                NotificationPreferenceTable.account_id == account_id
            )
        )
        return {row.template: row.enabled for row in result.scalars().all()}

    async def disabled(self, account_id: str) -> set[str]:
        result = await self.session.execute(
            select(NotificationPreferenceTable.template).where(
                NotificationPreferenceTable.account_id == account_id,
                NotificationPreferenceTable.enabled.is_(False),
            )
        )
        return set(result.scalars().all())

    async def save(self, account_id: str, preferences: dict[str, bool]) -> None:
        """Insert or update one row per template in preferences."""
        if not preferences:
            return
        result = await self.session.execute(
            select(NotificationPreferenceTable).where(
                NotificationPreferenceTable.account_id == account_id,
                NotificationPreferenceTable.template.in_(preferences.keys()),
            )
        )
        existing = {row.template: row for row in result.scalars().all()}
        now = utc_now()
        for template, enabled in preferences.items():
            row = existing.get(template)
            if row is None:
                self.session.add(
                    NotificationPreferenceTable(
                        account_id=account_id,
                        template=template,
                        enabled=enabled,
                        updated_at=now,
                    )
                )
            else:
                row.enabled = enabled
                row.updated_at = now
        await self.session.flush()
