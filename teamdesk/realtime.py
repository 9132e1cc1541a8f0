"""Live daily-task list.

Writes to daily tasks append rows to the `task_changes` log (see
`crud.record_task_change`). A `DailyTaskFeed` tails that log for one viewer and
keeps a `LiveTaskList` in sync with it, producing the events streamed to
clients over Server-Sent Events.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .crud import (
    CHANGE_DELETE,
    CHANGE_INSERT,
    CHANGE_UPDATE,
    DAILY_TASKS_TABLE,
    get_daily_task,
    list_daily_tasks,
    purge_task_changes,
)
from .models import TaskChange, User
from .schemas import DailyTaskOut
from .utils.time_utils import now_utc


logger = logging.getLogger("teamdesk.realtime")


@dataclass
class DailyTaskFilters:
    status: Optional[str] = None
    member: Optional[int] = None
    task_date: Optional[date] = None
    priority: Optional[str] = None
    project_id: Optional[int] = None
    search: Optional[str] = None

    def as_query_kwargs(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, "")}


@dataclass(frozen=True)
class Viewer:
    user_id: int
    is_manager: bool = False

    @classmethod
    def from_user(cls, user: User) -> "Viewer":
        return cls(user_id=int(user.id), is_manager=bool(user.is_manager))


@dataclass
class LiveChange:
    event_type: str
    record_id: int
    actor_id: Optional[int] = None
    new: Optional[dict] = None
    old: Optional[dict] = None


@dataclass
class FeedEvent:
    event: str
    data: dict = field(default_factory=dict)
    id: Optional[int] = None

    def to_sse(self) -> str:
        head = f"id: {self.id}\n" if self.id is not None else ""
        return f"{head}event: {self.event}\ndata: {json.dumps(self.data, default=str)}\n\n"


def task_payload(task) -> dict[str, Any]:
    """JSON-ready representation of a daily task row."""
    return DailyTaskOut.model_validate(task).model_dump(mode="json")


def _as_date(v: Any) -> date | None:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v)[:10])


def is_visible_to(task: dict, viewer: Viewer) -> bool:
    if viewer.is_manager:
        return True
    return task.get("user_id") is not None and int(task["user_id"]) == int(viewer.user_id)


def matches_filters(task: dict, filters: DailyTaskFilters, viewer: Viewer) -> bool:
    """Same predicate as the daily task list query, applied to one task."""
    if not is_visible_to(task, viewer):
        return False
    if filters.status and str(task.get("status") or "") != str(filters.status).strip().lower():
        return False
    if filters.member and int(task.get("user_id") or 0) != int(filters.member):
        return False
    if filters.task_date and _as_date(task.get("task_date")) != filters.task_date:
        return False
    if filters.priority and str(task.get("priority") or "") != str(filters.priority).strip().lower():
        return False
    if filters.project_id and int(task.get("project_id") or 0) != int(filters.project_id):
        return False

    term = (filters.search or "").strip().lower()
    if term:
        name = str(task.get("task_name") or "").lower()
        desc = str(task.get("description") or "").lower()
        if term not in name and term not in desc:
            return False
    return True


def _sort_key(task: dict) -> tuple[str, int]:
    return str(task.get("created_at") or ""), int(task.get("id") or 0)


class LiveTaskList:
    """A viewer's filtered daily task list, newest first."""

    def __init__(self, *, viewer: Viewer, filters: DailyTaskFilters | None = None, tasks: Iterable[dict] = ()):
        self.viewer = viewer
        self.filters = filters or DailyTaskFilters()
        self._items: list[dict] = list(tasks)

    @property
    def items(self) -> list[dict]:
        return list(self._items)

    def ids(self) -> list[int]:
        return [int(t["id"]) for t in self._items]

    def _index(self, task_id: int) -> int | None:
        for i, t in enumerate(self._items):
            if int(t["id"]) == int(task_id):
                return i
        return None

    def _insert_sorted(self, task: dict) -> None:
        key = _sort_key(task)
        for i, t in enumerate(self._items):
            if _sort_key(t) < key:
                self._items.insert(i, task)
                return
        self._items.append(task)

    def _notice(self, change: LiveChange, message: str) -> list[FeedEvent]:
        if change.actor_id is not None and int(change.actor_id) == int(self.viewer.user_id):
            return []
        return [FeedEvent("notice", {"message": message, "task_id": int(change.record_id)})]

    def apply(self, change: LiveChange) -> list[FeedEvent]:
        et = str(change.event_type or "").upper()
        if et == CHANGE_INSERT:
            return self._apply_insert(change)
        if et == CHANGE_UPDATE:
            return self._apply_update(change)
        if et == CHANGE_DELETE:
            return self._apply_delete(change)
        logger.warning("Ignoring unknown change type %r for task %s", change.event_type, change.record_id)
        return []

    def _apply_insert(self, change: LiveChange) -> list[FeedEvent]:
        task = change.new
        if not task:
            return []
        events: list[FeedEvent] = []
        if self._index(change.record_id) is None and matches_filters(task, self.filters, self.viewer):
            self._items.insert(0, task)
            events.append(FeedEvent("insert", {"task": task}))
        if is_visible_to(task, self.viewer):
            events += self._notice(change, f'New task "{task.get("task_name")}" was created')
        return events

    def _apply_update(self, change: LiveChange) -> list[FeedEvent]:
        task = change.new
        if not task:
            return []
        events: list[FeedEvent] = []
        idx = self._index(change.record_id)
        matches = matches_filters(task, self.filters, self.viewer)

        if idx is not None and matches:
            self._items[idx] = task
            events.append(FeedEvent("update", {"task": task}))
        elif idx is not None:
            del self._items[idx]
            events.append(FeedEvent("remove", {"id": int(change.record_id)}))
        elif matches:
            self._insert_sorted(task)
            events.append(FeedEvent("insert", {"task": task}))

        if is_visible_to(task, self.viewer):
            events += self._notice(change, f"{task.get('task_name')} was updated")
        return events

    def _apply_delete(self, change: LiveChange) -> list[FeedEvent]:
        events: list[FeedEvent] = []
        idx = self._index(change.record_id)
        if idx is not None:
            del self._items[idx]
            events.append(FeedEvent("remove", {"id": int(change.record_id)}))

        old = change.old or {}
        if idx is not None or (old and is_visible_to(old, self.viewer)):
            events += self._notice(change, f'Task "{old.get("task_name", "")}" was deleted')
        return events


def _loads(s: str | None) -> dict | None:
    if not s:
        return None
    try:
        obj = json.loads(s)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def latest_change_id(db: Session) -> int:
    return int(db.query(func.max(TaskChange.id)).scalar() or 0)


class DailyTaskFeed:
    """Tails the change log for one viewer.

    The feed holds no session: callers pass one per poll so the stream can open
    and close a short-lived session each tick.
    """

    def __init__(self, *, viewer: Viewer, filters: DailyTaskFilters | None = None, cursor: int | None = None):
        self.live = LiveTaskList(viewer=viewer, filters=filters)
        self.cursor = cursor

    def snapshot(self, db: Session) -> FeedEvent:
        # Capture the cursor first so no change slips between the two reads.
        if self.cursor is None:
            self.cursor = latest_change_id(db)
        viewer_user = db.query(User).filter(User.id == int(self.live.viewer.user_id)).first()
        if viewer_user is None:
            raise PermissionError("Viewer no longer exists")
        rows = list_daily_tasks(db, current_user=viewer_user, **self.live.filters.as_query_kwargs())
        self.live = LiveTaskList(
            viewer=self.live.viewer,
            filters=self.live.filters,
            tasks=[task_payload(r) for r in rows],
        )
        return FeedEvent("snapshot", {"tasks": self.live.items, "cursor": self.cursor}, id=self.cursor)

    def poll(self, db: Session, *, limit: int = 100) -> list[FeedEvent]:
        if self.cursor is None:
            return [self.snapshot(db)]

        rows = (
            db.query(TaskChange)
            .filter(TaskChange.table_name == DAILY_TASKS_TABLE)
            .filter(TaskChange.id > int(self.cursor))
            .order_by(TaskChange.id.asc())
            .limit(max(1, int(limit)))
            .all()
        )

        events: list[FeedEvent] = []
        for row in rows:
            self.cursor = max(int(self.cursor), int(row.id))
            new = None
            if row.event_type in (CHANGE_INSERT, CHANGE_UPDATE):
                current = get_daily_task(db, task_id=int(row.record_id))
                if current is None:
                    # Deleted since; the DELETE entry follows in the log.
                    continue
                new = task_payload(current)

            change = LiveChange(
                event_type=row.event_type,
                record_id=int(row.record_id),
                actor_id=row.actor_id,
                new=new,
                old=_loads(row.old_json),
            )
            for ev in self.live.apply(change):
                ev.id = int(row.id)
                events.append(ev)
        return events


def purge_old_changes(db: Session, *, retention_hours: int, now: datetime | None = None) -> int:
    cutoff = (now or now_utc()) - timedelta(hours=int(retention_hours))
    return purge_task_changes(db, older_than=cutoff)
