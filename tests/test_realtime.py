import json
from datetime import date, datetime, timedelta

from teamdesk.crud import create_daily_task, delete_daily_task, mark_daily_task_completed, update_daily_task
from teamdesk.models import TaskChange
from teamdesk.realtime import (
    DailyTaskFeed,
    DailyTaskFilters,
    FeedEvent,
    LiveChange,
    LiveTaskList,
    Viewer,
    matches_filters,
    purge_old_changes,
)


MANAGER = Viewer(user_id=1, is_manager=True)
MEMBER = Viewer(user_id=2)


def _task(id, *, user_id=2, status="pending", created_at="2026-10-18T09:00:00", **kw):
    t = {
        "id": id,
        "task_name": f"Task {id}",
        "description": None,
        "status": status,
        "priority": "medium",
        "user_id": user_id,
        "project_id": None,
        "task_date": "2026-10-18",
        "created_at": created_at,
    }
    t.update(kw)
    return t


def test_matches_filters_applies_role_scoping():
    mine = _task(1, user_id=2)
    theirs = _task(2, user_id=3)
    filters = DailyTaskFilters()

    assert matches_filters(mine, filters, MEMBER)
    assert not matches_filters(theirs, filters, MEMBER)
    assert matches_filters(theirs, filters, MANAGER)


def test_matches_filters_fields():
    t = _task(1, status="completed", priority="high", project_id=7, description="Call the VENDOR")

    assert matches_filters(t, DailyTaskFilters(status="completed", priority="high", project_id=7), MANAGER)
    assert matches_filters(t, DailyTaskFilters(search="vendor"), MANAGER)
    assert matches_filters(t, DailyTaskFilters(task_date=date(2026, 10, 18), member=2), MANAGER)
    assert not matches_filters(t, DailyTaskFilters(status="pending"), MANAGER)
    assert not matches_filters(t, DailyTaskFilters(task_date=date(2026, 10, 17)), MANAGER)
    assert not matches_filters(t, DailyTaskFilters(search="invoice"), MANAGER)
    assert not matches_filters(t, DailyTaskFilters(member=5), MANAGER)


def test_insert_adds_matching_task_at_top_once():
    live = LiveTaskList(viewer=MANAGER, tasks=[_task(1)])

    events = live.apply(LiveChange("INSERT", 2, actor_id=2, new=_task(2)))

    assert live.ids() == [2, 1]
    assert [e.event for e in events] == ["insert", "notice"]
    assert events[1].data["message"] == 'New task "Task 2" was created'

    assert [e.event for e in live.apply(LiveChange("INSERT", 2, actor_id=1, new=_task(2)))] == []
    assert live.ids() == [2, 1]


def test_insert_ignores_tasks_outside_the_filter():
    live = LiveTaskList(viewer=MANAGER, filters=DailyTaskFilters(status="pending"))

    events = live.apply(LiveChange("INSERT", 3, actor_id=1, new=_task(3, status="completed")))

    assert live.ids() == []
    assert events == []


def test_update_replaces_in_place_and_notifies_others():
    live = LiveTaskList(viewer=MEMBER, tasks=[_task(2), _task(1)])

    events = live.apply(LiveChange("UPDATE", 1, actor_id=1, new=_task(1, task_name="Renamed")))

    assert live.ids() == [2, 1]
    assert live.items[1]["task_name"] == "Renamed"
    assert [e.event for e in events] == ["update", "notice"]
    assert events[1].data["message"] == "Renamed was updated"


def test_update_removes_task_that_stops_matching():
    live = LiveTaskList(viewer=MEMBER, filters=DailyTaskFilters(status="pending"), tasks=[_task(1)])

    events = live.apply(LiveChange("UPDATE", 1, actor_id=2, new=_task(1, status="completed")))

    assert live.ids() == []
    assert [(e.event, e.data) for e in events] == [("remove", {"id": 1})]


def test_update_adds_hidden_task_that_starts_matching():
    older = _task(1, created_at="2026-10-18T08:00:00")
    newer = _task(3, created_at="2026-10-18T10:00:00")
    live = LiveTaskList(viewer=MANAGER, filters=DailyTaskFilters(status="pending"), tasks=[newer, older])

    middle = _task(2, created_at="2026-10-18T09:00:00")
    events = live.apply(LiveChange("UPDATE", 2, actor_id=1, new=middle))

    assert live.ids() == [3, 2, 1]
    assert [e.event for e in events] == ["insert"]


def test_delete_removes_by_id():
    live = LiveTaskList(viewer=MANAGER, tasks=[_task(2), _task(1)])

    events = live.apply(LiveChange("DELETE", 2, actor_id=2, old=_task(2)))

    assert live.ids() == [1]
    assert [e.event for e in events] == ["remove", "notice"]
    assert events[1].data["message"] == 'Task "Task 2" was deleted'


def test_changes_to_invisible_tasks_are_silent_for_members():
    live = LiveTaskList(viewer=MEMBER)

    assert live.apply(LiveChange("INSERT", 9, actor_id=3, new=_task(9, user_id=3))) == []
    assert live.apply(LiveChange("DELETE", 9, actor_id=3, old=_task(9, user_id=3))) == []


def test_feed_event_sse_framing():
    frame = FeedEvent("remove", {"id": 4}, id=12).to_sse()

    assert frame == 'id: 12\nevent: remove\ndata: {"id": 4}\n\n'


def test_feed_tails_change_log(db, manager, member):
    existing = create_daily_task(db, current_user=member, task_name="Existing")
    feed = DailyTaskFeed(viewer=Viewer.from_user(manager))

    snap = feed.snapshot(db)
    assert snap.event == "snapshot"
    assert [t["id"] for t in snap.data["tasks"]] == [existing.id]
    assert feed.poll(db) == []

    added = create_daily_task(db, current_user=member, task_name="Added")
    mark_daily_task_completed(db, task=existing, current_user=member)
    events = feed.poll(db)

    assert [e.event for e in events] == ["insert", "notice", "update", "notice"]
    assert events[0].data["task"]["task_name"] == "Added"
    assert events[2].data["task"]["status"] == "completed"
    assert all(e.id is not None for e in events)
    assert feed.live.ids() == [added.id, existing.id]

    delete_daily_task(db, task=added, current_user=manager)
    events = feed.poll(db)

    # The viewer made this change, so no notice.
    assert [(e.event, e.data) for e in events] == [("remove", {"id": added.id})]
    assert feed.live.ids() == [existing.id]


def test_feed_skips_rows_deleted_before_poll(db, manager, member):
    feed = DailyTaskFeed(viewer=Viewer.from_user(member), filters=DailyTaskFilters(status="pending"))
    feed.snapshot(db)

    short_lived = create_daily_task(db, current_user=manager, user_id=member.id, task_name="Blink")
    update_daily_task(db, task=short_lived, current_user=manager, task_name="Blink twice")
    delete_daily_task(db, task=short_lived, current_user=manager)

    events = feed.poll(db)

    assert [e.event for e in events] == ["notice"]
    assert events[0].data["message"] == 'Task "Blink twice" was deleted'
    assert feed.live.ids() == []


def test_feed_search_agrees_with_list_query(db, manager, member):
    lookalike = create_daily_task(db, current_user=member, task_name="reportXq3")
    exact = create_daily_task(db, current_user=member, task_name="report_q3 numbers")
    feed = DailyTaskFeed(viewer=Viewer.from_user(manager), filters=DailyTaskFilters(search="report_q3"))

    snap = feed.snapshot(db)
    assert [t["id"] for t in snap.data["tasks"]] == [exact.id]

    update_daily_task(db, task=exact, current_user=member, description="Updated figures")
    update_daily_task(db, task=lookalike, current_user=member, description="Updated figures")
    events = feed.poll(db)

    # The lookalike only produces a notice; the real match stays listed.
    assert [e.event for e in events] == ["update", "notice", "notice"]
    assert feed.live.ids() == [exact.id]


def test_purge_old_changes(db, member):
    create_daily_task(db, current_user=member, task_name="Old")
    old = db.query(TaskChange).one()
    old.created_at = datetime.utcnow() - timedelta(days=10)
    db.add(old)
    db.commit()
    create_daily_task(db, current_user=member, task_name="Fresh")

    purged = purge_old_changes(db, retention_hours=48, now=datetime.utcnow() + timedelta(minutes=1))

    assert purged == 1
    remaining = db.query(TaskChange).all()
    assert [json.loads(c.new_json)["task_name"] for c in remaining] == ["Fresh"]
