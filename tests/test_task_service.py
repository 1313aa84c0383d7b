"""Task service tests against a throwaway SQLite database."""
from datetime import datetime, timedelta, timezone

import pytest

import task_service
import workspace_service
from task_service import ConcurrentUpdateError

DAILY = {"frequency": "daily", "interval": 1}


def utc(year, month, day, hour=0, minute=0, second=0):
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


@pytest.fixture
def workspace():
    return workspace_service.create_workspace("Home", description="Chores")


def _events(task_id):
    return [h["event"] for h in task_service.get_task_history(task_id)]


class TestCreate:
    def test_recurring_task_is_anchored_at_creation_time(self, workspace):
        now = utc(2026, 1, 1, 8)
        t = task_service.create_task(workspace["id"], "Water plants", recurrence=DAILY, now=now)
        assert t["next_due_at"] == "2026-01-01T08:00:00Z"
        assert t["completed"] is False
        assert t["state"] == "active"
        assert t["recurrence"] == {"frequency": "daily", "interval": 1}
        assert t["recurrence_label"] == "Every day"
        assert _events(t["id"]) == ["created"]

    def test_one_off_task_has_no_anchor(self, workspace):
        t = task_service.create_task(workspace["id"], "Buy milk", due_date="2026-02-01", importance=8)
        assert t["next_due_at"] is None
        assert t["recurrence"] is None
        assert t["due_date"] == "2026-02-01T00:00:00Z"
        assert t["importance"] == 8

    def test_invalid_rule_is_rejected(self, workspace):
        with pytest.raises(ValueError, match="Invalid recurrence rule"):
            task_service.create_task(workspace["id"], "Bad", recurrence={"frequency": "daily", "interval": 0})
        assert task_service.list_tasks(workspace["id"], include_dormant=True) == []

    @pytest.mark.parametrize("importance", [0, 11])
    def test_importance_range(self, workspace, importance):
        with pytest.raises(ValueError, match="importance"):
            task_service.create_task(workspace["id"], "X", importance=importance)

    def test_unknown_workspace(self):
        with pytest.raises(ValueError, match="not found"):
            task_service.create_task("missing", "X")

    def test_blank_title(self, workspace):
        with pytest.raises(ValueError, match="title"):
            task_service.create_task(workspace["id"], "   ")


class TestComplete:
    def test_recurring_completion_advances_anchor(self, workspace):
        t = task_service.create_task(workspace["id"], "Standup", recurrence=DAILY, now=utc(2026, 1, 1, 8))
        after = task_service.complete_task(t["id"], now=utc(2026, 1, 1, 9))
        assert after["completed"] is False
        assert after["completed_at"] is None
        assert after["next_due_at"] == "2026-01-02T08:00:00Z"
        assert after["state"] == "dormant"
        assert after["version"] == t["version"] + 1
        history = task_service.get_task_history(t["id"])
        assert history[0]["event"] == "occurrence_advanced"
        assert history[0]["payload"] == {"from": "2026-01-01T08:00:00Z", "to": "2026-01-02T08:00:00Z"}

    def test_one_off_completion_and_restore(self, workspace):
        t = task_service.create_task(workspace["id"], "File taxes")
        done = task_service.complete_task(t["id"], now=utc(2026, 4, 1, 10))
        assert done["completed"] is True
        assert done["completed_at"] == "2026-04-01T10:00:00Z"
        assert done["state"] == "completed"
        restored = task_service.restore_task(t["id"], now=utc(2026, 4, 1, 11))
        assert restored["completed"] is False
        assert restored["completed_at"] is None
        assert _events(t["id"]) == ["restored", "completed", "created"]

    def test_exhausted_rule_completes_task(self, workspace):
        rule = {"frequency": "weekly", "endsAt": "2026-01-05T00:00:00Z"}
        t = task_service.create_task(workspace["id"], "Trial", recurrence=rule, now=utc(2026, 1, 1))
        done = task_service.complete_task(t["id"], now=utc(2026, 1, 1, 1))
        assert done["completed"] is True
        assert done["completed_at"] == "2026-01-01T01:00:00Z"
        assert done["next_due_at"] is None
        assert done["recurrence"]["endsAt"] == "2026-01-05T00:00:00Z"
        assert _events(t["id"])[0] == "recurrence_exhausted"

    def test_completing_twice_does_not_write(self, workspace):
        t = task_service.create_task(workspace["id"], "Once")
        first = task_service.complete_task(t["id"], now=utc(2026, 1, 1))
        second = task_service.complete_task(t["id"], now=utc(2026, 1, 2))
        assert second["completed_at"] == first["completed_at"]
        assert second["version"] == first["version"]

    def test_missing_task(self):
        assert task_service.complete_task("nope") is None
        assert task_service.restore_task("nope") is None

    def test_stale_version_is_rejected(self, workspace):
        t = task_service.create_task(workspace["id"], "Shared", recurrence=DAILY, now=utc(2026, 1, 1, 8))
        task_service.update_task(t["id"], title="Shared (renamed)", now=utc(2026, 1, 1, 8, 30))
        with pytest.raises(ConcurrentUpdateError):
            task_service.complete_task(t["id"], expected_version=t["version"], now=utc(2026, 1, 1, 9))
        assert task_service.get_task(t["id"])["next_due_at"] == "2026-01-01T08:00:00Z"


class TestVisibility:
    def test_dormant_tasks_are_hidden_from_lists_and_counts(self, workspace):
        wid = workspace["id"]
        recurring = task_service.create_task(wid, "Gym", recurrence=DAILY, now=utc(2026, 1, 1, 8))
        task_service.create_task(wid, "Read book", now=utc(2026, 1, 1, 8))
        done = task_service.create_task(wid, "Call mom", now=utc(2026, 1, 1, 8))
        task_service.complete_task(done["id"], now=utc(2026, 1, 1, 9))
        task_service.complete_task(recurring["id"], now=utc(2026, 1, 1, 9))

        at_noon = utc(2026, 1, 1, 12)
        titles = {t["title"] for t in task_service.list_tasks(wid, now=at_noon)}
        assert titles == {"Read book", "Call mom"}
        all_titles = {t["title"] for t in task_service.list_tasks(wid, include_dormant=True, now=at_noon)}
        assert "Gym" in all_titles
        assert task_service.workspace_task_counts(wid, now=at_noon) == {"active": 1, "dormant": 1, "completed": 1}

        next_day = utc(2026, 1, 2, 8)
        titles = {t["title"] for t in task_service.list_tasks(wid, completed=False, now=next_day)}
        assert titles == {"Gym", "Read book"}
        assert task_service.workspace_task_counts(wid, now=next_day)["active"] == 2

    def test_search_and_sort(self, workspace):
        wid = workspace["id"]
        task_service.create_task(wid, "Write report", importance=3, now=utc(2026, 1, 1, 8))
        task_service.create_task(wid, "Review report", importance=9, now=utc(2026, 1, 1, 9))
        task_service.create_task(wid, "Lunch", description="with the report team", now=utc(2026, 1, 1, 10))
        found = task_service.list_tasks(wid, search="report", sort_by="importance", order="desc")
        assert [t["title"] for t in found] == ["Review report", "Lunch", "Write report"]
        with pytest.raises(ValueError):
            task_service.list_tasks(wid, sort_by="colour")


class TestUpdate:
    def test_plain_edits_leave_schedule_alone(self, workspace):
        t = task_service.create_task(workspace["id"], "Gym", recurrence=DAILY, now=utc(2026, 1, 1, 8))
        task_service.complete_task(t["id"], now=utc(2026, 1, 1, 9))
        edited = task_service.update_task(
            t["id"], title="Gym session", description="legs", importance=7, now=utc(2026, 1, 1, 10)
        )
        assert edited["title"] == "Gym session"
        assert edited["importance"] == 7
        assert edited["next_due_at"] == "2026-01-02T08:00:00Z"

    def test_replacing_rule_keeps_anchor(self, workspace):
        t = task_service.create_task(workspace["id"], "Gym", recurrence=DAILY, now=utc(2026, 1, 1, 8))
        edited = task_service.update_task(
            t["id"], recurrence={"frequency": "weekly", "daysOfWeek": [1, 4]}, now=utc(2026, 1, 3)
        )
        assert edited["next_due_at"] == "2026-01-01T08:00:00Z"
        assert edited["recurrence_label"] == "Every Mon, Thu"

    def test_removing_rule_clears_anchor(self, workspace):
        t = task_service.create_task(workspace["id"], "Gym", recurrence=DAILY, now=utc(2026, 1, 1, 8))
        edited = task_service.update_task(t["id"], recurrence=None, now=utc(2026, 1, 1, 9))
        assert edited["recurrence"] is None
        assert edited["next_due_at"] is None

    def test_attaching_rule_anchors_at_now(self, workspace):
        t = task_service.create_task(workspace["id"], "Backup", now=utc(2026, 1, 1, 8))
        edited = task_service.update_task(t["id"], recurrence={"frequency": "monthly", "dayOfMonth": 1}, now=utc(2026, 1, 5))
        assert edited["next_due_at"] == "2026-01-05T00:00:00Z"
        assert edited["state"] == "active"

    def test_invalid_update(self, workspace):
        t = task_service.create_task(workspace["id"], "X")
        with pytest.raises(ValueError):
            task_service.update_task(t["id"], recurrence={"frequency": "weekly", "daysOfWeek": [9]})
        with pytest.raises(ValueError):
            task_service.update_task(t["id"], title="")
        assert task_service.update_task("missing", title="Y") is None


def test_delete_task_and_workspace(workspace):
    wid = workspace["id"]
    a = task_service.create_task(wid, "A")
    b = task_service.create_task(wid, "B")
    task_service.complete_task(b["id"])
    assert task_service.delete_task(a["id"]) is True
    assert task_service.delete_task(a["id"]) is False
    assert workspace_service.delete_workspace(wid) is True
    assert task_service.get_task(b["id"]) is None
    assert task_service.get_task_history(b["id"]) == []
    assert workspace_service.delete_workspace(wid) is False


def test_workspace_crud():
    w = workspace_service.create_workspace("  Work  ")
    assert w["name"] == "Work"
    assert w["icon"] == workspace_service.DEFAULT_ICON
    workspace_service.create_workspace("errands")
    assert [x["name"] for x in workspace_service.list_workspaces()] == ["errands", "Work"]
    updated = workspace_service.update_workspace(w["id"], name="Office", icon="briefcase")
    assert updated["name"] == "Office"
    assert updated["icon"] == "briefcase"
    assert workspace_service.update_workspace("missing", name="x") is None
    with pytest.raises(ValueError):
        workspace_service.create_workspace("")
