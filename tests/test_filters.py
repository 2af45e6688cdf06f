import unittest
from datetime import date, datetime, timezone

from tasksync.filters import SyncFilter
from tasksync.mapping import MappingStore
from tasksync.models import FilterConfig, LocalTask, SyncMapping, TaskStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _task(**overrides) -> LocalTask:
    values = {
        "local_id": "task-1",
        "description": "Write report",
        "due_date": date(2026, 3, 5),
        "status": TaskStatus.OPEN,
        "tags": [],
        "file_path": "Work/Reports.md",
        "line_number": 1,
    }
    values.update(overrides)
    return LocalTask(**values)


class SyncFilterTests(unittest.TestCase):
    def test_defaults_sync_everything_recent(self) -> None:
        task_filter = SyncFilter(FilterConfig(), now=NOW)
        self.assertTrue(task_filter.should_sync(_task()))
        self.assertTrue(task_filter.should_sync(_task(due_date=None)))

    def test_excluded_folders_match_by_prefix(self) -> None:
        task_filter = SyncFilter(FilterConfig(excluded_folders=["Archive", "Work/Old/"]), now=NOW)
        self.assertFalse(task_filter.should_sync(_task(file_path="Archive/2025.md")))
        self.assertFalse(task_filter.should_sync(_task(file_path="Work/Old/notes.md")))
        self.assertTrue(task_filter.should_sync(_task(file_path="Archived ideas.md")))
        self.assertTrue(task_filter.should_sync(_task(file_path="Work/Reports.md")))

    def test_excluded_tags_accept_with_or_without_hash(self) -> None:
        task_filter = SyncFilter(FilterConfig(excluded_tags=["private", "#someday"]), now=NOW)
        self.assertFalse(task_filter.should_sync(_task(tags=["#private"])))
        self.assertFalse(task_filter.should_sync(_task(tags=["#work", "#someday"])))
        self.assertTrue(task_filter.should_sync(_task(tags=["#work"])))

    def test_completed_age_limit(self) -> None:
        task_filter = SyncFilter(FilterConfig(completed_task_age_days=30), now=NOW)
        old = _task(status=TaskStatus.COMPLETED, completion_date=date(2026, 1, 1))
        recent = _task(status=TaskStatus.COMPLETED, completion_date=date(2026, 2, 20))
        undated = _task(status=TaskStatus.COMPLETED)
        self.assertFalse(task_filter.should_sync(old))
        self.assertTrue(task_filter.should_sync(recent))
        self.assertTrue(task_filter.should_sync(undated))

    def test_zero_age_limit_keeps_all_completed(self) -> None:
        task_filter = SyncFilter(FilterConfig(completed_task_age_days=0), now=NOW)
        old = _task(status=TaskStatus.COMPLETED, completion_date=date(2020, 1, 1))
        self.assertTrue(task_filter.should_sync(old))

    def test_due_date_only_keeps_already_mapped_tasks(self) -> None:
        task_filter = SyncFilter(FilterConfig(sync_only_tasks_with_due_date=True), now=NOW)
        mappings = MappingStore(
            [
                SyncMapping(
                    local_id="task-mapped",
                    remote_uid="uid-1",
                    last_sync_time=NOW,
                    last_known_fingerprint="x",
                    last_known_local_modified=NOW,
                    last_known_remote_modified=NOW,
                )
            ]
        )
        self.assertTrue(task_filter.should_sync(_task(), mappings))
        self.assertFalse(task_filter.should_sync(_task(due_date=None), mappings))
        self.assertFalse(task_filter.should_sync(_task(local_id="", due_date=None), mappings))
        self.assertTrue(task_filter.should_sync(_task(local_id="task-mapped", due_date=None), mappings))


if __name__ == "__main__":
    unittest.main()
