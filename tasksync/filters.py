from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from tasksync.mapping import MappingStore
from tasksync.models import FilterConfig, LocalTask, TaskStatus


def _normalize_tag(tag: str) -> str:
    tag = tag.strip()
    if not tag:
        return ""
    return (tag if tag.startswith("#") else f"#{tag}").casefold()


def _normalize_folder(folder: str) -> str:
    return folder.strip().replace("\\", "/").strip("/")


class SyncFilter:
    def __init__(self, config: FilterConfig, now: datetime | None = None) -> None:
        self.config = config
        today = (now or datetime.now(timezone.utc)).date()
        self.today = today
        self.excluded_folders = [f for f in (_normalize_folder(x) for x in config.excluded_folders) if f]
        self.excluded_tags = {t for t in (_normalize_tag(x) for x in config.excluded_tags) if t}
        self.completed_cutoff: date | None = None
        if config.completed_task_age_days > 0:
            self.completed_cutoff = today - timedelta(days=config.completed_task_age_days)

    def should_sync(self, task: LocalTask, mappings: MappingStore | None = None) -> bool:
        if self.config.sync_only_tasks_with_due_date and task.due_date is None:
            # Tasks synced before the filter was enabled keep syncing.
            if not (task.local_id and mappings is not None and mappings.get(task.local_id)):
                return False
        if self._in_excluded_folder(task.file_path):
            return False
        if any(_normalize_tag(tag) in self.excluded_tags for tag in task.tags):
            return False
        if self._completed_too_old(task):
            return False
        return True

    def _in_excluded_folder(self, file_path: str) -> bool:
        path = file_path.replace("\\", "/")
        for folder in self.excluded_folders:
            if path == folder or path.startswith(folder + "/"):
                return True
        return False

    def _completed_too_old(self, task: LocalTask) -> bool:
        if task.status != TaskStatus.COMPLETED or self.completed_cutoff is None:
            return False
        completed_on = task.completion_date or self.today
        return completed_on < self.completed_cutoff
