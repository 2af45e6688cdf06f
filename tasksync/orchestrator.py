from __future__ import annotations

import logging
import math
import uuid
from datetime import date, datetime
from typing import Callable, Protocol

from tasksync.conflict import format_conflict_log, resolve
from tasksync.errors import ConnectivityError
from tasksync.hyperlinks import build_remote_description, process_description
from tasksync.mapping import MappingStore, content_fingerprint, fingerprint
from tasksync.models import (
    HyperlinkMode,
    LocalTask,
    RemoteRecord,
    RemoteStatus,
    Side,
    SyncMapping,
    SyncReport,
    TaskFailure,
    TaskStatus,
    utc_now,
)
from tasksync.retry import RetryExecutor
from tasksync.vtodo import patch_record

logger = logging.getLogger(__name__)


class RemoteClient(Protocol):
    def connect(self) -> None: ...

    def fetch_all(self) -> list[RemoteRecord]: ...

    def fetch_raw(self, uid: str, location: str = "") -> str: ...

    def read(self, location: str) -> RemoteRecord: ...

    def create(
        self, uid: str, summary: str, due: date | None, status: RemoteStatus, description: str | None = None
    ) -> str: ...

    def update_raw(self, uid: str, raw: str, concurrency_token: str, location: str = "") -> str: ...


class TaskWriter(Protocol):
    def assign_id(self, task: LocalTask) -> str: ...

    def write(self, task: LocalTask, description: str, due: date | None, status: TaskStatus) -> bool: ...


def _whole_seconds(value: datetime) -> int:
    return math.floor(value.timestamp())


class SyncOrchestrator:
    """Runs one reconciliation cycle over the tasks handed in by the scanner.

    Tasks are processed one at a time in the given order. A failure inside one
    task is recorded in the report and the loop moves on; only a failure to
    reach the remote store before the first task aborts the cycle. The
    mapping store is flushed right after every action that changed it.
    """

    def __init__(
        self,
        remote: RemoteClient,
        writer: TaskWriter,
        mappings: MappingStore,
        executor: RetryExecutor | None = None,
        clock: Callable[[], datetime] = utc_now,
        hyperlink_mode: HyperlinkMode | str = HyperlinkMode.KEEP,
        link_builder: Callable[[LocalTask], str] | None = None,
    ) -> None:
        self.remote = remote
        self.writer = writer
        self.mappings = mappings
        self.executor = executor or RetryExecutor()
        self.clock = clock
        self.hyperlink_mode = HyperlinkMode(hyperlink_mode)
        self.link_builder = link_builder

    def run_cycle(self, tasks: list[LocalTask]) -> SyncReport:
        try:
            self.executor.execute(self.remote.connect, "connect to remote store")
            records = self.executor.execute(self.remote.fetch_all, "fetch remote tasks")
        except ConnectivityError:
            raise
        except Exception as exc:
            raise ConnectivityError(f"Cannot reach remote store: {type(exc).__name__}: {exc}") from exc

        remote_by_uid = {record.uid: record for record in records}
        logger.info("Sync cycle started: %d local tasks, %d remote tasks", len(tasks), len(remote_by_uid))
        report = SyncReport()
        for task in tasks:
            try:
                self._sync_task(task, remote_by_uid, report)
            except Exception as exc:
                message = f"{type(exc).__name__}: {exc}"
                location = f"{task.file_path}:{task.line_number}"
                logger.error("Failed to sync task %s (%s): %s", task.local_id or "<new>", location, message)
                report.failures.append(TaskFailure(task.local_id, location, message))
                mapping = self.mappings.get(task.local_id) if task.local_id else None
                report.record(task.local_id, mapping.remote_uid if mapping else "", "failed", error=message)
        logger.info("Sync cycle finished: %s", report.summary())
        return report

    def _summary(self, task: LocalTask) -> str:
        return process_description(task.description, self.hyperlink_mode).summary

    def _sync_task(self, task: LocalTask, remote_by_uid: dict[str, RemoteRecord], report: SyncReport) -> None:
        if not task.local_id:
            self.writer.assign_id(task)

        mapping = self.mappings.get(task.local_id)
        if mapping is None:
            self._sync_untracked(task, remote_by_uid, report)
            return

        remote = remote_by_uid.get(mapping.remote_uid)
        if remote is None:
            logger.warning(
                "Remote task %s mapped to %s no longer exists, skipping", mapping.remote_uid, task.local_id
            )
            report.orphaned += 1
            report.record(task.local_id, mapping.remote_uid, "orphaned")
            return

        local_changed = fingerprint(task) != mapping.last_known_fingerprint
        remote_changed = _whole_seconds(remote.last_modified) > _whole_seconds(mapping.last_known_remote_modified)
        logger.debug(
            "Task %s: local_changed=%s remote_changed=%s", task.local_id, local_changed, remote_changed
        )

        if local_changed and remote_changed:
            resolution = resolve(mapping.last_known_local_modified, remote.last_modified)
            logger.info(format_conflict_log(resolution, task.description))
            report.conflicts += 1
            report.record(
                task.local_id,
                remote.uid,
                "conflict",
                winner=resolution.winner.value,
                reason=resolution.reason,
            )
            if resolution.winner == Side.REMOTE:
                self._pull(task, remote, report)
            else:
                self._push(task, remote, report)
        elif local_changed:
            self._push(task, remote, report)
        elif remote_changed:
            self._pull(task, remote, report)
        else:
            mismatched = self._mismatched_fields(task, remote)
            if mismatched:
                logger.warning(
                    "Task %s differs from remote %s in %s with no detected change, pushing local values",
                    task.local_id,
                    remote.uid,
                    ", ".join(mismatched),
                )
                self._push(task, remote, report, forced=True)
            else:
                report.unchanged += 1

    def _mismatched_fields(self, task: LocalTask, remote: RemoteRecord) -> list[str]:
        mismatched = []
        if self._summary(task) != remote.summary:
            mismatched.append("summary")
        if task.remote_status != remote.status:
            mismatched.append("status")
        if task.due_date != remote.due:
            mismatched.append("due")
        return mismatched

    def _find_match(self, task: LocalTask, remote_by_uid: dict[str, RemoteRecord]) -> RemoteRecord | None:
        wanted = {task.description.casefold(), self._summary(task).casefold()}
        taken = self.mappings.mapped_remote_uids()
        for record in remote_by_uid.values():
            if record.uid in taken:
                continue
            if record.summary.casefold() in wanted:
                return record
        return None

    def _sync_untracked(self, task: LocalTask, remote_by_uid: dict[str, RemoteRecord], report: SyncReport) -> None:
        match = self._find_match(task, remote_by_uid)
        if match is not None:
            self._store(task.local_id, match, fingerprint(task))
            report.reconciled += 1
            report.record(task.local_id, match.uid, "reconciled", summary=match.summary)
            logger.info("Reconciled task %s with existing remote task %s", task.local_id, match.uid)
            return

        processed = process_description(task.description, self.hyperlink_mode)
        uri = self.link_builder(task) if self.link_builder is not None else ""
        description = build_remote_description(processed.links_block, uri) or None
        # Fixed before the first attempt so retries reuse it.
        uid = str(uuid.uuid4())
        location = self.executor.execute(
            lambda: self.remote.create(uid, processed.summary, task.due_date, task.remote_status, description),
            f"create remote task for {task.local_id}",
        )
        created = self.executor.execute(lambda: self.remote.read(location), f"read back remote task {uid}")
        self._store(task.local_id, created, fingerprint(task))
        report.created += 1
        report.record(task.local_id, created.uid, "created", summary=processed.summary)
        logger.info("Created remote task %s for %s", created.uid, task.local_id)

    def _push(
        self,
        task: LocalTask,
        remote: RemoteRecord,
        report: SyncReport,
        forced: bool = False,
    ) -> None:
        summary = self._summary(task)
        raw = self.executor.execute(
            lambda: self.remote.fetch_raw(remote.uid, remote.location),
            f"fetch remote task {remote.uid}",
        )
        patched = patch_record(raw, summary, task.due_date, task.remote_status, now=self.clock())
        location = self.executor.execute(
            lambda: self.remote.update_raw(remote.uid, patched, remote.concurrency_token, remote.location),
            f"update remote task {remote.uid}",
        )
        updated = self.executor.execute(lambda: self.remote.read(location), f"read back remote task {remote.uid}")
        self._store(task.local_id, updated, fingerprint(task), fallback=remote)
        report.pushed += 1
        report.record(task.local_id, remote.uid, "pushed", summary=summary, forced=forced)
        logger.info("Pushed task %s to remote %s", task.local_id, remote.uid)

    def _pull(self, task: LocalTask, remote: RemoteRecord, report: SyncReport) -> None:
        description = " ".join(remote.summary.split()) or task.description
        status = remote.status.to_task_status()
        self.writer.write(task, description, remote.due, status)
        self._store(task.local_id, remote, content_fingerprint(description, remote.due, status))
        report.pulled += 1
        report.record(task.local_id, remote.uid, "pulled", summary=description, status=status.value)
        logger.info("Pulled remote %s into task %s", remote.uid, task.local_id)

    def _store(
        self,
        local_id: str,
        record: RemoteRecord,
        content_hash: str,
        fallback: RemoteRecord | None = None,
    ) -> None:
        now = self.clock()
        self.mappings.put(
            SyncMapping(
                local_id=local_id,
                remote_uid=record.uid or (fallback.uid if fallback else ""),
                last_sync_time=now,
                last_known_fingerprint=content_hash,
                last_known_local_modified=now,
                last_known_remote_modified=record.last_modified,
                remote_concurrency_token=record.concurrency_token,
                remote_location=record.location or (fallback.location if fallback else ""),
            )
        )
        self.mappings.flush()
