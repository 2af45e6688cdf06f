from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Callable

from tasksync.caldav_client import CalDAVService
from tasksync.config_manager import ConfigManager
from tasksync.errors import ConnectivityError
from tasksync.filters import SyncFilter
from tasksync.hyperlinks import build_obsidian_uri
from tasksync.mapping import MappingStore
from tasksync.models import AppConfig, LocalTask, SyncReport, SyncResult
from tasksync.orchestrator import SyncOrchestrator
from tasksync.retry import RetryExecutor, RetryPolicy
from tasksync.state_store import StateStore
from tasksync.vault import MarkdownTaskWriter, VaultScanner

logger = logging.getLogger(__name__)


def _duration_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def _link_builder(config: AppConfig) -> Callable[[LocalTask], str] | None:
    vault_name = config.vault.name
    if not vault_name:
        return None

    def build(task: LocalTask) -> str:
        try:
            return build_obsidian_uri(vault_name, task.file_path, task.local_id)
        except ValueError as exc:
            logger.warning("No deep link for task %s: %s", task.local_id, exc)
            return ""

    return build


class SyncEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store

    def _skip(self, trigger: str, started_at: datetime, message: str) -> SyncResult:
        duration_ms = _duration_ms(started_at)
        logger.info(message)
        self.state_store.record_sync_run(
            trigger=trigger,
            status="skipped",
            message=message,
            duration_ms=duration_ms,
            changes_applied=0,
            conflicts=0,
        )
        return SyncResult(
            status="skipped",
            message=message,
            duration_ms=duration_ms,
            changes_applied=0,
            conflicts=0,
            trigger=trigger,
        )

    def _record_actions(self, report: SyncReport, run_id: int, trigger: str) -> None:
        for action in report.actions:
            self.state_store.record_audit_event(
                local_id=action.local_id,
                remote_uid=action.remote_uid,
                action=action.action,
                details={"trigger": trigger, **action.details},
                run_id=run_id,
            )

    def run_once(self, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        try:
            config = self.config_manager.load()
        except Exception as exc:
            run_id = self.state_store.start_sync_run(trigger=trigger)
            return self._fail(trigger, run_id, started_at, exc, action="run_error")
        if not config.caldav.base_url or not config.caldav.username:
            return self._skip(trigger, started_at, "CalDAV config missing base_url/username. Sync skipped.")
        if not config.vault.path:
            return self._skip(trigger, started_at, "Vault path not configured. Sync skipped.")

        run_id = self.state_store.start_sync_run(trigger=trigger)
        logger.info("Sync run %s started (trigger=%s)", run_id, trigger)
        try:
            mappings = MappingStore(
                self.state_store.load_mappings(),
                save_callback=self.state_store.save_mappings,
            )
            task_filter = SyncFilter(config.filters)
            tasks = [task for task in VaultScanner(config.vault.path).scan() if task_filter.should_sync(task, mappings)]
            orchestrator = SyncOrchestrator(
                remote=CalDAVService(config.caldav),
                writer=MarkdownTaskWriter(config.vault.path),
                mappings=mappings,
                executor=RetryExecutor(RetryPolicy.from_config(config.retry)),
                hyperlink_mode=config.sync.hyperlink_mode,
                link_builder=_link_builder(config),
            )
            report = orchestrator.run_cycle(tasks)
        except ConnectivityError as exc:
            return self._fail(trigger, run_id, started_at, exc, action="cycle_aborted")
        except Exception as exc:
            return self._fail(trigger, run_id, started_at, exc, action="run_error")

        self._record_actions(report, run_id, trigger)
        errors = [f"{failure.location} {failure.local_id}: {failure.message}".strip() for failure in report.failures]
        status = "partial" if report.failures else "success"
        message = f"Processed {len(tasks)} tasks: {report.summary()}"
        duration_ms = _duration_ms(started_at)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status=status,
            message=message,
            duration_ms=duration_ms,
            changes_applied=report.changes_applied,
            conflicts=report.conflicts,
            failed=report.failed,
            errors=errors,
        )
        logger.info("Sync run %s finished with status %s: %s", run_id, status, message)
        return SyncResult(
            status=status,
            message=f"{message} run_id={run_id}",
            duration_ms=duration_ms,
            changes_applied=report.changes_applied,
            conflicts=report.conflicts,
            trigger=trigger,
            failed=report.failed,
            errors=errors,
        )

    def _fail(self, trigger: str, run_id: int, started_at: datetime, exc: Exception, action: str) -> SyncResult:
        duration_ms = _duration_ms(started_at)
        error_message = f"{type(exc).__name__}: {exc}"
        logger.error("Sync run %s failed: %s", run_id, error_message)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status="error",
            message=error_message,
            duration_ms=duration_ms,
            changes_applied=0,
            conflicts=0,
            failed=1,
            errors=[error_message],
        )
        self.state_store.record_audit_event(
            local_id="system",
            remote_uid="sync",
            action=action,
            details={
                "trigger": trigger,
                "error": error_message,
                "traceback": traceback.format_exc(limit=5),
            },
            run_id=run_id,
        )
        return SyncResult(
            status="error",
            message=error_message,
            duration_ms=duration_ms,
            changes_applied=0,
            conflicts=0,
            trigger=trigger,
            failed=1,
            errors=[error_message],
        )
