from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text or text == "null":
        return None
    return date.fromisoformat(text)


def serialize_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _string_list(values: Any) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return []
    return [str(x).strip() for x in values if str(x).strip()]


class TaskStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"


class RemoteStatus(str, Enum):
    NEEDS_ACTION = "NEEDS-ACTION"
    COMPLETED = "COMPLETED"

    @classmethod
    def from_task_status(cls, status: TaskStatus) -> "RemoteStatus":
        return cls.COMPLETED if status == TaskStatus.COMPLETED else cls.NEEDS_ACTION

    def to_task_status(self) -> TaskStatus:
        return TaskStatus.COMPLETED if self == RemoteStatus.COMPLETED else TaskStatus.OPEN


class HyperlinkMode(str, Enum):
    KEEP = "keep"
    MOVE = "move"
    STRIP = "strip"


class Side(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_path: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_path=str(data.get("calendar_path", "")).strip(),
        )


@dataclass
class VaultConfig:
    path: str = ""
    name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "VaultConfig":
        data = data or {}
        return cls(
            path=str(data.get("path", "")).strip(),
            name=str(data.get("name", "")).strip(),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 60
    enable_auto_sync: bool = True
    hyperlink_mode: str = HyperlinkMode.KEEP.value

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        mode = str(data.get("hyperlink_mode", HyperlinkMode.KEEP.value)).strip().lower()
        if mode not in {item.value for item in HyperlinkMode}:
            mode = HyperlinkMode.KEEP.value
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 60))),
            enable_auto_sync=bool(data.get("enable_auto_sync", True)),
            hyperlink_mode=mode,
        )


@dataclass
class FilterConfig:
    excluded_folders: list[str] = field(default_factory=list)
    excluded_tags: list[str] = field(default_factory=list)
    completed_task_age_days: int = 30
    sync_only_tasks_with_due_date: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FilterConfig":
        data = data or {}
        return cls(
            excluded_folders=_string_list(data.get("excluded_folders", [])),
            excluded_tags=_string_list(data.get("excluded_tags", [])),
            completed_task_age_days=max(0, int(data.get("completed_task_age_days", 30))),
            sync_only_tasks_with_due_date=bool(data.get("sync_only_tasks_with_due_date", False)),
        )


@dataclass
class RetryConfig:
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 10.0
    rate_limit_delay_seconds: float = 5.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RetryConfig":
        data = data or {}
        return cls(
            max_attempts=max(1, int(data.get("max_attempts", 3))),
            initial_delay_seconds=max(0.0, float(data.get("initial_delay_seconds", 1.0))),
            multiplier=max(1.0, float(data.get("multiplier", 2.0))),
            max_delay_seconds=max(0.0, float(data.get("max_delay_seconds", 10.0))),
            rate_limit_delay_seconds=max(0.0, float(data.get("rate_limit_delay_seconds", 5.0))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        return cls(level=level if level in LOG_LEVELS else "INFO")


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            vault=VaultConfig.from_dict(data.get("vault")),
            sync=SyncConfig.from_dict(data.get("sync")),
            filters=FilterConfig.from_dict(data.get("filters")),
            retry=RetryConfig.from_dict(data.get("retry")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class LocalTask:
    local_id: str
    description: str
    due_date: date | None = None
    status: TaskStatus = TaskStatus.OPEN
    tags: list[str] = field(default_factory=list)
    file_path: str = ""
    line_number: int = 0
    raw_line: str = ""
    completion_date: date | None = None

    @property
    def remote_status(self) -> RemoteStatus:
        return RemoteStatus.from_task_status(self.status)


@dataclass
class RemoteRecord:
    uid: str
    summary: str = ""
    due: date | None = None
    status: RemoteStatus = RemoteStatus.NEEDS_ACTION
    last_modified: datetime = EPOCH
    concurrency_token: str = ""
    location: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "summary": self.summary,
            "due": serialize_date(self.due),
            "status": self.status.value,
            "last_modified": serialize_datetime(self.last_modified),
            "concurrency_token": self.concurrency_token,
            "location": self.location,
        }


@dataclass
class SyncMapping:
    local_id: str
    remote_uid: str
    last_sync_time: datetime
    last_known_fingerprint: str
    last_known_local_modified: datetime
    last_known_remote_modified: datetime
    remote_concurrency_token: str = ""
    remote_location: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_id": self.local_id,
            "remote_uid": self.remote_uid,
            "last_sync_time": serialize_datetime(self.last_sync_time),
            "last_known_fingerprint": self.last_known_fingerprint,
            "last_known_local_modified": serialize_datetime(self.last_known_local_modified),
            "last_known_remote_modified": serialize_datetime(self.last_known_remote_modified),
            "remote_concurrency_token": self.remote_concurrency_token,
            "remote_location": self.remote_location,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncMapping":
        return cls(
            local_id=str(data["local_id"]),
            remote_uid=str(data["remote_uid"]),
            last_sync_time=parse_iso_datetime(data.get("last_sync_time")) or EPOCH,
            last_known_fingerprint=str(data.get("last_known_fingerprint", "") or ""),
            last_known_local_modified=parse_iso_datetime(data.get("last_known_local_modified")) or EPOCH,
            last_known_remote_modified=parse_iso_datetime(data.get("last_known_remote_modified")) or EPOCH,
            remote_concurrency_token=str(data.get("remote_concurrency_token", "") or ""),
            remote_location=str(data.get("remote_location", "") or ""),
        )


@dataclass
class ConflictResolution:
    winner: Side
    reason: str
    winning_timestamp: datetime
    losing_timestamp: datetime


@dataclass
class TaskFailure:
    local_id: str
    location: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncAction:
    local_id: str
    remote_uid: str
    action: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncReport:
    created: int = 0
    reconciled: int = 0
    pushed: int = 0
    pulled: int = 0
    conflicts: int = 0
    unchanged: int = 0
    orphaned: int = 0
    failures: list[TaskFailure] = field(default_factory=list)
    actions: list[SyncAction] = field(default_factory=list)

    def record(self, local_id: str, remote_uid: str, action: str, **details: Any) -> None:
        self.actions.append(SyncAction(local_id, remote_uid, action, details))

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def changes_applied(self) -> int:
        return self.created + self.pushed + self.pulled

    def summary(self) -> str:
        return (
            f"created={self.created} reconciled={self.reconciled} pushed={self.pushed} "
            f"pulled={self.pulled} conflicts={self.conflicts} unchanged={self.unchanged} "
            f"orphaned={self.orphaned} failed={self.failed}"
        )


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    conflicts: int
    trigger: str
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "conflicts": self.conflicts,
            "failed": self.failed,
            "errors": list(self.errors),
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }
