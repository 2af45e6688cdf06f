from __future__ import annotations

import hashlib
import logging
from datetime import date
from typing import Any, Callable, Iterator

from tasksync.models import LocalTask, SyncMapping, TaskStatus

logger = logging.getLogger(__name__)

SaveCallback = Callable[[list[dict[str, Any]]], None]


def content_fingerprint(description: str, due: date | None, status: TaskStatus) -> str:
    due_text = due.isoformat() if due is not None else "null"
    payload = f"{description}|{due_text}|{TaskStatus(status).value}"
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()  # nosec B324


def fingerprint(task: LocalTask) -> str:
    return content_fingerprint(task.description, task.due_date, task.status)


class MappingStore:
    """Table of local task id to remote uid links.

    Lives for one sync cycle and is only touched from that cycle's thread.
    ``flush`` hands a full snapshot to the save callback; callers flush after
    every mutation that has to survive a crash.
    """

    def __init__(
        self,
        mappings: list[SyncMapping] | None = None,
        save_callback: SaveCallback | None = None,
    ) -> None:
        self._by_local_id: dict[str, SyncMapping] = {}
        self._by_remote_uid: dict[str, str] = {}
        self._save_callback = save_callback
        for mapping in mappings or []:
            self.put(mapping)

    def __len__(self) -> int:
        return len(self._by_local_id)

    def __iter__(self) -> Iterator[SyncMapping]:
        return iter(list(self._by_local_id.values()))

    def __contains__(self, local_id: object) -> bool:
        return local_id in self._by_local_id

    def get(self, local_id: str) -> SyncMapping | None:
        return self._by_local_id.get(local_id)

    def get_by_remote_uid(self, remote_uid: str) -> SyncMapping | None:
        local_id = self._by_remote_uid.get(remote_uid)
        if local_id is None:
            return None
        return self._by_local_id.get(local_id)

    def put(self, mapping: SyncMapping) -> None:
        if not mapping.local_id or not mapping.remote_uid:
            raise ValueError("mapping requires both local_id and remote_uid")
        owner = self._by_remote_uid.get(mapping.remote_uid)
        if owner is not None and owner != mapping.local_id:
            raise ValueError(f"remote uid {mapping.remote_uid} is already mapped to {owner}")
        previous = self._by_local_id.get(mapping.local_id)
        if previous is not None and previous.remote_uid != mapping.remote_uid:
            self._by_remote_uid.pop(previous.remote_uid, None)
        self._by_local_id[mapping.local_id] = mapping
        self._by_remote_uid[mapping.remote_uid] = mapping.local_id

    def all(self) -> list[SyncMapping]:
        return list(self._by_local_id.values())

    def mapped_remote_uids(self) -> set[str]:
        return set(self._by_remote_uid)

    def snapshot(self) -> list[dict[str, Any]]:
        return [mapping.to_dict() for mapping in self._by_local_id.values()]

    def flush(self) -> None:
        if self._save_callback is None:
            return
        self._save_callback(self.snapshot())
        logger.debug("Flushed %d mappings", len(self._by_local_id))
