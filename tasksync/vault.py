from __future__ import annotations

import logging
import re
import uuid
from datetime import date
from pathlib import Path

from tasksync.models import LocalTask, RemoteStatus, TaskStatus

logger = logging.getLogger(__name__)

TASK_MARKERS = ("- [ ]", "- [x]", "- [X]")
DUE_MARKER = "\U0001F4C5"
DONE_MARKER = "\u2705"

_TASK_RE = re.compile(r"^(\s*)-\s+\[([ xX])\]\s*(.*)$")
_DUE_RE = re.compile(DUE_MARKER + r"\s*(\d{4}-\d{2}-\d{2})")
_DONE_RE = re.compile(DONE_MARKER + r"\s*(\d{4}-\d{2}-\d{2})")
_BLOCK_ID_RE = re.compile(r"\^(task-[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\s*$")
_TAG_RE = re.compile(r"(?<![\w/])#[\w-]+")
_WHITESPACE_RE = re.compile(r"\s+")


class TaskLocationError(RuntimeError):
    pass


def generate_local_id() -> str:
    return f"task-{uuid.uuid4()}"


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        logger.debug("Ignoring invalid date marker %r", value)
        return None


def _extract_description(content: str) -> str:
    text = _DUE_RE.sub("", content)
    text = _DONE_RE.sub("", text)
    text = _BLOCK_ID_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def parse_task_line(line: str, file_path: str = "", line_number: int = 0) -> LocalTask | None:
    match = _TASK_RE.match(line)
    if not match or not match.group(3):
        return None
    content = match.group(3)
    due_match = _DUE_RE.search(content)
    done_match = _DONE_RE.search(content)
    block_match = _BLOCK_ID_RE.search(content)
    return LocalTask(
        local_id=block_match.group(1) if block_match else "",
        description=_extract_description(content),
        due_date=_parse_date(due_match.group(1)) if due_match else None,
        status=TaskStatus.OPEN if match.group(2) == " " else TaskStatus.COMPLETED,
        tags=_TAG_RE.findall(content),
        file_path=file_path,
        line_number=line_number,
        raw_line=line,
        completion_date=_parse_date(done_match.group(1)) if done_match else None,
    )


def build_task_line(
    description: str,
    status: TaskStatus,
    due: date | None,
    local_id: str = "",
    indent: str = "",
    completion_date: date | None = None,
) -> str:
    marker = "x" if status == TaskStatus.COMPLETED else " "
    line = f"{indent}- [{marker}] {description}"
    if due is not None:
        line += f" {DUE_MARKER} {due.isoformat()}"
    if completion_date is not None and status == TaskStatus.COMPLETED:
        line += f" {DONE_MARKER} {completion_date.isoformat()}"
    if local_id:
        line += f" ^{local_id}"
    return line


def _split_ending(line: str) -> tuple[str, str]:
    body = line.rstrip("\r\n")
    return body, line[len(body) :]


class VaultScanner:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _markdown_files(self) -> list[Path]:
        files = []
        for path in sorted(self.root.rglob("*.md")):
            relative = path.relative_to(self.root)
            if any(part.startswith(".") for part in relative.parts):
                continue
            files.append(path)
        return files

    def scan_file(self, path: Path) -> list[LocalTask]:
        try:
            with path.open("r", encoding="utf-8", newline="") as handle:
                content = handle.read()
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Skipping unreadable file %s: %s", path, exc)
            return []
        if not any(marker in content for marker in TASK_MARKERS):
            return []
        relative = path.relative_to(self.root).as_posix()
        tasks = []
        for index, line in enumerate(content.splitlines(), start=1):
            task = parse_task_line(line, relative, index)
            if task is not None:
                tasks.append(task)
        return tasks

    def scan(self) -> list[LocalTask]:
        if not self.root.is_dir():
            raise FileNotFoundError(f"Vault directory not found: {self.root}")
        tasks: list[LocalTask] = []
        files = self._markdown_files()
        for path in files:
            tasks.extend(self.scan_file(path))
        logger.debug("Found %d tasks across %d markdown files", len(tasks), len(files))
        return tasks


class MarkdownTaskWriter:
    """Rewrites single task lines inside vault files, keeping every other byte."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _read_lines(self, path: Path) -> list[str]:
        with path.open("r", encoding="utf-8", newline="") as handle:
            return handle.read().splitlines(keepends=True)

    def _write_lines(self, path: Path, lines: list[str]) -> None:
        with path.open("w", encoding="utf-8", newline="") as handle:
            handle.write("".join(lines))

    def _locate(self, task: LocalTask, lines: list[str]) -> int:
        index = task.line_number - 1
        if 0 <= index < len(lines):
            body, _ = _split_ending(lines[index])
            if body == task.raw_line or (task.local_id and body.endswith(f"^{task.local_id}")):
                return index
        for position, line in enumerate(lines):
            body, _ = _split_ending(line)
            if task.local_id and body.rstrip().endswith(f"^{task.local_id}"):
                return position
        for position, line in enumerate(lines):
            body, _ = _split_ending(line)
            if body == task.raw_line:
                return position
        raise TaskLocationError(f"Task line not found in {task.file_path} (line {task.line_number})")

    def _replace_line(self, task: LocalTask, build) -> bool:
        path = self.root / task.file_path
        if not path.is_file():
            raise TaskLocationError(f"File not found: {task.file_path}")
        lines = self._read_lines(path)
        index = self._locate(task, lines)
        body, ending = _split_ending(lines[index])
        new_body = build(body)
        task.line_number = index + 1
        if new_body == body:
            return False
        lines[index] = new_body + ending
        self._write_lines(path, lines)
        task.raw_line = new_body
        return True

    def assign_id(self, task: LocalTask) -> str:
        if task.local_id:
            return task.local_id
        local_id = generate_local_id()
        self._replace_line(task, lambda body: f"{body.rstrip()} ^{local_id}")
        task.local_id = local_id
        logger.info("Assigned id %s to task in %s:%d", local_id, task.file_path, task.line_number)
        return local_id

    def write(
        self,
        task: LocalTask,
        description: str,
        due: date | None,
        status: TaskStatus | RemoteStatus,
    ) -> bool:
        if isinstance(status, RemoteStatus):
            status = status.to_task_status()

        def build(body: str) -> str:
            match = _TASK_RE.match(body)
            indent = match.group(1) if match else ""
            return build_task_line(
                description,
                status,
                due,
                local_id=task.local_id,
                indent=indent,
                completion_date=task.completion_date,
            )

        changed = self._replace_line(task, build)
        if changed:
            logger.info("Updated task %s in %s:%d", task.local_id, task.file_path, task.line_number)
        return changed
