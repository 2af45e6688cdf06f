from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Todo as ICTodo
from icalendar import vText
from icalendar.parser import foldline

from tasksync.models import EPOCH, RemoteRecord, RemoteStatus

logger = logging.getLogger(__name__)

PRODID = "-//tasksync//Task Sync//EN"

_PHYSICAL_LINE_RE = re.compile(r"[^\r\n]*(?:\r\n|\n|\r)|[^\r\n]+$")
_NAME_RE = re.compile(r"^([A-Za-z0-9-]+)")


def _strip_ending(line: str) -> str:
    return line.rstrip("\r\n")


def _ical_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def escape_text(value: str) -> str:
    return vText(value).to_ical().decode("utf-8")


@dataclass
class ContentLine:
    """One logical iCalendar line with the physical text it was read from."""

    physical: list[str] = field(default_factory=list)

    @property
    def unfolded(self) -> str:
        parts = []
        for index, line in enumerate(self.physical):
            text = _strip_ending(line)
            parts.append(text[1:] if index else text)
        return "".join(parts)

    @property
    def name(self) -> str:
        match = _NAME_RE.match(self.unfolded)
        return match.group(1).upper() if match else ""

    @property
    def value(self) -> str:
        text = self.unfolded
        in_quotes = False
        for index, char in enumerate(text):
            if char == '"':
                in_quotes = not in_quotes
            elif char == ":" and not in_quotes:
                return text[index + 1 :]
        return ""

    def text(self) -> str:
        return "".join(self.physical)


class VTodoRecord:
    """Line-preserving view of a raw iCalendar resource holding a VTODO.

    Only the top-level properties of the first VTODO are addressable; lines of
    nested components (VALARM) and of other components are kept as they are.
    Lines that are never touched serialize back byte-identical.
    """

    def __init__(self, lines: list[ContentLine], newline: str = "\r\n") -> None:
        self.lines = lines
        self.newline = newline
        self._index: dict[str, list[int]] = {}
        self._todo_begin: int | None = None
        self._todo_end: int | None = None
        self._reindex()

    @classmethod
    def parse(cls, raw: str) -> "VTodoRecord":
        if "\r\n" in raw:
            newline = "\r\n"
        elif "\n" in raw:
            newline = "\n"
        else:
            newline = "\r\n"
        lines: list[ContentLine] = []
        for physical in _PHYSICAL_LINE_RE.findall(raw):
            if physical[:1] in (" ", "\t") and lines:
                lines[-1].physical.append(physical)
            else:
                lines.append(ContentLine([physical]))
        return cls(lines, newline=newline)

    def _reindex(self) -> None:
        self._index = {}
        self._todo_begin = None
        self._todo_end = None
        depth = 0
        for position, line in enumerate(self.lines):
            unfolded = line.unfolded.strip().upper()
            if self._todo_begin is None:
                if unfolded == "BEGIN:VTODO":
                    self._todo_begin = position
                continue
            if unfolded.startswith("BEGIN:"):
                depth += 1
                continue
            if unfolded.startswith("END:"):
                if depth == 0:
                    if unfolded == "END:VTODO":
                        self._todo_end = position
                    break
                depth -= 1
                continue
            if depth == 0 and line.name:
                self._index.setdefault(line.name, []).append(position)

    @property
    def has_todo(self) -> bool:
        return self._todo_begin is not None and self._todo_end is not None

    def count(self, name: str) -> int:
        return len(self._index.get(name.upper(), []))

    def get_fields(self, name: str) -> list[str]:
        return [self.lines[i].value for i in self._index.get(name.upper(), [])]

    def get_field(self, name: str) -> str | None:
        values = self.get_fields(name)
        return values[0] if values else None

    def _build_line(self, name: str, value: str, params: str) -> ContentLine:
        text = name.upper()
        if params:
            text += ";" + params
        text += ":" + value
        folded = foldline(text, fold_sep=self.newline + " ")
        physical = [part + self.newline for part in folded.split(self.newline)]
        return ContentLine(physical)

    def set_field(self, name: str, value: str, params: str = "") -> None:
        """Replace the first top-level occurrence of ``name``, or insert it before END:VTODO."""
        if not self.has_todo:
            raise ValueError("record has no VTODO component")
        new_line = self._build_line(name, value, params)
        positions = self._index.get(name.upper(), [])
        if positions:
            self.lines[positions[0]] = new_line
        else:
            self.lines.insert(self._todo_end, new_line)
        self._reindex()

    def remove_field(self, name: str) -> int:
        positions = self._index.get(name.upper(), [])
        for position in sorted(positions, reverse=True):
            del self.lines[position]
        if positions:
            self._reindex()
        return len(positions)

    def serialize(self) -> str:
        return "".join(line.text() for line in self.lines)


def validate_structure(record: VTodoRecord) -> list[str]:
    problems: list[str] = []
    if not record.has_todo:
        problems.append("missing VTODO component")
    for name in ("UID", "SUMMARY", "STATUS"):
        if record.count(name) != 1:
            problems.append(f"expected exactly one {name}, found {record.count(name)}")
    if record.count("DUE") > 1:
        problems.append(f"expected at most one DUE, found {record.count('DUE')}")
    return problems


def patch_record(
    raw: str,
    summary: str,
    due: date | None,
    status: RemoteStatus,
    now: datetime | None = None,
) -> str:
    """Rewrite the owned fields of a raw VTODO and keep every other line as is.

    Raises ``ValueError`` when ``raw`` holds no complete VTODO component, since
    there is nothing to patch. Callers syncing many tasks record that as a
    failure of the one task.
    """
    now = now or datetime.now(timezone.utc)
    record = VTodoRecord.parse(raw)
    if not record.has_todo:
        raise ValueError("Cannot patch a calendar resource without a VTODO component")
    record.set_field("SUMMARY", escape_text(summary))
    record.set_field("STATUS", RemoteStatus(status).value)
    if due is None:
        record.remove_field("DUE")
    else:
        record.set_field("DUE", due.strftime("%Y%m%d"), params="VALUE=DATE")
    stamp = _ical_timestamp(now)
    record.set_field("LAST-MODIFIED", stamp)
    record.set_field("DTSTAMP", stamp)

    problems = validate_structure(record)
    if problems:
        logger.warning("Patched VTODO failed structure check (%s); sending it anyway", "; ".join(problems))
    return record.serialize()


def build_vtodo(
    uid: str,
    summary: str,
    due: date | None,
    status: RemoteStatus,
    description: str | None = None,
    now: datetime | None = None,
) -> str:
    now = now or datetime.now(timezone.utc)
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    todo = ICTodo()
    todo.add("UID", uid)
    todo.add("DTSTAMP", now)
    todo.add("CREATED", now)
    todo.add("LAST-MODIFIED", now)
    todo.add("SUMMARY", summary)
    todo.add("STATUS", RemoteStatus(status).value)
    if due is not None:
        todo.add("DUE", due)
    if description:
        todo.add("DESCRIPTION", description)
    calendar_obj.add_component(todo)
    return calendar_obj.to_ical().decode("utf-8")


def _first_vtodo(calendar_obj: ICalendar) -> Any:
    for component in calendar_obj.walk():
        if component.name == "VTODO":
            return component
    return None


def _as_utc_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return None


def _decoded(component: Any, name: str) -> Any:
    if component.get(name) is None:
        return None
    return component.decoded(name)


def parse_remote_record(raw: str, location: str = "", concurrency_token: str = "") -> RemoteRecord:
    calendar_obj = ICalendar.from_ical(raw)
    todo = _first_vtodo(calendar_obj)
    if todo is None:
        raise ValueError("VTODO missing in calendar resource.")

    uid = str(todo.get("UID", "")).strip()
    summary = str(todo.get("SUMMARY", "")).strip()
    status_text = str(todo.get("STATUS", "")).strip().upper()
    status = RemoteStatus.COMPLETED if status_text == "COMPLETED" else RemoteStatus.NEEDS_ACTION

    due_raw = _decoded(todo, "DUE")
    due = due_raw.date() if isinstance(due_raw, datetime) else due_raw

    last_modified = _as_utc_datetime(_decoded(todo, "LAST-MODIFIED"))
    if last_modified is None:
        last_modified = _as_utc_datetime(_decoded(todo, "DTSTAMP")) or EPOCH

    return RemoteRecord(
        uid=uid,
        summary=summary,
        due=due if isinstance(due, date) else None,
        status=status,
        last_modified=last_modified,
        concurrency_token=concurrency_token,
        location=location,
    )
