from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, TypeVar

import caldav
from caldav.lib import error as dav_error

from tasksync.errors import (
    CONNECTION_ERRORS,
    TIMEOUT_ERRORS,
    AuthError,
    ConflictError,
    ConnectivityError,
    NetworkError,
    NotFoundError,
    RemoteError,
    RequestTimeoutError,
    error_for_status,
    parse_retry_after,
)
from tasksync.models import CalDAVConfig, RemoteRecord, RemoteStatus
from tasksync.vtodo import build_vtodo, parse_remote_record

logger = logging.getLogger(__name__)

T = TypeVar("T")

ICAL_CONTENT_TYPE = "text/calendar; charset=utf-8"
_OK_STATUSES = {200, 201, 204}


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data or "")


def _header(response: Any, name: str) -> str | None:
    headers = getattr(response, "headers", None) or {}
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def _translate(call: Callable[[], T]) -> T:
    try:
        return call()
    except dav_error.AuthorizationError as exc:
        raise AuthError(str(exc) or "CalDAV authorization failed", status_code=401) from exc
    except dav_error.NotFoundError as exc:
        raise NotFoundError(str(exc) or "CalDAV resource not found", status_code=404) from exc
    except dav_error.DAVError as exc:
        raise RemoteError(f"{type(exc).__name__}: {exc}") from exc
    except TIMEOUT_ERRORS as exc:
        raise RequestTimeoutError(f"{type(exc).__name__}: {exc}") from exc
    except CONNECTION_ERRORS as exc:
        raise NetworkError(f"{type(exc).__name__}: {exc}") from exc


class CalDAVService:
    """Talks VTODO to one calendar collection of a CalDAV server."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar: Any = None

    @property
    def calendar_url(self) -> str:
        if self._calendar is None:
            raise ConnectivityError("CalDAV calendar is not connected.")
        return str(self._calendar.url)

    def _resource_url(self, uid: str, location: str = "") -> str:
        if location:
            return location
        return f"{self.calendar_url.rstrip('/')}/{uid}.ics"

    def connect(self) -> None:
        if self._calendar is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise ConnectivityError("CalDAV config is incomplete.")

        def _connect() -> Any:
            client = caldav.DAVClient(
                url=self.config.base_url,
                username=self.config.username,
                password=self.config.password,
            )
            principal = client.principal()
            return client, principal, principal.calendars()

        self._client, self._principal, calendars = _translate(_connect)
        self._calendar = self._select_calendar(calendars)
        logger.info("Connected to CalDAV calendar %s", self._calendar.url)

    def _select_calendar(self, calendars: list[Any]) -> Any:
        if not calendars:
            raise ConnectivityError("No calendars found on the CalDAV server.")
        wanted = self.config.calendar_path.strip().strip("/")
        if not wanted:
            return calendars[0]
        for calendar in calendars:
            if wanted in str(calendar.url).rstrip("/"):
                return calendar
        for calendar in calendars:
            if (getattr(calendar, "name", "") or "").strip() == wanted:
                return calendar
        raise ConnectivityError(f"Calendar not found: {self.config.calendar_path}")

    def fetch_all(self) -> list[RemoteRecord]:
        self.connect()
        resources = _translate(lambda: self._calendar.todos(include_completed=True))
        records: list[RemoteRecord] = []
        for resource in resources:
            raw = _decode_raw_ical(getattr(resource, "data", ""))
            props = getattr(resource, "props", None) or {}
            etag = str(props.get("{DAV:}getetag", "") or "")
            try:
                record = parse_remote_record(raw, location=str(resource.url), concurrency_token=etag)
            except ValueError as exc:
                logger.warning("Skipping unreadable resource %s: %s", getattr(resource, "url", "?"), exc)
                continue
            if record.uid:
                records.append(record)
        logger.debug("Fetched %d remote tasks", len(records))
        return records

    def _get(self, url: str) -> tuple[str, str]:
        response = _translate(lambda: self._client.request(url, "GET"))
        if response.status not in _OK_STATUSES:
            raise self._error(response, f"GET {url}")
        return _decode_raw_ical(response.raw), str(_header(response, "ETag") or "")

    def _error(self, response: Any, action: str) -> RemoteError:
        reason = getattr(response, "reason", "") or ""
        message = f"{action} failed with HTTP {response.status} {reason}".strip()
        return error_for_status(
            int(response.status),
            message,
            retry_after=parse_retry_after(_header(response, "Retry-After")),
        )

    def _put(self, url: str, body: str, headers: dict[str, str]) -> None:
        response = _translate(lambda: self._client.put(url, body, headers))
        if response.status not in _OK_STATUSES:
            raise self._error(response, f"PUT {url}")

    def read(self, location: str) -> RemoteRecord:
        """GET one resource and decode it with its current ETag."""
        self.connect()
        raw, etag = self._get(location)
        return parse_remote_record(raw, location=location, concurrency_token=etag)

    def fetch_raw(self, uid: str, location: str = "") -> str:
        self.connect()
        raw, _ = self._get(self._resource_url(uid, location))
        return raw

    def create(
        self,
        uid: str,
        summary: str,
        due: date | None,
        status: RemoteStatus,
        description: str | None = None,
    ) -> str:
        """PUT a new resource named after ``uid`` and return its URL.

        A 412 means a previous attempt with the same uid already stored the
        resource, so it counts as created.
        """
        self.connect()
        url = self._resource_url(uid)
        body = build_vtodo(uid, summary, due, status, description=description)
        try:
            self._put(url, body, {"Content-Type": ICAL_CONTENT_TYPE, "If-None-Match": "*"})
        except ConflictError:
            logger.info("Remote task %s already exists, keeping it", uid)
            return url
        logger.info("Created remote task %s", uid)
        return url

    def update_raw(self, uid: str, raw: str, concurrency_token: str, location: str = "") -> str:
        self.connect()
        url = self._resource_url(uid, location)
        headers = {"Content-Type": ICAL_CONTENT_TYPE}
        if concurrency_token:
            headers["If-Match"] = concurrency_token
        self._put(url, raw, headers)
        logger.info("Updated remote task %s", uid)
        return url
