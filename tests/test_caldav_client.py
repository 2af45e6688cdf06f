import unittest
from datetime import date
from unittest import mock

import niquests
import requests
from caldav.lib import error as dav_error

from tasksync.caldav_client import CalDAVService
from tasksync.errors import (
    AuthError,
    ConflictError,
    ConnectivityError,
    ErrorKind,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    classify,
)
from tasksync.models import CalDAVConfig, RemoteStatus
from tasksync.retry import RetryExecutor, RetryPolicy
from tasksync.vtodo import build_vtodo

CALENDAR_URL = "https://dav.example.com/calendars/u/tasks/"


def _response(status: int, raw: str = "", headers: dict | None = None) -> mock.Mock:
    return mock.Mock(status=status, raw=raw, headers=headers or {}, reason="")


def _raw(uid: str, summary: str) -> str:
    return build_vtodo(uid, summary, date(2026, 1, 15), RemoteStatus.NEEDS_ACTION)


class CalDAVServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tasks_calendar = mock.Mock(url=CALENDAR_URL)
        self.tasks_calendar.name = "Tasks"
        self.home_calendar = mock.Mock(url="https://dav.example.com/calendars/u/home/")
        self.home_calendar.name = "Home"
        self.client = mock.Mock()
        self.client.principal.return_value.calendars.return_value = [self.home_calendar, self.tasks_calendar]
        patcher = mock.patch("tasksync.caldav_client.caldav.DAVClient", return_value=self.client)
        self.dav_client_cls = patcher.start()
        self.addCleanup(patcher.stop)

    def _service(self, calendar_path: str = "tasks") -> CalDAVService:
        service = CalDAVService(
            CalDAVConfig(
                base_url="https://dav.example.com",
                username="u",
                password="p",
                calendar_path=calendar_path,
            )
        )
        service.connect()
        return service

    def test_connect_selects_calendar_by_path_then_name(self) -> None:
        self.assertEqual(self._service().calendar_url, CALENDAR_URL)
        self.assertEqual(self._service("Home").calendar_url, "https://dav.example.com/calendars/u/home/")
        self.assertEqual(self._service("").calendar_url, "https://dav.example.com/calendars/u/home/")
        self.dav_client_cls.assert_called_with(url="https://dav.example.com", username="u", password="p")

    def test_connect_unknown_calendar_raises(self) -> None:
        with self.assertRaises(ConnectivityError):
            self._service("missing")

    def test_connect_authorization_error_is_translated(self) -> None:
        self.client.principal.side_effect = dav_error.AuthorizationError(url="https://dav.example.com", reason="401")
        with self.assertRaises(AuthError):
            self._service()

    def test_fetch_all_reads_etags_and_skips_broken_resources(self) -> None:
        good = mock.Mock(data=_raw("uid-1", "Buy milk"), props={"{DAV:}getetag": '"e1"'}, url=CALENDAR_URL + "uid-1.ics")
        broken = mock.Mock(data="BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n", props={}, url=CALENDAR_URL + "bad.ics")
        self.tasks_calendar.todos.return_value = [good, broken]
        service = self._service()

        with self.assertLogs("tasksync.caldav_client", level="WARNING"):
            records = service.fetch_all()

        self.tasks_calendar.todos.assert_called_once_with(include_completed=True)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].uid, "uid-1")
        self.assertEqual(records[0].concurrency_token, '"e1"')
        self.assertEqual(records[0].location, CALENDAR_URL + "uid-1.ics")

    def test_update_raw_sends_if_match_without_reading_back(self) -> None:
        location = CALENDAR_URL + "uid-1.ics"
        self.client.put.return_value = _response(204)
        service = self._service()

        result = service.update_raw("uid-1", _raw("uid-1", "Buy oat milk"), '"e1"', location)

        url, _body, headers = self.client.put.call_args.args
        self.assertEqual(result, location)
        self.assertEqual(url, location)
        self.assertEqual(headers["If-Match"], '"e1"')
        self.client.request.assert_not_called()

    def test_read_returns_record_with_etag(self) -> None:
        location = CALENDAR_URL + "uid-1.ics"
        self.client.request.return_value = _response(200, _raw("uid-1", "Buy oat milk"), {"ETag": '"e2"'})
        record = self._service().read(location)
        self.client.request.assert_called_once_with(location, "GET")
        self.assertEqual(record.summary, "Buy oat milk")
        self.assertEqual(record.concurrency_token, '"e2"')
        self.assertEqual(record.location, location)

    def test_update_raw_without_token_skips_precondition(self) -> None:
        self.client.put.return_value = _response(204)
        self._service().update_raw("uid-1", _raw("uid-1", "x"), "")
        url, _body, headers = self.client.put.call_args.args
        self.assertEqual(url, CALENDAR_URL + "uid-1.ics")
        self.assertNotIn("If-Match", headers)

    def test_update_status_codes_map_to_errors(self) -> None:
        service = self._service()
        self.client.put.return_value = _response(412)
        with self.assertRaises(ConflictError):
            service.update_raw("uid-1", "raw", '"stale"')
        self.client.put.return_value = _response(429, headers={"Retry-After": "7"})
        with self.assertRaises(RateLimitError) as ctx:
            service.update_raw("uid-1", "raw", '"e1"')
        self.assertEqual(ctx.exception.retry_after, 7.0)
        self.client.put.return_value = _response(503)
        with self.assertRaises(ServerError):
            service.update_raw("uid-1", "raw", '"e1"')

    def test_create_puts_new_resource_under_given_uid(self) -> None:
        self.client.put.return_value = _response(201)
        location = self._service().create(
            "uid-new", "Buy milk", date(2026, 1, 15), RemoteStatus.NEEDS_ACTION, "Obsidian Link: x"
        )

        url, body, headers = self.client.put.call_args.args
        self.assertEqual(location, CALENDAR_URL + "uid-new.ics")
        self.assertEqual(url, location)
        self.assertEqual(headers["If-None-Match"], "*")
        self.assertIn("UID:uid-new", body)
        self.assertIn("SUMMARY:Buy milk", body)
        self.assertIn("DESCRIPTION:Obsidian Link: x", body)
        self.client.request.assert_not_called()

    def test_create_treats_existing_resource_as_created(self) -> None:
        self.client.put.return_value = _response(412)
        location = self._service().create("uid-new", "Buy milk", None, RemoteStatus.NEEDS_ACTION)
        self.assertEqual(location, CALENDAR_URL + "uid-new.ics")

    def test_transport_errors_are_retried(self) -> None:
        service = self._service()
        self.client.request.side_effect = [
            niquests.exceptions.ConnectionError("connection reset"),
            niquests.exceptions.ReadTimeout("read timed out"),
            _response(200, _raw("uid-1", "Buy milk"), {"ETag": '"e1"'}),
        ]
        sleep = mock.Mock()

        with self.assertLogs("tasksync.retry", level="WARNING"):
            record = RetryExecutor(RetryPolicy(max_attempts=3), sleep=sleep).execute(
                lambda: service.read(CALENDAR_URL + "uid-1.ics")
            )

        self.assertEqual(record.uid, "uid-1")
        self.assertEqual(self.client.request.call_count, 3)
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [1.0, 2.0])

    def test_transport_errors_are_translated(self) -> None:
        service = self._service()
        self.client.put.side_effect = niquests.exceptions.ConnectionError("refused")
        with self.assertRaises(NetworkError):
            service.update_raw("uid-1", "raw", '"e1"')
        self.client.put.side_effect = requests.exceptions.ReadTimeout("slow")
        with self.assertRaises(RequestTimeoutError):
            service.update_raw("uid-1", "raw", '"e1"')

    def test_connect_network_error_is_transient(self) -> None:
        self.client.principal.side_effect = niquests.exceptions.ConnectionError("dns failure")
        with self.assertRaises(NetworkError) as ctx:
            self._service()
        self.assertEqual(classify(ctx.exception), ErrorKind.TRANSIENT)


if __name__ == "__main__":
    unittest.main()
