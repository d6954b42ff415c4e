"""
Shared fixtures: a SQLite-backed store and an in-memory Google Calendar.

FakeCalendarApi mimics the events() resource of the Calendar v3 discovery
client closely enough for GoogleCalendarService: every call returns a request
object whose execute() either answers from memory or raises a real HttpError.
"""

from datetime import date, datetime
from typing import Dict, List

import httplib2
import pytest
from googleapiclient.errors import HttpError

from classsync.core.db_manager import DatabaseManager
from classsync.core.models import AccessCredential, ScheduleCell
from classsync.gcal.calendar_service import GoogleCalendarService
from classsync.gcal.event_mapper import get_timezone
from classsync.gcal.token_guard import TokenGuard
from classsync.sync.engine import ScheduleSyncEngine

WEEK = date(2024, 9, 2)      # a Monday
USER = 'student-1'
NOW = 1_725_000_000          # fixed clock for token expiry checks


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({'status': status}), b'{}')


class _Request:
    def __init__(self, func):
        self.func = func

    def execute(self):
        return self.func()


class FakeCalendarApi:
    """In-memory stand-in for service.events()."""

    def __init__(self):
        self.events_by_id: Dict[str, Dict] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[int]] = {}
        self.event_failures: Dict[str, int] = {}
        self._counter = 0

    # service.events() returns the resource itself
    def events(self):
        return self

    def fail(self, method: str, *statuses: int):
        """Make the next calls of method raise HttpErrors with these statuses."""
        self.failures.setdefault(method, []).extend(statuses)

    def fail_event(self, event_id: str, status: int):
        """Make the next mutation of one event raise an HttpError."""
        self.event_failures[event_id] = status

    def _maybe_fail(self, method: str):
        pending = self.failures.get(method)
        if pending:
            raise http_error(pending.pop(0))

    def add_event(self, body: Dict, event_id: str = None, created: str = None) -> str:
        """Seed an event directly, bypassing call recording."""
        self._counter += 1
        event_id = event_id or f"evt{self._counter}"
        event = dict(body)
        event['id'] = event_id
        event['created'] = created or f"2024-08-01T00:00:{self._counter:02d}.000Z"
        self.events_by_id[event_id] = event
        return event_id

    def list(self, calendarId=None, timeMin=None, timeMax=None, pageToken=None, **kwargs):
        def run():
            self.calls.append(('list', None))
            self._maybe_fail('list')
            lower = datetime.fromisoformat(timeMin)
            upper = datetime.fromisoformat(timeMax)
            items = []
            for event in self.events_by_id.values():
                start = datetime.fromisoformat(event['start']['dateTime'])
                if lower <= start < upper:
                    items.append(dict(event))
            items.sort(key=lambda e: e['start']['dateTime'])
            return {'items': items}
        return _Request(run)

    def insert(self, calendarId=None, body=None):
        def run():
            self.calls.append(('insert', None))
            self._maybe_fail('insert')
            event_id = self.add_event(body)
            return dict(self.events_by_id[event_id])
        return _Request(run)

    def update(self, calendarId=None, eventId=None, body=None):
        def run():
            self.calls.append(('update', eventId))
            self._maybe_fail('update')
            if eventId not in self.events_by_id:
                raise http_error(404)
            event = dict(body)
            event['id'] = eventId
            event['created'] = self.events_by_id[eventId]['created']
            self.events_by_id[eventId] = event
            return dict(event)
        return _Request(run)

    def delete(self, calendarId=None, eventId=None):
        def run():
            self.calls.append(('delete', eventId))
            self._maybe_fail('delete')
            if eventId in self.event_failures:
                raise http_error(self.event_failures.pop(eventId))
            if eventId not in self.events_by_id:
                raise http_error(410)
            del self.events_by_id[eventId]
            return ''
        return _Request(run)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def reset_calls(self):
        self.calls = []


@pytest.fixture
def tz():
    return get_timezone('Asia/Taipei')


@pytest.fixture
def store(tmp_path):
    db = DatabaseManager(f"sqlite:///{tmp_path / 'classsync.db'}")
    db.init_schema()
    return db


@pytest.fixture
def fake_api():
    return FakeCalendarApi()


@pytest.fixture
def calendar(fake_api):
    return GoogleCalendarService(service=fake_api, sleep=lambda seconds: None)


@pytest.fixture
def credential():
    return AccessCredential('access-1', 'refresh-1', NOW + 3600)


@pytest.fixture
def engine(store, fake_api, tz):
    tokens = []

    def factory(access_token):
        tokens.append(access_token)
        return GoogleCalendarService(service=fake_api, sleep=lambda seconds: None)

    sync_engine = ScheduleSyncEngine(store, calendar_factory=factory,
                                     token_guard=TokenGuard(clock=lambda: NOW), tz=tz)
    sync_engine.factory_tokens = tokens
    return sync_engine


def cell(name: str, course_id: str = None, location: str = None, url: str = None) -> ScheduleCell:
    return ScheduleCell(course_name=name, course_ref=course_id, location=location, url=url)
