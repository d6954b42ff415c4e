#!/usr/bin/env python3
"""
Google Calendar boundary.

Thin wrapper around the Calendar v3 events resource that:
- lists one week of events and keeps only ClassSync-tagged ones
- classifies every HttpError into the ClassSync error taxonomy
- backs off on rate limits and server errors before giving up
"""

import logging
import socket
import time
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from classsync import config
from classsync.core.errors import (CalendarAuthError, RemoteConflictError, RemoteNotFoundError,
                                   RemoteTimeoutError)
from classsync.gcal.event_mapper import get_timezone, is_tagged

RATE_LIMIT_REASONS = ('rateLimitExceeded', 'userRateLimitExceeded')


def _error_reason(error: HttpError) -> str:
    try:
        details = error.error_details or []
        if details and isinstance(details, list):
            return details[0].get('reason', '') or ''
    except AttributeError:
        pass
    return ''


class GoogleCalendarService:
    """Google Calendar events API scoped to one calendar."""

    def __init__(self, access_token: str = None, calendar_id: str = None,
                 service=None, source_tag: str = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.logger = logging.getLogger('google-calendar')

        self.calendar_id = calendar_id or config.CALENDAR_ID
        self.source_tag = source_tag or config.EVENT_SOURCE_TAG
        self.sleep = sleep

        # Rate limiting configuration
        self.api_call_delay = config.API_CALL_DELAY
        self.max_retries = config.API_MAX_RETRIES
        self.base_backoff = config.API_BASE_BACKOFF

        self.calendar_service = service or self._initialize_calendar_service(access_token)

    def _initialize_calendar_service(self, access_token: str):
        """Initialize Google Calendar API service for a user access token."""
        credentials = Credentials(token=access_token, scopes=config.GOOGLE_SCOPES)
        http = google_auth_httplib2.AuthorizedHttp(
            credentials, http=httplib2.Http(timeout=config.HTTP_TIMEOUT_SECONDS)
        )
        service = build('calendar', 'v3', http=http, cache_discovery=False)
        self.logger.debug("Google Calendar API service initialized")
        return service

    def _api_call_with_retry(self, api_func, *args, **kwargs):
        """
        Execute an API call, backing off on rate limits and 5xx responses.

        Every other failure is raised as a classified CalendarError.
        """
        for attempt in range(self.max_retries):
            try:
                if self.api_call_delay:
                    self.sleep(self.api_call_delay)

                request = api_func(*args, **kwargs)
                return request.execute()

            except HttpError as e:
                status = e.resp.status
                reason = _error_reason(e)

                if status == 401:
                    raise CalendarAuthError(f"Google rejected the access token: {e}", status) from e

                if status in (404, 410):
                    raise RemoteNotFoundError(f"Event not found: {e}", status) from e

                if status == 429 or (status == 403 and reason in RATE_LIMIT_REASONS):
                    backoff_time = self.base_backoff * (2 ** attempt)
                    self.logger.warning(
                        f"⏳ Rate limit hit, backing off for {backoff_time}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    self.sleep(backoff_time)
                    continue

                if status >= 500:
                    backoff_time = self.base_backoff * (2 ** attempt)
                    self.logger.warning(f"⏳ Server error {status}, retrying in {backoff_time}s")
                    self.sleep(backoff_time)
                    continue

                self.logger.error(f"❌ HTTP error {status}: {e}")
                raise RemoteConflictError(f"HTTP error {status}: {e}", status) from e

            except (TimeoutError, socket.timeout) as e:
                raise RemoteTimeoutError(f"Google Calendar request timed out: {e}") from e

            except (httplib2.HttpLib2Error, OSError) as e:
                raise RemoteConflictError(f"Google Calendar request failed: {e}") from e

        self.logger.error(f"❌ Max retries ({self.max_retries}) exceeded for API call")
        raise RemoteConflictError(f"Max retries ({self.max_retries}) exceeded")

    def list_week_events(self, week_start: date, tz=None) -> List[Dict]:
        """
        Fetch all ClassSync events in [week_start, week_start + 7 days).

        Google has no notion of the namespace tag, so filtering happens here.
        """
        tz = tz or get_timezone()
        time_min = tz.localize(datetime(week_start.year, week_start.month, week_start.day))
        week_end = week_start + timedelta(days=7)
        time_max = tz.localize(datetime(week_end.year, week_end.month, week_end.day))

        all_events = []
        page_token = None

        while True:
            result = self._api_call_with_retry(
                self.calendar_service.events().list,
                calendarId=self.calendar_id,
                timeMin=time_min.isoformat(),
                timeMax=time_max.isoformat(),
                maxResults=2500,
                singleEvents=True,
                orderBy='startTime',
                pageToken=page_token
            )

            all_events.extend(result.get('items', []))
            page_token = result.get('nextPageToken')
            if not page_token:
                break

        tagged = [event for event in all_events if is_tagged(event, self.source_tag)]
        self.logger.info(
            f"  Found {len(tagged)} ClassSync events ({len(all_events)} total) in week {week_start}"
        )
        return tagged

    def create_event(self, body: Dict) -> str:
        """Create an event and return its id."""
        created = self._api_call_with_retry(
            self.calendar_service.events().insert,
            calendarId=self.calendar_id,
            body=body
        )
        return created['id']

    def update_event(self, event_id: str, body: Dict) -> Optional[Dict]:
        return self._api_call_with_retry(
            self.calendar_service.events().update,
            calendarId=self.calendar_id,
            eventId=event_id,
            body=body
        )

    def delete_event(self, event_id: str) -> bool:
        """
        Delete an event.

        Returns False when the event was already gone; deleting is idempotent.
        """
        try:
            self._api_call_with_retry(
                self.calendar_service.events().delete,
                calendarId=self.calendar_id,
                eventId=event_id
            )
            return True
        except RemoteNotFoundError:
            self.logger.debug(f"Event {event_id} already gone")
            return False
