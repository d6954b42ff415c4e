"""
ClassSync error taxonomy.

Remote failures are classified once, at the Google Calendar boundary, so the
sync components can decide per action whether to continue, skip or abort.
"""

from typing import Optional


class ClassSyncError(Exception):
    """Base class for all ClassSync errors."""


class ValidationError(ClassSyncError):
    """A slot or grid cell is out of range or has no course identity."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or [message]


class ReauthRequiredError(ClassSyncError):
    """The refresh token is dead; the user must grant consent again."""

    def __init__(self, message: str = 'Google account needs to be re-authorized'):
        super().__init__(message)


class TransientAuthError(ClassSyncError):
    """Credential refresh failed for a reason that may go away on retry."""


class PersistenceError(ClassSyncError):
    """A local store read or write failed."""


class CalendarError(ClassSyncError):
    """A Google Calendar API call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CalendarAuthError(CalendarError):
    """Google rejected the access token (HTTP 401)."""


class RemoteNotFoundError(CalendarError):
    """The event does not exist anymore (HTTP 404 / 410)."""


class RemoteConflictError(CalendarError):
    """Any other non-2xx response, including exhausted rate-limit retries."""


class RemoteTimeoutError(CalendarError):
    """The request did not complete within the configured timeout."""
