#!/usr/bin/env python3
"""
ClassSync engine

Caller-facing operations over one user's schedule:
- run_sync:        reconcile one week (optionally deleting released events)
- preview:         build the plan without touching anything
- force_resync:    wipe and recreate the ClassSync events of one or all weeks
- sync_all:        run_sync for every week with unsynced slots
- recover:         rebuild local slots from the calendar
- cleanup_orphans: re-link or drop slots whose event vanished

Every operation first obtains a usable access token through the Token Guard,
and runs each week under the store's per-(user, week) lock. The outcome,
including reauthorization signals and the possibly refreshed credential, is
returned as a SyncReport; auth problems are never raised to the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional

from classsync.core.db_manager import DatabaseManager
from classsync.core.errors import (CalendarAuthError, CalendarError, PersistenceError,
                                   ReauthRequiredError, TransientAuthError)
from classsync.core.models import AccessCredential, week_start_of
from classsync.gcal.calendar_service import GoogleCalendarService
from classsync.gcal.event_mapper import get_timezone
from classsync.gcal.token_guard import TokenGuard
from classsync.sync.executor import SyncExecutor, SyncSummary
from classsync.sync.orphans import OrphanCollector
from classsync.sync.plan import DELETE_RESET, Delete, SyncPlan
from classsync.sync.planner import ReconciliationPlanner
from classsync.sync.recovery import RecoveryScanner

CalendarFactory = Callable[[str], GoogleCalendarService]


@dataclass
class SyncReport:
    operation: str
    user_id: str
    week_starts: List[date] = field(default_factory=list)
    summary: SyncSummary = field(default_factory=SyncSummary)
    plans: Dict[date, SyncPlan] = field(default_factory=dict)
    reauth_required: bool = False
    auth_error: bool = False
    error: Optional[str] = None
    message: str = ''
    credential: Optional[AccessCredential] = None

    @property
    def ok(self) -> bool:
        return not (self.reauth_required or self.auth_error or self.error)

    def to_dict(self, include_results: bool = False) -> Dict:
        data = {
            'operation': self.operation,
            'weeks': [week.isoformat() for week in self.week_starts],
            'counts': self.summary.counts(),
            'reauthRequired': self.reauth_required,
            'authError': self.auth_error,
            'error': self.error,
            'message': self.message,
        }
        if self.plans:
            data['plans'] = {week.isoformat(): plan.to_dict() for week, plan in self.plans.items()}
        if include_results:
            data['results'] = [result.to_dict() for result in self.summary.results]
        return data


@dataclass
class _Connection:
    credential: AccessCredential
    calendar: GoogleCalendarService
    refreshed_after_401: bool = False


class ScheduleSyncEngine:
    """Entry point for every sync operation of the HTTP surface and the CLI."""

    def __init__(self, store: DatabaseManager, calendar_factory: CalendarFactory = None,
                 token_guard: TokenGuard = None, planner: ReconciliationPlanner = None,
                 tz=None, source_tag: str = None):
        self.logger = logging.getLogger('sync-engine')
        self.store = store
        self.calendar_factory = calendar_factory or (
            lambda access_token: GoogleCalendarService(access_token=access_token, source_tag=source_tag)
        )
        self.token_guard = token_guard or TokenGuard()
        self.planner = planner or ReconciliationPlanner()
        self.tz = tz or get_timezone()
        self.source_tag = source_tag

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def run_sync(self, user_id: str, week_start: date, credential: AccessCredential,
                 delete_ids: Iterable[str] = ()) -> SyncReport:
        """Reconcile one week; delete_ids are events released by cleared cells."""
        report = SyncReport('sync', user_id, [week_start])
        delete_ids = list(delete_ids)

        def work(conn: _Connection):
            self._sync_week(conn, report, user_id, week_start, delete_ids)

        return self._run(report, credential, work)

    def preview(self, user_id: str, week_start: date, credential: AccessCredential) -> SyncReport:
        """Build the week's plan without mutating anything."""
        report = SyncReport('preview', user_id, [week_start])

        def work(conn: _Connection):
            with self.store.week_lock(user_id, week_start):
                local = self.store.get_week_slots(user_id, week_start)
                events = self._list_week(conn, week_start)
                report.plans[week_start] = self.planner.build_plan(local, events)

        return self._run(report, credential, work)

    def force_resync(self, user_id: str, credential: AccessCredential,
                     week_start: Optional[date] = None) -> SyncReport:
        """
        Delete every ClassSync event of the week(s) and recreate all slots.

        Without week_start every stored week from the current week on is reset.
        """
        report = SyncReport('force-sync', user_id, [week_start] if week_start else [])

        def work(conn: _Connection):
            if week_start is None:
                report.week_starts = self.store.get_weeks(user_id, from_week=self._current_week())
            for week in report.week_starts:
                self._reset_week(conn, report, user_id, week)
                if report.summary.reauth_required:
                    break

        return self._run(report, credential, work)

    def sync_all(self, user_id: str, credential: AccessCredential) -> SyncReport:
        """Sync every week that still holds slots without a calendar event."""
        report = SyncReport('sync-all', user_id)

        def work(conn: _Connection):
            report.week_starts = self.store.get_unsynced_weeks(user_id)
            for week in report.week_starts:
                self._sync_week(conn, report, user_id, week, ())
                if report.summary.reauth_required:
                    break

        return self._run(report, credential, work)

    def recover(self, user_id: str, week_start: date, credential: AccessCredential) -> SyncReport:
        """Rebuild or link local slots from the week's ClassSync events."""
        report = SyncReport('recover', user_id, [week_start])
        scanner = RecoveryScanner(self.store)

        def work(conn: _Connection):
            with self.store.week_lock(user_id, week_start):
                events = self._list_week(conn, week_start)
                report.summary.merge(scanner.recover(user_id, week_start, events))

        return self._run(report, credential, work)

    def cleanup_orphans(self, user_id: str, week_start: date,
                        credential: AccessCredential) -> SyncReport:
        """Re-link or remove local slots whose calendar event vanished."""
        report = SyncReport('cleanup', user_id, [week_start])
        collector = OrphanCollector(self.store, tz=self.tz)

        def work(conn: _Connection):
            with self.store.week_lock(user_id, week_start):
                # A failed listing raises here, before any slot is touched
                events = self._list_week(conn, week_start)
                report.summary.merge(collector.collect(user_id, week_start, events))

        return self._run(report, credential, work)

    # ------------------------------------------------------------------
    # Per-week work
    # ------------------------------------------------------------------

    def _sync_week(self, conn: _Connection, report: SyncReport, user_id: str,
                   week_start: date, delete_ids: Iterable[str]):
        with self.store.week_lock(user_id, week_start):
            local = self.store.get_week_slots(user_id, week_start)
            events = self._list_week(conn, week_start)
            plan = self.planner.build_plan(local, events, delete_ids)
            report.plans[week_start] = plan
            report.summary.merge(self._executor(conn).execute(plan, user_id))

    def _reset_week(self, conn: _Connection, report: SyncReport, user_id: str, week_start: date):
        self.logger.info(f"🔄 Force re-sync of week {week_start}")

        with self.store.week_lock(user_id, week_start):
            events = self._list_week(conn, week_start)
            executor = self._executor(conn)

            wipe = SyncPlan(to_delete=[Delete(event['id'], DELETE_RESET) for event in events])
            summary = executor.execute(wipe, user_id)
            report.summary.merge(summary)
            if summary.reauth_required:
                return

            self.store.clear_week_external_refs(user_id, week_start)
            plan = self.planner.build_plan(self.store.get_week_slots(user_id, week_start), [])
            report.plans[week_start] = plan
            report.summary.merge(executor.execute(plan, user_id))

    # ------------------------------------------------------------------
    # Credentials and remote access
    # ------------------------------------------------------------------

    def _run(self, report: SyncReport, credential: AccessCredential,
             work: Callable[[_Connection], None]) -> SyncReport:
        conn = None
        try:
            conn = self._connect(credential)
            work(conn)
        except ReauthRequiredError as e:
            self.logger.warning(f"🔑 {report.operation}: re-authorization required ({e})")
            report.reauth_required = True
            report.error = str(e)
        except TransientAuthError as e:
            self.logger.error(f"❌ {report.operation}: could not obtain an access token: {e}")
            report.auth_error = True
            report.error = str(e)
        except CalendarAuthError as e:
            self.logger.warning(f"🔑 {report.operation}: Google still rejects the token ({e})")
            report.reauth_required = True
            report.error = str(e)
        except CalendarError as e:
            self.logger.error(f"❌ {report.operation}: calendar listing failed, nothing changed: {e}")
            report.error = str(e)
        except PersistenceError as e:
            self.logger.error(f"❌ {report.operation}: local store failure: {e}")
            report.error = str(e)

        report.reauth_required = report.reauth_required or report.summary.reauth_required
        report.credential = conn.credential if conn else credential
        report.message = self._describe(report)
        return report

    def _acquire(self, credential: AccessCredential, force: bool = False) -> AccessCredential:
        """Token Guard with a single retry on transient failures."""
        try:
            return self.token_guard.ensure_access(credential, force=force)
        except TransientAuthError as e:
            self.logger.warning(f"⚠️  Token refresh failed, retrying once: {e}")
            return self.token_guard.ensure_access(credential, force=force)

    def _connect(self, credential: AccessCredential) -> _Connection:
        credential = self._acquire(credential)
        return _Connection(credential, self.calendar_factory(credential.access_token))

    def _list_week(self, conn: _Connection, week_start: date) -> List[Dict]:
        """List a week; a first 401 forces one token refresh and one retry."""
        try:
            return conn.calendar.list_week_events(week_start, self.tz)
        except CalendarAuthError:
            if conn.refreshed_after_401:
                raise
            self.logger.warning("⚠️  Google rejected the access token, forcing a refresh")
            conn.refreshed_after_401 = True
            conn.credential = self._acquire(conn.credential, force=True)
            conn.calendar = self.calendar_factory(conn.credential.access_token)
            return conn.calendar.list_week_events(week_start, self.tz)

    def _executor(self, conn: _Connection) -> SyncExecutor:
        return SyncExecutor(conn.calendar, self.store, self.tz, self.source_tag)

    def _current_week(self) -> date:
        return week_start_of(datetime.now(self.tz).date())

    @staticmethod
    def _describe(report: SyncReport) -> str:
        if report.reauth_required:
            return 'Google account needs to be re-authorized'
        if report.auth_error:
            return 'Could not obtain a Google access token, try again later'
        if report.error:
            return f"{report.operation} failed: {report.error}"

        summary = report.summary
        if report.operation == 'preview':
            plan = next(iter(report.plans.values()), None)
            if plan is None or plan.is_empty:
                return 'Calendar is up to date'
            return (f"{len(plan.to_create)} to create, {len(plan.to_link_and_update)} to update, "
                    f"{len(plan.to_replace)} to replace, {len(plan.to_delete)} to delete")
        if report.operation == 'recover':
            return (f"Recovered {summary.recovered}, linked {summary.linked}, "
                    f"skipped {summary.skipped}")
        if report.operation == 'cleanup':
            return (f"Re-linked {summary.relinked}, removed {summary.orphans_removed} "
                    f"orphaned slots")
        if not report.week_starts:
            return 'Nothing to sync'
        if summary.changes == 0 and summary.failed == 0:
            return 'Calendar is up to date'
        return (f"Created {summary.created}, updated {summary.updated}, "
                f"replaced {summary.replaced}, deleted {summary.deleted}, "
                f"failed {summary.failed}")
