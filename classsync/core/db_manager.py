#!/usr/bin/env python3
"""
ClassSync Database Manager

Handles all local store operations for schedule slots:
- Per-week reads and the atomic replace-all-for-week write path
- External event linkage (assign / clear calendar event ids)
- Per-(user, week) locking so a sync and a recovery never interleave
"""

import logging
import threading
import zlib
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import (Column, Date, DateTime, Integer, MetaData, String, Table,
                        UniqueConstraint, create_engine, func, text)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from classsync import config
from classsync.core.errors import PersistenceError
from classsync.core.models import ScheduleSlot

metadata = MetaData()

schedule_slots = Table(
    'schedule_slots', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(64), nullable=False, index=True),
    Column('week_start', Date, nullable=False),
    Column('weekday', Integer, nullable=False),
    Column('period_start', Integer, nullable=False),
    Column('period_end', Integer, nullable=False),
    Column('course_ref', String(64)),
    Column('course_name', String(255), nullable=False, default=''),
    Column('base_name', String(255)),
    Column('room_name', String(255)),
    Column('series_id', String(64)),
    Column('url', String(1024)),
    Column('external_ref', String(1024), index=True),
    Column('created_at', DateTime, server_default=func.current_timestamp()),
    Column('updated_at', DateTime, server_default=func.current_timestamp()),
    UniqueConstraint('user_id', 'week_start', 'weekday', 'period_start', 'period_end',
                     name='uq_schedule_slots_period_range'),
)

SLOT_COLUMNS = """
    id, user_id, week_start, weekday, period_start, period_end, course_ref,
    course_name, base_name, room_name, series_id, url, external_ref
"""

# Process-local half of the per-(user, week) lock: key -> [lock, holders]
_week_locks: Dict[str, list] = {}
_week_locks_guard = threading.Lock()


@contextmanager
def _local_week_lock(key: str):
    with _week_locks_guard:
        entry = _week_locks.setdefault(key, [threading.Lock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _week_locks_guard:
            entry[1] -= 1
            if not entry[1]:
                del _week_locks[key]


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _row_to_slot(row) -> ScheduleSlot:
    return ScheduleSlot(
        id=row['id'],
        user_id=row['user_id'],
        week_start=_as_date(row['week_start']),
        weekday=row['weekday'],
        period_start=row['period_start'],
        period_end=row['period_end'],
        course_ref=row['course_ref'],
        course_name=row['course_name'] or '',
        base_name=row['base_name'],
        room_name=row['room_name'],
        series_id=row['series_id'],
        url=row['url'],
        external_ref=row['external_ref'],
    )


def _slot_params(slot: ScheduleSlot) -> Dict:
    return {
        "user_id": slot.user_id,
        "week_start": slot.week_start.isoformat(),
        "weekday": slot.weekday,
        "period_start": slot.period_start,
        "period_end": slot.period_end,
        "course_ref": slot.course_ref,
        "course_name": slot.course_name or '',
        "base_name": slot.base_name,
        "room_name": slot.room_name,
        "series_id": slot.series_id,
        "url": slot.url,
        "external_ref": slot.external_ref,
    }


INSERT_SLOT_SQL = text(f"""
    INSERT INTO schedule_slots (
        user_id, week_start, weekday, period_start, period_end, course_ref,
        course_name, base_name, room_name, series_id, url, external_ref
    ) VALUES (
        :user_id, :week_start, :weekday, :period_start, :period_end, :course_ref,
        :course_name, :base_name, :room_name, :series_id, :url, :external_ref
    )
    RETURNING {SLOT_COLUMNS}
""")


class DatabaseManager:
    """Manages database connections and queries for ClassSync schedule slots."""

    def __init__(self, connection_string: str = None):
        self.logger = logging.getLogger('db-manager')

        if connection_string is None:
            connection_string = config.DATABASE_URL

        self.connection_string = connection_string

        if connection_string.startswith('sqlite'):
            self.engine = create_engine(
                connection_string,
                connect_args={'check_same_thread': False},
                echo=False
            )
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,  # Verify connections before using
                echo=False
            )

        self.SessionLocal = sessionmaker(bind=self.engine)

        self.logger.info("✅ Database manager initialized")

    @property
    def is_postgres(self) -> bool:
        return self.engine.dialect.name == 'postgresql'

    def init_schema(self):
        """Create the schedule_slots table if it does not exist yet."""
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to create schema: {e}")
            raise PersistenceError(f"Failed to create schema: {e}") from e

    @contextmanager
    def get_session(self):
        """Context manager for database sessions."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            self.logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    @contextmanager
    def week_lock(self, user_id: str, week_start: date):
        """
        Serialize all sync work on one (user, week) row-set.

        Always takes a process-local lock; on PostgreSQL additionally holds a
        session-level advisory lock so separate worker processes serialize too.
        """
        key = f"{user_id}:{week_start.isoformat()}"

        with _local_week_lock(key):
            if not self.is_postgres:
                yield
                return

            # Stable across processes, unlike hash()
            lock_id = zlib.crc32(key.encode('utf-8')) % (2**31 - 1)

            session = self.SessionLocal()
            try:
                session.execute(text("SELECT pg_advisory_lock(:lock_id)"),
                                {"lock_id": lock_id})
                self.logger.debug(f"Acquired advisory lock: {key} (ID: {lock_id})")
                try:
                    yield
                finally:
                    session.execute(text("SELECT pg_advisory_unlock(:lock_id)"),
                                    {"lock_id": lock_id})
                    session.commit()
                    self.logger.debug(f"Released advisory lock: {key} (ID: {lock_id})")
            finally:
                session.close()

    def test_connection(self) -> bool:
        """Test database connection."""
        try:
            with self.get_session() as session:
                result = session.execute(text("SELECT 1")).scalar()
                if result == 1:
                    self.logger.info("✅ Database connection successful")
                    return True
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Database connection failed: {e}")
        return False

    def get_week_slots(self, user_id: str, week_start: date) -> List[ScheduleSlot]:
        """Get all slots of one week, ordered by weekday then periodStart."""
        try:
            with self.get_session() as session:
                results = session.execute(
                    text(f"""
                        SELECT {SLOT_COLUMNS} FROM schedule_slots
                        WHERE user_id = :user_id
                        AND week_start = :week_start
                        ORDER BY weekday, period_start
                    """),
                    {"user_id": user_id, "week_start": week_start.isoformat()}
                ).mappings().all()

                return [_row_to_slot(row) for row in results]
        except SQLAlchemyError as e:
            self.logger.error(f"Error fetching slots for week {week_start}: {e}")
            raise PersistenceError(f"Failed to read week {week_start}: {e}") from e

    def get_slot(self, slot_id: int) -> Optional[ScheduleSlot]:
        """Get a specific slot by id."""
        try:
            with self.get_session() as session:
                result = session.execute(
                    text(f"SELECT {SLOT_COLUMNS} FROM schedule_slots WHERE id = :id"),
                    {"id": slot_id}
                ).mappings().first()

                return _row_to_slot(result) if result else None
        except SQLAlchemyError as e:
            self.logger.error(f"Error fetching slot {slot_id}: {e}")
            raise PersistenceError(f"Failed to read slot {slot_id}: {e}") from e

    def insert_slot(self, slot: ScheduleSlot) -> ScheduleSlot:
        """Insert a new slot and return it with its assigned id."""
        try:
            with self.get_session() as session:
                row = session.execute(INSERT_SLOT_SQL, _slot_params(slot)).mappings().first()
                self.logger.debug(f"Inserted slot {row['id']} ({slot.course_name})")
                return _row_to_slot(row)
        except SQLAlchemyError as e:
            self.logger.error(f"Error inserting slot {slot.period_range}: {e}")
            raise PersistenceError(f"Failed to insert slot: {e}") from e

    def set_external_ref(self, slot_id: int, external_ref: Optional[str]) -> bool:
        """Assign (or clear, with None) the calendar event id of a slot."""
        try:
            with self.get_session() as session:
                result = session.execute(
                    text("""
                        UPDATE schedule_slots
                        SET external_ref = :external_ref,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE id = :id
                    """),
                    {"id": slot_id, "external_ref": external_ref}
                )
                return result.rowcount > 0
        except SQLAlchemyError as e:
            self.logger.error(f"Error linking slot {slot_id} to {external_ref}: {e}")
            raise PersistenceError(f"Failed to update external ref of slot {slot_id}: {e}") from e

    def delete_slot(self, slot_id: int) -> bool:
        """Delete one slot."""
        try:
            with self.get_session() as session:
                result = session.execute(
                    text("DELETE FROM schedule_slots WHERE id = :id"),
                    {"id": slot_id}
                )
                return result.rowcount > 0
        except SQLAlchemyError as e:
            self.logger.error(f"Error deleting slot {slot_id}: {e}")
            raise PersistenceError(f"Failed to delete slot {slot_id}: {e}") from e

    def delete_by_external_ref(self, user_id: str, external_ref: str) -> int:
        """Delete every slot of a user linked to the given calendar event."""
        try:
            with self.get_session() as session:
                result = session.execute(
                    text("""
                        DELETE FROM schedule_slots
                        WHERE user_id = :user_id
                        AND external_ref = :external_ref
                    """),
                    {"user_id": user_id, "external_ref": external_ref}
                )
                return result.rowcount
        except SQLAlchemyError as e:
            self.logger.error(f"Error deleting slots linked to {external_ref}: {e}")
            raise PersistenceError(f"Failed to delete slots linked to {external_ref}: {e}") from e

    def clear_week_external_refs(self, user_id: str, week_start: date) -> int:
        """Unlink every slot of a week from its calendar event."""
        try:
            with self.get_session() as session:
                result = session.execute(
                    text("""
                        UPDATE schedule_slots
                        SET external_ref = NULL,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE user_id = :user_id
                        AND week_start = :week_start
                        AND external_ref IS NOT NULL
                    """),
                    {"user_id": user_id, "week_start": week_start.isoformat()}
                )
                return result.rowcount
        except SQLAlchemyError as e:
            self.logger.error(f"Error clearing external refs for week {week_start}: {e}")
            raise PersistenceError(f"Failed to clear external refs for week {week_start}: {e}") from e

    def delete_week(self, user_id: str, week_start: date) -> int:
        """Bulk delete all slots of a week."""
        try:
            with self.get_session() as session:
                result = session.execute(
                    text("""
                        DELETE FROM schedule_slots
                        WHERE user_id = :user_id
                        AND week_start = :week_start
                    """),
                    {"user_id": user_id, "week_start": week_start.isoformat()}
                )
                return result.rowcount
        except SQLAlchemyError as e:
            self.logger.error(f"Error deleting week {week_start}: {e}")
            raise PersistenceError(f"Failed to delete week {week_start}: {e}") from e

    def replace_week(self, user_id: str, week_start: date,
                     slots: Iterable[ScheduleSlot]) -> List[ScheduleSlot]:
        """
        Atomically replace all slots of a week.

        The delete and all inserts share one transaction; on any failure the
        previous rows are left untouched.
        """
        try:
            with self.get_session() as session:
                deleted = session.execute(
                    text("""
                        DELETE FROM schedule_slots
                        WHERE user_id = :user_id
                        AND week_start = :week_start
                    """),
                    {"user_id": user_id, "week_start": week_start.isoformat()}
                ).rowcount

                written = []
                for slot in slots:
                    row = session.execute(INSERT_SLOT_SQL, _slot_params(slot)).mappings().first()
                    written.append(_row_to_slot(row))

                self.logger.debug(
                    f"Replaced week {week_start}: removed {deleted}, wrote {len(written)} slots"
                )
                return written
        except SQLAlchemyError as e:
            self.logger.error(f"Error replacing week {week_start}: {e}")
            raise PersistenceError(f"Failed to replace week {week_start}: {e}") from e

    def get_weeks(self, user_id: str, from_week: Optional[date] = None) -> List[date]:
        """List the weeks that hold slots, optionally starting at from_week."""
        query = """
            SELECT DISTINCT week_start FROM schedule_slots
            WHERE user_id = :user_id
        """
        params = {"user_id": user_id}
        if from_week is not None:
            query += " AND week_start >= :from_week"
            params["from_week"] = from_week.isoformat()
        query += " ORDER BY week_start"

        try:
            with self.get_session() as session:
                results = session.execute(text(query), params).scalars().all()
                return [_as_date(value) for value in results]
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing weeks for {user_id}: {e}")
            raise PersistenceError(f"Failed to list weeks: {e}") from e

    def get_unsynced_weeks(self, user_id: str) -> List[date]:
        """List the weeks that hold at least one slot without an external ref."""
        try:
            with self.get_session() as session:
                results = session.execute(
                    text("""
                        SELECT DISTINCT week_start FROM schedule_slots
                        WHERE user_id = :user_id
                        AND external_ref IS NULL
                        ORDER BY week_start
                    """),
                    {"user_id": user_id}
                ).scalars().all()
                return [_as_date(value) for value in results]
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing unsynced weeks for {user_id}: {e}")
            raise PersistenceError(f"Failed to list unsynced weeks: {e}") from e

    def get_stats(self) -> Dict:
        """Get database statistics."""
        try:
            with self.get_session() as session:
                stats = {}

                stats['total_slots'] = session.execute(
                    text("SELECT COUNT(*) FROM schedule_slots")
                ).scalar()

                stats['linked_slots'] = session.execute(
                    text("SELECT COUNT(*) FROM schedule_slots WHERE external_ref IS NOT NULL")
                ).scalar()

                stats['unlinked_slots'] = stats['total_slots'] - stats['linked_slots']

                stats['users'] = session.execute(
                    text("SELECT COUNT(DISTINCT user_id) FROM schedule_slots")
                ).scalar()

                return stats
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting stats: {e}")
            return {}
