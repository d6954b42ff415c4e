#!/usr/bin/env python3
"""
ClassSync Flask Server

HTTP surface over the schedule store and the sync engine. Identity and the
Google tokens are supplied by the session layer in front of this service:

    X-User-Id            user the request acts for
    Authorization        "Bearer <access token>"
    X-Refresh-Token      Google refresh token
    X-Token-Expires-At   access token expiry, epoch seconds

When the engine refreshes the token, the new access token and expiry are
returned in the same headers of the response.
"""

import logging
from datetime import datetime
from typing import Optional

from flask import Flask, abort, jsonify, request
from werkzeug.serving import WSGIRequestHandler

from classsync import config
from classsync.core.db_manager import DatabaseManager
from classsync.core.errors import PersistenceError, ValidationError
from classsync.core.models import AccessCredential, parse_week_start, week_start_of
from classsync.gcal.event_mapper import get_timezone
from classsync.schedule.merger import parse_grid
from classsync.schedule.writer import ScheduleWriter
from classsync.sync.engine import ScheduleSyncEngine, SyncReport

logger = logging.getLogger('classsync-server')

app = Flask(__name__)

# Initialized by init_services()
store: Optional[DatabaseManager] = None
sync_engine: Optional[ScheduleSyncEngine] = None
schedule_writer: Optional[ScheduleWriter] = None


def init_services(db: DatabaseManager = None, engine: ScheduleSyncEngine = None):
    """Wire the store, writer and engine used by the routes."""
    global store, sync_engine, schedule_writer

    store = db or DatabaseManager()
    store.init_schema()
    sync_engine = engine or ScheduleSyncEngine(store)
    schedule_writer = ScheduleWriter(store)
    logger.info("✅ ClassSync services initialized")


def _services():
    if sync_engine is None:
        init_services()
    return store, sync_engine, schedule_writer


def _user_id() -> str:
    user_id = request.headers.get('X-User-Id')
    if not user_id:
        abort(401, description='Not authenticated')
    return user_id


def _credential() -> AccessCredential:
    auth_header = request.headers.get('Authorization', '')
    access_token = auth_header[7:] if auth_header.startswith('Bearer ') else ''
    try:
        return AccessCredential.from_dict({
            'access_token': access_token,
            'refresh_token': request.headers.get('X-Refresh-Token'),
            'expires_at': request.headers.get('X-Token-Expires-At'),
        })
    except ValueError:
        abort(400, description='X-Token-Expires-At must be epoch seconds')


def _week(value: str):
    try:
        return parse_week_start(value)
    except ValidationError as e:
        abort(400, description=str(e))


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


def _report_response(report: SyncReport, supplied: AccessCredential, extra: dict = None):
    if report.reauth_required:
        body, status = {'error': 'reauth_required', 'message': report.message}, 401
    elif report.auth_error:
        body, status = {'error': 'auth_error', 'message': report.message}, 503
    else:
        body = report.to_dict(include_results=True)
        body['success'] = report.ok
        status = 200 if report.ok else 502

    if extra:
        body.update(extra)

    response = jsonify(body)
    response.status_code = status

    refreshed = report.credential
    if refreshed and refreshed.access_token != supplied.access_token:
        response.headers['Authorization'] = f"Bearer {refreshed.access_token}"
        if refreshed.expires_at is not None:
            response.headers['X-Token-Expires-At'] = str(refreshed.expires_at)
        if refreshed.refresh_token and refreshed.refresh_token != supplied.refresh_token:
            response.headers['X-Refresh-Token'] = refreshed.refresh_token

    return response


@app.errorhandler(PersistenceError)
def handle_persistence_error(error):
    logger.error(f"❌ Store failure: {error}")
    return jsonify({'error': 'storage_error', 'message': str(error)}), 500


@app.errorhandler(ValidationError)
def handle_validation_error(error):
    return jsonify({'error': 'validation_error', 'message': str(error),
                    'details': error.errors}), 400


@app.errorhandler(400)
@app.errorhandler(401)
def handle_client_error(error):
    return jsonify({'error': error.name.lower().replace(' ', '_'),
                    'message': error.description}), error.code


@app.route('/api/weeks/<week>', methods=['GET'])
def get_week(week):
    """Return the week as a per-period grid."""
    user_id = _user_id()
    week_start = _week(week)
    _, _, writer = _services()

    grid = writer.read_week(user_id, week_start)
    schedule = {
        str(weekday): {
            str(period): cell.to_dict() if cell else None
            for period, cell in periods.items()
        }
        for weekday, periods in grid.items()
    }
    return jsonify({'weekStart': week_start.isoformat(), 'schedule': schedule})


@app.route('/api/weeks/<week>', methods=['PUT'])
def put_week(week):
    """
    Save the week's grid.

    With "sync": true the week is synced right away and the events of cleared
    cells are deleted; otherwise their ids are returned as releasedRefs for a
    later sync-deleted call.
    """
    user_id = _user_id()
    week_start = _week(week)
    _, engine, writer = _services()
    body = _json_body()

    if not isinstance(body.get('schedule'), dict):
        abort(400, description='Missing schedule')

    result = writer.write_week(user_id, week_start, parse_grid(body['schedule']))

    if not body.get('sync'):
        return jsonify(dict(result.to_dict(), success=True, weekStart=week_start.isoformat()))

    credential = _credential()
    report = engine.run_sync(user_id, week_start, credential, delete_ids=result.released_refs)
    return _report_response(report, credential, result.to_dict())


@app.route('/api/weeks/<week>/sync', methods=['POST'])
def sync_week(week):
    user_id = _user_id()
    week_start = _week(week)
    _, engine, _ = _services()
    credential = _credential()

    delete_ids = _json_body().get('deleteIds') or []
    report = engine.run_sync(user_id, week_start, credential, delete_ids=delete_ids)
    return _report_response(report, credential)


@app.route('/api/weeks/<week>/sync-deleted', methods=['POST'])
def sync_deleted(week):
    """Delete the calendar events of cells the user cleared."""
    user_id = _user_id()
    week_start = _week(week)
    _, engine, _ = _services()

    event_ids = _json_body().get('eventIds')
    if not isinstance(event_ids, list) or not event_ids:
        abort(400, description='eventIds must be a non-empty list')

    credential = _credential()
    report = engine.run_sync(user_id, week_start, credential, delete_ids=event_ids)
    return _report_response(report, credential)


@app.route('/api/weeks/<week>/force-sync', methods=['POST'])
def force_sync_week(week):
    user_id = _user_id()
    week_start = _week(week)
    _, engine, _ = _services()
    credential = _credential()

    report = engine.force_resync(user_id, credential, week_start=week_start)
    return _report_response(report, credential)


@app.route('/api/weeks/<week>/recover', methods=['POST'])
def recover_week(week):
    user_id = _user_id()
    week_start = _week(week)
    _, engine, _ = _services()
    credential = _credential()

    report = engine.recover(user_id, week_start, credential)
    return _report_response(report, credential)


@app.route('/api/weeks/<week>/cleanup', methods=['POST'])
def cleanup_week(week):
    user_id = _user_id()
    week_start = _week(week)
    _, engine, _ = _services()
    credential = _credential()

    report = engine.cleanup_orphans(user_id, week_start, credential)
    return _report_response(report, credential)


@app.route('/api/weeks/<week>/copy-previous', methods=['POST'])
def copy_previous(week):
    """Copy last week's slots; events of overwritten slots are deleted on sync."""
    user_id = _user_id()
    week_start = _week(week)
    _, engine, writer = _services()

    result = writer.copy_previous_week(user_id, week_start)
    if not result.slots:
        return jsonify({'success': False, 'error': 'previous_week_empty',
                        'message': 'No schedule found in the previous week'}), 404

    if not _json_body().get('sync'):
        return jsonify(dict(result.to_dict(), success=True, weekStart=week_start.isoformat()))

    credential = _credential()
    report = engine.run_sync(user_id, week_start, credential, delete_ids=result.released_refs)
    return _report_response(report, credential, result.to_dict())


@app.route('/api/weeks/<week>/preview', methods=['GET'])
def preview_week(week):
    user_id = _user_id()
    week_start = _week(week)
    _, engine, _ = _services()
    credential = _credential()

    report = engine.preview(user_id, week_start, credential)
    return _report_response(report, credential)


@app.route('/api/sync-all', methods=['POST'])
def sync_all():
    user_id = _user_id()
    _, engine, _ = _services()
    credential = _credential()

    report = engine.sync_all(user_id, credential)
    return _report_response(report, credential)


@app.route('/api/force-sync-all', methods=['POST'])
def force_sync_all():
    user_id = _user_id()
    _, engine, _ = _services()
    credential = _credential()

    report = engine.force_resync(user_id, credential)
    return _report_response(report, credential)


@app.route('/api/force-sync-all/weeks', methods=['GET'])
def force_sync_weeks():
    """Current and future weeks with slots, for driving per-week force-sync."""
    user_id = _user_id()
    db, _, _ = _services()

    current = week_start_of(datetime.now(get_timezone()).date())
    weeks = db.get_weeks(user_id, from_week=current)
    return jsonify({'currentWeek': current.isoformat(),
                    'weeks': [week.isoformat() for week in weeks]})


@app.route('/status')
def status():
    """Status endpoint for monitoring."""
    db, _, _ = _services()

    status_info = {
        'service': 'ClassSync',
        'status': 'active',
        'database': 'connected' if db.test_connection() else 'unavailable',
        'calendarId': config.CALENDAR_ID,
        'timezone': config.TIMEZONE,
    }
    status_info.update(db.get_stats())
    return jsonify(status_info)


# Disable Flask request logging to reduce noise
class NoLoggingWSGIRequestHandler(WSGIRequestHandler):
    def log_request(self, *args, **kwargs):
        pass


def main():
    """Run the Flask server."""
    import argparse

    parser = argparse.ArgumentParser(description='ClassSync Flask Server')
    parser.add_argument('--port', type=int, default=config.FLASK_PORT,
                        help=f'Port to run server on (default: {config.FLASK_PORT})')
    parser.add_argument('--host', default=config.FLASK_HOST,
                        help=f'Host to bind to (default: {config.FLASK_HOST})')
    parser.add_argument('--debug', action='store_true',
                        help='Run in debug mode')
    parser.add_argument('--log-level', default=config.LOG_LEVEL,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    if not args.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)

    init_services()

    print(f"🌐 Starting ClassSync Flask Server...")
    print(f"Host: {args.host}:{args.port}")
    print(f"Status page: http://{args.host}:{args.port}/status")

    app.run(
        host=args.host,
        port=args.port,
        debug=args.debug,
        request_handler=NoLoggingWSGIRequestHandler if not args.debug else WSGIRequestHandler
    )


if __name__ == '__main__':
    main()
