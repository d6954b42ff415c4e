"""
HTTP surface tests using the Flask test client.
"""

import json

import pytest

from classsync import server
from classsync.core.errors import ReauthRequiredError
from classsync.gcal.calendar_service import GoogleCalendarService
from classsync.sync.engine import ScheduleSyncEngine

from conftest import NOW, USER


class DeadGuard:
    def ensure_access(self, credential, force=False):
        raise ReauthRequiredError()


@pytest.fixture
def client(store, engine):
    server.init_services(store, engine)
    server.app.config['TESTING'] = True
    return server.app.test_client()


def headers(user=USER):
    return {
        'X-User-Id': user,
        'Authorization': 'Bearer access-1',
        'X-Refresh-Token': 'refresh-1',
        'X-Token-Expires-At': str(NOW + 3600),
    }


GRID = {'1': {'1': {'courseName': 'Algebra', 'location': 'Main - 101'},
              '2': {'courseName': 'Algebra', 'location': 'Main - 101'}}}


class TestWeekRoutes:
    """Reading and writing weeks"""

    def test_put_then_get_week(self, client):
        response = client.put('/api/weeks/2024-09-02', json={'schedule': GRID}, headers=headers())

        assert response.status_code == 200
        assert response.get_json()['slotsWritten'] == 1

        data = client.get('/api/weeks/2024-09-02', headers=headers()).get_json()
        assert data['weekStart'] == '2024-09-02'
        assert data['schedule']['1']['2'] == {'courseName': 'Algebra', 'location': 'Main - 101'}
        assert data['schedule']['1']['3'] is None

    def test_any_day_maps_to_its_monday(self, client):
        client.put('/api/weeks/2024-09-04', json={'schedule': GRID}, headers=headers())

        data = client.get('/api/weeks/2024-09-02', headers=headers()).get_json()
        assert data['schedule']['1']['1']['courseName'] == 'Algebra'

    def test_put_with_sync_creates_events(self, client, fake_api):
        response = client.put('/api/weeks/2024-09-02', json={'schedule': GRID, 'sync': True},
                              headers=headers())

        body = response.get_json()
        assert response.status_code == 200
        assert body['counts']['created'] == 1
        assert len(fake_api.events_by_id) == 1

    def test_invalid_grid_is_rejected(self, client):
        response = client.put('/api/weeks/2024-09-02',
                              json={'schedule': {'9': {'1': {'courseName': 'Algebra'}}}},
                              headers=headers())

        assert response.status_code == 400
        assert response.get_json()['error'] == 'validation_error'

    def test_bad_week_is_rejected(self, client):
        response = client.get('/api/weeks/not-a-date', headers=headers())

        assert response.status_code == 400

    def test_missing_user_is_unauthorized(self, client):
        response = client.get('/api/weeks/2024-09-02')

        assert response.status_code == 401


class TestSyncRoutes:
    """Sync operations over HTTP"""

    def test_sync_and_sync_deleted(self, client, fake_api):
        client.put('/api/weeks/2024-09-02', json={'schedule': GRID}, headers=headers())
        client.post('/api/weeks/2024-09-02/sync', headers=headers())
        event_id = next(iter(fake_api.events_by_id))

        response = client.post('/api/weeks/2024-09-02/sync-deleted',
                               json={'eventIds': [event_id]}, headers=headers())

        assert response.status_code == 200
        assert response.get_json()['counts']['deleted'] == 1
        assert fake_api.events_by_id == {}

    def test_sync_deleted_requires_ids(self, client):
        response = client.post('/api/weeks/2024-09-02/sync-deleted', json={}, headers=headers())

        assert response.status_code == 400

    def test_preview_lists_plan(self, client, fake_api):
        client.put('/api/weeks/2024-09-02', json={'schedule': GRID}, headers=headers())

        response = client.get('/api/weeks/2024-09-02/preview', headers=headers())

        plan = response.get_json()['plans']['2024-09-02']
        assert len(plan['create']) == 1
        assert fake_api.events_by_id == {}

    def test_copy_previous_week(self, client):
        client.put('/api/weeks/2024-08-26', json={'schedule': GRID}, headers=headers())

        response = client.post('/api/weeks/2024-09-02/copy-previous', headers=headers())

        assert response.status_code == 200
        data = client.get('/api/weeks/2024-09-02', headers=headers()).get_json()
        assert data['schedule']['1']['1']['courseName'] == 'Algebra'

    def test_copy_previous_from_empty_week(self, client):
        response = client.post('/api/weeks/2024-09-02/copy-previous', headers=headers())

        assert response.status_code == 404

    def test_sync_all_and_force_sync_all(self, client, fake_api):
        client.put('/api/weeks/2024-09-02', json={'schedule': GRID}, headers=headers())

        assert client.post('/api/sync-all', headers=headers()).get_json()['counts']['created'] == 1
        response = client.post('/api/weeks/2024-09-02/force-sync', headers=headers())
        assert response.get_json()['counts']['deleted'] == 1
        assert len(fake_api.events_by_id) == 1

    def test_force_sync_weeks_lists_current_and_future(self, client):
        client.put('/api/weeks/2000-01-05', json={'schedule': GRID}, headers=headers())
        client.put('/api/weeks/2099-06-10', json={'schedule': GRID}, headers=headers())

        data = client.get('/api/force-sync-all/weeks', headers=headers()).get_json()

        assert len(data['weeks']) == 1
        assert data['weeks'][0].startswith('2099-06')
        assert data['currentWeek'] <= data['weeks'][0]

    def test_malformed_expiry_header_is_rejected(self, client, fake_api):
        bad = dict(headers(), **{'X-Token-Expires-At': 'soon'})

        response = client.post('/api/weeks/2024-09-02/sync', headers=bad)

        assert response.status_code == 400
        assert response.get_json()['error'] == 'bad_request'
        assert fake_api.calls == []

    def test_recover_route(self, client, fake_api):
        client.put('/api/weeks/2024-09-02', json={'schedule': GRID, 'sync': True}, headers=headers())
        client.put('/api/weeks/2024-09-02', json={'schedule': {}}, headers=headers())

        response = client.post('/api/weeks/2024-09-02/recover', headers=headers())

        assert response.get_json()['counts']['recovered'] == 1

    def test_reauth_required_is_401(self, store, fake_api):
        engine = ScheduleSyncEngine(
            store,
            calendar_factory=lambda token: GoogleCalendarService(service=fake_api, sleep=lambda s: None),
            token_guard=DeadGuard(),
        )
        server.init_services(store, engine)

        response = server.app.test_client().post('/api/weeks/2024-09-02/sync', headers=headers())

        assert response.status_code == 401
        assert json.loads(response.data) == {'error': 'reauth_required',
                                             'message': 'Google account needs to be re-authorized'}


def test_status(client):
    data = client.get('/status').get_json()

    assert data['status'] == 'active'
    assert data['database'] == 'connected'
    assert data['total_slots'] == 0
