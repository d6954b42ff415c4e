"""
Command line interface tests.
"""

import json

import pytest

from classsync import cli
from classsync.core.models import AccessCredential, ScheduleSlot
from classsync.gcal.calendar_service import GoogleCalendarService
from classsync.sync.engine import ScheduleSyncEngine

from conftest import NOW, USER, WEEK


class RefreshingGuard:
    def ensure_access(self, credential, force=False):
        return AccessCredential('access-2', credential.refresh_token, NOW + 7200)


@pytest.fixture
def token_file(tmp_path):
    path = tmp_path / 'token.json'
    path.write_text(json.dumps({'access_token': 'access-1', 'refresh_token': 'refresh-1',
                                'expires_at': NOW + 3600}))
    return path


def seed(store):
    store.insert_slot(ScheduleSlot(user_id=USER, week_start=WEEK, weekday=1, period_start=1,
                                   period_end=2, course_name='Algebra'))


class TestCli:
    """classsync command"""

    def test_sync_command(self, store, engine, fake_api, token_file, capsys):
        seed(store)

        code = cli.main(['sync', '--user', USER, '--week', '2024-09-03',
                         '--token-file', str(token_file)], engine=engine)

        assert code == 0
        assert len(fake_api.events_by_id) == 1
        assert 'created: 1' in capsys.readouterr().out

    def test_week_required(self, engine, token_file):
        with pytest.raises(SystemExit):
            cli.main(['recover', '--user', USER, '--token-file', str(token_file)], engine=engine)

    def test_missing_token_file(self, engine, tmp_path):
        code = cli.main(['sync', '--user', USER, '--week', '2024-09-02',
                         '--token-file', str(tmp_path / 'missing.json')], engine=engine)

        assert code == 2

    def test_refreshed_token_is_saved(self, store, fake_api, token_file):
        engine = ScheduleSyncEngine(
            store,
            calendar_factory=lambda token: GoogleCalendarService(service=fake_api, sleep=lambda s: None),
            token_guard=RefreshingGuard(),
        )

        code = cli.main(['sync-all', '--user', USER, '--token-file', str(token_file)], engine=engine)

        assert code == 0
        saved = json.loads(token_file.read_text())
        assert saved['access_token'] == 'access-2'
        assert saved['refresh_token'] == 'refresh-1'
