"""
Shared fixtures for adaptive alarm tests
"""

from datetime import datetime
from typing import List
from unittest.mock import Mock

import pytest

from adaptive_alarm.config import EngineConfig, FitbitAuth, Timings
from adaptive_alarm.models import HeartRateSample, TokenPair
from adaptive_alarm.render import AudioRenderGateway
from adaptive_alarm.store import Store


class RecordingGateway(AudioRenderGateway):
    """Gateway that records render requests instead of producing audio"""

    def __init__(self, error: Exception = None):
        self.calls = []
        self.error = error

    def render(self, source_a, source_b, plan, dest_path):
        self.calls.append((source_a, source_b, plan, dest_path))
        if self.error:
            raise self.error
        return dest_path


@pytest.fixture
def respond():
    """Factory for fake requests.Response objects"""
    def _respond(status_code: int = 200, payload=None):
        response = Mock()
        response.status_code = status_code
        if payload is None:
            response.json.side_effect = ValueError("No JSON body")
        else:
            response.json.return_value = payload
        return response
    return _respond


@pytest.fixture
def session():
    """Fake HTTP session; tests script session.request.side_effect"""
    return Mock()


@pytest.fixture
def fitbit_auth():
    return FitbitAuth(client_id="client-id", client_secret="client-secret", redirect_uri="http://localhost/cb")


@pytest.fixture
def sounds_dir(tmp_path):
    directory = tmp_path / "sounds"
    directory.mkdir()
    (directory / "nonrem.mp3").write_bytes(b"ID3")
    (directory / "rem.mp3").write_bytes(b"ID3")
    return directory


@pytest.fixture
def cfg(tmp_path, sounds_dir, fitbit_auth):
    return EngineConfig(
        fitbit=fitbit_auth,
        timings=Timings(render_timeout_s=5.0),
        timezone="Asia/Tokyo",
        pan_enabled=True,
        sounds_dir=str(sounds_dir),
        output_dir=str(tmp_path / "rendered"),
        database_url="sqlite://",
    )


@pytest.fixture
def store(tmp_path):
    # File database so threaded tests get one connection per thread
    store = Store.from_url(f"sqlite:///{tmp_path / 'alarm.sqlite3'}")
    yield store
    store.close()


@pytest.fixture
def linked_user(store):
    """User with a stored credential, resting rate 55 and no alarms"""
    return store.add_user(
        email="sleeper@example.com",
        tokens=TokenPair(access_token="access-1", refresh_token="refresh-1", subject_id="SUBJ1"),
        resting_heart_rate=55,
    )


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def samples():
    """Factory for heart-rate sample lists, oldest first"""
    def _samples(*bpms: float) -> List[HeartRateSample]:
        return [
            HeartRateSample(timestamp=datetime(2026, 10, 19, 6, 45 + i), bpm=bpm)
            for i, bpm in enumerate(bpms)
        ]
    return _samples
