"""
Tests for the minute poller
"""

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import OperationalError

from adaptive_alarm.engine import AlarmEngine
from adaptive_alarm.exceptions import RenderFailedError
from adaptive_alarm.poller import AlarmPoller, FiredLedger, minute_epoch

from conftest import RecordingGateway

SEVEN_JST = datetime(2026, 10, 18, 22, 0, tzinfo=timezone.utc)


@pytest.fixture
def telemetry(samples):
    telemetry = Mock()
    telemetry.get_recent_heart_rate.return_value = samples(60)
    return telemetry


@pytest.fixture
def engine(store, telemetry, gateway, cfg):
    engine = AlarmEngine(store, telemetry, gateway, cfg)
    yield engine
    engine.close()


@pytest.fixture
def fired():
    return []


@pytest.fixture
def poller(engine, store, fired):
    return AlarmPoller(engine, store, on_fire=lambda user_id, decision: fired.append((user_id, decision)))


class TestMinuteEpoch:

    def test_same_minute(self):
        assert minute_epoch(SEVEN_JST) == minute_epoch(SEVEN_JST.replace(second=59))

    def test_naive_is_utc(self):
        assert minute_epoch(datetime(2026, 10, 18, 22, 0)) == minute_epoch(SEVEN_JST)

    def test_next_minute(self):
        assert minute_epoch(SEVEN_JST.replace(minute=1)) == minute_epoch(SEVEN_JST) + 1


class TestFiredLedger:

    def test_claim_once(self):
        ledger = FiredLedger()
        assert ledger.claim(1, 100) is True
        assert ledger.claim(1, 100) is False
        assert ledger.claim(1, 101) is True
        assert ledger.claim(2, 100) is True

    def test_bounded(self):
        ledger = FiredLedger(max_entries=2)
        ledger.claim(1, 100)
        ledger.claim(2, 100)
        ledger.claim(3, 100)
        # the oldest entry was evicted
        assert ledger.claim(1, 100) is True
        assert ledger.claim(3, 100) is False


class TestAlarmPoller:
    """Test run_once()"""

    def test_fires_once_per_minute(self, poller, store, gateway, fired, linked_user):
        store.add_alarm(linked_user, 7, 0, "nonrem.mp3", "rem.mp3")

        first = poller.run_once(SEVEN_JST)
        second = poller.run_once(SEVEN_JST.replace(second=30))

        assert len(first) == 1
        assert second == []
        assert len(gateway.calls) == 1
        assert [user_id for user_id, _ in fired] == [linked_user]

    def test_next_day_fires_again(self, poller, store, gateway, linked_user):
        store.add_alarm(linked_user, 7, 0, "nonrem.mp3", "rem.mp3")

        poller.run_once(SEVEN_JST)
        poller.run_once(SEVEN_JST.replace(day=19))

        assert len(gateway.calls) == 2

    def test_only_due_users_fire(self, poller, store, fired, linked_user):
        other = store.add_user(email="late@example.com", subject_id="SUBJ2", resting_heart_rate=60)
        store.add_alarm(linked_user, 7, 0, "nonrem.mp3", "rem.mp3")
        store.add_alarm(other, 8, 30, "nonrem.mp3", "rem.mp3")

        poller.run_once(SEVEN_JST)

        assert [user_id for user_id, _ in fired] == [linked_user]

    def test_no_linked_users(self, poller, fired):
        assert poller.run_once(SEVEN_JST) == []
        assert fired == []

    def test_render_failure_callback(self, store, telemetry, cfg, fired, linked_user):
        alarm_id = store.add_alarm(linked_user, 7, 0, "nonrem.mp3", "rem.mp3")
        engine = AlarmEngine(store, telemetry, RecordingGateway(error=RenderFailedError("ffmpeg failed")), cfg)
        failures = []
        poller = AlarmPoller(
            engine, store,
            on_fire=lambda user_id, decision: fired.append(decision),
            on_render_failed=lambda user_id, error: failures.append((user_id, error.alarm_id)),
        )
        try:
            assert poller.run_once(SEVEN_JST) == []
            # a failed render still consumes the minute
            assert poller.run_once(SEVEN_JST) == []
        finally:
            engine.close()

        assert fired == []
        assert failures == [(linked_user, alarm_id)]

    def test_configuration_error_does_not_stop_other_users(self, poller, store, fired, linked_user):
        other = store.add_user(email="other@example.com", subject_id="SUBJ2", resting_heart_rate=60)
        store.add_alarm(linked_user, 7, 0, "nonrem.mp3", "missing.mp3")
        store.add_alarm(other, 7, 0, "nonrem.mp3", "rem.mp3")

        poller.run_once(SEVEN_JST)

        assert [user_id for user_id, _ in fired] == [other]

    def test_database_error_does_not_stop_other_users(self, poller, engine, store, fired, linked_user):
        other = store.add_user(email="other@example.com", subject_id="SUBJ2", resting_heart_rate=60)
        store.add_alarm(linked_user, 7, 0, "nonrem.mp3", "rem.mp3")
        store.add_alarm(other, 7, 0, "nonrem.mp3", "rem.mp3")
        real_due_alarm = engine.due_alarm

        def due_alarm(user_id, now):
            if user_id == linked_user:
                raise OperationalError("SELECT alarms", {}, Exception("database is locked"))
            return real_due_alarm(user_id, now)

        with patch.object(engine, "due_alarm", side_effect=due_alarm):
            decisions = poller.run_once(SEVEN_JST)

        assert len(decisions) == 1
        assert [user_id for user_id, _ in fired] == [other]


class TestScheduling:

    def test_start_and_stop(self, poller):
        with patch("adaptive_alarm.poller.BackgroundScheduler") as scheduler_cls:
            poller.start()
            scheduler = scheduler_cls.return_value

            scheduler_cls.assert_called_once_with(timezone="Asia/Tokyo")
            job_func, trigger = scheduler.add_job.call_args.args
            assert job_func == poller.run_once
            assert str(trigger.fields[trigger.FIELD_NAMES.index("second")]) == "0"
            assert scheduler.add_job.call_args.kwargs["max_instances"] == 1
            scheduler.start.assert_called_once()

            poller.stop()
            scheduler.shutdown.assert_called_once()
