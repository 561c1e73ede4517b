"""
Once-a-minute polling of every linked user
"""

import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .engine import AlarmEngine
from .exceptions import ConfigurationError, RenderFailedError
from .logging_utils import get_logger, log_error
from .models import TriggerDecision

logger = get_logger(__name__)

FireCallback = Callable[[int, TriggerDecision], None]
RenderFailedCallback = Callable[[int, RenderFailedError], None]


def minute_epoch(now: datetime) -> int:
    """Whole minutes since the Unix epoch"""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int(now.timestamp()) // 60


class FiredLedger:
    """Remembers (alarm_id, minute_epoch) pairs that already fired"""

    def __init__(self, max_entries: int = 4096):
        self.max_entries = max_entries
        self._seen: "OrderedDict[tuple, None]" = OrderedDict()
        self._lock = threading.Lock()

    def claim(self, alarm_id: int, minute: int) -> bool:
        """Return True the first time a pair is seen"""
        key = (alarm_id, minute)
        with self._lock:
            if key in self._seen:
                return False
            self._seen[key] = None
            while len(self._seen) > self.max_entries:
                self._seen.popitem(last=False)
            return True


class AlarmPoller:
    """Runs AlarmEngine.evaluate for all linked users at the top of every minute"""

    def __init__(self, engine: AlarmEngine, store, on_fire: FireCallback,
                 on_render_failed: Optional[RenderFailedCallback] = None,
                 max_workers: Optional[int] = None):
        self.engine = engine
        self.store = store
        self.on_fire = on_fire
        self.on_render_failed = on_render_failed
        self.max_workers = max_workers or engine.cfg.timings.poll_workers
        self.ledger = FiredLedger()
        self._scheduler: Optional[BackgroundScheduler] = None

    def _poll_user(self, user_id: int, now: datetime, minute: int) -> Optional[TriggerDecision]:
        # Claim the wake event before rendering so a minute is never rendered twice
        alarm = self.engine.due_alarm(user_id, now)
        if alarm is None:
            return None
        if not self.ledger.claim(alarm.id, minute):
            logger.info(
                f"Alarm {alarm.id} already handled this minute",
                extra={"user_id": user_id, "alarm_id": alarm.id}
            )
            return None

        try:
            decision = self.engine.evaluate(user_id, now)
        except RenderFailedError as e:
            log_error(logger, user_id, e, {"alarm_id": e.alarm_id})
            if self.on_render_failed:
                self.on_render_failed(user_id, e)
            return None
        except ConfigurationError as e:
            log_error(logger, user_id, e, {"alarm_id": alarm.id})
            return None

        if decision.should_fire:
            self.on_fire(user_id, decision)
        return decision

    def run_once(self, now: Optional[datetime] = None) -> List[TriggerDecision]:
        """Evaluate every linked user once; returns the decisions that fired"""
        now = now or datetime.now(timezone.utc)
        minute = minute_epoch(now)
        user_ids = self.store.list_linked_users()
        fired: List[TriggerDecision] = []
        if not user_ids:
            return fired

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="alarm-poll") as pool:
            futures = {pool.submit(self._poll_user, user_id, now, minute): user_id for user_id in user_ids}
            for future, user_id in futures.items():
                try:
                    decision = future.result()
                except Exception as e:
                    # Keep polling the remaining users
                    log_error(logger, user_id, e, {"phase": "poll"})
                    continue
                if decision is not None and decision.should_fire:
                    fired.append(decision)
        logger.debug(f"Poll tick evaluated {len(user_ids)} users, {len(fired)} fired")
        return fired

    def start(self) -> None:
        """Schedule run_once at second 0 of every minute in the engine's zone"""
        scheduler = BackgroundScheduler(timezone=self.engine.cfg.timezone)
        scheduler.add_job(
            self.run_once,
            CronTrigger(second=0, timezone=self.engine.cfg.timezone),
            id="alarm-poll",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Alarm poller started")

    def stop(self) -> None:
        if self._scheduler:
            self._scheduler.shutdown()
            self._scheduler = None
            logger.info("Alarm poller stopped")
