"""
Alarm trigger evaluation: match, classify, plan, render
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .classifier import classify
from .config import EngineConfig
from .exceptions import (
    ConfigurationError, NoCredentialError, ReauthorizationRequiredError,
    RenderFailedError, TelemetryError,
)
from .logging_utils import (
    get_logger, log_decision, log_error, log_phase_end, log_phase_start, log_state_change,
)
from .mixer import build_plan
from .models import Alarm, EvaluationState, HeartRateSample, TriggerDecision

logger = get_logger(__name__)

# Extra time the gateway gets beyond its own timeout before the engine gives up on it
RENDER_GRACE_S = 2.0


class AlarmEngine:
    """Evaluates one user's alarms against wall-clock time"""

    def __init__(self, store, telemetry, gateway, cfg: EngineConfig):
        """
        Initialize alarm engine.

        Args:
            store: Persistence collaborator (alarms, resting rates, credentials)
            telemetry: TelemetryClient for heart-rate data
            gateway: AudioRenderGateway used to render the mix
            cfg: Engine configuration
        """
        self.store = store
        self.telemetry = telemetry
        self.gateway = gateway
        self.cfg = cfg
        self._render_pool = ThreadPoolExecutor(
            max_workers=cfg.timings.poll_workers, thread_name_prefix="alarm-render"
        )
        logger.info(f"Initialized alarm engine (timezone={cfg.timezone}, pan={cfg.pan_enabled})")

    def close(self) -> None:
        self._render_pool.shutdown(wait=False)

    def local_time(self, now: datetime) -> datetime:
        """Convert now to the configured zone; naive datetimes are taken as UTC"""
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.cfg.zone)

    def _transition(self, user_id: int, decision: TriggerDecision, new_state: EvaluationState) -> None:
        log_state_change(logger, user_id, decision.state.value, new_state.value, alarm_id=decision.alarm_id)
        decision.state = new_state

    def _select_alarm(self, user_id: int, local_now: datetime) -> Optional[Alarm]:
        alarms = self.store.list_enabled_alarms(user_id)
        matches = sorted(
            (a for a in alarms if a.matches(local_now.hour, local_now.minute)),
            key=lambda a: a.id
        )
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                f"{len(matches)} alarms due at {local_now:%H:%M}, firing alarm {matches[0].id} only",
                extra={"user_id": user_id, "alarm_ids": [a.id for a in matches]}
            )
        return matches[0]

    def due_alarm(self, user_id: int, now: datetime) -> Optional[Alarm]:
        """The alarm evaluate() would fire at now, without fetching or rendering anything"""
        return self._select_alarm(user_id, self.local_time(now))

    def _resolve_sound(self, alarm: Alarm, identifier: Optional[str]) -> str:
        if not identifier:
            raise ConfigurationError(f"Alarm {alarm.id} has no sound configured")
        root = os.path.realpath(self.cfg.sounds_dir)
        path = os.path.realpath(os.path.join(root, identifier))
        if os.path.commonpath([root, path]) != root:
            raise ConfigurationError(f"Alarm {alarm.id}: sound '{identifier}' is outside the sound library")
        if not os.path.isfile(path):
            raise ConfigurationError(f"Alarm {alarm.id}: sound '{identifier}' not found")
        return path

    def resolve_sources(self, alarm: Alarm) -> Tuple[str, str]:
        """Absolute paths for (non-REM, REM) sounds of an alarm"""
        return self._resolve_sound(alarm, alarm.sound_a), self._resolve_sound(alarm, alarm.sound_b)

    def output_path(self, user_id: int, alarm: Alarm, local_now: datetime) -> str:
        """Unique destination for one wake event"""
        name = f"alarm-{user_id}-{alarm.id}-{local_now:%Y%m%d%H%M}.{self.cfg.output_format}"
        return os.path.join(self.cfg.output_dir, name)

    def read_sleep_depth(self, user_id: int, subject_id: str, local_now: datetime,
                         decision: TriggerDecision) -> float:
        """
        Classify sleep depth from fresh telemetry.

        Telemetry failures never abort the alarm: they are logged, flagged on
        the decision and the neutral score is used instead.
        """
        log_phase_start(logger, "telemetry", user_id)
        start = time.time()
        resting: Optional[float] = None
        samples: List[HeartRateSample] = []
        try:
            resting = self.store.get_resting_rate(subject_id)
            if resting is None:
                resting = self.telemetry.get_resting_heart_rate(user_id)
                if resting is not None:
                    self.store.save_resting_rate(subject_id, resting)
            samples = self.telemetry.get_recent_heart_rate(user_id, local_now)
        except ReauthorizationRequiredError as e:
            decision.reauthorization_required = True
            decision.notes.append("telemetry: reauthorization required")
            log_error(logger, user_id, e, {"phase": "telemetry"}, level=logging.WARNING)
            resting, samples = None, []
        except (TelemetryError, NoCredentialError) as e:
            decision.notes.append(f"telemetry: {type(e).__name__}")
            log_error(logger, user_id, e, {"phase": "telemetry"}, level=logging.WARNING)
            resting, samples = None, []

        if resting is None or not samples:
            decision.telemetry_fallback = True

        score = classify(resting, samples)
        log_phase_end(
            logger, "telemetry", user_id,
            duration_ms=int((time.time() - start) * 1000),
            success=not decision.telemetry_fallback,
            resting_rate=resting,
            latest_bpm=samples[-1].bpm if samples else None,
            score=score,
        )
        return score

    def _render(self, user_id: int, alarm: Alarm, sources: Tuple[str, str], decision: TriggerDecision,
                dest_path: str) -> str:
        log_phase_start(logger, "render", user_id, alarm_id=alarm.id)
        start = time.time()
        future = self._render_pool.submit(self.gateway.render, sources[0], sources[1], decision.plan, dest_path)
        limit = self.cfg.timings.render_timeout_s + RENDER_GRACE_S
        try:
            rendered = future.result(timeout=limit)
        except FutureTimeoutError as e:
            future.cancel()
            raise RenderFailedError(
                f"Render gateway did not finish within {limit}s", alarm_id=alarm.id, plan=decision.plan
            ) from e
        except RenderFailedError as e:
            e.alarm_id = alarm.id
            e.plan = decision.plan
            raise
        except Exception as e:
            raise RenderFailedError(
                f"Render gateway error: {e}", alarm_id=alarm.id, plan=decision.plan
            ) from e
        finally:
            log_phase_end(
                logger, "render", user_id,
                duration_ms=int((time.time() - start) * 1000),
                success=future.done() and not future.cancelled() and future.exception() is None,
                alarm_id=alarm.id,
            )
        return rendered

    def evaluate(self, user_id: int, now: datetime) -> TriggerDecision:
        """
        Decide whether an alarm fires for user_id this minute and render it.

        Args:
            user_id: Local user ID
            now: Current time (aware, or naive UTC)

        Returns:
            TriggerDecision; should_fire is True only with a rendered file

        Raises:
            ConfigurationError: the matched alarm's sounds cannot be used
            RenderFailedError: an alarm matched but rendering failed or timed out
        """
        subject_id = self.store.get_subject_id(user_id)
        if not subject_id:
            decision = TriggerDecision.idle("no linked telemetry account")
            log_decision(logger, user_id, decision.to_dict())
            return decision

        local_now = self.local_time(now)
        alarm = self._select_alarm(user_id, local_now)
        if alarm is None:
            return TriggerDecision.idle()

        decision = TriggerDecision(should_fire=False, alarm_id=alarm.id)
        self._transition(user_id, decision, EvaluationState.MATCHED)
        sources = self.resolve_sources(alarm)

        decision.score = self.read_sleep_depth(user_id, subject_id, local_now, decision)
        decision.plan = build_plan(decision.score, self.cfg.pan_enabled)
        decision.sources = sources

        self._transition(user_id, decision, EvaluationState.RENDERING)
        dest_path = self.output_path(user_id, alarm, local_now)
        decision.rendered_path = self._render(user_id, alarm, sources, decision, dest_path)

        decision.should_fire = True
        self._transition(user_id, decision, EvaluationState.FIRED)
        log_decision(logger, user_id, decision.to_dict())
        return decision
