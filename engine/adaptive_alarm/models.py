"""
Data models and enums for the adaptive alarm engine
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple


class EvaluationState(Enum):
    """Per-poll trigger evaluation state"""
    IDLE = "IDLE"
    MATCHED = "MATCHED"
    RENDERING = "RENDERING"
    FIRED = "FIRED"


@dataclass(frozen=True)
class Credential:
    """Stored OAuth2 credential for one user"""
    user_id: int
    subject_id: Optional[str]
    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        return f"Credential(user_id={self.user_id}, subject_id={self.subject_id!r})"


@dataclass(frozen=True)
class TokenPair:
    """Token endpoint response"""
    access_token: str
    refresh_token: str
    subject_id: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any]) -> "TokenPair":
        """Create TokenPair from an OAuth2 token endpoint payload"""
        if not payload.get("access_token") or not payload.get("refresh_token"):
            raise ValueError("Token response must carry both access_token and refresh_token")
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            subject_id=payload.get("user_id"),
            expires_in=payload.get("expires_in"),
            scope=payload.get("scope"),
        )

    def __repr__(self) -> str:
        return f"TokenPair(subject_id={self.subject_id!r}, expires_in={self.expires_in})"


@dataclass(frozen=True)
class HeartRateSample:
    """One intraday heart-rate reading"""
    timestamp: datetime
    bpm: float

    @classmethod
    def from_intraday_point(cls, point: Dict[str, Any], day: datetime) -> "HeartRateSample":
        """Create a sample from an intraday dataset entry ({"time": "HH:MM:SS", "value": 62})"""
        hour, minute, second = (int(part) for part in point["time"].split(":"))
        bpm = float(point["value"])
        if not math.isfinite(bpm):
            raise ValueError(f"Heart rate at {point['time']} is not a number: {point['value']!r}")
        return cls(
            timestamp=day.replace(hour=hour, minute=minute, second=second, microsecond=0),
            bpm=bpm,
        )


@dataclass
class SleepSummary:
    """Main sleep log for one night"""
    date_of_sleep: str
    minutes_asleep: int
    efficiency: Optional[int] = None
    deep_minutes: int = 0
    light_minutes: int = 0
    rem_minutes: int = 0
    wake_minutes: int = 0

    @classmethod
    def from_fitbit_log(cls, log: Dict[str, Any]) -> "SleepSummary":
        """Create SleepSummary from a sleep log entry"""
        summary = (log.get("levels") or {}).get("summary") or {}

        def _minutes(stage: str) -> int:
            return int((summary.get(stage) or {}).get("minutes", 0))

        return cls(
            date_of_sleep=log["dateOfSleep"],
            minutes_asleep=int(log.get("minutesAsleep", 0)),
            efficiency=log.get("efficiency"),
            deep_minutes=_minutes("deep"),
            light_minutes=_minutes("light"),
            rem_minutes=_minutes("rem"),
            wake_minutes=_minutes("wake"),
        )


@dataclass(frozen=True)
class UserProfile:
    """Subset of the provider profile the engine uses"""
    subject_id: Optional[str]
    resting_heart_rate: Optional[float]

    @classmethod
    def from_fitbit_dict(cls, user: Dict[str, Any]) -> "UserProfile":
        rate = user.get("restingHeartRate")
        return cls(
            subject_id=user.get("encodedId"),
            resting_heart_rate=float(rate) if rate else None,
        )


@dataclass(frozen=True)
class Alarm:
    """Alarm row as read by the engine"""
    id: int
    owner_id: int
    hour: int
    minute: int
    enabled: bool
    sound_a: Optional[str]  # non-REM sound
    sound_b: Optional[str]  # REM sound

    def __post_init__(self):
        if not 0 <= self.hour <= 23:
            raise ValueError(f"Alarm {self.id}: hour {self.hour} out of range")
        if not 0 <= self.minute <= 59:
            raise ValueError(f"Alarm {self.id}: minute {self.minute} out of range")

    def matches(self, hour: int, minute: int) -> bool:
        return self.enabled and self.hour == hour and self.minute == minute


@dataclass(frozen=True)
class PanPoint:
    """Stereo gains at an offset from mix start"""
    offset_s: float
    left: float
    right: float


@dataclass(frozen=True)
class PanAutomation:
    """Equal-power left-to-right sweep sampled as control points"""
    period_s: float
    points: Tuple[PanPoint, ...]

    def gains_at(self, t: float) -> Tuple[float, float]:
        """Return (left, right) gains t seconds after mix start; held at full right after the sweep"""
        t = min(max(t, 0.0), self.period_s)
        theta = (t / self.period_s) * (math.pi / 2)
        return math.cos(theta), math.sin(theta)


@dataclass(frozen=True)
class MixPlan:
    """Declarative mix handed to the render gateway"""
    gain_a: float
    gain_b: float
    pan: Optional[PanAutomation] = None
    normalize_stereo: bool = False

    @property
    def pan_enabled(self) -> bool:
        return self.pan is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gain_a": self.gain_a,
            "gain_b": self.gain_b,
            "pan_period_s": self.pan.period_s if self.pan else None,
            "pan_points": len(self.pan.points) if self.pan else 0,
            "normalize_stereo": self.normalize_stereo,
        }


@dataclass
class TriggerDecision:
    """Outcome of one evaluation"""
    should_fire: bool
    state: EvaluationState = EvaluationState.IDLE
    alarm_id: Optional[int] = None
    score: Optional[float] = None
    plan: Optional[MixPlan] = None
    sources: Optional[Tuple[str, str]] = None
    rendered_path: Optional[str] = None
    telemetry_fallback: bool = False
    reauthorization_required: bool = False
    notes: List[str] = field(default_factory=list)

    @classmethod
    def idle(cls, note: Optional[str] = None) -> "TriggerDecision":
        decision = cls(should_fire=False)
        if note:
            decision.notes.append(note)
        return decision

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and JSON responses"""
        return {
            "should_fire": self.should_fire,
            "state": self.state.value,
            "alarm_id": self.alarm_id,
            "score": self.score,
            "plan": self.plan.to_dict() if self.plan else None,
            "sources": list(self.sources) if self.sources else None,
            "rendered_path": self.rendered_path,
            "telemetry_fallback": self.telemetry_fallback,
            "reauthorization_required": self.reauthorization_required,
            "notes": self.notes,
        }
