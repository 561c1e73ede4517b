"""
Sleep-depth classification from heart rate
"""

import math
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from .models import HeartRateSample, SleepSummary

NEUTRAL_SCORE = 0.5
AWAKE_MARGIN_BPM = 20.0
DEFAULT_CYCLE_MINUTES = 90


def classify(resting_rate: Optional[float], samples: Sequence[HeartRateSample]) -> float:
    """
    Map a resting-rate baseline and recent samples to a sleep-depth score.

    1.0 is deep sleep, 0.0 is near waking. The latest sample is compared
    against the baseline; a rate AWAKE_MARGIN_BPM above resting counts as awake.

    Args:
        resting_rate: Resting heart rate in bpm, or None if unknown
        samples: Heart-rate samples ordered most-recent-last

    Returns:
        Score in [0.0, 1.0]; NEUTRAL_SCORE when there is nothing to go on
    """
    if resting_rate is None or not samples:
        return NEUTRAL_SCORE

    latest = samples[-1].bpm
    if not (math.isfinite(resting_rate) and math.isfinite(latest)):
        return NEUTRAL_SCORE
    awake_threshold = resting_rate + AWAKE_MARGIN_BPM
    awake_ratio = (latest - resting_rate) / (awake_threshold - resting_rate)
    return min(max(1.0 - awake_ratio, 0.0), 1.0)


def recommend_wake_times(bedtime: datetime, cycle_minutes: int = DEFAULT_CYCLE_MINUTES,
                         cycles: Iterable[int] = (3, 4, 5)) -> List[datetime]:
    """Wake times that land on the end of a full sleep cycle after bedtime"""
    if cycle_minutes <= 0:
        raise ValueError("cycle_minutes must be positive")
    return [bedtime + timedelta(minutes=cycle_minutes * n) for n in cycles]


def average_sleep_minutes(summaries: Sequence[SleepSummary]) -> Optional[float]:
    if not summaries:
        return None
    return sum(s.minutes_asleep for s in summaries) / len(summaries)
