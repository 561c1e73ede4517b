"""
Mix plan construction from a sleep-depth score
"""

from .models import MixPlan, PanAutomation, PanPoint

PAN_SWEEP_S = 30
PAN_STEP_S = 1


def pan_sweep(period_s: float = PAN_SWEEP_S, step_s: float = PAN_STEP_S) -> PanAutomation:
    """Equal-power sweep from hard left at t=0 to hard right at t=period_s"""
    if period_s <= 0 or step_s <= 0:
        raise ValueError("period_s and step_s must be positive")

    # Control points come from the same pan law as gains_at
    law = PanAutomation(period_s=period_s, points=())
    points = []
    steps = int(round(period_s / step_s))
    for i in range(steps + 1):
        offset = min(i * step_s, period_s)
        left, right = law.gains_at(offset)
        points.append(PanPoint(offset_s=offset, left=round(left, 6), right=round(right, 6)))
    return PanAutomation(period_s=period_s, points=tuple(points))


def build_plan(score: float, pan_enabled: bool) -> MixPlan:
    """
    Build the declarative mix for a sleep-depth score.

    Source A (non-REM) gets the score as gain, source B (REM) the remainder.
    Both sources stay in the mix even at zero gain.

    Args:
        score: Sleep-depth score in [0, 1]
        pan_enabled: Whether to add the stereo pan sweep

    Returns:
        MixPlan; pan is None when pan_enabled is False
    """
    if not 0.0 <= score <= 1.0:
        raise ValueError(f"score must be within [0, 1], got {score}")

    gain_a = round(score, 2)
    gain_b = round(1.0 - score, 2)
    if not pan_enabled:
        return MixPlan(gain_a=gain_a, gain_b=gain_b)
    return MixPlan(gain_a=gain_a, gain_b=gain_b, pan=pan_sweep(), normalize_stereo=True)
