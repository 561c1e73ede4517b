"""
Adaptive Alarm Engine

Pick a wake sound mix from how deeply the sleeper is sleeping at alarm time.
"""

__version__ = "1.0.0"
__author__ = "Sunrise"

from .engine import AlarmEngine
from .config import EngineConfig
from .exceptions import (
    AdaptiveAlarmError,
    AuthorizationExpiredError,
    ConfigurationError,
    NoCredentialError,
    ReauthorizationRequiredError,
    RenderFailedError,
    TransientTelemetryError,
)
from .models import EvaluationState, MixPlan, TriggerDecision

__all__ = [
    "AlarmEngine",
    "EngineConfig",
    "AdaptiveAlarmError",
    "AuthorizationExpiredError",
    "ConfigurationError",
    "NoCredentialError",
    "ReauthorizationRequiredError",
    "RenderFailedError",
    "TransientTelemetryError",
    "EvaluationState",
    "MixPlan",
    "TriggerDecision",
]
