"""
Exception taxonomy for the adaptive alarm engine
"""

from typing import Optional


class AdaptiveAlarmError(Exception):
    """Base class for all engine errors"""


class TelemetryError(AdaptiveAlarmError):
    """A telemetry provider call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(TelemetryError):
    """Provider rejected the bearer token (HTTP 401)"""


class TransientTelemetryError(TelemetryError):
    """Network failure, timeout, rate limit or provider 5xx"""


class PermanentTelemetryError(TelemetryError):
    """Provider returned a non-retryable error or an unusable payload"""


class NoCredentialError(AdaptiveAlarmError):
    """No stored credential for the user"""

    def __init__(self, user_id: int):
        super().__init__(f"No telemetry credential stored for user {user_id}")
        self.user_id = user_id


class ReauthorizationRequiredError(AdaptiveAlarmError):
    """The refresh token is no longer accepted; the user has to re-link"""

    def __init__(self, user_id: int, reason: str = "refresh token rejected"):
        super().__init__(f"User {user_id} must reconnect their fitness account ({reason})")
        self.user_id = user_id
        self.reason = reason


class AuthorizationExpiredError(AdaptiveAlarmError):
    """PKCE verifier missing, already used or stale for the returned code"""


class ConfigurationError(AdaptiveAlarmError):
    """Alarm row or engine setting cannot be used"""


class RenderFailedError(AdaptiveAlarmError):
    """Audio render gateway failed or timed out"""

    def __init__(self, message: str, alarm_id: Optional[int] = None, plan=None):
        super().__init__(message)
        self.alarm_id = alarm_id
        self.plan = plan
