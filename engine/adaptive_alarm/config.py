"""
Configuration models for the adaptive alarm engine
"""

from pydantic import BaseModel, Field, field_validator
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Use BASE_DIR for all file paths
BASE_DIR = os.getenv("BASE_DIR", "/data/adaptive-alarm")
DATA_DIR = os.path.join(BASE_DIR, "data")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class FitbitAuth(BaseModel):
    """Fitbit OAuth2 client registration"""
    client_id: str = Field(default="", description="Registered client ID")
    client_secret: str = Field(default="", description="Registered client secret")
    redirect_uri: str = Field(default="http://localhost:3000/auth/callback", description="OAuth redirect URI")
    scope: str = Field(default="sleep heartrate profile", description="Requested OAuth scopes")
    authorize_url: str = Field(default="https://www.fitbit.com/oauth2/authorize", description="Authorization page")
    token_url: str = Field(default="https://api.fitbit.com/oauth2/token", description="Token endpoint")
    api_base: str = Field(default="https://api.fitbit.com", description="Web API base URL")

    @classmethod
    def from_env(cls) -> "FitbitAuth":
        """Create FitbitAuth from environment variables"""
        return cls(
            client_id=os.getenv("FITBIT_CLIENT_ID", ""),
            client_secret=os.getenv("FITBIT_CLIENT_SECRET", ""),
            redirect_uri=os.getenv("FITBIT_REDIRECT_URI", "http://localhost:3000/auth/callback"),
        )


class Timings(BaseModel):
    """Timeouts and windows used by the engine"""
    request_timeout_s: float = Field(default=8.0, ge=0.5, le=60.0, description="Telemetry HTTP timeout")
    render_timeout_s: float = Field(default=30.0, ge=1.0, le=600.0, description="Audio render timeout")
    verifier_ttl_s: int = Field(default=600, ge=30, le=3600, description="Lifetime of a PKCE verifier")
    heart_rate_window_min: int = Field(default=15, ge=1, le=120, description="Intraday heart-rate lookback")
    poll_workers: int = Field(default=4, ge=1, le=64, description="Users evaluated in parallel per tick")


class EngineConfig(BaseModel):
    """Main configuration for the adaptive alarm engine"""
    fitbit: FitbitAuth = Field(default_factory=FitbitAuth.from_env, description="Fitbit client registration")
    timings: Timings = Field(default_factory=Timings, description="Timing configuration")
    timezone: str = Field(default="Asia/Tokyo", description="Fixed zone alarms are expressed in")
    pan_enabled: bool = Field(default=True, description="Apply the stereo pan sweep to rendered alarms")
    sounds_dir: str = Field(default_factory=lambda: os.path.join(BASE_DIR, "sounds"), description="Alarm sound library")
    output_dir: str = Field(default_factory=lambda: os.path.join(DATA_DIR, "rendered"), description="Rendered alarm output")
    output_format: Literal["mp3", "wav", "ogg"] = Field(default="mp3", description="Rendered file extension")
    ffmpeg_binary: str = Field(default="ffmpeg", description="ffmpeg executable")
    database_url: str = Field(
        default_factory=lambda: "sqlite:///" + os.path.join(DATA_DIR, "sleep.sqlite3"),
        description="SQLAlchemy database URL"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json|text|simple)")

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create configuration from environment variables"""
        kwargs = dict(
            fitbit=FitbitAuth.from_env(),
            timings=Timings(
                request_timeout_s=float(os.getenv("FITBIT_REQUEST_TIMEOUT_S", "8.0")),
                render_timeout_s=float(os.getenv("ALARM_RENDER_TIMEOUT_S", "30.0")),
                verifier_ttl_s=int(os.getenv("FITBIT_VERIFIER_TTL_S", "600")),
                heart_rate_window_min=int(os.getenv("ALARM_HEART_RATE_WINDOW_MIN", "15")),
                poll_workers=int(os.getenv("ALARM_POLL_WORKERS", "4")),
            ),
            timezone=os.getenv("ALARM_TIMEZONE", "Asia/Tokyo"),
            pan_enabled=_env_flag("ALARM_PAN_ENABLED", "true"),
            ffmpeg_binary=os.getenv("FFMPEG_BINARY", "ffmpeg"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )
        if os.getenv("ALARM_SOUNDS_DIR"):
            kwargs["sounds_dir"] = os.environ["ALARM_SOUNDS_DIR"]
        if os.getenv("ALARM_OUTPUT_DIR"):
            kwargs["output_dir"] = os.environ["ALARM_OUTPUT_DIR"]
        if os.getenv("ALARM_OUTPUT_FORMAT"):
            kwargs["output_format"] = os.environ["ALARM_OUTPUT_FORMAT"]
        if os.getenv("DATABASE_URL"):
            kwargs["database_url"] = os.environ["DATABASE_URL"]
        return cls(**kwargs)
