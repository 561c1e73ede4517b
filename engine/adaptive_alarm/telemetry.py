"""
Fitbit Web API client with refresh-once token handling
"""

import functools
import logging
import threading
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests
from requests.adapters import HTTPAdapter
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_none

from .config import FitbitAuth, Timings
from .exceptions import (
    NoCredentialError, PermanentTelemetryError, ReauthorizationRequiredError,
    TransientTelemetryError, UnauthorizedError,
)
from .models import Credential, HeartRateSample, SleepSummary, TokenPair, UserProfile

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SESSION: Optional[requests.Session] = None
_SESSION_LOCK = threading.Lock()


def http_session() -> requests.Session:
    global _SESSION
    if _SESSION is None:
        with _SESSION_LOCK:
            if _SESSION is None:
                session = requests.Session()
                # No transport-level retries: every retry decision is made by the client
                adapter = HTTPAdapter(pool_connections=8, pool_maxsize=16, max_retries=0)
                session.mount("http://", adapter)
                session.mount("https://", adapter)
                session.headers.update({"User-Agent": "AdaptiveAlarm/1.0", "Accept": "application/json"})
                _SESSION = session
    return _SESSION


def raise_for_status(response: requests.Response, what: str) -> None:
    """Map a provider response onto the telemetry error classes"""
    status = response.status_code
    if status < 400:
        return
    if status == 401:
        raise UnauthorizedError(f"{what}: unauthorized", status_code=status)
    if status == 429 or status >= 500:
        raise TransientTelemetryError(f"{what}: provider returned {status}", status_code=status)
    raise PermanentTelemetryError(f"{what}: provider returned {status}", status_code=status)


def send(session: requests.Session, method: str, url: str, what: str, timeout_s: float,
         **kwargs) -> Dict[str, Any]:
    """Perform one HTTP request and return the decoded JSON body"""
    try:
        response = session.request(method, url, timeout=timeout_s, **kwargs)
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise TransientTelemetryError(f"{what}: {e}") from e
    except requests.RequestException as e:
        raise PermanentTelemetryError(f"{what}: {e}") from e

    raise_for_status(response, what)
    try:
        return response.json()
    except ValueError as e:
        raise PermanentTelemetryError(f"{what}: response is not JSON") from e


def refresh_on_unauthorized(max_refreshes: int = 1):
    """
    Run a TelemetryClient method through fetch_with_auth.

    The wrapped method receives an access token in place of the user ID; the
    wrapper takes the user ID and applies the refresh policy.
    """
    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(self: "TelemetryClient", user_id: int, *args, **kwargs) -> T:
            return self.fetch_with_auth(
                user_id,
                lambda access_token: fn(self, access_token, *args, **kwargs),
                max_refreshes=max_refreshes,
            )
        return wrapper
    return decorator


class TelemetryClient:
    """Authenticated client for the Fitbit Web API"""

    def __init__(self, store, auth: FitbitAuth, timings: Optional[Timings] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize telemetry client.

        Args:
            store: Persistence collaborator holding credentials
            auth: Client registration used for the token endpoint
            timings: Timeout configuration
            session: HTTP session; defaults to the shared module session
        """
        self.store = store
        self.auth = auth
        self.timings = timings or Timings()
        self.session = session or http_session()
        self._refresh_locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._refresh_locks.get(user_id)
            if lock is None:
                lock = self._refresh_locks[user_id] = threading.Lock()
            return lock

    def fetch_with_auth(self, user_id: int, api_call: Callable[[str], T], max_refreshes: int = 1) -> T:
        """
        Execute one telemetry call with a valid bearer token.

        An UnauthorizedError triggers one refresh and one retry. A second
        UnauthorizedError raises ReauthorizationRequiredError. Every other
        failure is raised unchanged after the first attempt.

        Args:
            user_id: Local user ID
            api_call: Callable performing one idempotent GET with the token
            max_refreshes: Refresh cycles allowed for this call

        Returns:
            Whatever api_call returns
        """
        credential = self.store.get_credential(user_id)
        if credential is None:
            raise NoCredentialError(user_id)

        current = {"credential": credential}

        def _refresh_before_retry(retry_state) -> None:
            logger.warning(
                "Access token rejected, refreshing",
                extra={"user_id": user_id, "attempt": retry_state.attempt_number}
            )
            current["credential"] = self._refresh(user_id, current["credential"])

        retrying = Retrying(
            stop=stop_after_attempt(max_refreshes + 1),
            retry=retry_if_exception_type(UnauthorizedError),
            wait=wait_none(),
            before_sleep=_refresh_before_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return api_call(current["credential"].access_token)
        except UnauthorizedError as e:
            logger.error("Access token still rejected after refresh", extra={"user_id": user_id})
            raise ReauthorizationRequiredError(user_id, "access token rejected after refresh") from e

    def _refresh(self, user_id: int, rejected: Credential) -> Credential:
        """Rotate the token pair for a user; serialized per user"""
        with self._lock_for(user_id):
            stored = self.store.get_credential(user_id)
            if stored is None:
                raise NoCredentialError(user_id)
            if stored.access_token != rejected.access_token:
                logger.info("Credential already rotated by another poller", extra={"user_id": user_id})
                return stored

            try:
                tokens = self._exchange_refresh_token(user_id, stored.refresh_token)
            except ReauthorizationRequiredError:
                # Another process may have spent this refresh token first
                latest = self.store.get_credential(user_id)
                if latest is not None and latest.refresh_token != stored.refresh_token:
                    logger.info("Refresh token rotated by another process", extra={"user_id": user_id})
                    return latest
                raise
            if not self.store.save_credential(user_id, tokens, expected_refresh_token=stored.refresh_token):
                latest = self.store.get_credential(user_id)
                if latest is None:
                    raise NoCredentialError(user_id)
                return latest

            logger.info("Refreshed telemetry credential", extra={"user_id": user_id})
            return Credential(
                user_id=user_id,
                subject_id=tokens.subject_id or stored.subject_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
            )

    def _exchange_refresh_token(self, user_id: int, refresh_token: str) -> TokenPair:
        try:
            payload = send(
                self.session, "POST", self.auth.token_url, "refresh token grant",
                self.timings.request_timeout_s,
                auth=(self.auth.client_id, self.auth.client_secret),
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            )
        except (UnauthorizedError, PermanentTelemetryError) as e:
            if e.status_code in (400, 401):
                raise ReauthorizationRequiredError(user_id, "refresh token rejected") from e
            raise
        try:
            return TokenPair.from_token_response(payload)
        except ValueError as e:
            raise PermanentTelemetryError(f"refresh token grant: {e}") from e

    def _get(self, access_token: str, path: str, what: str) -> Dict[str, Any]:
        return send(
            self.session, "GET", f"{self.auth.api_base}{path}", what,
            self.timings.request_timeout_s,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    @refresh_on_unauthorized()
    def get_profile(self, access_token: str) -> UserProfile:
        """Fetch the provider profile (resting heart rate, encoded user ID)"""
        data = self._get(access_token, "/1/user/-/profile.json", "profile")
        user = data.get("user")
        if not isinstance(user, dict):
            raise PermanentTelemetryError("profile: missing user object")
        return UserProfile.from_fitbit_dict(user)

    def get_resting_heart_rate(self, user_id: int) -> Optional[float]:
        return self.get_profile(user_id).resting_heart_rate

    @refresh_on_unauthorized()
    def get_sleep_summary(self, access_token: str, day: date) -> Optional[SleepSummary]:
        """Main sleep log for a date, or None if nothing was recorded"""
        data = self._get(access_token, f"/1.2/user/-/sleep/date/{day.isoformat()}.json", "sleep summary")
        logs = data.get("sleep") or []
        if not logs:
            return None
        main = next((log for log in logs if log.get("isMainSleep")), logs[0])
        try:
            return SleepSummary.from_fitbit_log(main)
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentTelemetryError(f"sleep summary: malformed log ({e})") from e

    @refresh_on_unauthorized()
    def get_recent_heart_rate(self, access_token: str, now: datetime,
                              window_min: Optional[int] = None) -> List[HeartRateSample]:
        """
        Fetch intraday 1-minute heart rate for the last window_min minutes.

        Args:
            access_token: Bearer token (supplied by the decorator)
            now: Current local time in the user's zone
            window_min: Lookback in minutes; defaults to timings.heart_rate_window_min

        Returns:
            Samples ordered most-recent-last
        """
        window = window_min or self.timings.heart_rate_window_min
        start = now - timedelta(minutes=window)
        if start.date() != now.date():
            # Intraday ranges cannot cross midnight
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        path = (
            f"/1/user/-/activities/heart/date/{now.date().isoformat()}/1d/1min/time/"
            f"{start:%H:%M}/{now:%H:%M}.json"
        )
        data = self._get(access_token, path, "intraday heart rate")
        dataset = (data.get("activities-heart-intraday") or {}).get("dataset") or []
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        try:
            samples = [HeartRateSample.from_intraday_point(point, day) for point in dataset]
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentTelemetryError(f"intraday heart rate: malformed dataset ({e})") from e
        samples.sort(key=lambda s: s.timestamp)
        logger.debug(f"Fetched {len(samples)} heart-rate samples", extra={"window_min": window})
        return samples
