"""
One-time PKCE authorization-code exchange
"""

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from urllib.parse import urlencode

import requests

from .config import FitbitAuth, Timings
from .exceptions import (
    AuthorizationExpiredError, ConfigurationError, PermanentTelemetryError, UnauthorizedError,
)
from .models import TokenPair
from .telemetry import http_session, send

logger = logging.getLogger(__name__)


def base64url(raw: bytes) -> str:
    """base64url without padding"""
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    return base64url(secrets.token_bytes(32))


def code_challenge(verifier: str) -> str:
    """S256 challenge for a verifier"""
    return base64url(hashlib.sha256(verifier.encode("ascii")).digest())


class AuthorizationFlow:
    """Links a local user to a Fitbit account through authorization code + PKCE"""

    def __init__(self, store, auth: FitbitAuth, timings: Optional[Timings] = None,
                 session: Optional[requests.Session] = None):
        self.store = store
        self.auth = auth
        self.timings = timings or Timings()
        self.session = session or http_session()

    def begin(self, user_id: int) -> Tuple[str, str]:
        """
        Start an authorization attempt.

        Returns:
            (authorization URL, state) - the verifier is kept until complete() is called
        """
        verifier = generate_code_verifier()
        state = secrets.token_urlsafe(24)
        self.store.save_pending_authorization(state, user_id, verifier)

        params = {
            "client_id": self.auth.client_id,
            "response_type": "code",
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
            "scope": self.auth.scope,
            "redirect_uri": self.auth.redirect_uri,
            "state": state,
        }
        logger.info("Started authorization attempt", extra={"user_id": user_id})
        return f"{self.auth.authorize_url}?{urlencode(params)}", state

    def complete(self, user_id: int, code: str, state: str, now: Optional[datetime] = None) -> TokenPair:
        """
        Exchange the returned code for the initial token pair and store it.

        Raises:
            AuthorizationExpiredError: state unknown, already used, stale, issued
                to another user, or the provider rejected the code/verifier pair
        """
        now = now or datetime.now(timezone.utc)
        pending = self.store.pop_pending_authorization(state)
        if pending is None or pending.user_id != user_id:
            raise AuthorizationExpiredError("No matching authorization attempt for this code")
        if now - pending.created_at > timedelta(seconds=self.timings.verifier_ttl_s):
            raise AuthorizationExpiredError("Authorization attempt expired")

        try:
            payload = send(
                self.session, "POST", self.auth.token_url, "authorization code grant",
                self.timings.request_timeout_s,
                auth=(self.auth.client_id, self.auth.client_secret),
                data={
                    "client_id": self.auth.client_id,
                    "grant_type": "authorization_code",
                    "code": code,
                    "code_verifier": pending.code_verifier,
                    "redirect_uri": self.auth.redirect_uri,
                },
            )
        except (UnauthorizedError, PermanentTelemetryError) as e:
            if e.status_code in (400, 401):
                raise AuthorizationExpiredError("Provider rejected the authorization code") from e
            raise

        try:
            tokens = TokenPair.from_token_response(payload)
        except ValueError as e:
            raise PermanentTelemetryError(f"authorization code grant: {e}") from e

        if not self.store.save_credential(user_id, tokens):
            raise ConfigurationError(f"Unknown user {user_id}")
        logger.info("Linked fitness account", extra={"user_id": user_id, "subject_id": tokens.subject_id})
        return tokens
