"""
Tests for the PKCE authorization flow
"""

import base64
import hashlib
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from adaptive_alarm.auth import AuthorizationFlow, code_challenge, generate_code_verifier
from adaptive_alarm.config import Timings
from adaptive_alarm.exceptions import AuthorizationExpiredError, TransientTelemetryError

TOKENS = {"access_token": "access-1", "refresh_token": "refresh-1", "user_id": "SUBJ7", "expires_in": 28800}


@pytest.fixture
def flow(store, fitbit_auth, session):
    return AuthorizationFlow(store, fitbit_auth, Timings(verifier_ttl_s=600), session=session)


@pytest.fixture
def user_id(store):
    return store.add_user(email="new@example.com")


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestVerifier:
    """Test verifier and challenge generation"""

    def test_verifier_is_unpadded_base64url(self):
        verifier = generate_code_verifier()
        assert len(verifier) == 43
        assert "=" not in verifier
        assert set(verifier) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")

    def test_verifiers_are_unique(self):
        assert len({generate_code_verifier() for _ in range(50)}) == 50

    def test_challenge_is_s256(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert code_challenge(verifier) == expected == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class TestAuthorizationFlow:
    """Test begin() and complete()"""

    def test_begin_builds_authorization_url(self, flow, user_id):
        url, state = flow.begin(user_id)
        query = _query(url)

        assert url.startswith("https://www.fitbit.com/oauth2/authorize?")
        assert query["client_id"] == "client-id"
        assert query["response_type"] == "code"
        assert query["code_challenge_method"] == "S256"
        assert query["scope"] == "sleep heartrate profile"
        assert query["redirect_uri"] == "http://localhost/cb"
        assert query["state"] == state

    def test_complete_stores_credential(self, flow, store, session, respond, user_id):
        url, state = flow.begin(user_id)
        session.request.side_effect = [respond(200, TOKENS)]

        tokens = flow.complete(user_id, "auth-code", state)

        assert tokens.subject_id == "SUBJ7"
        credential = store.get_credential(user_id)
        assert (credential.access_token, credential.refresh_token) == ("access-1", "refresh-1")
        assert store.get_subject_id(user_id) == "SUBJ7"

        method, token_url = session.request.call_args.args
        data = session.request.call_args.kwargs["data"]
        assert (method, token_url) == ("POST", "https://api.fitbit.com/oauth2/token")
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "auth-code"
        assert code_challenge(data["code_verifier"]) == _query(url)["code_challenge"]

    def test_verifier_is_single_use(self, flow, session, respond, user_id):
        _, state = flow.begin(user_id)
        session.request.side_effect = [respond(200, TOKENS)]
        flow.complete(user_id, "auth-code", state)

        with pytest.raises(AuthorizationExpiredError):
            flow.complete(user_id, "auth-code", state)
        assert session.request.call_count == 1

    def test_unknown_state(self, flow, session, user_id):
        with pytest.raises(AuthorizationExpiredError):
            flow.complete(user_id, "auth-code", "never-issued")
        session.request.assert_not_called()

    def test_stale_verifier(self, flow, session, user_id):
        _, state = flow.begin(user_id)
        later = datetime.now(timezone.utc) + timedelta(seconds=601)

        with pytest.raises(AuthorizationExpiredError):
            flow.complete(user_id, "auth-code", state, now=later)
        session.request.assert_not_called()

    def test_state_issued_to_another_user(self, flow, store, session, user_id):
        other = store.add_user(email="other@example.com")
        _, state = flow.begin(other)

        with pytest.raises(AuthorizationExpiredError):
            flow.complete(user_id, "auth-code", state)
        session.request.assert_not_called()

    def test_new_attempt_replaces_previous(self, flow, session, user_id):
        _, first = flow.begin(user_id)
        flow.begin(user_id)

        with pytest.raises(AuthorizationExpiredError):
            flow.complete(user_id, "auth-code", first)

    def test_provider_rejects_code(self, flow, store, session, respond, user_id):
        _, state = flow.begin(user_id)
        session.request.side_effect = [respond(400, {"errors": [{"errorType": "invalid_grant"}]})]

        with pytest.raises(AuthorizationExpiredError):
            flow.complete(user_id, "bad-code", state)
        assert store.get_credential(user_id) is None

    def test_provider_outage_is_transient(self, flow, session, respond, user_id):
        _, state = flow.begin(user_id)
        session.request.side_effect = [respond(503, {})]

        with pytest.raises(TransientTelemetryError):
            flow.complete(user_id, "auth-code", state)
