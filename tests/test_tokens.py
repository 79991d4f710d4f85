import time

import jwt
import pytest

from warden.service.errors import AuthenticationError, InvalidDurationFormat
from warden.service.tokens import (
    InvalidTokenSignature,
    TokenExpired,
    TokenService,
    parse_duration,
)
from warden.storage.models import User

ACCESS_SECRET = "access-secret-" + "a" * 32
REFRESH_SECRET = "refresh-secret-" + "b" * 32


def _service(access="7d", refresh="30d"):
    return TokenService(ACCESS_SECRET, REFRESH_SECRET, access, refresh)


def _user():
    return User(id=42, username="alice", email="alice@example.com")


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,seconds",
        [("7d", 604800), ("24h", 86400), ("15m", 900), ("30s", 30), (" 2h ", 7200)],
    )
    def test_units(self, value, seconds):
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["1x", "", "d7", "7", "1.5h", "-1d", None, "0s", "00h"])
    def test_rejects_malformed(self, value):
        with pytest.raises(InvalidDurationFormat):
            parse_duration(value)


class TestIssue:
    def test_pair_carries_identity_claims(self):
        service = _service()
        pair = service.issue(_user())

        claims = jwt.decode(pair.access_token, ACCESS_SECRET, algorithms=["HS256"])
        assert claims["sub"] == "42"
        assert claims["username"] == "alice"
        assert claims["email"] == "alice@example.com"
        assert claims["exp"] - claims["iat"] == 604800
        assert pair.expires_in == 604800
        assert pair.token_type == "Bearer"

    def test_refresh_uses_its_own_lifetime(self):
        service = _service(access="15m", refresh="1d")
        pair = service.issue(_user())

        claims = jwt.decode(pair.refresh_token, REFRESH_SECRET, algorithms=["HS256"])
        assert claims["exp"] - claims["iat"] == 86400

    def test_same_second_issues_distinct_tokens(self):
        service = _service()
        now = int(time.time())
        first = service.issue(_user(), now=now)
        second = service.issue(_user(), now=now)

        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token


class TestVerify:
    def test_round_trip(self):
        service = _service()
        pair = service.issue(_user())

        payload = service.verify(pair.access_token)
        assert payload.sub == 42
        assert payload.username == "alice"

        refresh_payload = service.verify(pair.refresh_token, "refresh")
        assert refresh_payload.sub == 42

    def test_access_token_is_not_a_refresh_token(self):
        service = _service()
        pair = service.issue(_user())

        with pytest.raises(InvalidTokenSignature):
            service.verify(pair.access_token, "refresh")
        with pytest.raises(InvalidTokenSignature):
            service.verify(pair.refresh_token, "access")

    def test_foreign_secret_rejected(self):
        other = TokenService("x" * 40, "y" * 40)
        token = other.issue(_user()).access_token

        with pytest.raises(InvalidTokenSignature):
            _service().verify(token)

    def test_expired_token(self):
        service = _service(access="1s")
        pair = service.issue(_user(), now=int(time.time()) - 3600)

        with pytest.raises(TokenExpired) as exc_info:
            service.verify(pair.access_token)
        assert isinstance(exc_info.value, AuthenticationError)
        assert exc_info.value.status_code == 401

    def test_garbage_token(self):
        with pytest.raises(InvalidTokenSignature):
            _service().verify("not-a-jwt")

    def test_non_numeric_subject_rejected(self):
        now = int(time.time())
        token = jwt.encode(
            {"sub": "alice", "iat": now, "exp": now + 60}, ACCESS_SECRET, algorithm="HS256"
        )
        with pytest.raises(InvalidTokenSignature):
            _service().verify(token)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            _service().verify("token", "session")


class TestRemainingTtl:
    def test_unverified_decode_ignores_expiry(self):
        service = _service(access="1s")
        pair = service.issue(_user(), now=int(time.time()) - 3600)

        claims = service.decode_unverified(pair.access_token)
        assert claims["sub"] == "42"

    def test_decode_unverified_garbage(self):
        assert TokenService.decode_unverified("garbage") is None

    def test_remaining_ttl_clamped(self):
        assert TokenService.remaining_ttl({"exp": 1000}, now=400) == 600
        assert TokenService.remaining_ttl({"exp": 1000}, now=5000) == 0
        assert TokenService.remaining_ttl(None) == 0
        assert TokenService.remaining_ttl({}) == 0
        assert TokenService.remaining_ttl({"exp": "soon"}) == 0
