"""Tests for access and MFA challenge tokens (iam/auth/tokens.py)."""
from datetime import timedelta

import jwt
import pytest
from flask import Flask

from core.errors import InvalidTokenError
from core.timestamps import now
from iam.auth.tokens import TokenIssuer, get_token_from_request
from iam.auth.types import MfaType, User

SECRET = "unit-test-signing-secret"


@pytest.fixture
def user(grant, role):
    return User(
        id="u1",
        email="u1@example.com",
        roles=[role("Users", grant("read-user"), grant("manage-own-mfa"))],
    )


class TestAccessTokens:

    def test_claims(self, tokens, user):
        token = tokens.generate_access_token(user)

        payload = tokens.decode_access_token(token)

        assert payload["sub"] == "u1"
        assert payload["email"] == "u1@example.com"
        assert payload["type"] == "access"
        assert payload["iss"] == "iam-test"
        assert sorted(payload["permissions"]) == ["manage-own-mfa", "read-user"]
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_each_token_has_unique_jti(self, tokens, user):
        first = tokens.decode_access_token(tokens.generate_access_token(user))
        second = tokens.decode_access_token(tokens.generate_access_token(user))

        assert first["jti"] != second["jti"]

    def test_expired_token_rejected(self, tokens):
        issued = now() - timedelta(hours=1)
        token = jwt.encode(
            {"sub": "u1", "type": "access", "iss": "iam-test", "iat": issued, "exp": issued + timedelta(minutes=15)},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(token)

    def test_wrong_signature_rejected(self, tokens, user):
        other = TokenIssuer("a-different-secret", issuer="iam-test")

        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(other.generate_access_token(user))

    def test_wrong_issuer_rejected(self, tokens, user):
        other = TokenIssuer(SECRET, issuer="someone-else")

        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(other.generate_access_token(user))

    def test_missing_issuer_rejected(self, tokens):
        token = jwt.encode(
            {"sub": "u1", "type": "access", "exp": now() + timedelta(minutes=5)},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(token)

    @pytest.mark.parametrize("garbage", ["", "not.a.jwt", "abc"])
    def test_malformed_rejected(self, tokens, garbage):
        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(garbage)

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            TokenIssuer("")


class TestMfaTokens:

    def test_mfa_token_is_not_an_access_token(self, tokens, user):
        user.mfa_type = MfaType.TOTP
        mfa_token = tokens.create_mfa_token(user)

        payload = tokens.decode_mfa_token(mfa_token)
        assert payload["sub"] == "u1"
        assert payload["mfa_type"] == "totp"
        assert "permissions" not in payload

        with pytest.raises(InvalidTokenError):
            tokens.decode_access_token(mfa_token)

    def test_access_token_is_not_an_mfa_token(self, tokens, user):
        with pytest.raises(InvalidTokenError):
            tokens.decode_mfa_token(tokens.generate_access_token(user))

    def test_mfa_token_lifetime(self, tokens, user):
        payload = tokens.decode_mfa_token(tokens.create_mfa_token(user))

        assert payload["exp"] - payload["iat"] == 5 * 60


class TestRefreshTokens:

    def test_delegates_to_ledger(self, tokens, ledger, user):
        token = tokens.generate_refresh_token(user, ip_address="10.0.0.1")

        assert ledger.find_valid(token).user_id == "u1"

    def test_without_ledger_raises(self, user):
        with pytest.raises(RuntimeError):
            TokenIssuer(SECRET).generate_refresh_token(user)


class TestFromSettings:

    def test_uses_auth_settings(self, settings, user):
        issuer = TokenIssuer.from_settings(settings)
        payload = issuer.decode_access_token(issuer.generate_access_token(user))

        assert payload["iss"] == settings.auth.jwt_issuer
        assert payload["exp"] - payload["iat"] == settings.auth.access_token_minutes * 60


class TestBearerExtraction:

    def test_reads_bearer_header(self):
        app = Flask(__name__)
        with app.test_request_context(headers={"Authorization": "Bearer abc.def.ghi"}):
            assert get_token_from_request() == "abc.def.ghi"

    def test_ignores_other_schemes(self):
        app = Flask(__name__)
        with app.test_request_context(headers={"Authorization": "Basic dXNlcjpwdw=="}):
            assert get_token_from_request() is None
        with app.test_request_context():
            assert get_token_from_request() is None
