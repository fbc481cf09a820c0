"""Tests for authentication providers (iam/auth/identity.py)."""
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import jwt
import pytest

from config.redis_client import CacheKeys
from core.errors import (
    AccountLockedError,
    AccountSuspendedError,
    InvalidCredentialsError,
    InvalidPasswordError,
    InvalidTokenError,
    NotSupportedError,
)
from core.timestamps import now
from iam.auth.identity import (
    AuthProvider,
    CompositeAuthProvider,
    LocalAuthProvider,
    OidcAuthProvider,
)
from iam.auth.passwords import PasswordPolicy, StaticConfigSource, verify_password
from iam.auth.types import UserStatus

TEST_PASSWORD = "Str0ng!Passw0rd"

IDP_KEY = "external-idp-shared-secret"
IDP_ISSUER = "https://idp.example.com"


def idp_token(sub="u1", issuer=IDP_ISSUER, key=IDP_KEY, audience=None, **claims):
    payload = {"sub": sub, "iss": issuer, "exp": now() + timedelta(minutes=5), **claims}
    if audience:
        payload["aud"] = audience
    return jwt.encode(payload, key, algorithm="HS256")


@pytest.fixture
def oidc_provider(users):
    return OidcAuthProvider(users, issuer=IDP_ISSUER, key=IDP_KEY, provider_name="corp-sso")


def sent_reset_token(email_sender):
    return email_sender.send_password_reset.call_args[0][1]


class TestBaseProvider:

    @pytest.mark.parametrize("operation, args", [
        ("authenticate", ("a@example.com", "pw")),
        ("authenticate_with_provider", ("corp-sso", "token")),
        ("request_password_reset", ("a@example.com",)),
        ("reset_password", ("token", "pw")),
        ("verify_token", ("token",)),
    ])
    def test_every_operation_unsupported(self, operation, args):
        with pytest.raises(NotSupportedError):
            getattr(AuthProvider(), operation)(*args)


class TestLocalAuthenticate:

    def test_valid_credentials(self, make_user, local_provider):
        make_user("u1")

        user = local_provider.authenticate("U1@Example.com", TEST_PASSWORD)

        assert user.id == "u1"

    def test_unknown_email(self, local_provider):
        with pytest.raises(InvalidCredentialsError):
            local_provider.authenticate("ghost@example.com", TEST_PASSWORD)

    def test_wrong_password(self, make_user, local_provider):
        make_user("u1")

        with pytest.raises(InvalidCredentialsError):
            local_provider.authenticate("u1@example.com", "wrong")

    def test_user_without_password(self, make_user, local_provider):
        make_user("u1", password=None)

        with pytest.raises(InvalidCredentialsError):
            local_provider.authenticate("u1@example.com", "")

    def test_suspended_account(self, make_user, local_provider):
        make_user("u1", status=UserStatus.SUSPENDED)

        with pytest.raises(AccountSuspendedError):
            local_provider.authenticate("u1@example.com", TEST_PASSWORD)

    def test_lockout_after_threshold(self, make_user, local_provider):
        make_user("u1")
        for _ in range(2):
            with pytest.raises(InvalidCredentialsError):
                local_provider.authenticate("u1@example.com", "wrong")

        with pytest.raises(AccountLockedError):
            local_provider.authenticate("u1@example.com", "wrong")

        with pytest.raises(AccountLockedError):
            local_provider.authenticate("u1@example.com", TEST_PASSWORD)

    def test_lockout_expires(self, make_user, local_provider, clock):
        make_user("u1")
        for _ in range(3):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                local_provider.authenticate("u1@example.com", "wrong")

        clock.advance(15 * 60)

        assert local_provider.authenticate("u1@example.com", TEST_PASSWORD).id == "u1"

    def test_success_clears_failure_count(self, make_user, local_provider, cache):
        make_user("u1")
        with pytest.raises(InvalidCredentialsError):
            local_provider.authenticate("u1@example.com", "wrong")

        local_provider.authenticate("u1@example.com", TEST_PASSWORD)

        assert cache.get(CacheKeys.login_failures("u1")) is None


class TestLocalVerifyToken:

    def test_self_issued_token(self, make_user, local_provider, tokens):
        user = make_user("u1")

        assert local_provider.verify_token(tokens.generate_access_token(user)).id == "u1"

    def test_deleted_user(self, make_user, users, local_provider, tokens):
        token = tokens.generate_access_token(make_user("u1"))
        users.delete("u1")

        with pytest.raises(InvalidTokenError):
            local_provider.verify_token(token)

    def test_suspended_after_issue(self, make_user, users, local_provider, tokens):
        user = make_user("u1")
        token = tokens.generate_access_token(user)
        user.status = UserStatus.SUSPENDED
        users.update(user)

        with pytest.raises(AccountSuspendedError):
            local_provider.verify_token(token)


class TestPasswordReset:

    def test_full_flow(self, make_user, users, local_provider, email_sender):
        make_user("u1")

        local_provider.request_password_reset("u1@example.com")
        email_sender.send_password_reset.assert_called_once()
        token = sent_reset_token(email_sender)

        user = local_provider.reset_password(token, "N3w!Password")

        stored = users.find_by_id("u1")
        assert verify_password("N3w!Password", stored.password_hash)
        assert stored.password_changed_at is not None
        assert user.id == "u1"

    def test_token_is_single_use(self, make_user, local_provider, email_sender):
        make_user("u1")
        local_provider.request_password_reset("u1@example.com")
        token = sent_reset_token(email_sender)
        local_provider.reset_password(token, "N3w!Password")

        with pytest.raises(InvalidTokenError):
            local_provider.reset_password(token, "An0ther!Pass")

    def test_concurrent_resets_consume_token_once(self, make_user, users, tokens, cache, email_sender):
        make_user("u1")
        barrier = threading.Barrier(2, timeout=5)

        class SyncedPolicy(PasswordPolicy):
            def validate(self, candidate):
                super().validate(candidate)
                barrier.wait()

        provider = LocalAuthProvider(
            users=users, tokens=tokens, policy=SyncedPolicy(StaticConfigSource()),
            cache=cache, email=email_sender, password_hash_method="pbkdf2:sha256:1000",
        )
        provider.request_password_reset("u1@example.com")
        token = sent_reset_token(email_sender)
        outcomes = []

        def reset(new_password):
            try:
                provider.reset_password(token, new_password)
                outcomes.append("ok")
            except InvalidTokenError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=reset, args=(pw,)) for pw in ("N3w!Password", "An0ther!Pass")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "rejected"]

    def test_token_not_stored_in_plaintext(self, make_user, local_provider, email_sender, cache):
        make_user("u1")
        local_provider.request_password_reset("u1@example.com")
        token = sent_reset_token(email_sender)

        assert cache.get(CacheKeys.password_reset(token)) is None

    def test_weak_password_keeps_token_usable(self, make_user, local_provider, email_sender):
        make_user("u1")
        local_provider.request_password_reset("u1@example.com")
        token = sent_reset_token(email_sender)

        with pytest.raises(InvalidPasswordError):
            local_provider.reset_password(token, "weak")

        local_provider.reset_password(token, "N3w!Password")

    def test_expired_token(self, make_user, local_provider, email_sender, clock):
        make_user("u1")
        local_provider.request_password_reset("u1@example.com")
        token = sent_reset_token(email_sender)

        clock.advance(60 * 60)

        with pytest.raises(InvalidTokenError):
            local_provider.reset_password(token, "N3w!Password")

    def test_unknown_email_is_silent(self, local_provider, email_sender):
        local_provider.request_password_reset("ghost@example.com")

        email_sender.send_password_reset.assert_not_called()

    def test_inactive_account_is_silent(self, make_user, local_provider, email_sender):
        make_user("u1", status=UserStatus.ARCHIVED)

        local_provider.request_password_reset("u1@example.com")

        email_sender.send_password_reset.assert_not_called()

    @pytest.mark.parametrize("token", ["", "made-up-token"])
    def test_invalid_token(self, local_provider, token):
        with pytest.raises(InvalidTokenError):
            local_provider.reset_password(token, "N3w!Password")

    def test_reset_clears_lockout(self, make_user, local_provider, email_sender):
        make_user("u1")
        for _ in range(3):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                local_provider.authenticate("u1@example.com", "wrong")
        local_provider.request_password_reset("u1@example.com")

        local_provider.reset_password(sent_reset_token(email_sender), "N3w!Password")

        assert local_provider.authenticate("u1@example.com", "N3w!Password").id == "u1"


class TestOidcProvider:

    def test_valid_token(self, make_user, oidc_provider):
        make_user("u1")

        assert oidc_provider.verify_token(idp_token()).id == "u1"

    def test_falls_back_to_email_claim(self, make_user, oidc_provider):
        make_user("u1")

        user = oidc_provider.verify_token(idp_token(sub="idp-1234", email="u1@example.com"))

        assert user.id == "u1"

    def test_unknown_subject(self, oidc_provider):
        with pytest.raises(InvalidTokenError):
            oidc_provider.verify_token(idp_token(sub="nobody"))

    def test_wrong_issuer(self, make_user, oidc_provider):
        make_user("u1")

        with pytest.raises(InvalidTokenError):
            oidc_provider.verify_token(idp_token(issuer="https://evil.example.com"))

    def test_wrong_key(self, make_user, oidc_provider):
        make_user("u1")

        with pytest.raises(InvalidTokenError):
            oidc_provider.verify_token(idp_token(key="another-key"))

    def test_audience_enforced_when_configured(self, make_user, users):
        make_user("u1")
        provider = OidcAuthProvider(users, issuer=IDP_ISSUER, key=IDP_KEY, audience="iam-core")

        assert provider.verify_token(idp_token(audience="iam-core")).id == "u1"
        with pytest.raises(InvalidTokenError):
            provider.verify_token(idp_token(audience="other-app"))
        with pytest.raises(InvalidTokenError):
            provider.verify_token(idp_token())

    def test_authenticate_with_provider_checks_name(self, make_user, oidc_provider):
        make_user("u1")

        assert oidc_provider.authenticate_with_provider("corp-sso", idp_token()).id == "u1"
        with pytest.raises(NotSupportedError):
            oidc_provider.authenticate_with_provider("github", idp_token())

    def test_password_login_unsupported(self, oidc_provider):
        with pytest.raises(NotSupportedError):
            oidc_provider.authenticate("u1@example.com", TEST_PASSWORD)

    def test_empty_key_refused(self, users):
        with pytest.raises(ValueError):
            OidcAuthProvider(users, issuer=IDP_ISSUER, key="")


class TestCompositeProvider:

    def test_local_token_verified_by_local(self, make_user, local_provider, oidc_provider, tokens):
        composite = CompositeAuthProvider([local_provider, oidc_provider])
        user = make_user("u1")

        assert composite.verify_token(tokens.generate_access_token(user)).id == "u1"

    def test_external_token_accepted_after_local_fails(self, make_user, local_provider, oidc_provider):
        composite = CompositeAuthProvider([local_provider, oidc_provider])
        make_user("u1")

        assert composite.verify_token(idp_token()).id == "u1"

    def test_all_fail(self, local_provider, oidc_provider):
        composite = CompositeAuthProvider([local_provider, oidc_provider])

        with pytest.raises(InvalidTokenError):
            composite.verify_token("garbage")

    def test_unexpected_provider_error_is_absorbed(self, make_user, oidc_provider):
        broken = MagicMock(spec=AuthProvider)
        broken.name = "broken"
        broken.verify_token.side_effect = RuntimeError("backend down")
        composite = CompositeAuthProvider([broken, oidc_provider])
        make_user("u1")

        assert composite.verify_token(idp_token()).id == "u1"

    def test_federated_login_routes_by_name(self, make_user, local_provider, oidc_provider):
        composite = CompositeAuthProvider([local_provider, oidc_provider])
        make_user("u1")

        assert composite.authenticate_with_provider("corp-sso", idp_token()).id == "u1"
        with pytest.raises(InvalidCredentialsError):
            composite.authenticate_with_provider("github", idp_token())

    def test_password_operations_go_to_primary(self, make_user, local_provider, oidc_provider):
        composite = CompositeAuthProvider([oidc_provider, local_provider])
        make_user("u1")

        with pytest.raises(NotSupportedError):
            composite.authenticate("u1@example.com", TEST_PASSWORD)

    def test_primary_and_providers(self, local_provider, oidc_provider):
        composite = CompositeAuthProvider([local_provider, oidc_provider])

        assert composite.primary is local_provider
        assert composite.providers == [local_provider, oidc_provider]

    def test_requires_a_provider(self):
        with pytest.raises(ValueError):
            CompositeAuthProvider([])


class TestLocalProviderWithoutThrottle:

    def test_no_lockout(self, make_user, users, tokens, cache):
        from iam.auth.passwords import PasswordPolicy, StaticConfigSource
        provider = LocalAuthProvider(users, tokens, PasswordPolicy(StaticConfigSource()), cache)
        make_user("u1")
        for _ in range(10):
            with pytest.raises(InvalidCredentialsError):
                provider.authenticate("u1@example.com", "wrong")

        assert provider.authenticate("u1@example.com", TEST_PASSWORD).id == "u1"
