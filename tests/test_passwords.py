"""Tests for password hashing, policy and lockout (iam/auth/passwords.py)."""
import pytest

from core.errors import AccountLockedError, InvalidPasswordError
from iam.auth.config import ConfigKeys
from iam.auth.passwords import (
    LoginThrottle,
    PasswordPolicy,
    StaticConfigSource,
    hash_password,
    settings_config_source,
    verify_password,
)


class TestHashing:

    def test_hash_verifies(self):
        hashed = hash_password("Secret!1", "pbkdf2:sha256:1000")

        assert hashed != "Secret!1"
        assert verify_password("Secret!1", hashed)
        assert not verify_password("secret!1", hashed)

    def test_hashes_are_salted(self):
        assert hash_password("Secret!1", "pbkdf2:sha256:1000") != hash_password("Secret!1", "pbkdf2:sha256:1000")

    def test_missing_hash_never_verifies(self):
        assert not verify_password("anything", None)
        assert not verify_password("", "")


class TestPasswordPolicyDefaults:

    def setup_method(self):
        self.policy = PasswordPolicy(StaticConfigSource())

    def test_accepts_compliant_password(self):
        self.policy.validate("Abcdef1!")

    @pytest.mark.parametrize("candidate, fragment", [
        ("Ab1!", "at least 8"),
        ("Abcdefgh1!" * 4, "at most 30"),
        ("abcdefg1!", "uppercase"),
        ("ABCDEFG1!", "lowercase"),
        ("Abcdefgh!", "digit"),
        ("Abcdefgh1", "special"),
    ])
    def test_names_violated_rule(self, candidate, fragment):
        with pytest.raises(InvalidPasswordError) as exc:
            self.policy.validate(candidate)

        assert fragment in exc.value.reason

    def test_first_violated_rule_wins(self):
        # Too short and missing everything else: length is reported
        with pytest.raises(InvalidPasswordError) as exc:
            self.policy.validate("a")

        assert "at least 8" in exc.value.reason

    def test_is_valid_returns_tuple(self):
        assert self.policy.is_valid("Abcdef1!") == (True, "")
        ok, message = self.policy.is_valid("short")
        assert not ok
        assert "at least" in message


class TestPasswordPolicyConfigured:

    def test_reads_thresholds_from_config(self):
        policy = PasswordPolicy(StaticConfigSource({
            ConfigKeys.PASSWORD_MIN_LENGTH: "4",
            ConfigKeys.PASSWORD_MAX_LENGTH: 6,
            ConfigKeys.PASSWORD_MUST_HAVE_UPPERCASE: "false",
            ConfigKeys.PASSWORD_MUST_HAVE_SPECIAL_CHAR: False,
        }))

        policy.validate("abc1")
        with pytest.raises(InvalidPasswordError):
            policy.validate("abcdef1")

    def test_non_numeric_threshold_falls_back_to_default(self):
        policy = PasswordPolicy(StaticConfigSource({ConfigKeys.PASSWORD_MIN_LENGTH: "lots"}))

        with pytest.raises(InvalidPasswordError) as exc:
            policy.validate("Ab1!")
        assert "at least 8" in exc.value.reason

    def test_settings_config_source_maps_policy_settings(self, settings):
        source = settings_config_source(settings)

        assert source.get(ConfigKeys.PASSWORD_MIN_LENGTH) == settings.password_policy.min_length
        assert source.get(ConfigKeys.PASSWORD_MUST_HAVE_DIGIT) is True
        assert source.get("unknown", "fallback") == "fallback"


class TestLoginThrottle:

    def setup_method(self):
        from core.cache import InMemoryCache
        self.cache = InMemoryCache()
        self.throttle = LoginThrottle(self.cache, threshold=3, duration_minutes=15)

    def test_locks_at_threshold(self):
        assert self.throttle.record_failure("u1") == (1, False)
        assert self.throttle.record_failure("u1") == (2, False)
        assert self.throttle.record_failure("u1") == (3, True)

        with pytest.raises(AccountLockedError) as exc:
            self.throttle.check("u1")
        assert exc.value.locked_until is not None

    def test_other_users_unaffected(self):
        for _ in range(3):
            self.throttle.record_failure("u1")

        self.throttle.check("u2")

    def test_clear_unlocks(self):
        for _ in range(3):
            self.throttle.record_failure("u1")

        self.throttle.clear("u1")

        self.throttle.check("u1")
        assert self.throttle.record_failure("u1") == (1, False)
