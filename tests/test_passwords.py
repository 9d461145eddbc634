"""Unit tests for the password policy and argon2 credential verifier."""

import hashlib

import pytest

from iamcore.service.errors import WeakPasswordError
from iamcore.service.passwords import CredentialVerifier, PasswordPolicy

LONG_PASSWORD = "Aa1!" + "xY9$" * 20


@pytest.fixture
def verifier():
    return CredentialVerifier(time_cost=1, memory_cost=8192, parallelism=1)


class TestPasswordPolicy:
    """Each rule rejects with its own name."""

    @pytest.mark.parametrize(
        "password,rule",
        [
            ("Ab1!", "length"),
            ("Ab1!" * 40, "length"),
            ("Secur3! Pass", "whitespace"),
            ("secur3!pass", "uppercase"),
            ("SECUR3!PASS", "lowercase"),
            ("Secure!Pass", "digit"),
            ("Secur3Pass", "symbol"),
            ("MyPassword1!", "common_password"),
            ("Xx123456!", "common_password"),
            ("Secur3!Paaas", "repeated_characters"),
        ],
    )
    def test_rejects_with_rule_name(self, password, rule):
        with pytest.raises(WeakPasswordError) as excinfo:
            PasswordPolicy().validate(password)
        assert excinfo.value.rule == rule
        assert excinfo.value.detail == {"rule": rule}
        assert excinfo.value.status_code == 400

    def test_accepts_strong_password(self):
        PasswordPolicy().validate("Secur3!Pass")

    def test_exact_min_length_is_accepted(self):
        PasswordPolicy(min_length=8).validate("Ab3!efgh")

    def test_length_checked_before_other_rules(self):
        with pytest.raises(WeakPasswordError) as excinfo:
            PasswordPolicy().validate("a b")
        assert excinfo.value.rule == "length"

    def test_non_string_is_rejected(self):
        with pytest.raises(WeakPasswordError):
            PasswordPolicy().validate(None)

    def test_from_settings_uses_configured_bounds(self, settings):
        policy = PasswordPolicy.from_settings(settings.model_copy(update={"password_min_length": 12}))
        with pytest.raises(WeakPasswordError):
            policy.validate("Secur3!Pass")
        policy.validate("Secur3!Passwd9")


class TestCredentialVerifier:
    """argon2id hashing and verification."""

    def test_hash_is_argon2id_and_salted(self, verifier):
        first = verifier.hash("Secur3!Pass")
        second = verifier.hash("Secur3!Pass")
        assert first.startswith("$argon2id$")
        assert first != second
        assert "Secur3!Pass" not in first

    def test_verify_round(self, verifier):
        stored = verifier.hash("Secur3!Pass")
        assert verifier.verify("Secur3!Pass", stored) is True
        assert verifier.verify("Secur3!Pasz", stored) is False

    def test_missing_hash_never_verifies(self, verifier):
        assert verifier.verify("anything", None) is False
        assert verifier.verify("", "") is False

    def test_garbage_hash_is_rejected(self, verifier):
        assert verifier.verify("Secur3!Pass", "not-a-hash") is False

    def test_long_inputs_are_distinguished(self, verifier):
        base = "A1!" + "x" * 100
        stored = verifier.hash(base + "tail-one")
        assert verifier.verify(base + "tail-one", stored) is True
        assert verifier.verify(base + "tail-two", stored) is False

    def test_digest_of_long_password_is_not_the_password(self, verifier):
        stored = verifier.hash(LONG_PASSWORD)
        assert verifier.verify(LONG_PASSWORD, stored) is True
        assert verifier.verify(hashlib.sha256(LONG_PASSWORD.encode()).hexdigest(), stored) is False

    def test_digest_of_short_password_is_not_the_password(self, verifier):
        stored = verifier.hash("Secur3!Pass")
        assert verifier.verify(hashlib.sha256(b"Secur3!Pass").hexdigest(), stored) is False

    def test_pepper_binds_hashes(self, verifier):
        stored = verifier.hash("Secur3!Pass")
        other = CredentialVerifier(time_cost=1, memory_cost=8192, parallelism=1, pepper="rotated")
        assert other.verify("Secur3!Pass", stored) is False

    def test_needs_rehash_when_parameters_change(self, verifier):
        stored = verifier.hash("Secur3!Pass")
        assert verifier.needs_rehash(stored) is False
        stronger = CredentialVerifier(time_cost=2, memory_cost=8192, parallelism=1)
        assert stronger.needs_rehash(stored) is True
        assert stronger.verify("Secur3!Pass", stored) is True

    def test_needs_rehash_for_unknown_format(self, verifier):
        assert verifier.needs_rehash("plaintext") is True

    async def test_async_wrappers(self, verifier):
        stored = await verifier.hash_async("Secur3!Pass")
        assert await verifier.verify_async("Secur3!Pass", stored) is True
        assert await verifier.verify_async("nope", stored) is False
