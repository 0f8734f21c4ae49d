from __future__ import annotations

import pytest

from app.domain.errors import HashFormatError, WeakPassword
from app.security.passwords import PasswordHasher


def test_hash_is_salted_and_verifies(hasher):
    first = hasher.hash("P@ssw0rd1")
    second = hasher.hash("P@ssw0rd1")

    assert first != second
    assert first.startswith("$2b$04$")
    assert hasher.verify("P@ssw0rd1", first)
    assert hasher.verify("P@ssw0rd1", second)


def test_verify_returns_false_on_mismatch(hasher):
    stored = hasher.hash("P@ssw0rd1")

    assert hasher.verify("P@ssw0rd2", stored) is False
    assert hasher.verify("", stored) is False


def test_verify_rejects_inputs_beyond_bcrypt_limit(hasher):
    stored = hasher.hash("a" * 72)

    assert hasher.verify("a" * 72, stored)
    assert hasher.verify("a" * 73, stored) is False


@pytest.mark.parametrize("stored", ["", "plain-text", "$2b$04$tooshort", "$argon2id$v=19$m=65536"])
def test_verify_raises_on_malformed_hash(hasher, stored):
    with pytest.raises(HashFormatError):
        hasher.verify("P@ssw0rd1", stored)


def test_default_cost_factor_is_twelve():
    assert PasswordHasher().rounds == 12


def test_hash_refuses_oversized_input(hasher):
    with pytest.raises(WeakPassword):
        hasher.hash("é" * 40)


@pytest.mark.parametrize(
    "candidate",
    [
        "Sh0rt!",
        "alllowercase1!",
        "ALLUPPERCASE1!",
        "NoDigitsHere!",
        "NoSpecial123",
        "Aa1!" + "x" * 125,
    ],
)
def test_validate_strength_rejects_weak_passwords(hasher, candidate):
    with pytest.raises(WeakPassword):
        hasher.validate_strength(candidate)


def test_validate_strength_accepts_policy_compliant_password(hasher):
    hasher.validate_strength("P@ssw0rd1")
