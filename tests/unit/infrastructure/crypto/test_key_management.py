"""Tests for KeyManagementService."""

import pytest

from golem_memory.core.domain.errors import (
    KeyManagementNotInitializedError,
    ValidationFailureError,
)
from golem_memory.infrastructure.crypto.key_management import (
    DOUBLE_SHA256,
    PBKDF2_SHA256,
    KeyManagementService,
)

SALT = "ab" * 32


def test_derivation_requires_initialization(key_management):
    assert not key_management.is_initialized()
    with pytest.raises(KeyManagementNotInitializedError):
        key_management.generate_memory_key("m1")


def test_empty_password_rejected(key_management):
    with pytest.raises(ValidationFailureError):
        key_management.initialize_with_password("")


def test_generated_key_shape(unlocked_keys):
    key = unlocked_keys.generate_memory_key("m1")
    assert key.key_id == "memory_m1"
    assert len(key.private_key) == 32
    assert len(key.salt) == 64
    assert key.key_derivation == PBKDF2_SHA256
    assert unlocked_keys.get_key("memory_m1") is key


@pytest.mark.parametrize("derivation", [PBKDF2_SHA256, DOUBLE_SHA256])
def test_derivation_is_deterministic_across_sessions(derivation):
    first = KeyManagementService(iterations=1_000)
    first.initialize_with_password("pw")
    second = KeyManagementService(iterations=1_000)
    second.initialize_with_password("pw")

    a = first.generate_memory_key("m1", salt=SALT, key_derivation=derivation)
    b = second.generate_memory_key("m1", salt=SALT, key_derivation=derivation)
    assert a.private_key == b.private_key


def test_different_inputs_give_different_keys(unlocked_keys):
    base = unlocked_keys.generate_memory_key("m1", salt=SALT).private_key
    assert unlocked_keys.generate_memory_key("m1", salt="cd" * 32).private_key != base
    assert unlocked_keys.generate_memory_key("m2", salt=SALT).private_key != base
    other = KeyManagementService(iterations=1_000)
    other.initialize_with_password("different")
    assert other.generate_memory_key("m1", salt=SALT).private_key != base


def test_double_hash_records_two_iterations(unlocked_keys):
    key = unlocked_keys.generate_memory_key("m1", salt=SALT, key_derivation=DOUBLE_SHA256)
    assert key.iterations == 2


def test_unknown_derivation_rejected(unlocked_keys):
    with pytest.raises(ValidationFailureError):
        unlocked_keys.generate_memory_key("m1", key_derivation="md5")


def test_get_key_never_derives(unlocked_keys):
    assert unlocked_keys.get_key("memory_unknown") is None


def test_all_keys_oldest_first(unlocked_keys):
    for memory_id in ("a", "b", "c"):
        unlocked_keys.generate_memory_key(memory_id)
    unlocked_keys.generate_memory_key("a")
    assert [key.key_id for key in unlocked_keys.all_keys()] == ["memory_b", "memory_c", "memory_a"]


def test_clear_session_forgets_everything(unlocked_keys):
    unlocked_keys.generate_memory_key("m1")
    unlocked_keys.clear_session()
    assert unlocked_keys.all_keys() == []
    assert not unlocked_keys.is_initialized()


def test_key_bytes_hidden_from_repr_and_metadata(unlocked_keys):
    key = unlocked_keys.generate_memory_key("m1")
    assert "private_key" not in repr(key)
    assert "private_key" not in key.to_metadata()
