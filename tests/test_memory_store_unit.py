import json
from datetime import timedelta

import pytest

from authsession.storage.errors import ConstraintViolation, RecordNotFound
from authsession.storage.memory import MemoryStore
from authsession.storage.models import AuthProvider, DeviceInfo, utcnow

MFA_KEY = "unit-test-mfa-key"


def _persistent(tmp_path, key=MFA_KEY):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=key, persist=True)


def test_state_survives_restart(tmp_path):
    store = _persistent(tmp_path)
    user = store.create_user("alice@example.com", first_name="Alice", password_hash="h")
    device = DeviceInfo(browser="Chrome 120.0", device_type="Mobile", ip_address="1.2.3.4")
    sess = store.create_session(user.id, device, user_agent="UA", remember_me=True)
    store.set_session_refresh_hash(sess.id, "digest")
    store.create_reset_token("alice@example.com", "reset-digest", utcnow() + timedelta(minutes=15))

    reloaded = _persistent(tmp_path)

    assert reloaded.get_user(user.id).first_name == "Alice"
    restored = reloaded.get_session(sess.id)
    assert restored.device.browser == "Chrome 120.0"
    assert restored.device.device_type == "Mobile"
    assert restored.refresh_token_hash == "digest"
    assert restored.remember_me is True
    assert reloaded.consume_reset_token("alice@example.com", "reset-digest") is not None


def test_two_factor_secret_is_encrypted_on_disk(tmp_path):
    store = _persistent(tmp_path)
    user = store.create_user("alice@example.com")
    store.set_two_factor(user.id, "JBSWY3DPEHPK3PXP", True)

    raw = (tmp_path / "state" / "auth_store.json").read_text()
    assert "JBSWY3DPEHPK3PXP" not in raw
    assert json.loads(raw)["users"][0]["two_factor_secret"]

    assert _persistent(tmp_path).get_user(user.id).two_factor_secret == "JBSWY3DPEHPK3PXP"


def test_rotated_key_drops_secret(tmp_path):
    store = _persistent(tmp_path)
    user = store.create_user("alice@example.com")
    store.set_two_factor(user.id, "JBSWY3DPEHPK3PXP", True)

    assert _persistent(tmp_path, key="another-key").get_user(user.id).two_factor_secret is None


def test_returned_users_are_copies(memory_store):
    user = memory_store.create_user("alice@example.com")
    user.email = "mallory@example.com"

    assert memory_store.get_user(user.id).email == "alice@example.com"


def test_returned_sessions_do_not_share_device(memory_store):
    user = memory_store.create_user("alice@example.com")
    created = memory_store.create_session(user.id, DeviceInfo(browser="Chrome 120.0"))
    created.device.browser = "Tampered"
    fetched = memory_store.get_session(created.id)
    fetched.device.location = "Nowhere"
    memory_store.list_user_sessions(user.id)[0].device.os = "Tampered"

    stored = memory_store.get_session(created.id).device
    assert (stored.browser, stored.location, stored.os) == ("Chrome 120.0", "Unknown", "Unknown")


def test_duplicate_email(memory_store):
    memory_store.create_user("alice@example.com")

    with pytest.raises(ConstraintViolation):
        memory_store.create_user("alice@example.com", provider=AuthProvider.GOOGLE)


def test_updates_on_missing_user(memory_store):
    with pytest.raises(RecordNotFound):
        memory_store.update_password("missing", "hash")
    with pytest.raises(RecordNotFound):
        memory_store.set_two_factor("missing", None, False)
    with pytest.raises(ConstraintViolation):
        memory_store.create_session("missing")


def test_refresh_hash_compare_and_swap(memory_store):
    user = memory_store.create_user("alice@example.com")
    sess = memory_store.create_session(user.id)
    memory_store.set_session_refresh_hash(sess.id, "first")

    assert memory_store.replace_refresh_token_hash(sess.id, "first", "second")
    assert not memory_store.replace_refresh_token_hash(sess.id, "first", "third")
    assert memory_store.get_session(sess.id).refresh_token_hash == "second"
    assert not memory_store.replace_refresh_token_hash("missing", "second", "x")


def test_delete_user_sessions_keeps_exception(memory_store):
    alice = memory_store.create_user("alice@example.com")
    bob = memory_store.create_user("bob@example.com")
    keep = memory_store.create_session(alice.id)
    memory_store.create_session(alice.id)
    bobs = memory_store.create_session(bob.id)

    assert memory_store.delete_user_sessions(alice.id, except_session_id=keep.id) == 1
    assert [s.id for s in memory_store.list_user_sessions(alice.id)] == [keep.id]
    assert memory_store.get_session(bobs.id) is not None
    assert memory_store.delete_session(keep.id)
    assert not memory_store.delete_session(keep.id)


def test_reset_tokens_by_email(memory_store):
    soon = utcnow() + timedelta(minutes=15)
    memory_store.create_reset_token("alice@example.com", "a", soon)
    memory_store.create_reset_token("bob@example.com", "b", soon)
    memory_store.create_reset_token("alice@example.com", "old", utcnow() - timedelta(seconds=1))

    assert memory_store.consume_reset_token("alice@example.com", "b") is None
    assert memory_store.consume_reset_token("alice@example.com", "old") is None
    assert memory_store.consume_reset_token("alice@example.com", "a").token_hash == "a"
    assert memory_store.consume_reset_token("alice@example.com", "a") is None
    assert memory_store.delete_reset_tokens("alice@example.com") == 1
    assert memory_store.consume_reset_token("bob@example.com", "b")
