import json
import threading
from datetime import timedelta

import pytest

from bmsauth.storage.errors import ConstraintViolation, DuplicateIdentifier
from bmsauth.storage.memory import DEMO_USERS, MemoryStore
from bmsauth.storage.models import SessionRecord, normalize_identifier, utcnow

KEY = "store-test-key-material"


def test_normalize_identifier():
    assert normalize_identifier("  Alice@Example.COM ") == "alice@example.com"
    assert normalize_identifier(" BobTheClerk ") == "BobTheClerk"
    assert normalize_identifier("") == ""
    assert normalize_identifier(None) == ""
    fullwidth = "\uff21\uff4c\uff49\uff43\uff45\uff20example.com"
    assert normalize_identifier(fullwidth) == "alice@example.com"
    assert normalize_identifier("\uff22\uff4f\uff42") == "Bob"


def test_email_identifiers_are_case_insensitive():
    store = MemoryStore(mfa_encryption_key=KEY)
    created = store.create("Alice@Example.com", "hash", "customer")

    assert created.identifier == "alice@example.com"
    assert store.find_by_identifier("ALICE@example.com").id == created.id
    with pytest.raises(DuplicateIdentifier) as excinfo:
        store.create("alice@EXAMPLE.com", "hash", "customer")
    assert isinstance(excinfo.value, ConstraintViolation)
    assert excinfo.value.status_code == 409


def test_usernames_are_exact():
    store = MemoryStore(mfa_encryption_key=KEY)
    store.create("BobClerk", "hash", "sales_clerk")

    assert store.find_by_identifier("bobclerk") is None
    assert store.find_by_identifier(" BobClerk ") is not None
    store.create("bobclerk", "hash", "customer")


def test_returned_records_are_copies():
    store = MemoryStore(mfa_encryption_key=KEY)
    created = store.create("carol@example.com", "hash", "customer")

    created.role = "system_admin"

    assert store.find_by_id(created.id).role == "customer"


def test_setters_reject_unknown_user():
    store = MemoryStore(mfa_encryption_key=KEY)

    with pytest.raises(ConstraintViolation):
        store.set_mfa_enabled("missing", True)
    assert store.update_role("missing", "customer") is None


def test_concurrent_creates_allow_one_winner():
    store = MemoryStore(mfa_encryption_key=KEY)
    outcomes = []

    def _attempt():
        try:
            store.create("race@example.com", "hash", "customer")
            outcomes.append("created")
        except DuplicateIdentifier:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=_attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("created") == 1
    assert len(store.list_principals()) == 1


def test_state_survives_reload(tmp_path):
    path = tmp_path / "state" / "auth.json"
    store = MemoryStore(path, mfa_encryption_key=KEY)
    user = store.create("persist@example.com", "hash", "store_owner")
    store.set_mfa_secret(user.id, "JBSWY3DPEHPK3PXP")
    store.set_mfa_enabled(user.id, True)
    now = utcnow()
    session = store.create_session(
        SessionRecord.new(user.id, user.identifier, user.role, now=now, ttl_minutes=60)
    )

    raw = path.read_text()
    assert "JBSWY3DPEHPK3PXP" not in raw
    assert json.loads(raw)["users"][0]["identifier"] == "persist@example.com"

    reloaded = MemoryStore(path, mfa_encryption_key=KEY)
    again = reloaded.find_by_id(user.id)
    assert again.role == "store_owner"
    assert again.mfa_enabled is True
    assert again.mfa_secret == "JBSWY3DPEHPK3PXP"
    assert reloaded.get_session(session.id).expires_at == now + timedelta(minutes=60)


def test_wrong_key_drops_secret(tmp_path):
    path = tmp_path / "auth.json"
    store = MemoryStore(path, mfa_encryption_key=KEY)
    user = store.create("keyed@example.com", "hash", "customer")
    store.set_mfa_secret(user.id, "JBSWY3DPEHPK3PXP")

    other = MemoryStore(path, mfa_encryption_key="some-other-key")

    assert other.find_by_id(user.id).mfa_secret is None


def test_session_table():
    store = MemoryStore(mfa_encryption_key=KEY)
    user = store.create("sess@example.com", "hash", "customer")
    now = utcnow()
    live = store.create_session(SessionRecord.new(user.id, user.identifier, user.role, now=now))
    stale = store.create_session(
        SessionRecord.new(user.id, user.identifier, user.role, now=now - timedelta(hours=2))
    )

    assert store.count_sessions() == 2
    assert store.delete_expired_sessions(now) == 1
    assert store.get_session(stale.id) is None
    assert store.get_session(live.id) is not None
    assert store.delete_user_sessions(user.id) == 1
    assert store.count_sessions() == 0

    with pytest.raises(ConstraintViolation):
        store.create_session(SessionRecord.new("ghost", "ghost", "customer", now=now))


def test_seed_demo_users_is_idempotent():
    store = MemoryStore(mfa_encryption_key=KEY)

    assert store.seed_demo_users(lambda password: f"hashed:{password}") == 3
    assert store.seed_demo_users(lambda password: f"hashed:{password}") == 0

    roles = {p.identifier: p.role for p in store.list_principals()}
    assert roles == {identifier: role for identifier, _, role in DEMO_USERS}


def test_requires_key_material():
    with pytest.raises(RuntimeError):
        MemoryStore(mfa_encryption_key="")
