"""
tests/test_account_store.py -- Tests for auth/store.AccountStore.

Covers:
  - save() insert: id, created_at and version assigned; roles persisted
  - case-insensitive lookup and uniqueness of handle and email
  - save() update: optimistic version check, role replacement
  - save() refuses an active account without a password hash
  - delete() cascades to roles, sessions and remember tokens
  - query_page() / count_matching(): substring filters, search across columns, sort, LIKE escaping
  - record_failed_attempt() locking, record_successful_login() reset (refused while locked),
    lock() ending sessions, unlock()
  - session and remember-token rows, purge_expired()
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.exceptions import AccountConflictError, StaleAccountError
from auth.models import ADMIN_ROLE, DEFAULT_ROLE, Account, RememberToken, Session
from auth.store import ANY_COLUMN

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _session(account: Account, sid: str = "sid-hash", minutes: int = 60) -> Session:
    return Session(
        session_id=sid,
        account_id=account.id,
        handle=account.handle,
        created_at=NOW,
        expires_at=NOW + timedelta(minutes=minutes),
    )


# ---------------------------------------------------------------------------
# Insert and lookup
# ---------------------------------------------------------------------------


class TestSaveAndFind:
    def test_insert_assigns_id_created_at_and_version(self, make_account) -> None:
        account = make_account("alice")
        assert account.id is not None
        assert account.created_at is not None
        assert account.version == 1

    def test_find_by_handle_ignores_case(self, store, make_account) -> None:
        make_account("Alice")
        found = store.find_by_handle("aLiCe")
        assert found is not None
        assert found.handle == "Alice"

    def test_find_by_email_ignores_case(self, store, make_account) -> None:
        make_account("alice", email="Alice@Example.com")
        assert store.find_by_email("alice@example.COM").handle == "alice"

    def test_roles_round_trip_as_a_set(self, store, make_account) -> None:
        account = make_account("alice", roles={DEFAULT_ROLE, ADMIN_ROLE})
        loaded = store.get_by_id(account.id)
        assert loaded.roles == {DEFAULT_ROLE, ADMIN_ROLE}
        assert loaded.is_admin

    def test_unknown_lookups_return_none(self, store) -> None:
        assert store.find_by_handle("nobody") is None
        assert store.find_by_email("nobody@example.com") is None
        assert store.get_by_id(999) is None

    def test_has_accounts(self, store, make_account) -> None:
        assert store.has_accounts() is False
        make_account("alice")
        assert store.has_accounts() is True

    def test_duplicate_handle_differing_in_case_conflicts(self, make_account) -> None:
        make_account("alice")
        with pytest.raises(AccountConflictError):
            make_account("ALICE", email="other@example.com")

    def test_duplicate_email_conflicts(self, make_account) -> None:
        make_account("alice", email="shared@example.com")
        with pytest.raises(AccountConflictError):
            make_account("bob", email="SHARED@example.com")

    def test_active_account_needs_password_hash(self, store) -> None:
        with pytest.raises(ValueError):
            store.save(Account(handle="nohash", email="nohash@example.com"))

    def test_inactive_account_without_hash_is_allowed(self, store) -> None:
        account_id = store.save(Account(handle="pending", email="pending@example.com", active=False))
        assert store.get_by_id(account_id).active is False


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_update_bumps_version_and_replaces_roles(self, store, make_account) -> None:
        account = make_account("alice", roles={DEFAULT_ROLE})
        account.first_name = "Alice"
        account.add_role(ADMIN_ROLE)
        account.remove_role(DEFAULT_ROLE)
        store.save(account)

        loaded = store.get_by_id(account.id)
        assert account.version == 2
        assert loaded.version == 2
        assert loaded.first_name == "Alice"
        assert loaded.roles == {ADMIN_ROLE}

    def test_stale_version_is_rejected(self, store, make_account) -> None:
        """Two editors load the same row; the second save must fail."""
        make_account("alice")
        first = store.find_by_handle("alice")
        second = store.find_by_handle("alice")
        first.first_name = "One"
        store.save(first)
        second.first_name = "Two"
        with pytest.raises(StaleAccountError):
            store.save(second)
        assert store.find_by_handle("alice").first_name == "One"

    def test_update_does_not_touch_login_bookkeeping(self, store, make_account) -> None:
        account = make_account("alice")
        store.record_failed_attempt(account.id, 5, NOW)
        account.last_name = "Smith"
        store.save(account)
        assert store.get_by_id(account.id).failed_attempts == 1


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    def test_delete_removes_account_sessions_and_tokens(self, store, make_account) -> None:
        account = make_account("alice")
        store.create_session("sess-hash", _session(account))
        store.create_remember_token(
            RememberToken(handle="ALICE", token_hash="tok-hash", issued_at=NOW, expires_at=NOW + timedelta(days=30))
        )
        assert store.delete(account.id) is True
        assert store.get_by_id(account.id) is None
        assert store.get_session("sess-hash") is None
        assert store.get_remember_token("tok-hash") is None

    def test_delete_unknown_returns_false(self, store) -> None:
        assert store.delete(12345) is False

    def test_handle_is_reusable_after_delete(self, store, make_account) -> None:
        account = make_account("alice")
        store.delete(account.id)
        assert make_account("alice").id is not None


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestListing:
    @pytest.fixture
    def people(self, make_account) -> list[Account]:
        return [
            make_account("alice", first_name="Alice", last_name="Smith"),
            make_account("bob", first_name="Bob", last_name="Jones"),
            make_account("carol", first_name="Carol", last_name="Smithers"),
            make_account("under_score", email="us@example.com"),
        ]

    def test_filter_is_case_insensitive_substring(self, store, people) -> None:
        rows = store.query_page([("last_name", "SMITH")], ("handle", "asc"), 0, 10)
        assert [a.handle for a in rows] == ["alice", "carol"]
        assert store.count_matching([("last_name", "SMITH")]) == 2

    def test_filters_are_anded(self, store, people) -> None:
        predicate = [("last_name", "smith"), ("first_name", "car")]
        assert [a.handle for a in store.query_page(predicate, None, 0, 10)] == ["carol"]

    def test_sort_descending(self, store, people) -> None:
        rows = store.query_page([], ("handle", "desc"), 0, 10)
        assert [a.handle for a in rows] == ["under_score", "carol", "bob", "alice"]

    def test_default_order_is_insertion_id(self, store, people) -> None:
        assert [a.id for a in store.query_page([], None, 0, 10)] == sorted(a.id for a in people)

    def test_offset_and_limit(self, store, people) -> None:
        rows = store.query_page([], ("handle", "asc"), 1, 2)
        assert [a.handle for a in rows] == ["bob", "carol"]

    def test_like_wildcards_are_literal(self, store, people) -> None:
        """An underscore in the needle matches only an underscore."""
        assert [a.handle for a in store.query_page([("handle", "_")], None, 0, 10)] == ["under_score"]
        assert store.count_matching([("handle", "%")]) == 0

    def test_any_column_search_is_ored(self, store, people) -> None:
        predicate = [(ANY_COLUMN, "SMITH")]
        assert [a.handle for a in store.query_page(predicate, ("handle", "asc"), 0, 10)] == ["alice", "carol"]
        assert store.count_matching([(ANY_COLUMN, "us@")]) == 1
        assert store.count_matching([(ANY_COLUMN, "o"), ("last_name", "jones")]) == 1

    def test_unknown_column_is_refused(self, store) -> None:
        with pytest.raises(ValueError):
            store.query_page([("password_hash", "a")], None, 0, 10)
        with pytest.raises(ValueError):
            store.query_page([], ("password_hash", "asc"), 0, 10)


# ---------------------------------------------------------------------------
# Login bookkeeping
# ---------------------------------------------------------------------------


class TestLoginBookkeeping:
    def test_failed_attempts_lock_at_threshold(self, store, make_account) -> None:
        account = make_account("alice")
        first = store.record_failed_attempt(account.id, 3, NOW)
        second = store.record_failed_attempt(account.id, 3, NOW + timedelta(seconds=1))
        assert (first.failed_attempts, first.account_locked) == (1, False)
        assert (second.failed_attempts, second.account_locked) == (2, False)

        third = store.record_failed_attempt(account.id, 3, NOW + timedelta(seconds=2))
        assert third.account_locked is True
        assert third.failed_attempts == 3
        assert third.locked_at == NOW + timedelta(seconds=2)

    def test_locked_at_keeps_first_lock_time(self, store, make_account) -> None:
        account = make_account("alice")
        store.record_failed_attempt(account.id, 1, NOW)
        later = store.record_failed_attempt(account.id, 1, NOW + timedelta(minutes=5))
        assert later.locked_at == NOW

    def test_failed_attempt_unknown_account(self, store) -> None:
        assert store.record_failed_attempt(404, 3, NOW) is None

    def test_successful_login_resets_counter(self, store, make_account) -> None:
        account = make_account("alice")
        store.record_failed_attempt(account.id, 5, NOW)
        assert store.record_successful_login(account.id, NOW) is True
        loaded = store.get_by_id(account.id)
        assert loaded.failed_attempts == 0
        assert loaded.last_login == NOW

    def test_successful_login_refused_while_locked(self, store, make_account) -> None:
        account = make_account("alice")
        store.record_failed_attempt(account.id, 1, NOW)
        assert store.record_successful_login(account.id, NOW + timedelta(seconds=1)) is False
        loaded = store.get_by_id(account.id)
        assert (loaded.account_locked, loaded.failed_attempts) == (True, 1)
        assert loaded.last_login is None

    def test_successful_login_unknown_account(self, store) -> None:
        assert store.record_successful_login(404, NOW) is False

    def test_admin_lock_has_no_timestamp_and_unlock_clears(self, store, make_account) -> None:
        account = make_account("alice")
        store.record_failed_attempt(account.id, 5, NOW)
        assert store.lock(account.id) is True
        locked = store.get_by_id(account.id)
        assert locked.account_locked is True
        assert locked.locked_at is None

        assert store.unlock(account.id) is True
        unlocked = store.get_by_id(account.id)
        assert (unlocked.account_locked, unlocked.failed_attempts) == (False, 0)

    def test_lock_deletes_sessions(self, store, make_account) -> None:
        account = make_account("alice")
        store.create_session("sid-hash", _session(account))
        assert store.lock(account.id) is True
        assert store.get_session("sid-hash") is None

    def test_lock_unknown_returns_false(self, store) -> None:
        assert store.lock(404) is False

    def test_unlock_unknown_returns_false(self, store) -> None:
        assert store.unlock(404) is False


# ---------------------------------------------------------------------------
# Sessions and remember-me rows
# ---------------------------------------------------------------------------


class TestSessionsAndTokens:
    def test_session_row_round_trip(self, store, make_account) -> None:
        account = make_account("alice")
        store.create_session("sess-hash", _session(account))
        loaded = store.get_session("sess-hash")
        assert loaded.session_id == "sess-hash"
        assert loaded.account_id == account.id
        assert loaded.expires_at == NOW + timedelta(minutes=60)
        assert store.delete_session("sess-hash") is True
        assert store.get_session("sess-hash") is None

    def test_remember_tokens_deleted_by_handle_ignoring_case(self, store) -> None:
        for n in range(2):
            store.create_remember_token(
                RememberToken(handle="Alice", token_hash=f"t{n}", issued_at=NOW, expires_at=NOW + timedelta(days=30))
            )
        assert store.delete_remember_tokens_for("alice") == 2
        assert store.get_remember_token("t0") is None

    def test_purge_expired(self, store, make_account) -> None:
        account = make_account("alice")
        store.create_session("old", _session(account, "old", minutes=-1))
        store.create_session("new", _session(account, "new", minutes=60))
        store.create_remember_token(
            RememberToken(handle="alice", token_hash="stale", issued_at=NOW, expires_at=NOW - timedelta(days=1))
        )
        assert store.purge_expired(NOW) == 2
        assert store.get_session("new") is not None
        assert store.get_session("old") is None
