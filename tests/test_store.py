"""Unit tests for auth/store.py -- persistence, compare-and-swap, and failure mapping."""

from __future__ import annotations

import pytest

from auth.models import Account, Scope, ServiceApiKey
from auth.store import AuthStore
from core.errors import StoreUnavailable, WriteConflict


def _key(name: str, digest: str, **fields) -> ServiceApiKey:
    return ServiceApiKey(
        name=name,
        key_hash=digest * 64,
        key_prefix="vkey_" + digest * 7,
        permissions=frozenset({Scope.read}),
        **fields,
    )


class TestAccounts:
    def test_insert_assigns_id_and_version(self, store):
        saved = store.upsert_account(Account(email="a@example.com"))
        assert saved.id is not None
        assert saved.version == 1
        assert saved.created_at is not None

    def test_lookup_is_case_insensitive(self, store):
        store.upsert_account(Account(email="Mixed@Example.com"))
        assert store.find_account_by_email("mixed@EXAMPLE.com").email == "mixed@example.com"

    def test_missing_returns_none(self, store):
        assert store.find_account_by_email("nobody@example.com") is None
        assert store.find_account_by_id(999) is None

    def test_duplicate_email_conflicts(self, store):
        store.upsert_account(Account(email="a@example.com"))
        with pytest.raises(WriteConflict):
            store.upsert_account(Account(email="A@example.com"))

    def test_stale_update_conflicts(self, store):
        saved = store.upsert_account(Account(email="a@example.com"))
        store.upsert_account(Account(**{**saved.__dict__, "status": "pending"}))
        with pytest.raises(WriteConflict):
            store.upsert_account(Account(**{**saved.__dict__, "status": "suspended"}))
        assert store.find_account_by_id(saved.id).status == "pending"

    def test_null_status_round_trips(self, store):
        saved = store.upsert_account(Account(email="legacy@example.com", status=None))
        assert store.find_account_by_id(saved.id).status is None

    def test_touch_last_login_keeps_version(self, store):
        saved = store.upsert_account(Account(email="a@example.com"))
        store.touch_last_login(saved.id)
        reread = store.find_account_by_id(saved.id)
        assert reread.last_login is not None
        assert reread.version == saved.version

    def test_list_accounts_by_role(self, store):
        store.upsert_account(Account(email="b@example.com", role="admin"))
        store.upsert_account(Account(email="a@example.com", role="user"))
        assert [a.email for a in store.list_accounts()] == ["a@example.com", "b@example.com"]
        assert [a.email for a in store.list_accounts(role="admin")] == ["b@example.com"]


class TestApiKeys:
    def test_permissions_round_trip(self, store):
        saved = store.upsert_api_key(
            ServiceApiKey(
                name="svc",
                key_hash="a" * 64,
                key_prefix="vkey_aaaaaaa",
                permissions=frozenset({Scope.write, Scope.admin}),
            )
        )
        assert store.find_api_key_by_hash("a" * 64).permissions == frozenset({Scope.write, Scope.admin})
        assert saved.is_active

    def test_one_active_row_per_name(self, store):
        store.upsert_api_key(_key("svc", "a"))
        with pytest.raises(WriteConflict):
            store.upsert_api_key(_key("svc", "b"))

    def test_inactive_rows_do_not_block_name(self, store):
        old = store.upsert_api_key(_key("svc", "a"))
        store.upsert_api_key(ServiceApiKey(**{**old.__dict__, "is_active": False}))
        new = store.upsert_api_key(_key("svc", "b"))
        assert store.find_api_key_by_name("svc").id == new.id
        assert len(store.list_api_keys(include_inactive=True)) == 2
        assert [k.id for k in store.list_api_keys()] == [new.id]

    def test_duplicate_digest_conflicts(self, store):
        store.upsert_api_key(_key("one", "a"))
        with pytest.raises(WriteConflict):
            store.upsert_api_key(_key("two", "a"))

    def test_touch_api_key(self, store):
        saved = store.upsert_api_key(_key("svc", "a"))
        store.touch_api_key(saved.id)
        reread = store.find_api_key_by_hash(saved.key_hash)
        assert reread.last_used is not None
        assert reread.version == saved.version


class TestAvailability:
    def test_ping(self, store):
        assert store.ping() is True

    def test_unreachable_database(self, tmp_path):
        missing = tmp_path / "no-such-dir" / "auth.db"
        with pytest.raises(StoreUnavailable):
            AuthStore(f"sqlite:///{missing}")

    def test_disposed_file_store_reconnects(self, file_store):
        file_store.upsert_account(Account(email="a@example.com"))
        file_store.close()
        assert file_store.find_account_by_email("a@example.com") is not None
