"""Unit tests for auth/login_gate.py -- eligibility precedence and password login.

Covers:
- is_active=False denies with INACTIVE for every status, including "active"
- is_active truthy allows iff status is missing, empty, or exactly "active"
- authenticate(): unknown email, wrong password, malformed stored digest,
  gate denial after a correct password, and last_login stamping on success
"""

import pytest

from auth.credentials import hash_password
from auth.login_gate import DenyReason, authenticate, evaluate_login
from auth.models import Account

_STATUSES = [None, "active", "suspended", "pending", "deleted", "trial", "Active", ""]


class TestEvaluateLogin:
    @pytest.mark.parametrize("status", _STATUSES)
    def test_inactive_flag_always_denies(self, status):
        decision = evaluate_login(Account(email="a@example.com", is_active=False, status=status))
        assert decision.allowed is False
        assert decision.reason is DenyReason.INACTIVE

    @pytest.mark.parametrize("status", _STATUSES)
    def test_active_flag_allows_only_active_or_missing_status(self, status):
        decision = evaluate_login(Account(email="a@example.com", is_active=True, status=status))
        expected = not status or status == "active"
        assert decision.allowed is expected
        if not expected:
            assert decision.reason is DenyReason.STATUS
            assert decision.detail == status

    def test_inactive_flag_with_active_status(self):
        """Flag false + status active -> DENY(INACTIVE)."""
        decision = evaluate_login(Account(email="m@example.com", is_active=False, status="active"))
        assert decision.allowed is False
        assert decision.reason is DenyReason.INACTIVE
        assert decision.detail is None

    def test_flag_checked_before_status(self):
        decision = evaluate_login(Account(email="m@example.com", is_active=False, status="suspended"))
        assert decision.reason is DenyReason.INACTIVE

    @pytest.mark.parametrize("flag", [0, None])
    def test_falsy_flag_denies(self, flag):
        decision = evaluate_login(Account(email="m@example.com", is_active=flag, status="active"))
        assert decision.reason is DenyReason.INACTIVE

    def test_empty_status_treated_as_legacy(self):
        """An empty status string passes like NULL does."""
        decision = evaluate_login(Account(email="legacy@example.com", is_active=True, status=""))
        assert decision.allowed is True
        assert decision.reason is None


class TestAuthenticate:
    def _add(self, store, email="user@example.com", password="s3cret-pass", **fields):
        return store.upsert_account(Account(email=email, hashed_password=hash_password(password), **fields))

    def test_success_stamps_last_login(self, store):
        saved = self._add(store)
        assert saved.last_login is None
        outcome = authenticate(store, "user@example.com", "s3cret-pass")
        assert outcome.authenticated and outcome.allowed
        assert store.find_account_by_id(saved.id).last_login is not None

    def test_email_is_case_insensitive(self, store):
        self._add(store)
        assert authenticate(store, "USER@Example.com", "s3cret-pass").allowed

    def test_unknown_email(self, store):
        outcome = authenticate(store, "nobody@example.com", "whatever")
        assert outcome.authenticated is False
        assert outcome.account is None

    def test_wrong_password(self, store):
        self._add(store)
        outcome = authenticate(store, "user@example.com", "wrong")
        assert outcome.authenticated is False
        assert outcome.decision is None

    def test_no_local_password(self, store):
        store.upsert_account(Account(email="nopw@example.com"))
        assert authenticate(store, "nopw@example.com", "anything").authenticated is False

    def test_malformed_digest_is_failed_login(self, store):
        store.upsert_account(Account(email="legacy@example.com", hashed_password="admin123"))
        outcome = authenticate(store, "legacy@example.com", "admin123")
        assert outcome.authenticated is False

    def test_inactive_account_denied_after_correct_password(self, store):
        saved = self._add(store, is_active=False, status="active")
        outcome = authenticate(store, "user@example.com", "s3cret-pass")
        assert outcome.authenticated is True
        assert outcome.allowed is False
        assert outcome.decision.reason is DenyReason.INACTIVE
        assert store.find_account_by_id(saved.id).last_login is None

    def test_suspended_account_denied_with_status_detail(self, store):
        self._add(store, status="suspended")
        outcome = authenticate(store, "user@example.com", "s3cret-pass")
        assert outcome.allowed is False
        assert outcome.decision.reason is DenyReason.STATUS
        assert outcome.decision.detail == "suspended"

    def test_legacy_null_status_allowed(self, store):
        self._add(store, status=None)
        assert authenticate(store, "user@example.com", "s3cret-pass").allowed

    def test_legacy_empty_status_allowed(self, store):
        self._add(store, status="")
        assert authenticate(store, "user@example.com", "s3cret-pass").allowed

    def test_decision_reflects_latest_status(self, store):
        """Decisions are never cached: a status change between attempts takes effect."""
        saved = self._add(store)
        assert authenticate(store, "user@example.com", "s3cret-pass").allowed
        current = store.find_account_by_id(saved.id)
        current.status = "suspended"
        store.upsert_account(current)
        assert not authenticate(store, "user@example.com", "s3cret-pass").allowed
