"""Unit tests for one-time registration tokens.

Covers:
- Issue shape and defaults
- Validation order (missing, used, expired, attempts)
- Failed-attempt accounting
- Exactly-once consumption, including a concurrent race
- Cleanup of stale tokens
"""

import threading
from datetime import timedelta

import pytest

from hiq.service.errors import (
    NotFoundError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TooManyAttemptsError,
)
from hiq.service.registration_tokens import RegistrationTokenStore
from hiq.storage.documents import REGISTRATION_TOKENS


@pytest.fixture
def tokens(store, settings, clock):
    return RegistrationTokenStore(store, settings, clock=clock)


class TestIssue:
    def test_token_is_256_bit_hex(self, tokens):
        token_id = tokens.issue("Lead@Acme.io")
        assert len(token_id) == 64
        int(token_id, 16)

    def test_document_defaults(self, tokens, store, clock):
        token_id = tokens.issue("Lead@Acme.io")
        doc = store.get(REGISTRATION_TOKENS, token_id)
        assert doc["email"] == "lead@acme.io"
        assert doc["used"] is False
        assert doc["attempts"] == 0
        assert doc["last_attempt_at"] is None
        assert doc["expires_at"] - doc["created_at"] == timedelta(hours=24)
        assert doc["created_at"] == clock.now

    def test_tokens_are_unique(self, tokens):
        assert len({tokens.issue("a@acme.io") for _ in range(50)}) == 50


class TestValidate:
    def test_returns_bound_email(self, tokens):
        token_id = tokens.issue("lead@acme.io")
        assert tokens.validate(token_id) == "lead@acme.io"

    def test_unknown_token(self, tokens):
        with pytest.raises(NotFoundError):
            tokens.validate("deadbeef")

    def test_empty_token(self, tokens):
        with pytest.raises(NotFoundError):
            tokens.validate("")

    def test_expired_at_exact_boundary(self, tokens, clock):
        token_id = tokens.issue("lead@acme.io")
        clock.advance(hours=24)
        with pytest.raises(TokenExpiredError):
            tokens.validate(token_id)

    def test_valid_just_before_expiry(self, tokens, clock):
        token_id = tokens.issue("lead@acme.io")
        clock.advance(hours=23, minutes=59)
        assert tokens.validate(token_id) == "lead@acme.io"

    def test_validation_does_not_extend_expiry(self, tokens, store, clock):
        token_id = tokens.issue("lead@acme.io")
        before = store.get(REGISTRATION_TOKENS, token_id)["expires_at"]
        clock.advance(hours=12)
        tokens.validate(token_id)
        assert store.get(REGISTRATION_TOKENS, token_id)["expires_at"] == before

    def test_used_reported_before_expired(self, tokens, clock):
        token_id = tokens.issue("lead@acme.io")
        tokens.mark_used(token_id, "uid-1")
        clock.advance(days=3)
        with pytest.raises(TokenAlreadyUsedError):
            tokens.validate(token_id)

    def test_expired_reported_before_attempts(self, tokens, clock):
        token_id = tokens.issue("lead@acme.io")
        for _ in range(5):
            tokens.record_failed_attempt(token_id)
        clock.advance(hours=25)
        with pytest.raises(TokenExpiredError):
            tokens.validate(token_id)

    def test_too_many_attempts(self, tokens):
        token_id = tokens.issue("lead@acme.io")
        for _ in range(4):
            tokens.record_failed_attempt(token_id)
        assert tokens.validate(token_id) == "lead@acme.io"
        tokens.record_failed_attempt(token_id)
        with pytest.raises(TooManyAttemptsError):
            tokens.validate(token_id)


class TestFailedAttempts:
    def test_increments_and_stamps(self, tokens, store, clock):
        token_id = tokens.issue("lead@acme.io")
        clock.advance(minutes=3)
        tokens.record_failed_attempt(token_id)
        doc = store.get(REGISTRATION_TOKENS, token_id)
        assert doc["attempts"] == 1
        assert doc["last_attempt_at"] == clock.now

    def test_unknown_token_is_noop(self, tokens, store):
        tokens.record_failed_attempt("missing")
        assert store.get(REGISTRATION_TOKENS, "missing") is None

    def test_concurrent_increments_are_not_lost(self, tokens, store):
        token_id = tokens.issue("lead@acme.io")
        threads = [
            threading.Thread(target=tokens.record_failed_attempt, args=(token_id,))
            for _ in range(20)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert store.get(REGISTRATION_TOKENS, token_id)["attempts"] == 20


class TestMarkUsed:
    def test_marks_and_stamps_consumer(self, tokens, store, clock):
        token_id = tokens.issue("lead@acme.io")
        tokens.mark_used(token_id, "uid-1")
        doc = store.get(REGISTRATION_TOKENS, token_id)
        assert doc["used"] is True
        assert doc["used_by"] == "uid-1"
        assert doc["used_at"] == clock.now

    def test_second_use_rejected(self, tokens):
        token_id = tokens.issue("lead@acme.io")
        tokens.mark_used(token_id, "uid-1")
        with pytest.raises(TokenAlreadyUsedError):
            tokens.mark_used(token_id, "uid-2")

    def test_expired_token_cannot_be_consumed(self, tokens, store, clock):
        token_id = tokens.issue("lead@acme.io")
        clock.advance(hours=24, seconds=1)
        with pytest.raises(TokenExpiredError):
            tokens.mark_used(token_id, "uid-1")
        assert store.get(REGISTRATION_TOKENS, token_id)["used"] is False

    def test_unknown_token(self, tokens):
        with pytest.raises(NotFoundError):
            tokens.mark_used("missing", "uid-1")

    def test_concurrent_consumers_have_one_winner(self, tokens, store):
        token_id = tokens.issue("lead@acme.io")
        barrier = threading.Barrier(8)
        winners = []
        losers = []
        lock = threading.Lock()

        def consume(uid):
            barrier.wait()
            try:
                tokens.mark_used(token_id, uid)
            except TokenAlreadyUsedError:
                with lock:
                    losers.append(uid)
            else:
                with lock:
                    winners.append(uid)

        threads = [threading.Thread(target=consume, args=(f"uid-{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert len(losers) == 7
        assert store.get(REGISTRATION_TOKENS, token_id)["used_by"] == winners[0]


class TestCleanup:
    def test_removes_only_unused_expired(self, tokens, store, clock):
        stale = tokens.issue("stale@acme.io")
        consumed = tokens.issue("used@acme.io")
        tokens.mark_used(consumed, "uid-1")
        clock.advance(hours=30)
        fresh = tokens.issue("fresh@acme.io")

        removed = tokens.cleanup_expired()

        assert removed == 1
        assert store.get(REGISTRATION_TOKENS, stale) is None
        assert store.get(REGISTRATION_TOKENS, consumed) is not None
        assert store.get(REGISTRATION_TOKENS, fresh) is not None

    def test_nothing_to_remove(self, tokens):
        tokens.issue("fresh@acme.io")
        assert tokens.cleanup_expired() == 0
