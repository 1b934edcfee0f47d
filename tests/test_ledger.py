"""Tests for the refresh-token ledger over the in-memory store.

Covers the single rotation chain, reuse detection, the concurrent rotation
race, expiry, idempotent revocation and storage failures.
"""

import asyncio
from datetime import timedelta

import pytest

from hedgeco.service.errors import LedgerUnavailableError
from hedgeco.service.ledger import (
    AlreadyExpired,
    NotFound,
    ReuseDetected,
    Rotated,
    TokenLedger,
)
from hedgeco.storage.errors import ConstraintViolation, StorageUnavailable
from hedgeco.storage.memory import MemoryStore
from hedgeco.storage.models import utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("manager@example.com", role="MANAGER")


@pytest.fixture
def ledger(store):
    return TokenLedger(store, refresh_ttl_minutes=60)


async def test_rotation_chain_has_one_current_token(store, user, ledger):
    first = await ledger.record_issuance(user.id)
    current = first
    for _ in range(3):
        result = await ledger.rotate(current.id)
        assert isinstance(result, Rotated)
        assert result.previous.replaced_by_token_id == result.successor.id
        assert result.successor.token_family == first.token_family
        current = result.successor

    rows = await ledger.list_family(first.token_family)
    assert len(rows) == 4
    assert [row.id for row in rows if row.is_current] == [current.id]


async def test_record_issuance_rejects_existing_family(user, ledger):
    first = await ledger.record_issuance(user.id, "family-a")

    with pytest.raises(ConstraintViolation):
        await ledger.record_issuance(user.id, first.token_family)


async def test_replaying_a_replaced_token_revokes_the_family(user, ledger):
    first = await ledger.record_issuance(user.id)
    rotated = await ledger.rotate(first.id)
    assert isinstance(rotated, Rotated)

    replay = await ledger.rotate(first.id)

    assert isinstance(replay, ReuseDetected)
    assert replay.revoked_count == 2
    rows = await ledger.list_family(first.token_family)
    assert all(row.revoked_at is not None for row in rows)
    # The legitimate successor is dead too
    assert isinstance(await ledger.rotate(rotated.successor.id), ReuseDetected)


async def test_presenting_a_revoked_token_is_reuse(user, ledger):
    first = await ledger.record_issuance(user.id)
    await ledger.revoke_family(first.token_family)

    result = await ledger.rotate(first.id)

    assert isinstance(result, ReuseDetected)
    assert result.revoked_count == 0


async def test_concurrent_rotation_yields_exactly_one_winner(user, ledger):
    first = await ledger.record_issuance(user.id)

    results = await asyncio.gather(*(ledger.rotate(first.id) for _ in range(5)))

    assert sum(isinstance(r, Rotated) for r in results) == 1
    assert sum(isinstance(r, ReuseDetected) for r in results) == 4
    rows = await ledger.list_family(first.token_family)
    assert not any(row.is_current for row in rows)


async def test_unknown_token_is_not_found(ledger):
    result = await ledger.rotate("no-such-row")

    assert result == NotFound(token_id="no-such-row")


async def test_expired_token_is_not_rotated(store, user, ledger):
    first = await ledger.record_issuance(user.id)
    store.refresh_tokens[first.id].expires_at = utcnow() - timedelta(seconds=1)

    result = await ledger.rotate(first.id)

    assert isinstance(result, AlreadyExpired)
    row = await ledger.get(first.id)
    assert row.is_current


async def test_revoke_family_is_idempotent(user, ledger):
    first = await ledger.record_issuance(user.id)

    assert await ledger.revoke_family(first.token_family) == 1
    assert await ledger.revoke_family(first.token_family) == 0


async def test_revoke_all_for_user_spans_families(store, user, ledger):
    other = store.create_user("investor@example.com")
    await ledger.record_issuance(user.id)
    await ledger.record_issuance(user.id)
    kept = await ledger.record_issuance(other.id)

    assert await ledger.revoke_all_for_user(user.id) == 2
    assert (await ledger.get(kept.id)).is_current


class BrokenStore(MemoryStore):
    def rotate_refresh_token(self, token_id, *, ttl_minutes, now=None):
        raise StorageUnavailable("connection refused")

    def insert_refresh_token(self, token):
        raise StorageUnavailable("connection refused")


async def test_storage_failure_becomes_ledger_unavailable():
    ledger = TokenLedger(BrokenStore(), refresh_ttl_minutes=60)

    with pytest.raises(LedgerUnavailableError) as exc_info:
        await ledger.rotate("any")
    assert exc_info.value.status_code == 503

    with pytest.raises(LedgerUnavailableError):
        await ledger.record_issuance("user-1")
