"""Tests for password verification against the user store."""

import psycopg
import pytest

from hedgeco.service.credentials import CredentialVerifier
from hedgeco.service.errors import LedgerUnavailableError
from hedgeco.storage.errors import StorageUnavailable
from hedgeco.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def verifier(store):
    verifier = CredentialVerifier(store)
    store.create_user("investor@example.com", password_hash=verifier.hash_password("s3cret-pass"))
    return verifier


async def test_valid_credentials_resolve_user(verifier):
    user = await verifier.authenticate("Investor@Example.com", "s3cret-pass")

    assert user is not None
    assert user.email == "investor@example.com"


async def test_wrong_password_and_unknown_email_resolve_nothing(verifier):
    assert await verifier.authenticate("investor@example.com", "wrong") is None
    assert await verifier.authenticate("nobody@example.com", "s3cret-pass") is None


def test_user_without_password_hash_never_verifies(store, verifier):
    user = store.create_user("sso@example.com")

    assert verifier.verify_password(user, "anything") is False


@pytest.mark.parametrize(
    "failure",
    [StorageUnavailable("pool exhausted"), psycopg.OperationalError("connection reset")],
)
async def test_store_failures_become_ledger_unavailable(failure):
    class FailingStore(MemoryStore):
        def get_user_by_email(self, email):
            raise failure

    verifier = CredentialVerifier(FailingStore())

    with pytest.raises(LedgerUnavailableError):
        await verifier.authenticate("investor@example.com", "s3cret-pass")
