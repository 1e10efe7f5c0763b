"""
Shared fixtures for the token ledger tests.

Every test gets its own file-backed sqlite database under tmp_path and a
fixed clock that tests can move forward explicitly.
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.entities.commands import TransferDecisionCommand, TransferRequestCommand
from core.services.clock import Clock
from core.use_cases.cancellation_use_cases import CancellationQueue
from core.use_cases.token_use_cases import TokenService
from infrastructure.db.sqlite import SQLiteUnitOfWork, connect, init_db


class FixedClock(Clock):
    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "tokens.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    conn = connect(db_path)
    yield conn
    conn.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def uow(conn, clock):
    return SQLiteUnitOfWork(conn, clock)


@pytest.fixture
def service(uow, clock):
    return TokenService(uow, clock)


@pytest.fixture
def queue(uow, service):
    return CancellationQueue(uow, service)


@pytest.fixture
def make_account(uow):
    counter = {"n": 0}

    def _make(tokens=0, is_admin=False, email=None, name=None):
        counter["n"] += 1
        n = counter["n"]
        return uow.accounts.create_account(
            email=email or f"user{n}@example.com",
            name=name or f"User {n}",
            is_admin=is_admin,
            tokens=tokens,
        )

    return _make


@pytest.fixture
def alice(make_account):
    return make_account(tokens=100, email="alice@example.com", name="Alice")


@pytest.fixture
def bob(make_account):
    return make_account(tokens=0, email="bob@example.com", name="Bob")


@pytest.fixture
def charlie(make_account):
    return make_account(tokens=0, email="charlie@example.com", name="Charlie")


@pytest.fixture
def admin(make_account):
    return make_account(tokens=0, is_admin=True, email="admin@example.com", name="Admin")


@pytest.fixture
def completed_transfer(service, alice, bob):
    """alice -> bob, 40 tokens, accepted"""
    tx = service.request_transfer(TransferRequestCommand(
        sender_id=alice.id, receiver_identifier=str(bob.id), amount=40,
    ))
    return service.accept_transfer(TransferDecisionCommand(transaction_id=tx.id, receiver_id=bob.id))
