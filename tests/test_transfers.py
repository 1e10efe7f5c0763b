"""
Transfer request / accept / reject flow: escrow, idempotency, cooldown and state-machine closure.
"""
import sqlite3
from datetime import timedelta

import pytest

from core.entities.commands import (
    CancelTokensCommand,
    TransferDecisionCommand,
    TransferRequestCommand,
)
from core.entities.transaction import TransactionStatus, TransactionType
from core.errors import (
    BadRequestError,
    ConflictError,
    InsufficientFundsError,
    InternalError,
    NotFoundError,
    TransactionExistsError,
)
from core.use_cases.token_use_cases import TokenService
from helpers import balance, total_value


def request(service, sender, receiver_identifier, amount, request_id=None):
    return service.request_transfer(TransferRequestCommand(
        sender_id=sender.id,
        receiver_identifier=str(receiver_identifier),
        amount=amount,
        request_id=request_id,
    ))


def decide(receiver, tx, reason=None):
    return TransferDecisionCommand(transaction_id=tx.id, receiver_id=receiver.id, reason=reason)


class TestRequestTransfer:
    """Creating a transfer request reserves funds from the sender"""

    def test_request_reserves_sender_funds(self, service, uow, alice, bob):
        tx = request(service, alice, bob.id, 40)

        assert tx.status is TransactionStatus.PENDING_ACCEPTANCE
        assert tx.transaction_type is TransactionType.TRANSFER_REQUEST
        assert tx.sender_id == alice.id
        assert tx.receiver_id == bob.id
        assert tx.amount == 40
        assert balance(uow, alice) == 60
        assert balance(uow, bob) == 0

    def test_receiver_resolved_by_email(self, service, alice, bob):
        tx = request(service, alice, "Bob@Example.com", 10)
        assert tx.receiver_id == bob.id

    def test_receiver_id_takes_precedence_over_email(self, service, uow, make_account, alice, bob):
        # аккаунт, чей email совпадает по форме с id Боба, не должен перехватить перевод
        make_account(email=f"{bob.id}@example.com")
        tx = request(service, alice, bob.id, 10)
        assert tx.receiver_id == bob.id

    def test_unknown_receiver_fails(self, service, uow, alice):
        with pytest.raises(NotFoundError):
            request(service, alice, "nobody@example.com", 10)
        assert balance(uow, alice) == 100

    @pytest.mark.parametrize("identifier", ["²", "٣", "9" * 30])
    def test_odd_numeric_receiver_is_not_found(self, service, uow, alice, bob, identifier):
        # не ascii-цифры и числа вне INTEGER уходят в поиск по email
        with pytest.raises(NotFoundError):
            request(service, alice, identifier, 10)
        assert balance(uow, alice) == 100

    def test_amount_beyond_integer_range_rejected(self, alice, bob):
        with pytest.raises(BadRequestError):
            TransferRequestCommand(sender_id=alice.id, receiver_identifier=str(bob.id), amount=2 ** 70)

    def test_unknown_sender_fails(self, service, bob):
        cmd = TransferRequestCommand(sender_id=9999, receiver_identifier=str(bob.id), amount=10)
        with pytest.raises(NotFoundError):
            service.request_transfer(cmd)

    @pytest.mark.parametrize("identifier", ["id", "email"])
    def test_self_transfer_rejected(self, service, uow, alice, identifier):
        target = alice.id if identifier == "id" else alice.email
        with pytest.raises(BadRequestError):
            request(service, alice, target, 10)
        assert balance(uow, alice) == 100

    def test_insufficient_funds(self, service, uow, alice, bob):
        with pytest.raises(InsufficientFundsError) as exc_info:
            request(service, alice, bob.id, 101)
        assert isinstance(exc_info.value, BadRequestError)
        assert balance(uow, alice) == 100
        assert service.get_pending_sent(alice.id) == []

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount_rejected_before_any_work(self, alice, bob, amount):
        with pytest.raises(BadRequestError):
            TransferRequestCommand(sender_id=alice.id, receiver_identifier=str(bob.id), amount=amount)

    @pytest.mark.parametrize("request_id", ["", "   ", "x" * 129])
    def test_invalid_request_id_rejected(self, alice, bob, request_id):
        with pytest.raises(BadRequestError):
            TransferRequestCommand(sender_id=alice.id, receiver_identifier=str(bob.id), amount=1,
                                   request_id=request_id)

    def test_failure_mid_operation_leaves_no_trace(self, service, uow, alice, bob, monkeypatch):
        def broken_adjust(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(uow.accounts, "adjust_balance", broken_adjust)
        with pytest.raises(InternalError) as exc_info:
            request(service, alice, bob.id, 40)

        assert "disk" not in exc_info.value.message
        monkeypatch.undo()
        assert balance(uow, alice) == 100
        assert service.get_user_transactions(alice.id) == []


class TestIdempotency:
    """Client-supplied request_id makes retried requests safe"""

    def test_duplicate_request_id_conflicts_without_balance_change(self, service, uow, alice, bob):
        request(service, alice, bob.id, 40, request_id="req-1")

        with pytest.raises(TransactionExistsError) as exc_info:
            request(service, alice, bob.id, 40, request_id="req-1")

        assert isinstance(exc_info.value, ConflictError)
        assert balance(uow, alice) == 60
        assert len(service.get_pending_sent(alice.id)) == 1

    def test_duplicate_of_completed_transfer_conflicts(self, service, alice, bob):
        tx = request(service, alice, bob.id, 40, request_id="req-2")
        service.accept_transfer(decide(bob, tx))

        with pytest.raises(TransactionExistsError) as exc_info:
            request(service, alice, bob.id, 40, request_id="req-2")
        assert "completed" in exc_info.value.message

    def test_idempotency_checked_before_receiver_resolution(self, service, alice, bob):
        request(service, alice, bob.id, 10, request_id="req-3")
        with pytest.raises(TransactionExistsError):
            request(service, alice, "ghost@example.com", 10, request_id="req-3")

    def test_requests_without_id_are_independent(self, service, uow, alice, bob):
        request(service, alice, bob.id, 10)
        request(service, alice, bob.id, 10)
        assert balance(uow, alice) == 80
        assert len(service.get_pending_received(bob.id)) == 2


class TestAcceptAndReject:
    """Accepting or rejecting closes a pending_acceptance request exactly once"""

    def test_accept_credits_receiver(self, service, uow, alice, bob):
        tx = request(service, alice, bob.id, 40)
        accepted = service.accept_transfer(decide(bob, tx))

        assert accepted.status is TransactionStatus.COMPLETED
        assert accepted.transaction_type is TransactionType.TRANSFER_ACCEPTANCE
        assert accepted.amount == 40
        assert balance(uow, alice) == 60
        assert balance(uow, bob) == 40
        assert service.get_pending_received(bob.id) == []

    def test_reject_returns_funds_to_sender(self, service, uow, alice, bob):
        tx = request(service, alice, bob.id, 40)
        rejected = service.reject_transfer(decide(bob, tx, reason="not mine"))

        assert rejected.status is TransactionStatus.REJECTED
        assert rejected.transaction_type is TransactionType.TRANSFER_REJECTION
        assert "not mine" in rejected.description
        assert balance(uow, alice) == 100
        assert balance(uow, bob) == 0
        # отказ не ставит отправителя на паузу
        assert uow.accounts.get_by_id(alice.id).cooldown_until is None

    def test_accept_twice_moves_funds_once(self, service, uow, alice, bob):
        tx = request(service, alice, bob.id, 40)
        service.accept_transfer(decide(bob, tx))

        with pytest.raises(BadRequestError):
            service.accept_transfer(decide(bob, tx))
        assert balance(uow, bob) == 40

    def test_reject_after_accept_fails(self, service, uow, alice, bob):
        tx = request(service, alice, bob.id, 40)
        service.accept_transfer(decide(bob, tx))

        with pytest.raises(BadRequestError):
            service.reject_transfer(decide(bob, tx))
        assert balance(uow, alice) == 60
        assert balance(uow, bob) == 40

    def test_reject_twice_refunds_once(self, service, uow, alice, bob):
        tx = request(service, alice, bob.id, 40)
        service.reject_transfer(decide(bob, tx))

        with pytest.raises(BadRequestError):
            service.reject_transfer(decide(bob, tx))
        assert balance(uow, alice) == 100

    def test_only_receiver_may_decide(self, service, uow, alice, bob, charlie):
        tx = request(service, alice, bob.id, 40)

        with pytest.raises(BadRequestError):
            service.accept_transfer(decide(charlie, tx))
        with pytest.raises(BadRequestError):
            service.reject_transfer(decide(alice, tx))

        assert service.get_transaction_by_id(tx.id).status is TransactionStatus.PENDING_ACCEPTANCE
        assert balance(uow, charlie) == 0

    def test_missing_transaction(self, service, bob):
        with pytest.raises(NotFoundError):
            service.accept_transfer(TransferDecisionCommand(transaction_id=12345, receiver_id=bob.id))
        with pytest.raises(NotFoundError):
            service.reject_transfer(TransferDecisionCommand(transaction_id=2 ** 70, receiver_id=bob.id))

    def test_second_connection_sees_first_writer(self, db_path, clock, service, uow, alice, bob):
        from infrastructure.db.sqlite import SQLiteUnitOfWork, connect

        tx = request(service, alice, bob.id, 40)
        other_conn = connect(db_path)
        try:
            other = TokenService(SQLiteUnitOfWork(other_conn, clock), clock)
            other.accept_transfer(decide(bob, tx))
            with pytest.raises(BadRequestError):
                service.reject_transfer(decide(bob, tx))
        finally:
            other_conn.close()
        assert balance(uow, alice) == 60
        assert balance(uow, bob) == 40


class TestCooldown:
    """A cancelled transfer blocks the original sender for a while"""

    def test_sender_blocked_until_cooldown_expires(self, service, uow, clock, alice, bob, charlie, admin,
                                                   completed_transfer):
        service.cancel_tokens(CancelTokensCommand(
            transaction_id=completed_transfer.id, admin_id=admin.id, reason="chargeback",
        ))
        before = balance(uow, alice)

        with pytest.raises(BadRequestError):
            request(service, alice, charlie.id, 10)
        assert balance(uow, alice) == before
        assert service.get_pending_sent(alice.id) == []

        clock.advance(hours=24, seconds=1)
        tx = request(service, alice, charlie.id, 10)
        assert tx.status is TransactionStatus.PENDING_ACCEPTANCE

    def test_cooldown_does_not_block_receiving(self, service, uow, alice, bob, admin, completed_transfer):
        service.cancel_tokens(CancelTokensCommand(
            transaction_id=completed_transfer.id, admin_id=admin.id, reason="chargeback",
        ))
        uow.accounts.adjust_balance(bob.id, 50)
        tx = request(service, bob, alice.id, 5)
        service.accept_transfer(decide(alice, tx))
        assert balance(uow, alice) == 105


class TestPendingExpiry:
    """Optional TTL for pending_acceptance requests"""

    def test_no_expiry_by_default(self, service, uow, clock, alice, bob):
        tx = request(service, alice, bob.id, 40)
        clock.advance(days=365)

        assert service.expire_stale_requests() == []
        service.accept_transfer(decide(bob, tx))
        assert balance(uow, bob) == 40

    def test_stale_requests_are_refunded(self, uow, clock, alice, bob):
        service = TokenService(uow, clock, pending_ttl=timedelta(hours=48))
        stale = request(service, alice, bob.id, 30)
        clock.advance(hours=47)
        fresh = request(service, alice, bob.id, 20)
        clock.advance(hours=2)

        expired = service.expire_stale_requests()

        assert [tx.id for tx in expired] == [stale.id]
        assert expired[0].status is TransactionStatus.REJECTED
        assert balance(uow, alice) == 80
        assert service.get_transaction_by_id(fresh.id).status is TransactionStatus.PENDING_ACCEPTANCE

    def test_expired_request_cannot_be_accepted(self, uow, clock, alice, bob):
        service = TokenService(uow, clock, pending_ttl=timedelta(hours=1))
        tx = request(service, alice, bob.id, 30)
        clock.advance(hours=2)

        with pytest.raises(BadRequestError):
            service.accept_transfer(decide(bob, tx))
        assert balance(uow, bob) == 0

        service.reject_transfer(decide(bob, tx))
        assert balance(uow, alice) == 100

    def test_request_exactly_ttl_old_is_expired(self, uow, clock, alice, bob):
        service = TokenService(uow, clock, pending_ttl=timedelta(hours=1))
        tx = request(service, alice, bob.id, 30)
        clock.advance(hours=1)

        with pytest.raises(BadRequestError):
            service.accept_transfer(decide(bob, tx))
        assert [t.id for t in service.expire_stale_requests()] == [tx.id]
        assert balance(uow, alice) == 100


class TestConservation:
    """Balances plus escrow only change through admin adjustments"""

    def test_value_is_conserved(self, service, uow, conn, alice, bob, charlie, admin):
        from core.entities.commands import AdminAdjustCommand

        start = total_value(conn)

        t1 = request(service, alice, bob.id, 40)
        assert total_value(conn) == start
        service.accept_transfer(decide(bob, t1))
        t2 = request(service, bob, charlie.id, 25)
        service.reject_transfer(decide(charlie, t2))
        t3 = request(service, alice, charlie.id, 15)
        assert total_value(conn) == start

        service.cancel_tokens(CancelTokensCommand(transaction_id=t1.id, admin_id=admin.id, reason="dispute"))
        assert total_value(conn) == start

        service.admin_adjust_tokens(AdminAdjustCommand(user_id=charlie.id, amount=7, admin_id=admin.id))
        service.admin_adjust_tokens(AdminAdjustCommand(user_id=bob.id, amount=-3, admin_id=admin.id))
        assert total_value(conn) == start + 7 - 3

        service.accept_transfer(decide(charlie, t3))
        assert total_value(conn) == start + 4
