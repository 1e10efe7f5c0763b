import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from core.entities.account import Account
from core.entities.commands import (
    AdminAdjustCommand,
    AdminStatusUpdateCommand,
    CancelTokensCommand,
    TransferDecisionCommand,
    TransferRequestCommand,
)
from core.entities.transaction import (
    ADMIN_TYPES,
    REVERSAL_TYPES,
    TERMINAL_STATUSES,
    CancellationDetails,
    TokenTransaction,
    TransactionStatus,
    TransactionType,
)
from core.errors import (
    BadRequestError,
    InsufficientFundsError,
    InternalError,
    NotFoundError,
    TokenError,
    TransactionExistsError,
)
from core.repositories.unit_of_work import UnitOfWork
from core.services.clock import Clock

logger = logging.getLogger(__name__)

# ручная смена статуса не двигает средства, поэтому разрешены только "бумажные" переходы
ADMIN_STATUS_TRANSITIONS = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.FAILED}),
    TransactionStatus.PENDING_ACCEPTANCE: frozenset({TransactionStatus.FAILED, TransactionStatus.REJECTED}),
}


@contextmanager
def atomic(uow: UnitOfWork, operation: str) -> Iterator[UnitOfWork]:
    """Runs the block as one unit of work.

    Domain errors pass through unchanged. Anything else is logged and
    surfaced as InternalError, so no data-layer detail leaks to callers.
    Either way the unit of work is rolled back.
    """
    try:
        with uow:
            yield uow
    except TokenError:
        raise
    except Exception as e:
        logger.exception("Unexpected error during %s", operation)
        raise InternalError(f"{operation.capitalize()} failed due to an internal error") from e


class TokenService:
    """Перевод токенов между пользователями: запрос, принятие, отказ, отмена и ручные корректировки.

    Все изменения балансов и журнала внутри одной операции выполняются в одной
    единице работы: либо фиксируются вместе, либо не видны вовсе.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        clock: Clock,
        cooldown: timedelta = timedelta(hours=24),
        pending_ttl: Optional[timedelta] = None,
        admin_adjust_allow_negative: bool = True,
    ):
        self.uow = uow
        self.clock = clock
        self.cooldown = cooldown
        self.pending_ttl = pending_ttl if pending_ttl and pending_ttl > timedelta(0) else None
        self.admin_adjust_allow_negative = admin_adjust_allow_negative

    # --- вспомогательное ---

    @staticmethod
    def _duplicate_message(existing: TokenTransaction) -> str:
        if existing.status is TransactionStatus.PENDING_ACCEPTANCE:
            return "A transfer request with this request_id is already pending acceptance"
        if existing.status is TransactionStatus.COMPLETED:
            return "This transfer has already been completed"
        return f"A transaction with this request_id already exists with status: {existing.status.value}"

    @staticmethod
    def _resolve_receiver(uow: UnitOfWork, identifier: str) -> Optional[Account]:
        # сначала точное совпадение по id, затем email
        identifier = identifier.strip()
        receiver = None
        # isdigit() пропускает "²" и прочие unicode-цифры, int() на них падает
        if identifier.isascii() and identifier.isdigit():
            receiver = uow.accounts.get_by_id(int(identifier))
        if receiver is None:
            receiver = uow.accounts.get_by_email(identifier)
        return receiver

    def _is_expired(self, tx: TokenTransaction, now: datetime) -> bool:
        if self.pending_ttl is None:
            return False
        return datetime.fromisoformat(tx.created_at) + self.pending_ttl <= now

    @staticmethod
    def _pending_for_receiver(uow: UnitOfWork, cmd: TransferDecisionCommand, action: str) -> TokenTransaction:
        tx = uow.transactions.get_by_id(cmd.transaction_id)
        if tx is None:
            raise NotFoundError("Transfer request not found")
        if tx.status is not TransactionStatus.PENDING_ACCEPTANCE:
            raise BadRequestError(
                f"Transaction is not pending acceptance, current status: {tx.status.value}"
            )
        if tx.receiver_id != cmd.receiver_id:
            raise BadRequestError(f"You are not authorized to {action} this transfer (receiver mismatch)")
        return tx

    # --- операции ---

    def request_transfer(self, cmd: TransferRequestCommand) -> TokenTransaction:
        """Creates a pending_acceptance transfer and reserves the amount from the sender.

        The sender is debited immediately; the receiver is credited only on acceptance.
        """
        now = self.clock.now()
        with atomic(self.uow, "transfer request") as uow:
            if cmd.request_id:
                existing = uow.transactions.get_by_request_id(cmd.request_id)
                if existing is not None:
                    raise TransactionExistsError(self._duplicate_message(existing))

            sender = uow.accounts.get_by_id(cmd.sender_id)
            if sender is None:
                raise NotFoundError("Sender not found")
            receiver = self._resolve_receiver(uow, cmd.receiver_identifier)
            if receiver is None:
                raise NotFoundError("Receiver not found")
            if sender.id == receiver.id:
                raise BadRequestError("You cannot transfer tokens to yourself")
            if sender.tokens < cmd.amount:
                raise InsufficientFundsError("Insufficient tokens for the transfer request")
            if sender.in_cooldown(now):
                raise BadRequestError(
                    "Sender funds are in a cooldown period after a recent cancellation. Try again later"
                )

            tx = uow.transactions.add(
                sender_id=sender.id,
                receiver_id=receiver.id,
                amount=cmd.amount,
                status=TransactionStatus.PENDING_ACCEPTANCE,
                transaction_type=TransactionType.TRANSFER_REQUEST,
                description=f"Transfer request to {receiver.email or receiver.name}",
                request_id=cmd.request_id,
            )
            uow.accounts.adjust_balance(sender.id, -cmd.amount)

        logger.info("Transfer request %s: %s -> %s, %s tokens reserved",
                    tx.id, sender.id, receiver.id, cmd.amount)
        return tx

    def accept_transfer(self, cmd: TransferDecisionCommand) -> TokenTransaction:
        now = self.clock.now()
        with atomic(self.uow, "transfer acceptance") as uow:
            tx = self._pending_for_receiver(uow, cmd, "accept")
            if self._is_expired(tx, now):
                raise BadRequestError("This transfer request has expired")

            receiver = uow.accounts.get_by_id(cmd.receiver_id)
            if receiver is None:
                raise NotFoundError("Receiver not found")

            uow.accounts.adjust_balance(receiver.id, tx.amount)
            tx = uow.transactions.update_status(
                tx.id,
                TransactionStatus.PENDING_ACCEPTANCE,
                TransactionStatus.COMPLETED,
                transaction_type=TransactionType.TRANSFER_ACCEPTANCE,
                description=f"Transfer from {tx.sender_id} accepted by {receiver.email or receiver.name}",
            )

        logger.info("Transfer %s accepted by %s", tx.id, cmd.receiver_id)
        return tx

    def reject_transfer(self, cmd: TransferDecisionCommand) -> TokenTransaction:
        with atomic(self.uow, "transfer rejection") as uow:
            tx = self._pending_for_receiver(uow, cmd, "reject")

            sender = uow.accounts.get_by_id(tx.sender_id)
            if sender is None:
                logger.critical("Sender %s not found for pending transaction %s", tx.sender_id, tx.id)
                raise InternalError("Transaction sender not found")

            uow.accounts.adjust_balance(sender.id, tx.amount)
            tx = uow.transactions.update_status(
                tx.id,
                TransactionStatus.PENDING_ACCEPTANCE,
                TransactionStatus.REJECTED,
                transaction_type=TransactionType.TRANSFER_REJECTION,
                description=(
                    f"Transfer rejected by {cmd.receiver_id}. Reason: {cmd.reason or 'not specified'}. "
                    "Funds returned to the sender."
                ),
            )

        logger.info("Transfer %s rejected by %s, %s tokens returned to %s",
                    tx.id, cmd.receiver_id, tx.amount, tx.sender_id)
        return tx

    def cancel_tokens(self, cmd: CancelTokensCommand) -> TokenTransaction:
        """Reverses a completed transfer on behalf of an admin.

        The original receiver is debited even below zero, the original sender is
        credited and put on cooldown. Returns the new transfer_cancellation entry;
        the original entry is marked cancelled.
        """
        with atomic(self.uow, "token cancellation") as uow:
            cancellation = self.reverse_in(uow, cmd)

        logger.info("Admin %s cancelled transaction %s (reversal %s), sender %s on cooldown",
                    cmd.admin_id, cmd.transaction_id, cancellation.id, cancellation.receiver_id)
        return cancellation

    def reverse_in(self, uow: UnitOfWork, cmd: CancelTokensCommand) -> TokenTransaction:
        """Reversal steps of cancel_tokens inside a unit of work the caller already holds.

        Nothing is committed or logged here; that is up to the caller.
        """
        now = self.clock.now()
        with uow:
            original = uow.transactions.get_by_id(cmd.transaction_id)
            if original is None:
                raise NotFoundError("Original transaction not found")
            if original.status is TransactionStatus.CANCELLED:
                raise BadRequestError("This transaction has already been cancelled")
            if original.status is not TransactionStatus.COMPLETED:
                raise BadRequestError(
                    f"Only completed transactions can be cancelled. Current status: {original.status.value}"
                )
            if original.transaction_type in REVERSAL_TYPES:
                raise BadRequestError("A reversal or cancellation transaction cannot be cancelled")
            if original.transaction_type in ADMIN_TYPES:
                raise BadRequestError("Admin adjustments are reversed with a new adjustment, not cancelled")

            sender = uow.accounts.get_by_id(original.sender_id)
            receiver = uow.accounts.get_by_id(original.receiver_id)
            if sender is None or receiver is None:
                logger.critical("Participants of transaction %s are missing", original.id)
                raise InternalError("Data error: sender or receiver not found")
            if uow.accounts.get_by_id(cmd.admin_id) is None:
                raise NotFoundError("Admin not found")

            # получатель мог уже потратить токены - уходит в минус
            uow.accounts.adjust_balance(receiver.id, -original.amount, allow_negative=True)
            uow.accounts.adjust_balance(sender.id, original.amount)

            cancellation = uow.transactions.add(
                sender_id=receiver.id,
                receiver_id=sender.id,
                amount=original.amount,
                status=TransactionStatus.COMPLETED,
                transaction_type=TransactionType.TRANSFER_CANCELLATION,
                description=f"Cancellation of transaction #{original.id}. Reason: {cmd.reason}.",
                original_transaction_id=original.id,
            )

            cooldown_until = now + self.cooldown
            uow.transactions.update_status(
                original.id,
                TransactionStatus.COMPLETED,
                TransactionStatus.CANCELLED,
                cancellation_details=CancellationDetails(
                    reason=cmd.reason,
                    cancelled_by=cmd.admin_id,
                    cancelled_at=now,
                    cooldown_until=cooldown_until,
                ),
            )
            uow.accounts.set_cooldown(sender.id, cooldown_until)
        return cancellation

    def admin_adjust_tokens(self, cmd: AdminAdjustCommand) -> Account:
        with atomic(self.uow, "admin token adjustment") as uow:
            user = uow.accounts.get_by_id(cmd.user_id)
            if user is None:
                raise NotFoundError("User not found")
            if uow.accounts.get_by_id(cmd.admin_id) is None:
                raise NotFoundError("Admin not found")

            updated = uow.accounts.adjust_balance(
                user.id, cmd.amount, allow_negative=self.admin_adjust_allow_negative
            )

            note = cmd.description or "no description"
            if cmd.amount > 0:
                # админ - условный отправитель
                sender_id, receiver_id = cmd.admin_id, user.id
                tx_type = TransactionType.ADMIN_CREDIT
                description = f"Token credit by administrator ({note})."
            else:
                sender_id, receiver_id = user.id, cmd.admin_id
                tx_type = TransactionType.ADMIN_DEBIT
                description = f"Token debit by administrator ({note})."

            uow.transactions.add(
                sender_id=sender_id,
                receiver_id=receiver_id,
                amount=abs(cmd.amount),
                status=TransactionStatus.COMPLETED,
                transaction_type=tx_type,
                description=description,
            )

        logger.info("Admin %s adjusted balance of %s by %s, new balance %s",
                    cmd.admin_id, user.id, cmd.amount, updated.tokens)
        return updated

    def admin_update_transaction_status(self, cmd: AdminStatusUpdateCommand) -> TokenTransaction:
        """Clerical status correction. Never touches balances."""
        with atomic(self.uow, "admin status update") as uow:
            tx = uow.transactions.get_by_id(cmd.transaction_id)
            if tx is None:
                raise NotFoundError("Transaction not found")

            current, target = tx.status, cmd.status
            if current is target:
                raise BadRequestError("Transaction already has the requested status")
            if target is TransactionStatus.CANCELLED:
                raise BadRequestError("Use the cancel operation to cancel a transaction, not a status update")
            if target is TransactionStatus.COMPLETED and current in (TransactionStatus.FAILED, TransactionStatus.REJECTED):
                raise BadRequestError(
                    "A failed or rejected transaction cannot be marked as completed. Make a new adjustment instead"
                )
            if target is TransactionStatus.PENDING_ACCEPTANCE and current in TERMINAL_STATUSES:
                raise BadRequestError(f"Cannot move a transaction from '{current.value}' to 'pending_acceptance'")
            if target not in ADMIN_STATUS_TRANSITIONS.get(current, frozenset()):
                raise BadRequestError(f"Status transition from '{current.value}' to '{target.value}' is not allowed")

            description = (
                f"{tx.description or ''} (Status changed to {target.value} by admin {cmd.admin_id} - "
                f"{cmd.reason or 'no reason specified'})"
            ).strip()
            updated = uow.transactions.update_status(tx.id, current, target, description=description)

        logger.warning("Admin %s changed status of transaction %s: %s -> %s without moving funds",
                       cmd.admin_id, tx.id, current.value, target.value)
        return updated

    def expire_stale_requests(self) -> List[TokenTransaction]:
        """Auto-rejects pending_acceptance transfers older than the configured TTL, refunding senders."""
        if self.pending_ttl is None:
            return []
        cutoff = self.clock.now() - self.pending_ttl
        expired: List[TokenTransaction] = []
        with atomic(self.uow, "pending transfer expiry") as uow:
            for tx in uow.transactions.list_pending_created_before(cutoff):
                uow.accounts.adjust_balance(tx.sender_id, tx.amount)
                expired.append(uow.transactions.update_status(
                    tx.id,
                    TransactionStatus.PENDING_ACCEPTANCE,
                    TransactionStatus.REJECTED,
                    transaction_type=TransactionType.TRANSFER_REJECTION,
                    description="Transfer request expired. Funds returned to the sender.",
                ))
        if expired:
            logger.info("Expired %d stale transfer requests", len(expired))
        return expired

    # --- запросы ---

    def get_user_transactions(self, user_id: int, limit: int = 100, offset: int = 0) -> List[TokenTransaction]:
        return self.uow.transactions.list_for_user(user_id, limit=limit, offset=offset)

    def get_pending_sent(self, user_id: int) -> List[TokenTransaction]:
        return self.uow.transactions.list_pending_sent(user_id)

    def get_pending_received(self, user_id: int) -> List[TokenTransaction]:
        return self.uow.transactions.list_pending_received(user_id)

    def get_transaction_by_id(self, transaction_id: int) -> TokenTransaction:
        tx = self.uow.transactions.get_by_id(transaction_id)
        if tx is None:
            raise NotFoundError("Transaction not found")
        return tx

    def get_user_transactions_by_admin(self, user_id: int, limit: int = 100, offset: int = 0) -> List[TokenTransaction]:
        if self.uow.accounts.get_by_id(user_id) is None:
            raise NotFoundError("User not found")
        return self.uow.transactions.list_for_user(user_id, limit=limit, offset=offset)

    def get_user_balance_by_admin(self, user_id: int) -> Account:
        user = self.uow.accounts.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def list_all_transactions(self, limit: int = 100, offset: int = 0) -> List[TokenTransaction]:
        return self.uow.transactions.list_all(limit=limit, offset=offset)
