import logging
from typing import List

from core.entities.cancellation_request import CancellationRequest, CancellationRequestStatus
from core.entities.commands import (
    CancellationRequestCommand,
    CancelTokensCommand,
    ReviewCancellationCommand,
)
from core.entities.transaction import REVERSIBLE_TYPES, TransactionStatus
from core.errors import BadRequestError, ConflictError, NotFoundError
from core.repositories.unit_of_work import UnitOfWork
from core.use_cases.token_use_cases import TokenService, atomic

logger = logging.getLogger(__name__)


class CancellationQueue:
    """Заявки пользователей на отмену завершённых переводов, ожидающие решения админа.

    token_service должен работать с тем же uow: одобрение заявки и откат
    перевода фиксируются одной транзакцией.
    """

    def __init__(self, uow: UnitOfWork, token_service: TokenService):
        self.uow = uow
        self.token_service = token_service

    def create(self, cmd: CancellationRequestCommand) -> CancellationRequest:
        with atomic(self.uow, "cancellation request") as uow:
            tx = uow.transactions.get_by_id(cmd.transaction_id)
            if tx is None:
                raise NotFoundError("Transaction not found")
            if tx.status is not TransactionStatus.COMPLETED or tx.transaction_type not in REVERSIBLE_TYPES:
                raise BadRequestError(
                    "Cancellation can only be requested for completed transfers. "
                    f"Current status: {tx.status.value}"
                )
            if not tx.involves(cmd.user_id):
                raise BadRequestError("You are not allowed to request cancellation of this transaction")
            if uow.cancellations.get_pending_for_transaction(tx.id) is not None:
                raise ConflictError("A pending cancellation request already exists for this transaction")

            request = uow.cancellations.add(tx.id, cmd.user_id, cmd.reason)

        logger.info("User %s requested cancellation of transaction %s (request %s)",
                    cmd.user_id, tx.id, request.id)
        return request

    def review(self, cmd: ReviewCancellationCommand) -> CancellationRequest:
        with atomic(self.uow, "cancellation review") as uow:
            request = uow.cancellations.get_by_id(cmd.request_id)
            if request is None:
                raise NotFoundError("Cancellation request not found")
            if request.status is not CancellationRequestStatus.PENDING:
                raise BadRequestError(f"Request has already been {request.status.value}")

            reversal = None
            if cmd.action is CancellationRequestStatus.APPROVED:
                reversal = self.token_service.reverse_in(uow, CancelTokensCommand(
                    transaction_id=request.transaction_id,
                    admin_id=cmd.admin_id,
                    reason=(
                        f"Approval of cancellation request #{request.id}. "
                        f"User reason: {request.reason}. "
                        f"Admin reason: {cmd.review_reason or 'N/A'}"
                    ),
                ))

            request = uow.cancellations.mark_reviewed(
                request.id,
                cmd.action,
                reviewed_by=cmd.admin_id,
                review_reason=cmd.review_reason or f"Admin action: {cmd.action.value}",
            )

        if reversal is not None:
            logger.info("Admin %s cancelled transaction %s (reversal %s) approving request %s",
                        cmd.admin_id, request.transaction_id, reversal.id, request.id)
        logger.info("Cancellation request %s %s by admin %s (transaction %s)",
                    request.id, request.status.value, cmd.admin_id, request.transaction_id)
        return request

    def list_pending(self) -> List[CancellationRequest]:
        """Oldest first."""
        return self.uow.cancellations.list_pending()

    def list_for_user(self, user_id: int) -> List[CancellationRequest]:
        return self.uow.cancellations.list_for_user(user_id)
