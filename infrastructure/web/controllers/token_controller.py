from typing import Optional, List, Union

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from core.entities.account import Account
from core.entities.commands import (
    CancellationRequestCommand,
    TransferDecisionCommand,
    TransferRequestCommand,
)
from core.use_cases.cancellation_use_cases import CancellationQueue
from core.use_cases.token_use_cases import TokenService
from infrastructure.db.sqlite import SQLiteUnitOfWork
from infrastructure.web.dependencies import (
    get_cancellation_queue,
    get_current_user,
    get_token_service,
    get_uow,
)
from infrastructure.web.schemas import (
    AccountResponse,
    CancellationRequestItem,
    PendingTransferItem,
    TransactionItem,
)


router = APIRouter(prefix="/tokens", tags=["tokens"])


class TransferRequestBody(BaseModel):
    receiver_identifier: Union[int, str]   # id или email получателя
    amount: int
    request_id: Optional[str] = None       # ключ идемпотентности от клиента

class RejectBody(BaseModel):
    reason: Optional[str] = None

class CancellationRequestBody(BaseModel):
    transaction_id: int
    reason: str

class TransferResponse(BaseModel):
    transaction: TransactionItem
    balance: Optional[int] = None          # баланс вызывающего или отправителя после операции


def _balance(uow: SQLiteUnitOfWork, account_id: int) -> Optional[int]:
    account = uow.accounts.get_by_id(account_id)
    return account.tokens if account else None


@router.get("/me", response_model=AccountResponse)
def get_profile(current_user: Account = Depends(get_current_user)):
    return AccountResponse.from_entity(current_user)


@router.post("/transfer/request", response_model=TransferResponse, status_code=status.HTTP_202_ACCEPTED)
def request_transfer(
    payload: TransferRequestBody,
    current_user: Account = Depends(get_current_user),
    service: TokenService = Depends(get_token_service),
    uow: SQLiteUnitOfWork = Depends(get_uow),
):
    tx = service.request_transfer(TransferRequestCommand(
        sender_id=current_user.id,
        receiver_identifier=str(payload.receiver_identifier),
        amount=payload.amount,
        request_id=payload.request_id,
    ))
    return TransferResponse(transaction=TransactionItem.from_entity(tx), balance=_balance(uow, current_user.id))


@router.post("/transfer/{transaction_id}/accept", response_model=TransferResponse)
def accept_transfer(
    transaction_id: int,
    current_user: Account = Depends(get_current_user),
    service: TokenService = Depends(get_token_service),
    uow: SQLiteUnitOfWork = Depends(get_uow),
):
    tx = service.accept_transfer(TransferDecisionCommand(transaction_id=transaction_id, receiver_id=current_user.id))
    return TransferResponse(transaction=TransactionItem.from_entity(tx), balance=_balance(uow, current_user.id))


@router.post("/transfer/{transaction_id}/reject", response_model=TransferResponse)
def reject_transfer(
    transaction_id: int,
    payload: Optional[RejectBody] = None,
    current_user: Account = Depends(get_current_user),
    service: TokenService = Depends(get_token_service),
    uow: SQLiteUnitOfWork = Depends(get_uow),
):
    tx = service.reject_transfer(TransferDecisionCommand(
        transaction_id=transaction_id,
        receiver_id=current_user.id,
        reason=payload.reason if payload else None,
    ))
    # после отказа интересен баланс отправителя - ему вернулись средства
    return TransferResponse(transaction=TransactionItem.from_entity(tx), balance=_balance(uow, tx.sender_id))


@router.get("/transactions", response_model=List[TransactionItem])
def get_transactions(
    limit: int = 50,
    offset: int = 0,
    current_user: Account = Depends(get_current_user),
    service: TokenService = Depends(get_token_service),
):
    limit = max(1, min(100, int(limit)))  # пагинация, не хотим возвращать много
    offset = max(0, int(offset))
    txs = service.get_user_transactions(current_user.id, limit=limit, offset=offset)
    return [TransactionItem.from_entity(tx) for tx in txs]


@router.get("/transfers/pending/sent", response_model=List[PendingTransferItem])
def get_pending_sent(
    current_user: Account = Depends(get_current_user),
    service: TokenService = Depends(get_token_service),
    uow: SQLiteUnitOfWork = Depends(get_uow),
):
    return [
        PendingTransferItem.from_pending(tx, uow.accounts.get_by_id(tx.receiver_id))
        for tx in service.get_pending_sent(current_user.id)
    ]


@router.get("/transfers/pending/received", response_model=List[PendingTransferItem])
def get_pending_received(
    current_user: Account = Depends(get_current_user),
    service: TokenService = Depends(get_token_service),
    uow: SQLiteUnitOfWork = Depends(get_uow),
):
    return [
        PendingTransferItem.from_pending(tx, uow.accounts.get_by_id(tx.sender_id))
        for tx in service.get_pending_received(current_user.id)
    ]


@router.post("/transactions/cancel-request", response_model=CancellationRequestItem,
             status_code=status.HTTP_201_CREATED)
def create_cancellation_request(
    payload: CancellationRequestBody,
    current_user: Account = Depends(get_current_user),
    queue: CancellationQueue = Depends(get_cancellation_queue),
):
    request = queue.create(CancellationRequestCommand(
        transaction_id=payload.transaction_id,
        user_id=current_user.id,
        reason=payload.reason,
    ))
    return CancellationRequestItem.from_entity(request)


@router.get("/transactions/cancellation-requests", response_model=List[CancellationRequestItem])
def get_user_cancellation_requests(
    current_user: Account = Depends(get_current_user),
    queue: CancellationQueue = Depends(get_cancellation_queue),
):
    return [CancellationRequestItem.from_entity(r) for r in queue.list_for_user(current_user.id)]
