from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr

from core.entities.account import Account
from core.entities.commands import (
    AdminAdjustCommand,
    AdminStatusUpdateCommand,
    CancelTokensCommand,
    ReviewCancellationCommand,
)
from core.use_cases.cancellation_use_cases import CancellationQueue
from core.use_cases.token_use_cases import TokenService
from infrastructure.db.sqlite import SQLiteUnitOfWork
from infrastructure.web.dependencies import (
    get_cancellation_queue,
    get_token_service,
    get_uow,
    require_admin,
)
from infrastructure.web.schemas import AccountResponse, CancellationRequestItem, TransactionItem


router = APIRouter(prefix="/tokens/admin", tags=["tokens-admin"])

# HTTP-клиенты присылают глагол, сервис ждёт итоговый статус заявки
REVIEW_ACTIONS = {"approve": "approved", "reject": "rejected"}


class AdjustRequest(BaseModel):
    user_id: int
    amount: int                     # > 0 начислить, < 0 списать
    description: Optional[str] = None

class StatusUpdateRequest(BaseModel):
    status: str
    reason: Optional[str] = None

class CancelRequest(BaseModel):
    reason: str

class ReviewRequest(BaseModel):
    action: str                     # approve | reject (или approved | rejected)
    review_reason: Optional[str] = None

class CancelResponse(BaseModel):
    original_transaction: TransactionItem
    cancellation_transaction: TransactionItem
    original_sender_tokens: Optional[int] = None
    original_receiver_tokens: Optional[int] = None
    cooldown_until: Optional[datetime] = None

class BalanceResponse(BaseModel):
    user_id: int
    name: str
    email: EmailStr
    balance: int


def _clamp(limit: int, offset: int):
    return max(1, min(100, int(limit))), max(0, int(offset))


@router.post("/adjust", response_model=AccountResponse)
def adjust_tokens(
    payload: AdjustRequest,
    admin: Account = Depends(require_admin),
    service: TokenService = Depends(get_token_service),
):
    updated = service.admin_adjust_tokens(AdminAdjustCommand(
        user_id=payload.user_id,
        amount=payload.amount,
        admin_id=admin.id,
        description=payload.description,
    ))
    return AccountResponse.from_entity(updated)


@router.put("/transactions/{transaction_id}/status", response_model=TransactionItem)
def update_transaction_status(
    transaction_id: int,
    payload: StatusUpdateRequest,
    admin: Account = Depends(require_admin),
    service: TokenService = Depends(get_token_service),
):
    tx = service.admin_update_transaction_status(AdminStatusUpdateCommand(
        transaction_id=transaction_id,
        status=payload.status,
        admin_id=admin.id,
        reason=payload.reason,
    ))
    return TransactionItem.from_entity(tx)


@router.post("/transactions/{transaction_id}/cancel", response_model=CancelResponse)
def cancel_transfer(
    transaction_id: int,
    payload: CancelRequest,
    admin: Account = Depends(require_admin),
    service: TokenService = Depends(get_token_service),
    uow: SQLiteUnitOfWork = Depends(get_uow),
):
    cancellation = service.cancel_tokens(CancelTokensCommand(
        transaction_id=transaction_id,
        admin_id=admin.id,
        reason=payload.reason,
    ))
    original = service.get_transaction_by_id(transaction_id)
    sender = uow.accounts.get_by_id(original.sender_id)
    receiver = uow.accounts.get_by_id(original.receiver_id)
    return CancelResponse(
        original_transaction=TransactionItem.from_entity(original),
        cancellation_transaction=TransactionItem.from_entity(cancellation),
        original_sender_tokens=sender.tokens if sender else None,
        original_receiver_tokens=receiver.tokens if receiver else None,
        cooldown_until=sender.cooldown_until if sender else None,
    )


@router.get("/transactions", response_model=List[TransactionItem])
def get_all_transactions(
    limit: int = 50,
    offset: int = 0,
    admin: Account = Depends(require_admin),
    service: TokenService = Depends(get_token_service),
):
    limit, offset = _clamp(limit, offset)
    return [TransactionItem.from_entity(tx) for tx in service.list_all_transactions(limit=limit, offset=offset)]


@router.get("/transactions/{transaction_id}", response_model=TransactionItem)
def get_transaction(
    transaction_id: int,
    admin: Account = Depends(require_admin),
    service: TokenService = Depends(get_token_service),
):
    return TransactionItem.from_entity(service.get_transaction_by_id(transaction_id))


@router.get("/cancellation-requests/pending", response_model=List[CancellationRequestItem])
def get_pending_cancellation_requests(
    admin: Account = Depends(require_admin),
    queue: CancellationQueue = Depends(get_cancellation_queue),
):
    return [CancellationRequestItem.from_entity(r) for r in queue.list_pending()]


@router.post("/cancellation-requests/{request_id}/review", response_model=CancellationRequestItem)
def review_cancellation_request(
    request_id: int,
    payload: ReviewRequest,
    admin: Account = Depends(require_admin),
    queue: CancellationQueue = Depends(get_cancellation_queue),
):
    action = payload.action.strip().lower()
    request = queue.review(ReviewCancellationCommand(
        request_id=request_id,
        admin_id=admin.id,
        action=REVIEW_ACTIONS.get(action, action),
        review_reason=payload.review_reason,
    ))
    return CancellationRequestItem.from_entity(request)


@router.get("/users/{user_id}/transactions", response_model=List[TransactionItem])
def get_user_transactions(
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    admin: Account = Depends(require_admin),
    service: TokenService = Depends(get_token_service),
):
    limit, offset = _clamp(limit, offset)
    txs = service.get_user_transactions_by_admin(user_id, limit=limit, offset=offset)
    return [TransactionItem.from_entity(tx) for tx in txs]


@router.get("/users/{user_id}/balance", response_model=BalanceResponse)
def get_user_balance(
    user_id: int,
    admin: Account = Depends(require_admin),
    service: TokenService = Depends(get_token_service),
):
    user = service.get_user_balance_by_admin(user_id)
    return BalanceResponse(user_id=user.id, name=user.name, email=user.email, balance=user.tokens)


@router.post("/transfers/expire", response_model=List[TransactionItem])
def expire_stale_transfers(
    admin: Account = Depends(require_admin),
    service: TokenService = Depends(get_token_service),
):
    return [TransactionItem.from_entity(tx) for tx in service.expire_stale_requests()]
