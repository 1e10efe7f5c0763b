from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr

from core.entities.account import Account
from core.entities.cancellation_request import CancellationRequest
from core.entities.transaction import TokenTransaction


class CancellationDetailsItem(BaseModel):
    reason: str
    cancelled_by: int
    cancelled_at: datetime
    cooldown_until: Optional[datetime] = None


class TransactionItem(BaseModel):
    id: int
    sender_id: int
    receiver_id: int
    amount: int
    status: str
    transaction_type: str
    description: Optional[str] = None
    request_id: Optional[str] = None
    original_transaction_id: Optional[int] = None
    cancellation_details: Optional[CancellationDetailsItem] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_entity(cls, tx: TokenTransaction) -> "TransactionItem":
        details = None
        if tx.cancellation_details is not None:
            details = CancellationDetailsItem(
                reason=tx.cancellation_details.reason,
                cancelled_by=tx.cancellation_details.cancelled_by,
                cancelled_at=tx.cancellation_details.cancelled_at,
                cooldown_until=tx.cancellation_details.cooldown_until,
            )
        return cls(
            id=tx.id,
            sender_id=tx.sender_id,
            receiver_id=tx.receiver_id,
            amount=tx.amount,
            status=tx.status.value,
            transaction_type=tx.transaction_type.value,
            description=tx.description,
            request_id=tx.request_id,
            original_transaction_id=tx.original_transaction_id,
            cancellation_details=details,
            created_at=tx.created_at,
            updated_at=tx.updated_at,
        )


class CancellationRequestItem(BaseModel):
    id: int
    transaction_id: int
    requested_by: int
    reason: str
    status: str
    reviewed_by: Optional[int] = None
    review_reason: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_entity(cls, request: CancellationRequest) -> "CancellationRequestItem":
        return cls(
            id=request.id,
            transaction_id=request.transaction_id,
            requested_by=request.requested_by,
            reason=request.reason,
            status=request.status.value,
            reviewed_by=request.reviewed_by,
            review_reason=request.review_reason,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )


class AccountResponse(BaseModel):
    id: int
    email: EmailStr
    name: str
    is_admin: bool
    tokens: int
    cooldown_until: Optional[datetime] = None
    created_at: str

    @classmethod
    def from_entity(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            is_admin=account.is_admin,
            tokens=account.tokens,
            cooldown_until=account.cooldown_until,
            created_at=account.created_at,
        )


class CounterpartyItem(BaseModel):
    id: int
    name: str
    email: EmailStr


class PendingTransferItem(TransactionItem):
    # получатель для исходящих запросов, отправитель для входящих
    counterparty: Optional[CounterpartyItem] = None

    @classmethod
    def from_pending(cls, tx: TokenTransaction, counterparty: Optional[Account]) -> "PendingTransferItem":
        item = cls.from_entity(tx)
        if counterparty is not None:
            item.counterparty = CounterpartyItem(id=counterparty.id, name=counterparty.name, email=counterparty.email)
        return item
