from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PENDING_ACCEPTANCE = "pending_acceptance"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    TRANSFER = "transfer"
    TRANSFER_REQUEST = "transfer_request"
    TRANSFER_ACCEPTANCE = "transfer_acceptance"
    TRANSFER_REJECTION = "transfer_rejection"
    TRANSFER_CANCELLATION = "transfer_cancellation"
    COUPON_REDEMPTION = "coupon_redemption"
    ADMIN_CREDIT = "admin_credit"
    ADMIN_DEBIT = "admin_debit"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.REJECTED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
})

# переводы, которые можно откатить через cancel_tokens / заявку на отмену
REVERSIBLE_TYPES = frozenset({
    TransactionType.TRANSFER,
    TransactionType.TRANSFER_ACCEPTANCE,
})

REVERSAL_TYPES = frozenset({
    TransactionType.TRANSFER_REJECTION,
    TransactionType.TRANSFER_CANCELLATION,
})

ADMIN_TYPES = frozenset({
    TransactionType.ADMIN_CREDIT,
    TransactionType.ADMIN_DEBIT,
})


@dataclass
class CancellationDetails:
    reason: str
    cancelled_by: int
    cancelled_at: datetime
    cooldown_until: Optional[datetime] = None


@dataclass
class TokenTransaction:
    id: Optional[int]
    sender_id: int
    receiver_id: int
    amount: int                  # всегда > 0, после создания не меняется
    status: TransactionStatus
    transaction_type: TransactionType
    created_at: str
    updated_at: str
    description: Optional[str] = None
    request_id: Optional[str] = None
    original_transaction_id: Optional[int] = None
    cancellation_details: Optional[CancellationDetails] = None

    def involves(self, account_id: int) -> bool:
        return account_id in (self.sender_id, self.receiver_id)
