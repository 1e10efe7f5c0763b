from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CancellationRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class CancellationRequest:
    id: Optional[int]
    transaction_id: int
    requested_by: int
    reason: str
    status: CancellationRequestStatus
    created_at: str
    updated_at: str
    reviewed_by: Optional[int] = None
    review_reason: Optional[str] = None
