"""Входные структуры операций с токенами.

Каждая команда проверяет свои поля в __post_init__, до открытия
транзакции в хранилище. Ошибки валидации - BadRequestError.
"""
from dataclasses import dataclass
from typing import Any, Optional

from core.entities.cancellation_request import CancellationRequestStatus
from core.entities.transaction import TransactionStatus
from core.errors import BadRequestError

MAX_REQUEST_ID_LENGTH = 128
# суммы хранятся в 64-битном INTEGER
MAX_TOKEN_AMOUNT = 2 ** 63 - 1


def _require_int(value: Any, field_name: str) -> None:
    # bool - подкласс int, его не принимаем
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadRequestError(f"{field_name} must be an integer")


def _require_amount(value: Any, field_name: str) -> None:
    _require_int(value, field_name)
    if abs(value) > MAX_TOKEN_AMOUNT:
        raise BadRequestError(f"{field_name} is out of range")


def _require_text(value: Any, field_name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise BadRequestError(f"{field_name} is required")


@dataclass(frozen=True)
class TransferRequestCommand:
    sender_id: int
    receiver_identifier: str     # id или email получателя
    amount: int
    request_id: Optional[str] = None

    def __post_init__(self):
        _require_int(self.sender_id, "sender_id")
        _require_amount(self.amount, "amount")
        if self.amount <= 0:
            raise BadRequestError("Transfer amount must be greater than zero")
        _require_text(self.receiver_identifier, "receiver_identifier")
        if self.request_id is not None:
            if not isinstance(self.request_id, str) or not self.request_id.strip():
                raise BadRequestError("Invalid request_id format")
            if len(self.request_id) > MAX_REQUEST_ID_LENGTH:
                raise BadRequestError("request_id is too long")


@dataclass(frozen=True)
class TransferDecisionCommand:
    """Accept или reject входящего запроса получателем"""
    transaction_id: int
    receiver_id: int
    reason: Optional[str] = None

    def __post_init__(self):
        _require_int(self.transaction_id, "transaction_id")
        _require_int(self.receiver_id, "receiver_id")


@dataclass(frozen=True)
class CancelTokensCommand:
    transaction_id: int
    admin_id: int
    reason: str

    def __post_init__(self):
        _require_int(self.transaction_id, "transaction_id")
        _require_int(self.admin_id, "admin_id")
        _require_text(self.reason, "reason")


@dataclass(frozen=True)
class AdminAdjustCommand:
    user_id: int
    amount: int                  # > 0 начисление, < 0 списание
    admin_id: int
    description: Optional[str] = None

    def __post_init__(self):
        _require_int(self.user_id, "user_id")
        _require_int(self.admin_id, "admin_id")
        _require_amount(self.amount, "amount")
        if self.amount == 0:
            raise BadRequestError("Adjustment amount cannot be zero")


@dataclass(frozen=True)
class AdminStatusUpdateCommand:
    transaction_id: int
    status: TransactionStatus
    admin_id: int
    reason: Optional[str] = None

    def __post_init__(self):
        _require_int(self.transaction_id, "transaction_id")
        _require_int(self.admin_id, "admin_id")
        try:
            object.__setattr__(self, "status", TransactionStatus(self.status))
        except ValueError:
            raise BadRequestError("Invalid transaction status")


@dataclass(frozen=True)
class CancellationRequestCommand:
    transaction_id: int
    user_id: int
    reason: str

    def __post_init__(self):
        _require_int(self.transaction_id, "transaction_id")
        _require_int(self.user_id, "user_id")
        _require_text(self.reason, "reason")


@dataclass(frozen=True)
class ReviewCancellationCommand:
    request_id: int
    admin_id: int
    action: CancellationRequestStatus
    review_reason: Optional[str] = None

    def __post_init__(self):
        _require_int(self.request_id, "request_id")
        _require_int(self.admin_id, "admin_id")
        try:
            action = CancellationRequestStatus(self.action)
        except ValueError:
            raise BadRequestError("Invalid action, expected 'approved' or 'rejected'")
        if action is CancellationRequestStatus.PENDING:
            raise BadRequestError("Invalid action, expected 'approved' or 'rejected'")
        object.__setattr__(self, "action", action)
