from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List
from core.entities.transaction import (
    CancellationDetails,
    TokenTransaction,
    TransactionStatus,
    TransactionType,
)


class LedgerRepository(ABC):
    @abstractmethod
    def add(self, sender_id: int, receiver_id: int, amount: int, status: TransactionStatus,
            transaction_type: TransactionType, description: Optional[str] = None,
            request_id: Optional[str] = None,
            original_transaction_id: Optional[int] = None) -> TokenTransaction:
        """Добавляет запись в журнал. Повтор request_id -> TransactionExistsError."""

    @abstractmethod
    def get_by_id(self, transaction_id: int) -> Optional[TokenTransaction]:...

    @abstractmethod
    def get_by_request_id(self, request_id: str) -> Optional[TokenTransaction]:...

    @abstractmethod
    def update_status(self, transaction_id: int, expected_status: TransactionStatus,
                      new_status: TransactionStatus,
                      transaction_type: Optional[TransactionType] = None,
                      description: Optional[str] = None,
                      cancellation_details: Optional[CancellationDetails] = None) -> TokenTransaction:
        """Compare-and-set по статусу: если статус уже не expected_status, запись не меняется."""

    @abstractmethod
    def list_for_user(self, account_id: int, limit: int = 100, offset: int = 0) -> List[TokenTransaction]:...

    @abstractmethod
    def list_all(self, limit: int = 100, offset: int = 0) -> List[TokenTransaction]:...

    @abstractmethod
    def list_pending_sent(self, account_id: int) -> List[TokenTransaction]:...

    @abstractmethod
    def list_pending_received(self, account_id: int) -> List[TokenTransaction]:...

    @abstractmethod
    def list_pending_created_before(self, cutoff: datetime) -> List[TokenTransaction]:...
