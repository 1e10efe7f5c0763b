from abc import ABC, abstractmethod
from typing import Optional, List
from core.entities.cancellation_request import CancellationRequest, CancellationRequestStatus


class CancellationRequestRepository(ABC):
    @abstractmethod
    def add(self, transaction_id: int, requested_by: int, reason: str) -> CancellationRequest:
        """Новая заявка в статусе pending. Вторая pending-заявка на ту же транзакцию -> ConflictError."""

    @abstractmethod
    def get_by_id(self, request_id: int) -> Optional[CancellationRequest]:...

    @abstractmethod
    def get_pending_for_transaction(self, transaction_id: int) -> Optional[CancellationRequest]:...

    @abstractmethod
    def mark_reviewed(self, request_id: int, status: CancellationRequestStatus,
                      reviewed_by: int, review_reason: str) -> CancellationRequest:...

    @abstractmethod
    def list_pending(self) -> List[CancellationRequest]:...

    @abstractmethod
    def list_for_user(self, account_id: int) -> List[CancellationRequest]:...
