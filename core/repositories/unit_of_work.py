from abc import ABC, abstractmethod
from core.repositories.account_repository import AccountRepository
from core.repositories.cancellation_repository import CancellationRequestRepository
from core.repositories.ledger_repository import LedgerRepository


class UnitOfWork(ABC):
    """Атомарная единица работы над счетами, журналом и очередью заявок.

    `with uow:` фиксирует всё при успешном выходе и откатывает при исключении.
    Вложенный `with uow:` присоединяется к внешней транзакции.
    """
    accounts: AccountRepository
    transactions: LedgerRepository
    cancellations: CancellationRequestRepository

    @abstractmethod
    def __enter__(self) -> "UnitOfWork":...

    @abstractmethod
    def __exit__(self, exc_type, exc, tb) -> bool:...
