from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from core.entities.account import Account


class AccountRepository(ABC):
    @abstractmethod
    def create_account(self, email: str, name: str, is_admin: bool = False, tokens: int = 0) -> Account:...

    @abstractmethod
    def get_by_id(self, account_id: int) -> Optional[Account]:...

    @abstractmethod
    def get_by_email(self, email: str) -> Optional[Account]:...

    @abstractmethod
    def adjust_balance(self, account_id: int, delta: int, allow_negative: bool = False) -> Account:
        """Атомарный инкремент баланса. Без allow_negative отказывает, если баланс уйдёт в минус."""

    @abstractmethod
    def set_cooldown(self, account_id: int, until: Optional[datetime]) -> Account:...
