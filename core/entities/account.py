from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Account:
    id: Optional[int]
    email: str
    name: str
    is_admin: bool
    tokens: int                              # может уйти в минус только после отмены перевода или ручной корректировки
    created_at: str
    cooldown_until: Optional[datetime] = None

    def in_cooldown(self, now: datetime) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until
