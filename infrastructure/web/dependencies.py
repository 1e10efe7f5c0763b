import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Header, status
from jose import jwt, JWTError

from config.settings import settings
from core.entities.account import Account
from core.services.clock import Clock
from core.use_cases.cancellation_use_cases import CancellationQueue
from core.use_cases.token_use_cases import TokenService
from infrastructure.db.sqlite import SQLiteUnitOfWork, connect
from infrastructure.time.system_clock import SystemClock


def get_db():
    conn = connect(settings.DB_PATH, timeout=settings.DB_BUSY_TIMEOUT_SECONDS)
    try:
        yield conn
    finally:
        conn.close()

def get_clock() -> Clock:
    return SystemClock()

# один uow на запрос: сервис переводов и очередь заявок разделяют его
def get_uow(
    conn: sqlite3.Connection = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SQLiteUnitOfWork:
    return SQLiteUnitOfWork(conn, clock)

def get_token_service(
    uow: SQLiteUnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
) -> TokenService:
    return TokenService(
        uow,
        clock,
        cooldown=timedelta(hours=settings.COOLDOWN_HOURS),
        pending_ttl=timedelta(hours=settings.PENDING_TRANSFER_TTL_HOURS),
        admin_adjust_allow_negative=settings.ADMIN_ADJUST_ALLOW_NEGATIVE,
    )

def get_cancellation_queue(
    uow: SQLiteUnitOfWork = Depends(get_uow),
    service: TokenService = Depends(get_token_service),
) -> CancellationQueue:
    return CancellationQueue(uow, service)

# jwt выпускает внешний сервис авторизации, здесь только проверка
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def get_bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return authorization.split(" ", 1)[1]

def get_current_user(
    token: str = Depends(get_bearer_token),
    uow: SQLiteUnitOfWork = Depends(get_uow),
) -> Account:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        sub = payload.get("sub")
        if sub is None:
            raise credentials_exception
        user_id = int(sub)
    except (JWTError, ValueError):
        raise credentials_exception

    user = uow.accounts.get_by_id(user_id)
    if user is None:
        raise credentials_exception
    return user

def require_admin(current_user: Account = Depends(get_current_user)) -> Account:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return current_user
