import sqlite3
import json
import logging
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from pathlib import Path

from core.entities.account import Account
from core.entities.cancellation_request import CancellationRequest, CancellationRequestStatus
from core.entities.transaction import (
    CancellationDetails,
    TokenTransaction,
    TransactionStatus,
    TransactionType,
)
from core.errors import (
    BadRequestError,
    ConflictError,
    InsufficientFundsError,
    InternalError,
    NotFoundError,
    TransactionExistsError,
)
from core.repositories.account_repository import AccountRepository
from core.repositories.cancellation_repository import CancellationRequestRepository
from core.repositories.ledger_repository import LedgerRepository
from core.repositories.unit_of_work import UnitOfWork
from core.services.clock import Clock
from infrastructure.time.system_clock import SystemClock

logger = logging.getLogger(__name__)


def to_iso(value: datetime) -> str:
    # фиксированный формат, чтобы строки сравнивались как время
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


SQLITE_INT_MIN = -2 ** 63
SQLITE_INT_MAX = 2 ** 63 - 1


def fits_integer(value: int) -> bool:
    # INTEGER в SQLite - 64 бита, большее число sqlite3 не примет (OverflowError)
    return SQLITE_INT_MIN <= int(value) <= SQLITE_INT_MAX


def connect(db_path: str, timeout: float = 5.0) -> sqlite3.Connection:
    # isolation_level=None: транзакциями управляет SQLiteUnitOfWork (BEGIN IMMEDIATE / COMMIT)
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: str) -> None:
    if db_path != ":memory:" and not db_path.startswith("file:"):
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = connect(db_path)
    try:
        cur = conn.cursor()
        if db_path != ":memory:":
            cur.execute("PRAGMA journal_mode = WAL")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            is_admin INTEGER NOT NULL DEFAULT 0,
            tokens INTEGER NOT NULL DEFAULT 0,
            cooldown_until TEXT,
            created_at TEXT NOT NULL
        );
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS token_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sender_id INTEGER NOT NULL,
            receiver_id INTEGER NOT NULL,
            amount INTEGER NOT NULL CHECK (amount > 0),
            status TEXT NOT NULL,
            transaction_type TEXT NOT NULL,
            description TEXT,
            request_id TEXT UNIQUE,
            original_transaction_id INTEGER,
            cancellation_details TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(sender_id) REFERENCES accounts(id),
            FOREIGN KEY(receiver_id) REFERENCES accounts(id),
            FOREIGN KEY(original_transaction_id) REFERENCES token_transactions(id)
        );
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tx_sender_status ON token_transactions(sender_id, status)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tx_receiver_status ON token_transactions(receiver_id, status)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tx_status_created ON token_transactions(status, created_at)")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS cancellation_requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            transaction_id INTEGER NOT NULL,
            requested_by INTEGER NOT NULL,
            reason TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            reviewed_by INTEGER,
            review_reason TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(transaction_id) REFERENCES token_transactions(id),
            FOREIGN KEY(requested_by) REFERENCES accounts(id)
        );
        """)
        # не больше одной pending-заявки на транзакцию
        cur.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ux_cancellation_pending
            ON cancellation_requests(transaction_id) WHERE status = 'pending'
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_cancellation_requested_by ON cancellation_requests(requested_by, status)")
    finally:
        conn.close()


class SQLiteAccountRepository(AccountRepository):
    def __init__(self, conn: sqlite3.Connection, clock: Optional[Clock] = None):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self.clock = clock or SystemClock()

    def _row_to_account(self, row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            is_admin=bool(row["is_admin"]),
            tokens=int(row["tokens"]),
            created_at=row["created_at"],
            cooldown_until=from_iso(row["cooldown_until"]),
        )

    def create_account(self, email: str, name: str, is_admin: bool = False, tokens: int = 0) -> Account:
        created_at = to_iso(self.clock.now())
        cur = self.conn.cursor()
        try:
            cur.execute(
                "INSERT INTO accounts (email, name, is_admin, tokens, created_at) VALUES (?, ?, ?, ?, ?)",
                (email.strip().lower(), name, 1 if is_admin else 0, int(tokens), created_at),
            )
        except sqlite3.IntegrityError:
            raise ConflictError("Account with this email already exists")
        account = self.get_by_id(cur.lastrowid)
        assert account is not None
        return account

    def get_by_id(self, account_id: int) -> Optional[Account]:
        if not fits_integer(account_id):
            return None
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM accounts WHERE id = ?", (int(account_id),))
        row = cur.fetchone()
        return self._row_to_account(row) if row else None

    def get_by_email(self, email: str) -> Optional[Account]:
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM accounts WHERE email = ?", (email.strip().lower(),))
        row = cur.fetchone()
        return self._row_to_account(row) if row else None

    def adjust_balance(self, account_id: int, delta: int, allow_negative: bool = False) -> Account:
        if not fits_integer(account_id):
            raise NotFoundError("Account not found")
        if not fits_integer(delta):
            raise BadRequestError("Amount is out of range")
        cur = self.conn.cursor()
        if allow_negative:
            cur.execute(
                "UPDATE accounts SET tokens = tokens + ? WHERE id = ?",
                (int(delta), int(account_id)),
            )
        else:
            # зачисления проходят всегда, списание - только если хватает средств
            cur.execute(
                "UPDATE accounts SET tokens = tokens + ? WHERE id = ? AND (? >= 0 OR tokens + ? >= 0)",
                (int(delta), int(account_id), int(delta), int(delta)),
            )
        if cur.rowcount == 0:
            if self.get_by_id(account_id) is None:
                raise NotFoundError("Account not found")
            raise InsufficientFundsError("Insufficient tokens")
        account = self.get_by_id(account_id)
        assert account is not None
        return account

    def set_cooldown(self, account_id: int, until: Optional[datetime]) -> Account:
        if not fits_integer(account_id):
            raise NotFoundError("Account not found")
        cur = self.conn.cursor()
        cur.execute(
            "UPDATE accounts SET cooldown_until = ? WHERE id = ?",
            (to_iso(until) if until else None, int(account_id)),
        )
        if cur.rowcount == 0:
            raise NotFoundError("Account not found")
        account = self.get_by_id(account_id)
        assert account is not None
        return account


class SQLiteLedgerRepository(LedgerRepository):
    def __init__(self, conn: sqlite3.Connection, clock: Optional[Clock] = None):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self.clock = clock or SystemClock()

    def _row_to_tx(self, row: sqlite3.Row) -> TokenTransaction:
        details = None
        if row["cancellation_details"]:
            raw: Dict[str, Any] = json.loads(row["cancellation_details"])
            details = CancellationDetails(
                reason=raw["reason"],
                cancelled_by=int(raw["cancelled_by"]),
                cancelled_at=from_iso(raw["cancelled_at"]),
                cooldown_until=from_iso(raw.get("cooldown_until")),
            )
        return TokenTransaction(
            id=row["id"],
            sender_id=row["sender_id"],
            receiver_id=row["receiver_id"],
            amount=int(row["amount"]),
            status=TransactionStatus(row["status"]),
            transaction_type=TransactionType(row["transaction_type"]),
            description=row["description"],
            request_id=row["request_id"],
            original_transaction_id=row["original_transaction_id"],
            cancellation_details=details,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _details_to_json(details: CancellationDetails) -> str:
        return json.dumps({
            "reason": details.reason,
            "cancelled_by": details.cancelled_by,
            "cancelled_at": to_iso(details.cancelled_at),
            "cooldown_until": to_iso(details.cooldown_until) if details.cooldown_until else None,
        }, ensure_ascii=False)

    def _fetch_many(self, query: str, params: tuple) -> List[TokenTransaction]:
        cur = self.conn.cursor()
        cur.execute(query, params)
        return [self._row_to_tx(r) for r in cur.fetchall()]

    def add(self, sender_id: int, receiver_id: int, amount: int, status: TransactionStatus,
            transaction_type: TransactionType, description: Optional[str] = None,
            request_id: Optional[str] = None,
            original_transaction_id: Optional[int] = None) -> TokenTransaction:
        now = to_iso(self.clock.now())
        cur = self.conn.cursor()
        try:
            cur.execute(
                "INSERT INTO token_transactions (sender_id, receiver_id, amount, status, transaction_type, "
                "description, request_id, original_transaction_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (int(sender_id), int(receiver_id), int(amount), TransactionStatus(status).value,
                 TransactionType(transaction_type).value, description, request_id,
                 original_transaction_id, now, now),
            )
        except sqlite3.IntegrityError as e:
            if "request_id" in str(e):
                raise TransactionExistsError("A transaction with this request_id already exists")
            raise
        tx = self.get_by_id(cur.lastrowid)
        if tx is None:
            raise InternalError("Failed to record transaction")
        return tx

    def get_by_id(self, transaction_id: int) -> Optional[TokenTransaction]:
        if not fits_integer(transaction_id):
            return None
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM token_transactions WHERE id = ?", (int(transaction_id),))
        row = cur.fetchone()
        return self._row_to_tx(row) if row else None

    def get_by_request_id(self, request_id: str) -> Optional[TokenTransaction]:
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM token_transactions WHERE request_id = ?", (request_id,))
        row = cur.fetchone()
        return self._row_to_tx(row) if row else None

    def update_status(self, transaction_id: int, expected_status: TransactionStatus,
                      new_status: TransactionStatus,
                      transaction_type: Optional[TransactionType] = None,
                      description: Optional[str] = None,
                      cancellation_details: Optional[CancellationDetails] = None) -> TokenTransaction:
        cur = self.conn.cursor()
        cur.execute(
            "UPDATE token_transactions SET status = ?, "
            "transaction_type = COALESCE(?, transaction_type), "
            "description = COALESCE(?, description), "
            "cancellation_details = COALESCE(?, cancellation_details), "
            "updated_at = ? "
            "WHERE id = ? AND status = ?",
            (
                TransactionStatus(new_status).value,
                TransactionType(transaction_type).value if transaction_type else None,
                description,
                self._details_to_json(cancellation_details) if cancellation_details else None,
                to_iso(self.clock.now()),
                int(transaction_id),
                TransactionStatus(expected_status).value,
            ),
        )
        if cur.rowcount == 0:
            current = self.get_by_id(transaction_id)
            if current is None:
                raise NotFoundError("Transaction not found")
            raise BadRequestError(
                f"Transaction is not {TransactionStatus(expected_status).value}, "
                f"current status: {current.status.value}"
            )
        tx = self.get_by_id(transaction_id)
        assert tx is not None
        return tx

    def list_for_user(self, account_id: int, limit: int = 100, offset: int = 0) -> List[TokenTransaction]:
        return self._fetch_many(
            "SELECT * FROM token_transactions WHERE sender_id = ? OR receiver_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (int(account_id), int(account_id), int(limit), int(offset)),
        )

    def list_all(self, limit: int = 100, offset: int = 0) -> List[TokenTransaction]:
        return self._fetch_many(
            "SELECT * FROM token_transactions ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (int(limit), int(offset)),
        )

    def list_pending_sent(self, account_id: int) -> List[TokenTransaction]:
        return self._fetch_many(
            "SELECT * FROM token_transactions WHERE sender_id = ? AND status = ? AND transaction_type = ? "
            "ORDER BY created_at DESC, id DESC",
            (int(account_id), TransactionStatus.PENDING_ACCEPTANCE.value, TransactionType.TRANSFER_REQUEST.value),
        )

    def list_pending_received(self, account_id: int) -> List[TokenTransaction]:
        return self._fetch_many(
            "SELECT * FROM token_transactions WHERE receiver_id = ? AND status = ? AND transaction_type = ? "
            "ORDER BY created_at DESC, id DESC",
            (int(account_id), TransactionStatus.PENDING_ACCEPTANCE.value, TransactionType.TRANSFER_REQUEST.value),
        )

    def list_pending_created_before(self, cutoff: datetime) -> List[TokenTransaction]:
        return self._fetch_many(
            "SELECT * FROM token_transactions WHERE status = ? AND created_at <= ? "
            "ORDER BY created_at ASC, id ASC",
            (TransactionStatus.PENDING_ACCEPTANCE.value, to_iso(cutoff)),
        )


class SQLiteCancellationRequestRepository(CancellationRequestRepository):
    def __init__(self, conn: sqlite3.Connection, clock: Optional[Clock] = None):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self.clock = clock or SystemClock()

    def _row_to_request(self, row: sqlite3.Row) -> CancellationRequest:
        return CancellationRequest(
            id=row["id"],
            transaction_id=row["transaction_id"],
            requested_by=row["requested_by"],
            reason=row["reason"],
            status=CancellationRequestStatus(row["status"]),
            reviewed_by=row["reviewed_by"],
            review_reason=row["review_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def add(self, transaction_id: int, requested_by: int, reason: str) -> CancellationRequest:
        now = to_iso(self.clock.now())
        cur = self.conn.cursor()
        try:
            cur.execute(
                "INSERT INTO cancellation_requests (transaction_id, requested_by, reason, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (int(transaction_id), int(requested_by), reason.strip(),
                 CancellationRequestStatus.PENDING.value, now, now),
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise ConflictError("A pending cancellation request already exists for this transaction")
            raise
        request = self.get_by_id(cur.lastrowid)
        if request is None:
            raise InternalError("Failed to record cancellation request")
        return request

    def get_by_id(self, request_id: int) -> Optional[CancellationRequest]:
        if not fits_integer(request_id):
            return None
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM cancellation_requests WHERE id = ?", (int(request_id),))
        row = cur.fetchone()
        return self._row_to_request(row) if row else None

    def get_pending_for_transaction(self, transaction_id: int) -> Optional[CancellationRequest]:
        cur = self.conn.cursor()
        cur.execute(
            "SELECT * FROM cancellation_requests WHERE transaction_id = ? AND status = ?",
            (int(transaction_id), CancellationRequestStatus.PENDING.value),
        )
        row = cur.fetchone()
        return self._row_to_request(row) if row else None

    def mark_reviewed(self, request_id: int, status: CancellationRequestStatus,
                      reviewed_by: int, review_reason: str) -> CancellationRequest:
        cur = self.conn.cursor()
        cur.execute(
            "UPDATE cancellation_requests SET status = ?, reviewed_by = ?, review_reason = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            (CancellationRequestStatus(status).value, int(reviewed_by), review_reason,
             to_iso(self.clock.now()), int(request_id), CancellationRequestStatus.PENDING.value),
        )
        if cur.rowcount == 0:
            current = self.get_by_id(request_id)
            if current is None:
                raise NotFoundError("Cancellation request not found")
            raise BadRequestError(f"Request has already been {current.status.value}")
        request = self.get_by_id(request_id)
        assert request is not None
        return request

    def list_pending(self) -> List[CancellationRequest]:
        cur = self.conn.cursor()
        cur.execute(
            "SELECT * FROM cancellation_requests WHERE status = ? ORDER BY created_at ASC, id ASC",
            (CancellationRequestStatus.PENDING.value,),
        )
        return [self._row_to_request(r) for r in cur.fetchall()]

    def list_for_user(self, account_id: int) -> List[CancellationRequest]:
        cur = self.conn.cursor()
        cur.execute(
            "SELECT * FROM cancellation_requests WHERE requested_by = ? ORDER BY created_at DESC, id DESC",
            (int(account_id),),
        )
        return [self._row_to_request(r) for r in cur.fetchall()]


class SQLiteUnitOfWork(UnitOfWork):
    def __init__(self, conn: sqlite3.Connection, clock: Optional[Clock] = None):
        self.conn = conn
        clock = clock or SystemClock()
        self.accounts = SQLiteAccountRepository(conn, clock)
        self.transactions = SQLiteLedgerRepository(conn, clock)
        self.cancellations = SQLiteCancellationRequestRepository(conn, clock)
        self._depth = 0

    def __enter__(self) -> "SQLiteUnitOfWork":
        if self._depth == 0:
            # блокировка на запись сразу: конкурентные операции над теми же счетами идут строго по очереди
            self.conn.execute("BEGIN IMMEDIATE")
        self._depth += 1
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._depth -= 1
        if self._depth > 0:
            return False
        if exc_type is None:
            try:
                self.conn.execute("COMMIT")
            except sqlite3.Error:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise
        else:
            self.conn.execute("ROLLBACK")
            logger.debug("Unit of work rolled back: %s", exc_type.__name__)
        return False
