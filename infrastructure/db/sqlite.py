import sqlite3
from functools import wraps
from typing import Optional, List, Dict, Any
from pathlib import Path
from uuid import uuid4

from core.entities.user import User
from core.entities.transaction import Transaction
from core.errors import StoreError
from core.repositories.ledger_repository import LedgerRepository, ensure_mutable

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    balance REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    amount REAL NOT NULL,
    userId TEXT NOT NULL,
    status TEXT NOT NULL,
    note TEXT,
    toUserId TEXT,
    fromUserId TEXT,
    linkedTransactionId TEXT,
    createdAt TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    deletedAt TEXT
);
"""

_TX_COLUMNS = (
    "type", "amount", "userId", "status", "note", "toUserId", "fromUserId",
    "linkedTransactionId", "createdAt", "deleted", "deletedAt",
)


def init_db(conn_or_path) -> None:
    if isinstance(conn_or_path, sqlite3.Connection):
        conn_or_path.executescript(_SCHEMA)
        conn_or_path.commit()
        return

    db_path = conn_or_path
    if db_path != ":memory:" and not db_path.startswith("file:"):
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    try:
        conn.executescript(_SCHEMA)
        conn.commit()
    finally:
        conn.close()


def _store_errors(operation: str):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except sqlite3.Error as e:
                raise StoreError(str(e), operation) from e
        return wrapper
    return decorator


class SQLiteLedgerRepository(LedgerRepository):
    """Те же коллекции, что и у HTTP-хранилища, но в локальном файле SQLite"""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(id=row["id"], name=row["name"], balance=float(row["balance"]))

    def _row_to_tx(self, row: sqlite3.Row) -> Transaction:
        data = dict(row)
        data["deleted"] = bool(data["deleted"])
        return Transaction.from_payload(data)

    @_store_errors("create user")
    def create_user(self, name: str, balance: float = 0, user_id: Optional[str] = None) -> User:
        user_id = str(user_id) if user_id is not None else uuid4().hex[:8]
        self.conn.execute(
            "INSERT INTO users (id, name, balance) VALUES (?, ?, ?)",
            (user_id, name, float(balance)),
        )
        self.conn.commit()
        return User(id=user_id, name=name, balance=float(balance))

    @_store_errors("list users")
    def list_users(self) -> List[User]:
        rows = self.conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(r) for r in rows]

    @_store_errors("get user")
    def get_user(self, user_id: str) -> Optional[User]:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (str(user_id),)).fetchone()
        return self._row_to_user(row) if row else None

    @_store_errors("update user")
    def update_user_balance(self, user_id: str, balance: float) -> User:
        cur = self.conn.cursor()
        cur.execute("UPDATE users SET balance = ? WHERE id = ?", (float(balance), str(user_id)))
        if cur.rowcount == 0:
            raise StoreError("User not found", "update user")
        self.conn.commit()
        user = self.get_user(user_id)
        assert user is not None
        return user

    @_store_errors("list transactions")
    def list_transactions(self) -> List[Transaction]:
        rows = self.conn.execute("SELECT * FROM transactions ORDER BY id").fetchall()
        return [self._row_to_tx(r) for r in rows]

    @_store_errors("get transaction")
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        try:
            key = int(transaction_id)
        except (TypeError, ValueError):
            return None
        row = self.conn.execute("SELECT * FROM transactions WHERE id = ?", (key,)).fetchone()
        return self._row_to_tx(row) if row else None

    @_store_errors("create transaction")
    def create_transaction(self, transaction: Transaction) -> Transaction:
        payload = transaction.to_payload()
        payload.pop("id", None)
        payload["deleted"] = 1 if payload.get("deleted") else 0
        values = [payload.get(col) for col in _TX_COLUMNS]
        cur = self.conn.cursor()
        cur.execute(
            f"INSERT INTO transactions ({', '.join(_TX_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _TX_COLUMNS)})",
            values,
        )
        self.conn.commit()
        created = self.get_transaction(str(cur.lastrowid))
        assert created is not None
        return created

    @_store_errors("update transaction")
    def update_transaction(self, transaction_id: str, changes: Dict[str, Any]) -> Transaction:
        ensure_mutable(changes)
        if not changes:
            existing = self.get_transaction(transaction_id)
            if existing is None:
                raise StoreError("Transaction not found", "update transaction")
            return existing
        values = [(1 if v else 0) if k == "deleted" else v for k, v in changes.items()]
        assignments = ", ".join(f"{k} = ?" for k in changes)
        cur = self.conn.cursor()
        cur.execute(f"UPDATE transactions SET {assignments} WHERE id = ?", (*values, int(transaction_id)))
        if cur.rowcount == 0:
            raise StoreError("Transaction not found", "update transaction")
        self.conn.commit()
        updated = self.get_transaction(transaction_id)
        assert updated is not None
        return updated
