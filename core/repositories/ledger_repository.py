from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from core.entities.user import User
from core.entities.transaction import Transaction, MUTABLE_FIELDS


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_mutable(changes: Dict[str, Any]) -> None:
    immutable = set(changes) - MUTABLE_FIELDS
    if immutable:
        raise ValueError(f"Transaction fields are immutable: {', '.join(sorted(immutable))}")


class LedgerRepository(ABC):
    """Коллекции users и transactions без серверных транзакций и фильтрации"""

    @abstractmethod
    def list_users(self) -> List[User]:...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:...

    @abstractmethod
    def update_user_balance(self, user_id: str, balance: float) -> User:...

    @abstractmethod
    def list_transactions(self) -> List[Transaction]:...

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:...

    @abstractmethod
    def create_transaction(self, transaction: Transaction) -> Transaction:...

    @abstractmethod
    def update_transaction(self, transaction_id: str, changes: Dict[str, Any]) -> Transaction:...

    # производные операции поверх базовых коллекций

    def update_transaction_status(self, transaction_id: str, status: str,
                                  note: Optional[str] = None) -> Transaction:
        changes: Dict[str, Any] = {"status": status}
        if note is not None:
            changes["note"] = note
        return self.update_transaction(transaction_id, changes)

    def delete_transaction(self, transaction_id: str) -> Transaction:
        return self.update_transaction(transaction_id, {"deleted": True, "deletedAt": utc_now_iso()})

    def restore_transaction(self, transaction_id: str) -> Transaction:
        return self.update_transaction(transaction_id, {"deleted": False, "deletedAt": None})

    def list_user_transactions(self, user_id: str) -> List[Transaction]:
        return [tx for tx in self.list_transactions() if tx.user_id == str(user_id) and not tx.deleted]
