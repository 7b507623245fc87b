from dataclasses import dataclass
from typing import Optional, Dict, Any

CREDIT = "credit"
DEBIT = "debit"
FEE = "fee"
TRANSACTION_TYPES = (CREDIT, DEBIT, FEE)

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"
TRANSACTION_STATUSES = (PENDING, SUCCESS, FAILED)

# только эти поля можно менять после создания
MUTABLE_FIELDS = frozenset({"status", "note", "deleted", "deletedAt"})

_FIELD_MAP = (
    ("id", "id"),
    ("type", "type"),
    ("amount", "amount"),
    ("user_id", "userId"),
    ("status", "status"),
    ("note", "note"),
    ("to_user_id", "toUserId"),
    ("from_user_id", "fromUserId"),
    ("linked_transaction_id", "linkedTransactionId"),
    ("created_at", "createdAt"),
    ("deleted", "deleted"),
    ("deleted_at", "deletedAt"),
)


def _as_id(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass
class Transaction:
    id: Optional[str]
    type: str               # "credit" | "debit" | "fee"
    amount: float           # всегда > 0, знак определяется типом
    user_id: str
    status: str             # "pending" | "success" | "failed"
    created_at: str
    note: Optional[str] = None
    to_user_id: Optional[str] = None
    from_user_id: Optional[str] = None
    linked_transaction_id: Optional[str] = None
    deleted: bool = False
    deleted_at: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Transaction":
        return cls(
            id=_as_id(data.get("id")),
            type=data["type"],
            amount=float(data["amount"]),
            user_id=str(data["userId"]),
            status=data.get("status") or SUCCESS,
            created_at=data.get("createdAt") or "",
            note=data.get("note"),
            to_user_id=_as_id(data.get("toUserId")),
            from_user_id=_as_id(data.get("fromUserId")),
            linked_transaction_id=_as_id(data.get("linkedTransactionId")),
            deleted=bool(data.get("deleted", False)),
            deleted_at=data.get("deletedAt"),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = {}
        for attr, key in _FIELD_MAP:
            value = getattr(self, attr)
            if attr == "id" and value is None:
                continue
            payload[key] = value
        return payload

    @property
    def counts_toward_balance(self) -> bool:
        return not self.deleted and self.status in (SUCCESS, PENDING)

    def is_linked_to(self, transaction_id: str) -> bool:
        return self.linked_transaction_id is not None and self.linked_transaction_id == transaction_id
