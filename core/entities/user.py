from dataclasses import dataclass
from typing import Dict, Any


@dataclass
class User:
    id: str
    name: str
    balance: float  # кэш, источник истины - журнал транзакций

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            balance=float(data.get("balance") or 0),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "balance": self.balance}

    @property
    def display_name(self) -> str:
        return self.name or f"User #{self.id}"
