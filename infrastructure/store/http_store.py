"""Клиент REST-хранилища (json-server): коллекции /users и /transactions.

Фильтрации на стороне сервера нет, поэтому списки забираются целиком и
фильтруются на клиенте.
"""
import logging
from typing import Optional, List, Dict, Any

import requests

from config.settings import settings
from core.entities.user import User
from core.entities.transaction import Transaction
from core.errors import StoreError
from core.repositories.ledger_repository import LedgerRepository, ensure_mutable

logger = logging.getLogger(__name__)


class HTTPLedgerRepository(LedgerRepository):
    def __init__(self, base_url: str = settings.STORE_BASE_URL,
                 timeout: float = settings.STORE_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
        })

    def close(self) -> None:
        self.session.close()

    def _request(self, method: str, path: str, operation: str,
                 payload: Optional[Dict[str, Any]] = None, allow_404: bool = False):
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Store %s %s unreachable: %s", method, url, e)
            raise StoreError(str(e), operation) from e
        if allow_404 and resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise StoreError(f"HTTP {resp.status_code} from {method} {path}", operation)
        try:
            return resp.json()
        except ValueError as e:
            raise StoreError(f"invalid JSON from {method} {path}", operation) from e

    # users

    def list_users(self) -> List[User]:
        data = self._request("GET", "/users", "list users") or []
        return [User.from_payload(item) for item in data]

    def get_user(self, user_id: str) -> Optional[User]:
        data = self._request("GET", f"/users/{user_id}", "get user", allow_404=True)
        return User.from_payload(data) if data else None

    def update_user_balance(self, user_id: str, balance: float) -> User:
        data = self._request("PATCH", f"/users/{user_id}", "update user", {"balance": balance})
        return User.from_payload(data)

    # transactions

    def list_transactions(self) -> List[Transaction]:
        data = self._request("GET", "/transactions", "list transactions") or []
        return [Transaction.from_payload(item) for item in data]

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self._request("GET", f"/transactions/{transaction_id}", "get transaction", allow_404=True)
        return Transaction.from_payload(data) if data else None

    def create_transaction(self, transaction: Transaction) -> Transaction:
        payload = transaction.to_payload()
        payload.pop("id", None)
        data = self._request("POST", "/transactions", "create transaction", payload)
        return Transaction.from_payload(data)

    def update_transaction(self, transaction_id: str, changes: Dict[str, Any]) -> Transaction:
        ensure_mutable(changes)
        data = self._request("PATCH", f"/transactions/{transaction_id}", "update transaction", changes)
        return Transaction.from_payload(data)
