"""Общие фикстуры: SQLite-журнал в памяти и хранилище, которое падает по заказу."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from core.entities.transaction import Transaction, CREDIT, SUCCESS
from core.errors import StoreError
from core.use_cases.reconciliation_use_cases import reconciliation_guard
from infrastructure.db.sqlite import init_db, SQLiteLedgerRepository

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

WRITE_METHODS = ("create_transaction", "update_transaction", "update_user_balance")


class FlakyRepository(SQLiteLedgerRepository):
    """SQLite-журнал, который умеет падать на заданном вызове и считает записи"""

    def __init__(self, conn):
        super().__init__(conn)
        self._failures = []
        self.writes = []

    def fail(self, method, when=None, times=1):
        self._failures.append({"method": method, "when": when, "times": times})

    def _maybe_fail(self, method, *args):
        for rule in self._failures:
            if rule["method"] != method or rule["times"] == 0:
                continue
            if rule["when"] is None or rule["when"](*args):
                rule["times"] -= 1
                raise StoreError("injected failure", method)

    def get_user(self, user_id):
        self._maybe_fail("get_user", user_id)
        return super().get_user(user_id)

    def create_transaction(self, transaction):
        self._maybe_fail("create_transaction", transaction)
        created = super().create_transaction(transaction)
        self.writes.append(("create_transaction", created.id))
        return created

    def update_transaction(self, transaction_id, changes):
        self._maybe_fail("update_transaction", transaction_id, changes)
        updated = super().update_transaction(transaction_id, changes)
        self.writes.append(("update_transaction", transaction_id))
        return updated

    def update_user_balance(self, user_id, balance):
        self._maybe_fail("update_user_balance", user_id, balance)
        updated = super().update_user_balance(user_id, balance)
        self.writes.append(("update_user_balance", user_id))
        return updated


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:", check_same_thread=False)
    init_db(connection)
    yield connection
    connection.close()


@pytest.fixture
def repo(conn):
    return FlakyRepository(conn)


@pytest.fixture
def make_user(repo):
    """Пользователь, чей кэш баланса подкреплён credit-пополнением"""

    def _make(name, balance=0, user_id=None):
        user = repo.create_user(name, 0, user_id=user_id)
        if balance:
            repo.create_transaction(Transaction(
                id=None, type=CREDIT, amount=balance, user_id=user.id,
                status=SUCCESS, note="Top-up", created_at=NOW.isoformat(),
            ))
            user = repo.update_user_balance(user.id, balance)
        repo.writes.clear()
        return user

    return _make


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture(autouse=True)
def reset_reconciliation_guard():
    reconciliation_guard.reset()
    yield
    reconciliation_guard.reset()


def hours_ago(hours):
    return (NOW - timedelta(hours=hours)).isoformat()
