import pytest
import requests

from core.entities.transaction import Transaction, DEBIT, PENDING
from core.errors import StoreError
from infrastructure.store.http_store import HTTPLedgerRepository
from infrastructure.web.controllers import wallet_controller


class FakeResponse:
    def __init__(self, status_code=200, data=None):
        self.status_code = status_code
        self._data = data

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.headers = {}
        self.calls = []
        self.responses = list(responses or [])
        self.error = error
        self.closed = False

    def request(self, method, url, json=None, timeout=None):
        self.calls.append((method, url, json, timeout))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)

    def close(self):
        self.closed = True


def make_repo(*responses, error=None):
    session = FakeSession(responses, error)
    return HTTPLedgerRepository("http://store:3001/", timeout=2, session=session), session


def test_list_users_maps_payload():
    repo, session = make_repo(FakeResponse(data=[{"id": 1, "name": "Alice", "balance": 5000}]))
    [user] = repo.list_users()
    assert (user.id, user.name, user.balance) == ("1", "Alice", 5000)
    assert session.calls == [("GET", "http://store:3001/users", None, 2)]
    assert session.headers["Cache-Control"] == "no-cache"


def test_missing_user_is_none():
    repo, _ = make_repo(FakeResponse(404, {}))
    assert repo.get_user("9") is None


def test_update_balance_patches_only_balance():
    repo, session = make_repo(FakeResponse(data={"id": "1", "name": "Alice", "balance": 4490}))
    assert repo.update_user_balance("1", 4490).balance == 4490
    assert session.calls[0][:3] == ("PATCH", "http://store:3001/users/1", {"balance": 4490})


def test_create_transaction_posts_camel_case_without_id():
    repo, session = make_repo(FakeResponse(201, {
        "id": "a1", "type": "debit", "amount": 500, "userId": "1", "toUserId": "2",
        "status": "pending", "createdAt": "2025-03-01T12:00:00Z",
    }))
    created = repo.create_transaction(Transaction(
        id=None, type=DEBIT, amount=500, user_id="1", to_user_id="2",
        status=PENDING, created_at="2025-03-01T12:00:00Z",
    ))
    method, url, payload, _ = session.calls[0]
    assert (method, url) == ("POST", "http://store:3001/transactions")
    assert "id" not in payload
    assert payload["userId"] == "1" and payload["toUserId"] == "2"
    assert created.id == "a1" and created.to_user_id == "2"


def test_soft_delete_and_restore_payloads():
    row = {"id": "7", "type": "credit", "amount": 10, "userId": "1", "status": "success",
           "createdAt": "2025-03-01T12:00:00Z"}
    repo, session = make_repo(FakeResponse(data=dict(row, deleted=True)), FakeResponse(data=row))
    repo.delete_transaction("7")
    repo.restore_transaction("7")
    assert session.calls[0][2]["deleted"] is True and session.calls[0][2]["deletedAt"]
    assert session.calls[1][2] == {"deleted": False, "deletedAt": None}


def test_immutable_fields_are_refused():
    repo, session = make_repo()
    with pytest.raises(ValueError):
        repo.update_transaction("7", {"amount": 1})
    assert session.calls == []


def test_network_error_becomes_store_error():
    repo, _ = make_repo(error=requests.ConnectionError("refused"))
    with pytest.raises(StoreError) as exc_info:
        repo.list_transactions()
    assert exc_info.value.operation == "list transactions"


def test_server_error_becomes_store_error():
    repo, _ = make_repo(FakeResponse(500, {}))
    with pytest.raises(StoreError):
        repo.get_transaction("1")


def test_request_scoped_repo_closes_its_session(monkeypatch):
    session = FakeSession()
    monkeypatch.setattr(wallet_controller.settings, "STORE_BACKEND", "http")
    monkeypatch.setattr(wallet_controller, "HTTPLedgerRepository",
                        lambda: HTTPLedgerRepository("http://store:3001", session=session))

    dependency = wallet_controller.get_repo()
    repo = next(dependency)
    assert repo.session is session and not session.closed
    dependency.close()
    assert session.closed
