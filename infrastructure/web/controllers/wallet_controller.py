import logging
import sqlite3
from typing import Optional, List

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import settings
from core.entities.transaction import Transaction, FEE
from core.entities.user import User
from core.errors import WalletError
from core.repositories.ledger_repository import LedgerRepository
from core.services.balance import check_balance, money
from core.services.validation import ValidationGate, transfer_fee
from core.use_cases.transfer_use_cases import (
    delete_transaction,
    list_user_transactions,
    restore_transaction,
    retry_pending_transfer,
    top_up_balance,
    transfer_money,
)
from core.use_cases.reconciliation_use_cases import ReconciliationEngine, reconciliation_guard
from infrastructure.db.sqlite import SQLiteLedgerRepository
from infrastructure.store.http_store import HTTPLedgerRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["wallet"])


def get_repo():
    if settings.STORE_BACKEND == "sqlite":
        conn = sqlite3.connect(settings.DB_PATH, check_same_thread=False)
        try:
            yield SQLiteLedgerRepository(conn)
        finally:
            conn.close()
    else:
        repo = HTTPLedgerRepository()
        try:
            yield repo
        finally:
            repo.close()


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(WalletError)
    async def wallet_error_handler(request: Request, exc: WalletError):
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message,
                       extra={"error_code": exc.code, "path": request.url.path})
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())


# DTO

class UserResponse(BaseModel):
    id: str
    name: str
    balance: float


class TransactionItem(BaseModel):
    id: str
    type: str
    amount: float
    userId: str
    status: str
    note: Optional[str] = None
    toUserId: Optional[str] = None
    fromUserId: Optional[str] = None
    linkedTransactionId: Optional[str] = None
    createdAt: str
    deleted: bool = False
    deletedAt: Optional[str] = None


class BalanceResponse(BaseModel):
    user_id: str
    stored: float
    computed: float
    is_consistent: bool


class TopUpRequest(BaseModel):
    amount: Optional[float] = None
    note: Optional[str] = None


class TransferRequest(BaseModel):
    sender_id: str
    recipient_id: Optional[str] = None
    amount: Optional[float] = None
    note: Optional[str] = None


class ValidationResponse(BaseModel):
    ok: bool
    errors: List[str]
    fee: Optional[float] = None
    total: Optional[float] = None


class TransferResponse(BaseModel):
    debit_id: str
    fee_id: Optional[str] = None
    credit_id: str
    amount: float
    fee: float
    total: float
    sender_balance: float
    settled: bool


def _user_response(user: User) -> UserResponse:
    return UserResponse(id=user.id, name=user.name, balance=user.balance)


def _tx_item(tx: Transaction) -> TransactionItem:
    return TransactionItem(**tx.to_payload())


@router.get("/users", response_model=List[UserResponse])
def get_users(repo: LedgerRepository = Depends(get_repo)):
    return [_user_response(u) for u in repo.list_users()]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(user_id: str, repo: LedgerRepository = Depends(get_repo)):
    user = repo.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return _user_response(user)


@router.get("/users/{user_id}/transactions", response_model=List[TransactionItem])
def get_user_transactions(user_id: str, include_fees: bool = True,
                          repo: LedgerRepository = Depends(get_repo)):
    txs = list_user_transactions(repo, user_id)
    if not include_fees:
        txs = [tx for tx in txs if tx.type != FEE]
    return [_tx_item(tx) for tx in txs]


@router.get("/users/{user_id}/balance", response_model=BalanceResponse)
def get_balance(user_id: str, repo: LedgerRepository = Depends(get_repo)):
    result = check_balance(repo, user_id)
    return BalanceResponse(
        user_id=user_id, stored=result.stored, computed=result.computed,
        is_consistent=result.is_consistent,
    )


@router.post("/users/{user_id}/topup", response_model=UserResponse)
def topup(user_id: str, payload: TopUpRequest, repo: LedgerRepository = Depends(get_repo)):
    updated = top_up_balance(repo, user_id, payload.amount, payload.note)
    return _user_response(updated)


@router.post("/transfers/validate", response_model=ValidationResponse)
def validate_transfer(payload: TransferRequest, repo: LedgerRepository = Depends(get_repo)):
    gate = ValidationGate(repo)
    result = gate.validate(payload.amount, payload.recipient_id, payload.sender_id,
                           payload.note, known_users=repo.list_users())
    fee = total = None
    if result.ok:
        fee = transfer_fee(payload.amount, gate.fee_percent)
        total = money(payload.amount + fee)
    return ValidationResponse(ok=result.ok, errors=result.errors, fee=fee, total=total)


@router.post("/transfers", response_model=TransferResponse, status_code=201)
def create_transfer(payload: TransferRequest, repo: LedgerRepository = Depends(get_repo)):
    result = transfer_money(repo, payload.sender_id, payload.recipient_id, payload.amount,
                            payload.note, known_users=repo.list_users())
    return TransferResponse(
        debit_id=result.debit_id, fee_id=result.fee_id, credit_id=result.credit_id,
        amount=result.amount, fee=result.fee, total=result.total,
        sender_balance=result.sender_balance, settled=result.settled,
    )


@router.delete("/transactions/{transaction_id}", response_model=TransactionItem)
def remove_transaction(transaction_id: str, repo: LedgerRepository = Depends(get_repo)):
    return _tx_item(delete_transaction(repo, transaction_id))


@router.post("/transactions/{transaction_id}/restore", response_model=TransactionItem)
def undo_remove_transaction(transaction_id: str, repo: LedgerRepository = Depends(get_repo)):
    return _tx_item(restore_transaction(repo, transaction_id))


@router.post("/transactions/{transaction_id}/retry")
def retry_transfer(transaction_id: str, repo: LedgerRepository = Depends(get_repo)):
    try:
        return retry_pending_transfer(repo, transaction_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/reconcile")
def reconcile(repo: LedgerRepository = Depends(get_repo)):
    # ручной запуск, в обход однократного запуска при старте, но не параллельно ему
    report = reconciliation_guard.run_serialized(lambda: ReconciliationEngine(repo))
    return report.to_dict()
