"""Перевод между пользователями как сага из отдельных записей в хранилище.

Хранилище не умеет атомарно записывать несколько документов, поэтому перевод
выполняется шагами: debit -> fee -> списание с отправителя -> credit получателю ->
отметка success. После списания (точка невозврата) любой сбой ведёт либо к
завершению перевода, либо к компенсации (возврату средств отправителю).
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Union

from config.settings import settings
from core.entities.transaction import Transaction, CREDIT, DEBIT, FEE, PENDING, SUCCESS, FAILED
from core.entities.user import User
from core.errors import (
    InsufficientBalanceError,
    NotFoundError,
    RecipientNotFoundError,
    RefundFailedError,
    StoreError,
    TransferCancelledError,
    TransferFailedError,
    TransferRefundedError,
    ValidationFailedError,
)
from core.repositories.ledger_repository import LedgerRepository, utc_now_iso
from core.services.balance import money, sync_balances
from core.services.validation import ValidationGate, transfer_fee, validate_note, validate_topup_amount

logger = logging.getLogger(__name__)


# Общие операции над debit, их же использует reconciliation

@dataclass
class LinkedRecords:
    fee: Optional[Transaction] = None
    credit: Optional[Transaction] = None   # зачисление получателю
    refund: Optional[Transaction] = None   # возврат отправителю


def find_linked(transactions: Iterable[Transaction], debit: Transaction) -> LinkedRecords:
    linked = LinkedRecords()
    for tx in transactions:
        if not tx.is_linked_to(debit.id):
            continue
        if tx.type == FEE and linked.fee is None:
            linked.fee = tx
        elif tx.type == CREDIT:
            if tx.user_id == debit.user_id:
                linked.refund = linked.refund or tx
            else:
                linked.credit = linked.credit or tx
    return linked


def set_status(repo: LedgerRepository, tx: Optional[Transaction], status: str,
               note: Optional[str] = None) -> bool:
    """Меняет статус, только если он отличается. True, если была запись."""
    if tx is None or tx.status == status:
        return False
    repo.update_transaction_status(tx.id, status, note)
    tx.status = status
    if note is not None:
        tx.note = note
    return True


def settle_debit(repo: LedgerRepository, debit: Transaction, linked: LinkedRecords,
                 now: Callable[[], str] = utc_now_iso) -> bool:
    """Доводит debit до success: создаёт недостающий credit и отмечает debit/fee.

    Идемпотентна: если credit уже есть, только выставляет статусы.
    Возвращает True, если credit был создан этим вызовом.
    """
    created = False
    if linked.credit is None:
        if not debit.to_user_id:
            raise ValueError(f"Debit {debit.id} has no recipient")
        recipient = repo.get_user(debit.to_user_id)
        if recipient is None:
            raise RecipientNotFoundError(debit.to_user_id)
        linked.credit = repo.create_transaction(Transaction(
            id=None,
            type=CREDIT,
            amount=debit.amount,
            user_id=recipient.id,
            from_user_id=debit.user_id,
            status=SUCCESS,
            linked_transaction_id=debit.id,
            created_at=now(),
            note=f"Received from User {debit.user_id}",
        ))
        repo.update_user_balance(recipient.id, money(recipient.balance + debit.amount))
        created = True
        logger.info("Credited %.2f to user %s for debit %s", debit.amount, recipient.id, debit.id)
    set_status(repo, debit, SUCCESS)
    set_status(repo, linked.fee, SUCCESS)
    return created


def refund_amount(debit: Transaction, fee: Optional[Transaction]) -> float:
    return money(debit.amount + (fee.amount if fee is not None else 0))


def build_refund(debit: Transaction, amount: float, note: str,
                 now: Callable[[], str] = utc_now_iso) -> Transaction:
    return Transaction(
        id=None,
        type=CREDIT,
        amount=amount,
        user_id=debit.user_id,
        status=SUCCESS,
        linked_transaction_id=debit.id,
        created_at=now(),
        note=note,
    )


def refund_debit(repo: LedgerRepository, debit: Transaction, linked: LinkedRecords,
                 reason: str, now: Callable[[], str] = utc_now_iso) -> Transaction:
    """Отменяет перевод: debit/fee -> failed, один возврат amount+fee отправителю"""
    set_status(repo, debit, FAILED, f"Failed: {reason}")
    set_status(repo, linked.fee, FAILED, f"Failed: {reason} (fee)")
    if linked.refund is not None:
        return linked.refund
    sender = repo.get_user(debit.user_id)
    if sender is None:
        raise NotFoundError("User", debit.user_id)
    total = refund_amount(debit, linked.fee)
    linked.refund = repo.create_transaction(build_refund(
        debit, total, f"Refund: Transfer failed ({reason.lower()}, linked to {debit.id})", now,
    ))
    repo.update_user_balance(sender.id, money(sender.balance + total))
    logger.warning("Refunded %.2f to user %s for debit %s (%s)", total, sender.id, debit.id, reason)
    return linked.refund


# Сага

@dataclass
class TransferResult:
    debit_id: str
    fee_id: Optional[str]
    credit_id: str
    amount: float
    fee: float
    total: float
    sender_balance: float
    settled: bool  # False - перевод совершён, но часть отметок оставлена reconciliation


class _CancelRequested(Exception):
    pass


class TransferSaga:
    """Один перевод. Хранит, как далеко продвинулось выполнение, для компенсации."""

    def __init__(self, repo: LedgerRepository, sender_id: str, recipient_id: str,
                 amount: float, note: Optional[str] = None,
                 fee_percent: float = settings.FEE_PERCENT,
                 now: Callable[[], str] = utc_now_iso):
        self.repo = repo
        self.sender_id = str(sender_id)
        self.recipient_id = str(recipient_id).strip()
        self.amount = money(amount)
        self.fee_amount = transfer_fee(self.amount, fee_percent)
        self.total = money(self.amount + self.fee_amount)
        self.note = (note or "").strip() or None
        self.now = now

        self.debit: Optional[Transaction] = None
        self.fee: Optional[Transaction] = None
        self.credit: Optional[Transaction] = None
        self.original_balance: Optional[float] = None
        self._recipient: Optional[User] = None

        self.debit_created = False
        self.fee_created = False
        self.balance_deducted = False
        self.recipient_credited = False

        self._started = False
        self._cancel_requested = False

    @property
    def debit_id(self) -> Optional[str]:
        return self.debit.id if self.debit is not None else None

    def cancel(self) -> None:
        """Запрос отмены. После списания отмена проходит через компенсацию."""
        self._cancel_requested = True

    def run(self) -> TransferResult:
        if self._started:
            raise RuntimeError("Transfer saga cannot be re-entered")
        self._started = True

        sender = self._precheck()
        try:
            self._checkpoint()
            self._create_debit()
            self._checkpoint()
            self._create_fee()
            self._checkpoint()
            self._deduct_sender(sender)
            self._checkpoint()
            self._credit_recipient(sender)
        except Exception as exc:
            self._fail(exc)
        return self._finish()

    # шаг 1: без записей
    def _precheck(self) -> User:
        if self.amount <= 0:
            raise ValidationFailedError(["Amount must be at least 0.01"])
        try:
            sender = self.repo.get_user(self.sender_id)
            recipient = self.repo.get_user(self.recipient_id)
        except StoreError as exc:
            logger.error("Pre-transfer check failed: %s", exc)
            raise TransferFailedError() from exc
        if sender is None:
            raise NotFoundError("User", self.sender_id)
        if recipient is None:
            raise RecipientNotFoundError(self.recipient_id)
        if money(sender.balance) < self.total:
            raise InsufficientBalanceError(sender.balance, self.total)
        self.original_balance = sender.balance
        return sender

    def _checkpoint(self) -> None:
        if self._cancel_requested:
            raise _CancelRequested()

    # шаг 2
    def _create_debit(self) -> None:
        self.debit = self.repo.create_transaction(Transaction(
            id=None,
            type=DEBIT,
            amount=self.amount,
            user_id=self.sender_id,
            to_user_id=self.recipient_id,
            status=PENDING,
            note=self.note or f"Transfer to User #{self.recipient_id}",
            created_at=self.now(),
        ))
        self.debit_created = True
        logger.info("Transfer %s: debit created (%s -> %s, %.2f)",
                    self.debit.id, self.sender_id, self.recipient_id, self.amount)

    # шаг 3: комиссия, округлённая до нуля, не записывается
    def _create_fee(self) -> None:
        if self.fee_amount <= 0:
            return
        self.fee = self.repo.create_transaction(Transaction(
            id=None,
            type=FEE,
            amount=self.fee_amount,
            user_id=self.sender_id,
            status=PENDING,
            note="Transfer fee",
            linked_transaction_id=self.debit.id,
            created_at=self.debit.created_at,
        ))
        self.fee_created = True

    # шаг 4: точка невозврата
    def _deduct_sender(self, sender: User) -> None:
        self.repo.update_user_balance(self.sender_id, money(self.original_balance - self.total))
        self.balance_deducted = True
        logger.info("Transfer %s: sender %s debited %.2f", self.debit.id, sender.id, self.total)

    # шаг 5a: после создания credit перевод считается совершённым
    def _credit_recipient(self, sender: User) -> None:
        recipient = self.repo.get_user(self.recipient_id)
        if recipient is None:
            raise RecipientNotFoundError(self.recipient_id)
        self.credit = self.repo.create_transaction(Transaction(
            id=None,
            type=CREDIT,
            amount=self.amount,
            user_id=recipient.id,
            from_user_id=self.sender_id,
            status=SUCCESS,
            note=f"Received from {sender.name or 'User'}",
            linked_transaction_id=self.debit.id,
            created_at=self.debit.created_at,
        ))
        self.recipient_credited = True
        self._recipient = recipient

    # шаги 5b и 6: сбои здесь не отменяют перевод, их дочинит reconciliation
    def _finish(self) -> TransferResult:
        settled = True
        try:
            self.repo.update_user_balance(
                self._recipient.id, money(self._recipient.balance + self.amount))
        except StoreError:
            logger.exception("Transfer %s: recipient balance update failed, left for reconciliation",
                             self.debit.id)
            settled = False
        for tx in (self.debit, self.fee):
            try:
                set_status(self.repo, tx, SUCCESS)
            except StoreError:
                logger.exception("Transfer %s: failed to mark %s %s as success",
                                 self.debit.id, tx.type, tx.id)
                settled = False
        logger.info("Transfer %s completed (settled=%s)", self.debit.id, settled)
        return TransferResult(
            debit_id=self.debit.id,
            fee_id=self.fee.id if self.fee is not None else None,
            credit_id=self.credit.id,
            amount=self.amount,
            fee=self.fee_amount,
            total=self.total,
            sender_balance=money(self.original_balance - self.total),
            settled=settled,
        )

    def _fail(self, exc: Exception) -> None:
        cancelled = isinstance(exc, _CancelRequested)
        if cancelled:
            logger.warning("Transfer %s cancelled by caller", self.debit_id)
        else:
            logger.error("Transfer %s failed: %s", self.debit_id, exc, exc_info=exc)

        if not self.balance_deducted:
            self._mark_failed("Transfer failed - balance untouched")
            if cancelled:
                raise TransferCancelledError(self.debit_id) from None
            raise TransferFailedError(self.debit_id) from exc

        try:
            refund = self._compensate()
        except Exception as refund_exc:
            logger.critical("Transfer %s: refund failed, ledger inconsistent until reconciliation",
                            self.debit_id, exc_info=refund_exc)
            self._mark_failed("Transfer failed - refund pending")
            raise RefundFailedError(self.debit_id) from refund_exc
        self._mark_failed("Transfer failed - see refund")
        raise TransferRefundedError(self.debit_id, refund.id) from (None if cancelled else exc)

    def _compensate(self) -> Transaction:
        self.repo.update_user_balance(self.sender_id, self.original_balance)
        total = refund_amount(self.debit, self.fee)
        refund = self.repo.create_transaction(build_refund(
            self.debit, total, f"Refund: Transfer failed (linked to {self.debit.id})", self.now,
        ))
        logger.warning("Transfer %s: refunded %.2f to user %s", self.debit.id, total, self.sender_id)
        return refund

    def _mark_failed(self, note: str) -> None:
        for tx in (self.debit, self.fee):
            if tx is None:
                continue
            try:
                set_status(self.repo, tx, FAILED, note)
            except Exception:
                logger.exception("Failed to mark %s %s as failed", tx.type, tx.id)


# Сценарии

def transfer_money(repo: LedgerRepository, sender_id: str, recipient_id: Any, amount: Any,
                   note: Optional[str] = None,
                   known_users: Optional[Iterable[Union[User, str]]] = None,
                   gate: Optional[ValidationGate] = None) -> TransferResult:
    gate = gate or ValidationGate(repo)
    gate.validate(amount, recipient_id, sender_id, note, known_users).raise_for_errors()
    saga = TransferSaga(repo, sender_id, recipient_id, float(amount), note, fee_percent=gate.fee_percent)
    return saga.run()


def retry_pending_transfer(repo: LedgerRepository, debit_id: str) -> dict:
    debit = repo.get_transaction(debit_id)
    if debit is None:
        raise NotFoundError("Transaction", debit_id)
    if debit.type != DEBIT:
        raise ValueError("Retry supported only for debit transactions")
    if debit.status == FAILED:
        return {"debit_id": debit.id, "skipped": True, "status": FAILED}
    linked = find_linked(repo.list_transactions(), debit)
    if linked.refund is not None:
        raise ValueError("Transfer was already refunded")
    settle_debit(repo, debit, linked)
    return {"debit_id": debit.id, "skipped": False, "status": SUCCESS}


def top_up_balance(repo: LedgerRepository, user_id: str, amount: Any,
                   note: Optional[str] = None) -> User:
    checks = [validate_topup_amount(amount), validate_note(note)]
    errors = [c.message for c in checks if not c.is_valid]
    if errors:
        raise ValidationFailedError(errors)
    user = repo.get_user(user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    value = money(float(amount))
    repo.create_transaction(Transaction(
        id=None,
        type=CREDIT,
        amount=value,
        user_id=user.id,
        status=SUCCESS,
        note=(note or "").strip() or "Top-up",
        created_at=utc_now_iso(),
    ))
    return repo.update_user_balance(user.id, money(user.balance + value))


def list_user_transactions(repo: LedgerRepository, user_id: str) -> List[Transaction]:
    txs = repo.list_user_transactions(user_id)
    return sorted(txs, key=lambda tx: tx.created_at, reverse=True)


def delete_transaction(repo: LedgerRepository, transaction_id: str) -> Transaction:
    tx = repo.get_transaction(transaction_id)
    if tx is None:
        raise NotFoundError("Transaction", transaction_id)
    deleted = repo.delete_transaction(tx.id)
    sync_balances(repo, user_ids=[tx.user_id])
    return deleted


def restore_transaction(repo: LedgerRepository, transaction_id: str) -> Transaction:
    tx = repo.get_transaction(transaction_id)
    if tx is None:
        raise NotFoundError("Transaction", transaction_id)
    restored = repo.restore_transaction(tx.id)
    sync_balances(repo, user_ids=[tx.user_id])
    return restored
