import logging
from dataclasses import dataclass
from typing import Iterable, Dict, List, Optional
from core.entities.transaction import Transaction, CREDIT, DEBIT, FEE
from core.errors import NotFoundError
from core.repositories.ledger_repository import LedgerRepository

logger = logging.getLogger(__name__)


def money(value: float) -> float:
    """Округление до копеек, чтобы кэш и вычисленный баланс сравнивались точно"""
    return round(float(value), 2) + 0.0


def derive_balance(transactions: Iterable[Transaction]) -> float:
    total = 0.0
    for tx in transactions:
        if not tx.counts_toward_balance:
            continue
        if tx.type == CREDIT:
            total += tx.amount
        elif tx.type in (DEBIT, FEE):
            total -= tx.amount
    return money(total)


def derive_balances(transactions: Iterable[Transaction]) -> Dict[str, float]:
    """Баланс по каждому userId за один проход по журналу"""
    grouped: Dict[str, List[Transaction]] = {}
    for tx in transactions:
        grouped.setdefault(tx.user_id, []).append(tx)
    return {user_id: derive_balance(txs) for user_id, txs in grouped.items()}


@dataclass
class BalanceCheck:
    stored: float
    computed: float
    is_consistent: bool


def check_balance(repo: LedgerRepository, user_id: str) -> BalanceCheck:
    user = repo.get_user(user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    computed = derive_balance(repo.list_user_transactions(user_id))
    stored = money(user.balance)
    return BalanceCheck(stored=stored, computed=computed, is_consistent=stored == computed)


def sync_balances(repo: LedgerRepository,
                  transactions: Optional[Iterable[Transaction]] = None,
                  user_ids: Optional[Iterable[str]] = None) -> List[str]:
    """Перезаписывает кэш баланса там, где он разошёлся с журналом.

    Возвращает id пользователей, чей баланс был исправлен. Если всё сходится,
    ни одной записи в хранилище не делается.
    """
    if transactions is None:
        transactions = repo.list_transactions()
    derived = derive_balances(tx for tx in transactions if not tx.deleted)
    wanted = None if user_ids is None else {str(u) for u in user_ids}
    synced = []
    for user in repo.list_users():
        if wanted is not None and user.id not in wanted:
            continue
        computed = derived.get(user.id, 0.0)
        if money(user.balance) != computed:
            logger.warning(
                "Balance drift for user %s: stored=%.2f derived=%.2f, resyncing",
                user.id, user.balance, computed,
            )
            repo.update_user_balance(user.id, computed)
            synced.append(user.id)
    return synced
