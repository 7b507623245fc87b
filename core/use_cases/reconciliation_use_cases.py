"""Восстановление журнала после сбоя посреди перевода.

Один последовательный проход при старте процесса: незавершённые debit либо
доводятся до конца, либо (если старше порога) отменяются с возвратом средств,
после чего кэш балансов сверяется с журналом. Повторный проход по
согласованному журналу не делает ни одной записи.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional

from config.settings import settings
from core.entities.transaction import Transaction, CREDIT, DEBIT, PENDING, SUCCESS, FAILED
from core.repositories.ledger_repository import LedgerRepository
from core.services.balance import sync_balances
from core.use_cases.transfer_use_cases import find_linked, refund_debit, set_status, settle_debit

logger = logging.getLogger(__name__)

STALE_REASON = "Timeout (>{hours:g}h)"


def parse_timestamp(value: str) -> datetime:
    if not value:
        raise ValueError("Transaction has no createdAt")
    # JS toISOString() пишет "Z" вместо смещения
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def find_incomplete_debits(transactions: List[Transaction]) -> List[Transaction]:
    credited = {tx.linked_transaction_id for tx in transactions
                if tx.type == CREDIT and tx.linked_transaction_id is not None}
    return [
        tx for tx in transactions
        if tx.type == DEBIT
        and tx.status != FAILED
        and (tx.status == PENDING or (tx.status == SUCCESS and tx.id not in credited))
    ]


@dataclass
class ReconciliationReport:
    completed: List[str] = field(default_factory=list)  # создан недостающий credit
    refunded: List[str] = field(default_factory=list)   # отменены по возрасту
    resolved: List[str] = field(default_factory=list)   # только выставлены статусы
    skipped: List[Dict[str, str]] = field(default_factory=list)
    balances_synced: List[str] = field(default_factory=list)

    @property
    def fixed(self) -> List[str]:
        return self.completed + self.refunded + self.resolved

    @property
    def count(self) -> int:
        return len(self.fixed)

    def to_dict(self) -> dict:
        return {
            "fixed": self.fixed,
            "count": self.count,
            "completed": self.completed,
            "refunded": self.refunded,
            "resolved": self.resolved,
            "skipped": self.skipped,
            "balances_synced": self.balances_synced,
        }


class ReconciliationEngine:
    def __init__(self, repo: LedgerRepository,
                 stale_after: timedelta = timedelta(hours=settings.RECONCILE_STALE_HOURS),
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.repo = repo
        self.stale_after = stale_after
        self.clock = clock

    def _now_iso(self) -> str:
        return self.clock().isoformat()

    @property
    def stale_reason(self) -> str:
        return STALE_REASON.format(hours=self.stale_after.total_seconds() / 3600)

    def run(self) -> ReconciliationReport:
        report = ReconciliationReport()
        transactions = self.repo.list_transactions()
        incomplete = find_incomplete_debits(transactions)
        if incomplete:
            logger.info("Reconciliation: %d incomplete transfer(s) found", len(incomplete))

        # строго последовательно: два исправления не должны гоняться за одним балансом
        for debit in incomplete:
            try:
                self._repair(debit, transactions, report)
            except Exception as exc:
                logger.error("Reconciliation: skipping debit %s: %s", debit.id, exc, exc_info=exc)
                report.skipped.append({"debit_id": debit.id, "error": str(exc)})

        report.balances_synced = sync_balances(self.repo)
        logger.info(
            "Reconciliation finished: completed=%d refunded=%d resolved=%d skipped=%d synced=%d",
            len(report.completed), len(report.refunded), len(report.resolved),
            len(report.skipped), len(report.balances_synced),
        )
        return report

    def _repair(self, debit: Transaction, transactions: List[Transaction],
                report: ReconciliationReport) -> None:
        linked = find_linked(transactions, debit)

        if linked.credit is not None:
            set_status(self.repo, debit, SUCCESS)
            set_status(self.repo, linked.fee, SUCCESS)
            report.resolved.append(debit.id)
            return

        if linked.refund is not None:
            # компенсация прошла, но отметка failed не записалась
            set_status(self.repo, debit, FAILED, "Transfer failed - see refund")
            set_status(self.repo, linked.fee, FAILED, "Transfer failed - see refund")
            report.resolved.append(debit.id)
            return

        age = self.clock() - parse_timestamp(debit.created_at)
        if age > self.stale_after:
            refund = refund_debit(self.repo, debit, linked, self.stale_reason, self._now_iso)
            transactions.append(refund)
            report.refunded.append(debit.id)
        else:
            settle_debit(self.repo, debit, linked, self._now_iso)
            transactions.append(linked.credit)
            report.completed.append(debit.id)


class ReconciliationGuard:
    """Гарантирует один проход reconciliation на процесс"""

    def __init__(self):
        self._lock = Lock()
        # проходы (стартовый и ручные) никогда не идут параллельно
        self._run_lock = Lock()
        self._started = False
        self.last_report: Optional[ReconciliationReport] = None

    @property
    def started(self) -> bool:
        return self._started

    def run_serialized(self, engine_factory: Callable[[], ReconciliationEngine]) -> ReconciliationReport:
        with self._run_lock:
            self.last_report = engine_factory().run()
            return self.last_report

    def run_once(self, engine_factory: Callable[[], ReconciliationEngine]) -> Optional[ReconciliationReport]:
        with self._lock:
            if self._started:
                return None
            # флаг ставится до прохода, повторные вызовы во время прохода ничего не делают
            self._started = True
        return self.run_serialized(engine_factory)

    def reset(self) -> None:
        with self._lock:
            self._started = False
            self.last_report = None


reconciliation_guard = ReconciliationGuard()


def reconcile_all_pending_transfers(repo: LedgerRepository) -> ReconciliationReport:
    return ReconciliationEngine(repo).run()
