import math
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Union

from config.settings import settings
from core.entities.user import User
from core.errors import ValidationFailedError
from core.repositories.ledger_repository import LedgerRepository
from core.services.balance import money


@dataclass
class RuleResult:
    is_valid: bool
    message: Optional[str] = None


@dataclass
class ValidationResult:
    ok: bool
    errors: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return ". ".join(self.errors)

    def raise_for_errors(self) -> None:
        if not self.ok:
            raise ValidationFailedError(self.errors)


_VALID = RuleResult(True)


def parse_amount(amount: Any) -> Optional[float]:
    """Число или None, если сумма не задана или не является числом"""
    if amount is None or isinstance(amount, bool):
        return None
    if isinstance(amount, str):
        amount = amount.strip()
        if not amount:
            return None
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def transfer_fee(amount: float, fee_percent: float = settings.FEE_PERCENT) -> float:
    return money(amount * fee_percent)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_transfer_amount(amount: Any, limit: float = settings.TRANSFER_LIMIT) -> RuleResult:
    if _is_blank(amount):
        return RuleResult(False, "Amount is required")
    value = parse_amount(amount)
    if value is None:
        if isinstance(amount, float):
            return RuleResult(False, "Amount is required")  # NaN
        return RuleResult(False, "Amount must be a number")
    if value <= 0:
        return RuleResult(False, "Amount must be greater than 0")
    # в журнал попадает сумма, округлённая до копеек
    if money(value) <= 0:
        return RuleResult(False, "Amount must be at least 0.01")
    if value > limit:
        return RuleResult(False, f"Amount exceeds maximum limit of {limit:,.0f}")
    return _VALID


def validate_topup_amount(amount: Any,
                          topup_limit: float = settings.TOPUP_LIMIT,
                          transfer_limit: float = settings.TRANSFER_LIMIT) -> RuleResult:
    result = validate_transfer_amount(amount, limit=topup_limit)
    if not result.is_valid:
        if result.message and result.message.startswith("Amount exceeds"):
            return RuleResult(False, f"Amount exceeds maximum top-up limit of {topup_limit:,.0f}")
        return result
    # пополнение ограничено ещё и лимитом одной операции
    if parse_amount(amount) > transfer_limit:
        return RuleResult(False, f"Amount exceeds maximum limit of {transfer_limit:,.0f}")
    return _VALID


def _user_ids(known_users: Iterable[Union[User, str, int]]) -> List[str]:
    return [str(u.id) if isinstance(u, User) else str(u) for u in known_users]


def validate_recipient(recipient_id: Any, sender_id: Any,
                       known_users: Optional[Iterable[Union[User, str, int]]] = None) -> RuleResult:
    if _is_blank(recipient_id):
        return RuleResult(False, "Please select a recipient")
    recipient = str(recipient_id).strip()
    if recipient == str(sender_id).strip():
        return RuleResult(False, "Cannot transfer money to yourself")
    if known_users is not None:
        ids = _user_ids(known_users)
        if ids and recipient not in ids:
            return RuleResult(False, "Selected recipient does not exist")
    return _VALID


def validate_note(note: Optional[str], max_length: int = settings.NOTE_MAX_LENGTH) -> RuleResult:
    if note and len(note) > max_length:
        return RuleResult(False, f"Note cannot exceed {max_length} characters")
    return _VALID


def validate_sufficient_balance(balance: float, amount: float,
                                fee_percent: float = settings.FEE_PERCENT) -> RuleResult:
    fee = transfer_fee(amount, fee_percent)
    total = money(amount + fee)
    if money(balance) < total:
        return RuleResult(
            False,
            f"Insufficient balance. You have {balance:.2f}, but need {total:.2f} "
            f"(including {fee:.2f} fee)",
        )
    return _VALID


def collect_validation_errors(validations: Iterable[RuleResult]) -> ValidationResult:
    errors = [v.message for v in validations if not v.is_valid]
    return ValidationResult(ok=not errors, errors=errors)


class ValidationGate:
    """Предварительная проверка перевода: собирает все нарушения, а не первое"""

    def __init__(self, repo: LedgerRepository,
                 fee_percent: float = settings.FEE_PERCENT,
                 transfer_limit: float = settings.TRANSFER_LIMIT,
                 note_max_length: int = settings.NOTE_MAX_LENGTH):
        self.repo = repo
        self.fee_percent = fee_percent
        self.transfer_limit = transfer_limit
        self.note_max_length = note_max_length

    def validate(self, amount: Any, recipient_id: Any, sender_id: Any,
                 note: Optional[str] = None,
                 known_users: Optional[Iterable[Union[User, str, int]]] = None) -> ValidationResult:
        amount_check = validate_transfer_amount(amount, self.transfer_limit)
        validations = [
            amount_check,
            validate_recipient(recipient_id, sender_id, known_users),
            validate_note(note, self.note_max_length),
        ]
        if amount_check.is_valid:
            validations.append(self._check_live_balance(str(sender_id), parse_amount(amount)))
        return collect_validation_errors(validations)

    def _check_live_balance(self, sender_id: str, amount: float) -> RuleResult:
        # баланс берём из хранилища заново, а не из ранее прочитанного объекта
        sender = self.repo.get_user(sender_id)
        if sender is None:
            return RuleResult(False, "Sender account not found")
        return validate_sufficient_balance(sender.balance, amount, self.fee_percent)
