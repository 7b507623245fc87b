"""Иерархия ошибок кошелька.

Ошибки валидации (400-е) исправимы пользователем и возникают до записи в журнал.
Ошибки саги и хранилища (500-е) возникают после того, как часть записей уже сделана.
"""
from typing import Any, Dict, List, Optional


class WalletError(Exception):
    """Базовая ошибка, которую контроллер превращает в JSON-ответ"""

    code = "WALLET_ERROR"
    http_status = 500

    def __init__(self, message: str, debit_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.debit_id = debit_id

    def to_response(self) -> Dict[str, Any]:
        error = {"code": self.code, "message": self.message}
        if self.debit_id is not None:
            error["debit_id"] = self.debit_id
        return {"error": error}


# Ошибки валидации

class ValidationFailedError(WalletError):
    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, errors: List[str]):
        super().__init__(". ".join(errors))
        self.errors = errors

    def to_response(self) -> Dict[str, Any]:
        response = super().to_response()
        response["error"]["errors"] = list(self.errors)
        return response


class InsufficientBalanceError(WalletError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 402

    def __init__(self, balance: float, required: float):
        super().__init__(
            f"Insufficient balance. You have {balance:.2f}, need {required:.2f} (incl. fee)."
        )
        self.balance = balance
        self.required = required


class RecipientNotFoundError(WalletError):
    code = "RECIPIENT_NOT_FOUND"
    http_status = 404

    def __init__(self, recipient_id: str):
        super().__init__("Recipient not found. Please verify the User ID and try again.")
        self.recipient_id = recipient_id


class NotFoundError(WalletError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} '{resource_id}' not found")
        self.resource = resource
        self.resource_id = resource_id


# Ошибки хранилища и саги

class StoreError(WalletError):
    """Сбой обращения к хранилищу (сеть, HTTP 5xx, SQLite)"""
    code = "STORE_ERROR"
    http_status = 503

    def __init__(self, message: str, operation: str):
        super().__init__(f"Store {operation} failed: {message}")
        self.operation = operation


class TransferFailedError(WalletError):
    code = "TRANSFER_FAILED"

    def __init__(self, debit_id: Optional[str] = None):
        super().__init__("Transfer failed. Your balance was not reduced.", debit_id)


class TransferCancelledError(WalletError):
    code = "TRANSFER_CANCELLED"
    http_status = 409

    def __init__(self, debit_id: Optional[str] = None):
        super().__init__("Transfer cancelled. Your balance was not reduced.", debit_id)


class TransferRefundedError(WalletError):
    code = "TRANSFER_REFUNDED"

    def __init__(self, debit_id: Optional[str], refund_id: Optional[str]):
        super().__init__("Transfer failed after debit. Your balance has been refunded.", debit_id)
        self.refund_id = refund_id


class RefundFailedError(WalletError):
    code = "REFUND_FAILED"

    def __init__(self, debit_id: Optional[str]):
        super().__init__(
            "Transfer failed and refund encountered an issue. Please contact support.", debit_id
        )
