"""
Error kinds raised by the scratch-card engine.

Every public failure is a ScratchCardError carrying an HTTP status and a
stable code so the API layer can render it without string matching.
SupplyExhausted is internal: the outcome generator catches it and turns
the draw into a loss (or a redraw), it never reaches a caller.
"""

from http import HTTPStatus
from typing import Any, Optional


class ScratchCardError(Exception):
    """Base for all scratch-card errors."""

    status_code: int = HTTPStatus.BAD_REQUEST
    code: str = "SCRATCH_CARD_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotAvailable(ScratchCardError):
    """Card type inactive, outside its launch window, or not sold in that currency."""
    status_code = HTTPStatus.CONFLICT
    code = "NOT_AVAILABLE"


class LimitExceeded(ScratchCardError):
    status_code = HTTPStatus.TOO_MANY_REQUESTS
    code = "LIMIT_EXCEEDED"

    def __init__(self, message: str, limit: str, max_allowed: int):
        super().__init__(message, {"limit": limit, "max_allowed": max_allowed})
        self.limit = limit


class Forbidden(ScratchCardError):
    status_code = HTTPStatus.FORBIDDEN
    code = "FORBIDDEN"


class NotFound(ScratchCardError):
    status_code = HTTPStatus.NOT_FOUND
    code = "NOT_FOUND"


class InvalidState(ScratchCardError):
    status_code = HTTPStatus.CONFLICT
    code = "INVALID_STATE"


class NotCompleted(InvalidState):
    code = "NOT_COMPLETED"


class AlreadyClaimed(ScratchCardError):
    status_code = HTTPStatus.CONFLICT
    code = "ALREADY_CLAIMED"


class NotAWinner(ScratchCardError):
    status_code = HTTPStatus.CONFLICT
    code = "NOT_A_WINNER"


class InsufficientFunds(ScratchCardError):
    status_code = HTTPStatus.PAYMENT_REQUIRED
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, holder_id: str, currency: str, required: int, available: int):
        super().__init__(
            f"Insufficient {currency} balance: {available} < {required}",
            {"holder_id": holder_id, "currency": currency,
             "required": required, "available": available},
        )


class CatalogError(ScratchCardError):
    """Rejected catalog / prize-table edit."""
    status_code = HTTPStatus.BAD_REQUEST
    code = "CATALOG_ERROR"


class SupplyExhausted(ScratchCardError):
    """Internal: a drawn prize tier has no daily/lifetime supply left."""
    code = "SUPPLY_EXHAUSTED"

    def __init__(self, prize_id: str):
        super().__init__(f"Prize tier {prize_id} is out of supply", {"prize_id": prize_id})
        self.prize_id = prize_id
