"""Error taxonomy and result values shared by the trade pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class TradeError(Exception):
    code = "trade_error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: dict[str, Any] = dict(details)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(TradeError):
    code = "validation"


class RateLimitError(TradeError):
    code = "rate_limited"

    def __init__(self, message: str, *, retry_at: float, limit: int, remaining: int = 0) -> None:
        super().__init__(message, retry_at=retry_at, limit=limit, remaining=remaining)
        self.retry_at = float(retry_at)
        self.limit = int(limit)
        self.remaining = int(remaining)


class GatewayError(TradeError):
    code = "gateway"


class CircuitOpenError(GatewayError):
    code = "circuit_open"

    def __init__(self, message: str, *, retry_in: float) -> None:
        super().__init__(message, retry_in=round(max(0.0, retry_in), 3))
        self.retry_in = max(0.0, float(retry_in))


class GatewayResponseError(GatewayError):
    """Non-retryable client error returned by the remote service."""

    code = "gateway_response"

    def __init__(self, message: str, *, status: int, body: Any = None) -> None:
        super().__init__(message, status=status)
        self.status = int(status)
        self.body = body


class GatewayTransientError(GatewayError):
    code = "gateway_transient"

    def __init__(self, message: str, *, status: int = 0) -> None:
        super().__init__(message, status=status)
        self.status = int(status)


class GatewayExhaustedError(GatewayError):
    code = "gateway_exhausted"

    def __init__(self, message: str, *, attempts: int, last_error: GatewayError | None) -> None:
        super().__init__(message, attempts=attempts, last_error=str(last_error or ""))
        self.attempts = int(attempts)
        self.last_error = last_error


class SwapError(TradeError):
    code = "swap"


class QuoteError(SwapError):
    code = "quote_failed"


class BuildError(SwapError):
    code = "build_failed"


class TransactionDecodeError(BuildError):
    code = "transaction_decode"


class InsufficientBalanceError(TradeError):
    code = "insufficient_balance"

    def __init__(self, message: str, *, balance: int, required: int) -> None:
        shortfall = max(0, int(required) - int(balance))
        super().__init__(message, balance=int(balance), required=int(required), shortfall=shortfall)
        self.balance = int(balance)
        self.required = int(required)
        self.shortfall = shortfall


class InvalidTransactionTypeError(TradeError):
    code = "invalid_transaction_type"


class MissingCredentialError(TradeError):
    code = "missing_credential"


class ExecutionError(TradeError):
    code = "execution"


class InsufficientFundsError(ExecutionError):
    code = "insufficient_funds"


class ExpiredReferenceError(ExecutionError):
    code = "expired_reference"


class SimulationFailureError(ExecutionError):
    code = "simulation_failed"


class CustomProgramError(SimulationFailureError):
    code = "custom_program_error"


class UnknownExecutionError(ExecutionError):
    code = "execution_unknown"


class VerificationError(TradeError):
    code = "verification_failed"


class PositionError(TradeError):
    code = "position"


class PositionExistsError(PositionError):
    code = "position_exists"


class PositionNotFoundError(PositionError):
    code = "position_not_found"


class PositionBusyError(PositionError):
    code = "position_busy"


class FeeError(TradeError):
    code = "fee_failed"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: T | None = None
    error: TradeError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: TradeError) -> "Result[T]":
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        if not self.ok:
            raise self.error or TradeError("result_failed")
        return self.value  # type: ignore[return-value]
