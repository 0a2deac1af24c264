from __future__ import annotations

FAIL_REASON_INSUFFICIENT_BALANCE = "insufficient_balance"
FAIL_REASON_TX_FAILED = "transaction_failed"
FAIL_REASON_NO_ENDPOINTS = "no_endpoints_available"
FAIL_REASON_PRICE_UNAVAILABLE = "price_unavailable"
FAIL_REASON_APPROVAL_FAILED = "approval_failed"
FAIL_REASON_NO_BALANCE = "no_balance"
FAIL_REASON_EXECUTION_ERROR = "execution_error"
FAIL_REASON_WATCH_TIMEOUT = "watch_timeout"


class EngineError(RuntimeError):
    reason = FAIL_REASON_EXECUTION_ERROR


class InsufficientBalance(EngineError):
    reason = FAIL_REASON_INSUFFICIENT_BALANCE


class TransactionFailed(EngineError):
    reason = FAIL_REASON_TX_FAILED

    def __init__(self, message: str, *, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class NoEndpointsAvailable(EngineError):
    reason = FAIL_REASON_NO_ENDPOINTS


class PriceUnavailable(EngineError):
    reason = FAIL_REASON_PRICE_UNAVAILABLE


class ApprovalFailed(EngineError):
    reason = FAIL_REASON_APPROVAL_FAILED


class EndpointTransportError(RuntimeError):
    def __init__(self, message: str, *, endpoint: str = "") -> None:
        super().__init__(message)
        self.endpoint = endpoint


class LedgerRevertError(RuntimeError):
    pass


class ConfigurationError(ValueError):
    pass


_INSUFFICIENT_BALANCE_MARKERS = (
    "insufficient balance",
    "exceeds balance",
    "transfer_from_failed",
    "transfer amount exceeds",
    "insufficient funds",
)


def is_insufficient_balance_message(message: str) -> bool:
    normalized = (message or "").lower()
    return any(marker in normalized for marker in _INSUFFICIENT_BALANCE_MARKERS)
