"""Error taxonomy for the risk & lifecycle engine.

Code ranges:
  1xxx: Input data
  2xxx: Chain / oracle reads
  3xxx: Payment processor
  4xxx: Loan store
  5xxx: Lifecycle
"""


class EngineError(Exception):
    """Base engine error."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


# --- 1xxx: Input data ---

class MalformedQuantity(EngineError):
    def __init__(self, field: str, value: object, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(1001, f"Malformed quantity for {field}: {value!r}{detail}")
        self.field = field
        self.value = value


# --- 2xxx: Chain / oracle ---

class OracleError(EngineError):
    def __init__(self, message: str) -> None:
        super().__init__(2001, message)


class ChainError(EngineError):
    def __init__(self, message: str) -> None:
        super().__init__(2002, message)


# --- 3xxx: Payment processor ---

class PaymentDeclined(EngineError):
    def __init__(self, message: str, status: str = "") -> None:
        super().__init__(3001, message)
        self.status = status


class ProcessorError(EngineError):
    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(3002, message)
        self.retryable = retryable


# --- 4xxx: Loan store ---

class NotFound(EngineError):
    def __init__(self, loan_id: str) -> None:
        super().__init__(4001, f"Loan not found: {loan_id}")
        self.loan_id = loan_id


class Conflict(EngineError):
    def __init__(self, loan_id: str, current: str, requested: str) -> None:
        super().__init__(
            4002,
            f"Loan {loan_id} is {current}, cannot transition to {requested}",
        )
        self.loan_id = loan_id
        self.current = current
        self.requested = requested


# --- 5xxx: Lifecycle ---

class InvalidTransition(EngineError):
    def __init__(self, wallet: str, state: str, action: str) -> None:
        super().__init__(5001, f"Cannot {action} for {wallet} while {state}")
        self.wallet = wallet
        self.state = state


class CloseNotConfirmed(EngineError):
    def __init__(self, wallet: str, tx_hash: str) -> None:
        super().__init__(
            5002,
            f"Close transaction {tx_hash} for {wallet} not confirmed on-chain",
        )
        self.wallet = wallet
        self.tx_hash = tx_hash


class HoldResolutionPending(EngineError):
    def __init__(self, loan_id: str, outcome: str, attempts: int) -> None:
        super().__init__(
            5003,
            f"Hold for loan {loan_id} not {outcome} after {attempts} attempts",
        )
        self.loan_id = loan_id
        self.outcome = outcome
        self.attempts = attempts
