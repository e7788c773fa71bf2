"""
Error taxonomy for the aggregator client.

Every failure that crosses a component boundary is one of these. Each carries
``retryable`` (can the *same* operation be attempted again) and an optional
human ``hint``; errors produced by program execution also carry the logs.
"""

from typing import List, Optional


class AggregatorClientError(Exception):
    """Base exception for aggregator client errors."""

    retryable: bool = False

    def __init__(self, message: str, *, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint

    def details(self) -> str:
        text = str(self)
        if self.hint:
            text += f"\nHint: {self.hint}"
        return text


class ConfigError(AggregatorClientError):
    """Raised when settings or registry data are invalid."""
    pass


class TransportError(AggregatorClientError):
    """Network or RPC failure. Retryable at the transport layer only."""

    retryable = True

    def __init__(self, message: str, *, method: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message, hint=hint)
        self.method = method


class TransactionBuildError(AggregatorClientError):
    """Raised when a message cannot be compiled or signed."""
    pass


class InstructionArgumentError(TransactionBuildError, ValueError):
    """An instruction argument is outside what the program accepts."""
    pass


class StaleBlockhashError(AggregatorClientError):
    """
    The transaction's blockhash expired before it was confirmed.

    Resending the same bytes cannot succeed; the caller has to rebuild with a
    fresh blockhash, which yields a new transaction identity.
    """

    def __init__(self, message: str, *, signature: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message, hint=hint or "Blockhash expired; rebuild and re-sign the transaction.")
        self.signature = signature


class _LogCarryingError(AggregatorClientError):
    def __init__(
        self,
        message: str,
        *,
        logs: Optional[List[str]] = None,
        err: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message, hint=hint)
        self.logs: List[str] = list(logs or [])
        self.err = err

    def details(self) -> str:
        text = super().details()
        if self.logs:
            rendered = "\n".join(f"  {idx}: {line}" for idx, line in enumerate(self.logs))
            text += f"\nProgram logs:\n{rendered}"
        return text


class SimulationError(_LogCarryingError):
    """Pre-flight rejection. Not retryable without a state or input change."""
    pass


class StaleSlotError(SimulationError):
    """Lookup table creation referenced a slot the program no longer accepts."""
    pass


class AlreadyProcessedError(SimulationError):
    """
    Preflight saw these exact bytes land already.

    After a send whose response was lost this means the earlier attempt went
    through; it is not a failure of the transaction.
    """
    pass


class ExecutionError(_LogCarryingError):
    """The transaction landed but failed on chain."""

    def __init__(
        self,
        message: str,
        *,
        signature: Optional[str] = None,
        logs: Optional[List[str]] = None,
        err: Optional[str] = None,
        program_error: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message, logs=logs, err=err, hint=hint)
        self.signature = signature
        self.program_error = program_error


class ConfirmationTimeoutError(AggregatorClientError):
    """The confirmation wait exceeded its bound. The transaction may still land."""

    def __init__(self, message: str, *, signature: Optional[str] = None):
        super().__init__(message, hint="Status unknown; check the signature before rebuilding.")
        self.signature = signature


class FinalityTimeoutError(AggregatorClientError):
    """A poll-with-backoff wait ran out of time."""

    retryable = True


class TableNotReadyError(AggregatorClientError):
    """Lookup table is not visible yet. Retry after a delay."""

    retryable = True

    def __init__(self, table: str, *, found: Optional[int] = None, expected: Optional[int] = None):
        if found is None:
            message = f"Lookup table {table} is not visible yet"
        else:
            message = f"Lookup table {table} has {found}/{expected} addresses"
        super().__init__(message)
        self.table = table
        self.found = found
        self.expected = expected


class SubscriptionError(AggregatorClientError):
    """Event registration or decoding failed. Fails fast, no retry."""
    pass
