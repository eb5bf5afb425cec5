"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required position or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ValidationError(ValueError):
    """A single decision intent is malformed or violates a risk rule."""

    def __init__(self, reason: str, symbol: str = "", action: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.symbol = symbol
        self.action = action


class ExecutionError(RuntimeError):
    """A venue call failed or was refused before reaching the venue."""

    def __init__(self, reason: str, symbol: str = "", action: str = "",
                 original: Optional[Exception] = None):
        super().__init__(reason)
        self.reason = reason
        self.symbol = symbol
        self.action = action
        self.original = original


class ProposalSourceError(RuntimeError):
    """
    The proposal source could not produce a usable batch.

    ``partial`` carries whatever was obtained before the failure (prompt,
    rationale text) so an aborted cycle can still be persisted.
    """

    def __init__(self, message: str, partial=None, original: Optional[Exception] = None):
        super().__init__(message)
        self.partial = partial
        self.original = original


class TransientSourceError(ProposalSourceError):
    """Network/timeout failure talking to the proposal source, after retries."""

    def __init__(self, message: str, attempts: int = 0, partial=None,
                 original: Optional[Exception] = None):
        super().__init__(message, partial=partial, original=original)
        self.attempts = attempts


class FatalConfigError(RuntimeError):
    """Configuration problem that must stop an instance from starting."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = list(errors or [])
