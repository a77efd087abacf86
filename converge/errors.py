"""
Error taxonomy shared by the parsers, the engine and the providers.
"""
from typing import Iterable, List, Optional


class ConvergeError(Exception):
    """Base class for every error converge raises on purpose."""


class ConfigurationError(ConvergeError):
    """
    The desired model cannot be reconciled: unresolved or mistyped
    references, unknown kinds, duplicate resources or a reference cycle.

    All problems found are collected in ``problems`` so they can be fixed
    in a single pass.
    """

    def __init__(self, problems: Iterable[str]):
        self.problems: List[str] = list(problems)
        if len(self.problems) == 1:
            message = self.problems[0]
        else:
            message = f"{len(self.problems)} configuration problems:\n" + "\n".join(
                f"  - {p}" for p in self.problems
            )
        super().__init__(message)


class ProviderError(ConvergeError):
    """Raised by a provider call."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class TransientProviderError(ProviderError):
    """Rate limiting or eventual-consistency lag. Safe to retry."""


class PermanentProviderError(ProviderError):
    """Validation failure, permission denial and the like. Never retried."""


class ResolutionError(PermanentProviderError):
    """A reference could not be resolved against realized state."""


class StateCorruptionError(ConvergeError):
    """The state file is unreadable or written by a newer schema."""


class StateLockError(ConvergeError):
    """The state lock is held by another run."""


class OperationCancelled(ConvergeError):
    """Cancellation interrupted an operation while it waited to retry."""
