# chainopt/errors.py
"""
Exception hierarchy.

Planning errors (unknown items, cycles) abort plan creation. Execution
errors are raised by executors and classified by the engine: transient
failures may be retried, permanent failures never are.
"""

from typing import Optional, Sequence


class ChainOptError(Exception):
    """Base class for all chainopt errors."""


class ItemNotFoundError(ChainOptError):
    """A requested or depended-upon item is not registered."""

    def __init__(self, name: str, required_by: Optional[str] = None):
        self.name = name
        self.required_by = required_by
        if required_by:
            message = f"Item '{name}' (required by '{required_by}') is not registered"
        else:
            message = f"Item '{name}' is not registered"
        super().__init__(message)


class CircularDependencyError(ChainOptError):
    """The dependency graph contains a cycle."""

    def __init__(self, name: str, cycle: Sequence[str] = ()):
        self.name = name
        self.cycle = tuple(cycle)
        if self.cycle:
            message = f"Circular dependency detected at '{name}': {' -> '.join(self.cycle)}"
        else:
            message = f"Circular dependency detected at '{name}'"
        super().__init__(message)


class DuplicateNameError(ChainOptError):
    """An item with the same name is already registered (strict mode only)."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Item '{name}' is already registered")


class ExecutionError(ChainOptError):
    """
    Failure reported by an executor.

    Attributes:
        kind: Failure class matched against a retry policy's ``retry_on``
            list (e.g. "timeout", "network_error", "unavailable")
    """

    default_kind = "error"

    def __init__(self, message: str, kind: Optional[str] = None):
        self.kind = kind or self.default_kind
        super().__init__(message)


class TransientExecutionError(ExecutionError):
    """Timeout, unavailability or network-class failure. Retryable."""

    default_kind = "unavailable"


class PermanentExecutionError(ExecutionError):
    """Failure that no amount of retrying will fix."""

    default_kind = "permanent"
