"""Error taxonomy for the simulation engine.

User-facing failures (parse, unknown command, not found) are rendered as
terminal text with a nonzero exit status. ``InvariantViolation`` marks a
programming defect and is meant to fail loudly in development and tests.
"""

from __future__ import annotations


class SimulationError(Exception):
    """Base class for simulation engine errors."""
    pass


class ParseError(SimulationError):
    """Raised when a command line cannot be tokenized or parsed."""
    pass


class UnknownCommandError(SimulationError):
    """Raised when no router entry exists for a base command."""

    def __init__(self, command: str) -> None:
        super().__init__(f"{command}: command not found")
        self.command = command


class NotFoundError(SimulationError):
    """Raised when a node, GPU, HCA or job does not exist."""
    pass


class InvariantViolation(SimulationError):
    """Raised when state or a rendered view contradicts the health derivation."""
    pass


class ClusterValidationError(SimulationError):
    """Raised when an imported cluster document fails validation."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid cluster document: " + "; ".join(errors))
        self.errors = errors
