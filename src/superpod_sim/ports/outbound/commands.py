"""Command-path ports used by the engine.

The engine parses a line and dispatches it through these contracts; the
concrete parser and router live in the inbound adapters and are wired in by
the container.
"""

from __future__ import annotations

from typing import Callable, Protocol

from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand

EntryPoint = Callable[[ParsedCommand, CommandContext], CommandResult]


class CommandParserPort(Protocol):
    """Turns one terminal line into a ParsedCommand."""

    def parse(self, raw: str) -> ParsedCommand:
        """Parse a line.

        Raises:
            ParseError: On unsupported shell syntax or unbalanced quotes.
        """
        ...


class CommandDispatcher(Protocol):
    """Resolves a parsed command to the entry point that serves it."""

    @property
    def commands(self) -> list[str]:
        """Every base command that can be dispatched."""
        ...

    def route(self, cmd: ParsedCommand) -> EntryPoint:
        """Return the wrapped entry point.

        Raises:
            UnknownCommandError: If no simulator serves the command.
        """
        ...
