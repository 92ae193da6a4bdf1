"""Shared simulator machinery.

Every simulator is read-only: an entry method takes one snapshot of the
cluster, renders it in its tool's vocabulary and returns a
``CommandResult``. Commands that would change state in the real tool return
``StateChange`` requests for the engine to apply.

``safe_execute`` wraps every routed entry. It answers ``--help`` and
``--version``, turns ``ToolError`` and ``NotFoundError`` into tool error
lines, and turns anything unexpected into ``Internal error: <msg>`` unless
the simulator runs in strict mode.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional, Sequence

from superpod_sim.application.state_store import ClusterStore
from superpod_sim.domain.entities.cluster import Cluster
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.exceptions import InvariantViolation, NotFoundError
from superpod_sim.domain.services.health import derive_health, verify_gpu_health
from superpod_sim.domain.services.suggestions import did_you_mean
from superpod_sim.domain.value_objects.health_rules import HealthStatus
from superpod_sim.ports.outbound.clock import Clock, system_clock

logger = logging.getLogger(__name__)

# Tools where -h is an ordinary option rather than help
SHORT_H_NOT_HELP = frozenset({"df", "free", "sinfo", "squeue", "lfs", "sacct", "ibnetdiscover"})


class ToolError(Exception):
    """A tool-level failure rendered as terminal output."""

    def __init__(self, output: str, exit_code: int = 1):
        super().__init__(output)
        self.output = output
        self.exit_code = exit_code


@dataclass(frozen=True)
class ToolInfo:
    """Help and version metadata for one base command."""
    name: str
    description: str
    version: str
    usage: str = ""
    commands: tuple[tuple[str, str], ...] = ()    # (verb or option, description)
    version_text: Optional[str] = None            # Overrides "<name> version <version>"
    options: frozenset[str] = frozenset()         # Accepted flags; empty accepts any

    @property
    def verbs(self) -> list[str]:
        return [name.split()[0] for name, _ in self.commands if not name.startswith("-")]


class BaseSimulator:
    """Base class for all command simulators."""

    TOOLS: Mapping[str, ToolInfo] = {}

    def __init__(self, store: ClusterStore, clock: Clock = system_clock, strict: bool = False):
        """Initialize simulator.

        Args:
            store: Source of cluster snapshots. Only read methods are used.
            clock: Source of timestamps printed by the tool.
            strict: Propagate unexpected exceptions instead of rendering them.
        """
        self._store = store
        self._clock = clock
        self._strict = strict

    # -------- wrapper --------

    def safe_execute(
        self,
        entry: Callable[[ParsedCommand, CommandContext], CommandResult],
        cmd: ParsedCommand,
        ctx: CommandContext,
    ) -> CommandResult:
        """Run an entry method with help, version and error handling."""
        tool = self.TOOLS.get(cmd.base_command)
        try:
            if tool is not None:
                if cmd.has_flag("help") or (
                    cmd.has_flag("h") and cmd.base_command not in SHORT_H_NOT_HELP
                ):
                    return self.help(tool)
                if cmd.has_flag("version", "V"):
                    return self.version(tool)
                if tool.options:
                    unknown = [f for f in cmd.flags if f not in tool.options]
                    if unknown:
                        raise self.invalid_option(cmd.base_command, unknown[0], tool.options)
            return entry(cmd, ctx)
        except ToolError as e:
            return CommandResult(e.output, e.exit_code)
        except NotFoundError as e:
            return CommandResult(f"{cmd.base_command}: {e}", 1)
        except InvariantViolation:
            if self._strict:
                raise
            logger.exception(f"Invariant violated while running {cmd.raw!r}")
            return CommandResult("Internal error: inconsistent cluster state", 1)
        except Exception as e:
            if self._strict:
                raise
            logger.exception(f"Unexpected error while running {cmd.raw!r}")
            return CommandResult(f"Internal error: {e}", 1)

    # -------- help / version --------

    def help(self, tool: ToolInfo) -> CommandResult:
        lines = [f"{tool.name} - {tool.description}", ""]
        lines.append(f"Usage: {tool.usage or tool.name + ' [OPTIONS] COMMAND [ARGS...]'}")
        lines.append("")
        lines.append("Options:")
        lines.append("  --help, -h       Show this help message")
        lines.append("  --version, -V    Show version information")
        if tool.commands:
            width = max(len(name) for name, _ in tool.commands) + 2
            lines.append("")
            lines.append("Commands:")
            for name, description in tool.commands:
                lines.append(f"  {name.ljust(width)}{description}")
        return CommandResult("\n".join(lines) + "\n")

    def version(self, tool: ToolInfo) -> CommandResult:
        return CommandResult((tool.version_text or f"{tool.name} version {tool.version}") + "\n")

    # -------- results --------

    @staticmethod
    def success(output: str, changes: Sequence = ()) -> CommandResult:
        return CommandResult(output, 0, tuple(changes))

    @staticmethod
    def error(message: str, exit_code: int = 1) -> ToolError:
        return ToolError(message, exit_code)

    @staticmethod
    def device_not_found(tool: str, device: str) -> ToolError:
        return ToolError(f"{tool}: Error: Device not found: {device}", 2)

    @staticmethod
    def invalid_option(tool: str, flag: str, choices: Iterable[str] = ()) -> ToolError:
        """Unknown flag error, with a suggestion when ``choices`` has a close match."""
        name = flag.lstrip("-")
        if len(name) > 1:
            lines = [f"{tool}: unrecognized option '--{name}'"]
            hint = did_you_mean(name, [c for c in choices if len(c) > 1], prefix="--")
        else:
            lines = [f"{tool}: invalid option -- '{name}'"]
            hint = ""
        if hint:
            lines.append(hint)
        lines.append(f"Try '{tool} --help' for more information.")
        return ToolError("\n".join(lines), 2)

    @staticmethod
    def missing_argument(tool: str, argument: str) -> ToolError:
        return ToolError(
            f"{tool}: missing required argument: {argument}\nTry '{tool} --help' for more information.",
            1,
        )

    @staticmethod
    def unknown_subcommand(tool: str, subcommand: str, choices: Iterable[str] = ()) -> ToolError:
        lines = [f"{tool}: '{subcommand}' is not a {tool} command."]
        hint = did_you_mean(subcommand, choices)
        if hint:
            lines.append(hint)
        lines.append(f"See '{tool} --help'.")
        return ToolError("\n".join(lines), 1)

    # -------- state access --------

    def snapshot(self) -> Cluster:
        return self._store.snapshot()

    def now(self) -> str:
        return self._clock().strftime("%a %b %d %H:%M:%S %Y")

    def current_node(self, cluster: Cluster, ctx: CommandContext) -> DGXNode:
        node = cluster.find_node(ctx.current_node)
        if node is None:
            raise ToolError("Error: Unable to determine current node")
        return node

    def resolve_node(self, cluster: Cluster, name: str) -> DGXNode:
        node = cluster.find_node(name)
        if node is None:
            raise NotFoundError(f"node {name} not found")
        return node

    def health_of(self, node: DGXNode, gpu: GPU) -> HealthStatus:
        """Health as every tool must render it."""
        verify_gpu_health(node.id, gpu, self._store.thresholds)
        return derive_health(gpu, self._store.thresholds)

    def parse_gpu_index(self, value: object, node: DGXNode) -> int:
        """Validate an ``-i`` argument the way nvidia-smi does.

        Raises:
            ToolError: If the value is not numeric or names no GPU.
        """
        max_index = len(node.gpus) - 1
        text = value if isinstance(value, str) else ""
        if not text.strip().isdigit():
            raise ToolError(f"Invalid GPU index '{text}'. Expected numeric value (0-{max_index}).")
        index = int(text)
        if node.find_gpu(index) is None:
            raise ToolError(f"Unable to query GPU {index}: GPU not found. Valid GPU indices: 0-{max_index}")
        return index

    # -------- formatting --------

    @staticmethod
    def format_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
        """Boxed table with ``+---+`` separators."""
        widths = [
            max([len(h)] + [len(str(row[i])) for row in rows]) for i, h in enumerate(headers)
        ]
        separator = "+" + "+".join("-" * (w + 2) for w in widths) + "+"

        def _row(cells: Sequence[str]) -> str:
            return "| " + " | ".join(str(c).ljust(widths[i]) for i, c in enumerate(cells)) + " |"

        lines = [separator, _row(headers), separator]
        lines.extend(_row(r) for r in rows)
        lines.append(separator)
        return "\n".join(lines)

    @staticmethod
    def format_columns(
        headers: Sequence[str], rows: Sequence[Sequence[str]], gap: int = 1, header: bool = True
    ) -> str:
        """Whitespace-aligned columns, as Slurm and coreutils print.

        Column widths always account for ``headers``; ``header=False`` only
        leaves the header line out, as ``--noheader`` does.
        """
        widths = [
            max([len(h)] + [len(str(row[i])) for row in rows]) for i, h in enumerate(headers)
        ]
        spacer = " " * gap

        def _row(cells: Sequence[str]) -> str:
            return spacer.join(str(c).ljust(widths[i]) for i, c in enumerate(cells)).rstrip()

        lines = [_row(headers)] if header and headers else []
        lines.extend(_row(r) for r in rows)
        return "\n".join(lines)

    @staticmethod
    def dotted(label: str, value: str, width: int = 40) -> str:
        """``label.......value`` line used by nvsm and perfquery style tools."""
        return f"{label}{'.' * max(2, width - len(label))}{value}"
