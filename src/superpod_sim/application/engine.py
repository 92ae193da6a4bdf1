"""Simulation engine.

Runs terminal lines against the simulated SuperPOD. A line is parsed,
checked against the shell builtins, routed to its simulator and executed
against a snapshot; any state changes the tool asked for are then applied
through the store. The engine is also the one entry point for operator
actions (fault injection, drift control, import/export) so every mutation
is logged, counted and traced the same way.

References:
    - Bash exit status conventions (2 syntax error, 127 not found, 255 ssh)
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

from opentelemetry import trace

from superpod_sim.application.state_store import ClusterStore
from superpod_sim.domain.entities.cluster import Cluster
from superpod_sim.domain.entities.command import (
    CommandContext,
    CommandResult,
    ParsedCommand,
    StateAction,
    StateChange,
)
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode, SlurmState
from superpod_sim.domain.exceptions import (
    InvariantViolation,
    ParseError,
    SimulationError,
    UnknownCommandError,
)
from superpod_sim.domain.services.fault_injection import FaultInjector, FaultKind
from superpod_sim.domain.services.health import ClusterStats
from superpod_sim.domain.services.metrics_drift import MetricsDriftSimulator
from superpod_sim.domain.services.suggestions import did_you_mean
from superpod_sim.infrastructure.metrics import MetricsRegistry
from superpod_sim.ports.outbound.clock import Clock, isoformat_utc, system_clock
from superpod_sim.ports.outbound.commands import CommandDispatcher, CommandParserPort
from superpod_sim.ports.outbound.gpu_state import GPUPartial

logger = logging.getLogger(__name__)

BUILTINS = frozenset({"ssh", "exit", "logout", "pwd", "whoami", "echo"})
DEFAULT_HISTORY_LIMIT = 1000


@dataclass(frozen=True)
class HistoryEntry:
    """One executed line."""
    timestamp: str
    node: str
    command: str
    exit_code: int


class SimulationEngine:
    """Executes commands and operator actions against the cluster."""

    def __init__(
        self,
        store: ClusterStore,
        parser: CommandParserPort,
        dispatcher: CommandDispatcher,
        faults: FaultInjector,
        drift: Optional[MetricsDriftSimulator] = None,
        metrics: Optional[MetricsRegistry] = None,
        tracer: Optional[trace.Tracer] = None,
        clock: Clock = system_clock,
        strict: bool = False,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Owner of cluster state.
            parser: Turns lines into ParsedCommand values.
            dispatcher: Routes parsed commands to simulator entry points.
            faults: Applies and clears GPU faults.
            drift: Optional background telemetry walk.
            metrics: Optional Prometheus registry.
            tracer: OpenTelemetry tracer. Defaults to the global provider.
            clock: Source of history timestamps.
            strict: Propagate invariant violations instead of rendering them.
            history_limit: Number of lines kept in the engine history.
        """
        self._store = store
        self._parser = parser
        self._dispatcher = dispatcher
        self._faults = faults
        self._drift = drift
        self._metrics = metrics
        self._tracer = tracer or trace.get_tracer(__name__)
        self._clock = clock
        self._strict = strict
        self._history: deque[HistoryEntry] = deque(maxlen=history_limit)
        self._home_node = store.snapshot().nodes[0].id
        self.context = CommandContext(current_node=self._home_node)

        self._appliers: dict[StateAction, Callable[[StateChange], Any]] = {
            StateAction.SET_SLURM_STATE: lambda c: store.set_slurm_state(
                c.node_id, c.params["state"], c.params.get("reason")
            ),
            StateAction.SUBMIT_JOB: lambda c: store.submit_job(**c.params),
            StateAction.CANCEL_JOB: lambda c: store.cancel_job(int(c.params["job_id"])),
            StateAction.SET_MIG_MODE: lambda c: store.set_mig_mode(c.node_id, c.gpu_ids, c.params["enabled"]),
            StateAction.CREATE_MIG_INSTANCES: lambda c: [
                store.create_mig_instances(c.node_id, gpu_id, c.params["profile_ids"]) for gpu_id in c.gpu_ids
            ],
            StateAction.DESTROY_MIG_INSTANCES: lambda c: [
                store.destroy_mig_instances(c.node_id, gpu_id) for gpu_id in c.gpu_ids
            ],
            StateAction.SET_POWER_LIMIT: lambda c: store.set_power_limit(c.node_id, c.gpu_ids, c.params["watts"]),
            StateAction.SET_PERSISTENCE_MODE: lambda c: store.set_persistence_mode(
                c.node_id, c.gpu_ids, c.params["enabled"]
            ),
            StateAction.RESET_GPU: lambda c: [store.reset_gpu(c.node_id, gpu_id) for gpu_id in c.gpu_ids],
        }

        if drift is not None and metrics is not None:
            drift.register_tick_callback(lambda _updated: metrics.drift_ticks_total.inc())

    # -------- commands --------

    @property
    def commands(self) -> list[str]:
        """Every command the engine understands, builtins included."""
        return sorted(set(self._dispatcher.commands) | BUILTINS)

    @property
    def history(self) -> list[HistoryEntry]:
        return list(self._history)

    def execute(self, raw: str, ctx: Optional[CommandContext] = None) -> CommandResult:
        """Run one terminal line.

        Args:
            raw: The line as typed.
            ctx: Terminal session. Defaults to the engine's own session.

        Returns:
            The tool output and exit status. Failures are rendered, never
            raised, unless the engine runs in strict mode.
        """
        ctx = ctx if ctx is not None else self.context
        line = raw.strip()
        if not line:
            return CommandResult("")
        ctx.history.append(line)

        started = time.perf_counter()
        with self._tracer.start_as_current_span("superpod.command") as span:
            span.set_attribute("command.line", line)
            span.set_attribute("command.node", ctx.current_node)
            tool, result = self._run(line, ctx)
            span.set_attribute("command.tool", tool)
            span.set_attribute("command.exit_code", result.exit_code)

        if self._metrics:
            self._metrics.record_command(tool, result.exit_code, time.perf_counter() - started)
        self._history.append(
            HistoryEntry(isoformat_utc(self._clock()), ctx.current_node, line, result.exit_code)
        )
        logger.debug(f"[{ctx.current_node}] {line!r} -> exit {result.exit_code}")
        return result

    def _run(self, line: str, ctx: CommandContext) -> tuple[str, CommandResult]:
        """Parse, dispatch and apply one line; returns (tool, result)."""
        try:
            cmd = self._parser.parse(line)
        except ParseError as e:
            return "bash", CommandResult(f"bash: syntax error: {e}", 2)

        if cmd.base_command in BUILTINS:
            return cmd.base_command, self._builtin(cmd, line, ctx)

        try:
            entry = self._dispatcher.route(cmd)
        except UnknownCommandError:
            output = f"{cmd.base_command}: command not found"
            hint = did_you_mean(cmd.base_command, self.commands)
            return "unknown", CommandResult(f"{output}\n{hint}" if hint else output, 127)

        result = entry(cmd, ctx)
        if result.changes:
            failure = self._apply_changes(cmd, result.changes)
            if failure is not None:
                return cmd.base_command, failure
        return cmd.base_command, result

    def _apply_changes(self, cmd: ParsedCommand, changes) -> Optional[CommandResult]:
        """Apply requested state changes in order, stopping at the first failure."""
        for change in changes:
            try:
                self._appliers[change.action](change)
            except InvariantViolation:
                if self._strict:
                    raise
                logger.exception(f"Invariant violated applying {change.action.value} for {cmd.raw!r}")
                return CommandResult("Internal error: inconsistent cluster state", 1)
            except (ValueError, SimulationError) as e:
                logger.info(f"{cmd.base_command}: {change.action.value} rejected: {e}")
                return CommandResult(f"{cmd.base_command}: {e}", 1)
        self._refresh_gauges()
        return None

    def _builtin(self, cmd: ParsedCommand, line: str, ctx: CommandContext) -> CommandResult:
        name = cmd.base_command
        if name in ("exit", "logout"):
            if ctx.current_node != self._home_node:
                ctx.current_node = self._home_node
                return CommandResult("logout\nConnection closed.\n")
            return CommandResult("logout\n")
        if name == "pwd":
            return CommandResult(ctx.current_path + "\n")
        if name == "whoami":
            return CommandResult(ctx.environment.get("USER", "root") + "\n")
        if name == "echo":
            words = [self._expand(w, ctx) for w in line.split()[1:]]
            return CommandResult(" ".join(words) + "\n")
        return self._ssh(line, ctx)

    @staticmethod
    def _expand(word: str, ctx: CommandContext) -> str:
        if word.startswith("$") and len(word) > 1:
            return ctx.environment.get(word[1:].strip("{}"), "")
        return word.strip("'\"")

    def _ssh(self, line: str, ctx: CommandContext) -> CommandResult:
        parts = line.split(None, 2)
        if len(parts) < 2:
            return CommandResult(
                "usage: ssh [-46AaCfGgKkMNnqsTtVvXxYy] destination [command [argument ...]]", 255
            )
        target = parts[1].split("@", 1)[-1]
        node = self._resolve_host(target)
        if node is None:
            return CommandResult(
                f"ssh: Could not resolve hostname {target}: Name or service not known", 255
            )
        if len(parts) == 3:
            # Remote command: run on the target without moving the session
            remote = CommandContext(
                current_node=node.id,
                current_path=ctx.current_path,
                environment=dict(ctx.environment),
            )
            return self._run(parts[2], remote)[1]
        ctx.current_node = node.id
        return CommandResult(
            f"Welcome to {node.os_version} (GNU/Linux {node.kernel_version} x86_64)\n\n"
            f"Last login: {self._clock().strftime('%a %b %d %H:%M:%S %Y')} from 10.0.0.1\n"
        )

    def _resolve_host(self, name: str) -> Optional[DGXNode]:
        for node in self._store.snapshot().nodes:
            if name in (node.id, node.hostname, node.management_ip) or node.hostname.split(".")[0] == name:
                return node
        return None

    # -------- operator actions --------

    def inject_fault(self, node_id: str, gpu_id: int, kind: FaultKind | str) -> GPU:
        kind = FaultKind(kind)
        with self._tracer.start_as_current_span("superpod.inject_fault") as span:
            span.set_attribute("fault.node", node_id)
            span.set_attribute("fault.gpu", gpu_id)
            span.set_attribute("fault.kind", kind.value)
            gpu = self._faults.inject_fault(node_id, gpu_id, kind)
        if self._metrics:
            self._metrics.faults_injected_total.labels(kind=kind.value).inc()
        self._refresh_gauges()
        return gpu

    def add_xid_error(self, node_id: str, gpu_id: int, code: int) -> GPU:
        gpu = self._faults.add_xid_error(node_id, gpu_id, code)
        if self._metrics:
            self._metrics.faults_injected_total.labels(kind="xid").inc()
        self._refresh_gauges()
        return gpu

    def clear_faults(self, node_id: str, gpu_id: int) -> GPU:
        gpu = self._faults.clear_faults(node_id, gpu_id)
        if self._metrics:
            self._metrics.faults_cleared_total.inc()
        self._refresh_gauges()
        return gpu

    def clear_all_faults(self) -> int:
        count = self._faults.clear_all_faults()
        if self._metrics:
            self._metrics.faults_cleared_total.inc(count)
        self._refresh_gauges()
        return count

    def update_gpu(self, node_id: str, gpu_id: int, partial: GPUPartial) -> GPU:
        gpu = self._store.update_gpu(node_id, gpu_id, partial)
        self._refresh_gauges()
        return gpu

    def set_slurm_state(self, node_id: str, state: SlurmState | str, reason: Optional[str] = None) -> DGXNode:
        node = self._store.set_slurm_state(node_id, state, reason)
        self._refresh_gauges()
        return node

    def reset_cluster(self) -> None:
        self._store.reset_cluster()
        self._home_node = self._store.snapshot().nodes[0].id
        self.context.current_node = self._home_node
        self._refresh_gauges()

    def export_cluster(self) -> str:
        return self._store.export_cluster()

    def import_cluster(self, raw: str | bytes) -> Cluster:
        """Replace the cluster, keeping the session on a node that exists.

        Raises:
            ClusterValidationError: If the document is rejected.
        """
        cluster = self._store.import_cluster(raw)
        self._home_node = cluster.nodes[0].id
        if cluster.find_node(self.context.current_node) is None:
            self.context.current_node = self._home_node
        self._refresh_gauges()
        return cluster

    def snapshot(self) -> Cluster:
        return self._store.snapshot()

    def stats(self) -> ClusterStats:
        stats = self._store.stats()
        if self._metrics:
            self._metrics.update_cluster(stats)
        return stats

    # -------- drift --------

    @property
    def drift_running(self) -> bool:
        return self._drift is not None and self._drift.is_running

    def start_drift(self) -> None:
        if self._drift is None:
            raise RuntimeError("Metrics drift is not configured")
        self._drift.start()

    def stop_drift(self) -> None:
        if self._drift is not None:
            self._drift.stop()

    def _refresh_gauges(self) -> None:
        if self._metrics:
            self._metrics.update_cluster(self._store.stats())
