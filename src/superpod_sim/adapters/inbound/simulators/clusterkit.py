"""clusterkit simulator.

Node assessment in five categories: gpu, network, storage, firmware and
drivers. Every verdict is derived from the node snapshot, so a fault that
other tools report also turns the matching category to WARNING or FAIL.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.node import DGXNode, PortState
from superpod_sim.domain.services.fabric import node_fabric
from superpod_sim.domain.services.health import health_findings
from superpod_sim.domain.services.suggestions import did_you_mean
from superpod_sim.domain.value_objects.health_rules import HealthStatus
from superpod_sim.ports.outbound.clock import isoformat_utc

CATEGORIES = ("gpu", "network", "storage", "firmware", "drivers")


class CheckStatus(Enum):
    """Verdict of one category."""
    PASS = "PASS"
    WARNING = "WARNING"
    FAIL = "FAIL"

    @classmethod
    def from_health(cls, status: HealthStatus) -> CheckStatus:
        return {
            HealthStatus.OK: cls.PASS,
            HealthStatus.WARNING: cls.WARNING,
            HealthStatus.CRITICAL: cls.FAIL,
        }[status]

    @classmethod
    def worst(cls, *statuses: CheckStatus) -> CheckStatus:
        order = [cls.PASS, cls.WARNING, cls.FAIL]
        return max(statuses, key=order.index, default=cls.PASS)


@dataclass(frozen=True)
class CheckResult:
    category: str
    status: CheckStatus
    message: str
    details: tuple[str, ...] = ()


class ClusterKitSimulator(BaseSimulator):
    """Simulates the clusterkit node assessment tool."""

    TOOLS = {
        "clusterkit": ToolInfo(
            "clusterkit", "Comprehensive Node Assessment Tool", "1.0.0",
            usage="clusterkit <assess|check CATEGORY> [--node NODE] [-v]",
            commands=(
                ("assess", "Run full node assessment"),
                ("check <category>", f"Run one category check ({', '.join(CATEGORIES)})"),
            ),
            options=frozenset({"node", "v", "verbose"}),
        ),
    }

    def execute(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        verb = cmd.subcommand
        if verb is None:
            return self.help(self.TOOLS["clusterkit"])
        if verb == "assess":
            return self._assess(cmd, ctx)
        if verb == "check":
            return self._check(cmd, ctx)
        raise self.unknown_subcommand("clusterkit", verb, ("assess", "check"))

    def _target(self, cmd: ParsedCommand, ctx: CommandContext) -> DGXNode:
        cluster = self.snapshot()
        name = cmd.get_flag_string("node")
        if name is not None:
            return self.resolve_node(cluster, name)
        return self.current_node(cluster, ctx)

    def _checks(self) -> dict[str, Callable[[DGXNode], CheckResult]]:
        return {
            "gpu": self._check_gpu,
            "network": self._check_network,
            "storage": self._check_storage,
            "firmware": self._check_firmware,
            "drivers": self._check_drivers,
        }

    def _assess(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self._target(cmd, ctx)
        results = [check(node) for check in self._checks().values()]
        overall = CheckStatus.worst(*(r.status for r in results))
        lines = [
            "ClusterKit Assessment Report",
            f"Node: {node.id}",
            f"Hostname: {node.hostname}",
            f"Timestamp: {isoformat_utc(self._clock())}",
            f"Overall Health: {overall.value}",
            "",
        ]
        verbose = cmd.has_flag("v", "verbose")
        lines.append("Detailed Checks:" if verbose else "Checks:")
        for result in results:
            if verbose:
                lines.append(f"  {result.category}: {result.status.value} - {result.message}")
                lines.extend(f"    - {d}" for d in result.details)
            else:
                lines.append(f"  {result.category:<10}{result.status.value}")
        return CommandResult("\n".join(lines) + "\n", 1 if overall == CheckStatus.FAIL else 0)

    def _check(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        args = cmd.arguments[1:]
        valid = f"Valid categories: {', '.join(CATEGORIES)}"
        if not args:
            raise self.error(
                f"Missing required argument: category\n\n{valid}\n\nExample: clusterkit check gpu"
            )
        category = args[0]
        if category not in CATEGORIES:
            hint = did_you_mean(category, CATEGORIES)
            raise self.error(f"Invalid category: {category}\n" + (f"{hint}\n" if hint else "") + f"\n{valid}")

        node = self._target(cmd, ctx)
        result = self._checks()[category](node)
        lines = [
            f"ClusterKit Check: {category}",
            f"Node: {node.id}",
            f"Status: {result.status.value}",
            f"Message: {result.message}",
        ]
        lines.extend(f"  - {d}" for d in result.details)
        return CommandResult("\n".join(lines) + "\n", 1 if result.status == CheckStatus.FAIL else 0)

    # -------- categories --------

    def _check_gpu(self, node: DGXNode) -> CheckResult:
        thresholds = self._store.thresholds
        statuses, details = [], []
        for gpu in node.gpus:
            status = self.health_of(node, gpu)
            statuses.append(CheckStatus.from_health(status))
            if status != HealthStatus.OK:
                details.append(f"GPU {gpu.id}: {status.value} ({health_findings(gpu, thresholds)[0].reason})")
        detected = node_fabric(node).detected_gpus
        healthy = sum(1 for s in statuses if s == CheckStatus.PASS)
        return CheckResult(
            "gpu",
            CheckStatus.worst(*statuses),
            f"{detected}/{len(node.gpus)} GPUs detected, {healthy} healthy",
            tuple(details),
        )

    def _check_network(self, node: DGXNode) -> CheckResult:
        ports = [(hca, port) for hca in node.hcas for port in hca.ports]
        down = [f"{hca.ca_type} port {p.port_number}: {p.state.value}" for hca, p in ports if p.state != PortState.ACTIVE]
        noisy = [
            f"{hca.ca_type} port {p.port_number}: {p.errors.total} errors"
            for hca, p in ports
            if p.state == PortState.ACTIVE and p.errors.total
        ]
        if down:
            status = CheckStatus.FAIL
        elif noisy:
            status = CheckStatus.WARNING
        else:
            status = CheckStatus.PASS
        active = len(ports) - len(down)
        return CheckResult("network", status, f"{active}/{len(ports)} InfiniBand ports active", tuple(down + noisy))

    def _check_storage(self, node: DGXNode) -> CheckResult:
        return CheckResult("storage", CheckStatus.PASS, "Local NVMe RAID and shared filesystems mounted")

    def _check_firmware(self, node: DGXNode) -> CheckResult:
        versions = sorted({hca.firmware_version for hca in node.hcas})
        if len(versions) > 1:
            details = tuple(f"{hca.ca_type}: {hca.firmware_version}" for hca in node.hcas)
            return CheckResult("firmware", CheckStatus.WARNING, "HCA firmware versions differ", details)
        hca_version = versions[0] if versions else "n/a"
        return CheckResult(
            "firmware",
            CheckStatus.PASS,
            f"HCA firmware {hca_version}, BMC firmware {node.bmc.firmware_version}",
        )

    def _check_drivers(self, node: DGXNode) -> CheckResult:
        missing = node_fabric(node).missing_gpus
        if missing:
            return CheckResult(
                "drivers",
                CheckStatus.FAIL,
                f"NVIDIA driver {node.nvidia_driver_version} lost {len(missing)} GPU(s)",
                tuple(f"GPU {i}: fallen off the bus" for i in missing),
            )
        return CheckResult(
            "drivers",
            CheckStatus.PASS,
            f"NVIDIA driver {node.nvidia_driver_version}, CUDA {node.cuda_version}",
        )
