"""NVIDIA System Management (nvsm) simulator.

``show health`` runs the nvsm health checks against the current node. GPU
checks are grouped from the central health findings, so a check is never
Healthy while ``nvidia-smi`` or ``dcgmi`` report a problem on that GPU, and
the GPU roll-up is the derived node health.

References:
    - NVIDIA DGX System Management (NVSM) user guide
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.adapters.inbound.simulators.basic_system import kernel_pci_address
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.node import DGXNode, PortState
from superpod_sim.domain.services.fabric import gpu_links, node_fabric
from superpod_sim.domain.services.suggestions import did_you_mean
from superpod_sim.domain.services.health import derive_node_health, health_findings
from superpod_sim.domain.value_objects.health_rules import HealthStatus, HealthThresholds

logger = logging.getLogger(__name__)

NVSM_VERSION = "24.03.07"
DOT_LEADER_WIDTH = 55
GPU_TARGET = "/systems/localhost/gpus/GPU"
# (finding category, check label)
GPU_CHECKS = (
    ("xid", "GPU XID error check"),
    ("ecc", "GPU ECC status"),
    ("thermal", "GPU temperature"),
    ("power", "GPU power"),
    ("nvlink", "GPU NVLink status"),
)


@dataclass(frozen=True)
class HealthCheck:
    """One nvsm health check result."""
    description: str
    status: HealthStatus
    details: str = ""
    target: str = "/systems/localhost"


def _label(status: HealthStatus) -> str:
    return "Healthy" if status == HealthStatus.OK else status.value


def run_health_checks(node: DGXNode, thresholds: HealthThresholds) -> list[HealthCheck]:
    """Evaluate every nvsm health check for a node."""
    checks = [
        HealthCheck("Verify installed DIMM memory sticks", HealthStatus.OK),
        HealthCheck("Number of logical CPU cores", HealthStatus.OK),
        HealthCheck("Root file system usage", HealthStatus.OK),
    ]
    for gpu in node.gpus:
        findings = health_findings(gpu, thresholds)
        target = f"{GPU_TARGET}{gpu.id}"
        checks.append(
            HealthCheck(
                f"GPU link speed [{kernel_pci_address(gpu)}]",
                HealthStatus.CRITICAL if gpu.has_fallen_off_bus else HealthStatus.OK,
                "GPU is not present on the PCIe bus" if gpu.has_fallen_off_bus else "",
                target,
            )
        )
        for category, label in GPU_CHECKS:
            matched = [f for f in findings if f.category == category]
            checks.append(
                HealthCheck(
                    f"{label} [GPU{gpu.id}]",
                    HealthStatus.worst(*(f.status for f in matched)),
                    "; ".join(f.reason for f in matched),
                    target,
                )
            )
    for hca in node.hcas:
        for port in hca.ports:
            active = port.state == PortState.ACTIVE
            checks.append(
                HealthCheck(
                    f"InfiniBand port {port.port_number} [{hca.ca_type}]",
                    HealthStatus.OK if active else HealthStatus.WARNING,
                    "" if active else f"port state {port.state.value}",
                    f"/systems/localhost/network/{hca.ca_type}",
                )
            )
    return checks


class NvsmSimulator(BaseSimulator):
    """Simulates nvsm show/dump commands."""

    TOOLS = {
        "nvsm": ToolInfo(
            "nvsm", "NVIDIA System Management", NVSM_VERSION,
            usage="nvsm [--json] show|dump TARGET [--detailed]",
            commands=(
                ("show health", "Show system health summary"),
                ("show health --detailed", "Show every health check"),
                ("show gpus", "Show GPU inventory and health"),
                ("show alerts", "Show active alerts"),
                ("dump health", "Collect a health diagnostic tarball"),
            ),
            version_text=f"NVSM version {NVSM_VERSION}",
        ),
    }

    def execute(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        verb = cmd.subcommand
        if verb is None:
            return self.help(self.TOOLS["nvsm"])
        node = self.current_node(self.snapshot(), ctx)
        target = cmd.arguments[1] if len(cmd.arguments) > 1 else None

        if verb == "show":
            if target is None:
                return self._show_system(node)
            if target == "health":
                return self._show_health(node, cmd.has_flag("detailed", "v", "verbose"), cmd.has_flag("json"))
            if target == "gpus":
                return self._show_gpus(node)
            if target == "alerts":
                return self._show_alerts(node, cmd.has_flag("json"))
            if target.startswith(GPU_TARGET):
                return self._show_gpu(node, target)
            hint = did_you_mean(target, ("health", "gpus", "alerts"))
            raise self.error(f"ERROR:nvsm:Target '{target}' does not exist" + (f"\n{hint}" if hint else ""))
        if verb == "dump":
            if target != "health":
                raise self.error("Usage: nvsm dump health")
            stamp = self._clock().strftime("%Y%m%d%H%M%S")
            return self.success(
                f"Writing output to /tmp/nvsm-health-{node.id}-{stamp}.tar.xz\nDone.\n"
            )
        hint = did_you_mean(verb, ("show", "dump"))
        raise self.error(
            f"ERROR:nvsm:Unknown command '{verb}'. Type 'nvsm --help' for usage."
            + (f"\n{hint}" if hint else "")
        )

    def _show_system(self, node: DGXNode) -> CommandResult:
        lines = [
            "/systems/localhost",
            "Properties:",
            f"  Hostname = {node.hostname}",
            f"  SystemType = {node.system_type}",
            f"  Status_Health = {_label(derive_node_health(node, self._store.thresholds))}",
            "Targets:",
            "  gpus",
            "  network",
            "  storage",
            "Verbs:",
            "  cd",
            "  show",
        ]
        return self.success("\n".join(lines) + "\n")

    def _show_health(self, node: DGXNode, detailed: bool, as_json: bool) -> CommandResult:
        thresholds = self._store.thresholds
        checks = run_health_checks(node, thresholds)
        rollup = derive_node_health(node, thresholds)
        overall = HealthStatus.worst(rollup, *(c.status for c in checks))
        healthy = sum(1 for c in checks if c.status == HealthStatus.OK)
        if as_json:
            payload = {
                "node": node.id,
                "overall": _label(overall),
                "gpu_rollup": _label(rollup),
                "healthy_checks": healthy,
                "total_checks": len(checks),
                "checks": [
                    {"description": c.description, "status": _label(c.status), "details": c.details}
                    for c in checks
                    if detailed or c.status != HealthStatus.OK
                ],
            }
            return self.success(json.dumps(payload, indent=2) + "\n")

        shown = checks if detailed else [c for c in checks if c.status != HealthStatus.OK]
        lines = ["", "Checks", "------"]
        for check in shown:
            lines.append(self.dotted(check.description, " " + _label(check.status), DOT_LEADER_WIDTH))
            if check.details and check.status != HealthStatus.OK:
                lines.append(f"    {check.details}")
        if not detailed and len(shown) < len(checks):
            lines.append(f"... {len(checks) - len(shown)} healthy checks not shown (use --detailed)")
        lines.extend([
            "",
            "Health Summary",
            "--------------",
            f"{healthy} out of {len(checks)} checks are Healthy",
            f"GPU health rollup is {_label(rollup)}",
            f"Overall system status is {_label(overall)}",
        ])
        return self.success("\n".join(lines) + "\n")

    def _show_gpus(self, node: DGXNode) -> CommandResult:
        fabric = node_fabric(node)
        lines = [
            "/systems/localhost/gpus",
            "Properties:",
            f"  GPUCount = {fabric.detected_gpus}",
            f"  NVLinksActive = {fabric.active_links}/{fabric.total_links}",
        ]
        lines.append(f"  Status_HealthRollup = {_label(derive_node_health(node, self._store.thresholds))}")
        lines.append("Targets:")
        for gpu in node.gpus:
            lines.append(f"  GPU{gpu.id}  {gpu.name}  {kernel_pci_address(gpu)}  "
                         f"{_label(self.health_of(node, gpu))}")
        return self.success("\n".join(lines) + "\n")

    def _show_gpu(self, node: DGXNode, target: str) -> CommandResult:
        suffix = target[len(GPU_TARGET):]
        gpu = node.find_gpu(int(suffix)) if suffix.isdigit() else None
        if gpu is None:
            raise self.error(f"ERROR:nvsm:Target '{target}' does not exist")
        lines = [
            target,
            "Properties:",
            f"  Name = {gpu.name}",
            f"  UUID = {gpu.uuid}",
            f"  PCIAddress = {kernel_pci_address(gpu)}",
            f"  Temperature = {gpu.temperature:.0f} C",
            f"  PowerDraw = {gpu.power_draw:.1f} W",
            f"  Utilization = {gpu.utilization:.0f} %",
            f"  MemoryUsed = {gpu.memory_used} MiB / {gpu.memory_total} MiB",
            f"  ECC_SingleBit = {gpu.ecc_errors.single_bit}",
            f"  ECC_DoubleBit = {gpu.ecc_errors.double_bit}",
            f"  NVLinksActive = {gpu_links(gpu).active}/{len(gpu.nvlinks)}",
            f"  Status_Health = {_label(self.health_of(node, gpu))}",
            "Verbs:",
            "  cd",
            "  show",
        ]
        return self.success("\n".join(lines) + "\n")

    def _show_alerts(self, node: DGXNode, as_json: bool) -> CommandResult:
        checks = [c for c in run_health_checks(node, self._store.thresholds) if c.status != HealthStatus.OK]
        created = self._clock().strftime("%Y-%m-%dT%H:%M:%S")
        alerts = [
            {
                "id": f"NV-{node.id.upper()}-{index:04d}",
                "severity": c.status.value,
                "component": c.target,
                "description": c.description,
                "details": c.details,
                "created": created,
            }
            for index, c in enumerate(checks, start=1)
        ]
        if as_json:
            return self.success(json.dumps({"alerts": alerts}, indent=2) + "\n")
        if not alerts:
            return self.success("No active alerts.\n")
        lines = []
        for alert in alerts:
            lines.extend([
                f"/systems/localhost/alerts/{alert['id']}",
                "Properties:",
                f"  Severity = {alert['severity']}",
                f"  Component = {alert['component']}",
                f"  Description = {alert['description']}",
                f"  Details = {alert['details']}",
                f"  CreatedTime = {alert['created']}",
                "",
            ])
        logger.debug(f"{len(alerts)} nvsm alerts on {node.id}")
        return self.success("\n".join(lines))
