"""nvlink-audit simulator.

Audits the NVLink fabric of the current node. Link counts come from
:func:`~superpod_sim.domain.services.fabric.node_fabric` and link ``i`` is
reported on NVSwitch ``i % nvswitch_count`` as ``nv-fabricmanager`` does,
so the audit never disagrees with the fabric manager or ``nvidia-smi
nvlink``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.adapters.inbound.simulators.basic_system import kernel_pci_address
from superpod_sim.adapters.inbound.simulators.fabric_manager import summarize_fabric
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.services.fabric import GPULinks, gpu_links, link_errors, link_is_up
from superpod_sim.domain.value_objects.hardware_specs import DGX_A100, SYSTEM_SPECS
from superpod_sim.ports.outbound.clock import isoformat_utc

RULE = "=" * 78
NVLINK_GENERATION = {"Ampere": "3.0", "Hopper": "4.0"}


class AuditStatus(Enum):
    """Verdict for one GPU or the whole node."""
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    ERRORS = "Errors Detected"
    MISSING = "Not Present"


@dataclass
class GPUAudit:
    """Link audit of one GPU."""
    links: GPULinks

    @property
    def gpu(self) -> GPU:
        return self.links.gpu

    @property
    def active(self) -> int:
        return self.links.active

    @property
    def down(self) -> int:
        return self.links.down

    @property
    def total(self) -> int:
        return self.links.total

    @property
    def errors(self) -> int:
        return self.links.errors

    @property
    def down_links(self) -> list[int]:
        return list(self.links.down_links)

    @property
    def status(self) -> AuditStatus:
        if not self.links.present:
            return AuditStatus.MISSING
        if self.errors:
            return AuditStatus.ERRORS
        if self.down:
            return AuditStatus.DEGRADED
        return AuditStatus.HEALTHY

    def to_dict(self) -> dict[str, object]:
        return {
            "gpu": self.gpu.id,
            "name": self.gpu.name,
            "pci_address": kernel_pci_address(self.gpu),
            "status": self.status.value,
            "active_links": self.active,
            "down_links": self.down,
            "total_links": self.total,
            "link_errors": self.errors,
            "down_link_ids": self.down_links,
        }


def audit_gpu(gpu: GPU) -> GPUAudit:
    return GPUAudit(links=gpu_links(gpu))


def overall_status(audits: list[GPUAudit]) -> AuditStatus:
    statuses = {a.status for a in audits}
    if AuditStatus.MISSING in statuses or AuditStatus.ERRORS in statuses:
        return AuditStatus.ERRORS
    if AuditStatus.DEGRADED in statuses:
        return AuditStatus.DEGRADED
    return AuditStatus.HEALTHY


class NvlinkAuditSimulator(BaseSimulator):
    """Simulates the nvlink-audit diagnostic."""

    TOOLS = {
        "nvlink-audit": ToolInfo(
            "nvlink-audit", "NVLink fabric diagnostic and audit tool", "1.0.0",
            usage="nvlink-audit [-v] [-i GPU] [--errors-only] [--json]",
        ),
    }

    def execute(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        gpus = node.gpus
        index = cmd.get_flag_string("i", "id")
        if index is not None:
            gpus = [node.find_gpu(self.parse_gpu_index(index, node))]

        audits = [audit_gpu(g) for g in gpus]
        status = overall_status(audits)
        active = sum(a.active for a in audits)
        down = sum(a.down for a in audits)
        detected = sum(1 for a in audits if a.status != AuditStatus.MISSING)
        if cmd.has_flag("errors-only"):
            audits = [a for a in audits if a.status != AuditStatus.HEALTHY]

        if cmd.has_flag("json"):
            report = {
                "host": node.hostname,
                "timestamp": isoformat_utc(self._clock()),
                "status": status.value,
                "gpus_detected": detected,
                "active_links": active,
                "down_links": down,
                "gpus": [a.to_dict() for a in audits],
            }
            return self.success(json.dumps(report, indent=2) + "\n")
        return self.success(self._render(node, audits, status, (active, down), cmd.has_flag("v", "verbose")))

    def _render(
        self, node: DGXNode, audits: list[GPUAudit], status: AuditStatus, totals: tuple[int, int], verbose: bool
    ) -> str:
        spec = SYSTEM_SPECS.get(node.system_type, DGX_A100)
        switches = spec.nvswitch_count
        fabric = summarize_fabric(node)
        lines = [
            RULE,
            "NVLink Fabric Audit Report".center(78).rstrip(),
            f"Host: {node.hostname}".center(78).rstrip(),
            f"Date: {isoformat_utc(self._clock())}".center(78).rstrip(),
            RULE,
            "",
            "=== System Overview ===",
            f"Total GPUs: {fabric.links.detected_gpus}",
            f"NVSwitches: {switches}",
            f"Architecture: {node.system_type} ({spec.gpu.architecture})",
            f"NVLink Version: {NVLINK_GENERATION.get(spec.gpu.architecture, '3.0')}",
            f"Links per GPU: {spec.gpu.nvlink_count}",
            "",
            "=== NVLink Status Per GPU ===",
            "-" * 78,
        ]
        for audit in audits:
            gpu = audit.gpu
            lines.extend([
                "",
                f"GPU {gpu.id}: {gpu.name}",
                f"  PCI Address: {kernel_pci_address(gpu)}",
                f"  NVLink Status: {audit.status.value}",
            ])
            if audit.status == AuditStatus.MISSING:
                lines.append("  GPU has fallen off the bus; links cannot be queried")
                continue
            if verbose:
                lines.append("  Link Details:")
                for link in gpu.nvlinks:
                    errors = link_errors(link)
                    switch = f"NVSwitch {link.link_id % switches}" if switches else "direct"
                    speed = f"{link.speed} GB/s" if link_is_up(gpu, link) else "N/A"
                    line = (
                        f"    Link {link.link_id:2d}: State: {link.status.value:<8} "
                        f"Peer: {switch:<10} Speed: {speed}"
                    )
                    if errors:
                        line += f" Errors: {errors}"
                    lines.append(line)
            lines.append(f"  Active Links: {audit.active}/{audit.total}")
            lines.append(f"  Down Links: {audit.down}")
            lines.append(f"  Total Errors: {audit.errors}")
            if audit.down_links:
                lines.append(f"  Down: link {', '.join(str(i) for i in audit.down_links)}")
        lines.extend(["", "-" * 78])

        visible = [a for a in audits if a.status != AuditStatus.MISSING]
        lines.append("")
        lines.append("=== NVSwitch Status ===")
        for switch in fabric.switches:
            state = "Healthy" if switch.active == switch.total and not switch.errors else "Degraded"
            lines.append(f"NVSwitch {switch.switch_id}: {state} ({switch.active}/{switch.total} ports active)")

        missing = [a.gpu.id for a in audits if a.status == AuditStatus.MISSING]
        full_mesh = not missing and all(a.active > 0 for a in visible)
        symmetric = len({a.active for a in visible}) <= 1
        lines.extend([
            "",
            "=== Topology Verification ===",
            f"Full mesh connectivity: {'PASS' if full_mesh else 'FAIL'}",
            f"NVSwitch routing: {'PASS' if fabric.active_links else 'FAIL'}",
            f"Bandwidth symmetry: {'PASS' if symmetric else 'WARN'}",
        ])
        if missing:
            lines.append(f"  Missing GPUs: {', '.join(str(i) for i in missing)}")

        lines.extend([
            "",
            RULE,
            "=== Audit Summary ===",
            f"Active links: {totals[0]}  Down links: {totals[1]}",
        ])
        if status == AuditStatus.ERRORS:
            lines.append("Status: ERRORS DETECTED")
            lines.append("Action Required: Investigate NVLink errors and consider GPU reset or reseat")
        elif status == AuditStatus.DEGRADED:
            lines.append("Status: WARNINGS")
            lines.append("Recommendation: Monitor for degradation, consider preventive maintenance")
        else:
            lines.append("Status: HEALTHY")
            lines.append("All NVLink connections are operating normally")
        lines.append(RULE)
        return "\n".join(lines) + "\n"
