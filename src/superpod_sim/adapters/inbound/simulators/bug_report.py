"""nvidia-bug-report.sh simulator.

Prints what the real script collects and a summary of the bundle. The
summary is rendered from the same snapshot the sections would contain, so
GPU health, ECC counts and XID history match the other tools exactly. No
file is written.
"""

from __future__ import annotations

from collections import Counter

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.adapters.inbound.simulators.basic_system import kernel_pci_address
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.services.fabric import node_fabric
from superpod_sim.domain.value_objects.health_rules import HealthStatus
from superpod_sim.domain.value_objects.xid_catalog import get_xid
from superpod_sim.ports.outbound.clock import isoformat_utc

DEFAULT_OUTPUT = "/tmp/nvidia-bug-report.log.gz"
RULE = "-" * 60
SECTIONS = (
    "nvidia-smi -q",
    "GPU driver version",
    "CUDA version",
    "NVLink status",
    "NVSwitch status",
    "PCIe configuration",
    "ECC memory status",
    "XID error history",
    "Thermal information",
    "Power information",
    "dmesg nvidia messages",
    "journalctl nvidia-fabricmanager",
    "System information",
)
EXTRA_SECTIONS = ("lspci -vvv", "dmidecode", "kernel modules", "boot parameters")
# Sections skipped in safe mode because the real commands can hang
HANGING_SECTIONS = frozenset({"nvidia-smi -q", "NVLink status"})


class BugReportSimulator(BaseSimulator):
    """Simulates nvidia-bug-report.sh."""

    TOOLS = {
        "nvidia-bug-report.sh": ToolInfo(
            "nvidia-bug-report.sh", "collect diagnostic information for NVIDIA support", "535.129.03",
            usage="nvidia-bug-report.sh [--output-file FILE] [--no-compress] [--safe-mode] [--extra-system-data]",
            version_text="nvidia-bug-report.sh Version: 535.129.03",
        ),
    }

    def execute(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        output_file = cmd.get_flag_string("o", "output-file") or DEFAULT_OUTPUT
        if cmd.has_flag("no-compress"):
            output_file = output_file.removesuffix(".gz")

        sections = list(SECTIONS)
        if cmd.has_flag("extra-system-data"):
            sections.extend(EXTRA_SECTIONS)
        if cmd.has_flag("safe-mode"):
            sections = [s for s in sections if s not in HANGING_SECTIONS]

        lines = [
            "",
            "nvidia-bug-report.sh will now collect information about your",
            f"system and create the file '{output_file}' in the current",
            "directory.  It may take several seconds to run.",
            "",
        ]
        if not cmd.has_flag("quiet"):
            verbose = cmd.has_flag("v", "verbose")
            lines.append("Collecting:")
            for index, section in enumerate(sections, start=1):
                lines.append(f"  [{index}/{len(sections)}] {section}..." if verbose else f"  - {section}")
            lines.append("")
            lines.extend(self._summary(node))
        lines.extend([
            RULE,
            f"Report saved to: {output_file}",
            "nvidia-bug-report.sh completed successfully.",
        ])
        return self.success("\n".join(lines) + "\n")

    def _summary(self, node: DGXNode) -> list[str]:
        statuses = {gpu.id: self.health_of(node, gpu) for gpu in node.gpus}
        counts = Counter(statuses.values())
        lines = [
            RULE,
            "Report Summary",
            RULE,
            "System Information:",
            f"  Hostname:          {node.hostname}",
            f"  System Type:       {node.system_type}",
            f"  Date:              {isoformat_utc(self._clock())}",
            f"  Kernel:            {node.kernel_version}",
            "",
            "Driver Information:",
            f"  Driver Version:    {node.nvidia_driver_version}",
            f"  CUDA Version:      {node.cuda_version}",
            "",
            "GPU Summary:",
            f"  Total GPUs:        {len(node.gpus)}",
            f"  Detected:          {node_fabric(node).detected_gpus}",
            f"  Healthy:           {counts[HealthStatus.OK]}",
            f"  Warning:           {counts[HealthStatus.WARNING]}",
            f"  Critical:          {counts[HealthStatus.CRITICAL]}",
            "",
            "GPU Details:",
        ]
        for gpu in node.gpus:
            lines.extend([
                f"  GPU {gpu.id}: {gpu.name}",
                f"    UUID:            {gpu.uuid}",
                f"    PCI Bus:         {kernel_pci_address(gpu)}",
                f"    Status:          {statuses[gpu.id].value}",
                f"    Temperature:     {round(gpu.temperature)} C",
                f"    Power:           {round(gpu.power_draw)}W / {round(gpu.power_limit)}W",
            ])

        fabric = node_fabric(node)
        total_links = fabric.total_links
        active_links = fabric.active_links
        lines.extend([
            "",
            "NVLink Summary:",
            f"  Total Links:       {total_links}",
            f"  Active:            {active_links}",
            f"  Inactive:          {total_links - active_links}",
            "",
            "ECC Memory Status:",
            f"  Single-Bit Errors: {sum(g.ecc_errors.single_bit for g in node.gpus)}",
            f"  Double-Bit Errors: {sum(g.ecc_errors.double_bit for g in node.gpus)}",
            "",
            "XID Error History:",
        ])

        xids = Counter(x.code for g in node.gpus for x in g.xid_errors)
        if not xids:
            lines.append("  No XID errors recorded.")
        else:
            lines.append(f"  Total XID Errors:  {sum(xids.values())}")
            lines.append("  XID Code | Count | Severity      | Description")
            for code, count in sorted(xids.items()):
                definition = get_xid(code)
                severity = definition.severity.value if definition else "Unknown"
                name = definition.name if definition else "Unknown XID"
                lines.append(f"     {code:>3}    |  {count:>3}  | {severity:<13} | {name}")
            for gpu in node.gpus:
                for xid in gpu.xid_errors:
                    lines.append(f"  {xid.timestamp}  GPU {gpu.id}  Xid {xid.code}: {xid.description}")
        lines.append("")
        return lines
