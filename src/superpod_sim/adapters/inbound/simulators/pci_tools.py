"""PCI enumeration and the system journal.

``lspci`` lists the GPUs still enumerated on PCIe (an XID 79 removes one),
the NVSwitches and the InfiniBand HCAs. ``journalctl`` merges the kernel
ring buffer from ``dmesg`` with messages from the GPU-related systemd units,
so both tools always show the same XID lines.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.adapters.inbound.simulators.basic_system import (
    UPTIME,
    gpu_pci_ids,
    kernel_log,
    kernel_pci_address,
)
from superpod_sim.adapters.inbound.simulators.fabric_manager import summarize_fabric
from superpod_sim.adapters.inbound.simulators.infiniband import hca_pci_address
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.node import DGXNode, SlurmState
from superpod_sim.domain.value_objects.hardware_specs import DGX_A100, SYSTEM_SPECS

MELLANOX_VENDOR = "15b3"
CHIP_CODES = {"Ampere": "GA100", "Hopper": "GH100"}
NVSWITCH_DEVICE = {"Ampere": "1af1", "Hopper": "22a3"}
HCA_DEVICES = {"MT4123": ("101b", "MT28908 Family [ConnectX-6]"), "MT4129": ("1021", "MT2910 Family [ConnectX-7]")}

# syslog priorities
PRIORITIES = {
    "emerg": 0, "alert": 1, "crit": 2, "err": 3, "error": 3,
    "warn": 4, "warning": 4, "notice": 5, "info": 6, "debug": 7,
}


@dataclass(frozen=True)
class PCIDevice:
    """One PCI function as lspci sees it."""
    address: str                  # 0000:10:00.0
    device_class: str
    class_id: str
    vendor_id: str
    device_id: str
    description: str
    driver: str
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class JournalEntry:
    """One journal record."""
    seconds: float                # Since boot
    priority: int
    identifier: str               # "kernel", "systemd[1]", "nv-fabricmanager[2201]"
    unit: str                     # "" for kernel messages
    text: str


def pci_devices(node: DGXNode, thermal_warning_c: float) -> list[PCIDevice]:
    """Enumerated devices in bus order."""
    spec = SYSTEM_SPECS.get(node.system_type, DGX_A100)
    vendor, device = gpu_pci_ids(node)
    chip = CHIP_CODES.get(spec.gpu.architecture, "GA100")
    devices = []
    for gpu in node.visible_gpus():
        notes = []
        if gpu.xid_errors:
            notes.append(f"*** Device reported XID {gpu.xid_errors[-1].code} ***")
        if gpu.ecc_errors.double_bit:
            notes.append(f"*** Uncorrectable ECC errors: {gpu.ecc_errors.double_bit} ***")
        if gpu.temperature >= thermal_warning_c:
            notes.append(f"*** Thermal slowdown active ({round(gpu.temperature)}C) ***")
        devices.append(
            PCIDevice(
                address=kernel_pci_address(gpu),
                device_class="3D controller",
                class_id="0302",
                vendor_id=vendor,
                device_id=device,
                description=f"NVIDIA Corporation {chip} [{gpu.name.removeprefix('NVIDIA ')}] (rev a1)",
                driver="nvidia",
                notes=tuple(notes),
            )
        )
    for switch in range(spec.nvswitch_count):
        devices.append(
            PCIDevice(
                address=f"0000:{0x60 + switch:02x}:00.0",
                device_class="Bridge",
                class_id="0680",
                vendor_id=vendor,
                device_id=NVSWITCH_DEVICE.get(spec.gpu.architecture, "1af1"),
                description="NVIDIA Corporation Device {} (rev a1)".format(
                    NVSWITCH_DEVICE.get(spec.gpu.architecture, "1af1")
                ),
                driver="nvidia-nvswitch",
            )
        )
    for hca in node.hcas:
        device_id, family = HCA_DEVICES.get(hca.device_id, ("101b", f"{hca.model}"))
        devices.append(
            PCIDevice(
                address=hca_pci_address(hca),
                device_class="Infiniband controller",
                class_id="0207",
                vendor_id=MELLANOX_VENDOR,
                device_id=device_id,
                description=f"Mellanox Technologies {family}",
                driver="mlx5_core",
            )
        )
    return devices


def unit_journal(node: DGXNode) -> list[JournalEntry]:
    """Messages logged by the GPU-related units since boot."""
    fabric = summarize_fabric(node)
    entries = [
        JournalEntry(5.0, 6, "systemd[1]", "nvidia-persistenced", "Starting NVIDIA Persistence Daemon..."),
        JournalEntry(5.2, 6, "nvidia-persistenced[1587]", "nvidia-persistenced", "Started (1587)"),
        JournalEntry(5.3, 6, "systemd[1]", "nvidia-persistenced", "Started NVIDIA Persistence Daemon."),
        JournalEntry(7.0, 6, "systemd[1]", "nvidia-fabricmanager", "Starting NVIDIA fabric manager service..."),
        JournalEntry(
            7.4, 6, "nv-fabricmanager[2201]", "nvidia-fabricmanager",
            f"Successfully configured all the available NVSwitches to route GPU NVLink traffic "
            f"({fabric.active_links}/{fabric.total_links} links active)",
        ),
        JournalEntry(7.5, 6, "systemd[1]", "nvidia-fabricmanager", "Started NVIDIA fabric manager service."),
        JournalEntry(8.0, 6, "systemd[1]", "slurmd", "Starting Slurm node daemon..."),
        JournalEntry(8.2, 6, "slurmd[2341]", "slurmd", "slurmd: slurmd version 23.02.6 started"),
        JournalEntry(8.3, 6, "slurmd[2341]", "slurmd", f"slurmd: Slurmd started with gres/gpu count: {len(node.gpus)}"),
        JournalEntry(8.4, 6, "systemd[1]", "slurmd", "Started Slurm node daemon."),
        JournalEntry(9.0, 6, "nvsm-core[2410]", "nvsm-core", "NVSM core service started"),
    ]
    for gpu in node.gpus:
        if gpu.has_fallen_off_bus:
            entries.append(
                JournalEntry(
                    300.0 + gpu.id, 3, "nv-fabricmanager[2201]", "nvidia-fabricmanager",
                    f"GPU {gpu.id} ({kernel_pci_address(gpu)}) is not present, removed from the NVLink fabric",
                )
            )
        for link in gpu.nvlinks:
            if not link.is_active:
                entries.append(
                    JournalEntry(
                        300.5 + gpu.id + link.link_id * 0.01, 4, "nv-fabricmanager[2201]", "nvidia-fabricmanager",
                        f"NVLink {link.link_id} of GPU {gpu.id} is down, fabric running degraded",
                    )
                )
    if node.slurm_state in (SlurmState.DRAIN, SlurmState.DOWN):
        entries.append(
            JournalEntry(
                400.0, 4, "slurmd[2341]", "slurmd",
                f"slurmd: node state set to {node.slurm_state.value.upper()}: {node.slurm_reason or 'none'}",
            )
        )
    return entries


class PCIToolsSimulator(BaseSimulator):
    """Simulates lspci and journalctl."""

    TOOLS = {
        "lspci": ToolInfo(
            "lspci", "list all PCI devices", "3.7.0",
            usage="lspci [-v] [-nn] [-D] [-k] [-d [vendor]:[device]] [-s [[domain:]bus:]slot]",
            version_text="lspci version 3.7.0",
        ),
        "journalctl": ToolInfo(
            "journalctl", "Query the systemd journal", "249",
            usage="journalctl [-k] [-u UNIT] [-p PRIORITY] [-n LINES] [-r]",
            version_text="systemd 249 (249.11-0ubuntu3.11)",
        ),
    }

    # -------- lspci --------

    def execute_lspci(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        devices = pci_devices(node, self._store.thresholds.thermal_warning_c)

        vendor_filter = cmd.get_flag_string("d")
        if cmd.has_flag("d") and vendor_filter is None:
            raise self.error("lspci: option requires an argument -- 'd'")
        if vendor_filter:
            vendor, _, device = vendor_filter.lower().partition(":")
            devices = [
                d for d in devices
                if (not vendor or d.vendor_id == vendor) and (not device or d.device_id == device)
            ]
        slot = cmd.get_flag_string("s")
        if slot:
            devices = [d for d in devices if d.address.endswith(slot.lower())]

        show_domain = cmd.has_flag("D")
        numeric = cmd.has_flag("nn")
        verbose = cmd.has_flag("v", "vv", "vvv")
        with_driver = cmd.has_flag("k") or verbose

        lines = []
        for index, dev in enumerate(devices):
            address = dev.address if show_domain else dev.address[5:]
            description = dev.description
            device_class = dev.device_class
            if numeric:
                device_class = f"{dev.device_class} [{dev.class_id}]"
                description = f"{dev.description} [{dev.vendor_id}:{dev.device_id}]"
            lines.append(f"{address} {device_class}: {description}")
            if verbose:
                lines.append(f"\tSubsystem: {description.split(' (rev')[0]}")
                lines.append(f"\tFlags: bus master, fast devsel, latency 0, IRQ {32 + index}, NUMA node {0 if index % 16 < 8 else 1}")
                lines.append(f"\tMemory at {0xe0000000 + index * 0x2000000:08x} (64-bit, prefetchable)")
                lines.append("\tCapabilities: [60] Express Endpoint, MSI 00")
            if with_driver:
                lines.append(f"\tKernel driver in use: {dev.driver}")
                lines.append(f"\tKernel modules: {dev.driver}")
            if verbose:
                lines.extend(f"\t{note}" for note in dev.notes)
                lines.append("")
        return self.success("\n".join(lines) + ("\n" if lines and lines[-1] else ""))

    # -------- journalctl --------

    def execute_journalctl(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        entries = [
            JournalEntry(m.seconds, PRIORITIES[m.level], "kernel", "", m.text)
            for m in kernel_log(node, self._store.thresholds)
        ]
        if not cmd.has_flag("k", "dmesg"):
            entries.extend(unit_journal(node))
            unit = cmd.get_flag_string("u", "unit")
            if unit:
                unit = unit.removesuffix(".service")
                entries = [e for e in entries if e.unit == unit]
                if not entries:
                    return self.success("-- No entries --\n")

        priority = cmd.get_flag_string("p", "priority")
        if priority:
            level = PRIORITIES.get(priority.lower())
            if level is None and priority.isdigit() and int(priority) <= 7:
                level = int(priority)
            if level is None:
                raise self.error(f"Failed to parse priority value: {priority}")
            entries = [e for e in entries if e.priority <= level]

        entries.sort(key=lambda e: e.seconds)
        lines_arg = cmd.get_flag_string("n", "lines")
        if lines_arg:
            if not lines_arg.isdigit():
                raise self.error(f"Failed to parse lines '{lines_arg}'")
            entries = entries[-int(lines_arg):] if int(lines_arg) else []
        if cmd.has_flag("r", "reverse"):
            entries.reverse()

        boot = self._clock() - UPTIME
        stamp = "%b %d %H:%M:%S"
        output = [
            f"-- Logs begin at {boot.strftime('%a %Y-%m-%d %H:%M:%S UTC')}, "
            f"end at {self._clock().strftime('%a %Y-%m-%d %H:%M:%S UTC')}. --"
        ]
        for entry in entries:
            when = (boot + timedelta(seconds=entry.seconds)).strftime(stamp)
            output.append(f"{when} {node.id} {entry.identifier}: {entry.text}")
        if not entries:
            output.append("-- No entries --")
        return self.success("\n".join(output) + "\n")
