"""nvidia-smi simulator.

Renders the default status table, ``-L``, ``-q`` (optionally filtered by
``-d``), ``--query-gpu`` CSV, ``nvlink``, ``topo -m`` and ``mig`` listings
from one cluster snapshot. ``-pm``, ``-pl``, ``-r``, ``-mig`` and
``mig -cgi/-dgi`` validate their arguments and return state change
requests.

A GPU with XID 79 is no longer enumerated: it disappears from every
listing and only the warning footer mentions it.

References:
    - nvidia-smi(1) manual page, driver r535
    - NVIDIA Multi-Instance GPU user guide
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolError, ToolInfo
from superpod_sim.application.state_store import MIN_POWER_LIMIT_W, plan_mig_instances
from superpod_sim.domain.entities.command import (
    CommandContext,
    CommandResult,
    ParsedCommand,
    StateAction,
    StateChange,
)
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.services.health import health_findings
from superpod_sim.domain.services.suggestions import did_you_mean
from superpod_sim.domain.value_objects.hardware_specs import MIG_PROFILES, find_mig_profile
from superpod_sim.domain.value_objects.health_rules import HealthStatus
from superpod_sim.domain.value_objects.xid_catalog import XID_FALLEN_OFF_BUS

logger = logging.getLogger(__name__)

COL_1 = 31
COL_2 = 22
COL_3 = 22
TABLE_WIDTH = COL_1 + COL_2 + COL_3 + 4
LABEL_WIDTH = 42
BAR1_TOTAL_MIB = 131072
FB_RESERVED_MIB = 625
VBIOS_VERSION = "92.00.5C.00.01"

FALLEN_OFF_BUS_HINT = "Check 'dmesg | grep -i xid' for details. GPU reset or system reboot may be required."


def _kv(indent: int, label: str, value: object) -> str:
    return f"{' ' * indent}{label.ljust(LABEL_WIDTH - indent)}: {value}"


def _active(flag: bool) -> str:
    return "Active" if flag else "Not Active"


def _enabled(flag: bool) -> str:
    return "Enabled" if flag else "Disabled"


def _pstate(gpu: GPU) -> str:
    if gpu.utilization > 50:
        return "P0"
    if gpu.utilization > 10:
        return "P2"
    return "P8"


# --query-gpu fields: name -> (unit, value)
QueryField = tuple[str, Callable[[DGXNode, GPU], str]]

QUERY_FIELDS: dict[str, QueryField] = {
    "index": ("", lambda n, g: str(g.id)),
    "name": ("", lambda n, g: g.name),
    "uuid": ("", lambda n, g: g.uuid),
    "pci.bus_id": ("", lambda n, g: g.pci_address),
    "driver_version": ("", lambda n, g: n.nvidia_driver_version),
    "pstate": ("", lambda n, g: _pstate(g)),
    "persistence_mode": ("", lambda n, g: _enabled(g.persistence_mode)),
    "mig.mode.current": ("", lambda n, g: _enabled(g.mig_mode)),
    "ecc.mode.current": ("", lambda n, g: _enabled(g.ecc_enabled)),
    "temperature.gpu": ("", lambda n, g: str(round(g.temperature))),
    "utilization.gpu": ("%", lambda n, g: str(round(g.utilization))),
    "utilization.memory": ("%", lambda n, g: str(round(100 * g.memory_used / g.memory_total))),
    "memory.total": ("MiB", lambda n, g: str(g.memory_total)),
    "memory.used": ("MiB", lambda n, g: str(g.memory_used)),
    "memory.free": ("MiB", lambda n, g: str(g.memory_free)),
    "power.draw": ("W", lambda n, g: f"{g.power_draw:.2f}"),
    "power.limit": ("W", lambda n, g: f"{g.power_limit:.2f}"),
    "power.max_limit": ("W", lambda n, g: f"{g.max_power_limit:.2f}"),
    "clocks.sm": ("MHz", lambda n, g: str(g.clocks_sm)),
    "clocks.mem": ("MHz", lambda n, g: str(g.clocks_mem)),
    "ecc.errors.corrected.volatile.total": ("", lambda n, g: str(g.ecc_errors.single_bit)),
    "ecc.errors.uncorrected.volatile.total": ("", lambda n, g: str(g.ecc_errors.double_bit)),
    "ecc.errors.corrected.aggregate.total": ("", lambda n, g: str(g.ecc_errors.aggregated_single_bit)),
    "ecc.errors.uncorrected.aggregate.total": ("", lambda n, g: str(g.ecc_errors.aggregated_double_bit)),
}

DISPLAY_TYPES = (
    "MEMORY", "UTILIZATION", "ECC", "TEMPERATURE", "POWER", "CLOCK",
    "PERFORMANCE", "PAGE_RETIREMENT", "ROW_REMAPPER",
)


class NvidiaSmiSimulator(BaseSimulator):
    """Simulates the NVIDIA System Management Interface."""

    TOOLS = {
        "nvidia-smi": ToolInfo(
            name="nvidia-smi",
            description="NVIDIA System Management Interface program",
            version="535.129.03",
            usage="nvidia-smi [OPTION1 [ARG1]] [OPTION2 [ARG2]] ...",
            commands=(
                ("-L, --list-gpus", "Display a list of GPUs connected to the system"),
                ("-q, --query", "Display GPU or Unit info"),
                ("-i, --id=ID", "Target a specific GPU"),
                ("-d, --display=TYPE", "Display only selected information"),
                ("--query-gpu=FIELDS", "Information about GPU, comma separated"),
                ("--format=csv", "Output format for --query-gpu"),
                ("-pm, --persistence-mode", "Set persistence mode: 0/DISABLED, 1/ENABLED"),
                ("-pl, --power-limit", "Specifies maximum power management limit in watts"),
                ("-r, --gpu-reset", "Reset a GPU. Requires -i to specify GPU"),
                ("-mig, --multi-instance-gpu", "Toggle MIG mode: 0/DISABLED, 1/ENABLED"),
                ("nvlink", "Display NVLink information (--status, --errorcounters)"),
                ("topo", "Display topology information (-m)"),
                ("mig", "MIG management (-lgip, -lgi, -cgi, -dgi)"),
            ),
            version_text="NVIDIA-SMI version  : 535.129.03\nNVML version        : 535.129\n"
                         "DRIVER version      : 535.129.03\nCUDA Version        : 12.2",
        ),
    }

    def execute(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        node = self.current_node(cluster, ctx)

        handlers = {
            "nvlink": self._nvlink,
            "topo": self._topo,
            "mig": self._mig,
        }
        handler = handlers.get(cmd.subcommand or "")
        if handler is not None:
            return handler(cmd, node)
        if cmd.subcommand is not None:
            hint = did_you_mean(cmd.subcommand, handlers)
            raise self.error(
                f"Invalid combination of input arguments. Unknown command '{cmd.subcommand}'.\n"
                + (f"{hint}\n" if hint else "")
                + "Please run 'nvidia-smi -h' for help.",
                2,
            )

        if cmd.has_flag("r", "gpu-reset"):
            return self._reset(cmd, node)
        if cmd.has_flag("pm", "persistence-mode"):
            return self._persistence_mode(cmd, node)
        if cmd.has_flag("pl", "power-limit"):
            return self._power_limit(cmd, node)
        if cmd.has_flag("mig", "multi-instance-gpu"):
            return self._mig_mode(cmd, node)
        if cmd.has_flag("query-gpu"):
            return self._query_gpu(cmd, node)
        if cmd.has_flag("L", "list-gpus"):
            return self._list_gpus(node)
        if cmd.has_flag("q", "query"):
            return self._query(cmd, node)
        if cmd.has_flag("i", "id"):
            gpus = self._selected_gpus(cmd, node)
            return self.success(self._format_table(node, gpus, hidden=[]))
        return self.success(self._format_table(node, node.visible_gpus(), self._hidden(node)))

    # -------- target selection --------

    @staticmethod
    def _hidden(node: DGXNode) -> list[GPU]:
        return [g for g in node.gpus if g.has_fallen_off_bus]

    def _selected_gpus(self, cmd: ParsedCommand, node: DGXNode) -> list[GPU]:
        """GPUs named by ``-i``, or every visible GPU.

        Raises:
            ToolError: If the index is invalid or names a GPU off the bus.
        """
        if not cmd.has_flag("i", "id"):
            return node.visible_gpus()
        index = self.parse_gpu_index(cmd.get_flag("i", "id"), node)
        gpu = node.find_gpu(index)
        if gpu.has_fallen_off_bus:
            raise self.error(
                f"Unable to query GPU {index}: GPU has fallen off the bus (XID {XID_FALLEN_OFF_BUS}).\n"
                f"{FALLEN_OFF_BUS_HINT}"
            )
        return [gpu]

    # -------- default table --------

    def _format_table(self, node: DGXNode, gpus: list[GPU], hidden: list[GPU]) -> str:
        border = "+" + "-" * (TABLE_WIDTH - 2) + "+"
        separator = "+" + "-" * COL_1 + "+" + "-" * COL_2 + "+" + "-" * COL_3 + "+"
        driver = node.nvidia_driver_version

        def row(a: str, b: str, c: str) -> str:
            return f"|{a[:COL_1].ljust(COL_1)}|{b[:COL_2].ljust(COL_2)}|{c[:COL_3].ljust(COL_3)}|"

        def full(text: str) -> str:
            return f"|{text[:TABLE_WIDTH - 2].ljust(TABLE_WIDTH - 2)}|"

        lines = [self.now(), border]
        lines.append(full(f" NVIDIA-SMI {driver}   Driver Version: {driver}   CUDA Version: {node.cuda_version}"))
        lines.append("|" + "-" * COL_1 + "+" + "-" * COL_2 + "+" + "-" * COL_3 + "+")
        lines.append(row(" GPU  Name        Persistence-M", " Bus-Id        Disp.A", " Volatile Uncorr. ECC"))
        lines.append(row(" Fan  Temp  Perf  Pwr:Usage/Cap", "         Memory-Usage", " GPU-Util  Compute M."))
        lines.append(row("", "", "               MIG M."))
        lines.append("|" + "=" * COL_1 + "+" + "=" * COL_2 + "+" + "=" * COL_3 + "|")

        for gpu in gpus:
            ecc = str(gpu.ecc_errors.double_bit) if gpu.ecc_enabled else "N/A"
            persistence = "On" if gpu.persistence_mode else "Off"
            lines.append(row(
                f"   {gpu.id}  {gpu.name[:16].ljust(16)}  {persistence:>3}",
                f" {gpu.pci_address} Off",
                f" {ecc:>20}",
            ))
            lines.append(row(
                f" N/A   {round(gpu.temperature):>2}C    {_pstate(gpu)}  "
                f"{round(gpu.power_draw):>4}W / {round(gpu.power_limit):>3}W",
                f"{gpu.memory_used}MiB / {gpu.memory_total}MiB".rjust(COL_2 - 1),
                f"{round(gpu.utilization):>7}%      Default",
            ))
            lines.append(row("", "", f"{'Enabled' if gpu.mig_mode else 'Disabled':>21}"))
            lines.append(separator)

        lines.append("")
        lines.append(border)
        lines.append(full(" Processes:"))
        lines.append(full("  GPU   GI   CI        PID   Type   Process name                  GPU Memory"))
        lines.append(full("        ID   ID                                                   Usage"))
        lines.append("|" + "=" * (TABLE_WIDTH - 2) + "|")
        running = [g for g in gpus if g.allocated_job_id is not None]
        if not running:
            lines.append(full("  No running processes found"))
        for gpu in running:
            pid = 20000 + gpu.allocated_job_id * 8 + gpu.id
            lines.append(full(
                f"  {gpu.id:>3}   N/A  N/A  {pid:>9}      C   {'python':<29} {gpu.memory_used:>6}MiB"
            ))
        lines.append(border)

        for gpu in gpus:
            findings = health_findings(gpu, self._store.thresholds)
            status = self.health_of(node, gpu)
            if status != HealthStatus.OK:
                lines.append(f"WARNING: GPU {gpu.id} health is {status.value}: {findings[0].reason}")
        if hidden:
            lines.append(
                f"WARNING: {len(hidden)} GPU(s) not shown due to critical errors "
                f"(XID {XID_FALLEN_OFF_BUS}: GPU fallen off the bus)"
            )
            lines.append(FALLEN_OFF_BUS_HINT)
        return "\n".join(lines) + "\n"

    def _list_gpus(self, node: DGXNode) -> CommandResult:
        gpus = node.visible_gpus()
        if not gpus:
            return self.success("No devices were found\n")
        return self.success("".join(f"GPU {g.id}: {g.name} (UUID: {g.uuid})\n" for g in gpus))

    # -------- -q --------

    def _query(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        gpus = self._selected_gpus(cmd, node)
        display = cmd.get_flag_string("d", "display")
        sections: Optional[list[str]] = None
        if display is not None:
            sections = [d.strip().upper() for d in display.split(",") if d.strip()]
            unknown = [d for d in sections if d not in DISPLAY_TYPES and d != "CLOCKS"]
            if unknown:
                raise self.error(
                    f"Invalid display type: {unknown[0]}. Valid types: {', '.join(DISPLAY_TYPES)}", 2
                )

        lines = ["", "==============NVSMI LOG==============", ""]
        lines.append(_kv(0, "Timestamp", self.now()))
        lines.append(_kv(0, "Driver Version", node.nvidia_driver_version))
        lines.append(_kv(0, "CUDA Version", node.cuda_version))
        lines.append("")
        lines.append(_kv(0, "Attached GPUs", len(node.visible_gpus())))

        for gpu in gpus:
            lines.append(f"GPU {gpu.pci_address}")
            if sections is None:
                lines.extend(self._full_gpu_block(node, gpu))
            else:
                for section in sections:
                    lines.extend(self._section(section, gpu))
            lines.append("")
        return self.success("\n".join(lines) + "\n")

    def _section(self, name: str, gpu: GPU) -> list[str]:
        builders = {
            "MEMORY": self._memory_block,
            "UTILIZATION": self._utilization_block,
            "ECC": self._ecc_block,
            "TEMPERATURE": self._temperature_block,
            "POWER": self._power_block,
            "CLOCK": self._clocks_block,
            "CLOCKS": self._clocks_block,
            "PERFORMANCE": self._performance_block,
            "PAGE_RETIREMENT": self._page_retirement_block,
            "ROW_REMAPPER": self._row_remapper_block,
        }
        return builders[name](gpu)

    def _full_gpu_block(self, node: DGXNode, gpu: GPU) -> list[str]:
        spec_arch = "Hopper" if "H100" in gpu.name else "Ampere"
        bus = gpu.pci_address.split(":")[1]
        lines = [
            _kv(4, "Product Name", gpu.name),
            _kv(4, "Product Brand", "NVIDIA"),
            _kv(4, "Product Architecture", spec_arch),
            _kv(4, "Display Mode", "Disabled"),
            _kv(4, "Display Active", "Disabled"),
            _kv(4, "Persistence Mode", _enabled(gpu.persistence_mode)),
            "    MIG Mode",
            _kv(8, "Current", _enabled(gpu.mig_mode)),
            _kv(8, "Pending", _enabled(gpu.mig_mode)),
            _kv(4, "Accounting Mode", "Disabled"),
            _kv(4, "GPU UUID", gpu.uuid),
            _kv(4, "Minor Number", gpu.id),
            _kv(4, "VBIOS Version", VBIOS_VERSION),
            "    PCI",
            _kv(8, "Bus", f"0x{bus}"),
            _kv(8, "Device", "0x00"),
            _kv(8, "Domain", "0x0000"),
            _kv(8, "Device Id", "0x20B210DE"),
            _kv(8, "Bus Id", gpu.pci_address),
            _kv(8, "Max Link Gen", 4),
            _kv(8, "Current Link Gen", 4),
            _kv(8, "Max Link Width", "16x"),
            _kv(8, "Current Link Width", "16x"),
            _kv(4, "Fan Speed", "N/A"),
        ]
        lines.extend(self._performance_block(gpu))
        lines.extend(self._memory_block(gpu))
        lines.append(_kv(4, "Compute Mode", "Default"))
        lines.extend(self._utilization_block(gpu))
        lines.extend(self._ecc_block(gpu))
        lines.extend(self._page_retirement_block(gpu))
        lines.extend(self._xid_block(node, gpu))
        lines.extend(self._temperature_block(gpu))
        lines.extend(self._power_block(gpu))
        lines.extend(self._clocks_block(gpu))
        lines.append(_kv(4, "Processes", "None" if gpu.allocated_job_id is None else "1"))
        return lines

    def _performance_block(self, gpu: GPU) -> list[str]:
        thresholds = self._store.thresholds
        thermal = gpu.temperature >= thresholds.thermal_warning_c
        power_cap = gpu.power_draw >= thresholds.power_warning_fraction * gpu.power_limit
        idle = gpu.utilization < 5 and not (thermal or power_cap)
        return [
            _kv(4, "Performance State", _pstate(gpu)),
            "    Clocks Throttle Reasons",
            _kv(8, "Idle", _active(idle)),
            _kv(8, "Applications Clocks Setting", "Not Active"),
            _kv(8, "SW Power Cap", _active(power_cap)),
            _kv(8, "HW Slowdown", _active(thermal)),
            _kv(12, "HW Thermal Slowdown", _active(thermal)),
            _kv(12, "HW Power Brake Slowdown", "Not Active"),
            _kv(8, "Sync Boost", "Not Active"),
            _kv(8, "SW Thermal Slowdown", _active(thermal)),
            _kv(8, "Display Clock Setting", "Not Active"),
        ]

    def _memory_block(self, gpu: GPU) -> list[str]:
        return [
            "    FB Memory Usage",
            _kv(8, "Total", f"{gpu.memory_total} MiB"),
            _kv(8, "Reserved", f"{FB_RESERVED_MIB} MiB"),
            _kv(8, "Used", f"{gpu.memory_used} MiB"),
            _kv(8, "Free", f"{gpu.memory_free} MiB"),
            "    BAR1 Memory Usage",
            _kv(8, "Total", f"{BAR1_TOTAL_MIB} MiB"),
            _kv(8, "Used", "1 MiB"),
            _kv(8, "Free", f"{BAR1_TOTAL_MIB - 1} MiB"),
        ]

    def _utilization_block(self, gpu: GPU) -> list[str]:
        return [
            "    Utilization",
            _kv(8, "Gpu", f"{round(gpu.utilization)} %"),
            _kv(8, "Memory", f"{round(100 * gpu.memory_used / gpu.memory_total)} %"),
            _kv(8, "Encoder", "0 %"),
            _kv(8, "Decoder", "0 %"),
        ]

    def _ecc_block(self, gpu: GPU) -> list[str]:
        ecc = gpu.ecc_errors
        return [
            "    ECC Mode",
            _kv(8, "Current", _enabled(gpu.ecc_enabled)),
            _kv(8, "Pending", _enabled(gpu.ecc_enabled)),
            "    ECC Errors",
            "        Volatile",
            _kv(12, "SRAM Correctable", 0),
            _kv(12, "SRAM Uncorrectable", 0),
            _kv(12, "DRAM Correctable", ecc.single_bit),
            _kv(12, "DRAM Uncorrectable", ecc.double_bit),
            "        Aggregate",
            _kv(12, "SRAM Correctable", 0),
            _kv(12, "SRAM Uncorrectable", 0),
            _kv(12, "DRAM Correctable", ecc.aggregated_single_bit),
            _kv(12, "DRAM Uncorrectable", ecc.aggregated_double_bit),
        ]

    def _page_retirement_block(self, gpu: GPU) -> list[str]:
        ecc = gpu.ecc_errors
        return [
            "    Retired Pages",
            _kv(8, "Single Bit ECC", ecc.aggregated_single_bit // 10),
            _kv(8, "Double Bit ECC", ecc.aggregated_double_bit),
            _kv(8, "Pending Page Blacklist", "Yes" if ecc.double_bit > 0 else "No"),
        ]

    def _row_remapper_block(self, gpu: GPU) -> list[str]:
        ecc = gpu.ecc_errors
        pending = "true" if ecc.double_bit > 0 else "false"
        return [
            "    Row Remapper",
            _kv(8, "Correctable Error", "true" if ecc.aggregated_single_bit > 0 else "false"),
            _kv(8, "Uncorrectable Error", pending),
            _kv(8, "Pending", pending),
            _kv(8, "Remapping Failure Occurred", "false"),
        ]

    def _xid_block(self, node: DGXNode, gpu: GPU) -> list[str]:
        status = self.health_of(node, gpu)
        lines = [_kv(4, "GPU Health", status.value)]
        for finding in health_findings(gpu, self._store.thresholds):
            lines.append(_kv(8, "Reason", finding.reason))
        lines.append("    Xid Errors")
        lines.append(_kv(8, "Count", len(gpu.xid_errors)))
        for xid in gpu.xid_errors:
            lines.append(_kv(8, f"Xid {xid.code}", f"{xid.description} ({xid.timestamp})"))
        lines.append("    Reset Status")
        lines.append(_kv(8, "Reset Required", "Yes" if gpu.xid_errors else "No"))
        lines.append(_kv(8, "Drain and Reset Recommended", "Yes" if gpu.xid_errors else "No"))
        return lines

    def _temperature_block(self, gpu: GPU) -> list[str]:
        t = self._store.thresholds
        return [
            "    Temperature",
            _kv(8, "GPU Current Temp", f"{round(gpu.temperature)} C"),
            _kv(8, "GPU Shutdown Temp", f"{round(t.shutdown_temp_c)} C"),
            _kv(8, "GPU Slowdown Temp", f"{round(t.thermal_warning_c)} C"),
            _kv(8, "GPU Max Operating Temp", f"{round(t.max_operating_temp_c)} C"),
            _kv(8, "Memory Current Temp", f"{round(gpu.temperature) - 5} C"),
            _kv(8, "Memory Max Operating Temp", "95 C"),
        ]

    def _power_block(self, gpu: GPU) -> list[str]:
        return [
            "    Power Readings",
            _kv(8, "Power Management", "Supported"),
            _kv(8, "Power Draw", f"{gpu.power_draw:.2f} W"),
            _kv(8, "Power Limit", f"{gpu.power_limit:.2f} W"),
            _kv(8, "Default Power Limit", f"{gpu.max_power_limit:.2f} W"),
            _kv(8, "Enforced Power Limit", f"{gpu.power_limit:.2f} W"),
            _kv(8, "Min Power Limit", f"{MIN_POWER_LIMIT_W:.2f} W"),
            _kv(8, "Max Power Limit", f"{gpu.max_power_limit:.2f} W"),
        ]

    def _clocks_block(self, gpu: GPU) -> list[str]:
        return [
            "    Clocks",
            _kv(8, "Graphics", f"{gpu.clocks_sm} MHz"),
            _kv(8, "SM", f"{gpu.clocks_sm} MHz"),
            _kv(8, "Memory", f"{gpu.clocks_mem} MHz"),
            "    Applications Clocks",
            _kv(8, "Graphics", f"{gpu.clocks_sm} MHz"),
            _kv(8, "Memory", f"{gpu.clocks_mem} MHz"),
            "    Max Clocks",
            _kv(8, "Graphics", "1410 MHz" if "A100" in gpu.name else "1980 MHz"),
            _kv(8, "SM", "1410 MHz" if "A100" in gpu.name else "1980 MHz"),
            _kv(8, "Memory", f"{gpu.clocks_mem} MHz"),
        ]

    # -------- --query-gpu --------

    def _query_gpu(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        fields_arg = cmd.get_flag_string("query-gpu")
        if not fields_arg:
            raise self.error("Error: --query-gpu requires a comma separated list of fields", 2)
        fmt = cmd.get_flag_string("format")
        if fmt is None:
            raise self.error("Error: --format is required with --query-gpu (e.g. --format=csv)", 2)
        options = [o.strip() for o in fmt.split(",")]
        if options[0] != "csv":
            raise self.error(f'"{options[0]}" is not a valid format. Supported formats: csv', 2)

        names = [f.strip() for f in fields_arg.split(",") if f.strip()]
        for name in names:
            if name not in QUERY_FIELDS:
                hint = did_you_mean(name, QUERY_FIELDS)
                raise self.error(
                    f'Field "{name}" is not a valid field to query.\n'
                    + (f"{hint}\n" if hint else "")
                    + "\nUse 'nvidia-smi --help-query-gpu' for a list of valid fields.",
                    2,
                )
        units = "nounits" not in options
        lines = []
        if "noheader" not in options:
            header = []
            for name in names:
                unit = QUERY_FIELDS[name][0]
                header.append(f"{name} [{unit}]" if unit and units else name)
            lines.append(", ".join(header))
        for gpu in self._selected_gpus(cmd, node):
            values = []
            for name in names:
                unit, getter = QUERY_FIELDS[name]
                value = getter(node, gpu)
                values.append(f"{value} {unit}" if unit and units else value)
            lines.append(", ".join(values))
        return self.success("\n".join(lines) + "\n")

    # -------- nvlink / topo --------

    def _nvlink(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        gpus = self._selected_gpus(cmd, node)
        errors = cmd.has_flag("e", "errorcounters")
        if not errors and not cmd.has_flag("s", "status"):
            raise self.error(
                "nvidia-smi nvlink: Missing required option: --status\n"
                "Try 'nvidia-smi nvlink --help' for more information.",
                2,
            )
        lines = []
        for gpu in gpus:
            lines.append(f"GPU {gpu.id}: {gpu.name} (UUID: {gpu.uuid})")
            for link in gpu.nvlinks:
                if errors:
                    lines.append(f"\t Link {link.link_id}: Replay Errors: {link.replay_errors}")
                    lines.append(f"\t Link {link.link_id}: Recovery Errors: 0")
                    lines.append(f"\t Link {link.link_id}: CRC Errors: {link.tx_errors + link.rx_errors}")
                elif link.is_active:
                    lines.append(f"\t Link {link.link_id}: {link.speed} GB/s")
                else:
                    lines.append(f"\t Link {link.link_id}: <inactive>")
        return self.success("\n".join(lines) + "\n")

    def _topo(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        if not cmd.has_flag("m", "matrix"):
            raise self.error(
                "nvidia-smi topo: Missing required option: -m/--matrix\n"
                "Try 'nvidia-smi topo --help' for more information.",
                2,
            )
        gpus = node.visible_gpus()
        nics = [h.ca_type for h in node.hcas]
        half = max(1, len(node.gpus) // max(1, node.cpu_count))

        header = [""] + [f"GPU{g.id}" for g in gpus] + [f"NIC{i}" for i in range(len(nics))]
        header += ["CPU Affinity", "NUMA Affinity"]
        lines = ["\t".join(header)]
        for gpu in gpus:
            cells = [f"GPU{gpu.id}"]
            for other in gpus:
                if other.id == gpu.id:
                    cells.append(" X ")
                else:
                    cells.append(f"NV{min(gpu.active_nvlinks, other.active_nvlinks)}")
            for i in range(len(nics)):
                cells.append("PXB" if i == gpu.id else "SYS")
            socket = min(gpu.id // half, node.cpu_count - 1)
            first = socket * node.cores_per_socket
            cells.append(f"{first}-{first + node.cores_per_socket - 1}")
            cells.append(str(socket))
            lines.append("\t".join(cells))
        lines.append("")
        lines.append("NIC Legend:")
        lines.append("")
        lines.extend(f"  NIC{i}: {name}" for i, name in enumerate(nics))
        lines.append("")
        lines.append("Legend:")
        lines.append("")
        lines.append("  X    = Self")
        lines.append("  SYS  = Connection traversing PCIe as well as the SMP interconnect between NUMA nodes")
        lines.append("  PXB  = Connection traversing multiple PCIe bridges (without traversing the PCIe Host Bridge)")
        lines.append("  NV#  = Connection traversing a bonded set of # NVLinks")
        return self.success("\n".join(lines) + "\n")

    # -------- mig --------

    def _mig(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        if cmd.has_flag("lgip"):
            return self._list_profiles(cmd, node)
        if cmd.has_flag("lgi"):
            return self._list_instances(cmd, node)
        if cmd.has_flag("cgi"):
            return self._create_instances(cmd, node)
        if cmd.has_flag("dgi"):
            return self._destroy_instances(cmd, node)
        raise self.error(
            "nvidia-smi mig: No operation specified.\nTry 'nvidia-smi mig --help' for more information.", 2
        )

    def _list_profiles(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        border = "+" + "-" * 77 + "+"
        lines = [
            border,
            "| GPU instance profiles:".ljust(78) + "|",
            "| GPU   Name             ID    Instances   Memory     P2P    SM    DEC   ENC  |",
            "|                              Free/Total   GiB              CE    JPEG  OFA  |",
            "|" + "=" * 77 + "|",
        ]
        for gpu in self._selected_gpus(cmd, node):
            for profile in MIG_PROFILES:
                free = sum(
                    1 for k in range(profile.max_instances) if self._can_add(gpu, profile.profile_id, k)
                )
                text = (
                    f"|   {gpu.id}  {profile.name:<16} {profile.profile_id:>3}     "
                    f"{free}/{profile.max_instances}        {profile.memory_gib:>5.2f}      No     "
                    f"{profile.compute_slices:<5} 0     0"
                )
                lines.append(text.ljust(78) + "|")
            lines.append(border)
        return self.success("\n".join(lines) + "\n")

    @staticmethod
    def _can_add(gpu: GPU, profile_id: int, count: int) -> bool:
        """True if ``count + 1`` more instances of a profile would fit."""
        if not gpu.mig_mode:
            return False
        try:
            plan_mig_instances(gpu, [profile_id] * (count + 1))
        except ValueError:
            return False
        return True

    def _list_instances(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        gpus = self._selected_gpus(cmd, node)
        rows = [(g, inst) for g in gpus for inst in g.mig_instances]
        if not rows:
            return self.success("No GPU instances found: Not Found\n")
        border = "+" + "-" * 55 + "+"
        lines = [
            border,
            "| GPU instances:".ljust(56) + "|",
            "| GPU   Name             Profile  Instance   Placement  |",
            "|                          ID       ID       Start:Size |",
            "|" + "=" * 55 + "|",
        ]
        for gpu, inst in rows:
            profile = find_mig_profile(inst.profile_id)
            name = profile.name if profile else "Unknown"
            size = profile.compute_slices // 14 if profile else 0
            text = f"|   {gpu.id}  {name:<16} {inst.profile_id:>5}  {inst.instance_id:>7}        0:{size}"
            lines.append(text.ljust(56) + "|")
        lines.append(border)
        return self.success("\n".join(lines) + "\n")

    def _create_instances(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        gpu = self._single_gpu(cmd, node)
        raw = cmd.get_flag_string("cgi") or ""
        try:
            profile_ids = [int(p.strip()) for p in raw.split(",") if p.strip()]
        except ValueError:
            profile_ids = []
        if not profile_ids:
            raise self.error(
                "Error: No valid profile IDs specified.\nUse nvidia-smi mig -lgip to list available profiles."
            )
        if not gpu.mig_mode:
            raise self.error(
                f"Error: MIG mode not enabled on GPU {gpu.id}\n"
                f"Use 'nvidia-smi -i {gpu.id} -mig 1' to enable MIG mode."
            )
        try:
            created = plan_mig_instances(gpu, profile_ids)
        except ValueError as e:
            raise self.error(f"Unable to create a GPU instance on GPU {gpu.id}: {e}") from None

        lines = []
        for inst in created:
            profile = find_mig_profile(inst.profile_id)
            lines.append(
                f"Successfully created GPU instance ID {inst.instance_id:>2} on GPU {gpu.id:>2} "
                f"using profile {profile.name} (ID {inst.profile_id:>2})"
            )
        change = StateChange(
            StateAction.CREATE_MIG_INSTANCES, node.id, (gpu.id,), {"profile_ids": tuple(profile_ids)}
        )
        return self.success("\n".join(lines) + "\n", [change])

    def _destroy_instances(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        gpu = self._single_gpu(cmd, node)
        if not gpu.mig_instances:
            raise self.error(f"No GPU instances found on GPU {gpu.id}: Not Found", 6)
        lines = [
            f"Successfully destroyed GPU instance ID {inst.instance_id:>2} from GPU {gpu.id:>2}"
            for inst in gpu.mig_instances
        ]
        change = StateChange(StateAction.DESTROY_MIG_INSTANCES, node.id, (gpu.id,))
        return self.success("\n".join(lines) + "\n", [change])

    def _single_gpu(self, cmd: ParsedCommand, node: DGXNode) -> GPU:
        """GPU from ``-i``, defaulting to GPU 0."""
        if not cmd.has_flag("i", "id"):
            gpu = node.find_gpu(0)
            if gpu is None or gpu.has_fallen_off_bus:
                raise self.error("Unable to determine target GPU. Use -i to specify a GPU.")
            return gpu
        return self._selected_gpus(cmd, node)[0]

    # -------- state-changing options --------

    @staticmethod
    def _binary_option(cmd: ParsedCommand, option: str, *names: str) -> bool:
        value = cmd.get_flag(*names)
        text = value.strip().upper() if isinstance(value, str) else ""
        if text in ("1", "ENABLED"):
            return True
        if text in ("0", "DISABLED"):
            return False
        raise ToolError(f"ERROR: Option {option} requires 0/DISABLED or 1/ENABLED", 2)

    def _persistence_mode(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        enabled = self._binary_option(cmd, "-pm", "pm", "persistence-mode")
        gpus = self._selected_gpus(cmd, node)
        word = "enabled" if enabled else "disabled"
        output = "".join(f"Persistence mode {word} for GPU {g.id}\n" for g in gpus)
        change = StateChange(
            StateAction.SET_PERSISTENCE_MODE, node.id, tuple(g.id for g in gpus), {"enabled": enabled}
        )
        return self.success(output + "All done.\n", [change])

    def _power_limit(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        raw = cmd.get_flag_string("pl", "power-limit")
        try:
            watts = float(raw) if raw is not None else float("nan")
        except ValueError:
            watts = float("nan")
        if watts != watts:
            raise self.error(f"Error: Invalid power limit value '{raw or ''}'", 2)
        gpus = self._selected_gpus(cmd, node)
        for gpu in gpus:
            if not MIN_POWER_LIMIT_W <= watts <= gpu.max_power_limit:
                raise self.error(
                    f"Error: Power limit must be between {MIN_POWER_LIMIT_W:.0f} "
                    f"and {gpu.max_power_limit:.0f} W"
                )
        output = "".join(f"Power limit for GPU {g.id} set to {watts:g} W\n" for g in gpus)
        change = StateChange(
            StateAction.SET_POWER_LIMIT, node.id, tuple(g.id for g in gpus), {"watts": watts}
        )
        return self.success(output, [change])

    def _reset(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        if not cmd.has_flag("i", "id"):
            raise self.error(
                "Error: GPU reset requires -i flag to specify GPU ID\n"
                "Usage: nvidia-smi --gpu-reset -i <gpu_id>"
            )
        index = self.parse_gpu_index(cmd.get_flag("i", "id"), node)
        gpu = node.find_gpu(index)
        if gpu.has_fallen_off_bus:
            raise self.error(
                f"Unable to reset GPU {index}: GPU has fallen off the bus.\n"
                f"XID {XID_FALLEN_OFF_BUS} indicates a severe PCIe communication failure.\n"
                "GPU reset will not work in this state. System reboot or hardware intervention required.\n"
                "Check 'dmesg | grep -i xid' for details."
            )
        lines = [f"GPU {index} reset successfully."]
        if gpu.xid_errors:
            codes = ", ".join(str(x.code) for x in gpu.xid_errors)
            lines.append(f"Cleared critical XID error(s): {codes}")
        lines.append(f"All compute applications using GPU {index} have been terminated.")
        logger.info(f"Reset requested for {node.id} GPU {index}")
        change = StateChange(StateAction.RESET_GPU, node.id, (index,))
        return self.success("\n".join(lines) + "\n", [change])

    def _mig_mode(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        enabled = self._binary_option(cmd, "-mig", "mig", "multi-instance-gpu")
        gpus = self._selected_gpus(cmd, node)
        lines = []
        for gpu in gpus:
            if enabled:
                lines.append(f"Enabled MIG Mode for GPU {gpu.pci_address}")
            else:
                lines.append(f"Disabled MIG Mode for GPU {gpu.pci_address}")
        lines.append("All done.")
        change = StateChange(StateAction.SET_MIG_MODE, node.id, tuple(g.id for g in gpus), {"enabled": enabled})
        return self.success("\n".join(lines) + "\n", [change])
