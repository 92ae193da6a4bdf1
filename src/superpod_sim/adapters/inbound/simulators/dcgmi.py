"""dcgmi simulator.

Covers ``discovery``, ``diag``, ``health``, ``group``, ``stats`` and
``dmon``. Diagnostic verdicts are a pure function of each GPU's derived
health and error counters: a Critical GPU fails every run level, a Warning
GPU warns, and only a healthy GPU passes.

References:
    - NVIDIA DCGM user guide, dcgmi diag run levels
    - DCGM field identifiers (dcgm_fields.h)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.services.health import health_findings
from superpod_sim.domain.value_objects.hardware_specs import SYSTEM_SPECS
from superpod_sim.domain.value_objects.health_rules import HealthStatus, HealthThresholds
from superpod_sim.domain.value_objects.xid_catalog import XID_FALLEN_OFF_BUS, XIDCategory, get_xid

DIAG_COL_1 = 27
DIAG_COL_2 = 48

RUN_LEVELS = {"1": 1, "short": 1, "2": 2, "medium": 2, "3": 3, "long": 3}


class DiagResult(Enum):
    """Outcome of one diagnostic test."""
    PASS = "Pass"
    WARN = "Warn"
    FAIL = "Fail"

    @classmethod
    def from_health(cls, status: HealthStatus) -> DiagResult:
        return {
            HealthStatus.OK: cls.PASS,
            HealthStatus.WARNING: cls.WARN,
            HealthStatus.CRITICAL: cls.FAIL,
        }[status]


_RESULT_RANK = {DiagResult.PASS: 0, DiagResult.WARN: 1, DiagResult.FAIL: 2}


@dataclass(frozen=True)
class DiagTest:
    """One row of a diagnostic run."""
    category: str
    name: str
    level: int                    # Lowest run level that includes the test
    check: Callable[[GPU, HealthThresholds], DiagResult]


def _pass(gpu: GPU, t: HealthThresholds) -> DiagResult:
    return DiagResult.PASS


def _xid_categories(gpu: GPU) -> set[XIDCategory]:
    categories = set()
    for xid in gpu.xid_errors:
        definition = get_xid(xid.code)
        if definition is not None:
            categories.add(definition.category)
    return categories


def _memory(gpu: GPU, t: HealthThresholds) -> DiagResult:
    if gpu.ecc_errors.double_bit > 0 or XIDCategory.MEMORY in _xid_categories(gpu):
        return DiagResult.FAIL
    return DiagResult.PASS


def _page_retirement(gpu: GPU, t: HealthThresholds) -> DiagResult:
    return DiagResult.FAIL if gpu.ecc_errors.double_bit > 0 else DiagResult.PASS


def _pulse(gpu: GPU, t: HealthThresholds) -> DiagResult:
    return DiagResult.FAIL if gpu.xid_errors else DiagResult.PASS


def _nvlink(gpu: GPU, t: HealthThresholds) -> DiagResult:
    if XIDCategory.NVLINK in _xid_categories(gpu):
        return DiagResult.FAIL
    if any(not link.is_active for link in gpu.nvlinks):
        return DiagResult.WARN
    return DiagResult.PASS


def _thermal(gpu: GPU, t: HealthThresholds) -> DiagResult:
    if gpu.xid_errors:
        return DiagResult.FAIL
    return DiagResult.WARN if gpu.temperature >= t.thermal_warning_c else DiagResult.PASS


def _power(gpu: GPU, t: HealthThresholds) -> DiagResult:
    if gpu.power_draw >= t.power_warning_fraction * gpu.power_limit:
        return DiagResult.WARN
    return DiagResult.PASS


def _overall(gpu: GPU, t: HealthThresholds) -> DiagResult:
    return DiagResult.from_health(HealthStatus.worst(*(f.status for f in health_findings(gpu, t))))


DIAG_TESTS: tuple[DiagTest, ...] = (
    DiagTest("Deployment", "Blacklist", 1, _pass),
    DiagTest("Deployment", "NVML Library", 1, _pass),
    DiagTest("Deployment", "CUDA Main Library", 1, _pass),
    DiagTest("Deployment", "Permissions and OS Blocks", 1, _pass),
    DiagTest("Deployment", "Persistence Mode", 1, _pass),
    DiagTest("Deployment", "Environment Variables", 1, _pass),
    DiagTest("Deployment", "Page Retirement/Row Remap", 1, _page_retirement),
    DiagTest("Deployment", "Graphics Processes", 1, _pass),
    DiagTest("Deployment", "GPU Health Watches", 1, _overall),
    DiagTest("Integration", "PCIe", 2, _pulse),
    DiagTest("Integration", "NVLink", 2, _nvlink),
    DiagTest("Hardware", "GPU Memory", 2, _memory),
    DiagTest("Stress", "SM Stress", 2, _thermal),
    DiagTest("Stress", "Targeted Stress", 3, _thermal),
    DiagTest("Stress", "Targeted Power", 3, _power),
    DiagTest("Stress", "Memory Bandwidth", 3, _memory),
    DiagTest("Hardware", "Pulse Test", 3, _pulse),
)


def run_diagnostic(
    gpus: list[GPU], level: int, thresholds: HealthThresholds
) -> list[tuple[DiagTest, dict[int, DiagResult]]]:
    """Evaluate every test of a run level on every GPU.

    Returns:
        Per test, the result of each GPU keyed by GPU id.
    """
    return [
        (test, {gpu.id: test.check(gpu, thresholds) for gpu in gpus})
        for test in DIAG_TESTS
        if test.level <= level
    ]


def worst_result(results: list[DiagResult]) -> DiagResult:
    worst = DiagResult.PASS
    for result in results:
        if _RESULT_RANK[result] > _RESULT_RANK[worst]:
            worst = result
    return worst


# dmon field id -> (column, renderer)
DMON_FIELDS: dict[str, tuple[str, Callable[[GPU], str]]] = {
    "100": ("SMCLK", lambda g: str(g.clocks_sm)),
    "101": ("MMCLK", lambda g: str(g.clocks_mem)),
    "150": ("TMPTR", lambda g: str(round(g.temperature))),
    "155": ("POWER", lambda g: f"{g.power_draw:.3f}"),
    "203": ("GPUTL", lambda g: str(round(g.utilization))),
    "204": ("MCUTL", lambda g: str(round(100 * g.memory_used / g.memory_total))),
    "252": ("FBUSD", lambda g: str(g.memory_used)),
    "310": ("ECCSB", lambda g: str(g.ecc_errors.single_bit)),
    "311": ("ECCDB", lambda g: str(g.ecc_errors.double_bit)),
}
DEFAULT_DMON_FIELDS = "203,204,150,155"


class DcgmiSimulator(BaseSimulator):
    """Simulates the NVIDIA Data Center GPU Manager CLI."""

    TOOLS = {
        "dcgmi": ToolInfo(
            name="dcgmi",
            description="NVIDIA Data Center GPU Manager command line interface",
            version="3.3.5",
            usage="dcgmi <subcommand> [options]",
            commands=(
                ("discovery", "Discover GPUs on the system (-l)"),
                ("diag", "Run system validation (-r 1|2|3 [-i GPU])"),
                ("health", "Check GPU health watches (-c)"),
                ("group", "Manage GPU groups (-l)"),
                ("stats", "Show per-GPU statistics"),
                ("dmon", "Stream GPU metrics (-e FIELDS -c COUNT)"),
            ),
            version_text="dcgmi  version: 3.3.5",
        ),
    }

    def execute(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        handlers = {
            "discovery": self._discovery,
            "diag": self._diag,
            "health": self._health,
            "group": self._group,
            "stats": self._stats,
            "dmon": self._dmon,
        }
        if cmd.subcommand is None:
            raise self.error("Error: a subcommand is required.\nRun \"dcgmi --help\" for more information.")
        handler = handlers.get(cmd.subcommand)
        if handler is None:
            raise self.unknown_subcommand("dcgmi", cmd.subcommand, handlers)
        node = self.current_node(self.snapshot(), ctx)
        return handler(cmd, node)

    def _target_gpus(self, cmd: ParsedCommand, node: DGXNode) -> list[GPU]:
        if not cmd.has_flag("i", "gpuid"):
            return list(node.gpus)
        index = self.parse_gpu_index(cmd.get_flag("i", "gpuid"), node)
        return [node.find_gpu(index)]

    # -------- discovery --------

    def _discovery(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        gpus = node.visible_gpus()
        spec = SYSTEM_SPECS.get(node.system_type)
        nvswitches = spec.nvswitch_count if spec else 0
        if not cmd.has_flag("l", "list"):
            return self.success(f"{len(gpus)} GPU(s) found. Use -l for details.\n")
        border = "+--------+" + "-" * 70 + "+"
        lines = [f"{len(gpus)} GPUs found.", border, "| GPU ID | Device Information".ljust(80) + "|", border]
        for gpu in gpus:
            lines.append(f"| {gpu.id:<6} | {'Name: ' + gpu.name:<68} |")
            lines.append(f"|        | {'PCI Bus ID: ' + gpu.pci_address:<68} |")
            lines.append(f"|        | {'Device UUID: ' + gpu.uuid:<68} |")
            lines.append(border)
        lines.append(f"{nvswitches} NvSwitches found.")
        return self.success("\n".join(lines) + "\n")

    # -------- diag --------

    def _diag(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        raw_level = cmd.get_flag_string("r", "run")
        if raw_level is None:
            raise self.missing_argument("dcgmi diag", "-r <level>")
        level = RUN_LEVELS.get(raw_level.lower())
        if level is None:
            raise self.error(f"Error: Invalid run level '{raw_level}'. Valid levels: 1, 2, 3", 2)

        gpus = self._target_gpus(cmd, node)
        fallen = [g.id for g in gpus if g.has_fallen_off_bus]
        if fallen:
            ids = ", ".join(str(i) for i in fallen)
            raise self.error(
                f"Error: Unable to run diagnostics on GPU(s): {ids}\n"
                f"GPU has fallen off the bus (XID {XID_FALLEN_OFF_BUS}).\n"
                "The GPU is not accessible and cannot be tested.\n"
                "Check 'dmesg | grep -i xid' for additional details."
            )
        for gpu in gpus:
            self.health_of(node, gpu)

        thresholds = self._store.thresholds
        border = "+" + "-" * DIAG_COL_1 + "+" + "-" * DIAG_COL_2 + "+"
        lines = [
            f"Running level {level} diagnostic on GPU(s): {', '.join(str(g.id) for g in gpus)}",
            "",
            "Successfully ran diagnostic for group.",
            border,
            f"| {'Diagnostic':<{DIAG_COL_1 - 1}}| {'Result':<{DIAG_COL_2 - 1}}|",
            "+" + "=" * DIAG_COL_1 + "+" + "=" * DIAG_COL_2 + "+",
        ]
        overall: list[DiagResult] = []
        category = None
        for test, per_gpu in run_diagnostic(gpus, level, thresholds):
            if test.category != category:
                category = test.category
                heading = f"-----  {category}  ".ljust(DIAG_COL_1, "-")
                lines.append(f"|{heading}+{'-' * DIAG_COL_2}|")
            result = worst_result(list(per_gpu.values()))
            overall.append(result)
            text = result.value
            if result != DiagResult.PASS:
                failing = [str(i) for i, r in per_gpu.items() if r == result]
                text += f" - GPU(s): {', '.join(failing)}"
            lines.append(f"| {test.name:<{DIAG_COL_1 - 1}}| {text[:DIAG_COL_2 - 1]:<{DIAG_COL_2 - 1}}|")
        lines.append(border)
        lines.append("")

        verdict = worst_result(overall)
        lines.append(f"Overall Result: {verdict.value}")
        for gpu in gpus:
            for finding in health_findings(gpu, thresholds):
                lines.append(f"  GPU {gpu.id}: {finding.reason}")
        return CommandResult("\n".join(lines) + "\n", 226 if verdict == DiagResult.FAIL else 0)

    # -------- health --------

    def _health(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        if not cmd.has_flag("c", "check"):
            raise self.missing_argument("dcgmi health", "-c/--check")
        words = {HealthStatus.OK: "Healthy", HealthStatus.WARNING: "Warning", HealthStatus.CRITICAL: "Failure"}
        statuses = {gpu.id: self.health_of(node, gpu) for gpu in node.gpus}
        overall = HealthStatus.worst(*statuses.values())

        border = "+" + "-" * 18 + "+" + "-" * 57 + "+"
        lines = [
            "Health Monitor Report",
            border,
            f"| {'Overall Health: ' + words[overall]:<74} |",
            "+" + "=" * 18 + "+" + "=" * 57 + "+",
        ]
        for gpu in node.gpus:
            status = statuses[gpu.id]
            lines.append(f"| {'GPU ID: ' + str(gpu.id):<16} | {words[status]:<55} |")
            for finding in health_findings(gpu, self._store.thresholds):
                lines.append(f"| {'':<16} | {finding.reason[:55]:<55} |")
        lines.append(border)
        return self.success("\n".join(lines) + "\n")

    # -------- group --------

    def _group(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        if not cmd.has_flag("l", "list"):
            raise self.missing_argument("dcgmi group", "-l/--list")
        entities = ", ".join(f"GPU {g.id}" for g in node.visible_gpus())
        border = "+" + "-" * 19 + "+" + "-" * 56 + "+"
        lines = [
            border,
            f"| {'GROUPS':<74} |",
            f"| {'1 group found.':<74} |",
            "+" + "=" * 19 + "+" + "=" * 56 + "+",
            f"| {'Groups':<17} | {'':<54} |",
            f"| {'-> 0':<17} | {'':<54} |",
            f"| {'   -> Group ID':<17} | {'0':<54} |",
            f"| {'   -> Group Name':<17} | {'DCGM_ALL_SUPPORTED_GPUS':<54} |",
            f"| {'   -> Entities':<17} | {entities[:54]:<54} |",
            border,
        ]
        return self.success("\n".join(lines) + "\n")

    # -------- stats --------

    def _stats(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        rows = []
        for gpu in self._target_gpus(cmd, node):
            if gpu.has_fallen_off_bus:
                rows.append([str(gpu.id), "N/A", "N/A", "N/A", "N/A", "N/A", str(len(gpu.xid_errors))])
                continue
            rows.append([
                str(gpu.id),
                f"{gpu.power_draw:.1f} W",
                f"{round(gpu.temperature)} C",
                f"{round(gpu.utilization)} %",
                f"{gpu.memory_used} MiB",
                f"{gpu.ecc_errors.single_bit}/{gpu.ecc_errors.double_bit}",
                str(len(gpu.xid_errors)),
            ])
        table = self.format_table(
            ["GPU", "Power", "Temperature", "SM Util", "Memory Used", "ECC SBE/DBE", "XID Errors"], rows
        )
        return self.success(f"Statistics for {node.hostname}\n{table}\n")

    # -------- dmon --------

    def _dmon(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        fields = [f.strip() for f in (cmd.get_flag_string("e", "field-id") or DEFAULT_DMON_FIELDS).split(",")]
        unknown = [f for f in fields if f not in DMON_FIELDS]
        if unknown:
            raise self.error(f"Error: Unknown field id {unknown[0]}. Supported: {', '.join(DMON_FIELDS)}", 2)
        raw_count = cmd.get_flag_string("count")
        if raw_count is None and cmd.has_flag("c") and cmd.positional_args:
            # -c doubles as health --check, so its value arrives as a positional
            raw_count = cmd.positional_args[0]
        count = self._positive_int(raw_count, 1)
        gpus = [g for g in self._target_gpus(cmd, node) if not g.has_fallen_off_bus]

        header = "#Entity   " + "".join(f"{DMON_FIELDS[f][0]:<12}" for f in fields)
        lines = [header.rstrip(), "ID"]
        for _ in range(count):
            for gpu in gpus:
                values = "".join(f"{DMON_FIELDS[f][1](gpu):<12}" for f in fields)
                lines.append(f"{'GPU ' + str(gpu.id):<10}{values}".rstrip())
        return self.success("\n".join(lines) + "\n")

    def _positive_int(self, raw: Optional[str], default: int) -> int:
        if raw is None:
            return default
        if not raw.isdigit() or int(raw) < 1:
            raise self.error(f"Error: Invalid count '{raw}'", 2)
        return int(raw)
