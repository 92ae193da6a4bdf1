"""Operating system tools on a DGX node.

``lscpu``, ``free``, ``uptime``, ``uname``, ``hostname``, ``dmesg``,
``systemctl`` and ``sensors``. Hardware facts come from the node record and
its system template. The kernel ring buffer is rebuilt from GPU state on
every call, so XID, thermal and double-bit ECC lines appear as soon as a
fault is injected and vanish when it is cleared.

References:
    - util-linux lscpu(1), free(1), dmesg(1)
    - NVIDIA GPU debug guidelines (NVRM Xid kernel messages)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.adapters.inbound.simulators.fabric_manager import summarize_fabric
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode, SlurmState
from superpod_sim.domain.value_objects.hardware_specs import DGX_A100, SYSTEM_SPECS
from superpod_sim.domain.value_objects.health_rules import HealthThresholds
from superpod_sim.domain.value_objects.xid_catalog import get_xid

# Time since boot reported by every node
UPTIME = timedelta(days=42, hours=3, minutes=17)
THREADS_PER_CORE = 2
SWAP_KIB = 32 * 1024 * 1024
LEVELS = ("emerg", "alert", "crit", "err", "warn", "notice", "info", "debug")


def gpu_pci_ids(node: DGXNode) -> tuple[str, str]:
    """(vendor, device) PCI ids of the node's GPUs, lower-case hex."""
    spec = SYSTEM_SPECS.get(node.system_type, DGX_A100)
    raw = spec.gpu.device_id.lower().removeprefix("0x")
    return raw[4:], raw[:4]


def kernel_pci_address(gpu: GPU) -> str:
    """``0000:10:00.0`` form the kernel prints."""
    return gpu.pci_address[4:].lower()


@dataclass(frozen=True)
class KernelMessage:
    """One line of the kernel ring buffer."""
    seconds: float                # Since boot
    level: str
    text: str


def kernel_log(node: DGXNode, thresholds: HealthThresholds) -> list[KernelMessage]:
    """Boot messages followed by driver events derived from GPU state."""
    vendor, device = gpu_pci_ids(node)
    messages = [
        KernelMessage(0.0, "notice", f"Linux version {node.kernel_version} (buildd@lcy02-amd64-030) (gcc-11)"),
        KernelMessage(0.0, "info", "Command line: BOOT_IMAGE=/boot/vmlinuz root=UUID=6b1c2f0e ro quiet"),
        KernelMessage(0.234567, "info", "ACPI: Interpreter enabled"),
        KernelMessage(1.123456, "info", "PCI: Using ACPI for IRQ routing"),
    ]
    for gpu in node.gpus:
        messages.append(
            KernelMessage(
                1.2 + gpu.id * 0.1, "info",
                f"pci {kernel_pci_address(gpu)}: [{vendor}:{device}] type 00 class 0x030200",
            )
        )
    messages.extend([
        KernelMessage(
            2.456789, "info",
            f"NVRM: loading NVIDIA UNIX x86_64 Kernel Module  {node.nvidia_driver_version}",
        ),
        KernelMessage(2.56789, "info", "nvidia-nvlink: Nvlink Core is being initialized"),
        KernelMessage(3.789012, "info", "nvidia-uvm: Loaded the UVM driver, major device number 235"),
    ])
    for gpu in node.gpus:
        messages.append(
            KernelMessage(4.5 + gpu.id * 0.1, "info", f"NVRM: GPU {kernel_pci_address(gpu)}: RmInitAdapter succeeded!")
        )
    for ca in node.hcas:
        messages.append(KernelMessage(6.0 + ca.id * 0.01, "info", f"mlx5_core 0000:{0xa0 + ca.id:02x}:00.0: firmware version: {ca.firmware_version}"))

    for gpu in node.gpus:
        address = kernel_pci_address(gpu)
        for k, xid in enumerate(gpu.xid_errors):
            seconds = 100.0 + gpu.id * 10 + k * 0.5
            messages.append(
                KernelMessage(seconds, "err", f"NVRM: Xid (PCI:{address}): {xid.code}, {xid.description}")
            )
            definition = get_xid(xid.code)
            if definition is not None and definition.kernel_followup:
                messages.append(
                    KernelMessage(seconds + 0.001, "err", f"NVRM: GPU at PCI:{address}: {definition.kernel_followup}")
                )
        if gpu.ecc_errors.double_bit > 0:
            messages.append(
                KernelMessage(
                    150.0 + gpu.id * 5, "err",
                    f"NVRM: GPU {gpu.id}: DBE (double-bit error) detected in GPU memory",
                )
            )
        if gpu.temperature >= thresholds.thermal_warning_c:
            messages.append(
                KernelMessage(
                    200.0 + gpu.id * 5, "warn",
                    f"NVRM: GPU at PCI:{address}: GPU has reached thermal slowdown temperature "
                    f"({round(gpu.temperature)}C)",
                )
            )
        for link in gpu.nvlinks:
            if not link.is_active:
                messages.append(
                    KernelMessage(
                        250.0 + gpu.id * 5 + link.link_id * 0.01, "err",
                        f"NVRM: GPU at PCI:{address}: NVLink link {link.link_id} is down",
                    )
                )
    messages.sort(key=lambda m: m.seconds)
    return messages


class BasicSystemSimulator(BaseSimulator):
    """Simulates core Linux utilities on the current node."""

    TOOLS = {
        "lscpu": ToolInfo("lscpu", "display information about the CPU architecture", "2.37.2",
                          usage="lscpu [options]", version_text="lscpu from util-linux 2.37.2"),
        "free": ToolInfo("free", "Display amount of free and used memory in the system", "3.3.17",
                         usage="free [options]", version_text="free from procps-ng 3.3.17"),
        "uptime": ToolInfo("uptime", "Tell how long the system has been running", "3.3.17",
                           usage="uptime [options]", version_text="uptime from procps-ng 3.3.17"),
        "uname": ToolInfo("uname", "print system information", "8.32",
                          usage="uname [OPTION]...", version_text="uname (GNU coreutils) 8.32"),
        "hostname": ToolInfo("hostname", "show the system's host name", "3.23",
                             usage="hostname [-f|-s|-i|-I]", version_text="hostname 3.23"),
        "dmesg": ToolInfo("dmesg", "print or control the kernel ring buffer", "2.37.2",
                          usage="dmesg [options]", version_text="dmesg from util-linux 2.37.2"),
        "systemctl": ToolInfo(
            "systemctl", "Query or send control commands to the system manager", "249",
            usage="systemctl [OPTIONS...] COMMAND [UNIT...]",
            commands=(
                ("status UNIT", "Show runtime status of a unit"),
                ("is-active UNIT", "Check whether a unit is active"),
                ("list-units", "List loaded units"),
                ("start|restart UNIT", "Start or restart a unit"),
            ),
            version_text="systemd 249 (249.11-0ubuntu3.11)",
        ),
        "sensors": ToolInfo("sensors", "print sensors information", "3.6.0",
                            usage="sensors [-f]", version_text="sensors version 3.6.0 with libsensors version 3.6.0"),
    }

    # -------- lscpu --------

    def execute_lscpu(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        amd = "AMD" in node.cpu_model
        total = node.total_cores * THREADS_PER_CORE
        per_socket = node.cores_per_socket
        fields = [
            ("Architecture:", "x86_64"),
            ("CPU op-mode(s):", "32-bit, 64-bit"),
            ("Byte Order:", "Little Endian"),
            ("CPU(s):", str(total)),
            ("On-line CPU(s) list:", f"0-{total - 1}"),
            ("Vendor ID:", "AuthenticAMD" if amd else "GenuineIntel"),
            ("Model name:", node.cpu_model),
            ("CPU family:", "25" if amd else "6"),
            ("Model:", "1" if amd else "143"),
            ("Thread(s) per core:", str(THREADS_PER_CORE)),
            ("Core(s) per socket:", str(per_socket)),
            ("Socket(s):", str(node.cpu_count)),
            ("Stepping:", "1"),
            ("CPU max MHz:", "3400.0000" if amd else "3800.0000"),
            ("CPU min MHz:", "1500.0000" if amd else "800.0000"),
            ("BogoMIPS:", "4491.56" if amd else "4000.00"),
            ("Virtualization:", "AMD-V" if amd else "VT-x"),
            ("L1d cache:", f"{32 * node.total_cores // 1024} MiB" if node.total_cores >= 32 else "32 KiB"),
            ("L2 cache:", f"{(512 if amd else 2048) * node.total_cores // 1024} MiB"),
            ("L3 cache:", "512 MiB" if amd else "210 MiB"),
            ("NUMA node(s):", str(node.cpu_count)),
        ]
        for socket in range(node.cpu_count):
            low = socket * per_socket
            high = node.total_cores + low
            fields.append(
                (f"NUMA node{socket} CPU(s):", f"{low}-{low + per_socket - 1},{high}-{high + per_socket - 1}")
            )
        return self.success("\n".join(f"{k:<33}{v}" for k, v in fields) + "\n")

    # -------- free --------

    def execute_free(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        total_kib = node.ram_total_gb * 1024 * 1024
        used_kib = node.ram_used_gb * 1024 * 1024
        cache_kib = total_kib * 88 // 1000
        shared_kib = 4 * 1024 * 1024
        free_kib = total_kib - used_kib - cache_kib
        available_kib = total_kib - used_kib
        mem = [total_kib, used_kib, free_kib, shared_kib, cache_kib, available_kib]
        swap = [SWAP_KIB, 0, SWAP_KIB]

        human = cmd.has_flag("h", "human")
        divisor = 1024 * 1024 if cmd.has_flag("g") else 1024 if cmd.has_flag("m") else 1

        def render(kib: int) -> str:
            return _human_kib(kib) if human else str(kib // divisor)

        headers = ["", "total", "used", "free", "shared", "buff/cache", "available"]
        rows = [["Mem:"] + [render(v) for v in mem], ["Swap:"] + [render(v) for v in swap]]
        widths = [max(11, len(h), *(len(r[i]) for r in rows if i < len(r))) for i, h in enumerate(headers)]
        lines = []
        for row in [headers] + rows:
            cells = [row[0].ljust(5)]
            cells.extend(cell.rjust(widths[i]) for i, cell in enumerate(row[1:], start=1))
            lines.append(" ".join(cells).rstrip())
        return self.success("\n".join(lines) + "\n")

    # -------- uptime --------

    def _load_average(self, node: DGXNode) -> tuple[float, float, float]:
        visible = node.visible_gpus()
        busy = sum(g.utilization for g in visible) / len(visible) if visible else 0.0
        # Each busy GPU keeps roughly two host threads runnable
        base = 0.5 + busy / 100 * len(visible) * 2
        return base, base * 0.97, base * 0.94

    def execute_uptime(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        now = self._clock()
        if cmd.has_flag("s", "since"):
            return self.success((now - UPTIME).strftime("%Y-%m-%d %H:%M:%S") + "\n")
        days = UPTIME.days
        hours, remainder = divmod(UPTIME.seconds, 3600)
        minutes = remainder // 60
        if cmd.has_flag("p", "pretty"):
            weeks, day_rest = divmod(days, 7)
            return self.success(f"up {weeks} weeks, {day_rest} days, {hours} hours, {minutes} minutes\n")
        one, five, fifteen = self._load_average(node)
        return self.success(
            f" {now.strftime('%H:%M:%S')} up {days} days, {hours:2d}:{minutes:02d},  1 user,  "
            f"load average: {one:.2f}, {five:.2f}, {fifteen:.2f}\n"
        )

    # -------- uname / hostname --------

    def execute_uname(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        build = "#101-Ubuntu SMP Tue Nov 14 13:30:08 UTC 2023"
        parts = {
            "s": "Linux",
            "n": node.id,
            "r": node.kernel_version,
            "v": build,
            "m": "x86_64",
            "p": "x86_64",
            "i": "x86_64",
            "o": "GNU/Linux",
        }
        if cmd.has_flag("a", "all"):
            selected = ["s", "n", "r", "v", "m", "p", "i", "o"]
        else:
            selected = [k for k in parts if cmd.has_flag(k)] or ["s"]
        return self.success(" ".join(parts[k] for k in selected) + "\n")

    def execute_hostname(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        if cmd.arguments:
            raise self.error("hostname: you must be root to change the host name")
        if cmd.has_flag("f", "fqdn"):
            return self.success(node.hostname + "\n")
        if cmd.has_flag("i", "ip-address"):
            return self.success(node.management_ip + "\n")
        if cmd.has_flag("I", "all-ip-addresses"):
            return self.success(f"{node.management_ip} \n")
        return self.success(node.id + "\n")

    # -------- dmesg --------

    def execute_dmesg(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        if cmd.has_flag("c", "clear") or cmd.has_flag("C"):
            raise self.error("dmesg: klogctl failed: Operation not permitted")

        messages = kernel_log(node, self._store.thresholds)
        level_arg = cmd.get_flag_string("l", "level")
        if level_arg:
            wanted = {lvl.strip() for lvl in level_arg.split(",")}
            unknown = sorted(wanted - set(LEVELS))
            if unknown:
                raise self.error(f"dmesg: unknown level '{unknown[0]}'")
            messages = [m for m in messages if m.level in wanted]

        if cmd.has_flag("T", "ctime"):
            boot = self._clock() - UPTIME
            lines = [
                f"[{(boot + timedelta(seconds=m.seconds)).strftime('%a %b %d %H:%M:%S %Y')}] {m.text}"
                for m in messages
            ]
        else:
            lines = [f"[{m.seconds:12.6f}] {m.text}" for m in messages]
        return self.success("\n".join(lines) + ("\n" if lines else ""))

    # -------- systemctl --------

    def _unit_states(self, node: DGXNode) -> dict[str, tuple[str, str, str]]:
        """unit -> (active state, sub state, description)."""
        fabric = summarize_fabric(node)
        gpus_lost = any(g.has_fallen_off_bus for g in node.gpus)
        slurmd_up = node.slurm_state != SlurmState.DOWN
        return {
            "nvidia-fabricmanager": (
                ("active", "running") if fabric.gpus else ("failed", "failed"),
                "NVIDIA fabric manager service",
            ),
            "nvidia-persistenced": (
                ("active", "running") if any(g.persistence_mode for g in node.gpus) else ("inactive", "dead"),
                "NVIDIA Persistence Daemon",
            ),
            "nvidia-dcgm": (("active", "running"), "NVIDIA DCGM service"),
            "nvsm-core": (
                ("active", "running") if not gpus_lost else ("active", "degraded"),
                "NVSM Core Service",
            ),
            "slurmd": (("active", "running") if slurmd_up else ("failed", "failed"), "Slurm node daemon"),
            "docker": (("active", "running"), "Docker Application Container Engine"),
            "openibd": (("active", "exited"), "openibd - configure Mellanox devices"),
            "ssh": (("active", "running"), "OpenBSD Secure Shell server"),
        }

    def execute_systemctl(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        units = self._unit_states(node)
        verb = cmd.subcommand or "list-units"
        targets = [a.removesuffix(".service") for a in cmd.arguments[1:]]

        if verb == "list-units":
            rows = [
                [f"{name}.service", "loaded", states[0], states[1], description]
                for name, (states, description) in sorted(units.items())
            ]
            table = self.format_columns(["UNIT", "LOAD", "ACTIVE", "SUB", "DESCRIPTION"], rows, gap=2)
            return self.success(f"{table}\n\n{len(rows)} loaded units listed.\n")

        if verb not in ("status", "is-active", "start", "restart", "stop"):
            raise self.error(f"Unknown command verb {verb}.")
        if not targets:
            raise self.error(f"Too few arguments. Usage: systemctl {verb} <unit>")

        outputs = []
        exit_code = 0
        for target in targets:
            if target not in units:
                outputs.append(f"Unit {target}.service could not be found.")
                exit_code = 4
                continue
            (active, sub), description = units[target]
            if verb == "is-active":
                outputs.append(active)
                if active != "active":
                    exit_code = 3
            elif verb == "status":
                outputs.append(self._status_block(node, target, active, sub, description))
                if active != "active":
                    exit_code = 3
            elif verb == "stop":
                outputs.append(
                    f"Failed to stop {target}.service: Operation refused, unit {target}.service "
                    "may be requested by dependency only (it is configured to refuse manual start/stop)."
                )
                exit_code = 1
        text = "\n".join(outputs)
        return CommandResult(text + ("\n" if text else ""), exit_code)

    def _status_block(self, node: DGXNode, unit: str, active: str, sub: str, description: str) -> str:
        since = (self._clock() - UPTIME).strftime("%a %Y-%m-%d %H:%M:%S UTC")
        pid = 1000 + sum(ord(c) for c in unit) % 4000
        lines = [
            f"{'●' if active == 'active' else '×'} {unit}.service - {description}",
            f"     Loaded: loaded (/lib/systemd/system/{unit}.service; enabled; vendor preset: enabled)",
            f"     Active: {active} ({sub}) since {since}; {UPTIME.days} days ago",
        ]
        if active == "active":
            lines.append(f"   Main PID: {pid} ({unit})")
            lines.append(f"     CGroup: /system.slice/{unit}.service")
            lines.append(f"             └─{pid} /usr/bin/{unit}")
        if unit == "nvidia-fabricmanager":
            for gpu in node.gpus:
                if gpu.has_fallen_off_bus:
                    lines.append(f"{node.id} nv-fabricmanager[{pid}]: GPU {gpu.id} is not enumerated, excluded from fabric")
        return "\n".join(lines)

    # -------- sensors --------

    def execute_sensors(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        fahrenheit = cmd.has_flag("f", "fahrenheit")

        def temp(celsius: Optional[float]) -> str:
            if celsius is None:
                return "N/A"
            value = celsius * 9 / 5 + 32 if fahrenheit else celsius
            return f"{value:+.1f}°{'F' if fahrenheit else 'C'}"

        blocks = []
        amd = "AMD" in node.cpu_model
        cpu_sensors = [s for s in node.bmc.sensors if s.name.startswith("CPU") and s.unit == "degrees C"]
        for socket, sensor in enumerate(cpu_sensors):
            chip = f"k10temp-pci-00{0xc3 + socket * 8:02x}" if amd else f"coretemp-isa-{socket:04d}"
            label = "Tctl" if amd else f"Package id {socket}"
            blocks.append(
                f"{chip}\nAdapter: PCI adapter\n"
                f"{label + ':':<14}{temp(sensor.reading):>10}  (high = {temp(sensor.upper_warning)}, crit = {temp(sensor.upper_critical)})"
            )
        inlet = next((s for s in node.bmc.sensors if s.name == "Inlet Temp"), None)
        if inlet is not None:
            blocks.append(f"acpitz-acpi-0\nAdapter: ACPI interface\n{'temp1:':<14}{temp(inlet.reading):>10}")
        fans = [s for s in node.bmc.sensors if s.unit == "RPM"]
        if fans:
            fan_lines = [f"{s.name.lower() + ':':<14}{int(s.reading):>6} RPM  (min = {int(s.lower_critical or 0)} RPM)" for s in fans]
            blocks.append("nct6779-isa-0a20\nAdapter: ISA adapter\n" + "\n".join(fan_lines))
        return self.success("\n\n".join(blocks) + "\n")


def _human_kib(kib: int) -> str:
    """Render KiB the way ``free -h`` does (``1.0Ti``, ``128Gi``)."""
    value = float(kib)
    unit = "Ki"
    for larger in ("Mi", "Gi", "Ti"):
        if value < 1024:
            break
        value /= 1024
        unit = larger
    if unit == "Ki":
        return f"{int(value)}{unit}"
    return f"{value:.1f}{unit}" if value < 10 else f"{value:.0f}{unit}"
