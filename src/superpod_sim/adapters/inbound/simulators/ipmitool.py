"""ipmitool simulator.

Talks to the BMC of the current node, or of the node named by ``-H``
(hostname or BMC address). Besides the board sensors the BMC reports one
temperature sensor per GPU, so GPU thermal faults appear in the sensor
list and the event log.

References:
    - IPMI v2.0 specification, sensor thresholds and SEL records
    - DCMI v1.5 power management
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.domain.entities.cluster import Cluster
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.value_objects.health_rules import HealthThresholds

SYSTEM_OVERHEAD_W = 300

USAGE = (
    "usage: ipmitool [-H host] <command> [args]\n"
    "Commands: sensor, sdr, sel, chassis, power, mc, lan, fru, dcmi"
)


@dataclass(frozen=True)
class SensorReading:
    """One row of the BMC sensor repository."""
    name: str
    reading: Optional[float]          # None when the device does not respond
    unit: str
    lower_critical: Optional[float] = None
    upper_warning: Optional[float] = None
    upper_critical: Optional[float] = None

    @property
    def status(self) -> str:
        if self.reading is None:
            return "ns"
        if self.upper_critical is not None and self.reading >= self.upper_critical:
            return "cr"
        if self.lower_critical is not None and self.reading <= self.lower_critical:
            return "cr"
        if self.upper_warning is not None and self.reading >= self.upper_warning:
            return "nc"
        return "ok"


def node_sensors(node: DGXNode, thresholds: HealthThresholds) -> list[SensorReading]:
    """Board sensors followed by one temperature sensor per GPU."""
    sensors = [
        SensorReading(s.name, s.reading, s.unit, s.lower_critical, s.upper_warning, s.upper_critical)
        for s in node.bmc.sensors
    ]
    for gpu in node.gpus:
        sensors.append(
            SensorReading(
                f"GPU{gpu.id} Temp",
                None if gpu.has_fallen_off_bus else gpu.temperature,
                "degrees C",
                upper_warning=thresholds.thermal_warning_c,
                upper_critical=thresholds.shutdown_temp_c,
            )
        )
    return sensors


def _threshold(value: Optional[float]) -> str:
    return "na" if value is None else f"{value:.3f}"


class IpmitoolSimulator(BaseSimulator):
    """Simulates ipmitool against a DGX BMC."""

    TOOLS = {
        "ipmitool": ToolInfo(
            name="ipmitool",
            description="utility for controlling IPMI-enabled devices",
            version="1.8.18",
            usage="ipmitool [-I lanplus] [-H host] [-U user] [-P password] <command>",
            commands=(
                ("sensor [list]", "Print detailed sensor information"),
                ("sdr [list|elist]", "Print Sensor Data Repository entries"),
                ("sel list|elist|info", "Print System Event Log"),
                ("chassis status", "Get chassis status"),
                ("power status", "Get chassis power status"),
                ("mc info", "Management controller information"),
                ("lan print", "Print LAN configuration"),
                ("fru [print]", "Print built-in FRU"),
                ("dcmi power reading", "DCMI power reading"),
            ),
            version_text="ipmitool version 1.8.18",
        ),
    }

    def execute(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        node = self._target(cluster, cmd, ctx)
        args = cmd.arguments
        verb = args[0] if args else None
        action = args[1] if len(args) > 1 else None

        if verb is None:
            raise self.error(USAGE)
        if verb == "sensor":
            if action not in (None, "list"):
                raise self.error("Usage: ipmitool sensor [list]")
            return self.success(self._sensor_list(node))
        if verb == "sdr":
            return self.success(self._sdr(node, action == "elist"))
        if verb == "sel":
            return self._sel(node, action)
        if verb == "chassis":
            return self._chassis(node, args[1:])
        if verb == "power":
            return self._chassis(node, ["power"] + list(args[1:]))
        if verb == "mc":
            if action != "info":
                raise self.error("mc: Missing or invalid subcommand\nUsage: ipmitool mc [info]")
            return self.success(self._mc_info(node))
        if verb == "lan":
            if action != "print":
                raise self.error("lan: Missing or invalid subcommand\nUsage: ipmitool lan print [channel]")
            return self.success(self._lan_print(node))
        if verb == "fru":
            if action not in (None, "print", "list"):
                raise self.error("fru: Missing or invalid subcommand\nUsage: ipmitool fru [print|list]")
            return self.success(self._fru(node))
        if verb == "dcmi":
            return self._dcmi(node, args[1:])
        raise self.error(f"Invalid command: {verb}\n{USAGE}")

    def _target(self, cluster: Cluster, cmd: ParsedCommand, ctx: CommandContext) -> DGXNode:
        host = cmd.get_flag_string("H")
        if host is None:
            return self.current_node(cluster, ctx)
        for node in cluster.nodes:
            if host in (node.bmc.ip_address, node.id, node.hostname, f"{node.id}-bmc"):
                return node
        raise self.error(
            f"Error: Unable to establish IPMI v2 / RMCP+ session\nUnable to connect to host {host}"
        )

    # -------- sensors --------

    def _sensor_list(self, node: DGXNode) -> str:
        lines = []
        for s in node_sensors(node, self._store.thresholds):
            reading = "na" if s.reading is None else f"{s.reading:.3f}"
            cells = [
                s.name.ljust(16), reading.rjust(10), s.unit.ljust(10), s.status.ljust(2),
                "na".rjust(9), _threshold(s.lower_critical).rjust(9), "na".rjust(9),
                _threshold(s.upper_warning).rjust(9), _threshold(s.upper_critical).rjust(9),
                "na".rjust(9),
            ]
            lines.append(" | ".join(cells))
        return "\n".join(lines) + "\n"

    def _sdr(self, node: DGXNode, extended: bool) -> str:
        lines = []
        for number, s in enumerate(node_sensors(node, self._store.thresholds), start=1):
            value = "no reading" if s.reading is None else f"{s.reading:g} {s.unit}"
            if extended:
                lines.append(f"{s.name:<16} | {number:02X}h | {s.status:<3}| 7.1 | {value}")
            else:
                lines.append(f"{s.name:<16} | {value:<17} | {s.status}")
        return "\n".join(lines) + "\n"

    # -------- event log --------

    def _sel_entries(self, node: DGXNode, extended: bool) -> list[str]:
        thresholds = self._store.thresholds
        now = self._clock()
        entries = []
        for gpu in node.gpus:
            for xid in gpu.xid_errors:
                when = _parse_moment(xid.timestamp) or now
                event = f"XID {xid.code} - {xid.description}" if extended else f"XID {xid.code}"
                entries.append((when, f"GPU #{gpu.id}", event))
            if gpu.temperature >= thresholds.thermal_warning_c:
                entries.append(
                    (now, f"Temperature GPU{gpu.id} Temp",
                     f"Upper Non-critical going high ({gpu.temperature:.0f}C)")
                )
            if gpu.ecc_errors.double_bit > 0:
                entries.append((now, f"Memory GPU #{gpu.id}", "Uncorrectable ECC"))
        for sensor in node_sensors(node, thresholds):
            if sensor.status == "cr" and not sensor.name.startswith("GPU"):
                entries.append((now, sensor.name, "Critical threshold crossed"))

        lines = []
        for record, (when, source, event) in enumerate(entries, start=1):
            lines.append(
                f"{record:4x} | {when:%m/%d/%Y} | {when:%H:%M:%S} | {source} | {event} | Asserted"
            )
        return lines

    def _sel(self, node: DGXNode, action: Optional[str]) -> CommandResult:
        if action in ("list", "elist", None):
            entries = self._sel_entries(node, action == "elist")
            if not entries:
                return self.success("SEL has no entries\n")
            return self.success("\n".join(entries) + "\n")
        if action == "info":
            entries = self._sel_entries(node, False)
            lines = [
                "SEL Information",
                "Version          : 1.5 (v1.5, v2 compliant)",
                f"Entries          : {len(entries)}",
                f"Free Space       : {max(0, 16384 - 16 * len(entries))} bytes",
                "Percent Used     : 0%",
                f"Last Add Time    : {self._clock():%m/%d/%Y %H:%M:%S}",
                "Overflow         : false",
            ]
            return self.success("\n".join(lines) + "\n")
        if action == "clear":
            raise self.error("Clearing the SEL requires administrator privilege level")
        raise self.error("sel: Missing or invalid subcommand\nUsage: ipmitool sel [list|elist|info]")

    # -------- chassis / power --------

    def _chassis(self, node: DGXNode, args: list[str]) -> CommandResult:
        action = args[0] if args else None
        power = "on" if node.bmc.power_state == "On" else "off"
        if action == "status":
            fan_fault = any(
                s.status == "cr" for s in node_sensors(node, self._store.thresholds) if s.unit == "RPM"
            )
            lines = [
                f"System Power         : {power}",
                "Power Overload       : false",
                "Power Interlock      : inactive",
                "Main Power Fault     : false",
                "Power Control Fault  : false",
                "Power Restore Policy : always-on",
                "Last Power Event     : ",
                "Chassis Intrusion    : inactive",
                "Front-Panel Lockout  : inactive",
                "Drive Fault          : false",
                f"Cooling/Fan Fault    : {'true' if fan_fault else 'false'}",
            ]
            return self.success("\n".join(lines) + "\n")
        if action == "power":
            sub = args[1] if len(args) > 1 else None
            if sub == "status":
                return self.success(f"Chassis Power is {power}\n")
            if sub in ("on", "off", "cycle", "reset", "soft"):
                raise self.error(f"Set Chassis Power Control to {sub.title()} failed: Insufficient privilege level")
            raise self.error(
                "chassis power: Missing or invalid action\n"
                "Usage: ipmitool chassis power [status|on|off|cycle|reset]"
            )
        raise self.error("chassis: Missing or invalid subcommand\nUsage: ipmitool chassis [status|power]")

    # -------- controller / LAN / FRU --------

    def _mc_info(self, node: DGXNode) -> str:
        lines = [
            "Device ID                 : 32",
            "Device Revision           : 1",
            f"Firmware Revision         : {node.bmc.firmware_version}",
            "IPMI Version              : 2.0",
            "Manufacturer ID           : 10876",
            "Manufacturer Name         : NVIDIA",
            "Product ID                : 2384",
            "Product Name              : DGX BMC",
            "Device Available          : yes",
            "Provides Device SDRs      : yes",
            "Additional Device Support :",
            "    Sensor Device",
            "    SDR Repository Device",
            "    SEL Device",
            "    FRU Inventory Device",
            "    Chassis Device",
        ]
        return "\n".join(lines) + "\n"

    def _lan_print(self, node: DGXNode) -> str:
        gateway = node.bmc.ip_address.rsplit(".", 1)[0] + ".1"
        lines = [
            "Set in Progress         : Set Complete",
            "Auth Type Support       : NONE MD5 PASSWORD",
            "IP Address Source       : Static Address",
            f"IP Address              : {node.bmc.ip_address}",
            "Subnet Mask             : 255.255.255.0",
            f"MAC Address             : {node.bmc.mac_address}",
            f"Default Gateway IP      : {gateway}",
            "802.1q VLAN ID          : Disabled",
            "RMCP+ Cipher Suites     : 3,17",
        ]
        return "\n".join(lines) + "\n"

    def _fru(self, node: DGXNode) -> str:
        serial = node.id.upper().replace("-", "")
        lines = [
            "FRU Device Description : Builtin FRU Device (ID 0)",
            " Board Mfg Date        : Mon Jan  1 00:00:00 2024",
            " Board Mfg             : NVIDIA",
            f" Board Product         : {node.system_type}",
            f" Board Serial          : {serial}",
            " Product Manufacturer  : NVIDIA",
            f" Product Name          : {node.system_type}",
            f" Product Serial        : {serial}",
        ]
        return "\n".join(lines) + "\n"

    # -------- DCMI --------

    def _dcmi(self, node: DGXNode, args: list[str]) -> CommandResult:
        if args[:1] == ["discover"]:
            return self.success(
                "    Supported DCMI version:           1.5\n"
                "    Power management support available\n"
                "    Platform management device available\n"
            )
        if args[:1] != ["power"] or len(args) < 2:
            raise self.error("dcmi: Missing subcommand\nUsage: ipmitool dcmi [power reading|discover]")
        if args[1] == "reading":
            watts = round(sum(g.power_draw for g in node.visible_gpus()) + SYSTEM_OVERHEAD_W)
            lines = [
                "",
                f"    Instantaneous power reading:                  {watts:>5} Watts",
                f"    Minimum during sampling period:               {round(watts * 0.95):>5} Watts",
                f"    Maximum during sampling period:               {round(watts * 1.2):>5} Watts",
                f"    Average power reading over sample period:     {watts:>5} Watts",
                f"    IPMI timestamp:                               {self.now()}",
                "    Sampling period:                              00000005 Seconds",
                "    Power reading state is:                       activated",
            ]
            return self.success("\n".join(lines) + "\n")
        if args[1] == "get_limit":
            limit = round(sum(g.power_limit for g in node.gpus) + 2 * SYSTEM_OVERHEAD_W)
            return self.success(
                "\n    Current Limit State:                          No Active Power Limit\n"
                "    Exception actions:                            Log Event to SEL\n"
                f"    Power Limit:                                  {limit} Watts\n"
            )
        raise self.error("dcmi power: Missing subcommand\nUsage: ipmitool dcmi power [reading|get_limit]")


def _parse_moment(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
