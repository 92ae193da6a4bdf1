"""Mellanox firmware tools simulator.

``mst``, ``mlxconfig``, ``mlxlink``, ``mlxcables`` and ``mlxfwmanager`` on
the current node. A device may be named by its MST path
(``/dev/mst/mt4123_pciconf0``), its IB device name (``mlx5_0``) or its PCI
address. Link state and counters come from the HCA's first port, the same
port ``ibstat`` reports.
"""

from __future__ import annotations

from typing import Optional

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.adapters.inbound.simulators.infiniband import hca_pci_address
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.node import HCA, DGXNode, InfiniBandPort, PortState

MFT_VERSION = "4.26.1-3"
PSID = "MT_0000000223"
CABLE_PART_NUMBER = "MFS1S00-H003E"


def mst_device(hca: HCA) -> str:
    """MST character device of an adapter."""
    return f"/dev/mst/{hca.device_id.lower()}_pciconf{hca.id}"


class MellanoxSimulator(BaseSimulator):
    """Simulates NVIDIA Firmware Tools (MFT)."""

    TOOLS = {
        "mst": ToolInfo(
            name="mst",
            description="Mellanox Software Tools service",
            version=MFT_VERSION,
            usage="mst <start|stop|status> [-v]",
            commands=(("start", "Start MST"), ("status", "Show MST devices")),
            version_text=f"mst, mft {MFT_VERSION}, built on Dec 12 2023",
        ),
        "mlxconfig": ToolInfo(
            name="mlxconfig",
            description="query and set device configurations",
            version=MFT_VERSION,
            usage="mlxconfig -d <device> <q|query>",
            commands=(("q, query", "Query current configuration"),),
            version_text=f"mlxconfig, mft {MFT_VERSION}",
        ),
        "mlxlink": ToolInfo(
            name="mlxlink",
            description="check and debug link status",
            version=MFT_VERSION,
            usage="mlxlink -d <device> [-m] [-c] [-e]",
            version_text=f"mlxlink, mft {MFT_VERSION}",
        ),
        "mlxcables": ToolInfo(
            name="mlxcables",
            description="query cable and module information",
            version=MFT_VERSION,
            usage="mlxcables [-d <device>] [-q]",
            version_text=f"mlxcables, mft {MFT_VERSION}",
        ),
        "mlxfwmanager": ToolInfo(
            name="mlxfwmanager",
            description="firmware manager for Mellanox/NVIDIA devices",
            version=MFT_VERSION,
            usage="mlxfwmanager [--query] [-d <device>]",
            version_text=f"mlxfwmanager, mft {MFT_VERSION}",
        ),
    }

    def _node(self, ctx: CommandContext) -> DGXNode:
        node = self.current_node(self.snapshot(), ctx)
        if not node.hcas:
            raise self.error("-E- No devices found, mst might be stopped. Run 'mst start' to load MST modules")
        return node

    def _resolve(self, tool: str, node: DGXNode, device: Optional[str]) -> HCA:
        if device is None:
            raise self.error(f"-E- Device not specified. Use -d /dev/mst/<device>\nUsage: {self.TOOLS[tool].usage}")
        for hca in node.hcas:
            if device in (mst_device(hca), hca.ca_type, hca_pci_address(hca), hca_pci_address(hca)[5:]):
                return hca
        raise self.device_not_found(tool, device)

    @staticmethod
    def _port(hca: HCA) -> Optional[InfiniBandPort]:
        return hca.ports[0] if hca.ports else None

    # -------- mst --------

    def execute_mst(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        verb = cmd.subcommand or "status"
        if verb == "start":
            return self.success(
                "Starting MST (Mellanox Software Tools) driver set\n"
                "Loading MST PCI module - Success\n"
                "Loading MST PCI configuration module - Success\n"
                "Create devices\n"
            )
        if verb == "stop":
            raise self.error("-E- Cannot stop MST: devices are in use by the fabric manager")
        if verb == "version":
            return self.version(self.TOOLS["mst"])
        if verb != "status":
            raise self.error("Usage: mst <start|stop|status> [-v]")

        node = self._node(ctx)
        verbose = cmd.has_flag("v", "verbose")
        lines = [
            "MST modules:",
            "------------",
            "    MST PCI module is not loaded",
            "    MST PCI configuration module loaded",
            "",
            "MST devices:",
            "------------",
        ]
        if verbose:
            lines.append("DEVICE_TYPE             MST                           PCI       RDMA            NET                       NUMA")
            for hca in node.hcas:
                lines.append(
                    f"{hca.model + '(rev:0)':<24}{mst_device(hca):<30}{hca_pci_address(hca)[5:]:<10}"
                    f"{hca.ca_type:<16}net-ib{hca.id:<20}{0 if hca.id < len(node.hcas) // 2 else 1}"
                )
        else:
            for hca in node.hcas:
                lines.append(f"{mst_device(hca):<30}- PCI configuration cycles access.")
                lines.append(f"                   domain:bus:dev.fn={hca_pci_address(hca)} addr.reg=88 data.reg=92 cr_bar.gw_offset=-1")
                lines.append("                   Chip revision is: 00")
        return self.success("\n".join(lines) + "\n")

    # -------- mlxconfig --------

    def execute_mlxconfig(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self._node(ctx)
        hca = self._resolve("mlxconfig", node, cmd.get_flag_string("d", "dev"))
        verb = cmd.subcommand or (cmd.positional_args[0] if cmd.positional_args else None)
        if verb in ("s", "set"):
            raise self.error(
                "-E- Failed to set configuration: the device is in use by the compute fabric\n"
                "-E- Configuration changes must be staged through Base Command Manager"
            )
        if verb not in ("q", "query"):
            raise self.error(f"Usage: {self.TOOLS['mlxconfig'].usage}")

        port = self._port(hca)
        link_type = "IB(1)" if port is None or port.link_layer == "InfiniBand" else "ETH(2)"
        settings = [
            ("MEMIC_BAR_SIZE", "0"),
            ("MEMIC_SIZE_LIMIT", "_256KB(1)"),
            ("FLEX_PARSER_PROFILE_ENABLE", "0"),
            ("ROCE_NEXT_PROTOCOL", "254"),
            ("NUM_OF_VFS", "0"),
            ("SRIOV_EN", "False(0)"),
            ("LINK_TYPE_P1", link_type),
            ("ADVANCED_PCI_SETTINGS", "False(0)"),
            ("PCI_ATOMIC_MODE", "PCI_ATOMIC_DISABLED_EXT_ATOMIC_ENABLED(0)"),
            ("KEEP_IB_LINK_UP_P1", "False(0)"),
        ]
        lines = [
            "",
            "Device #1:",
            "----------",
            "",
            f"Device type:    {hca.model}",
            f"Name:           {hca.part_number}",
            f"Description:    {hca.model} VPI adapter card; HDR IB (200Gb/s); single-port QSFP56",
            f"Device:         {mst_device(hca)}",
            "",
            f"{'Configurations:':<45}{'Next Boot'}",
        ]
        lines.extend(f"         {key:<36}{value}" for key, value in settings)
        return self.success("\n".join(lines) + "\n")

    # -------- mlxlink --------

    def execute_mlxlink(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self._node(ctx)
        hca = self._resolve("mlxlink", node, cmd.get_flag_string("d", "dev"))
        port = self._port(hca)
        if port is None:
            raise self.error(f"-E- Device {hca.ca_type} has no ports")
        active = port.state == PortState.ACTIVE

        lines = [
            "",
            "Operational Info",
            "----------------",
            f"{'State':<32}: {port.state.value}",
            f"{'Physical state':<32}: {port.physical_state}",
            f"{'Speed':<32}: {'IB-HDR' if active else 'N/A'}",
            f"{'Width':<32}: {'4x' if active else 'N/A'}",
            f"{'FEC':<32}: {'Standard LL RS-FEC - RS(271,257)' if active else 'N/A'}",
            f"{'Loopback Mode':<32}: No Loopback",
            f"{'Auto Negotiation':<32}: ON",
            "",
            "Supported Info",
            "--------------",
            f"{'Enabled Link Speed':<32}: 0x000000f1 (HDR,EDR,FDR,SDR)",
            f"{'Supported Cable Speed':<32}: 0x000000f1 (HDR,EDR,FDR,SDR)",
            "",
            "Troubleshooting Info",
            "--------------------",
            f"{'Status Opcode':<32}: {0 if active else 1024}",
            f"{'Group Opcode':<32}: {'N/A' if active else 'PHY FW'}",
            f"{'Recommendation':<32}: {'No issue was observed' if active else 'Check the cable and the remote port'}",
        ]
        errors = port.errors
        if cmd.has_flag("c", "show_counters"):
            lines.extend([
                "",
                "Physical Counters and BER Info",
                "------------------------------",
                f"{'Time Since Last Clear [Min]':<32}: 1440.0",
                f"{'Symbol Errors':<32}: {errors.symbol_errors}",
                f"{'Symbol BER':<32}: {'15E-255' if not errors.symbol_errors else '1E-12'}",
                f"{'Link Down Counter':<32}: {errors.link_downed}",
                f"{'Link Error Recovery Counter':<32}: 0",
                f"{'Port Receive Errors':<32}: {errors.port_rcv_errors}",
                f"{'Port Transmit Discards':<32}: {errors.port_xmit_discards}",
            ])
        if cmd.has_flag("e", "show_eye"):
            lines.extend(["", "EYE Opening Info", "----------------"])
            heights = (125, 122, 120, 123) if active else (0, 0, 0, 0)
            lines.append(f"{'Lane':<32}: 0    1    2    3")
            lines.append(f"{'Height Eye Opening [mV]':<32}: " + "  ".join(f"{h:<3}" for h in heights))
            lines.append(f"{'Phase Eye Opening [psec]':<32}: " + "  ".join(f"{h // 5:<3}" for h in heights))
        if cmd.has_flag("m", "show_module"):
            lines.extend(self._module_info(hca, port))
        return self.success("\n".join(lines) + "\n")

    def _module_info(self, hca: HCA, port: InfiniBandPort) -> list[str]:
        present = port.physical_state != "Disabled"
        return [
            "",
            "Module Info",
            "-----------",
            f"{'Identifier':<32}: QSFP56",
            f"{'Compliance':<32}: 200GBASE-SR4 or 200GBASE-SR2",
            f"{'Cable Technology':<32}: 850 nm VCSEL",
            f"{'Cable Type':<32}: Optical Module (separated)",
            f"{'Vendor Name':<32}: Mellanox",
            f"{'Vendor Part Number':<32}: {CABLE_PART_NUMBER}",
            f"{'Vendor Serial Number':<32}: MT21{hca.id:02d}FT{port.lid:05d}",
            f"{'Module Temperature [C]':<32}: {'45' if present else 'N/A'}",
            f"{'Module Voltage [mV]':<32}: {'3300' if present else 'N/A'}",
        ]

    # -------- mlxcables --------

    def execute_mlxcables(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self._node(ctx)
        device = cmd.get_flag_string("d", "dev")
        hcas = [self._resolve("mlxcables", node, device)] if device else node.hcas
        lines = ["Querying Cables ....", ""]
        for index, hca in enumerate(hcas, start=1):
            port = self._port(hca)
            cable_ok = port is not None and port.state == PortState.ACTIVE
            lines.extend([
                f"Cable #{index}:",
                "-------------",
                f"Cable name    : {mst_device(hca)}_lid-0x{port.lid if port else 0:04x}",
                f"{'Identifier':<18}: QSFP56",
                f"{'Technology':<18}: 850 nm VCSEL",
                f"{'Vendor':<18}: Mellanox",
                f"{'Part number':<18}: {CABLE_PART_NUMBER}",
                f"{'Serial number':<18}: MT21{hca.id:02d}FT{port.lid if port else 0:05d}",
                f"{'Length':<18}: 3 m",
                f"{'Temperature':<18}: 45C",
                f"{'Status':<18}: {'OK' if cable_ok else 'No link (check cable seating)'}",
                "",
            ])
        return self.success("\n".join(lines))

    # -------- mlxfwmanager --------

    def execute_mlxfwmanager(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self._node(ctx)
        if cmd.has_flag("u", "update"):
            raise self.error(
                "-E- Firmware update is not permitted while the node is part of an active fabric"
            )
        device = cmd.get_flag_string("d", "dev")
        hcas = [self._resolve("mlxfwmanager", node, device)] if device else node.hcas
        lines = ["Querying Mellanox devices firmware ...", ""]
        for index, hca in enumerate(hcas, start=1):
            lines.extend([
                f"Device #{index}:",
                "----------",
                "",
                f"  Device Type:      {hca.model}",
                f"  Part Number:      {hca.part_number}",
                f"  Description:      {hca.model} VPI adapter card; HDR IB (200Gb/s); single-port QSFP56",
                f"  PSID:             {PSID}",
                f"  PCI Device Name:  {mst_device(hca)}",
                f"  Base GUID:        {hca.ports[0].guid if hca.ports else 'N/A'}",
                "  Versions:         Current        Available",
                f"     FW             {hca.firmware_version:<15}{hca.firmware_version}",
                "     PXE            3.6.0902       N/A",
                "",
                "  Status:           Up to date",
                "",
            ])
        return self.success("\n".join(lines))
