"""InfiniBand diagnostics simulator.

``ibstat``, ``ibportstate``, ``ibporterrors``, ``iblinkinfo``, ``perfquery``,
``ibdiagnet``, ``ibdev2netdev`` and ``ibnetdiscover`` read the HCA ports of
the cluster snapshot. Fabric-wide tools look at every node; node-local
tools look at the current node. Traffic counters are a fixed function of the
port LID so repeated queries agree.

References:
    - infiniband-diags man pages (ibstat, perfquery, ibnetdiscover)
    - NVIDIA UFM / ibdiagnet user manual
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.domain.entities.cluster import Cluster
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.node import HCA, DGXNode, InfiniBandPort, PortState

IB_DIAGS_VERSION = "5.9-0"
NODES_PER_LEAF = 4
SPINE_COUNT = 2
SWITCH_PORTS = 40
SM_LID = 1


def hca_pci_address(hca: HCA) -> str:
    """PCIe address of a ConnectX adapter."""
    return f"0000:{0xa0 + hca.id:02x}:00.0"


def hca_netdev(hca: HCA) -> str:
    return f"ib{hca.id}"


def link_width(port: InfiniBandPort) -> str:
    return "4X"


def lane_speed(port: InfiniBandPort) -> str:
    """Per-lane signalling rate for the port's aggregate rate."""
    return {400: "106.25 Gbps", 200: "53.125 Gbps", 100: "25.78125 Gbps"}.get(port.rate, "25.78125 Gbps")


@dataclass(frozen=True)
class PortRef:
    """A port located in the fabric."""
    node: DGXNode
    hca: HCA
    port: InfiniBandPort


def fabric_ports(cluster: Cluster) -> list[PortRef]:
    return [PortRef(n, h, p) for n in cluster.nodes for h in n.hcas for p in h.ports]


def leaf_count(cluster: Cluster) -> int:
    return max(1, math.ceil(len(cluster.nodes) / NODES_PER_LEAF))


def switch_guid(kind: str, index: int) -> str:
    base = 0xE0 if kind == "spine" else 0xF0
    return f"0x0c42a1030000{base + index:04x}"


def traffic_counters(port: InfiniBandPort) -> dict[str, int]:
    """Data and packet counters derived from the LID."""
    seed = port.lid * 7919
    return {
        "PortXmitData": seed * 104729,
        "PortRcvData": seed * 103591,
        "PortXmitPkts": seed * 1013,
        "PortRcvPkts": seed * 1009,
    }


class InfiniBandSimulator(BaseSimulator):
    """Simulates infiniband-diags and ibdiagnet."""

    TOOLS = {
        name: ToolInfo(
            name=name,
            description=description,
            version=IB_DIAGS_VERSION,
            usage=usage,
            version_text=f"{name} {IB_DIAGS_VERSION}",
        )
        for name, description, usage in (
            ("ibstat", "query basic status of InfiniBand device(s)", "ibstat [-l] [-p] [-s] [ca_name] [portnum]"),
            ("ibportstate", "query InfiniBand port state", "ibportstate [options] <lid> <portnum> [query]"),
            ("ibporterrors", "show InfiniBand port error counters", "ibporterrors [-v]"),
            ("iblinkinfo", "report link info for all links in the fabric", "iblinkinfo [-l] [--down]"),
            ("perfquery", "query InfiniBand port counters", "perfquery [-x] [<lid> [port]]"),
            ("ibdiagnet", "InfiniBand fabric diagnostic tool", "ibdiagnet [-v] [--pc] [-r]"),
            ("ibdev2netdev", "map InfiniBand devices to network interfaces", "ibdev2netdev [-v]"),
            ("ibnetdiscover", "discover InfiniBand topology", "ibnetdiscover [-l] [-H] [-S] [-p]"),
        )
    }

    def _local_hcas(self, ctx: CommandContext) -> DGXNode:
        node = self.current_node(self.snapshot(), ctx)
        if not node.hcas:
            raise self.error("No InfiniBand HCAs found")
        return node

    def _find_lid(self, cluster: Cluster, ctx: CommandContext, lid_text: Optional[str]) -> PortRef:
        if lid_text is None:
            node = self.current_node(cluster, ctx)
            if not node.hcas or not node.hcas[0].ports:
                raise self.error("Error: No HCA found")
            return PortRef(node, node.hcas[0], node.hcas[0].ports[0])
        try:
            lid = int(lid_text, 0)
        except ValueError:
            raise self.error(f"ibwarn: invalid lid '{lid_text}'") from None
        for ref in fabric_ports(cluster):
            if ref.port.lid == lid:
                return ref
        raise self.error(f"ibwarn: [{lid}] smp query failed: lid {lid} not found in fabric")

    # -------- ibstat --------

    def execute_ibstat(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self._local_hcas(ctx)
        if cmd.has_flag("l", "list_of_cas"):
            return self.success("".join(f"{h.ca_type}\n" for h in node.hcas))
        if cmd.has_flag("p", "port_list"):
            return self.success("".join(f"{p.guid}\n" for h in node.hcas for p in h.ports))

        hcas = node.hcas
        port_filter: Optional[int] = None
        args = cmd.arguments
        if args:
            hcas = [h for h in node.hcas if h.ca_type == args[0]]
            if not hcas:
                raise self.error(f"ibstat: CA '{args[0]}' not found")
            if len(args) > 1:
                if not args[1].isdigit():
                    raise self.error(f"ibstat: invalid port number '{args[1]}'")
                port_filter = int(args[1])

        short = cmd.has_flag("s", "short")
        blocks = []
        for hca in hcas:
            ports = [p for p in hca.ports if port_filter is None or p.port_number == port_filter]
            if port_filter is not None and not ports:
                raise self.error(f"ibstat: port {port_filter} not found on {hca.ca_type}")
            guid = hca.ports[0].guid if hca.ports else "0x0000000000000000"
            lines = [f"CA '{hca.ca_type}'"]
            if not short:
                lines.extend([
                    f"\tCA type: {hca.device_id}",
                    f"\tNumber of ports: {len(hca.ports)}",
                    f"\tFirmware version: {hca.firmware_version}",
                    "\tHardware version: 0",
                    f"\tNode GUID: {guid}",
                    f"\tSystem image GUID: {guid}",
                ])
            for port in ports:
                lines.append(f"\tPort {port.port_number}:")
                lines.append(f"\t\tState: {port.state.value}")
                lines.append(f"\t\tPhysical state: {port.physical_state}")
                lines.append(f"\t\tRate: {port.rate}")
                if not short:
                    lines.extend([
                        f"\t\tBase lid: {port.lid}",
                        "\t\tLMC: 0",
                        f"\t\tSM lid: {SM_LID}",
                        "\t\tCapability mask: 0x2659e848",
                        f"\t\tPort GUID: {port.guid}",
                        f"\t\tLink layer: {port.link_layer}",
                    ])
            blocks.append("\n".join(lines))
        return self.success("\n".join(blocks) + "\n")

    # -------- ibportstate --------

    def execute_ibportstate(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        args = [a for a in cmd.arguments if a != "query"]
        ref = self._find_lid(cluster, ctx, args[0] if args else None)
        if len(args) > 1 and args[1] != str(ref.port.port_number):
            raise self.error(f"ibwarn: port {args[1]} not found on lid {ref.port.lid}")
        port = ref.port
        width = 33
        lines = [
            "CA PortInfo:",
            f"# Port info: Lid {port.lid} port {port.port_number}",
            self.dotted("LinkState:", port.state.value, width),
            self.dotted("PhysLinkState:", port.physical_state, width),
            self.dotted("Lid:", str(port.lid), width),
            self.dotted("SMLid:", str(SM_LID), width),
            self.dotted("LinkWidthActive:", link_width(port) if port.state == PortState.ACTIVE else "", width),
            self.dotted("LinkSpeedActive:", lane_speed(port) if port.state == PortState.ACTIVE else "", width),
            self.dotted("LinkDownedCounter:", str(port.errors.link_downed), width),
        ]
        return self.success("\n".join(lines) + "\n")

    # -------- ibporterrors --------

    def execute_ibporterrors(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self._local_hcas(ctx)
        verbose = cmd.has_flag("v", "verbose")
        lines = [f"Errors for {node.hostname}:"]
        flagged = 0
        for hca in node.hcas:
            for port in hca.ports:
                errors = port.errors
                if not verbose and errors.total == 0:
                    continue
                flagged += 1 if errors.total else 0
                lines.append(f"  {hca.ca_type} port {port.port_number} (lid {port.lid}):")
                lines.append(f"    SymbolErrors:            {errors.symbol_errors}")
                lines.append(f"    LinkDowned:              {errors.link_downed}")
                lines.append(f"    PortRcvErrors:           {errors.port_rcv_errors}")
                lines.append(f"    PortXmitDiscards:        {errors.port_xmit_discards}")
                lines.append(f"    PortXmitWait:            {errors.port_xmit_wait}")
                if errors.symbol_errors:
                    lines.append("    Warning: Symbol errors detected - check cable quality")
                if errors.link_downed:
                    lines.append(f"    Critical: Link has gone down {errors.link_downed} times")
        if len(lines) == 1:
            lines.append("  No port errors detected")
        lines.append("")
        lines.append(f"Summary: {flagged} port(s) with errors")
        return self.success("\n".join(lines) + "\n")

    # -------- iblinkinfo --------

    def execute_iblinkinfo(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        leaves = leaf_count(cluster)
        down_only = cmd.has_flag("down")
        one_line = cmd.has_flag("l", "line")
        lines = []
        for index, node in enumerate(cluster.nodes):
            leaf = min(index // NODES_PER_LEAF, leaves - 1)
            entries = []
            for hca in node.hcas:
                for port in hca.ports:
                    if down_only and port.state == PortState.ACTIVE:
                        continue
                    if port.state == PortState.ACTIVE:
                        link = f"{link_width(port)} {lane_speed(port)} Active/  LinkUp"
                        remote = f'{SPINE_COUNT + (index % NODES_PER_LEAF) * 8 + hca.id + 1}[  ] "Leaf-{leaf}"'
                    else:
                        link = f"   {port.state.value}/ {port.physical_state}"
                        remote = "[  ] \"\" ( )"
                    text = f"{port.lid:>5} {port.port_number:>3}[  ] ==> ({link}) ==> {remote}"
                    if one_line:
                        entries.append(f'{port.guid} "{node.hostname} {hca.ca_type}" {text}')
                    else:
                        entries.append(f"          {text}")
                    if port.errors.total and not one_line:
                        entries.append(
                            f"              errors: symbol {port.errors.symbol_errors}, "
                            f"link downed {port.errors.link_downed}, rcv {port.errors.port_rcv_errors}"
                        )
            if entries:
                if not one_line:
                    lines.append(f"CA: {node.hostname}:")
                lines.extend(entries)
        if not lines:
            return self.success("")
        return self.success("\n".join(lines) + "\n")

    # -------- perfquery --------

    def execute_perfquery(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        args = cmd.arguments
        ref = self._find_lid(cluster, ctx, args[0] if args else None)
        port = ref.port
        traffic = traffic_counters(port)
        extended = cmd.has_flag("x", "extended")
        width = 33
        title = "extended counters" if extended else "counters"
        lines = [
            f"# Port {title}: Lid {port.lid} port {port.port_number} (CapMask: 0x5A00)",
            self.dotted("PortSelect:", str(port.port_number), width),
            self.dotted("CounterSelect:", "0x0000", width),
        ]
        if extended:
            for name, value in traffic.items():
                lines.append(self.dotted(f"{name}:", str(value), width))
            lines.append(self.dotted("PortUnicastXmitPkts:", str(traffic["PortXmitPkts"]), width))
            lines.append(self.dotted("PortUnicastRcvPkts:", str(traffic["PortRcvPkts"]), width))
            lines.append(self.dotted("PortMulticastXmitPkts:", "0", width))
            lines.append(self.dotted("PortMulticastRcvPkts:", "0", width))
        else:
            errors = port.errors
            counters = [
                ("SymbolErrorCounter", errors.symbol_errors),
                ("LinkErrorRecoveryCounter", 0),
                ("LinkDownedCounter", errors.link_downed),
                ("PortRcvErrors", errors.port_rcv_errors),
                ("PortRcvRemotePhysicalErrors", 0),
                ("PortRcvSwitchRelayErrors", 0),
                ("PortXmitDiscards", errors.port_xmit_discards),
                ("PortXmitConstraintErrors", 0),
                ("PortRcvConstraintErrors", 0),
                ("LocalLinkIntegrityErrors", 0),
                ("ExcessiveBufferOverrunErrors", 0),
                ("VL15Dropped", 0),
            ]
            counters.extend((name, min(value, 2**32 - 1)) for name, value in traffic.items())
            counters.append(("PortXmitWait", errors.port_xmit_wait))
            lines.extend(self.dotted(f"{name}:", str(value), width) for name, value in counters)
        return self.success("\n".join(lines) + "\n")

    # -------- ibdiagnet --------

    def execute_ibdiagnet(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        ports = fabric_ports(cluster)
        switches = leaf_count(cluster) + SPINE_COUNT
        down = [r for r in ports if r.port.state != PortState.ACTIVE]
        errored = [r for r in ports if r.port.errors.total]
        lines = [
            "Loading IBDIAGNET from: /usr/lib/x86_64-linux-gnu/ibdiagnet1.5.7",
            "-I- Using port 1 as the local port",
            "-I- Discovering ... "
            f"{len(ports) + switches} nodes ({switches} Switches & {len(ports)} CA-s) discovered.",
            "",
            "-I---------------------------------------------------",
            "-I- Bad Guids/LIDs Info",
            "-I---------------------------------------------------",
            "-I- No bad Guids were found",
            "",
            "-I---------------------------------------------------",
            "-I- Links With Logical State = INIT / DOWN",
            "-I---------------------------------------------------",
        ]
        if not down:
            lines.append("-I- No bad Links (with logical state = INIT / DOWN) were found")
        for ref in down:
            lines.append(
                f"-E- Link {ref.node.hostname}/{ref.hca.ca_type}/P{ref.port.port_number} "
                f"(lid {ref.port.lid}) is in state {ref.port.state.value}"
            )
        lines.extend([
            "",
            "-I---------------------------------------------------",
            "-I- PM Counters Info",
            "-I---------------------------------------------------",
        ])
        if not errored:
            lines.append("-I- No illegal PM counters values were found")
        for ref in errored:
            errors = ref.port.errors
            lines.append(
                f"-W- {ref.node.hostname}/{ref.hca.ca_type}/P{ref.port.port_number} "
                f"symbol_error_counter={errors.symbol_errors} link_downed_counter={errors.link_downed} "
                f"port_rcv_errors={errors.port_rcv_errors}"
            )
        if cmd.has_flag("v", "verbose"):
            lines.extend([
                "",
                "-I---------------------------------------------------",
                "-I- Fabric Summary",
                "-I---------------------------------------------------",
                f"-I- Total Nodes             : {len(ports) + switches}",
                f"-I- IB Switches             : {switches}",
                f"-I- IB Channel Adapters     : {len(ports)}",
                f"-I- Topology                : {cluster.fabric_topology.value}",
            ])
        lines.extend([
            "",
            "Stage                     Warnings   Errors     Comment",
            "Discovery                 0          0",
            f"Link State                0          {len(down)}",
            f"PM Counters               {len(errored)}          0",
            "",
            "-I- Stages Status Report:",
            f"-I- Errors: {len(down)} Warnings: {len(errored)}",
            "-I- See report in /var/tmp/ibdiagnet2",
        ])
        return CommandResult("\n".join(lines) + "\n", 1 if down else 0)

    # -------- ibdev2netdev --------

    def execute_ibdev2netdev(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self._local_hcas(ctx)
        verbose = cmd.has_flag("v", "verbose")
        lines = []
        for hca in node.hcas:
            for port in hca.ports:
                state = "Up" if port.state == PortState.ACTIVE else "Down"
                if verbose:
                    lines.append(
                        f"{hca_pci_address(hca)} {hca.ca_type} ({hca.device_id} - {hca.part_number}) "
                        f"{hca.model} fw {hca.firmware_version} port {port.port_number} "
                        f"({port.state.value.upper()}) ==> {hca_netdev(hca)} ({state})"
                    )
                else:
                    lines.append(f"{hca.ca_type} port {port.port_number} ==> {hca_netdev(hca)} ({state})")
        return self.success("\n".join(lines) + "\n")

    # -------- ibnetdiscover --------

    def execute_ibnetdiscover(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        leaves = leaf_count(cluster)
        hcas_only = cmd.has_flag("H", "Hca_list")
        switches_only = cmd.has_flag("S", "Switch_list")
        if cmd.has_flag("l", "list") or hcas_only or switches_only:
            lines = []
            if not hcas_only:
                for i in range(SPINE_COUNT):
                    lines.append(f'Switch    : {switch_guid("spine", i)} ports {SWITCH_PORTS} "QM8700/Spine-{i}" base port 0 lid {10 + i} lmc 0')
                for i in range(leaves):
                    lines.append(f'Switch    : {switch_guid("leaf", i)} ports {SWITCH_PORTS} "QM8700/Leaf-{i}" base port 0 lid {20 + i} lmc 0')
            if not switches_only:
                for ref in fabric_ports(cluster):
                    lines.append(
                        f'Ca        : {ref.port.guid} ports {len(ref.hca.ports)} '
                        f'"{ref.node.hostname} {ref.hca.ca_type}"'
                    )
            return self.success("\n".join(lines) + "\n")

        lines = [
            "#",
            "# Topology file: generated by ibnetdiscover",
            f"# Initiated from node {switch_guid('leaf', 0)} port 1",
            "#",
            "",
        ]
        for i in range(SPINE_COUNT):
            lines.append(f'Switch\t{SWITCH_PORTS} "S-{switch_guid("spine", i)[2:]}"\t# "QM8700/Spine-{i}" enhanced port 0 lid {10 + i} lmc 0')
            for j in range(leaves):
                lines.append(f'[{j + 1}]\t"S-{switch_guid("leaf", j)[2:]}"[{i + 1}]\t\t# "QM8700/Leaf-{j}" lid {20 + j} 4xHDR')
            lines.append("")
        for j in range(leaves):
            lines.append(f'Switch\t{SWITCH_PORTS} "S-{switch_guid("leaf", j)[2:]}"\t# "QM8700/Leaf-{j}" enhanced port 0 lid {20 + j} lmc 0')
            for i in range(SPINE_COUNT):
                lines.append(f'[{i + 1}]\t"S-{switch_guid("spine", i)[2:]}"[{j + 1}]\t\t# "QM8700/Spine-{i}" lid {10 + i} 4xHDR')
            members = cluster.nodes[j * NODES_PER_LEAF:(j + 1) * NODES_PER_LEAF]
            for offset, node in enumerate(members):
                for hca in node.hcas:
                    for port in hca.ports:
                        if port.state != PortState.ACTIVE:
                            continue
                        switch_port = SPINE_COUNT + offset * 8 + hca.id + 1
                        lines.append(
                            f'[{switch_port}]\t"H-{port.guid[2:]}"[{port.port_number}]\t\t'
                            f'# "{node.hostname} {hca.ca_type}" lid {port.lid} 4xHDR'
                        )
            lines.append("")
        for index, node in enumerate(cluster.nodes):
            leaf = min(index // NODES_PER_LEAF, leaves - 1)
            for hca in node.hcas:
                lines.append(f'Ca\t{len(hca.ports)} "H-{hca.ports[0].guid[2:] if hca.ports else ""}"\t# "{node.hostname} {hca.ca_type}"')
                for port in hca.ports:
                    if port.state != PortState.ACTIVE:
                        continue
                    switch_port = SPINE_COUNT + (index % NODES_PER_LEAF) * 8 + hca.id + 1
                    lines.append(
                        f'[{port.port_number}]({port.guid[2:]})\t"S-{switch_guid("leaf", leaf)[2:]}"[{switch_port}]'
                        f'\t\t# lid {port.lid} lmc 0 "QM8700/Leaf-{leaf}" lid {20 + leaf} 4xHDR'
                    )
                lines.append("")
        return self.success("\n".join(lines))
