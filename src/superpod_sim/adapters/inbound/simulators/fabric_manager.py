"""nv-fabricmanager simulator.

Every NVLink of a GPU lands on one NVSwitch port; link ``i`` goes to switch
``i % nvswitch_count``. Link counts come from
:func:`~superpod_sim.domain.services.fabric.node_fabric`, so they always
agree with ``nvidia-smi nvlink``, ``nvsm`` and ``nvlink-audit``. A GPU that
fell off the bus keeps its switch ports, all of them down.
"""

from __future__ import annotations

from dataclasses import dataclass

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.services.fabric import NodeFabric, link_errors, link_is_up, node_fabric
from superpod_sim.domain.value_objects.hardware_specs import SYSTEM_SPECS

RULE = "=" * 60
CONFIG_FILE = "/etc/nvidia-fabricmanager/fabricmanager.cfg"


@dataclass
class SwitchPorts:
    """Port usage of one NVSwitch."""
    switch_id: int
    total: int = 0
    active: int = 0
    errors: int = 0
    gpus: tuple[int, ...] = ()


@dataclass
class FabricSummary:
    """NVLink fabric of one node, seen from its switches."""
    links: NodeFabric
    switches: list[SwitchPorts]

    @property
    def gpus(self) -> list[GPU]:
        return [g.gpu for g in self.links.gpus]

    @property
    def total_links(self) -> int:
        return self.links.total_links

    @property
    def active_links(self) -> int:
        return self.links.active_links

    @property
    def link_errors(self) -> int:
        return self.links.link_errors

    @property
    def healthy(self) -> bool:
        return self.links.healthy


def summarize_fabric(node: DGXNode) -> FabricSummary:
    """Build the switch view of a node's NVLinks."""
    spec = SYSTEM_SPECS.get(node.system_type)
    count = spec.nvswitch_count if spec else 0
    switches = [SwitchPorts(switch_id=i) for i in range(count)]
    attached: dict[int, set[int]] = {i: set() for i in range(count)}
    for gpu in node.gpus:
        for link in gpu.nvlinks:
            if not count:
                break
            switch = switches[link.link_id % count]
            switch.total += 1
            switch.errors += link_errors(link)
            if link_is_up(gpu, link):
                switch.active += 1
            attached[switch.switch_id].add(gpu.id)
    for switch in switches:
        switch.gpus = tuple(sorted(attached[switch.switch_id]))
    return FabricSummary(links=node_fabric(node), switches=switches)


class FabricManagerSimulator(BaseSimulator):
    """Simulates the NVIDIA Fabric Manager CLI."""

    TOOLS = {
        "nv-fabricmanager": ToolInfo(
            name="nv-fabricmanager",
            description="NVIDIA Fabric Manager",
            version="535.129.03",
            usage="nv-fabricmanager [options] <command> [args]",
            commands=(
                ("status", "Show fabric manager status"),
                ("query nvswitch|topology|nvlink", "Query fabric information"),
                ("diag [quick|full|errors]", "Run fabric diagnostics"),
                ("config", "Show configuration"),
                ("topo", "Display topology map"),
            ),
            version_text="Fabric Manager version is : 535.129.03",
        ),
    }

    def execute(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        fabric = summarize_fabric(node)
        verb = cmd.subcommand or "status"
        if verb == "status":
            return self.success(self._status(node, fabric))
        if verb == "query":
            return self._query(cmd, node, fabric)
        if verb == "diag":
            return self._diag(cmd, fabric)
        if verb == "config":
            return self.success(self._config(node))
        if verb == "topo":
            return self.success(self._topo(node, fabric))
        raise self.unknown_subcommand("nv-fabricmanager", verb, ("status", "query", "diag", "config", "topo"))

    def _status(self, node: DGXNode, fabric: FabricSummary) -> str:
        lines = [
            "NVIDIA Fabric Manager Status",
            RULE,
            "Service Status:",
            "  Fabric Manager:       Running",
            f"  Config File:          {CONFIG_FILE}",
            "",
            "Fabric Topology:",
            f"  System Type:          {node.system_type}",
            f"  GPUs:                 {fabric.links.detected_gpus}",
            f"  NVSwitches:           {len(fabric.switches)}",
            f"  NVLinks Total:        {fabric.total_links}",
            f"  NVLinks Active:       {fabric.active_links}",
            f"  Topology:             {'Fully Connected (NVSwitch)' if fabric.switches else 'Direct NVLink'}",
            "",
            "Health Status:",
            f"  Overall:              {'Healthy' if fabric.healthy else 'Degraded'}",
            f"  Last Health Check:    {self.now()}",
            f"  Errors Detected:      {fabric.link_errors}",
        ]
        return "\n".join(lines) + "\n"

    def _query(self, cmd: ParsedCommand, node: DGXNode, fabric: FabricSummary) -> CommandResult:
        target = cmd.arguments[1] if len(cmd.arguments) > 1 else None
        if target == "nvswitch":
            rows = [
                [
                    str(s.switch_id),
                    f"{s.active}/{s.total}",
                    "Active" if s.active == s.total else "Degraded",
                    str(s.errors),
                ]
                for s in fabric.switches
            ]
            table = self.format_columns(["NVSwitch", "Ports Active", "State", "Errors"], rows, gap=3)
            total = f"Total NVSwitches: {len(fabric.switches)}"
            return self.success(f"NVSwitch Status - {node.hostname}\n{RULE}\n{table}\n\n{total}\n")
        if target == "topology":
            lines = [f"Fabric Topology - {node.hostname}", RULE, f"System: {node.system_type}", "", "GPU Topology:"]
            for entry in fabric.links.gpus:
                missing = "" if entry.present else " (not present)"
                lines.append(f"  GPU {entry.gpu.id}: {entry.active}/{entry.total} NVLinks active{missing}")
            lines.append("")
            lines.append("NVSwitch Connectivity:")
            for switch in fabric.switches:
                gpus = ", ".join(str(g) for g in switch.gpus)
                lines.append(f"  NVSwitch {switch.switch_id}: Connected to GPUs [{gpus}]")
            return self.success("\n".join(lines) + "\n")
        if target == "nvlink":
            rows = []
            switch_count = max(1, len(fabric.switches))
            for gpu in fabric.gpus:
                gpu_present = not gpu.has_fallen_off_bus
                for link in gpu.nvlinks:
                    rows.append([
                        str(gpu.id), str(link.link_id), link.status.value if gpu_present else "Down",
                        f"{link.speed} GB/s" if link_is_up(gpu, link) else "-",
                        f"NVSwitch {link.link_id % switch_count}",
                    ])
            table = self.format_columns(["GPU", "Link", "State", "Speed", "Remote"], rows, gap=3)
            summary = f"Active links: {fabric.active_links}/{fabric.total_links}"
            return self.success(f"NVLink Status - {node.hostname}\n{RULE}\n{table}\n\n{summary}\n")
        raise self.error(
            "Error: query requires a type: nvswitch, topology or nvlink\n"
            "Usage: nv-fabricmanager query <type>"
        )

    def _diag(self, cmd: ParsedCommand, fabric: FabricSummary) -> CommandResult:
        mode = cmd.arguments[1] if len(cmd.arguments) > 1 else "quick"
        if mode not in ("quick", "full", "errors"):
            raise self.error(f"Error: Unknown diagnostic mode '{mode}'. Use quick, full or errors.")
        down = [(g.id, link.link_id) for g in fabric.gpus for link in g.nvlinks if not link_is_up(g, link)]
        lines = [f"Fabric Manager Diagnostics ({mode})", RULE]
        if mode in ("quick", "full"):
            lines.append(f"  NVSwitch detection ........ {len(fabric.switches)} found")
            lines.append(f"  NVLink training ........... {fabric.active_links}/{fabric.total_links} links trained")
        if mode == "full":
            for switch in fabric.switches:
                state = "PASS" if switch.active == switch.total and switch.errors == 0 else "FAIL"
                lines.append(f"  NVSwitch {switch.switch_id} port check ..... {state}")
        if mode in ("errors", "full"):
            lines.append("  Link errors:")
            errored = [
                (g.id, link) for g in fabric.gpus for link in g.nvlinks
                if link_errors(link)
            ]
            if not errored:
                lines.append("    None")
            for gpu_id, link in errored:
                lines.append(
                    f"    GPU {gpu_id} Link {link.link_id}: TX {link.tx_errors}, RX {link.rx_errors}, "
                    f"Replay {link.replay_errors}"
                )
        for gpu_id, link_id in down:
            lines.append(f"  WARNING: GPU {gpu_id} NVLink {link_id} is down")
        lines.append("")
        lines.append(f"Result: {'PASS' if fabric.healthy else 'DEGRADED'}")
        return CommandResult("\n".join(lines) + "\n", 0 if fabric.healthy else 1)

    def _config(self, node: DGXNode) -> str:
        lines = [
            f"# {CONFIG_FILE}",
            "LOG_LEVEL=4",
            "LOG_FILE_NAME=/var/log/fabricmanager.log",
            "DAEMONIZE=1",
            "BIND_INTERFACE_IP=127.0.0.1",
            "STARTING_TCP_PORT=16000",
            "FABRIC_MODE=0",
            "FABRIC_MODE_RESTART=0",
            "STATE_FILE_NAME=/var/tmp/fabricmanager.state",
            "FM_STAY_RESIDENT_ON_FAILURES=0",
            "ACCESS_LINK_FAILURE_MODE=0",
            "TRUNK_LINK_FAILURE_MODE=0",
            "NVSWITCH_FAILURE_MODE=0",
            "ABORT_CUDA_JOBS_ON_FM_EXIT=1",
            f"TOPOLOGY_FILE_PATH=/usr/share/nvidia/nvswitch  # {node.system_type}",
        ]
        return "\n".join(lines) + "\n"

    def _topo(self, node: DGXNode, fabric: FabricSummary) -> str:
        lines = [f"NVLink Fabric Map - {node.hostname}", RULE]
        header = "        " + "".join(f"SW{s.switch_id:<4}" for s in fabric.switches)
        lines.append(header)
        count = max(1, len(fabric.switches))
        for gpu in fabric.gpus:
            cells = []
            for switch in fabric.switches:
                links = [link for link in gpu.nvlinks if link.link_id % count == switch.switch_id]
                active = sum(1 for link in links if link_is_up(gpu, link))
                cells.append(f"{active}/{len(links):<4}")
            lines.append(f"GPU{gpu.id:<5}" + "".join(cells))
        lines.append("")
        lines.append("Cell = active/total NVLinks between the GPU and the switch")
        return "\n".join(lines) + "\n"
