"""Base Command Manager simulator.

``bcm``, ``bcm-node``, ``crm`` and ``cmsh`` present the management view of
the SuperPOD: node inventory, head-node high availability, provisioning jobs
and a pod validation that reports GPU health by derived status.
"""

from __future__ import annotations

from dataclasses import dataclass

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.domain.entities.cluster import Cluster
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.node import DGXNode, PortState
from superpod_sim.domain.services.fabric import node_fabric
from superpod_sim.domain.value_objects.health_rules import HealthStatus

BCM_VERSION = "10.3.0"
RULE = "=" * 70
USAGE = {"ha": "status", "job": "list | logs <id>", "validate": "pod"}


@dataclass(frozen=True)
class DeploymentJob:
    """A provisioning job run by the head node."""
    job_id: int
    kind: str
    status: str
    start_time: str
    description: str
    log: tuple[str, ...] = ()


DEPLOYMENT_JOBS = (
    DeploymentJob(
        1, "discovery", "completed", "2024-01-10 08:00:00", "Initial node discovery",
        (
            "[2024-01-10 08:00:00] Starting node discovery...",
            "[2024-01-10 08:00:05] Scanning network for DGX nodes...",
            "[2024-01-10 08:00:15] Found {nodes} DGX nodes",
            "[2024-01-10 08:00:20] Collecting hardware inventory...",
            "[2024-01-10 08:01:00] Discovery completed successfully",
        ),
    ),
    DeploymentJob(
        2, "provisioning", "completed", "2024-01-10 08:30:00", "Deploy DGX OS image",
        (
            "[2024-01-10 08:30:00] Preparing software image dgx-os...",
            "[2024-01-10 08:45:00] Image synchronised to {nodes} nodes",
            "[2024-01-10 09:10:00] Provisioning completed successfully",
        ),
    ),
    DeploymentJob(
        3, "firmware-update", "completed", "2024-01-10 09:30:00", "GPU and NIC firmware update",
        (
            "[2024-01-10 09:30:00] Starting firmware update...",
            "[2024-01-10 09:30:10] Checking current firmware versions...",
            "[2024-01-10 09:35:00] Applying GPU firmware updates...",
            "[2024-01-10 09:45:00] Update completed successfully",
        ),
    ),
    DeploymentJob(
        4, "health-check", "completed", "2024-01-10 10:00:00", "Post-deployment burn-in",
        (
            "[2024-01-10 10:00:00] Running DCGM level 3 diagnostics...",
            "[2024-01-10 11:00:00] Burn-in completed successfully",
        ),
    ),
)


class BCMSimulator(BaseSimulator):
    """Simulates Base Command Manager and its HA tooling."""

    TOOLS = {
        "bcm": ToolInfo(
            name="bcm",
            description="Base Command Manager",
            version=BCM_VERSION,
            usage="bcm <command> [args]",
            commands=(
                ("status", "Show cluster summary"),
                ("ha status", "Show head node high availability status"),
                ("job list", "List deployment jobs"),
                ("job logs <id>", "Show deployment job logs"),
                ("validate pod", "Validate SuperPOD configuration"),
            ),
            version_text=f"Base Command Manager version {BCM_VERSION}",
        ),
        "bcm-node": ToolInfo(
            name="bcm-node",
            description="Base Command Manager node inventory",
            version=BCM_VERSION,
            usage="bcm-node list | show <node>",
            commands=(("list", "List all cluster nodes"), ("show <node>", "Show node details")),
        ),
        "crm": ToolInfo(
            name="crm",
            description="Pacemaker cluster resource manager",
            version="4.3.1",
            usage="crm status",
            commands=(("status", "Show cluster status"),),
            version_text="crm 4.3.1",
        ),
        "cmsh": ToolInfo(
            name="cmsh",
            description="Cluster Management Shell",
            version=BCM_VERSION,
            usage='cmsh -c "<mode> <command>"',
            commands=(
                ("device list", "List devices"),
                ("device status", "Show device status"),
                ("device show <node>", "Show one device"),
                ("partition list", "List partitions"),
                ("category list", "List node categories"),
            ),
        ),
    }

    # -------- bcm --------

    def execute_bcm(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        args = cmd.arguments
        verb = args[0] if args else None
        target = args[1] if len(args) > 1 else None
        cluster = self.snapshot()

        if verb is None or verb == "help":
            return self.help(self.TOOLS["bcm"])
        if verb == "status":
            return self.success(self._status(cluster))
        if verb == "ha" and target == "status":
            return self.success(self._ha_status(cluster))
        if verb == "job" and target == "list":
            return self.success(self._job_list())
        if verb == "job" and target == "logs":
            return self._job_logs(cluster, args[2] if len(args) > 2 else None)
        if verb == "validate" and target == "pod":
            return self._validate(cluster)
        if verb in USAGE:
            raise self.error(f"Usage: bcm {verb} {USAGE[verb]}")
        raise self.error(f'bcm: unknown command "{verb}"\nType "bcm --help" for help.')

    def _status(self, cluster: Cluster) -> str:
        gpus = [g for n in cluster.nodes for g in n.gpus]
        healthy = sum(1 for n in cluster.nodes for g in n.gpus if self.health_of(n, g) == HealthStatus.OK)
        nodes_up = sum(1 for n in cluster.nodes if n.bmc.power_state == "On")
        lines = [
            f"Base Command Manager {BCM_VERSION} - {cluster.name}",
            RULE,
            f"Head nodes:       {cluster.bcm_ha.primary} (active), {cluster.bcm_ha.secondary} (passive)",
            f"HA state:         {cluster.bcm_ha.state if cluster.bcm_ha.enabled else 'Disabled'}",
            f"Compute nodes:    {len(cluster.nodes)} ({nodes_up} powered on)",
            f"GPUs:             {len(gpus)} ({healthy} healthy)",
            f"Fabric topology:  {cluster.fabric_topology.value}",
            f"Workload manager: Slurm {cluster.slurm_config.version}",
            "",
            "Node health:",
        ]
        for status in HealthStatus:
            count = sum(1 for n in cluster.nodes if n.health_status == status)
            lines.append(f"  {status.value:<10} {count}")
        return "\n".join(lines) + "\n"

    def _ha_status(self, cluster: Cluster) -> str:
        ha = cluster.bcm_ha
        lines = [
            "BCM High Availability Status",
            RULE,
            "HA Configuration:",
            "-----------------",
            f"Status:           {'Enabled' if ha.enabled else 'Disabled'}",
            f"Primary Node:     {ha.primary}",
            f"Secondary Node:   {ha.secondary}",
            f"Current State:    {ha.state}",
            "",
            "Shared Resources:",
            "-----------------",
            "Shared Storage:   /cm_shared (NFS)",
            "Home Directory:   /home (NFS)",
            "Virtual IP:       10.0.0.100",
            f"Heartbeat:        {'Healthy' if ha.enabled else 'Not configured'}",
            "",
            "Last Failover:    Never",
        ]
        return "\n".join(lines) + "\n"

    def _job_list(self) -> str:
        headers = ["Job ID", "Type", "Status", "Start Time", "Description"]
        rows = [
            [str(j.job_id), j.kind, j.status, j.start_time, j.description] for j in DEPLOYMENT_JOBS
        ]
        return f"BCM Deployment Jobs\n{RULE}\n{self.format_columns(headers, rows, gap=3)}\n"

    def _job_logs(self, cluster: Cluster, job_id: str | None) -> CommandResult:
        if job_id is None:
            raise self.missing_argument("bcm job logs", "job id")
        job = next((j for j in DEPLOYMENT_JOBS if str(j.job_id) == job_id), None)
        if job is None:
            raise self.error(f"Error: Job {job_id} not found")
        lines = [
            f"=== Job Logs for Job #{job.job_id} ===",
            f"Type: {job.kind}",
            f"Status: {job.status}",
            f"Started: {job.start_time}",
            "",
            "--- Log Output ---",
        ]
        lines.extend(entry.format(nodes=len(cluster.nodes)) for entry in job.log)
        lines.append("--- End of Logs ---")
        return self.success("\n".join(lines) + "\n")

    def _validate(self, cluster: Cluster) -> CommandResult:
        nodes = cluster.nodes
        total_gpus = sum(len(n.gpus) for n in nodes)
        detected = sum(node_fabric(n).detected_gpus for n in nodes)
        healthy = sum(1 for n in nodes for g in n.gpus if self.health_of(n, g) == HealthStatus.OK)
        ports = [p for n in nodes for h in n.hcas for p in h.ports]
        active_ports = sum(1 for p in ports if p.state == PortState.ACTIVE)
        firmware = {h.firmware_version for n in nodes for h in n.hcas}
        drivers = {n.nvidia_driver_version for n in nodes}

        checks = [
            (True, f"Node Count: {len(nodes)} nodes detected"),
            (detected == total_gpus, f"GPU Count: {detected}/{total_gpus} GPUs detected"),
            (active_ports == len(ports), f"InfiniBand Fabric: {active_ports}/{len(ports)} HCA ports active"),
            (len(firmware) <= 1 and len(drivers) <= 1, "Firmware Versions: "
             + ("All nodes running compatible firmware" if len(firmware) <= 1 and len(drivers) <= 1
                else "Mixed firmware or driver versions detected")),
            (True, "Shared Storage: /cm_shared mounted on all nodes"),
            (True, "Slurm: Controller responding, all nodes registered"),
            (healthy == total_gpus, f"GPU Health: {healthy}/{total_gpus} GPUs healthy"),
        ]
        lines = ["SuperPOD Validation", RULE, "Running validation checks...", ""]
        lines.extend(f"[{'PASS' if ok else 'WARN'}] {text}" for ok, text in checks)
        lines.append("")
        passed = all(ok for ok, _ in checks)
        if passed:
            lines.append("SuperPOD validation passed!")
        else:
            lines.append("SuperPOD validation completed with warnings. Review the items above.")
        return CommandResult("\n".join(lines) + "\n", 0 if passed else 1)

    # -------- bcm-node --------

    def execute_bcm_node(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        args = cmd.arguments
        verb = args[0] if args else "list"
        cluster = self.snapshot()
        if verb == "list":
            return self.success(self._node_list(cluster))
        if verb == "show":
            if len(args) < 2:
                raise self.error("Usage: bcm-node show <node-id>")
            node = cluster.find_node(args[1])
            if node is None:
                raise self.error(f"Error: Node '{args[1]}' not found in cluster")
            return self.success(self._node_details(node))
        raise self.error("Usage: bcm-node list | show <node-id>")

    def _node_list(self, cluster: Cluster) -> str:
        headers = ["Node ID", "Hostname", "Type", "IP Address", "GPUs", "Health", "Slurm"]
        rows = [
            [
                n.id, n.hostname, n.system_type, n.management_ip,
                str(node_fabric(n).detected_gpus), n.health_status.value, n.slurm_state.value,
            ]
            for n in cluster.nodes
        ]
        total_gpus = sum(node_fabric(n).detected_gpus for n in cluster.nodes)
        return (
            f"BCM Node Inventory\n{RULE}\n{self.format_columns(headers, rows, gap=2)}\n\n"
            f"Total Nodes: {len(cluster.nodes)}\nTotal GPUs:  {total_gpus}\n"
        )

    def _node_details(self, node: DGXNode) -> str:
        lines = [
            f"Node Details: {node.id}",
            RULE,
            "General Information:",
            f"  Node ID:          {node.id}",
            f"  Hostname:         {node.hostname}",
            f"  System Type:      {node.system_type}",
            f"  Health Status:    {node.health_status.value}",
            f"  OS Version:       {node.os_version}",
            f"  Kernel:           {node.kernel_version}",
            "",
            "Hardware Configuration:",
            f"  CPU Model:        {node.cpu_model}",
            f"  CPU Cores:        {node.total_cores}",
            f"  Total RAM:        {node.ram_total_gb} GB",
            f"  Used RAM:         {node.ram_used_gb} GB",
            f"  GPU Count:        {node_fabric(node).detected_gpus}",
            "",
            "Software Versions:",
            f"  NVIDIA Driver:    {node.nvidia_driver_version}",
            f"  CUDA Version:     {node.cuda_version}",
            "",
            "Slurm Status:",
            f"  State:            {node.slurm_state.value}",
        ]
        if node.slurm_reason:
            lines.append(f"  Reason:           {node.slurm_reason}")
        lines.append("")
        lines.append("GPU Summary:")
        for gpu in node.gpus:
            status = self.health_of(node, gpu)
            lines.append(
                f"  GPU {gpu.id}: [{status.value}] {gpu.name} - "
                f"{round(gpu.utilization)}% util, {round(gpu.temperature)}C"
            )
        lines.append("")
        lines.append("InfiniBand HCAs:")
        if not node.hcas:
            lines.append("  No HCAs detected")
        for hca in node.hcas:
            lines.append(f"  HCA {hca.id}: {hca.ca_type} - {len(hca.ports)} port(s)")
        return "\n".join(lines) + "\n"

    # -------- crm --------

    def execute_crm(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        verb = cmd.subcommand
        if verb not in ("status", None):
            raise self.error("Usage: crm status")
        cluster = self.snapshot()
        ha = cluster.bcm_ha
        if not ha.enabled:
            raise self.error("crm: cluster is not running\nError: No cluster nodes configured")
        stamp = self._clock().strftime("%Y-%m-%dT%H:%M:%SZ")
        lines = [
            "Cluster name: bcm-ha",
            "Cluster Summary:",
            "  * Stack: corosync",
            f"  * Current DC: {ha.primary} (version 2.1.2-4) - partition with quorum",
            f"  * Last updated: {stamp}",
            "  * 2 nodes configured",
            "  * 4 resource instances configured",
            "",
            "Node List:",
            f"  * Online: [ {ha.primary} {ha.secondary} ]",
            "",
            "Active Resources:",
        ]
        for name, agent in (
            ("virtual-ip", "ocf::heartbeat:IPaddr2"),
            ("bcm-manager", "systemd:cmd"),
            ("nfs-server", "systemd:nfs-server"),
            ("drbd-master", "ocf::linbit:drbd"),
        ):
            lines.append(f"  * {name:<13} ({agent}):{' ' * max(1, 24 - len(agent))}Started {ha.primary}")
        return self.success("\n".join(lines) + "\n")

    # -------- cmsh --------

    def execute_cmsh(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        script = cmd.get_flag_string("c")
        if script is None:
            return self.success(
                f"Cluster Management Shell {BCM_VERSION}\n"
                'Interactive mode is not available. Use cmsh -c "<mode> <command>".\n'
            )
        cluster = self.snapshot()
        outputs = []
        for statement in filter(None, (s.strip() for s in script.split(";"))):
            words = statement.split()
            mode, verb = words[0], words[1] if len(words) > 1 else "list"
            if mode == "device":
                outputs.append(self._cmsh_device(cluster, verb, words[2:]))
            elif mode == "partition" and verb == "list":
                rows = [["base", cluster.name, f"{cluster.bcm_ha.primary},{cluster.bcm_ha.secondary}"]]
                outputs.append(self.format_columns(["Name (key)", "Cluster name", "Head nodes"], rows, gap=4))
            elif mode == "category" and verb == "list":
                rows = [["dgx", "dgx-os", str(len(cluster.nodes))], ["default", "default-image", "0"]]
                outputs.append(self.format_columns(["Name (key)", "Software image", "Nodes"], rows, gap=4))
            else:
                raise self.error(f"cmsh: unknown command: {statement}")
        return self.success("\n".join(outputs) + "\n")

    def _cmsh_device(self, cluster: Cluster, verb: str, rest: list[str]) -> str:
        if verb == "list":
            rows = [["HeadNode", cluster.bcm_ha.primary, "", "", "UP"]]
            rows.extend(
                [
                    "PhysicalNode", n.id, n.bmc.mac_address, "dgx",
                    "UP" if n.bmc.power_state == "On" else "DOWN",
                ]
                for n in cluster.nodes
            )
            return self.format_columns(["Type", "Hostname (key)", "MAC", "Category", "Status"], rows, gap=3)
        if verb == "status":
            lines = []
            for node in cluster.nodes:
                health = "" if node.health_status == HealthStatus.OK else f", health {node.health_status.value}"
                up = "UP" if node.bmc.power_state == "On" else "DOWN"
                lines.append(f"{node.id:<18}[   {up:<4}]  state {node.slurm_state.value}{health}")
            return "\n".join(lines)
        if verb in ("show", "use") and rest:
            node = cluster.find_node(rest[0])
            if node is None:
                raise self.error(f"cmsh: device {rest[0]} not found")
            fields = [
                ("Hostname", node.hostname),
                ("Category", "dgx"),
                ("IP", node.management_ip),
                ("BMC IP", node.bmc.ip_address),
                ("MAC", node.bmc.mac_address),
                ("Software image", "dgx-os"),
                ("Health", node.health_status.value),
                ("GPUs", str(node_fabric(node).detected_gpus)),
            ]
            return "\n".join(f"{k:<20}{v}" for k, v in fields)
        raise self.error(f"cmsh: unknown command: device {verb}")
