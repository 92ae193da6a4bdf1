"""Slurm workload manager simulator.

Serves ``sinfo``, ``squeue``, ``scontrol``, ``sbatch``, ``srun``, ``scancel``
and ``sacct`` from the cluster snapshot. Node scheduler state is whatever an
operator set with ``scontrol update``; hardware faults show up in the other
tools but never drain a node here.

References:
    - Slurm 23.02 man pages (sinfo, squeue, scontrol, sbatch, sacct)
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.domain.entities.cluster import Cluster, JobState, SlurmJob
from superpod_sim.domain.entities.command import (
    CommandContext,
    CommandResult,
    ParsedCommand,
    StateAction,
    StateChange,
)
from superpod_sim.domain.entities.node import DGXNode, SlurmState
from superpod_sim.domain.services.health import health_findings
from superpod_sim.domain.services.suggestions import did_you_mean
from superpod_sim.domain.value_objects.health_rules import HealthStatus

SLURM_VERSION = "slurm 23.02.6"
THREADS_PER_CORE = 2

UPDATE_STATES = {
    "idle": SlurmState.IDLE,
    "resume": SlurmState.IDLE,
    "drain": SlurmState.DRAIN,
    "down": SlurmState.DOWN,
}

STATE_ALIASES = {
    "idle": SlurmState.IDLE,
    "alloc": SlurmState.ALLOC,
    "allocated": SlurmState.ALLOC,
    "mix": SlurmState.MIX,
    "mixed": SlurmState.MIX,
    "drain": SlurmState.DRAIN,
    "drained": SlurmState.DRAIN,
    "draining": SlurmState.DRAIN,
    "down": SlurmState.DOWN,
}

JOB_STATE_ALIASES = {
    "pd": JobState.PENDING,
    "pending": JobState.PENDING,
    "r": JobState.RUNNING,
    "running": JobState.RUNNING,
    "cd": JobState.COMPLETED,
    "completed": JobState.COMPLETED,
    "ca": JobState.CANCELLED,
    "cancelled": JobState.CANCELLED,
    "f": JobState.FAILED,
    "failed": JobState.FAILED,
}

_HOST = re.compile(r"^(.*?)(\d+)$")
_GRES = re.compile(r"^gpu(?::[A-Za-z0-9_]+)?:(\d+)$")


def compress_hostlist(names: Iterable[str]) -> str:
    """Fold host names into Slurm's bracket notation.

    ``["dgx-00", "dgx-01", "dgx-03"]`` becomes ``dgx-[00-01,03]``.
    """
    groups: dict[tuple[str, int], list[int]] = {}
    plain: list[str] = []
    for name in names:
        match = _HOST.match(name)
        if match is None:
            plain.append(name)
            continue
        prefix, digits = match.groups()
        groups.setdefault((prefix, len(digits)), []).append(int(digits))

    parts = list(plain)
    for (prefix, width), numbers in groups.items():
        numbers = sorted(set(numbers))
        if len(numbers) == 1:
            parts.append(f"{prefix}{numbers[0]:0{width}d}")
            continue
        ranges = []
        start = prev = numbers[0]
        for n in numbers[1:] + [None]:
            if n is not None and n == prev + 1:
                prev = n
                continue
            ranges.append(f"{start:0{width}d}" if start == prev else f"{start:0{width}d}-{prev:0{width}d}")
            if n is not None:
                start = prev = n
        parts.append(f"{prefix}[{','.join(ranges)}]")
    return ",".join(parts)


def format_elapsed(seconds: int) -> str:
    """Elapsed time as squeue prints it (``M:SS``, ``H:MM:SS`` or ``D-HH:MM:SS``)."""
    seconds = max(0, int(seconds))
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    if days:
        return f"{days}-{hours:02d}:{minutes:02d}:{secs:02d}"
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


def _parse_positive(value: object, default: int) -> Optional[int]:
    if value is None:
        return default
    text = value if isinstance(value, str) else ""
    if not text.isdigit() or int(text) < 1:
        return None
    return int(text)


class SlurmSimulator(BaseSimulator):
    """Simulates the Slurm client commands."""

    TOOLS = {
        name: ToolInfo(
            name=name,
            description=description,
            version=SLURM_VERSION,
            usage=usage,
            version_text=SLURM_VERSION,
        )
        for name, description, usage in (
            ("sinfo", "view information about Slurm nodes and partitions",
             "sinfo [-N] [-l] [-R] [-s] [-h] [-p PARTITION] [-t STATES]"),
            ("squeue", "view information about jobs in the scheduling queue",
             "squeue [-u USER] [-j JOBIDS] [-t STATES] [-p PARTITION] [-l] [-h]"),
            ("scontrol", "view or modify Slurm configuration and state",
             "scontrol show node|job|partition|config [NAME] | scontrol update NodeName=N State=S [Reason=R]"),
            ("sbatch", "submit a batch script to Slurm",
             "sbatch [-J NAME] [-N NODES] [-p PARTITION] [--gres=gpu:N] [--gpus=N] [--exclusive] script"),
            ("srun", "run parallel jobs",
             "srun [-N NODES] [-p PARTITION] [--gpus=N] command [args...]"),
            ("scancel", "signal or cancel jobs", "scancel [-u USER] job_id..."),
            ("sacct", "display accounting data for jobs", "sacct [-j JOBIDS] [-u USER] [-n] [-P]"),
        )
    }

    # -------- sinfo --------

    def execute_sinfo(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        partitions = self._partitions(cluster, cmd.get_flag_string("p", "partition"))
        nodes = self._filter_states(cluster.nodes, cmd.get_flag_string("t", "states"), "sinfo")
        header = not cmd.has_flag("h", "noheader")

        if cmd.has_flag("R", "list-reasons"):
            return self.success(self._sinfo_reasons(nodes, header))
        if cmd.has_flag("N", "Node"):
            return self.success(self._sinfo_nodes(cmd, nodes, partitions, header))
        if cmd.has_flag("s", "summarize"):
            rows = []
            counts = self._state_counts(nodes)
            for partition in partitions:
                rows.append([
                    self._partition_label(cluster, partition), "up", "infinite",
                    f"{counts['A']}/{counts['I']}/{counts['O']}/{len(nodes)}",
                    compress_hostlist(n.id for n in nodes),
                ])
            headers = ["PARTITION", "AVAIL", "TIMELIMIT", "NODES(A/I/O/T)", "NODELIST"]
            return self.success(self.format_columns(headers, rows, header=header) + "\n")

        rows = []
        for partition in partitions:
            for state, members in self._group_by_state(nodes):
                rows.append([
                    self._partition_label(cluster, partition), "up", "infinite",
                    str(len(members)), state.value, compress_hostlist(n.id for n in members),
                ])
        headers = ["PARTITION", "AVAIL", "TIMELIMIT", "NODES", "STATE", "NODELIST"]
        return self.success(self.format_columns(headers, rows, header=header) + "\n")

    def _sinfo_nodes(
        self, cmd: ParsedCommand, nodes: list[DGXNode], partitions: list[str], header: bool
    ) -> str:
        long = cmd.has_flag("l", "long")
        rows = []
        for node in nodes:
            for partition in partitions:
                if long:
                    rows.append([
                        node.id, "1", partition, node.slurm_state.value,
                        str(node.total_cores * THREADS_PER_CORE),
                        f"{node.cpu_count}:{node.cores_per_socket}:{THREADS_PER_CORE}",
                        str(node.ram_total_gb * 1024), "0", "1", "dgx", node.slurm_reason or "none",
                    ])
                else:
                    rows.append([node.id, "1", partition, node.slurm_state.value])
        if long:
            headers = [
                "NODELIST", "NODES", "PARTITION", "STATE", "CPUS", "S:C:T", "MEMORY",
                "TMP_DISK", "WEIGHT", "AVAIL_FE", "REASON",
            ]
        else:
            headers = ["NODELIST", "NODES", "PARTITION", "STATE"]
        table = self.format_columns(headers, rows, header=header)
        if long and header:
            return f"{self.now()}\n{table}\n"
        return table + "\n"

    def _sinfo_reasons(self, nodes: list[DGXNode], header: bool) -> str:
        stamp = self._clock().strftime("%Y-%m-%dT%H:%M:%S")
        by_reason: dict[str, list[str]] = {}
        for node in nodes:
            if node.slurm_state in (SlurmState.DRAIN, SlurmState.DOWN):
                by_reason.setdefault(node.slurm_reason or "Not responding", []).append(node.id)
        rows = [
            [reason, "root", stamp, compress_hostlist(ids)] for reason, ids in by_reason.items()
        ]
        headers = ["REASON", "USER", "TIMESTAMP", "NODELIST"]
        table = self.format_columns(headers, rows, header=header)
        return table + "\n" if table else ""

    # -------- squeue --------

    def execute_squeue(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        jobs = list(cluster.jobs)

        states = cmd.get_flag_string("t", "states")
        job_ids = cmd.get_flag_string("j", "jobs")
        if states:
            wanted_states = set()
            for token in states.lower().split(","):
                if token == "all":
                    wanted_states.update(JobState)
                elif token in JOB_STATE_ALIASES:
                    wanted_states.add(JOB_STATE_ALIASES[token])
                else:
                    raise self.error(f"squeue: error: Invalid job state specified: {token}")
            jobs = [j for j in jobs if j.state in wanted_states]
        elif not job_ids:
            jobs = [j for j in jobs if j.is_active]
        if job_ids:
            wanted = self._job_ids(job_ids, "squeue")
            jobs = [j for j in jobs if j.job_id in wanted]
        user = cmd.get_flag_string("u", "user")
        if user:
            users = set(user.split(","))
            jobs = [j for j in jobs if j.user in users]
        partition = cmd.get_flag_string("p", "partition")
        if partition:
            jobs = [j for j in jobs if j.partition in partition.split(",")]

        long = cmd.has_flag("l", "long")
        rows = []
        for job in jobs:
            where = job.node_list if job.state == JobState.RUNNING else f"({job.reason})"
            if long:
                rows.append([
                    str(job.job_id), job.partition, job.name[:8], job.user, job.state.value,
                    self._elapsed(job), job.time_limit, str(job.num_nodes), where,
                ])
            else:
                rows.append([
                    str(job.job_id), job.partition, job.name[:8], job.user, job.state.short,
                    self._elapsed(job), str(job.num_nodes), where,
                ])
        if long:
            headers = ["JOBID", "PARTITION", "NAME", "USER", "STATE", "TIME", "TIME_LIMI", "NODES", "NODELIST(REASON)"]
        else:
            headers = ["JOBID", "PARTITION", "NAME", "USER", "ST", "TIME", "NODES", "NODELIST(REASON)"]
        header = not cmd.has_flag("h", "noheader")
        table = self.format_columns(headers, rows, gap=2, header=header)
        if long and header:
            table = f"{self.now()}\n{table}"
        return self.success(table + "\n" if table else "")

    # -------- scontrol --------

    def execute_scontrol(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        verb = cmd.subcommand
        if verb == "show":
            return self._scontrol_show(cmd)
        if verb == "update":
            return self._scontrol_update(cmd)
        if verb == "ping":
            cluster = self.snapshot()
            return self.success(f"Slurmctld(primary) at {cluster.slurm_config.control_machine} is UP\n")
        if verb is None:
            raise self.error("Usage: scontrol <show|update|ping> [entity] [options]")
        hint = did_you_mean(verb, ("show", "update", "ping"))
        raise self.error(
            f"Invalid command: {verb}\n"
            + (f"{hint}\n" if hint else "")
            + "Usage: scontrol <show|update|ping> [entity] [options]"
        )

    def _scontrol_show(self, cmd: ParsedCommand) -> CommandResult:
        cluster = self.snapshot()
        args = cmd.arguments
        what = args[1].lower() if len(args) > 1 else None
        name = args[2] if len(args) > 2 else None

        if what in ("node", "nodes"):
            if name is not None:
                node = cluster.find_node(name)
                if node is None:
                    raise self.error(f"Node {name} not found")
                nodes = [node]
            else:
                nodes = cluster.nodes
            return self.success("\n".join(self._node_record(cluster, n) for n in nodes))
        if what in ("job", "jobs"):
            if name is not None:
                if not name.isdigit() or cluster.find_job(int(name)) is None:
                    raise self.error("slurm_load_jobs error: Invalid job id specified")
                jobs = [cluster.find_job(int(name))]
            else:
                jobs = cluster.jobs
            if not jobs:
                return self.success("No jobs in the system\n")
            return self.success("\n".join(self._job_record(cluster, j) for j in jobs))
        if what in ("partition", "partitions"):
            partitions = self._partitions(cluster, name)
            return self.success("\n".join(self._partition_record(cluster, p) for p in partitions))
        if what in ("config", "configuration"):
            return self.success(self._config_record(cluster))
        raise self.error(
            f"invalid entity: {what or ''} for keyword: show\n"
            "Usage: scontrol show node|job|partition|config [NAME]"
        )

    def _scontrol_update(self, cmd: ParsedCommand) -> CommandResult:
        settings = {}
        for token in cmd.positional_args:
            if "=" in token:
                key, value = token.split("=", 1)
                settings[key.lower()] = value.strip('"')

        node_name = settings.get("nodename")
        if not node_name:
            raise self.error("Error: NodeName not specified")
        cluster = self.snapshot()
        node = cluster.find_node(node_name)
        if node is None:
            raise self.error("slurm_update error: Invalid node name specified")

        state_text = settings.get("state")
        reason = settings.get("reason")
        if state_text is None:
            if reason is None:
                raise self.error("Error: State or Reason must be specified")
            return self.success(
                f"Node {node.id} updated successfully\n",
                [StateChange(StateAction.SET_SLURM_STATE, node.id,
                             params={"state": node.slurm_state.value, "reason": reason})],
            )
        state = UPDATE_STATES.get(state_text.lower())
        if state is None:
            raise self.error(
                f'Error: Invalid state "{state_text}". Valid: {", ".join(UPDATE_STATES)}'
            )
        if state in (SlurmState.DRAIN, SlurmState.DOWN) and not reason:
            raise self.error("You must specify a reason when DOWNING or DRAINING a node. Request denied")
        return self.success(
            f"Node {node.id} updated successfully\n",
            [StateChange(StateAction.SET_SLURM_STATE, node.id,
                         params={"state": state.value, "reason": reason})],
        )

    def _node_record(self, cluster: Cluster, node: DGXNode) -> str:
        cpus = node.total_cores * THREADS_PER_CORE
        allocated = [g for g in node.gpus if g.allocated_job_id is not None]
        alloc_cpus = len(allocated) * 16
        memory_mb = node.ram_total_gb * 1024
        gpu_type = "h100" if "H100" in node.system_type else "a100"
        state = {
            SlurmState.IDLE: "IDLE",
            SlurmState.ALLOC: "ALLOCATED",
            SlurmState.MIX: "MIXED",
            SlurmState.DRAIN: "ALLOCATED+DRAIN" if allocated else "IDLE+DRAIN",
            SlurmState.DOWN: "DOWN",
        }[node.slurm_state]
        lines = [
            f"NodeName={node.id} Arch=x86_64 CoresPerSocket={node.cores_per_socket}",
            f"   CPUAlloc={alloc_cpus} CPUEfctv={cpus} CPUTot={cpus} CPULoad=0.00",
            f"   AvailableFeatures=dgx,{gpu_type}",
            f"   ActiveFeatures=dgx,{gpu_type}",
            f"   Gres=gpu:{gpu_type}:{len(node.gpus)}",
            f"   NodeAddr={node.hostname} NodeHostName={node.hostname} Version={cluster.slurm_config.version}",
            f"   OS=Linux {node.kernel_version} #1 SMP {node.os_version}",
            f"   RealMemory={memory_mb} AllocMem=0 FreeMem={(node.ram_total_gb - node.ram_used_gb) * 1024} "
            f"Sockets={node.cpu_count} Boards=1",
            f"   State={state} ThreadsPerCore={THREADS_PER_CORE} TmpDisk=0 Weight=1 Owner=N/A MCS_label=N/A",
            f"   Partitions={','.join(cluster.slurm_config.partitions)}",
            f"   CfgTRES=cpu={cpus},mem={memory_mb}M,billing={cpus},gres/gpu={len(node.gpus)}",
            "   AllocTRES=" + (f"cpu={alloc_cpus},gres/gpu={len(allocated)}" if allocated else ""),
        ]
        if node.slurm_reason:
            stamp = self._clock().strftime("%Y-%m-%dT%H:%M:%S")
            lines.append(f"   Reason={node.slurm_reason} [root@{stamp}]")
        return "\n".join(lines) + "\n"

    def _job_record(self, cluster: Cluster, job: SlurmJob) -> str:
        gres = f"gres/gpu={job.gpus * job.num_nodes}"
        lines = [
            f"JobId={job.job_id} JobName={job.name}",
            f"   UserId={job.user}(0) GroupId={job.user}(0)",
            f"   Priority=4294901757 Account={job.account} QOS={job.qos}",
            f"   JobState={job.state.value} Reason={job.reason} Dependency=(null)",
            f"   RunTime={self._elapsed(job)} TimeLimit={job.time_limit}",
            f"   SubmitTime={job.submit_time or 'Unknown'} StartTime={job.start_time or 'Unknown'} "
            f"EndTime={job.end_time or 'Unknown'}",
            f"   Partition={job.partition} AllocNode:Sid={cluster.slurm_config.control_machine}:1",
            f"   NodeList={job.node_list or '(null)'}",
            f"   NumNodes={job.num_nodes} NumCPUs={job.cpus} NumTasks={job.num_nodes} CPUs/Task=1",
            f"   TRES=cpu={job.cpus},mem={job.memory},node={job.num_nodes},billing={job.cpus},{gres}",
            f"   OverSubscribe={'NO' if job.exclusive else 'OK'} Contiguous=0",
            f"   Command={job.command or '(null)'}",
        ]
        return "\n".join(lines) + "\n"

    def _partition_record(self, cluster: Cluster, partition: str) -> str:
        nodes = cluster.nodes
        cpus = sum(n.total_cores * THREADS_PER_CORE for n in nodes)
        memory = sum(n.ram_total_gb * 1024 for n in nodes)
        gpus = sum(len(n.gpus) for n in nodes)
        default = "YES" if partition == cluster.slurm_config.partitions[0] else "NO"
        lines = [
            f"PartitionName={partition}",
            "   AllowGroups=ALL AllowAccounts=ALL AllowQos=ALL",
            f"   AllocNodes=ALL Default={default} QoS=N/A",
            "   DefaultTime=NONE DisableRootJobs=NO ExclusiveUser=NO GraceTime=0 Hidden=NO",
            "   MaxNodes=UNLIMITED MaxTime=UNLIMITED MinNodes=0 LLN=NO MaxCPUsPerNode=UNLIMITED",
            f"   Nodes={compress_hostlist(n.id for n in nodes)}",
            "   PriorityJobFactor=1 PriorityTier=1 RootOnly=NO ReqResv=NO OverSubscribe=NO",
            f"   State=UP TotalCPUs={cpus} TotalNodes={len(nodes)} SelectTypeParameters=NONE",
            "   DefMemPerCPU=1024 MaxMemPerNode=UNLIMITED",
            f"   TRES=cpu={cpus},mem={memory}M,node={len(nodes)},billing={cpus},gres/gpu={gpus}",
        ]
        return "\n".join(lines) + "\n"

    def _config_record(self, cluster: Cluster) -> str:
        config = cluster.slurm_config
        stamp = self._clock().strftime("%Y-%m-%dT%H:%M:%S")
        settings = [
            ("AccountingStorageType", "accounting_storage/slurmdbd"),
            ("ClusterName", config.cluster_name),
            ("ControlMachine", config.control_machine),
            ("DefMemPerCPU", "1024"),
            ("GresTypes", "gpu"),
            ("MaxJobCount", "10000"),
            ("PriorityType", "priority/multifactor"),
            ("ProctrackType", "proctrack/cgroup"),
            ("SchedulerType", "sched/backfill"),
            ("SelectType", "select/cons_tres"),
            ("SelectTypeParameters", "CR_Core_Memory"),
            ("SlurmUser", "slurm"),
            ("SLURM_CONF", "/etc/slurm/slurm.conf"),
            ("SLURM_VERSION", config.version),
            ("StateSaveLocation", "/var/spool/slurmctld"),
            ("TaskPlugin", "task/affinity,task/cgroup"),
        ]
        lines = [f"Configuration data as of {stamp}"]
        lines.extend(f"{key:<24} = {value}" for key, value in settings)
        return "\n".join(lines) + "\n"

    # -------- sbatch / srun --------

    def execute_sbatch(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        script = cmd.arguments[0] if cmd.arguments else None
        wrap = cmd.get_flag_string("wrap")
        if script is None and wrap is None:
            raise self.error("sbatch: error: Batch script is empty!")
        num_nodes, gpus, partition = self._job_request(cmd, cluster, "sbatch")

        name = cmd.get_flag_string("J", "job-name") or (script.rsplit("/", 1)[-1] if script else "wrap")
        job_id = cluster.next_job_id
        change = StateChange(
            StateAction.SUBMIT_JOB,
            params={
                "name": name,
                "num_nodes": num_nodes,
                "gpus": gpus,
                "partition": partition,
                "user": ctx.environment.get("USER", "root"),
                "command": script or wrap,
                "time_limit": cmd.get_flag_string("t", "time") or "UNLIMITED",
                "exclusive": cmd.has_flag("exclusive"),
            },
        )
        if cmd.has_flag("parsable"):
            return self.success(f"{job_id}\n", [change])
        return self.success(f"Submitted batch job {job_id}\n", [change])

    def execute_srun(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        """Run a job step to completion. Steps leave no record in the queue."""
        cluster = self.snapshot()
        num_nodes, gpus, _ = self._job_request(cmd, cluster, "srun")
        command = " ".join(cmd.arguments)
        if not command:
            raise self.error("srun: fatal: No command given to execute.")
        if cmd.has_flag("pty"):
            raise self.error("srun: error: interactive pseudo-terminals are not available on this system")

        job_id = cluster.next_job_id
        candidates = [
            n for n in cluster.nodes
            if n.slurm_state == SlurmState.IDLE
            and sum(1 for g in n.visible_gpus() if g.allocated_job_id is None) >= gpus
        ]
        lines = []
        image = cmd.get_flag_string("container-image")
        if image:
            lines.append(f"srun: Pulling container image {image}...")
            lines.append("srun: Container ready")
        if len(candidates) < num_nodes:
            lines.append(f"srun: job {job_id} queued and waiting for resources")
            lines.append("srun: error: Unable to allocate resources: Requested nodes are busy")
            return CommandResult("\n".join(lines) + "\n", 1)

        lines.append(f"srun: job {job_id} queued and waiting for resources")
        lines.append(f"srun: job {job_id} has been allocated resources")
        chosen = candidates[:num_nodes]
        for node in chosen:
            free = [g for g in node.visible_gpus() if g.allocated_job_id is None][:gpus]
            for gpu in free:
                status = self.health_of(node, gpu)
                if status == HealthStatus.CRITICAL:
                    reason = health_findings(gpu, self._store.thresholds)[0].reason
                    lines.append(f"srun: error: {node.id}: task 0: GPU {gpu.id} unusable ({reason})")
                    lines.append(f"srun: error: {node.id}: task 0: Exited with exit code 1")
                    return CommandResult("\n".join(lines) + "\n", 1)
            if "nvidia-smi" in command:
                lines.append(f"{node.id}: Allocated {len(free)} GPU(s)")
                for gpu in free:
                    lines.append(f"{node.id}: GPU {gpu.id}: {gpu.name} (UUID: {gpu.uuid})")
        if "nvidia-smi" not in command:
            lines.append(f"Executing: {command} on {compress_hostlist(n.id for n in chosen)}")
            lines.append("Job completed successfully")
        return self.success("\n".join(lines) + "\n")

    def _job_request(self, cmd: ParsedCommand, cluster: Cluster, tool: str) -> tuple[int, int, str]:
        num_nodes = _parse_positive(cmd.get_flag("N", "nodes"), 1)
        if num_nodes is None:
            raise self.error(f"{tool}: error: Invalid node count specification")
        if num_nodes > len(cluster.nodes):
            raise self.error(f"{tool}: error: Batch job submission failed: Node count specification invalid")

        gpus = 0
        gres = cmd.get_flag_string("gres")
        if gres:
            match = _GRES.match(gres)
            if match is None:
                raise self.error(f"{tool}: error: Invalid generic resource (gres) specification")
            gpus = int(match.group(1))
        for names in (("gpus", "G"), ("gpus-per-node",)):
            if cmd.has_flag(*names):
                value = _parse_positive(cmd.get_flag(*names), 1)
                if value is None:
                    raise self.error(f"{tool}: error: Invalid --{names[0]} specification")
                gpus = value
        if cmd.has_flag("exclusive") and not gpus:
            gpus = max(len(n.gpus) for n in cluster.nodes)
        gpus_per_node = max((len(n.gpus) for n in cluster.nodes), default=0)
        if gpus > gpus_per_node:
            raise self.error(
                f"{tool}: error: Batch job submission failed: Requested node configuration is not available"
            )

        partition = cmd.get_flag_string("p", "partition") or cluster.slurm_config.partitions[0]
        if partition not in cluster.slurm_config.partitions:
            raise self.error(
                f"{tool}: error: invalid partition specified: {partition}\n"
                f"{tool}: error: Batch job submission failed: Invalid partition name specified"
            )
        return num_nodes, gpus, partition

    # -------- scancel / sacct --------

    def execute_scancel(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        user = cmd.get_flag_string("u", "user")
        if user:
            jobs = [j for j in cluster.jobs if j.user == user and j.is_active]
            return self.success(
                "".join(f"scancel: Terminating job {j.job_id}\n" for j in jobs) if cmd.has_flag("v") else "",
                [StateChange(StateAction.CANCEL_JOB, params={"job_id": j.job_id}) for j in jobs],
            )
        if not cmd.arguments:
            raise self.error("scancel: error: No job identification provided")

        changes = []
        lines = []
        for token in cmd.arguments:
            job_id = int(token) if token.isdigit() else None
            job = cluster.find_job(job_id) if job_id is not None else None
            if job is None or not job.is_active:
                raise self.error(f"scancel: error: Kill job error on job id {token}: Invalid job id specified")
            changes.append(StateChange(StateAction.CANCEL_JOB, params={"job_id": job.job_id}))
            lines.append(f"scancel: Terminating job {job.job_id}")
        return self.success("\n".join(lines) + "\n", changes)

    def execute_sacct(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        jobs = list(cluster.jobs)
        job_ids = cmd.get_flag_string("j", "jobs")
        if job_ids:
            wanted = self._job_ids(job_ids, "sacct")
            jobs = [j for j in jobs if j.job_id in wanted]
        user = cmd.get_flag_string("u", "user")
        if user:
            jobs = [j for j in jobs if j.user in user.split(",")]

        headers = ["JobID", "JobName", "Partition", "Account", "AllocCPUS", "State", "ExitCode"]
        rows = [
            [
                str(j.job_id), j.name[:10], j.partition, j.account, str(j.cpus), j.state.value,
                "1:0" if j.state == JobState.FAILED else "0:0",
            ]
            for j in jobs
        ]
        noheader = cmd.has_flag("n", "noheader")
        if cmd.has_flag("P", "parsable2"):
            lines = [] if noheader else ["|".join(headers)]
            lines.extend("|".join(r) for r in rows)
            return self.success("\n".join(lines) + "\n")

        widths = [12, 10, 10, 10, 10, 10, 8]
        lines = []
        if not noheader:
            lines.append(" ".join(h.rjust(w) for h, w in zip(headers, widths)))
            lines.append(" ".join("-" * w for w in widths))
        for row in rows:
            lines.append(" ".join(c.rjust(w) for c, w in zip(row, widths)))
        return self.success("\n".join(lines) + "\n" if lines else "")

    # -------- helpers --------

    def _partitions(self, cluster: Cluster, wanted: Optional[str]) -> list[str]:
        partitions = list(cluster.slurm_config.partitions)
        if not wanted:
            return partitions
        selected = [p for p in wanted.split(",") if p in partitions]
        if not selected:
            raise self.error(f"Partition {wanted} not found")
        return selected

    @staticmethod
    def _partition_label(cluster: Cluster, partition: str) -> str:
        return partition + "*" if partition == cluster.slurm_config.partitions[0] else partition

    def _filter_states(self, nodes: list[DGXNode], states: Optional[str], tool: str) -> list[DGXNode]:
        if not states:
            return list(nodes)
        wanted = set()
        for token in states.lower().split(","):
            if token not in STATE_ALIASES:
                raise self.error(f"{tool}: error: Invalid node state specified: {token}")
            wanted.add(STATE_ALIASES[token])
        return [n for n in nodes if n.slurm_state in wanted]

    @staticmethod
    def _group_by_state(nodes: list[DGXNode]) -> list[tuple[SlurmState, list[DGXNode]]]:
        groups: dict[SlurmState, list[DGXNode]] = {}
        for node in nodes:
            groups.setdefault(node.slurm_state, []).append(node)
        return [(state, groups[state]) for state in SlurmState if state in groups]

    @staticmethod
    def _state_counts(nodes: list[DGXNode]) -> dict[str, int]:
        counts = {"A": 0, "I": 0, "O": 0}
        for node in nodes:
            if node.slurm_state in (SlurmState.ALLOC, SlurmState.MIX):
                counts["A"] += 1
            elif node.slurm_state == SlurmState.IDLE:
                counts["I"] += 1
            else:
                counts["O"] += 1
        return counts

    def _job_ids(self, text: str, tool: str) -> set[int]:
        ids = set()
        for token in text.split(","):
            if not token.isdigit():
                raise self.error(f"{tool}: error: Invalid job id: {token}")
            ids.add(int(token))
        return ids

    def _elapsed(self, job: SlurmJob) -> str:
        start = _parse_timestamp(job.start_time)
        if start is None:
            return "0:00"
        end = _parse_timestamp(job.end_time) or self._clock()
        return format_elapsed((end - start).total_seconds())
