"""Cluster entity and the Slurm job queue it carries.

The Cluster is the root of the exported state document. The job queue is
part of it so that queue contents survive export/import like everything
else the scheduler tools render.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode


class FabricTopology(Enum):
    """Compute fabric layout."""
    FAT_TREE = "FatTree"
    RAIL_OPTIMIZED = "RailOptimized"
    DRAGONFLY = "DragonFly"


class JobState(Enum):
    """Slurm job lifecycle state."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def short(self) -> str:
        """Compact state code as squeue prints it."""
        return {
            JobState.PENDING: "PD",
            JobState.RUNNING: "R",
            JobState.COMPLETED: "CD",
            JobState.CANCELLED: "CA",
            JobState.FAILED: "F",
        }[self]


@dataclass
class SlurmJob:
    """A job tracked by the simulated Slurm controller."""
    job_id: int
    name: str
    user: str = "root"
    partition: str = "gpu"
    state: JobState = JobState.PENDING
    num_nodes: int = 1
    gpus: int = 1
    cpus: int = 1
    memory: str = "16G"
    time_limit: str = "UNLIMITED"
    node_list: str = ""
    gpu_ids: list[int] = field(default_factory=list)
    reason: str = "Priority"
    submit_time: str = ""
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    command: str = ""
    account: str = "default"
    qos: str = "normal"
    exclusive: bool = False

    @property
    def is_active(self) -> bool:
        return self.state in (JobState.PENDING, JobState.RUNNING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "user": self.user,
            "partition": self.partition,
            "state": self.state.value,
            "num_nodes": self.num_nodes,
            "gpus": self.gpus,
            "cpus": self.cpus,
            "memory": self.memory,
            "time_limit": self.time_limit,
            "node_list": self.node_list,
            "gpu_ids": list(self.gpu_ids),
            "reason": self.reason,
            "submit_time": self.submit_time,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "command": self.command,
            "account": self.account,
            "qos": self.qos,
            "exclusive": self.exclusive,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SlurmJob:
        return cls(
            job_id=int(data["job_id"]),
            name=data["name"],
            user=data.get("user", "root"),
            partition=data.get("partition", "gpu"),
            state=JobState(data.get("state", "PENDING")),
            num_nodes=int(data.get("num_nodes", 1)),
            gpus=int(data.get("gpus", 1)),
            cpus=int(data.get("cpus", 1)),
            memory=data.get("memory", "16G"),
            time_limit=data.get("time_limit", "UNLIMITED"),
            node_list=data.get("node_list", ""),
            gpu_ids=[int(i) for i in data.get("gpu_ids", [])],
            reason=data.get("reason", "Priority"),
            submit_time=data.get("submit_time", ""),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            command=data.get("command", ""),
            account=data.get("account", "default"),
            qos=data.get("qos", "normal"),
            exclusive=bool(data.get("exclusive", False)),
        )


@dataclass
class BCMHighAvailability:
    """Base Command Manager head-node failover pair."""
    enabled: bool = True
    primary: str = "mgmt-node0"
    secondary: str = "mgmt-node1"
    state: str = "Active"

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "primary": self.primary,
            "secondary": self.secondary,
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BCMHighAvailability:
        return cls(
            enabled=bool(data.get("enabled", True)),
            primary=data.get("primary", "mgmt-node0"),
            secondary=data.get("secondary", "mgmt-node1"),
            state=data.get("state", "Active"),
        )


@dataclass
class SlurmConfig:
    """Static Slurm controller configuration."""
    control_machine: str = "mgmt-node0"
    cluster_name: str = "superpod"
    partitions: list[str] = field(default_factory=lambda: ["gpu", "batch", "interactive"])
    version: str = "23.02.6"

    def to_dict(self) -> dict[str, Any]:
        return {
            "control_machine": self.control_machine,
            "cluster_name": self.cluster_name,
            "partitions": list(self.partitions),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SlurmConfig:
        return cls(
            control_machine=data.get("control_machine", "mgmt-node0"),
            cluster_name=data.get("cluster_name", "superpod"),
            partitions=list(data.get("partitions", ["gpu", "batch", "interactive"])),
            version=data.get("version", "23.02.6"),
        )


@dataclass
class Cluster:
    """Root of the simulated cluster state."""
    name: str
    nodes: list[DGXNode]
    fabric_topology: FabricTopology = FabricTopology.FAT_TREE
    bcm_ha: BCMHighAvailability = field(default_factory=BCMHighAvailability)
    slurm_config: SlurmConfig = field(default_factory=SlurmConfig)
    jobs: list[SlurmJob] = field(default_factory=list)
    next_job_id: int = 1000

    def find_node(self, node_id: str) -> Optional[DGXNode]:
        for node in self.nodes:
            if node.id == node_id or node.hostname == node_id:
                return node
        return None

    def find_job(self, job_id: int) -> Optional[SlurmJob]:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        return None

    def all_gpus(self) -> list[tuple[DGXNode, GPU]]:
        return [(node, gpu) for node in self.nodes for gpu in node.gpus]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "fabric_topology": self.fabric_topology.value,
            "bcm_ha": self.bcm_ha.to_dict(),
            "slurm_config": self.slurm_config.to_dict(),
            "jobs": [j.to_dict() for j in self.jobs],
            "next_job_id": self.next_job_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Cluster:
        return cls(
            name=data["name"],
            nodes=[DGXNode.from_dict(n) for n in data["nodes"]],
            fabric_topology=FabricTopology(data.get("fabric_topology", "FatTree")),
            bcm_ha=BCMHighAvailability.from_dict(data.get("bcm_ha", {})),
            slurm_config=SlurmConfig.from_dict(data.get("slurm_config", {})),
            jobs=[SlurmJob.from_dict(j) for j in data.get("jobs", [])],
            next_job_id=int(data.get("next_job_id", 1000)),
        )
