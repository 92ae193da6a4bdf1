"""Cluster state store.

``ClusterStore`` is the single owner of the simulated cluster. Readers get
deep-copied snapshots; writers go through named actions that run under one
re-entrant lock and re-derive health on every GPU write. No caller ever
holds a reference into live state.

References:
    - Slurm node state machine (idle, alloc, mix, drain, down)
    - NVIDIA MIG user guide (GPU instance profiles)
"""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
import threading
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from superpod_sim.domain.entities.cluster import Cluster, JobState, SlurmJob
from superpod_sim.domain.entities.gpu import GPU, ECCErrors, MIGInstance
from superpod_sim.domain.entities.node import DGXNode, InfiniBandPort, SlurmState
from superpod_sim.domain.exceptions import (
    ClusterValidationError,
    InvariantViolation,
    NotFoundError,
)
from superpod_sim.domain.services.cluster_factory import BASELINE_MAX_POWER_FRACTION, create_default_cluster
from superpod_sim.domain.services.cluster_schema import (
    DEFAULT_MAX_IMPORT_BYTES,
    parse_cluster_json,
)
from superpod_sim.domain.services.health import (
    ClusterStats,
    compute_cluster_stats,
    derive_health,
    derive_node_health,
)
from superpod_sim.domain.value_objects.hardware_specs import find_mig_profile
from superpod_sim.domain.value_objects.health_rules import (
    DEFAULT_THRESHOLDS,
    HealthStatus,
    HealthThresholds,
)
from superpod_sim.ports.outbound.clock import Clock, isoformat_utc, system_clock
from superpod_sim.ports.outbound.gpu_state import GPUPartial

logger = logging.getLogger(__name__)

# Fields a partial update may not change
_IMMUTABLE_GPU_FIELDS = frozenset({"id", "uuid", "pci_address"})
_GPU_FIELDS = frozenset(f.name for f in dataclasses.fields(GPU))
_PORT_FIELDS = frozenset(f.name for f in dataclasses.fields(InfiniBandPort)) - {"port_number"}

MIN_POWER_LIMIT_W = 100.0
MIG_COMPUTE_CAPACITY = 98       # Compute slices of a full A100 (the 7g profile)


def plan_mig_instances(gpu: GPU, profile_ids: Iterable[int]) -> list[MIGInstance]:
    """Compute the GPU instances that creating ``profile_ids`` would add.

    Args:
        gpu: GPU as it currently is.
        profile_ids: MIG profile ids, created in order.

    Returns:
        New instances with ids following the existing ones.

    Raises:
        ValueError: If MIG is disabled, a profile is unknown, or the
            GPU would exceed its compute slices.
    """
    if not gpu.mig_mode:
        raise ValueError(f"MIG mode is not enabled on GPU {gpu.id}")
    instances = list(gpu.mig_instances)
    existing = [find_mig_profile(i.profile_id) for i in instances]
    used = sum(p.compute_slices for p in existing if p is not None)
    next_id = max((i.instance_id for i in instances), default=0) + 1
    created: list[MIGInstance] = []
    for profile_id in profile_ids:
        profile = find_mig_profile(profile_id)
        if profile is None:
            raise ValueError(f"Unknown MIG profile ID {profile_id}")
        same_profile = sum(1 for i in instances + created if i.profile_id == profile.profile_id)
        if used + profile.compute_slices > MIG_COMPUTE_CAPACITY or same_profile >= profile.max_instances:
            raise ValueError(f"Insufficient resources to create GPU instance with profile {profile_id}")
        used += profile.compute_slices
        created.append(
            MIGInstance(
                instance_id=next_id,
                profile_id=profile.profile_id,
                uuid=f"MIG-{gpu.uuid[4:]}-{next_id}",
            )
        )
        next_id += 1
    return created


class ClusterStore:
    """Thread-safe owner of the simulated cluster."""

    def __init__(
        self,
        cluster_factory: Callable[[], Cluster] = create_default_cluster,
        thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
        clock: Clock = system_clock,
        max_import_bytes: int = DEFAULT_MAX_IMPORT_BYTES,
    ):
        """Initialize the store with a freshly built cluster.

        Args:
            cluster_factory: Builds the cluster for startup and reset.
            thresholds: Thresholds used for health derivation.
            clock: Source of job timestamps.
            max_import_bytes: Size limit for imported documents.
        """
        self._factory = cluster_factory
        self._thresholds = thresholds
        self._clock = clock
        self._max_import_bytes = max_import_bytes
        self._lock = threading.RLock()
        self._cluster = self._factory()
        self._rederive_all(self._cluster)

    @property
    def thresholds(self) -> HealthThresholds:
        return self._thresholds

    # -------- reads --------

    def snapshot(self) -> Cluster:
        """Return a deep copy of the cluster."""
        with self._lock:
            return copy.deepcopy(self._cluster)

    def get_node(self, node_id: str) -> DGXNode:
        with self._lock:
            return copy.deepcopy(self._find_node(node_id))

    def get_gpu(self, node_id: str, gpu_id: int) -> GPU:
        with self._lock:
            return copy.deepcopy(self._find_gpu(self._find_node(node_id), gpu_id))

    def has_node(self, node_id: str) -> bool:
        with self._lock:
            return self._cluster.find_node(node_id) is not None

    def stats(self) -> ClusterStats:
        with self._lock:
            return compute_cluster_stats(self._cluster, self._thresholds)

    # -------- GPU actions --------

    def update_gpu(self, node_id: str, gpu_id: int, partial: GPUPartial) -> GPU:
        """Apply a partial GPU update atomically and re-derive health.

        Args:
            node_id: Node id or hostname.
            gpu_id: GPU index.
            partial: Field values, or a function of a copy of the current
                GPU returning field values.

        Returns:
            A copy of the updated GPU.

        Raises:
            NotFoundError: If the node or GPU does not exist.
            ValueError: If the partial names an unknown or immutable field.
            InvariantViolation: If the partial asserts a health status the
                derivation contradicts.
        """
        with self._lock:
            node = self._find_node(node_id)
            current = self._find_gpu(node, gpu_id)
            if callable(partial):
                partial = partial(copy.deepcopy(current))

            updated = copy.deepcopy(current)
            asserted: Optional[HealthStatus] = None
            for key, value in partial.items():
                if key not in _GPU_FIELDS:
                    raise ValueError(f"Unknown GPU field: {key}")
                if key in _IMMUTABLE_GPU_FIELDS:
                    raise ValueError(f"GPU field {key} cannot be updated")
                if key == "health_status":
                    asserted = HealthStatus(value)
                    continue
                setattr(updated, key, copy.deepcopy(value))

            derived = derive_health(updated, self._thresholds)
            if asserted is not None and asserted != derived:
                raise InvariantViolation(
                    f"{node.id} GPU {gpu_id}: asserted health {asserted.value} "
                    f"contradicts derived health {derived.value}"
                )
            updated.health_status = derived

            index = next(i for i, g in enumerate(node.gpus) if g is current)
            node.gpus[index] = updated
            node.health_status = derive_node_health(node, self._thresholds)
            if derived != current.health_status:
                logger.info(
                    f"{node.id} GPU {gpu_id} health {current.health_status.value} -> {derived.value}"
                )
            return copy.deepcopy(updated)

    def reset_gpu(self, node_id: str, gpu_id: int) -> GPU:
        """Reset a GPU: clear XIDs and volatile ECC counters, end workloads.

        A GPU that has fallen off the bus cannot be reset and is left as is.
        """
        def _partial(gpu: GPU) -> Mapping[str, Any]:
            ecc = gpu.ecc_errors
            return {
                "xid_errors": [],
                "ecc_errors": ECCErrors(
                    aggregated_single_bit=ecc.aggregated_single_bit,
                    aggregated_double_bit=ecc.aggregated_double_bit,
                ),
                "utilization": 0.0,
                "memory_used": 0,
            }

        with self._lock:
            if self._find_gpu(self._find_node(node_id), gpu_id).has_fallen_off_bus:
                raise ValueError(f"GPU {gpu_id} has fallen off the bus and cannot be reset")
            return self.update_gpu(node_id, gpu_id, _partial)

    def set_power_limit(self, node_id: str, gpu_ids: Iterable[int], watts: float) -> list[GPU]:
        """Set the enforced power limit, capping the current draw below warning.

        Raises:
            ValueError: If ``watts`` is outside [100, max_power_limit].
        """
        def _partial(gpu: GPU) -> Mapping[str, Any]:
            if not MIN_POWER_LIMIT_W <= watts <= gpu.max_power_limit:
                raise ValueError(
                    f"Power limit must be between {MIN_POWER_LIMIT_W:.0f} and {gpu.max_power_limit:.0f} W"
                )
            return {
                "power_limit": float(watts),
                "power_draw": min(gpu.power_draw, round(BASELINE_MAX_POWER_FRACTION * watts, 1)),
            }

        with self._lock:
            return [self.update_gpu(node_id, gpu_id, _partial) for gpu_id in gpu_ids]

    def set_persistence_mode(self, node_id: str, gpu_ids: Iterable[int], enabled: bool) -> list[GPU]:
        with self._lock:
            return [
                self.update_gpu(node_id, gpu_id, {"persistence_mode": enabled})
                for gpu_id in gpu_ids
            ]

    def set_mig_mode(self, node_id: str, gpu_ids: Iterable[int], enabled: bool) -> list[GPU]:
        """Enable or disable MIG. Disabling destroys existing instances."""
        with self._lock:
            results = []
            for gpu_id in gpu_ids:
                partial: dict[str, Any] = {"mig_mode": enabled}
                if not enabled:
                    partial["mig_instances"] = []
                results.append(self.update_gpu(node_id, gpu_id, partial))
            return results

    def create_mig_instances(self, node_id: str, gpu_id: int, profile_ids: Iterable[int]) -> GPU:
        """Create GPU instances from MIG profile ids.

        Raises:
            ValueError: If MIG is disabled, a profile is unknown, or the
                GPU would exceed its compute slices.
        """
        profile_ids = list(profile_ids)
        return self.update_gpu(
            node_id,
            gpu_id,
            lambda gpu: {"mig_instances": gpu.mig_instances + plan_mig_instances(gpu, profile_ids)},
        )

    def destroy_mig_instances(self, node_id: str, gpu_id: int) -> GPU:
        return self.update_gpu(node_id, gpu_id, {"mig_instances": []})

    # -------- node actions --------

    def set_slurm_state(self, node_id: str, state: SlurmState | str, reason: Optional[str] = None) -> DGXNode:
        """Set a node's scheduler state.

        Returning a node to ``idle`` clears the reason. Faults never call
        this action.
        """
        state = SlurmState(state)
        with self._lock:
            node = self._find_node(node_id)
            previous = node.slurm_state
            node.slurm_state = state
            node.slurm_reason = None if state in (SlurmState.IDLE, SlurmState.ALLOC, SlurmState.MIX) else reason
            logger.info(f"{node.id} slurm state {previous.value} -> {state.value}")
            return copy.deepcopy(node)

    def update_hca_port(
        self, node_id: str, hca_id: int, port_number: int, partial: Mapping[str, Any]
    ) -> InfiniBandPort:
        with self._lock:
            node = self._find_node(node_id)
            hca = next((h for h in node.hcas if h.id == hca_id), None)
            if hca is None:
                raise NotFoundError(f"HCA {hca_id} not found on {node.id}")
            port = next((p for p in hca.ports if p.port_number == port_number), None)
            if port is None:
                raise NotFoundError(f"Port {port_number} not found on {hca.ca_type}")
            for key, value in partial.items():
                if key not in _PORT_FIELDS:
                    raise ValueError(f"Unknown port field: {key}")
                setattr(port, key, copy.deepcopy(value))
            return copy.deepcopy(port)

    # -------- Slurm jobs --------

    def submit_job(
        self,
        name: str,
        num_nodes: int = 1,
        gpus: int = 1,
        partition: str = "gpu",
        user: str = "root",
        command: str = "",
        time_limit: str = "UNLIMITED",
        exclusive: bool = False,
    ) -> SlurmJob:
        """Queue a job and try to schedule it.

        Returns:
            A copy of the job after the scheduling attempt.
        """
        with self._lock:
            job = SlurmJob(
                job_id=self._cluster.next_job_id,
                name=name,
                user=user,
                partition=partition,
                num_nodes=num_nodes,
                gpus=gpus,
                cpus=gpus * 16,
                time_limit=time_limit,
                submit_time=isoformat_utc(self._clock()),
                command=command,
                exclusive=exclusive,
            )
            self._cluster.next_job_id += 1
            self._cluster.jobs.append(job)
            logger.info(f"Submitted job {job.job_id} ({name}, {num_nodes} node(s), {gpus} GPU(s)/node)")
            self.schedule_pending_jobs()
            return copy.deepcopy(job)

    def schedule_pending_jobs(self) -> list[SlurmJob]:
        """Start pending jobs on the first idle nodes with enough free GPUs.

        Returns:
            Copies of the jobs started.
        """
        started = []
        with self._lock:
            for job in self._cluster.jobs:
                if job.state != JobState.PENDING:
                    continue
                candidates = [
                    n for n in self._cluster.nodes
                    if n.slurm_state == SlurmState.IDLE
                    and len(self._free_gpus(n)) >= job.gpus
                ]
                if len(candidates) < job.num_nodes:
                    job.reason = "Resources"
                    continue
                chosen = candidates[:job.num_nodes]
                for node in chosen:
                    gpu_ids = [g.id for g in self._free_gpus(node)[:job.gpus]]
                    for gpu_id in gpu_ids:
                        self.update_gpu(
                            node.id, gpu_id,
                            lambda g, job_id=job.job_id: {
                                "allocated_job_id": job_id,
                                "utilization": 75.0,
                                "memory_used": g.memory_total // 2,
                            },
                        )
                    job.gpu_ids = gpu_ids
                    node.slurm_state = SlurmState.ALLOC
                job.node_list = ",".join(n.id for n in chosen)
                job.state = JobState.RUNNING
                job.reason = "None"
                job.start_time = isoformat_utc(self._clock())
                started.append(copy.deepcopy(job))
                logger.info(f"Job {job.job_id} running on {job.node_list}")
        return started

    def cancel_job(self, job_id: int) -> SlurmJob:
        """Cancel a pending or running job and release its GPUs.

        Raises:
            NotFoundError: If the job does not exist or already ended.
        """
        with self._lock:
            job = self._cluster.find_job(job_id)
            if job is None or not job.is_active:
                raise NotFoundError(f"Invalid job id specified: {job_id}")
            was_running = job.state == JobState.RUNNING
            job.state = JobState.CANCELLED
            job.end_time = isoformat_utc(self._clock())
            job.reason = "None"
            if was_running:
                self._release(job)
            logger.info(f"Cancelled job {job_id}")
            self.schedule_pending_jobs()
            return copy.deepcopy(job)

    # -------- whole-cluster actions --------

    def reset_cluster(self) -> None:
        """Replace the cluster with a freshly built default."""
        with self._lock:
            self._cluster = self._factory()
            self._rederive_all(self._cluster)
            logger.info("Cluster reset to defaults")

    def export_cluster(self) -> str:
        """Serialise the cluster to JSON."""
        with self._lock:
            return json.dumps(self._cluster.to_dict(), indent=2)

    def import_cluster(self, raw: Union[str, bytes]) -> Cluster:
        """Replace the cluster from a JSON document.

        Raises:
            ClusterValidationError: If the document is rejected.
        """
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ClusterValidationError([f"Document is not UTF-8: {e}"]) from e
        data = parse_cluster_json(raw, self._max_import_bytes)
        try:
            cluster = Cluster.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ClusterValidationError([f"Malformed cluster document: {e!r}"]) from e

        errors = []
        node_ids = [n.id for n in cluster.nodes]
        if len(set(node_ids)) != len(node_ids):
            errors.append("Node ids must be unique")
        for node in cluster.nodes:
            gpu_ids = [g.id for g in node.gpus]
            if len(set(gpu_ids)) != len(gpu_ids):
                errors.append(f"GPU ids must be unique within {node.id}")
        if errors:
            raise ClusterValidationError(errors)

        self._rederive_all(cluster)
        with self._lock:
            self._cluster = cluster
        logger.info(f"Imported cluster {cluster.name!r} with {len(cluster.nodes)} nodes")
        return copy.deepcopy(cluster)

    # -------- internals --------

    def _find_node(self, node_id: str) -> DGXNode:
        node = self._cluster.find_node(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found")
        return node

    def _find_gpu(self, node: DGXNode, gpu_id: int) -> GPU:
        gpu = node.find_gpu(gpu_id)
        if gpu is None:
            raise NotFoundError(f"GPU {gpu_id} not found on {node.id}")
        return gpu

    def _free_gpus(self, node: DGXNode) -> list[GPU]:
        return [
            g for g in node.visible_gpus()
            if g.allocated_job_id is None and g.health_status != HealthStatus.CRITICAL
        ]

    def _release(self, job: SlurmJob) -> None:
        for node_id in filter(None, job.node_list.split(",")):
            node = self._cluster.find_node(node_id)
            if node is None:
                continue
            for gpu in list(node.gpus):
                if gpu.allocated_job_id == job.job_id:
                    self.update_gpu(
                        node.id, gpu.id,
                        {"allocated_job_id": None, "utilization": 0.0, "memory_used": 0},
                    )
            still_busy = any(g.allocated_job_id is not None for g in node.gpus)
            if node.slurm_state in (SlurmState.ALLOC, SlurmState.MIX) and not still_busy:
                node.slurm_state = SlurmState.IDLE

    def _rederive_all(self, cluster: Cluster) -> None:
        for node in cluster.nodes:
            for gpu in node.gpus:
                derived = derive_health(gpu, self._thresholds)
                if gpu.health_status != derived:
                    logger.warning(
                        f"{node.id} GPU {gpu.id}: stored health {gpu.health_status.value} "
                        f"replaced by derived {derived.value}"
                    )
                    gpu.health_status = derived
            node.health_status = derive_node_health(node, self._thresholds)
