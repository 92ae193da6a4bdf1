"""Fault injection.

Each fault kind is a single atomic GPU update whose effect the central
health derivation turns into a Warning or Critical status. Clearing a GPU
restores the canonical healthy baseline exactly.

Faults never touch a node's Slurm state. Draining a faulty node is an
operator decision made with ``scontrol update``.

References:
    - NVIDIA XID Errors documentation (XID 43, XID 62)
    - NVIDIA A100 thermal specification
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping

from superpod_sim.domain.entities.gpu import GPU, ECCErrors, NVLinkStatus, XIDError
from superpod_sim.domain.services.cluster_factory import healthy_gpu_baseline
from superpod_sim.domain.value_objects.hardware_specs import DGX_A100, SystemSpec
from superpod_sim.domain.value_objects.xid_catalog import get_xid
from superpod_sim.ports.outbound.clock import Clock, isoformat_utc, system_clock
from superpod_sim.ports.outbound.gpu_state import GPUStateStore

logger = logging.getLogger(__name__)


class FaultKind(Enum):
    """Injectable fault classes."""
    XID = "xid"
    ECC = "ecc"
    THERMAL = "thermal"
    NVLINK = "nvlink"
    POWER = "power"
    PCIE = "pcie"


XID_STOPPED_RESPONDING = 43
XID_PCIE_INTERNAL = 62
THERMAL_FAULT_TEMP_C = 88.0
THERMAL_FAULT_SM_CLOCK_MHZ = 1260
POWER_FAULT_FRACTION = 0.98
NVLINK_FAULT_ERRORS = 100


class FaultInjector:
    """Apply and clear GPU faults through the state store."""

    def __init__(
        self,
        store: GPUStateStore,
        spec: SystemSpec = DGX_A100,
        clock: Clock = system_clock,
    ):
        """Initialize fault injector.

        Args:
            store: Owner of cluster state.
            spec: Hardware template whose clocks define the baseline.
            clock: Source of XID timestamps.
        """
        self._store = store
        self._spec = spec
        self._clock = clock

    def inject_fault(self, node_id: str, gpu_id: int, kind: FaultKind | str) -> GPU:
        """Inject one fault.

        Args:
            node_id: Node id or hostname.
            gpu_id: GPU index.
            kind: Fault class, as a FaultKind or its string value.

        Returns:
            The GPU after the fault, with health re-derived.

        Raises:
            ValueError: If ``kind`` is not a known fault class.
            NotFoundError: If the node or GPU does not exist.
        """
        kind = FaultKind(kind)
        builders = {
            FaultKind.XID: lambda gpu: self._xid_partial(gpu, XID_STOPPED_RESPONDING),
            FaultKind.ECC: self._ecc_partial,
            FaultKind.THERMAL: self._thermal_partial,
            FaultKind.NVLINK: self._nvlink_partial,
            FaultKind.POWER: self._power_partial,
            FaultKind.PCIE: lambda gpu: self._xid_partial(gpu, XID_PCIE_INTERNAL),
        }
        gpu = self._store.update_gpu(node_id, gpu_id, builders[kind])
        logger.warning(
            f"Injected {kind.value} fault on {node_id} GPU {gpu_id} "
            f"(health={gpu.health_status.value})"
        )
        return gpu

    def add_xid_error(self, node_id: str, gpu_id: int, code: int) -> GPU:
        """Record a catalogued XID on a GPU.

        Raises:
            KeyError: If the code is not catalogued.
            NotFoundError: If the node or GPU does not exist.
        """
        if get_xid(code) is None:
            raise KeyError(f"XID {code} is not in the catalog")
        gpu = self._store.update_gpu(node_id, gpu_id, lambda g: self._xid_partial(g, code))
        logger.warning(f"Recorded XID {code} on {node_id} GPU {gpu_id}")
        return gpu

    def clear_faults(self, node_id: str, gpu_id: int) -> GPU:
        """Restore a GPU to the healthy baseline."""
        gpu = self._store.update_gpu(node_id, gpu_id, self._baseline)
        logger.info(f"Cleared faults on {node_id} GPU {gpu_id}")
        return gpu

    def clear_all_faults(self) -> int:
        """Restore every GPU to the baseline.

        Returns:
            Number of GPUs reset.
        """
        count = 0
        for node in self._store.snapshot().nodes:
            for gpu in node.gpus:
                self._store.update_gpu(node.id, gpu.id, self._baseline)
                count += 1
        logger.info(f"Cleared faults on {count} GPUs")
        return count

    def _baseline(self, gpu: GPU) -> Mapping[str, Any]:
        return healthy_gpu_baseline(self._spec.gpu, gpu.power_limit)

    def _xid_partial(self, gpu: GPU, code: int) -> Mapping[str, Any]:
        definition = get_xid(code)
        record = XIDError(
            code=code,
            timestamp=isoformat_utc(self._clock()),
            description=definition.name,
            severity=definition.severity.value,
        )
        return {"xid_errors": gpu.xid_errors + [record]}

    def _ecc_partial(self, gpu: GPU) -> Mapping[str, Any]:
        ecc = gpu.ecc_errors
        return {
            "ecc_errors": ECCErrors(
                single_bit=ecc.single_bit,
                double_bit=ecc.double_bit + 1,
                aggregated_single_bit=ecc.aggregated_single_bit,
                aggregated_double_bit=ecc.aggregated_double_bit + 1,
            )
        }

    def _thermal_partial(self, gpu: GPU) -> Mapping[str, Any]:
        return {"temperature": THERMAL_FAULT_TEMP_C, "clocks_sm": THERMAL_FAULT_SM_CLOCK_MHZ}

    def _nvlink_partial(self, gpu: GPU) -> Mapping[str, Any]:
        links = list(gpu.nvlinks)
        if links:
            first = links[0]
            first.status = NVLinkStatus.DOWN
            first.tx_errors += NVLINK_FAULT_ERRORS
            first.rx_errors += NVLINK_FAULT_ERRORS
        return {"nvlinks": links}

    def _power_partial(self, gpu: GPU) -> Mapping[str, Any]:
        return {"power_draw": round(POWER_FAULT_FRACTION * gpu.power_limit, 1)}
