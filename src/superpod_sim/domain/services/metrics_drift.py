"""Background drift of GPU telemetry.

A daemon thread applies one bounded random-walk step to every GPU per
interval so that dashboards and repeated ``nvidia-smi`` calls look alive.
The walk keeps healthy GPUs strictly below the thermal and power warning
thresholds, so drift alone never changes a health status. A GPU already
held over a threshold by a fault keeps the faulted reading.

Drift writes only through ``GPUStateStore.update_gpu`` and never touches
XID records, ECC counters or NVLinks.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

import numpy as np

from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.exceptions import NotFoundError
from superpod_sim.domain.value_objects.hardware_specs import DGX_A100, SystemSpec
from superpod_sim.domain.value_objects.health_rules import DEFAULT_THRESHOLDS, HealthThresholds
from superpod_sim.ports.outbound.gpu_state import GPUStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriftBounds:
    """Step sizes and clamps of the random walk."""
    utilization_step: float = 5.0         # Percent per tick
    allocated_min_util: float = 75.0
    allocated_max_util: float = 95.0
    memory_step_mib: int = 256
    temp_floor_c: float = 25.0
    temp_ceiling_c: float = 82.0          # Below the thermal warning threshold
    temp_idle_c: float = 30.0
    temp_per_util: float = 0.5
    temp_approach: float = 0.10
    temp_noise_c: float = 0.5
    power_floor_w: float = 50.0
    power_idle_w: float = 100.0
    power_ceiling_fraction: float = 0.90  # Below the power warning fraction
    power_approach: float = 0.15
    clock_throttle_start_c: float = 70.0
    clock_throttle_mhz_per_c: float = 10.0


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


class MetricsDriftSimulator:
    """Cancellable telemetry random walk over every GPU in the store."""

    def __init__(
        self,
        store: GPUStateStore,
        interval_seconds: float = 1.0,
        seed: Optional[int] = None,
        bounds: DriftBounds = DriftBounds(),
        thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
        spec: SystemSpec = DGX_A100,
    ):
        """Initialize drift simulator.

        Args:
            store: Owner of cluster state.
            interval_seconds: Delay between ticks of the background worker.
            seed: Seed of the random generator. None draws fresh entropy.
            bounds: Walk step sizes and clamps.
            thresholds: Health thresholds that mark a faulted reading.
            spec: Hardware template supplying the boost clock.
        """
        self._store = store
        self._interval = interval_seconds
        self._rng = np.random.default_rng(seed)
        self._bounds = bounds
        self._thresholds = thresholds
        self._base_clock = spec.gpu.boost_clock_mhz
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._tick_callbacks: list[Callable[[int], None]] = []
        self.tick_count = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def register_tick_callback(self, callback: Callable[[int], None]) -> None:
        """Register a callback receiving the number of GPUs updated per tick."""
        self._tick_callbacks.append(callback)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="MetricsDrift", daemon=True)
        self._thread.start()
        logger.info(f"Metrics drift started (interval={self._interval}s)")

    def stop(self) -> None:
        """Stop the worker and wait for it. Safe to call repeatedly."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=max(2.0, 2 * self._interval))
            self._thread = None
            logger.info("Metrics drift stopped")

    def tick(self) -> int:
        """Apply one walk step to every GPU.

        Returns:
            Number of GPUs updated.
        """
        updated = 0
        for node in self._store.snapshot().nodes:
            for gpu in node.gpus:
                if gpu.has_fallen_off_bus:
                    continue
                try:
                    self._store.update_gpu(node.id, gpu.id, self._step)
                except NotFoundError:
                    # Cluster replaced by reset or import since the snapshot
                    continue
                updated += 1
        self.tick_count += 1
        for callback in self._tick_callbacks:
            callback(updated)
        return updated

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self.tick()

    def _step(self, gpu: GPU) -> Mapping[str, Any]:
        """Compute the next telemetry of one GPU."""
        b = self._bounds
        rng = self._rng

        util = gpu.utilization + rng.uniform(-b.utilization_step, b.utilization_step)
        if gpu.allocated_job_id is not None:
            util = _clamp(util, b.allocated_min_util, b.allocated_max_util)
        else:
            util = _clamp(util, 0.0, 100.0)

        memory = int(gpu.memory_used + rng.integers(-b.memory_step_mib, b.memory_step_mib + 1))
        memory = int(_clamp(memory, 0, gpu.memory_total))

        partial: dict[str, Any] = {
            "utilization": round(util, 1),
            "memory_used": memory,
        }

        if gpu.temperature < self._thresholds.thermal_warning_c:
            target = b.temp_idle_c + b.temp_per_util * util
            temp = gpu.temperature + b.temp_approach * (target - gpu.temperature)
            temp += rng.uniform(-b.temp_noise_c, b.temp_noise_c)
            temp = round(_clamp(temp, b.temp_floor_c, b.temp_ceiling_c), 1)
            throttle = max(0.0, temp - b.clock_throttle_start_c) * b.clock_throttle_mhz_per_c
            partial["temperature"] = temp
            partial["clocks_sm"] = int(round(self._base_clock - throttle))

        power_ceiling = b.power_ceiling_fraction * gpu.power_limit
        if gpu.power_draw < self._thresholds.power_warning_fraction * gpu.power_limit:
            target = b.power_idle_w + util / 100.0 * (power_ceiling - b.power_idle_w)
            power = gpu.power_draw + b.power_approach * (target - gpu.power_draw)
            partial["power_draw"] = round(_clamp(power, b.power_floor_w, power_ceiling), 1)

        return partial
