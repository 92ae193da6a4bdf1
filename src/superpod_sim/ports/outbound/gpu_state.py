"""GPU state port used by the fault injector and the drift worker.

Both writers mutate GPUs only through this contract, so the store remains
the single owner of cluster state and the single place health is derived.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Callable, Mapping, Protocol, Union

from superpod_sim.domain.entities.cluster import Cluster
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode

# Either a field mapping, or a function computing one from the current GPU
GPUPartial = Union[Mapping[str, Any], Callable[[GPU], Mapping[str, Any]]]


class GPUStateStore(Protocol):
    """Protocol for atomic GPU reads and writes.

    Thread Safety:
        Implementations must serialise writers. A callable partial is
        evaluated under the same lock as the write it produces.
    """

    @abstractmethod
    def snapshot(self) -> Cluster:
        """Return a deep copy of the whole cluster."""
        ...

    @abstractmethod
    def get_node(self, node_id: str) -> DGXNode:
        """Return a copy of one node.

        Raises:
            NotFoundError: If the node does not exist.
        """
        ...

    @abstractmethod
    def get_gpu(self, node_id: str, gpu_id: int) -> GPU:
        """Return a copy of one GPU.

        Raises:
            NotFoundError: If the node or GPU does not exist.
        """
        ...

    @abstractmethod
    def update_gpu(self, node_id: str, gpu_id: int, partial: GPUPartial) -> GPU:
        """Apply a partial update and re-derive health.

        Args:
            node_id: Node id or hostname.
            gpu_id: GPU index within the node.
            partial: Field values, or a function of the current GPU
                returning field values.

        Returns:
            A copy of the updated GPU.

        Raises:
            NotFoundError: If the node or GPU does not exist.
            InvariantViolation: If the partial asserts a contradicting
                health status.
        """
        ...
