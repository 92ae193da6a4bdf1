"""NVLink fabric view of a node.

Every tool that reports NVLink counts, link health or the number of
detected GPUs reads them from :func:`node_fabric`. A GPU that has fallen
off the bus stays in the fabric with all of its links down, so it lowers
the active count and degrades the fabric instead of vanishing from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from superpod_sim.domain.entities.gpu import GPU, NVLinkConnection
from superpod_sim.domain.entities.node import DGXNode


def link_is_up(gpu: GPU, link: NVLinkConnection) -> bool:
    return link.is_active and not gpu.has_fallen_off_bus


def link_errors(link: NVLinkConnection) -> int:
    return link.tx_errors + link.rx_errors + link.replay_errors


@dataclass(frozen=True)
class GPULinks:
    """Link counts of one GPU as the fabric sees them."""
    gpu: GPU
    active: int
    down_links: tuple[int, ...]
    errors: int

    @property
    def present(self) -> bool:
        return not self.gpu.has_fallen_off_bus

    @property
    def total(self) -> int:
        return len(self.gpu.nvlinks)

    @property
    def down(self) -> int:
        return len(self.down_links)


def gpu_links(gpu: GPU) -> GPULinks:
    return GPULinks(
        gpu=gpu,
        active=sum(1 for link in gpu.nvlinks if link_is_up(gpu, link)),
        down_links=tuple(link.link_id for link in gpu.nvlinks if not link_is_up(gpu, link)),
        errors=sum(link_errors(link) for link in gpu.nvlinks),
    )


@dataclass(frozen=True)
class NodeFabric:
    """NVLink totals of one node."""
    gpus: tuple[GPULinks, ...] = field(default_factory=tuple)

    @property
    def detected_gpus(self) -> int:
        return sum(1 for g in self.gpus if g.present)

    @property
    def missing_gpus(self) -> list[int]:
        return [g.gpu.id for g in self.gpus if not g.present]

    @property
    def total_links(self) -> int:
        return sum(g.total for g in self.gpus)

    @property
    def active_links(self) -> int:
        return sum(g.active for g in self.gpus)

    @property
    def down_links(self) -> int:
        return sum(g.down for g in self.gpus)

    @property
    def link_errors(self) -> int:
        return sum(g.errors for g in self.gpus)

    @property
    def healthy(self) -> bool:
        return self.active_links == self.total_links and self.link_errors == 0


def node_fabric(node: DGXNode) -> NodeFabric:
    return NodeFabric(gpus=tuple(gpu_links(g) for g in node.gpus))
