"""FastAPI REST adapter for the SuperPOD simulator.

Provides HTTP endpoints for running commands, injecting and clearing
faults, and managing cluster state.

Usage:
    from superpod_sim.adapters.inbound.rest_api import create_app

    app = create_app(engine)
    # Run with: superpod-sim, or uvicorn module:app --host 0.0.0.0 --port 8080

References:
    - ports/inbound/api.py (SuperPODSimulatorAPI interface)
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from superpod_sim import __version__
from superpod_sim.domain.entities.command import CommandContext
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.exceptions import ClusterValidationError, NotFoundError
from superpod_sim.ports.inbound.api import SuperPODSimulatorAPI


class CommandRequest(BaseModel):
    """A terminal line to run."""

    command: str = Field(..., max_length=4096, description="Command line as typed")
    node: Optional[str] = Field(default=None, description="Node to run on; defaults to the session node")


class CommandResponse(BaseModel):
    """Command output."""

    output: str
    exit_code: int
    node: str


class FaultRequest(BaseModel):
    """Fault to inject."""

    node_id: str = Field(..., min_length=1)
    gpu_id: int = Field(..., ge=0)
    kind: str = Field(..., description="xid, ecc, thermal, nvlink, power or pcie")
    xid_code: Optional[int] = Field(default=None, description="Catalogued XID code for kind=xid")


class ClearFaultsRequest(BaseModel):
    """GPU to clear. Omit both fields to clear every GPU."""

    node_id: Optional[str] = None
    gpu_id: Optional[int] = Field(default=None, ge=0)


class GPUStateResponse(BaseModel):
    """GPU state after an operator action."""

    node_id: str
    gpu_id: int
    health_status: str
    temperature: float
    power_draw: float
    xid_errors: list[int]


class SlurmStateRequest(BaseModel):
    """Scheduler state update."""

    state: str = Field(..., description="idle, alloc, mix, drain or down")
    reason: Optional[str] = None


class NodeStateResponse(BaseModel):
    """Node scheduler state."""

    node_id: str
    slurm_state: str
    slurm_reason: Optional[str]
    health_status: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    cluster: str
    total_nodes: int
    total_gpus: int
    drift_running: bool


def _gpu_response(node_id: str, gpu: GPU) -> GPUStateResponse:
    return GPUStateResponse(
        node_id=node_id,
        gpu_id=gpu.id,
        health_status=gpu.health_status.value,
        temperature=gpu.temperature,
        power_draw=gpu.power_draw,
        xid_errors=[x.code for x in gpu.xid_errors],
    )


def create_app(engine: SuperPODSimulatorAPI) -> FastAPI:
    """Create FastAPI application with simulator endpoints.

    Args:
        engine: Simulator API, normally a SimulationEngine.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="DGX SuperPOD Simulator API",
        description="Stateful DGX SuperPOD emulator with fault injection",
        version=__version__,
    )

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Check simulator health."""
        stats = engine.stats()
        return HealthResponse(
            status="healthy",
            cluster=engine.snapshot().name,
            total_nodes=stats.total_nodes,
            total_gpus=stats.total_gpus,
            drift_running=engine.drift_running,
        )

    @app.get("/stats", response_model=dict, tags=["Cluster"])
    async def get_cluster_stats():
        """Get cluster-wide statistics."""
        return engine.stats().to_dict()

    @app.get("/commands", response_model=list[str], tags=["Commands"])
    async def list_commands():
        """List every command the simulator understands."""
        return engine.commands

    @app.post("/commands", response_model=CommandResponse, tags=["Commands"])
    async def run_command(request: CommandRequest):
        """Run one command line."""
        if request.node is None:
            ctx = engine.context
        elif engine.snapshot().find_node(request.node) is not None:
            ctx = CommandContext(current_node=request.node)
        else:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Node {request.node} not found"
            )
        result = engine.execute(request.command, ctx)
        return CommandResponse(output=result.output, exit_code=result.exit_code, node=ctx.current_node)

    @app.post("/faults", response_model=GPUStateResponse, tags=["Faults"])
    async def inject_fault(request: FaultRequest):
        """Inject a fault into one GPU."""
        try:
            if request.xid_code is not None:
                gpu = engine.add_xid_error(request.node_id, request.gpu_id, request.xid_code)
            else:
                gpu = engine.inject_fault(request.node_id, request.gpu_id, request.kind)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return _gpu_response(request.node_id, gpu)

    @app.post("/faults/clear", response_model=dict, tags=["Faults"])
    async def clear_faults(request: ClearFaultsRequest):
        """Restore one GPU, or every GPU, to the healthy baseline."""
        if request.node_id is None and request.gpu_id is None:
            return {"cleared": engine.clear_all_faults()}
        if request.node_id is None or request.gpu_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="node_id and gpu_id must be given together",
            )
        try:
            gpu = engine.clear_faults(request.node_id, request.gpu_id)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        return {"cleared": 1, "gpu": _gpu_response(request.node_id, gpu).model_dump()}

    @app.put("/nodes/{node_id}/slurm-state", response_model=NodeStateResponse, tags=["Cluster"])
    async def set_slurm_state(node_id: str, request: SlurmStateRequest):
        """Set a node's scheduler state."""
        try:
            node = engine.set_slurm_state(node_id, request.state.lower(), request.reason)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return NodeStateResponse(
            node_id=node.id,
            slurm_state=node.slurm_state.value,
            slurm_reason=node.slurm_reason,
            health_status=node.health_status.value,
        )

    @app.post("/cluster/reset", response_model=dict, tags=["Cluster"])
    async def reset_cluster():
        """Replace the cluster with a fresh default."""
        engine.reset_cluster()
        return {"status": "reset"}

    @app.get("/cluster/export", tags=["Cluster"])
    async def export_cluster():
        """Export the cluster as a JSON document."""
        return Response(content=engine.export_cluster(), media_type="application/json")

    @app.post("/cluster/import", response_model=dict, tags=["Cluster"])
    async def import_cluster(request: Request):
        """Replace the cluster from a JSON document in the request body."""
        body = await request.body()
        try:
            cluster = engine.import_cluster(body)
        except ClusterValidationError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors)
        return {"status": "imported", "name": cluster.name, "nodes": len(cluster.nodes)}

    @app.post("/drift/start", response_model=dict, tags=["Drift"])
    async def start_drift():
        """Start the background telemetry walk."""
        try:
            engine.start_drift()
        except RuntimeError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        return {"drift_running": engine.drift_running}

    @app.post("/drift/stop", response_model=dict, tags=["Drift"])
    async def stop_drift():
        """Stop the background telemetry walk."""
        engine.stop_drift()
        return {"drift_running": engine.drift_running}

    return app
