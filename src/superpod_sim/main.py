"""Server entry point.

Reads configuration from the environment, sets up logging, metrics and
tracing, wires the simulator and serves the REST API with uvicorn.
"""

from __future__ import annotations

import uvicorn

from superpod_sim.adapters.inbound.rest_api import create_app
from superpod_sim.application.engine import SimulationEngine
from superpod_sim.infrastructure.config import get_config
from superpod_sim.infrastructure.container import build_container
from superpod_sim.infrastructure.logging import get_logger, setup_logging
from superpod_sim.infrastructure.metrics import setup_metrics
from superpod_sim.infrastructure.tracing import get_tracer, setup_tracing


def main() -> None:
    config = get_config()
    setup_logging(config.observability.log_level, config.observability.log_format)
    logger = get_logger(__name__)

    metrics = setup_metrics(config.server.metrics_port, serve=config.server.serve_metrics)
    metrics.info.info({"cluster": config.cluster.name, "system_type": config.cluster.system_type})
    tracer = setup_tracing(config) if config.observability.enable_tracing else get_tracer()

    container = build_container(config, metrics=metrics, tracer=tracer)
    engine = container.resolve(SimulationEngine)
    engine.stats()
    if config.drift.enabled:
        engine.start_drift()

    logger.info(
        "superpod_sim_starting",
        host=config.server.host,
        port=config.server.http_port,
        nodes=config.cluster.node_count,
        drift=config.drift.enabled,
    )
    try:
        uvicorn.run(
            create_app(engine),
            host=config.server.host,
            port=config.server.http_port,
            log_config=None,
        )
    finally:
        engine.stop_drift()


if __name__ == "__main__":
    main()
