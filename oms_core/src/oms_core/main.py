"""Order Management Service entrypoint.

Bootstraps the pipeline from Hydra configuration (``conf/``), then runs
the worker pool and the HTTP edge in one event loop.

Usage:
    # Default config (in-memory backends, static market data)
    python -m oms_core.main

    # Redis-backed store and broker, HTTP market data
    python -m oms_core.main store=redis broker=redis market_data=http env=prod

    # Override pool sizing
    python -m oms_core.main worker.count=16 worker.max_redeliveries=3
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TYPE_CHECKING

import hydra
import structlog
import uvicorn
from omegaconf import OmegaConf

from oms_core.api.http import create_app
from oms_core.app import build_application
from oms_core.config import PipelineConfig

if TYPE_CHECKING:
    from omegaconf import DictConfig

# ==============================================================================
# Constants
# ==============================================================================
APP_NAME: str = "oms-core"
APP_VERSION: str = "0.1.0"


# ==============================================================================
# Logging Configuration
# ==============================================================================
def configure_logging(*, json_output: bool = True, log_level: str = "INFO") -> None:
    """Configure structlog.

    Args:
        json_output: If True, output JSON. If False, output human-readable logs.
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    # structlog wraps stdlib; uvicorn logs through stdlib too
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ==============================================================================
# Service Runner
# ==============================================================================
async def serve(cfg: DictConfig) -> None:
    """Build the container and serve HTTP until interrupted.

    Workers start and stop with the HTTP server's lifespan.
    """
    application = build_application(cfg)
    api_cfg = application.config.api
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(application, manage_lifecycle=True),
            host=api_cfg.host,
            port=api_cfg.port,
            log_config=None,
        )
    )
    await server.serve()


# ==============================================================================
# Application Bootstrap
# ==============================================================================
@hydra.main(version_base=None, config_path="../../../conf", config_name="main")
def main(cfg: DictConfig) -> None:
    """Hydra entrypoint.

    Args:
        cfg: Resolved configuration from Hydra.
    """
    config = PipelineConfig.from_cfg(cfg)
    configure_logging(
        json_output=config.json_logs,
        log_level="DEBUG" if config.debug else "INFO",
    )
    log = structlog.get_logger()

    log.info(
        "Initializing application",
        app=APP_NAME,
        version=APP_VERSION,
        env=config.env,
        debug=config.debug,
    )

    # Catch missing interpolations before anything connects
    try:
        OmegaConf.resolve(cfg)
    except Exception as e:
        log.error("Configuration resolution failed", error=str(e))
        raise

    try:
        asyncio.run(serve(cfg))
    except KeyboardInterrupt:
        log.info("Manual Shutdown Requested")

    log.info("Application shutdown complete", app=APP_NAME)


if __name__ == "__main__":
    main()
