"""Application factory: logging, configuration and the reconciler lifespan."""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import os
import logging

import structlog

from informarr.config import get_config, init_config
from informarr.errors import ConfigError, InformarrError
from informarr.core.orchestrator import create_orchestrator
from informarr.api.routes import router
from informarr.scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """stdlib logging, with structlog events routed through it."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"], sort_keys=True),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def find_config_path() -> str:
    """CONFIG_PATH first, then the Docker mount, then the working directory."""
    candidates = [
        os.getenv("CONFIG_PATH"),
        "/config/config.yaml",
        os.path.join("config", "config.yaml"),
    ]
    for path in candidates:
        if path and os.path.exists(path):
            return path

    tried = ", ".join(p for p in candidates if p)
    raise ConfigError(
        f"No configuration file found (tried {tried}). "
        f"Copy config.example.yaml to config/config.yaml or set CONFIG_PATH."
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    orchestrator = await create_orchestrator(config)
    app.state.orchestrator = orchestrator
    start_scheduler(orchestrator, config.scheduler)
    try:
        yield
    finally:
        await stop_scheduler()


def create_app() -> FastAPI:
    setup_logging()
    config_path = find_config_path()
    logger.info(f"Loading configuration from: {config_path}")
    config = init_config(config_path)
    setup_logging(config.app.log_level)

    app = FastAPI(title="Informarr", version="1.0.0", lifespan=lifespan)
    app.include_router(router)

    @app.exception_handler(InformarrError)
    async def informarr_error_handler(request: Request, exc: InformarrError):
        logger.exception(f"{exc.__class__.__name__} while serving {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"error": str(exc), "type": exc.__class__.__name__},
        )

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"message": "Informarr API"}

    return app
