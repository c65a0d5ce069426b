import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from debugforce import __version__
from debugforce.api.routes import health, sessions
from debugforce.application.factory import DebugForceFactory
from debugforce.application.log_setup import setup_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the orchestrator on startup and cancel live sessions on shutdown."""
    setup_logging()

    if getattr(app.state, "orchestrator", None) is None:
        factory = DebugForceFactory(config_dir=os.getenv("DEBUGFORCE_CONFIG_DIR", "configs"))
        app.state.orchestrator = factory.create_orchestrator(
            profile=os.getenv("DEBUGFORCE_PROFILE", "dev")
        )

    await logger.ainfo("fastapi.startup", message="debugforce API starting...")
    yield
    await logger.ainfo("fastapi.shutdown", message="debugforce API shutting down...")

    await app.state.orchestrator.close()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    app = FastAPI(
        title="debugforce API",
        description="Parallel hypothesis-driven debugging sessions",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions.router, prefix="/api/v1", tags=["sessions"])
    app.include_router(health.router, tags=["health"])

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("DEBUGFORCE_PORT", "8070")))


if __name__ == "__main__":
    main()
