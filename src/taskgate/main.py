"""TaskGate main application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from taskgate.api.router import VERSION, router, taskgate_error_handler
from taskgate.config import Settings, settings
from taskgate.engine.errors import TaskGateError
from taskgate.runtime import Runtime, build_runtime

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("taskgate")


def create_app(
    app_settings: Settings | None = None,
    runtime: Runtime | None = None,
    run_workers: bool = True,
) -> FastAPI:
    """Build the application; a prebuilt runtime replaces the one from settings."""
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting TaskGate server...")
        logger.info(f"Environment: {app_settings.env.value}")

        app.state.runtime = runtime or build_runtime(app_settings)
        await app.state.runtime.start(run_workers=run_workers)
        logger.info(
            "Registered task types: %s",
            ", ".join(definition.task_type for definition in app.state.runtime.registry.task_types()),
        )

        yield

        logger.info("Shutting down TaskGate server...")
        await app.state.runtime.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="TaskGate",
        description="Billable task orchestration with credit reservation and approval",
        version=VERSION,
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime
    app.add_exception_handler(TaskGateError, taskgate_error_handler)
    app.include_router(router)
    return app


app = create_app()


def main():
    """Entry point for the application."""
    uvicorn.run(
        "taskgate.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
