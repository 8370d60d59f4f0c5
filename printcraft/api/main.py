"""
FastAPI application for the PrintCraft generation API.

This module sets up the FastAPI app with routes, middleware, and the
generation pipeline lifecycle.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from printcraft import __version__
from printcraft.config import config
from printcraft.pipeline import Pipeline
from printcraft.routes import generations_router, webhooks_router, admin_router
from printcraft.storage.local import LocalStorage
from printcraft.utils.logging import api_logger as logger, configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the pipeline (and optionally the worker pool) for the app's lifetime."""
    pipeline: Pipeline = app.state.pipeline
    await pipeline.start(run_workers=app.state.run_workers)

    logger.info(
        "PrintCraft API started",
        version=__version__,
        dev_mode=app.state.dev_mode,
        run_workers=app.state.run_workers,
        webhooks=bool(app.state.webhook_secret)
    )
    if app.state.dev_mode:
        logger.warning("DEV MODE: requests without X-User-Id act as the dev user")

    try:
        yield
    finally:
        logger.info("PrintCraft API shutting down")
        await pipeline.stop()


def create_app(
    pipeline: Optional[Pipeline] = None,
    dev_mode: Optional[bool] = None,
    run_workers: Optional[bool] = None,
    webhook_secret: Optional[str] = None
) -> FastAPI:
    """
    Build the API app.

    Arguments left as None are taken from the environment config.
    """
    if pipeline is None:
        pipeline = Pipeline.from_config(config)

    app = FastAPI(
        title="PrintCraft Generation API",
        description="Asynchronous image generation jobs with live progress",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.state.pipeline = pipeline
    app.state.dev_mode = config.DEV_MODE if dev_mode is None else dev_mode
    app.state.run_workers = config.RUN_WORKERS_IN_WEB if run_workers is None else run_workers
    app.state.webhook_secret = webhook_secret or config.REPLICATE_WEBHOOK_SECRET

    # CORS middleware for frontend access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(generations_router)
    app.include_router(webhooks_router)
    app.include_router(admin_router)

    # Serve locally stored artifacts
    if isinstance(pipeline.storage, LocalStorage):
        app.mount(
            "/images",
            StaticFiles(directory=pipeline.storage.root_dir, check_dir=False),
            name="images"
        )

    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint - must be fast and reliable."""
        current: Pipeline = request.app.state.pipeline
        return {
            "status": "healthy",
            "version": __version__,
            "provider": current.provider.name,
            "storage": current.storage.name,
            "workers_running": current.pool is not None,
            "concurrency_limit": current.settings.concurrency_limit,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error("Unhandled API error", path=request.url.path, error=str(exc), type=type(exc).__name__)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if app.state.dev_mode else "An error occurred",
                "type": type(exc).__name__
            }
        )

    return app


configure_logging(config.LOG_LEVEL)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "printcraft.api.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.LOG_LEVEL.lower()
    )
