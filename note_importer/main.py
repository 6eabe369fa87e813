from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from note_importer import __version__
from note_importer.api import metrics, queue
from note_importer.config import settings
from note_importer.core.error_handlers import register_exception_handlers
from note_importer.core.logging_config import get_logger, setup_logging
from note_importer.pipeline import ImportPipeline

logger = get_logger(__name__)


def create_app(pipeline: Optional[ImportPipeline] = None) -> FastAPI:
    """
    Build the operator API around ``pipeline``.

    When the pipeline has its extraction, analysis and upload collaborators
    wired in, both stages run for the lifetime of the app; otherwise the API
    only inspects and maintains the persisted queue.
    """
    if pipeline is None:
        setup_logging(log_level=settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
        pipeline = ImportPipeline()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if pipeline.can_process:
            await pipeline.start()
        if pipeline.metrics:
            pipeline.metrics.set_build_info(__version__)
        logger.info("Note Importer API started")
        try:
            yield
        finally:
            if pipeline.can_process:
                await pipeline.stop()
            logger.info("Note Importer API stopped")

    app = FastAPI(
        title="Note Importer",
        description="Operator API for the two-stage note import queue",
        version=__version__,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "queue", "description": "Queue inspection and maintenance"},
            {"name": "metrics", "description": "Prometheus metrics"},
            {"name": "health", "description": "Liveness check"},
        ]
    )
    app.state.pipeline = pipeline

    register_exception_handlers(app)

    app.include_router(queue.router)
    app.include_router(metrics.router)

    @app.get("/health", tags=["health"])
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "processing": pipeline.can_process,
            "upload_worker_running": pipeline.upload_worker.is_running,
        }

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("note_importer.main:create_app", factory=True, host=settings.api_host, port=settings.api_port)
