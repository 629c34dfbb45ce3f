import typing
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sunsight_telemetry.api import router as api_router
from sunsight_telemetry.config import Settings
from sunsight_telemetry.errors import ConfigurationError
from sunsight_telemetry.logging_setup import setup_logging
from sunsight_telemetry.pipeline import Pipeline, build_pipeline

logger = structlog.get_logger("Main")


def create_app(
    settings: Settings | None = None,
    pipeline: Pipeline | None = None,
) -> FastAPI:
    """Build the API. A prebuilt pipeline skips the startup sequence."""
    settings = settings or (pipeline.settings if pipeline else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> typing.AsyncGenerator[None, None]:
        if pipeline is not None:
            app.state.pipeline = pipeline
        else:
            try:
                app.state.pipeline = build_pipeline(settings)
            except ConfigurationError:
                logger.exception("Startup failed: configuration error")
                raise
        logger.info("SunSight telemetry service started.")
        yield
        app.state.pipeline.store.engine.dispose()
        logger.info("SunSight telemetry service stopped.")

    app = FastAPI(
        title="SunSight Telemetry API",
        version="0.1.0",
        description="Weather-station ingestion and sky-image irradiance forecasting.",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api")

    @app.get("/")
    def root() -> dict[str, str]:
        return {"message": "Weather Tracker API is running."}

    return app


def main() -> None:
    settings = Settings()
    setup_logging(settings.log_level, settings.log_file)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
