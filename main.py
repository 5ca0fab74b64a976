# main.py
"""Main application: wires the services and runs the ingestion worker"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from config import settings
from services.logger_config import setup_logging
from database.session import init_models
from api.endpoints import router
from services.factory import build_patient_assistant_service, get_event_bus

setup_logging()
logger = logging.getLogger(settings.LOGGER_NAME)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting application...")

    # Database initialization
    await init_models()

    event_bus = get_event_bus()
    service = build_patient_assistant_service(event_emitter=event_bus)
    app.state.event_bus = event_bus
    app.state.assistant_service = service
    service.queue.start()
    logger.info("Services initialized")
    yield

    # Let the in-flight document finish before shutting down
    logger.info("Stopping ingestion queue...")
    await service.queue.stop()

    logger.info("Application shutdown complete")

app = FastAPI(
    title=settings.APP_TITLE,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

app.include_router(router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
