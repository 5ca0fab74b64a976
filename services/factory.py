# services/factory.py
"""Composition of the long-lived services (built once per process)"""
from typing import Optional

from fastapi import Request

from config import settings
from core.interfaces import (
    IAssistantService, IDocumentStore, IEventEmitter, IFileStorage, IPatientAssistantService
)
from infrastructure.event_bus import InMemoryEventBus
from infrastructure.file_storage import LocalFileStorage
from infrastructure.openai_assistant import OpenAIAssistantService, build_client
from infrastructure.repositories import SQLDocumentStore
from services.ingestion_queue import IngestionQueue
from services.patient_assistant_service import PatientAssistantService
from services.query_resolver import QueryResolver
from services.rate_limiter import TokenRateLimiter
from services.vector_store_sync import VectorStoreSynchronizer

# Provider functions for each component
def get_assistant_backend() -> IAssistantService:
    """Create the assistant service client based on configuration."""
    return OpenAIAssistantService(
        client=build_client(),
        model=settings.ASSISTANT_MODEL,
        instructions=settings.ASSISTANT_INSTRUCTIONS,
        max_num_results=settings.FILE_SEARCH_MAX_RESULTS,
        score_threshold=settings.FILE_SEARCH_SCORE_THRESHOLD,
        ranker=settings.FILE_SEARCH_RANKER,
    )

def get_document_store() -> IDocumentStore:
    return SQLDocumentStore()

def get_file_storage() -> IFileStorage:
    """Create file storage based on configuration."""
    return LocalFileStorage(base_path=settings.UPLOADS_DIR)

def get_event_bus() -> InMemoryEventBus:
    return InMemoryEventBus(history_limit=settings.EVENT_HISTORY_LIMIT)

def get_rate_limiter() -> TokenRateLimiter:
    """One limiter per process: ingestion and queries share its budget."""
    return TokenRateLimiter(
        tokens_per_minute=settings.RATE_LIMIT_TOKENS_PER_MINUTE,
        safety_margin=settings.RATE_LIMIT_SAFETY_MARGIN,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        backoff_base=settings.RATE_LIMIT_BACKOFF_BASE_SECONDS,
        backoff_max=settings.RATE_LIMIT_BACKOFF_MAX_SECONDS,
        max_retries=settings.RATE_LIMIT_MAX_RETRIES,
    )


def build_patient_assistant_service(
    assistant: Optional[IAssistantService] = None,
    document_store: Optional[IDocumentStore] = None,
    file_storage: Optional[IFileStorage] = None,
    event_emitter: Optional[IEventEmitter] = None,
    rate_limiter: Optional[TokenRateLimiter] = None,
) -> PatientAssistantService:
    """
    Wire the core services. Any collaborator left as None is created from
    configuration, so tests can pass fakes for just the parts they need.
    """
    assistant = assistant or get_assistant_backend()
    document_store = document_store or get_document_store()
    file_storage = file_storage or get_file_storage()
    event_emitter = event_emitter or get_event_bus()
    rate_limiter = rate_limiter or get_rate_limiter()

    synchronizer = VectorStoreSynchronizer(
        assistant=assistant,
        document_store=document_store,
        file_storage=file_storage,
        rate_limiter=rate_limiter,
        event_emitter=event_emitter,
    )
    queue = IngestionQueue(
        document_store=document_store,
        synchronizer=synchronizer,
        event_emitter=event_emitter,
        maxsize=settings.INGESTION_QUEUE_MAXSIZE,
    )
    resolver = QueryResolver(
        assistant=assistant,
        document_store=document_store,
        rate_limiter=rate_limiter,
        poll_interval=settings.QUERY_POLL_INTERVAL_SECONDS,
        max_attempts=settings.QUERY_MAX_POLL_ATTEMPTS,
        citation_instruction=settings.CITATION_INSTRUCTION,
        stream_chunk_size=settings.STREAM_CHUNK_SIZE,
    )
    return PatientAssistantService(
        queue=queue,
        synchronizer=synchronizer,
        resolver=resolver,
        rate_limiter=rate_limiter,
    )


# FastAPI dependencies: the instances are created in the app lifespan
def get_patient_assistant_service(request: Request) -> IPatientAssistantService:
    return request.app.state.assistant_service

def get_events(request: Request) -> InMemoryEventBus:
    return request.app.state.event_bus
