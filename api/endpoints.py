# api/endpoints.py
"""
API endpoints for the patient document assistant.

SECURITY NOTE:
==================================
There is no authentication layer here. The owning user id is passed
explicitly by the caller and only scopes lookups in the document store.
An auth middleware must supply it before production deployment.
==================================
"""
import json
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from api.schemas import (
    DeleteResponse,
    EventsResponse,
    IndexRepairResponse,
    ProcessDocumentResponse,
    QueryRequest,
    QueryResponse,
    StatusResponse,
)
from core.enums import QueryState
from core.exceptions import (
    AssistantServiceError, AssistantThrottledError, EntityNotFoundError,
    PatientAssistantError, QueryFailedError
)
from core.interfaces import IPatientAssistantService
from infrastructure.event_bus import InMemoryEventBus
from services.factory import get_events, get_patient_assistant_service

router = APIRouter()


# ---------- Helper: map application errors to HTTP ----------
def _http_error(e: PatientAssistantError) -> HTTPException:
    if isinstance(e, EntityNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, QueryFailedError):
        code = 504 if e.state == QueryState.TIMED_OUT else 502
        return HTTPException(status_code=code, detail=str(e))
    if isinstance(e, AssistantThrottledError):
        return HTTPException(status_code=429, detail=str(e))
    if isinstance(e, AssistantServiceError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# ---------- Ingestion ----------
@router.post(
    "/patients/{patient_id}/documents/{document_id}/process",
    response_model=ProcessDocumentResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def process_document(
    patient_id: str,
    document_id: str,
    owner_user_id: str = Query(...),
    service: IPatientAssistantService = Depends(get_patient_assistant_service),
) -> ProcessDocumentResponse:
    accepted = service.enqueue_for_processing(document_id, owner_user_id, patient_id)
    return ProcessDocumentResponse(
        document_id=document_id,
        status="queued" if accepted else "already_queued",
    )


# ---------- Query (buffered) ----------
@router.post("/patients/{patient_id}/query", response_model=QueryResponse)
async def query_patient(
    patient_id: str,
    query: QueryRequest,
    request: Request,
    service: IPatientAssistantService = Depends(get_patient_assistant_service),
) -> QueryResponse:
    try:
        result = await service.run_query(
            patient_id,
            query.owner_user_id,
            query.question,
            include_citation_markers=query.include_citation_markers,
            is_disconnected=request.is_disconnected,
        )
    except PatientAssistantError as e:
        raise _http_error(e)

    return QueryResponse(
        response_text=result.response_text,
        citations=[asdict(c) for c in result.citations],
        thread_id=result.thread_id,
        run_id=result.run_id,
    )


# ---------- Query (Server-Sent Events) ----------
@router.post("/patients/{patient_id}/query/stream")
async def stream_query_patient(
    patient_id: str,
    query: QueryRequest,
    request: Request,
    service: IPatientAssistantService = Depends(get_patient_assistant_service),
) -> StreamingResponse:
    events = await service.run_query(
        patient_id,
        query.owner_user_id,
        query.question,
        streaming=True,
        include_citation_markers=query.include_citation_markers,
        is_disconnected=request.is_disconnected,
    )

    async def event_source():
        async for event in events:
            yield f"event: {event.type.value}\ndata: {json.dumps(event.data)}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ---------- Index maintenance ----------
@router.post("/patients/{patient_id}/index/validate", response_model=IndexRepairResponse)
async def validate_index(
    patient_id: str,
    owner_user_id: str = Query(...),
    service: IPatientAssistantService = Depends(get_patient_assistant_service),
) -> IndexRepairResponse:
    try:
        summary = await service.validate_and_repair_index(patient_id, owner_user_id)
    except PatientAssistantError as e:
        raise _http_error(e)
    return IndexRepairResponse(**asdict(summary))


@router.delete("/patients/{patient_id}/documents/{document_id}/index", response_model=DeleteResponse)
async def remove_document_from_index(
    patient_id: str,
    document_id: str,
    owner_user_id: str = Query(...),
    service: IPatientAssistantService = Depends(get_patient_assistant_service),
) -> DeleteResponse:
    try:
        clean = await service.remove_document(patient_id, owner_user_id, document_id)
    except PatientAssistantError as e:
        raise _http_error(e)
    if clean:
        return DeleteResponse(status="success", message="Document removed from index")
    return DeleteResponse(status="partial", message="Document removed from index; remote cleanup incomplete")


@router.post("/patients/{patient_id}/index/clear", response_model=DeleteResponse)
async def clear_patient_index(
    patient_id: str,
    owner_user_id: str = Query(...),
    service: IPatientAssistantService = Depends(get_patient_assistant_service),
) -> DeleteResponse:
    try:
        cleared = await service.clear_index(patient_id, owner_user_id)
    except PatientAssistantError as e:
        raise _http_error(e)
    if cleared:
        return DeleteResponse(status="success", message="Retrieval index cleared")
    return DeleteResponse(status="success", message="No retrieval index to clear")


# ---------- Status events (polling) ----------
@router.get("/patients/{patient_id}/events", response_model=EventsResponse)
async def get_patient_events(
    patient_id: str,
    event_bus: InMemoryEventBus = Depends(get_events),
) -> EventsResponse:
    return EventsResponse(events=event_bus.recent(patient_id))


# ---------- Service status ----------
@router.get("/status", response_model=StatusResponse)
async def get_status(
    service: IPatientAssistantService = Depends(get_patient_assistant_service),
) -> StatusResponse:
    return StatusResponse(**service.queue_status())
