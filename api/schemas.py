# api/schemas.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

class QueryRequest(BaseModel):
    owner_user_id: str
    question: str = Field(min_length=3, max_length=2000)
    include_citation_markers: bool = False

class CitationItem(BaseModel):
    document_id: str
    display_name: str
    page_number: int
    start_offset: int
    end_offset: int
    sequence_index: int
    mapped: bool = True
    error: Optional[str] = None

class QueryResponse(BaseModel):
    response_text: str
    citations: List[CitationItem]
    thread_id: Optional[str] = None
    run_id: Optional[str] = None

class ProcessDocumentResponse(BaseModel):
    document_id: str
    status: Literal["queued", "already_queued"]

class IndexRepairResponse(BaseModel):
    is_valid: bool
    missing_count: int
    repaired: List[str] = []
    unrepairable: Dict[str, str] = {}

class DeleteResponse(BaseModel):
    status: str
    message: str

class EventItem(BaseModel):
    event: str
    patient_id: str
    payload: Dict[str, Any]
    timestamp: str

class EventsResponse(BaseModel):
    events: List[EventItem]

class StatusResponse(BaseModel):
    queue: Dict[str, Any]
    rate_limit: Dict[str, Any]
