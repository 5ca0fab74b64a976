"""Domain models for the patient assistant"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Union

from core.enums import IndexStatus, ProcessingStatus, QueryState, StreamEventType


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============= Documents & Patients =============

@dataclass
class PageSpan:
    """Character range of one page inside a document's extracted text."""
    page_number: int
    character_offset_start: int
    character_length: int

    def contains(self, offset: int) -> bool:
        return self.character_offset_start <= offset < self.character_offset_start + self.character_length

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PageSpan':
        return cls(
            page_number=int(data["page_number"]),
            character_offset_start=int(data["character_offset_start"]),
            character_length=int(data["character_length"]),
        )


@dataclass
class MedicalDocument:
    """Domain model for a stored patient document"""
    id: str
    patient_id: str
    owner_user_id: str
    original_name: str
    stored_filename: str
    status: ProcessingStatus = ProcessingStatus.QUEUED
    page_spans: List[PageSpan] = field(default_factory=list)
    error_message: Optional[str] = None


@dataclass
class FileMapping:
    """Links a file id assigned by the assistant service to our document id."""
    external_file_id: str
    internal_document_id: str
    display_name: str


@dataclass
class RetrievalIndex:
    """A patient's assistant session and vector store, plus the uploaded files."""
    session_id: str
    index_id: str
    status: IndexStatus = IndexStatus.READY
    mappings: List[FileMapping] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    last_updated: datetime = field(default_factory=utc_now)

    def find_by_document(self, document_id: str) -> Optional[FileMapping]:
        return next((m for m in self.mappings if m.internal_document_id == document_id), None)

    def find_by_external_file(self, external_file_id: str) -> Optional[FileMapping]:
        return next((m for m in self.mappings if m.external_file_id == external_file_id), None)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["last_updated"] = self.last_updated.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RetrievalIndex':
        return cls(
            session_id=data["session_id"],
            index_id=data["index_id"],
            status=IndexStatus(data.get("status", IndexStatus.READY.value)),
            mappings=[FileMapping(**m) for m in data.get("mappings", [])],
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utc_now(),
            last_updated=datetime.fromisoformat(data["last_updated"]) if data.get("last_updated") else utc_now(),
        )


@dataclass
class Patient:
    """Domain model for a patient and its retrieval index"""
    id: str
    owner_user_id: str
    name: str = ""
    retrieval_index: Optional[RetrievalIndex] = None


# ============= Queue & Rate Limiting =============

@dataclass
class QueueEntry:
    """A document waiting for ingestion, tagged with its owner context."""
    document_id: str
    owner_user_id: str
    owner_patient_id: str
    enqueued_at: datetime = field(default_factory=utc_now)


@dataclass
class QueueStats:
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    last_started_at: Optional[datetime] = None
    last_duration_seconds: Optional[float] = None


@dataclass
class RateBudget:
    """Process-wide token budget shared by every caller of the assistant service."""
    window_start_time: float
    tokens_consumed_in_window: int = 0
    concurrent_reservations: int = 0
    consecutive_throttle_count: int = 0


# ============= Sync Reports =============

@dataclass
class SyncReport:
    is_valid: bool
    missing_document_ids: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)


@dataclass
class RepairReport:
    repaired: List[str] = field(default_factory=list)
    unrepairable: Dict[str, str] = field(default_factory=dict)  # document_id -> reason


@dataclass
class IndexRepairSummary:
    is_valid: bool
    missing_count: int
    repaired: List[str] = field(default_factory=list)
    unrepairable: Dict[str, str] = field(default_factory=dict)


# ============= Assistant Service Payloads =============

@dataclass
class RunStatus:
    status: str
    last_error: Optional[str] = None


@dataclass
class Annotation:
    """A marker in the assistant's reply pointing at an uploaded file."""
    type: str
    text: str
    start_index: Optional[int]
    end_index: Optional[int]
    file_id: Optional[str] = None


@dataclass
class AssistantReply:
    text: str
    annotations: List[Annotation] = field(default_factory=list)


# ============= Query Results =============

@dataclass(frozen=True)
class Mapped:
    """Annotation file id found in the patient's file mappings."""
    document_id: str
    display_name: str


@dataclass(frozen=True)
class UnmappedFallback:
    """No mapping for the file id; identity guessed from the remote filename."""
    derived_id: str
    display_name: str


FileResolution = Union[Mapped, UnmappedFallback]


@dataclass
class Citation:
    document_id: str
    display_name: str
    page_number: int
    start_offset: int
    end_offset: int
    sequence_index: int
    mapped: bool = True
    error: Optional[str] = None


@dataclass
class QueryResult:
    response_text: str
    citations: List[Citation] = field(default_factory=list)
    state: QueryState = QueryState.COMPLETED
    thread_id: Optional[str] = None
    run_id: Optional[str] = None


@dataclass
class StreamEvent:
    type: StreamEventType
    data: Dict[str, Any] = field(default_factory=dict)
