"""Pytest configuration and shared fixtures."""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from core.domain import (
    AssistantReply, MedicalDocument, PageSpan, Patient, RunStatus
)
from core.exceptions import AssistantNotFoundError
from core.interfaces import IAssistantService, IDocumentStore, IEventEmitter, IFileStorage
from services.query_resolver import QueryResolver
from services.rate_limiter import TokenRateLimiter
from services.vector_store_sync import VectorStoreSynchronizer

OWNER = "user-1"
PATIENT = "patient-1"


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeAssistantService(IAssistantService):
    """In-memory stand-in for the Assistants API that records every call."""

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []
        self.sessions: Dict[str, Optional[str]] = {}  # session id -> bound index id
        self.indexes: Dict[str, List[str]] = {}  # index id -> attached file ids
        self.files: Dict[str, str] = {}  # file id -> filename
        self.messages: Dict[str, List[str]] = {}
        self.run_statuses: List[RunStatus] = [RunStatus(status="completed")]
        self.reply: Optional[AssistantReply] = AssistantReply(text="")
        self._failures: Dict[str, List[Exception]] = {}
        self._counter = 0

    def fail_next(self, method: str, *errors: Exception) -> None:
        self._failures.setdefault(method, []).extend(errors)

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def called(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    async def create_session(self, name: str) -> str:
        self._record("create_session", name)
        session_id = self._next_id("asst")
        self.sessions[session_id] = None
        return session_id

    async def delete_session(self, session_id: str) -> None:
        self._record("delete_session", session_id)
        if session_id not in self.sessions:
            raise AssistantNotFoundError(f"Assistant {session_id} not found", status_code=404)
        del self.sessions[session_id]

    async def create_index(self, name: str) -> str:
        self._record("create_index", name)
        index_id = self._next_id("vs")
        self.indexes[index_id] = []
        return index_id

    async def delete_index(self, index_id: str) -> None:
        self._record("delete_index", index_id)
        if index_id not in self.indexes:
            raise AssistantNotFoundError(f"Vector store {index_id} not found", status_code=404)
        del self.indexes[index_id]

    async def bind_index(self, session_id: str, index_id: str) -> None:
        self._record("bind_index", session_id, index_id)
        self.sessions[session_id] = index_id

    async def upload_file(self, filename: str, content: bytes) -> str:
        self._record("upload_file", filename, content)
        file_id = self._next_id("file")
        self.files[file_id] = filename
        return file_id

    async def attach_file(self, index_id: str, file_id: str) -> None:
        self._record("attach_file", index_id, file_id)
        self.indexes.setdefault(index_id, []).append(file_id)

    async def detach_file(self, index_id: str, file_id: str) -> None:
        self._record("detach_file", index_id, file_id)
        attached = self.indexes.get(index_id, [])
        if file_id not in attached:
            raise AssistantNotFoundError(f"File {file_id} not in {index_id}", status_code=404)
        attached.remove(file_id)

    async def delete_file(self, file_id: str) -> None:
        self._record("delete_file", file_id)
        if file_id not in self.files:
            raise AssistantNotFoundError(f"File {file_id} not found", status_code=404)
        del self.files[file_id]

    async def get_file_name(self, file_id: str) -> str:
        self._record("get_file_name", file_id)
        if file_id not in self.files:
            raise AssistantNotFoundError(f"File {file_id} not found", status_code=404)
        return self.files[file_id]

    async def create_thread(self) -> str:
        self._record("create_thread")
        thread_id = self._next_id("thread")
        self.messages[thread_id] = []
        return thread_id

    async def add_message(self, thread_id: str, content: str) -> None:
        self._record("add_message", thread_id, content)
        self.messages[thread_id].append(content)

    async def start_run(self, thread_id: str, session_id: str) -> str:
        self._record("start_run", thread_id, session_id)
        return self._next_id("run")

    async def get_run(self, thread_id: str, run_id: str) -> RunStatus:
        self._record("get_run", thread_id, run_id)
        if len(self.run_statuses) > 1:
            return self.run_statuses.pop(0)
        return self.run_statuses[0]

    async def get_last_reply(self, thread_id: str) -> Optional[AssistantReply]:
        self._record("get_last_reply", thread_id)
        return self.reply


class InMemoryDocumentStore(IDocumentStore):
    """Copies on the way in and out, like a real database would."""

    def __init__(self):
        self.patients: Dict[str, Patient] = {}
        self.documents: Dict[str, MedicalDocument] = {}
        self.document_updates: List[Tuple[str, str]] = []  # (document id, status)

    def add_patient(self, patient: Patient) -> None:
        self.patients[patient.id] = copy.deepcopy(patient)

    def add_document(self, document: MedicalDocument) -> None:
        self.documents[document.id] = copy.deepcopy(document)

    async def get_patient(self, owner_user_id: str, patient_id: str) -> Optional[Patient]:
        patient = self.patients.get(patient_id)
        if patient is None or patient.owner_user_id != owner_user_id:
            return None
        return copy.deepcopy(patient)

    async def update_patient(self, patient: Patient) -> None:
        self.patients[patient.id] = copy.deepcopy(patient)

    async def get_document(self, owner_user_id: str, patient_id: str,
                           document_id: str) -> Optional[MedicalDocument]:
        doc = self.documents.get(document_id)
        if doc is None or doc.owner_user_id != owner_user_id or doc.patient_id != patient_id:
            return None
        return copy.deepcopy(doc)

    async def get_documents_for_patient(self, owner_user_id: str,
                                        patient_id: str) -> List[MedicalDocument]:
        return [
            copy.deepcopy(d) for d in self.documents.values()
            if d.owner_user_id == owner_user_id and d.patient_id == patient_id
        ]

    async def update_document(self, document: MedicalDocument) -> None:
        self.document_updates.append((document.id, document.status.value))
        self.documents[document.id] = copy.deepcopy(document)


class FakeFileStorage(IFileStorage):
    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self.files = dict(files or {})

    async def read(self, stored_filename: str) -> Optional[bytes]:
        return self.files.get(stored_filename)

    async def get_path(self, stored_filename: str) -> Optional[str]:
        return f"/uploads/{stored_filename}" if stored_filename in self.files else None


class RecordingEmitter(IEventEmitter):
    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    def notify(self, patient_id: str, event_name: str, payload: Dict[str, Any]) -> None:
        self.events.append((patient_id, event_name, dict(payload)))

    def statuses(self, document_id: str) -> List[str]:
        return [p["status"] for _, _, p in self.events if p.get("document_id") == document_id]


def make_document(document_id: str, original_name: str = "report.pdf",
                  page_spans: Optional[List[PageSpan]] = None) -> MedicalDocument:
    return MedicalDocument(
        id=document_id,
        patient_id=PATIENT,
        owner_user_id=OWNER,
        original_name=original_name,
        stored_filename=f"{document_id}.pdf",
        page_spans=page_spans or [],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(clock: FakeClock) -> TokenRateLimiter:
    return TokenRateLimiter(tokens_per_minute=10_000, clock=clock, sleep=clock.sleep)


@pytest.fixture
def assistant() -> FakeAssistantService:
    return FakeAssistantService()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    store = InMemoryDocumentStore()
    store.add_patient(Patient(id=PATIENT, owner_user_id=OWNER, name="Jane Doe"))
    return store


@pytest.fixture
def file_storage() -> FakeFileStorage:
    return FakeFileStorage()


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def synchronizer(assistant, store, file_storage, rate_limiter, emitter) -> VectorStoreSynchronizer:
    return VectorStoreSynchronizer(
        assistant=assistant,
        document_store=store,
        file_storage=file_storage,
        rate_limiter=rate_limiter,
        event_emitter=emitter,
    )


@pytest.fixture
def resolver(assistant, store, rate_limiter, clock) -> QueryResolver:
    return QueryResolver(
        assistant=assistant,
        document_store=store,
        rate_limiter=rate_limiter,
        poll_interval=1.0,
        max_attempts=5,
        citation_instruction="Cite inline.",
        stream_chunk_size=20,
        sleep=clock.sleep,
    )
