# services/query_resolver.py
"""Runs a question against a patient's assistant and resolves page citations"""
import asyncio
import logging
from dataclasses import asdict
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from config import settings
from core.domain import (
    Annotation, Citation, FileResolution, Mapped, PageSpan, Patient, QueryResult,
    StreamEvent, UnmappedFallback
)
from core.enums import RUN_COMPLETED, RUN_TERMINAL_FAILURES, QueryState, StreamEventType
from core.exceptions import (
    AssistantServiceError, PatientAssistantError, PatientNotFoundError, QueryAbandonedError,
    QueryFailedError, RetrievalIndexNotFoundError, StorageError
)
from core.interfaces import DisconnectCheck, IAssistantService, IDocumentStore
from services.rate_limiter import TokenRateLimiter, estimate_tokens
from utils.common import derive_document_id

logger = logging.getLogger(settings.LOGGER_NAME)

T = TypeVar("T")

FILE_CITATION = "file_citation"
_WHITESPACE = (" ", "\n", "\t", "\r")


def resolve_page(spans: List[PageSpan], offset: int) -> int:
    """Page whose span contains `offset`; page 1 when nothing matches."""
    for span in spans:
        if span.contains(offset):
            return span.page_number
    if spans:
        logger.warning(f"[QUERY] Offset {offset} outside all {len(spans)} page spans, defaulting to page 1")
    else:
        logger.warning(f"[QUERY] No page spans for offset {offset}, defaulting to page 1")
    return 1


def chunk_text(text: str, size: int) -> List[str]:
    """
    Split text into pieces of at most `size` characters, cutting after the
    last whitespace inside the window when there is one. Joining the pieces
    gives back the original text.
    """
    if size <= 0:
        raise ValueError("size must be positive")
    chunks = []
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        if end < len(text):
            cut = max(text.rfind(ch, start, end) for ch in _WHITESPACE)
            if cut > start:
                end = cut + 1
        chunks.append(text[start:end])
        start = end
    return chunks


class QueryResolver:
    """
    One query = one thread and one run on the patient's assistant.

    CREATED: thread opened, question posted, run started.
    RUNNING: run polled every `poll_interval` seconds, at most `max_attempts` times.
    COMPLETED: reply read and its file citations mapped to document pages.
    FAILED / TIMED_OUT: a single QueryFailedError, no partial citations.
    """

    def __init__(
        self,
        assistant: IAssistantService,
        document_store: IDocumentStore,
        rate_limiter: TokenRateLimiter,
        poll_interval: float = 1.0,
        max_attempts: int = 60,
        citation_instruction: Optional[str] = None,
        stream_chunk_size: int = 300,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.assistant = assistant
        self.document_store = document_store
        self.rate_limiter = rate_limiter
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.citation_instruction = citation_instruction
        self.stream_chunk_size = stream_chunk_size
        self._sleep = sleep

    async def _call(self, operation: Callable[[], Awaitable[T]], operation_name: str) -> T:
        return await self.rate_limiter.execute_with_retry(operation, operation_name)

    # ============= Call shapes =============

    async def run_query(
        self,
        owner_user_id: str,
        patient_id: str,
        question: str,
        include_citation_markers: bool = False,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> QueryResult:
        """Wait for the run to finish and return the text with its citations."""
        patient, thread_id, run_id = await self._start(owner_user_id, patient_id, question, include_citation_markers)
        await self._await_run(thread_id, run_id, is_disconnected)
        return await self._collect(patient, thread_id, run_id)

    async def stream_query(
        self,
        owner_user_id: str,
        patient_id: str,
        question: str,
        include_citation_markers: bool = False,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Same state machine, delivered as events: content chunks, then one
        citation event per citation, then a single done or error event.
        Nothing more is polled or yielded once the caller has disconnected.
        """
        try:
            patient, thread_id, run_id = await self._start(
                owner_user_id, patient_id, question, include_citation_markers
            )
            await self._await_run(thread_id, run_id, is_disconnected)
            result = await self._collect(patient, thread_id, run_id)
        except QueryAbandonedError as e:
            logger.info(f"[QUERY] {e}; stream closed")
            return
        except PatientAssistantError as e:
            logger.error(f"[QUERY] Streaming query for patient {patient_id} failed: {e}")
            state = e.state if isinstance(e, QueryFailedError) else QueryState.FAILED
            yield StreamEvent(StreamEventType.ERROR, {"message": str(e), "state": state.value})
            return
        except Exception as e:
            logger.exception(f"[QUERY] Unexpected error while streaming query for patient {patient_id}: {e}")
            yield StreamEvent(StreamEventType.ERROR, {"message": "Internal error", "state": QueryState.FAILED.value})
            return

        for chunk in chunk_text(result.response_text, self.stream_chunk_size):
            if is_disconnected is not None and await is_disconnected():
                logger.info(f"[QUERY] Caller disconnected during streaming of run {run_id}")
                return
            yield StreamEvent(StreamEventType.CONTENT, {"text": chunk})

        for citation in result.citations:
            yield StreamEvent(StreamEventType.CITATION, asdict(citation))

        yield StreamEvent(StreamEventType.DONE, {
            "thread_id": result.thread_id,
            "run_id": result.run_id,
            "citation_count": len(result.citations),
        })

    # ============= State machine =============

    async def _start(self, owner_user_id: str, patient_id: str, question: str,
                     include_citation_markers: bool) -> Tuple[Patient, str, str]:
        patient = await self.document_store.get_patient(owner_user_id, patient_id)
        if patient is None:
            raise PatientNotFoundError(patient_id)
        index = patient.retrieval_index
        if index is None:
            raise RetrievalIndexNotFoundError(patient_id)

        instruction = self.citation_instruction if include_citation_markers else None
        await self.rate_limiter.reserve(estimate_tokens(question) + estimate_tokens(instruction or ""))

        thread_id = await self._call(self.assistant.create_thread, "create_thread")
        if instruction:
            await self._call(lambda: self.assistant.add_message(thread_id, instruction), "add_instruction")
        await self._call(lambda: self.assistant.add_message(thread_id, question), "add_question")
        run_id = await self._call(lambda: self.assistant.start_run(thread_id, index.session_id), "start_run")
        logger.info(f"[QUERY] Run {run_id} started on thread {thread_id} for patient {patient_id}")
        return patient, thread_id, run_id

    async def _await_run(self, thread_id: str, run_id: str,
                         is_disconnected: Optional[DisconnectCheck]) -> None:
        for attempt in range(1, self.max_attempts + 1):
            if is_disconnected is not None and await is_disconnected():
                raise QueryAbandonedError(run_id)

            run = await self._call(lambda: self.assistant.get_run(thread_id, run_id), "get_run")
            if run.status == RUN_COMPLETED:
                logger.info(f"[QUERY] Run {run_id} completed after {attempt} polls")
                return
            if run.status in RUN_TERMINAL_FAILURES:
                reason = run.last_error or f"Assistant run {run.status}"
                logger.error(f"[QUERY] Run {run_id} ended with status {run.status}: {reason}")
                raise QueryFailedError(QueryState.FAILED, reason)

            if attempt < self.max_attempts:
                await self._sleep(self.poll_interval)

        logger.error(f"[QUERY] Run {run_id} still pending after {self.max_attempts} polls")
        raise QueryFailedError(
            QueryState.TIMED_OUT, f"Run {run_id} did not complete after {self.max_attempts} polls"
        )

    async def _collect(self, patient: Patient, thread_id: str, run_id: str) -> QueryResult:
        reply = await self._call(lambda: self.assistant.get_last_reply(thread_id), "get_last_reply")
        if reply is None:
            logger.warning(f"[QUERY] Run {run_id} completed without an assistant reply")
            return QueryResult(response_text="", thread_id=thread_id, run_id=run_id)

        citations = await self._resolve_citations(patient, reply.annotations)
        return QueryResult(
            response_text=reply.text,
            citations=citations,
            state=QueryState.COMPLETED,
            thread_id=thread_id,
            run_id=run_id,
        )

    # ============= Citations =============

    async def _resolve_citations(self, patient: Patient, annotations: List[Annotation]) -> List[Citation]:
        # Numbered by position in the full annotation list so the numbers match the markers in the text
        span_cache: Dict[str, List[PageSpan]] = {}
        citations = []
        for sequence_index, annotation in enumerate(annotations, start=1):
            if annotation.type != FILE_CITATION:
                continue
            citations.append(await self._resolve_citation(patient, annotation, sequence_index, span_cache))
        return sorted(citations, key=lambda c: c.sequence_index)

    async def _resolve_citation(self, patient: Patient, annotation: Annotation, sequence_index: int,
                                span_cache: Dict[str, List[PageSpan]]) -> Citation:
        start = annotation.start_index or 0
        end = annotation.end_index if annotation.end_index is not None else start
        try:
            resolution = await self._resolve_file(patient, annotation.file_id)
            if isinstance(resolution, Mapped):
                document_id, mapped = resolution.document_id, True
            else:
                document_id, mapped = resolution.derived_id, False
            spans = await self._load_spans(patient, document_id, span_cache)
            return Citation(
                document_id=document_id,
                display_name=resolution.display_name,
                page_number=resolve_page(spans, start),
                start_offset=start,
                end_offset=end,
                sequence_index=sequence_index,
                mapped=mapped,
            )
        except (StorageError, AssistantServiceError) as e:
            logger.warning(f"[QUERY] Citation {sequence_index} ({annotation.text}) could not be resolved: {e}")
            return Citation(
                document_id=annotation.file_id or "unknown",
                display_name=annotation.text,
                page_number=1,
                start_offset=start,
                end_offset=end,
                sequence_index=sequence_index,
                mapped=False,
                error=str(e),
            )

    async def _resolve_file(self, patient: Patient, file_id: Optional[str]) -> FileResolution:
        index = patient.retrieval_index
        mapping = index.find_by_external_file(file_id) if index and file_id else None
        if mapping is not None:
            return Mapped(document_id=mapping.internal_document_id, display_name=mapping.display_name)

        if not file_id:
            raise AssistantServiceError("Citation carries no file id")
        logger.warning(f"[QUERY] File {file_id} has no mapping for patient {patient.id}; index may be out of sync")
        filename = await self._call(lambda: self.assistant.get_file_name(file_id), "get_file_name")
        return UnmappedFallback(derived_id=derive_document_id(filename), display_name=filename)

    async def _load_spans(self, patient: Patient, document_id: str,
                          span_cache: Dict[str, List[PageSpan]]) -> List[PageSpan]:
        if document_id not in span_cache:
            document = await self.document_store.get_document(patient.owner_user_id, patient.id, document_id)
            span_cache[document_id] = document.page_spans if document else []
        return span_cache[document_id]
