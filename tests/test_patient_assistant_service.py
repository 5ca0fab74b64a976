"""Tests for the service facade wiring the core components together."""

import pytest

from core.domain import AssistantReply, QueryResult
from core.enums import StreamEventType
from services.ingestion_queue import IngestionQueue
from services.patient_assistant_service import PatientAssistantService
from tests.conftest import OWNER, PATIENT, make_document


@pytest.fixture
def service(store, synchronizer, resolver, rate_limiter, emitter) -> PatientAssistantService:
    queue = IngestionQueue(document_store=store, synchronizer=synchronizer, event_emitter=emitter)
    return PatientAssistantService(queue=queue, synchronizer=synchronizer, resolver=resolver, rate_limiter=rate_limiter)


class TestPatientAssistantService:

    @pytest.mark.asyncio
    async def test_enqueue_then_query_end_to_end(self, service, store, file_storage, assistant) -> None:
        store.add_document(make_document("doc-1"))
        file_storage.files["doc-1.pdf"] = b"Diagnosis: type 2 diabetes"

        assert service.enqueue_for_processing("doc-1", OWNER, PATIENT) is True
        service.queue.start()
        await service.queue.join()
        await service.queue.stop()

        assistant.reply = AssistantReply(text="Type 2 diabetes.")
        result = await service.run_query(PATIENT, OWNER, "What is the diagnosis?")

        assert isinstance(result, QueryResult)
        assert result.response_text == "Type 2 diabetes."

    @pytest.mark.asyncio
    async def test_streaming_returns_event_iterator(self, service, store, synchronizer, assistant) -> None:
        await synchronizer.ensure_index(OWNER, PATIENT)
        assistant.reply = AssistantReply(text="Nothing abnormal.")

        events = await service.run_query(PATIENT, OWNER, "Any findings?", streaming=True)

        types = [e.type async for e in events]
        assert types == [StreamEventType.CONTENT, StreamEventType.DONE]

    @pytest.mark.asyncio
    async def test_validate_and_repair_uploads_missing_documents(
        self, service, store, file_storage
    ) -> None:
        store.add_document(make_document("doc-1"))
        store.add_document(make_document("doc-2"))
        file_storage.files["doc-1.pdf"] = b"one"
        file_storage.files["doc-2.pdf"] = b"two"

        summary = await service.validate_and_repair_index(PATIENT, OWNER)

        assert summary.is_valid is True
        assert summary.missing_count == 2
        assert summary.repaired == ["doc-1", "doc-2"]

        again = await service.validate_and_repair_index(PATIENT, OWNER)
        assert again.is_valid is True
        assert again.missing_count == 0

    @pytest.mark.asyncio
    async def test_validate_reports_unrepairable(self, service, store) -> None:
        store.add_document(make_document("doc-1"))

        summary = await service.validate_and_repair_index(PATIENT, OWNER)

        assert summary.is_valid is False
        assert "doc-1" in summary.unrepairable

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, service, synchronizer, store) -> None:
        await synchronizer.upload(OWNER, PATIENT, "doc-1", b"x", "x.pdf")

        assert await service.remove_document(PATIENT, OWNER, "doc-1") is True
        assert await service.clear_index(PATIENT, OWNER) is True
        assert store.patients[PATIENT].retrieval_index is None

    def test_queue_status_includes_rate_limit(self, service) -> None:
        status = service.queue_status()

        assert status["queue"]["size"] == 0
        assert status["rate_limit"]["token_limit"] == 9500
