"""Tests for the vector store synchronizer."""

import pytest

from core.domain import FileMapping, RetrievalIndex
from core.enums import INDEX_STATUS_EVENT, ErrorCode, IndexStatus
from core.exceptions import (
    AssistantServiceError, AssistantThrottledError, DocumentProcessingError, PatientNotFoundError,
    StorageError
)
from tests.conftest import OWNER, PATIENT, make_document


class TestEnsureIndex:

    @pytest.mark.asyncio
    async def test_creates_session_and_index_once(self, synchronizer, assistant, store, emitter) -> None:
        first = await synchronizer.ensure_index(OWNER, PATIENT)
        second = await synchronizer.ensure_index(OWNER, PATIENT)

        assert first.session_id == second.session_id
        assert first.index_id == second.index_id
        assert len(assistant.called("create_session")) == 1
        assert len(assistant.called("create_index")) == 1
        assert assistant.sessions[first.session_id] == first.index_id
        assert store.patients[PATIENT].retrieval_index.index_id == first.index_id
        assert emitter.events[0][1] == INDEX_STATUS_EVENT

    @pytest.mark.asyncio
    async def test_unknown_patient(self, synchronizer) -> None:
        with pytest.raises(PatientNotFoundError):
            await synchronizer.ensure_index(OWNER, "nobody")

    @pytest.mark.asyncio
    async def test_other_owner_cannot_see_patient(self, synchronizer) -> None:
        with pytest.raises(PatientNotFoundError):
            await synchronizer.ensure_index("someone-else", PATIENT)

    @pytest.mark.asyncio
    async def test_session_discarded_when_index_creation_fails(self, synchronizer, assistant, store) -> None:
        assistant.fail_next("create_index", AssistantServiceError("boom", status_code=400))

        with pytest.raises(AssistantServiceError):
            await synchronizer.ensure_index(OWNER, PATIENT)

        assert assistant.sessions == {}
        assert store.patients[PATIENT].retrieval_index is None


class TestUpload:

    @pytest.mark.asyncio
    async def test_upload_appends_mapping_and_persists(self, synchronizer, assistant, store, rate_limiter) -> None:
        mapping = await synchronizer.upload(OWNER, PATIENT, "doc-1", b"blood pressure 120/80", "report.pdf")

        index = store.patients[PATIENT].retrieval_index
        assert index.mappings == [mapping]
        assert mapping.internal_document_id == "doc-1"
        assert mapping.display_name == "report.pdf"
        assert mapping.external_file_id in assistant.indexes[index.index_id]
        assert rate_limiter.budget.tokens_consumed_in_window > 0

    @pytest.mark.asyncio
    async def test_reupload_replaces_previous_mapping(self, synchronizer, assistant, store) -> None:
        old = await synchronizer.upload(OWNER, PATIENT, "doc-1", b"v1", "report.pdf")
        new = await synchronizer.upload(OWNER, PATIENT, "doc-1", b"v2", "report.pdf")

        index = store.patients[PATIENT].retrieval_index
        assert [m.external_file_id for m in index.mappings] == [new.external_file_id]
        assert old.external_file_id not in assistant.files
        assert old.external_file_id not in assistant.indexes[index.index_id]

    @pytest.mark.asyncio
    async def test_throttled_upload_is_retried(self, synchronizer, assistant, clock) -> None:
        assistant.fail_next("upload_file", AssistantThrottledError("429", status_code=429, retry_after=3))

        mapping = await synchronizer.upload(OWNER, PATIENT, "doc-1", b"content", "report.pdf")

        assert mapping.external_file_id in assistant.files
        assert 3.0 in clock.sleeps

    @pytest.mark.asyncio
    async def test_failed_attach_discards_uploaded_file(self, synchronizer, assistant, store) -> None:
        assistant.fail_next("attach_file", AssistantServiceError("invalid file", status_code=400))

        with pytest.raises(AssistantServiceError):
            await synchronizer.upload(OWNER, PATIENT, "doc-1", b"content", "report.pdf")

        assert assistant.files == {}
        assert store.patients[PATIENT].retrieval_index.mappings == []

    @pytest.mark.asyncio
    async def test_failed_upload_flags_index_until_next_success(
        self, synchronizer, assistant, store, emitter
    ) -> None:
        await synchronizer.upload(OWNER, PATIENT, "doc-1", b"first", "first.pdf")
        assistant.fail_next("attach_file", AssistantServiceError("invalid file", status_code=400))

        with pytest.raises(AssistantServiceError):
            await synchronizer.upload(OWNER, PATIENT, "doc-2", b"second", "second.pdf")

        index = store.patients[PATIENT].retrieval_index
        assert index.status == IndexStatus.ERROR
        assert emitter.events[-1][1] == INDEX_STATUS_EVENT
        assert emitter.events[-1][2]["status"] == "error"

        await synchronizer.upload(OWNER, PATIENT, "doc-2", b"second", "second.pdf")
        assert store.patients[PATIENT].retrieval_index.status == IndexStatus.READY

    @pytest.mark.asyncio
    async def test_process_document_uses_id_based_upload_name(
        self, synchronizer, assistant, store, file_storage
    ) -> None:
        document = make_document("doc-7", original_name="Discharge Summary.PDF")
        store.add_document(document)
        file_storage.files[document.stored_filename] = b"discharged"

        mapping = await synchronizer.process_document(OWNER, PATIENT, document)

        assert assistant.files[mapping.external_file_id] == "doc-7.pdf"
        assert mapping.display_name == "Discharge Summary.PDF"

    @pytest.mark.asyncio
    async def test_process_document_without_stored_bytes(self, synchronizer, assistant) -> None:
        with pytest.raises(DocumentProcessingError) as exc_info:
            await synchronizer.process_document(OWNER, PATIENT, make_document("doc-1"))

        assert exc_info.value.error_code == ErrorCode.FILE_NOT_FOUND
        assert assistant.called("upload_file") == []


class TestRemove:

    @pytest.mark.asyncio
    async def test_remove_detaches_and_deletes(self, synchronizer, assistant, store) -> None:
        mapping = await synchronizer.upload(OWNER, PATIENT, "doc-1", b"content", "report.pdf")

        assert await synchronizer.remove(OWNER, PATIENT, "doc-1") is True

        index = store.patients[PATIENT].retrieval_index
        assert index.mappings == []
        assert mapping.external_file_id not in assistant.files
        assert assistant.called("detach_file") == [(index.index_id, mapping.external_file_id)]

    @pytest.mark.asyncio
    async def test_remove_unmapped_document_is_success(self, synchronizer, assistant) -> None:
        assert await synchronizer.remove(OWNER, PATIENT, "never-uploaded") is True
        assert assistant.called("delete_file") == []

    @pytest.mark.asyncio
    async def test_second_remove_makes_no_remote_calls(self, synchronizer, assistant, store) -> None:
        await synchronizer.upload(OWNER, PATIENT, "doc-1", b"content", "report.pdf")

        assert await synchronizer.remove(OWNER, PATIENT, "doc-1") is True
        assert await synchronizer.remove(OWNER, PATIENT, "doc-1") is True

        assert len(assistant.called("detach_file")) == 1
        assert len(assistant.called("delete_file")) == 1
        assert store.patients[PATIENT].retrieval_index.mappings == []

    @pytest.mark.asyncio
    async def test_remote_not_found_counts_as_removed(self, synchronizer, assistant, store) -> None:
        mapping = await synchronizer.upload(OWNER, PATIENT, "doc-1", b"content", "report.pdf")
        # Remote side already discarded the file
        del assistant.files[mapping.external_file_id]
        assistant.indexes[store.patients[PATIENT].retrieval_index.index_id].clear()

        assert await synchronizer.remove(OWNER, PATIENT, "doc-1") is True
        assert store.patients[PATIENT].retrieval_index.mappings == []

    @pytest.mark.asyncio
    async def test_remote_error_still_forgets_mapping(self, synchronizer, assistant, store) -> None:
        await synchronizer.upload(OWNER, PATIENT, "doc-1", b"content", "report.pdf")
        assistant.fail_next("delete_file", AssistantServiceError("server exploded", status_code=400))

        assert await synchronizer.remove(OWNER, PATIENT, "doc-1") is False
        assert store.patients[PATIENT].retrieval_index.mappings == []


class TestValidateAndRepair:

    @pytest.mark.asyncio
    async def test_reports_missing_documents_in_store_order(self, synchronizer, store) -> None:
        for doc_id in ("doc-a", "doc-b", "doc-c"):
            store.add_document(make_document(doc_id))
        await synchronizer.upload(OWNER, PATIENT, "doc-b", b"b", "b.pdf")

        report = await synchronizer.validate_sync(OWNER, PATIENT)

        assert report.is_valid is False
        assert report.missing_document_ids == ["doc-a", "doc-c"]

    @pytest.mark.asyncio
    async def test_valid_when_every_document_is_mapped(self, synchronizer, store) -> None:
        store.add_document(make_document("doc-a"))
        await synchronizer.upload(OWNER, PATIENT, "doc-a", b"a", "a.pdf")

        report = await synchronizer.validate_sync(OWNER, PATIENT)

        assert report.is_valid is True
        assert report.missing_document_ids == []

    @pytest.mark.asyncio
    async def test_diagnostics_cover_missing_index_and_orphans(self, synchronizer, store) -> None:
        store.add_document(make_document("doc-a"))
        report = await synchronizer.validate_sync(OWNER, PATIENT)
        assert any("no retrieval index" in line for line in report.diagnostics)

        patient = store.patients[PATIENT]
        patient.retrieval_index = RetrievalIndex(
            session_id="asst_x", index_id="vs_x",
            mappings=[FileMapping("file_x", "deleted-doc", "gone.pdf")],
        )
        report = await synchronizer.validate_sync(OWNER, PATIENT)
        assert any("deleted-doc" in line for line in report.diagnostics)

    @pytest.mark.asyncio
    async def test_repair_uploads_missing_and_reports_unrepairable(
        self, synchronizer, store, file_storage
    ) -> None:
        store.add_document(make_document("doc-a"))
        store.add_document(make_document("doc-b"))
        file_storage.files["doc-a.pdf"] = b"content a"

        report = await synchronizer.repair_missing(OWNER, PATIENT, ["doc-a", "doc-b", "doc-ghost"])

        assert report.repaired == ["doc-a"]
        assert set(report.unrepairable) == {"doc-b", "doc-ghost"}
        mapped = [m.internal_document_id for m in store.patients[PATIENT].retrieval_index.mappings]
        assert mapped == ["doc-a"]

    @pytest.mark.asyncio
    async def test_storage_failure_on_one_document_does_not_abort_repair(
        self, synchronizer, store, file_storage, monkeypatch
    ) -> None:
        for doc_id in ("doc-a", "doc-b", "doc-c"):
            store.add_document(make_document(doc_id))
            file_storage.files[f"{doc_id}.pdf"] = doc_id.encode()
        get_document = store.get_document

        async def flaky_get_document(owner_user_id, patient_id, document_id):
            if document_id == "doc-b":
                raise StorageError("database is locked")
            return await get_document(owner_user_id, patient_id, document_id)

        monkeypatch.setattr(store, "get_document", flaky_get_document)

        report = await synchronizer.repair_missing(OWNER, PATIENT, ["doc-a", "doc-b", "doc-c"])

        assert report.repaired == ["doc-a", "doc-c"]
        assert list(report.unrepairable) == ["doc-b"]


class TestClearIndex:

    @pytest.mark.asyncio
    async def test_clear_deletes_remote_objects_and_drops_index(self, synchronizer, assistant, store) -> None:
        await synchronizer.upload(OWNER, PATIENT, "doc-1", b"content", "report.pdf")

        assert await synchronizer.clear_index(OWNER, PATIENT) is True

        assert store.patients[PATIENT].retrieval_index is None
        assert assistant.sessions == {}
        assert assistant.indexes == {}

    @pytest.mark.asyncio
    async def test_clear_without_index(self, synchronizer) -> None:
        assert await synchronizer.clear_index(OWNER, PATIENT) is False
