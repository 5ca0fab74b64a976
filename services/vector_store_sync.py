# services/vector_store_sync.py
"""Keeps each patient's remote vector store in step with the document store"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from config import settings
from core.domain import (
    FileMapping, MedicalDocument, Patient, RepairReport, RetrievalIndex, SyncReport, utc_now
)
from core.enums import INDEX_STATUS_EVENT, ErrorCode, IndexStatus
from core.exceptions import (
    AssistantNotFoundError, AssistantServiceError, DocumentProcessingError, PatientAssistantError,
    PatientNotFoundError, StorageError
)
from core.interfaces import IAssistantService, IDocumentStore, IEventEmitter, IFileStorage
from services.rate_limiter import TokenRateLimiter, estimate_tokens_for_bytes
from utils.common import build_upload_name

logger = logging.getLogger(settings.LOGGER_NAME)

T = TypeVar("T")


class VectorStoreSynchronizer:
    """
    Owns the per-patient retrieval index (assistant + vector store) and the
    mapping from remote file ids to our document ids.

    Every mutation of an index runs under one lock: uploads come from the
    ingestion worker, but removal, repair and clear are called directly from
    request handlers.
    """

    def __init__(
        self,
        assistant: IAssistantService,
        document_store: IDocumentStore,
        file_storage: IFileStorage,
        rate_limiter: TokenRateLimiter,
        event_emitter: Optional[IEventEmitter] = None,
    ):
        self.assistant = assistant
        self.document_store = document_store
        self.file_storage = file_storage
        self.rate_limiter = rate_limiter
        self.event_emitter = event_emitter
        self._lock = asyncio.Lock()

    async def _call(self, operation: Callable[[], Awaitable[T]], operation_name: str) -> T:
        return await self.rate_limiter.execute_with_retry(operation, operation_name)

    async def _load_patient(self, owner_user_id: str, patient_id: str) -> Patient:
        patient = await self.document_store.get_patient(owner_user_id, patient_id)
        if patient is None:
            raise PatientNotFoundError(patient_id)
        return patient

    def _emit(self, patient_id: str, payload: Dict[str, Any]) -> None:
        if self.event_emitter is not None:
            self.event_emitter.notify(patient_id, INDEX_STATUS_EVENT, payload)

    # ============= Index lifecycle =============

    async def ensure_index(self, owner_user_id: str, patient_id: str) -> RetrievalIndex:
        """Return the patient's index, creating assistant + vector store on first use."""
        async with self._lock:
            patient = await self._load_patient(owner_user_id, patient_id)
            return await self._ensure_index(patient)

    async def _ensure_index(self, patient: Patient) -> RetrievalIndex:
        if patient.retrieval_index is not None:
            return patient.retrieval_index

        name = f"patient-{patient.id}"
        logger.info(f"[VECTOR STORE] Creating retrieval index for patient {patient.id}")
        session_id = await self._call(lambda: self.assistant.create_session(name), "create_session")
        try:
            index_id = await self._call(lambda: self.assistant.create_index(name), "create_index")
            await self._call(lambda: self.assistant.bind_index(session_id, index_id), "bind_index")
        except AssistantServiceError:
            await self._discard_remote(self.assistant.delete_session, session_id, "assistant")
            raise

        index = RetrievalIndex(session_id=session_id, index_id=index_id)
        patient.retrieval_index = index
        await self.document_store.update_patient(patient)
        self._emit(patient.id, {"status": "created", "index_id": index_id})
        return index

    async def clear_index(self, owner_user_id: str, patient_id: str) -> bool:
        """Delete the patient's assistant and vector store and forget every mapping."""
        async with self._lock:
            patient = await self._load_patient(owner_user_id, patient_id)
            index = patient.retrieval_index
            if index is None:
                logger.info(f"[VECTOR STORE] Patient {patient_id} has no index to clear")
                return False

            await self._discard_remote(self.assistant.delete_session, index.session_id, "assistant")
            await self._discard_remote(self.assistant.delete_index, index.index_id, "vector store")

            patient.retrieval_index = None
            await self.document_store.update_patient(patient)
            logger.info(f"[VECTOR STORE] Cleared index for patient {patient_id} ({len(index.mappings)} mappings dropped)")
            self._emit(patient_id, {"status": "cleared", "index_id": index.index_id})
            return True

    async def _discard_remote(self, delete: Callable[[str], Awaitable[None]],
                              remote_id: str, kind: str) -> bool:
        """Best-effort delete. Already gone counts as success; anything else is logged."""
        try:
            await self._call(lambda: delete(remote_id), f"delete_{kind.replace(' ', '_')}")
            return True
        except AssistantNotFoundError:
            logger.info(f"[VECTOR STORE] {kind.capitalize()} {remote_id} already gone")
            return True
        except AssistantServiceError as e:
            logger.warning(f"[VECTOR STORE] Could not delete {kind} {remote_id}: {e}")
            return False

    # ============= Uploads =============

    async def upload(
        self,
        owner_user_id: str,
        patient_id: str,
        document_id: str,
        content: bytes,
        display_name: str,
        upload_name: Optional[str] = None,
    ) -> FileMapping:
        async with self._lock:
            patient = await self._load_patient(owner_user_id, patient_id)
            return await self._upload(patient, document_id, content, display_name, upload_name)

    async def _upload(self, patient: Patient, document_id: str, content: bytes,
                      display_name: str, upload_name: Optional[str]) -> FileMapping:
        index = await self._ensure_index(patient)
        filename = upload_name or display_name

        await self.rate_limiter.reserve(estimate_tokens_for_bytes(content))
        try:
            file_id = await self._call(
                lambda: self.assistant.upload_file(filename, content), f"upload_file:{document_id}"
            )
        except AssistantServiceError as e:
            await self._mark_index_error(patient, index, str(e))
            raise
        try:
            await self._call(lambda: self.assistant.attach_file(index.index_id, file_id), f"attach_file:{document_id}")
        except AssistantServiceError as e:
            await self._discard_remote(self.assistant.delete_file, file_id, "file")
            await self._mark_index_error(patient, index, str(e))
            raise

        previous = index.find_by_document(document_id)
        if previous is not None:
            index.mappings.remove(previous)

        mapping = FileMapping(external_file_id=file_id, internal_document_id=document_id, display_name=display_name)
        index.mappings.append(mapping)
        index.status = IndexStatus.READY
        index.last_updated = utc_now()
        await self.document_store.update_patient(patient)
        logger.info(f"[VECTOR STORE] Uploaded {display_name} as {file_id} for patient {patient.id}")

        if previous is not None:
            logger.info(f"[VECTOR STORE] Replacing earlier upload {previous.external_file_id} of document {document_id}")
            await self._forget_remote(index.index_id, previous.external_file_id)
        return mapping

    async def _mark_index_error(self, patient: Patient, index: RetrievalIndex, reason: str) -> None:
        """Flag the index after a failed upload; the next successful upload sets it ready again."""
        index.status = IndexStatus.ERROR
        index.last_updated = utc_now()
        try:
            await self.document_store.update_patient(patient)
        except StorageError as e:
            logger.error(f"[VECTOR STORE] Could not record error status of index {index.index_id}: {e}")
        self._emit(patient.id, {"status": IndexStatus.ERROR.value, "index_id": index.index_id, "error": reason})

    async def process_document(self, owner_user_id: str, patient_id: str,
                               document: MedicalDocument) -> FileMapping:
        """Read the stored bytes of a document and upload them."""
        content = await self.file_storage.read(document.stored_filename)
        if content is None:
            raise DocumentProcessingError(
                f"Stored file {document.stored_filename} not found", ErrorCode.FILE_NOT_FOUND
            )
        return await self.upload(
            owner_user_id, patient_id, document.id, content, document.original_name,
            upload_name=build_upload_name(document.id, document.original_name),
        )

    # ============= Removal =============

    async def remove(self, owner_user_id: str, patient_id: str, document_id: str) -> bool:
        """
        Forget a document's file. Removing something that is not mapped is a
        success. Remote failures other than "not found" are logged and the
        local mapping is dropped anyway.

        Returns False only when the remote side may still hold the file.
        """
        async with self._lock:
            patient = await self._load_patient(owner_user_id, patient_id)
            index = patient.retrieval_index
            mapping = index.find_by_document(document_id) if index else None
            if index is None or mapping is None:
                logger.info(f"[VECTOR STORE] Document {document_id} not mapped for patient {patient_id}; nothing to remove")
                return True

            remote_clean = await self._forget_remote(index.index_id, mapping.external_file_id)
            index.mappings.remove(mapping)
            index.last_updated = utc_now()
            await self.document_store.update_patient(patient)
            logger.info(f"[VECTOR STORE] Removed mapping {mapping.external_file_id} -> {document_id}")
            return remote_clean

    async def _forget_remote(self, index_id: str, file_id: str) -> bool:
        detached = await self._discard_remote(
            lambda fid: self.assistant.detach_file(index_id, fid), file_id, "vector store file"
        )
        deleted = await self._discard_remote(self.assistant.delete_file, file_id, "file")
        return detached and deleted

    # ============= Drift detection & repair =============

    async def validate_sync(self, owner_user_id: str, patient_id: str) -> SyncReport:
        patient = await self._load_patient(owner_user_id, patient_id)
        documents = await self.document_store.get_documents_for_patient(owner_user_id, patient_id)
        index = patient.retrieval_index
        mappings = index.mappings if index else []

        mapped_ids = {m.internal_document_id for m in mappings}
        missing = [doc.id for doc in documents if doc.id not in mapped_ids]

        diagnostics: List[str] = []
        if index is None and documents:
            diagnostics.append(f"Patient {patient_id} has {len(documents)} documents but no retrieval index")
        for doc in documents:
            if doc.id not in mapped_ids:
                diagnostics.append(f"Document {doc.id} ({doc.original_name}) has no file mapping")
        known_ids = {doc.id for doc in documents}
        for m in mappings:
            if m.internal_document_id not in known_ids:
                diagnostics.append(f"Mapping {m.external_file_id} points to unknown document {m.internal_document_id}")

        if missing:
            logger.warning(f"[VECTOR STORE] Drift for patient {patient_id}: {len(missing)} documents missing from index")
        return SyncReport(is_valid=not missing, missing_document_ids=missing, diagnostics=diagnostics)

    async def repair_missing(self, owner_user_id: str, patient_id: str,
                             missing_document_ids: List[str]) -> RepairReport:
        """Upload each missing document again; report those that cannot be repaired."""
        await self._load_patient(owner_user_id, patient_id)
        report = RepairReport()
        for document_id in missing_document_ids:
            try:
                document = await self.document_store.get_document(owner_user_id, patient_id, document_id)
                if document is None:
                    report.unrepairable[document_id] = "Document not found"
                    continue
                await self.process_document(owner_user_id, patient_id, document)
                report.repaired.append(document_id)
            except PatientAssistantError as e:
                # Keep going so the report covers every missing document
                logger.error(f"[VECTOR STORE] Repair failed for document {document_id}: {e}")
                report.unrepairable[document_id] = str(e)

        logger.info(
            f"[VECTOR STORE] Repair for patient {patient_id}: "
            f"{len(report.repaired)} repaired, {len(report.unrepairable)} unrepairable"
        )
        return report
