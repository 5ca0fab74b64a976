# services/ingestion_queue.py
"""Sequential background ingestion of uploaded documents"""
import asyncio
import logging
import time
from contextlib import suppress
from typing import Any, Dict, Optional

from config import settings
from core.domain import MedicalDocument, QueueEntry, QueueStats, utc_now
from core.enums import DOCUMENT_STATUS_EVENT, ProcessingStatus
from core.exceptions import DocumentNotFoundError, PatientNotFoundError, StorageError
from core.interfaces import IDocumentStore, IEventEmitter
from services.vector_store_sync import VectorStoreSynchronizer

logger = logging.getLogger(settings.LOGGER_NAME)


class IngestionQueue:
    """
    FIFO queue with a single worker task: one document is processed to
    completion (or failure) before the next one starts.

    Enqueueing is idempotent per document id while the entry is pending or
    in flight. A failed document is not retried; it can be enqueued again
    once its attempt has finished. Call start() once an event loop runs and
    stop() on shutdown.
    """

    def __init__(
        self,
        document_store: IDocumentStore,
        synchronizer: VectorStoreSynchronizer,
        event_emitter: IEventEmitter,
        maxsize: int = 0,
    ):
        self.document_store = document_store
        self.synchronizer = synchronizer
        self.event_emitter = event_emitter
        self.stats = QueueStats()

        self._queue: "asyncio.Queue[QueueEntry]" = asyncio.Queue(maxsize=maxsize)
        self._entries: Dict[str, QueueEntry] = {}
        self._current: Optional[str] = None  # document id being processed
        self._idle = asyncio.Event()
        self._idle.set()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._stopping = False
        self._worker: Optional[asyncio.Task] = None

    # ============= Public API =============

    def enqueue(self, document_id: str, owner_user_id: str, owner_patient_id: str) -> bool:
        """Add a document; False when it is already queued or processing."""
        if document_id in self._entries:
            logger.info(f"[QUEUE] Document {document_id} already queued, skipping")
            return False

        entry = QueueEntry(document_id=document_id, owner_user_id=owner_user_id, owner_patient_id=owner_patient_id)
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            logger.warning(f"[QUEUE] Queue full, rejected document {document_id}")
            return False

        self._entries[document_id] = entry
        logger.info(f"[QUEUE] Enqueued document {document_id} for patient {owner_patient_id} (queue size: {self.size})")
        self._notify(entry, ProcessingStatus.QUEUED)
        return True

    def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._stopping = False
        self._worker = asyncio.create_task(self._run(), name="ingestion-queue-worker")
        logger.info("[QUEUE] Worker started")

    async def stop(self) -> None:
        """Let the in-flight document finish, then stop the worker."""
        if self._worker is None:
            return
        self._stopping = True
        await self._idle.wait()
        self._worker.cancel()
        with suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info(f"[QUEUE] Worker stopped ({self.size} entries left pending)")

    async def join(self) -> None:
        """Wait until every enqueued document has been processed."""
        await self._queue.join()

    def pause(self) -> None:
        self._resumed.clear()
        logger.info("[QUEUE] Paused")

    def resume(self) -> None:
        self._resumed.set()
        logger.info("[QUEUE] Resumed")

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def is_processing(self) -> bool:
        return self._current is not None

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    def has(self, document_id: str) -> bool:
        return document_id in self._entries

    def status(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "is_processing": self.is_processing,
            "is_paused": self.is_paused,
            "current_document_id": self._current,
            "total_processed": self.stats.total_processed,
            "successful": self.stats.successful,
            "failed": self.stats.failed,
            "last_started_at": self.stats.last_started_at.isoformat() if self.stats.last_started_at else None,
            "last_duration_seconds": self.stats.last_duration_seconds,
        }

    # ============= Worker =============

    async def _run(self) -> None:
        while not self._stopping:
            entry = await self._queue.get()
            try:
                try:
                    await self._resumed.wait()
                except asyncio.CancelledError:
                    self._requeue(entry)
                    raise
                await self._process(entry)
            finally:
                self._queue.task_done()

    def _requeue(self, entry: QueueEntry) -> None:
        """Put back an entry taken while paused so it stays pending across a restart."""
        try:
            self._queue.put_nowait(entry)
            logger.info(f"[QUEUE] Document {entry.document_id} returned to the queue on stop")
        except asyncio.QueueFull:
            self._entries.pop(entry.document_id, None)
            logger.warning(f"[QUEUE] Queue full on stop, dropped document {entry.document_id}; enqueue it again")

    async def _process(self, entry: QueueEntry) -> None:
        self._current = entry.document_id
        self._idle.clear()
        started = time.monotonic()
        self.stats.last_started_at = utc_now()
        document: Optional[MedicalDocument] = None
        logger.info(f"[QUEUE] Processing document {entry.document_id} (waited since {entry.enqueued_at.isoformat()})")

        try:
            patient = await self.document_store.get_patient(entry.owner_user_id, entry.owner_patient_id)
            if patient is None:
                raise PatientNotFoundError(entry.owner_patient_id)
            document = await self.document_store.get_document(
                entry.owner_user_id, entry.owner_patient_id, entry.document_id
            )
            if document is None:
                raise DocumentNotFoundError(entry.document_id, entry.owner_patient_id)

            document.status = ProcessingStatus.IN_PROGRESS
            document.error_message = None
            await self.document_store.update_document(document)
            self._notify(entry, ProcessingStatus.IN_PROGRESS)

            await self.synchronizer.process_document(entry.owner_user_id, entry.owner_patient_id, document)

            document.status = ProcessingStatus.COMPLETE
            await self.document_store.update_document(document)
            self.stats.successful += 1
            self._notify(entry, ProcessingStatus.COMPLETE)
            logger.info(f"[QUEUE] Document {entry.document_id} indexed")

        except Exception as e:
            # One bad document must not stop the queue
            self.stats.failed += 1
            logger.exception(f"[QUEUE] Failed to process document {entry.document_id}: {e}")
            await self._mark_failed(document, str(e))
            self._notify(entry, ProcessingStatus.ERROR, error=str(e))

        finally:
            self.stats.total_processed += 1
            self.stats.last_duration_seconds = round(time.monotonic() - started, 3)
            self._entries.pop(entry.document_id, None)
            self._current = None
            self._idle.set()

    async def _mark_failed(self, document: Optional[MedicalDocument], reason: str) -> None:
        if document is None:
            return
        document.status = ProcessingStatus.ERROR
        document.error_message = reason
        try:
            await self.document_store.update_document(document)
        except StorageError as e:
            logger.error(f"[QUEUE] Could not record failure of document {document.id}: {e}")

    def _notify(self, entry: QueueEntry, status: ProcessingStatus, error: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"document_id": entry.document_id, "status": status.value}
        if error is not None:
            payload["error"] = error
        self.event_emitter.notify(entry.owner_patient_id, DOCUMENT_STATUS_EVENT, payload)
