# services/patient_assistant_service.py
"""Entry points used by the route layer"""
import logging
from typing import Any, AsyncIterator, Dict, Optional, Union

from config import settings
from core.domain import IndexRepairSummary, QueryResult, StreamEvent
from core.interfaces import DisconnectCheck, IPatientAssistantService
from services.ingestion_queue import IngestionQueue
from services.query_resolver import QueryResolver
from services.rate_limiter import TokenRateLimiter
from services.vector_store_sync import VectorStoreSynchronizer

logger = logging.getLogger(settings.LOGGER_NAME)


class PatientAssistantService(IPatientAssistantService):
    """
    Ties together the ingestion queue, the vector store synchronizer and the
    query resolver. Holds no state of its own.
    """

    def __init__(
        self,
        queue: IngestionQueue,
        synchronizer: VectorStoreSynchronizer,
        resolver: QueryResolver,
        rate_limiter: TokenRateLimiter,
    ):
        self.queue = queue
        self.synchronizer = synchronizer
        self.resolver = resolver
        self.rate_limiter = rate_limiter

    def enqueue_for_processing(self, document_id: str, owner_user_id: str, patient_id: str) -> bool:
        return self.queue.enqueue(document_id, owner_user_id, patient_id)

    async def run_query(
        self,
        patient_id: str,
        owner_user_id: str,
        question: str,
        streaming: bool = False,
        include_citation_markers: bool = False,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> Union[QueryResult, AsyncIterator[StreamEvent]]:
        logger.info(f"[QUERY] Patient {patient_id}: {question[:80]!r} (streaming={streaming})")
        if streaming:
            return self.resolver.stream_query(
                owner_user_id, patient_id, question,
                include_citation_markers=include_citation_markers,
                is_disconnected=is_disconnected,
            )
        return await self.resolver.run_query(
            owner_user_id, patient_id, question,
            include_citation_markers=include_citation_markers,
            is_disconnected=is_disconnected,
        )

    async def validate_and_repair_index(self, patient_id: str, owner_user_id: str) -> IndexRepairSummary:
        """
        Detect documents missing from the patient's index and upload them again.
        `is_valid` describes the index after the repair attempt.
        """
        report = await self.synchronizer.validate_sync(owner_user_id, patient_id)
        for line in report.diagnostics:
            logger.info(f"[VECTOR STORE] {line}")
        if report.is_valid:
            return IndexRepairSummary(is_valid=True, missing_count=0)

        repair = await self.synchronizer.repair_missing(owner_user_id, patient_id, report.missing_document_ids)
        return IndexRepairSummary(
            is_valid=not repair.unrepairable,
            missing_count=len(report.missing_document_ids),
            repaired=repair.repaired,
            unrepairable=repair.unrepairable,
        )

    async def remove_document(self, patient_id: str, owner_user_id: str, document_id: str) -> bool:
        return await self.synchronizer.remove(owner_user_id, patient_id, document_id)

    async def clear_index(self, patient_id: str, owner_user_id: str) -> bool:
        return await self.synchronizer.clear_index(owner_user_id, patient_id)

    def queue_status(self) -> Dict[str, Any]:
        return {
            "queue": self.queue.status(),
            "rate_limit": self.rate_limiter.status(),
        }
