"""Database repository implementations"""
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from core.domain import MedicalDocument, PageSpan, Patient, RetrievalIndex
from core.enums import ProcessingStatus
from core.exceptions import DocumentNotFoundError, PatientNotFoundError, StorageError
from core.interfaces import IDocumentStore
from database.session import AsyncSessionLocal, DocumentEntity, PatientEntity, get_session

logger = logging.getLogger(settings.LOGGER_NAME)


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Failed to {action}: {e}")
        raise StorageError(f"Failed to {action}: {e}") from e


class SQLDocumentStore(IDocumentStore):
    """
    Patients and documents in SQL. Opens one session per call so the
    background ingestion worker and request handlers never share a session.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    def _patient_to_domain(self, entity: Optional[PatientEntity]) -> Optional[Patient]:
        """Converts an SQLAlchemy entity to a domain model."""
        if entity is None:
            return None
        return Patient(
            id=entity.id,  # type: ignore
            owner_user_id=entity.owner_user_id,  # type: ignore
            name=entity.name or "",  # type: ignore
            retrieval_index=RetrievalIndex.from_dict(entity.retrieval_index) if entity.retrieval_index else None,  # type: ignore
        )

    def _document_to_domain(self, entity: Optional[DocumentEntity]) -> Optional[MedicalDocument]:
        if entity is None:
            return None
        return MedicalDocument(
            id=entity.id,  # type: ignore
            patient_id=entity.patient_id,  # type: ignore
            owner_user_id=entity.owner_user_id,  # type: ignore
            original_name=entity.original_name,  # type: ignore
            stored_filename=entity.stored_filename,  # type: ignore
            status=ProcessingStatus.from_string(entity.status),  # type: ignore
            page_spans=[PageSpan.from_dict(s) for s in (entity.page_spans or [])],  # type: ignore
            error_message=entity.error_message,  # type: ignore
        )

    # ============= Patients =============

    async def create_patient(self, owner_user_id: str, patient_id: str, name: str = "") -> Patient:
        with _storage_errors(f"create patient {patient_id}"):
            async with get_session(self._session_factory) as session:
                entity = PatientEntity(id=patient_id, owner_user_id=owner_user_id, name=name)
                session.add(entity)
                await session.commit()
                logger.info(f"Created patient {patient_id} in database")
                result = self._patient_to_domain(entity)
                assert result is not None, "Created patient should never be None"
                return result

    async def get_patient(self, owner_user_id: str, patient_id: str) -> Optional[Patient]:
        with _storage_errors(f"load patient {patient_id}"):
            async with get_session(self._session_factory) as session:
                result = await session.execute(
                    select(PatientEntity).where(
                        PatientEntity.id == patient_id,
                        PatientEntity.owner_user_id == owner_user_id,
                    )
                )
                return self._patient_to_domain(result.scalar_one_or_none())

    async def update_patient(self, patient: Patient) -> None:
        with _storage_errors(f"update patient {patient.id}"):
            async with get_session(self._session_factory) as session:
                entity = await session.get(PatientEntity, patient.id)
                if entity is None or entity.owner_user_id != patient.owner_user_id:
                    raise PatientNotFoundError(patient.id)
                entity.name = patient.name  # type: ignore
                entity.retrieval_index = patient.retrieval_index.to_dict() if patient.retrieval_index else None  # type: ignore
                await session.commit()

    # ============= Documents =============

    async def create_document(self, document: MedicalDocument) -> MedicalDocument:
        with _storage_errors(f"create document {document.id}"):
            async with get_session(self._session_factory) as session:
                session.add(DocumentEntity(
                    id=document.id,
                    patient_id=document.patient_id,
                    owner_user_id=document.owner_user_id,
                    original_name=document.original_name,
                    stored_filename=document.stored_filename,
                    status=document.status.value,
                    page_spans=[vars(s).copy() for s in document.page_spans],
                    error_message=document.error_message,
                ))
                await session.commit()
                logger.info(f"Created document {document.id} for patient {document.patient_id}")
                return document

    async def get_document(self, owner_user_id: str, patient_id: str,
                           document_id: str) -> Optional[MedicalDocument]:
        with _storage_errors(f"load document {document_id}"):
            async with get_session(self._session_factory) as session:
                result = await session.execute(
                    select(DocumentEntity).where(
                        DocumentEntity.id == document_id,
                        DocumentEntity.patient_id == patient_id,
                        DocumentEntity.owner_user_id == owner_user_id,
                    )
                )
                return self._document_to_domain(result.scalar_one_or_none())

    async def get_documents_for_patient(self, owner_user_id: str,
                                        patient_id: str) -> List[MedicalDocument]:
        with _storage_errors(f"list documents for patient {patient_id}"):
            async with get_session(self._session_factory) as session:
                result = await session.execute(
                    select(DocumentEntity)
                    .where(
                        DocumentEntity.patient_id == patient_id,
                        DocumentEntity.owner_user_id == owner_user_id,
                    )
                    .order_by(DocumentEntity.timestamp.asc(), DocumentEntity.id.asc())
                )
                docs = [self._document_to_domain(doc) for doc in result.scalars().all()]
                return [d for d in docs if d is not None]

    async def update_document(self, document: MedicalDocument) -> None:
        with _storage_errors(f"update document {document.id}"):
            async with get_session(self._session_factory) as session:
                entity = await session.get(DocumentEntity, document.id)
                if entity is None or entity.owner_user_id != document.owner_user_id:
                    raise DocumentNotFoundError(document.id, document.patient_id)
                entity.status = document.status.value  # type: ignore
                entity.error_message = document.error_message  # type: ignore
                entity.page_spans = [vars(s).copy() for s in document.page_spans]  # type: ignore
                await session.commit()
