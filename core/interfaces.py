"""Core interfaces for the patient assistant"""
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from core.domain import (
    AssistantReply, IndexRepairSummary, MedicalDocument, Patient, QueryResult,
    RunStatus, StreamEvent
)

DisconnectCheck = Callable[[], Awaitable[bool]]

# ============= Document Store Interface =============
class IDocumentStore(ABC):
    """
    Interface for patient and document persistence.

    Every lookup is scoped by the owning user. Implementations raise
    StorageError on backend failures and return None for missing entities.
    Implementations: SQLDocumentStore. Swap for MongoDB, Cosmos, etc.
    """

    @abstractmethod
    async def get_patient(self, owner_user_id: str, patient_id: str) -> Optional[Patient]:
        pass

    @abstractmethod
    async def update_patient(self, patient: Patient) -> None:
        """Persist the patient record, including its retrieval index."""
        pass

    @abstractmethod
    async def get_document(self, owner_user_id: str, patient_id: str,
                           document_id: str) -> Optional[MedicalDocument]:
        pass

    @abstractmethod
    async def get_documents_for_patient(self, owner_user_id: str,
                                        patient_id: str) -> List[MedicalDocument]:
        pass

    @abstractmethod
    async def update_document(self, document: MedicalDocument) -> None:
        pass

# ============= File Storage Interface =============
class IFileStorage(ABC):
    """Interface for reading stored document bytes"""

    @abstractmethod
    async def read(self, stored_filename: str) -> Optional[bytes]:
        """Return the file content, or None if nothing is stored under that name."""
        pass

    @abstractmethod
    async def get_path(self, stored_filename: str) -> Optional[str]:
        """Get the full path to a stored file."""
        pass

# ============= Event Emission Interface =============
class IEventEmitter(ABC):
    """
    Fire-and-forget notifications to listeners interested in a patient.

    notify() must return immediately and must not raise when the underlying
    transport is unavailable.
    """

    @abstractmethod
    def notify(self, patient_id: str, event_name: str, payload: Dict[str, Any]) -> None:
        pass

# ============= Assistant Service Interface =============
class IAssistantService(ABC):
    """
    The external retrieval-augmented assistant service.

    Every method may raise AssistantThrottledError (with an optional
    retry_after hint), AssistantNotFoundError or AssistantServiceError.
    """

    @abstractmethod
    async def create_session(self, name: str) -> str:
        """Create an assistant with file search enabled. Returns its id."""
        pass

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def create_index(self, name: str) -> str:
        """Create a vector store. Returns its id."""
        pass

    @abstractmethod
    async def delete_index(self, index_id: str) -> None:
        pass

    @abstractmethod
    async def bind_index(self, session_id: str, index_id: str) -> None:
        """Make the assistant search the given vector store."""
        pass

    @abstractmethod
    async def upload_file(self, filename: str, content: bytes) -> str:
        """Upload file bytes. Returns the external file id."""
        pass

    @abstractmethod
    async def attach_file(self, index_id: str, file_id: str) -> None:
        pass

    @abstractmethod
    async def detach_file(self, index_id: str, file_id: str) -> None:
        pass

    @abstractmethod
    async def delete_file(self, file_id: str) -> None:
        pass

    @abstractmethod
    async def get_file_name(self, file_id: str) -> str:
        pass

    @abstractmethod
    async def create_thread(self) -> str:
        pass

    @abstractmethod
    async def add_message(self, thread_id: str, content: str) -> None:
        pass

    @abstractmethod
    async def start_run(self, thread_id: str, session_id: str) -> str:
        pass

    @abstractmethod
    async def get_run(self, thread_id: str, run_id: str) -> RunStatus:
        pass

    @abstractmethod
    async def get_last_reply(self, thread_id: str) -> Optional[AssistantReply]:
        """Latest assistant text message of the thread with its annotations."""
        pass

# ============= Service Layer Interface =============
class IPatientAssistantService(ABC):
    """Entry points exposed to the route and CLI layers"""

    @abstractmethod
    def enqueue_for_processing(self, document_id: str, owner_user_id: str,
                               patient_id: str) -> bool:
        """Queue a document for indexing (fire-and-forget)."""
        pass

    @abstractmethod
    async def run_query(
        self,
        patient_id: str,
        owner_user_id: str,
        question: str,
        streaming: bool = False,
        include_citation_markers: bool = False,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> Union[QueryResult, AsyncIterator[StreamEvent]]:
        """
        Answer a question about the patient's documents.

        Buffered calls return a QueryResult; streaming calls return an async
        iterator of content, citation and done/error events.
        """
        pass

    @abstractmethod
    async def validate_and_repair_index(self, patient_id: str,
                                        owner_user_id: str) -> IndexRepairSummary:
        pass

    @abstractmethod
    async def remove_document(self, patient_id: str, owner_user_id: str,
                              document_id: str) -> bool:
        pass

    @abstractmethod
    async def clear_index(self, patient_id: str, owner_user_id: str) -> bool:
        pass

    @abstractmethod
    def queue_status(self) -> Dict[str, Any]:
        pass
