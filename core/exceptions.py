"""Exception hierarchy shared by the core services and their collaborators"""
from typing import Optional

from core.enums import ErrorCode, QueryState


class PatientAssistantError(Exception):
    """Base class for all errors raised by this application."""


# ============= Missing entities (never retried) =============

class EntityNotFoundError(PatientAssistantError):
    pass


class PatientNotFoundError(EntityNotFoundError):
    def __init__(self, patient_id: str):
        self.patient_id = patient_id
        super().__init__(f"Patient {patient_id} not found")


class DocumentNotFoundError(EntityNotFoundError):
    def __init__(self, document_id: str, patient_id: Optional[str] = None):
        self.document_id = document_id
        self.patient_id = patient_id
        super().__init__(f"Document {document_id} not found for patient {patient_id}")


class RetrievalIndexNotFoundError(EntityNotFoundError):
    def __init__(self, patient_id: str):
        self.patient_id = patient_id
        super().__init__(f"No retrieval index configured for patient {patient_id}")


# ============= Storage =============

class StorageError(PatientAssistantError):
    """Generic failure of the document store."""


# ============= Assistant service =============

class AssistantServiceError(PatientAssistantError):
    """Generic failure reported by the external assistant service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class AssistantNotFoundError(AssistantServiceError):
    """The remote object (file, index, session) does not exist."""


class AssistantTransientError(AssistantServiceError):
    """Failure that may succeed when retried after a pause."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class AssistantThrottledError(AssistantTransientError):
    """Explicit rate-limit signal (HTTP 429)."""


class AssistantTimeoutError(AssistantTransientError):
    pass


# ============= Query & ingestion =============

class QueryFailedError(PatientAssistantError):
    """A query reached FAILED or TIMED_OUT."""

    def __init__(self, state: QueryState, reason: str):
        self.state = state
        self.reason = reason
        super().__init__(f"Query {state.value}: {reason}")


class QueryAbandonedError(PatientAssistantError):
    """The caller went away while the run was still being polled."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Caller disconnected while run {run_id} was pending")


class DocumentProcessingError(PatientAssistantError):
    """Raised when document processing fails with a specific error code"""

    def __init__(self, message: str, error_code: ErrorCode):
        self.message = message
        self.error_code = error_code
        super().__init__(message)

    def __str__(self):
        # Format used for logging and status events
        return f"[{self.error_code.value}] {self.message}"
