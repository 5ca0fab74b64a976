"""Shared enumerations used across the application."""
from enum import Enum


class ErrorCode(str, Enum):
    """Error codes for user-facing error messages."""
    FILE_NOT_FOUND = "FILE_NOT_FOUND"


class ProcessingStatus(str, Enum):
    """Document processing lifecycle."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ERROR = "error"

    @staticmethod
    def from_string(status: str) -> 'ProcessingStatus':
        """Convert string to ProcessingStatus enum."""
        try:
            return ProcessingStatus(status)
        except ValueError:
            return ProcessingStatus.ERROR


class IndexStatus(str, Enum):
    """Health of a patient's retrieval index."""
    READY = "ready"
    ERROR = "error"


class QueryState(str, Enum):
    """States of a single query execution."""
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class StreamEventType(str, Enum):
    """Events emitted by a streamed query, in delivery order."""
    CONTENT = "content"
    CITATION = "citation"
    DONE = "done"
    ERROR = "error"


# Run statuses reported by the assistant service
RUN_COMPLETED = "completed"
RUN_TERMINAL_FAILURES = frozenset({"failed", "cancelled", "expired"})

# Event names sent through the event emitter
DOCUMENT_STATUS_EVENT = "document_status"
INDEX_STATUS_EVENT = "index_status"
