"""Common utilities: path management and file name helpers"""
import os
from pathlib import Path

# ⚠️ DO NOT import settings here - causes circular import with config.py


# ============= Path Management =============

def get_project_root() -> str:
    """Returns the absolute path to the project's root directory."""
    return os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))


def get_log_file_path() -> str:
    """Creates the log directory if it doesn't exist and returns the full log file path."""
    project_root = get_project_root()
    log_dir = os.path.join(project_root, 'log')

    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    return os.path.join(log_dir, 'patient_assistant.log')


# ============= File Name Utilities =============

def get_file_extension(filename: str) -> str:
    """Extracts and normalizes the file extension from a filename."""
    return Path(filename).suffix[1:].lower()


def build_upload_name(document_id: str, original_name: str) -> str:
    """
    Name under which a document is uploaded to the assistant service.

    The stem is the internal document id so the id can be recovered from the
    remote filename when the file mapping is missing.
    """
    extension = get_file_extension(original_name)
    return f"{document_id}.{extension}" if extension else document_id


def derive_document_id(filename: str) -> str:
    """Recover a document id from a remote filename (text before the first dot)."""
    return filename.split('.')[0]
