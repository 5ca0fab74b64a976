"""Application configuration"""
from typing import Optional
from pydantic_settings import BaseSettings
from utils.common import get_log_file_path, get_project_root

class Settings(BaseSettings):
    """Application configuration"""

    # Logger configuration
    LOG_FILE_PATH: str = get_log_file_path()
    LOGGER_NAME: str = "patient_assistant"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./patient_assistant.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # Recycle connections after 1 hour

    # Stored document bytes
    UPLOADS_DIR: str = f"{get_project_root()}/uploads"

    # Assistant service (OpenAI or Azure OpenAI)
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: Optional[str] = None
    AZURE_OPENAI_ENDPOINT: Optional[str] = None
    AZURE_OPENAI_API_VERSION: str = "2024-05-01-preview"
    OPENAI_MAX_RETRIES: int = 0  # Throttling is handled by the rate limiter
    OPENAI_TIMEOUT_SECONDS: float = 60.0

    ASSISTANT_MODEL: str = "gpt-4o"
    ASSISTANT_INSTRUCTIONS: str = (
        "You are a helpful assistant with access to a vector store containing "
        "medical and medicolegal documents for a single patient. Doctors ask you "
        "questions to inform their clinical judgement about the case they are "
        "reviewing. Answer in succinct dot points that cover all pertinent "
        "information. The questions relate to the files in the vector store, so "
        "you MUST always use it."
    )
    FILE_SEARCH_MAX_RESULTS: int = 50
    FILE_SEARCH_SCORE_THRESHOLD: float = 0.7
    FILE_SEARCH_RANKER: str = "default_2024_08_21"

    # Rate limiting (shared by ingestion and querying)
    RATE_LIMIT_TOKENS_PER_MINUTE: int = 450000
    RATE_LIMIT_SAFETY_MARGIN: float = 0.95
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_BACKOFF_BASE_SECONDS: float = 1.0
    RATE_LIMIT_BACKOFF_MAX_SECONDS: float = 128.0
    RATE_LIMIT_MAX_RETRIES: int = 3

    # Query polling and streaming
    QUERY_POLL_INTERVAL_SECONDS: float = 1.0
    QUERY_MAX_POLL_ATTEMPTS: int = 60
    STREAM_CHUNK_SIZE: int = 300
    CITATION_INSTRUCTION: str = (
        "For each citation, include the reference inline using the format "
        "【citation_index:position†filename】. Example: \"The patient was "
        "diagnosed with hypertension【1:0†medical_report.pdf】.\""
    )

    # Ingestion queue and status events
    INGESTION_QUEUE_MAXSIZE: int = 0  # 0 = unbounded
    EVENT_HISTORY_LIMIT: int = 100

    # App metadata
    APP_TITLE: str = "Patient Document Assistant"
    APP_VERSION: str = "1.0.0"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
