# infrastructure/openai_assistant.py
"""OpenAI / Azure OpenAI Assistants implementation of IAssistantService"""
import logging
import re
from contextlib import contextmanager
from typing import Iterator, List, Optional, Union

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI

from config import settings
from core.domain import Annotation, AssistantReply, RunStatus
from core.exceptions import (
    AssistantNotFoundError, AssistantServiceError, AssistantThrottledError,
    AssistantTimeoutError, AssistantTransientError
)
from core.interfaces import IAssistantService

logger = logging.getLogger(settings.LOGGER_NAME)

AssistantClient = Union[AsyncOpenAI, AsyncAzureOpenAI]

_RETRY_AFTER_HINT = re.compile(r"retry after (\d+(?:\.\d+)?)\s*second", re.IGNORECASE)


def parse_retry_after(error: openai.APIStatusError) -> Optional[float]:
    """Retry hint from the `retry-after` header, else from the error text."""
    header = error.response.headers.get("retry-after") if error.response is not None else None
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    match = _RETRY_AFTER_HINT.search(str(error))
    return float(match.group(1)) if match else None


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """Map SDK exceptions onto the application's assistant error hierarchy."""
    try:
        yield
    except openai.RateLimitError as e:
        raise AssistantThrottledError(
            f"{action} throttled: {e}", status_code=e.status_code, retry_after=parse_retry_after(e)
        ) from e
    except openai.NotFoundError as e:
        raise AssistantNotFoundError(f"{action}: not found", status_code=e.status_code) from e
    except openai.APITimeoutError as e:
        raise AssistantTimeoutError(f"{action} timed out") from e
    except openai.APIConnectionError as e:
        raise AssistantTransientError(f"{action} connection error: {e}") from e
    except openai.InternalServerError as e:
        raise AssistantTransientError(f"{action} server error: {e}", status_code=e.status_code) from e
    except openai.APIStatusError as e:
        raise AssistantServiceError(f"{action} failed: {e}", status_code=e.status_code) from e
    except openai.APIError as e:
        raise AssistantServiceError(f"{action} failed: {e}") from e


def build_client() -> AssistantClient:
    """Azure client when an Azure endpoint is configured, plain OpenAI otherwise."""
    if settings.AZURE_OPENAI_ENDPOINT:
        logger.info(f"Using Azure OpenAI endpoint: {settings.AZURE_OPENAI_ENDPOINT}")
        return AsyncAzureOpenAI(
            api_key=settings.OPENAI_API_KEY,
            azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
            api_version=settings.AZURE_OPENAI_API_VERSION,
            max_retries=settings.OPENAI_MAX_RETRIES,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
        )
    return AsyncOpenAI(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        max_retries=settings.OPENAI_MAX_RETRIES,
        timeout=settings.OPENAI_TIMEOUT_SECONDS,
    )


class OpenAIAssistantService(IAssistantService):
    """
    Assistants API adapter: one assistant with file_search per patient,
    bound to one vector store holding that patient's files.

    SDK-level retries are expected to be off (max_retries=0); throttling is
    paced by the shared rate limiter instead.
    """

    def __init__(
        self,
        client: AssistantClient,
        model: str,
        instructions: str,
        max_num_results: int = 50,
        score_threshold: float = 0.7,
        ranker: str = "default_2024_08_21",
    ):
        self.client = client
        self.model = model
        self.instructions = instructions
        self.max_num_results = max_num_results
        self.score_threshold = score_threshold
        self.ranker = ranker

    # ============= Sessions & indexes =============

    async def create_session(self, name: str) -> str:
        with _translate_errors("Create assistant"):
            assistant = await self.client.beta.assistants.create(
                model=self.model,
                name=name,
                instructions=self.instructions,
                tools=[{
                    "type": "file_search",
                    "file_search": {
                        "max_num_results": self.max_num_results,
                        "ranking_options": {
                            "ranker": self.ranker,
                            "score_threshold": self.score_threshold,
                        },
                    },
                }],
            )
        logger.info(f"[VECTOR STORE] Created assistant {assistant.id} ({name})")
        return assistant.id

    async def delete_session(self, session_id: str) -> None:
        with _translate_errors(f"Delete assistant {session_id}"):
            await self.client.beta.assistants.delete(session_id)

    async def create_index(self, name: str) -> str:
        with _translate_errors("Create vector store"):
            vector_store = await self.client.vector_stores.create(name=name)
        logger.info(f"[VECTOR STORE] Created vector store {vector_store.id} ({name})")
        return vector_store.id

    async def delete_index(self, index_id: str) -> None:
        with _translate_errors(f"Delete vector store {index_id}"):
            await self.client.vector_stores.delete(index_id)

    async def bind_index(self, session_id: str, index_id: str) -> None:
        with _translate_errors(f"Bind vector store {index_id}"):
            await self.client.beta.assistants.update(
                session_id,
                tool_resources={"file_search": {"vector_store_ids": [index_id]}},
            )

    # ============= Files =============

    async def upload_file(self, filename: str, content: bytes) -> str:
        with _translate_errors(f"Upload {filename}"):
            uploaded = await self.client.files.create(file=(filename, content), purpose="assistants")
        return uploaded.id

    async def attach_file(self, index_id: str, file_id: str) -> None:
        with _translate_errors(f"Attach file {file_id}"):
            await self.client.vector_stores.files.create(vector_store_id=index_id, file_id=file_id)

    async def detach_file(self, index_id: str, file_id: str) -> None:
        with _translate_errors(f"Detach file {file_id}"):
            await self.client.vector_stores.files.delete(file_id, vector_store_id=index_id)

    async def delete_file(self, file_id: str) -> None:
        with _translate_errors(f"Delete file {file_id}"):
            await self.client.files.delete(file_id)

    async def get_file_name(self, file_id: str) -> str:
        with _translate_errors(f"Retrieve file {file_id}"):
            file_object = await self.client.files.retrieve(file_id)
        return file_object.filename

    # ============= Threads & runs =============

    async def create_thread(self) -> str:
        with _translate_errors("Create thread"):
            thread = await self.client.beta.threads.create()
        return thread.id

    async def add_message(self, thread_id: str, content: str) -> None:
        with _translate_errors(f"Add message to thread {thread_id}"):
            await self.client.beta.threads.messages.create(thread_id, role="user", content=content)

    async def start_run(self, thread_id: str, session_id: str) -> str:
        with _translate_errors(f"Start run on thread {thread_id}"):
            run = await self.client.beta.threads.runs.create(thread_id, assistant_id=session_id)
        return run.id

    async def get_run(self, thread_id: str, run_id: str) -> RunStatus:
        with _translate_errors(f"Retrieve run {run_id}"):
            run = await self.client.beta.threads.runs.retrieve(run_id, thread_id=thread_id)
        last_error = run.last_error.message if run.last_error else None
        return RunStatus(status=run.status, last_error=last_error)

    async def get_last_reply(self, thread_id: str) -> Optional[AssistantReply]:
        with _translate_errors(f"List messages of thread {thread_id}"):
            page = await self.client.beta.threads.messages.list(thread_id, order="asc")

        replies = [m for m in page.data if m.role == "assistant"]
        if not replies:
            return None

        text_block = next((c for c in replies[-1].content if c.type == "text"), None)
        if text_block is None:
            return None

        annotations: List[Annotation] = []
        for raw in text_block.text.annotations or []:
            file_citation = getattr(raw, "file_citation", None)
            annotations.append(Annotation(
                type=raw.type,
                text=raw.text,
                start_index=raw.start_index,
                end_index=raw.end_index,
                file_id=file_citation.file_id if file_citation else None,
            ))
        return AssistantReply(text=text_block.text.value, annotations=annotations)
