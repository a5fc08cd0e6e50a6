from sellable.assist.providers.client import ApiClient
from sellable.assist.config import Config
from sellable.assist.errors import BackendError, ConfigurationError, ThreadNotFoundError, TransientBackendError
from openai import AsyncOpenAI
import openai
import httpx
import logging
from typing_extensions import override
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse
import os

LOGGER = logging.getLogger(__name__)

ASSISTANTS_BETA_HEADER = {"OpenAI-Beta": "assistants=v2"}


def translate_openai_error(error: Exception, action: str) -> Exception:
    """
    Maps an ``openai`` SDK exception onto the core error hierarchy.
    """
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ConfigurationError(f"Backend rejected credentials while trying to {action}: {error}")
    if isinstance(error, openai.NotFoundError):
        return ThreadNotFoundError(f"Resource not found while trying to {action}: {error}", status_code=404)
    if isinstance(error, openai.APIConnectionError):
        # also covers APITimeoutError
        return TransientBackendError(f"Connection error while trying to {action}: {error}")
    if isinstance(error, (openai.RateLimitError, openai.InternalServerError)):
        return TransientBackendError(f"Backend unavailable while trying to {action}: {error}",
                                     status_code=error.status_code)
    if isinstance(error, openai.APIStatusError):
        if error.status_code >= 500:
            return TransientBackendError(f"Backend error while trying to {action}: {error}",
                                         status_code=error.status_code)
        return BackendError(f"Backend error while trying to {action}: {error}", status_code=error.status_code)
    return BackendError(f"Unexpected error while trying to {action}: {error}")


class OAIAClient(ApiClient):

    def __init__(self, openai_client: AsyncOpenAI, http_client: Optional[httpx.AsyncClient] = None):
        self.openai_client = openai_client
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "OAIAClient":
        config = config or Config.config()
        options = config.get_openai_client_options()
        openai_client = AsyncOpenAI(default_headers=ASSISTANTS_BETA_HEADER, **options)
        LOGGER.info("Using OpenAI Assistants API")
        return cls(openai_client)

    async def _call(self, action: str, coro):
        try:
            return await coro
        except openai.OpenAIError as e:
            translated = translate_openai_error(e, action)
            LOGGER.warning(f"Error trying to {action}: {e}")
            raise translated from e

    @override
    async def create_thread(self) -> Dict[str, Any]:
        thread = await self._call("create thread", self.openai_client.beta.threads.create())
        LOGGER.info(f"Successfully created thread {thread.id} from provider")
        return thread.model_dump()

    @override
    async def add_message(self, thread_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        created = await self._call(
            f"add message to thread {thread_id}",
            self.openai_client.beta.threads.messages.create(
                thread_id,
                role=message.get("role", "user"),
                content=message["content"],
            ),
        )
        LOGGER.debug(f"Added message {created.id} to thread {thread_id}")
        return created.model_dump()

    @override
    async def list_messages(self, thread_id: str, limit: int = 20, order: str = "desc") -> Dict[str, Any]:
        page = await self._call(
            f"list messages of thread {thread_id}",
            self.openai_client.beta.threads.messages.list(thread_id, limit=limit, order=order),
        )
        return {
            "data": [message.model_dump() for message in page.data],
            "has_more": getattr(page, "has_more", False),
        }

    @override
    async def create_run(self, thread_id: str, assistant_id: str) -> Dict[str, Any]:
        run = await self._call(
            f"create run on thread {thread_id}",
            self.openai_client.beta.threads.runs.create(thread_id, assistant_id=assistant_id),
        )
        LOGGER.info(f"Created run {run.id} on thread {thread_id} with assistant {assistant_id}")
        return run.model_dump()

    @override
    async def get_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        run = await self._call(
            f"get run {run_id}",
            self.openai_client.beta.threads.runs.retrieve(run_id, thread_id=thread_id),
        )
        return run.model_dump()

    @override
    async def upload_file(self, file_or_url: Union[bytes, str], filename: Optional[str] = None) -> Dict[str, Any]:
        if isinstance(file_or_url, str):
            try:
                response = await self.http_client.get(file_or_url)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise BackendError(f"Could not download {file_or_url}: {e}",
                                   status_code=e.response.status_code) from e
            except httpx.HTTPError as e:
                raise TransientBackendError(f"Could not download {file_or_url}: {e}") from e
            content = response.content
            filename = filename or os.path.basename(urlparse(file_or_url).path) or "image.jpg"
        else:
            content = file_or_url
            filename = filename or "image.jpg"

        uploaded = await self._call(
            f"upload file {filename}",
            self.openai_client.files.create(file=(filename, content), purpose="vision"),
        )
        LOGGER.info(f"Uploaded file {filename} as {uploaded.id}")
        return uploaded.model_dump()

    @override
    async def delete_thread(self, thread_id: str) -> bool:
        try:
            await self.openai_client.beta.threads.delete(thread_id)
            LOGGER.info(f"Successfully deleted thread {thread_id} from openai")
            return True
        except openai.NotFoundError:
            LOGGER.warning(f"Thread {thread_id} not found on provider")
            return False
        except openai.OpenAIError as e:
            LOGGER.error(f"Error deleting thread {thread_id} from provider: {e}", exc_info=True)
            raise translate_openai_error(e, f"delete thread {thread_id}") from e

    @override
    async def list_assistants(self, limit: int = 20) -> Dict[str, Any]:
        page = await self._call("list assistants", self.openai_client.beta.assistants.list(limit=limit))
        return {"data": [assistant.model_dump() for assistant in page.data]}

    @override
    async def create_or_update_assistant(self, assistant_id: Optional[str], name: str,
                                         instructions: str, model: str) -> Dict[str, Any]:
        if assistant_id:
            assistant = await self._call(
                f"update assistant {assistant_id}",
                self.openai_client.beta.assistants.update(
                    assistant_id, name=name, instructions=instructions, model=model),
            )
            LOGGER.info(f"Updated assistant {assistant.id}")
        else:
            assistant = await self._call(
                "create assistant",
                self.openai_client.beta.assistants.create(name=name, instructions=instructions, model=model),
            )
            LOGGER.info(f"Created assistant {assistant.id}")
        return assistant.model_dump()

    @override
    async def close(self) -> None:
        await self.http_client.aclose()
        await self.openai_client.close()
