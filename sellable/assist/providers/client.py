from abc import ABC, abstractmethod
import logging
from typing import Any, Dict, Optional, Union

LOGGER = logging.getLogger(__name__)


class ApiClient(ABC):
    """
    Narrow, stateless surface of the assistant backend used by the core.

    Every method returns plain dicts shaped like the backend's JSON so callers
    never depend on a vendor SDK's object model. Failures are raised as
    ``sellable.assist.errors`` exceptions.
    """

    @abstractmethod
    async def create_thread(self) -> Dict[str, Any]:
        """
        Creates a new backend thread. Returns at least ``{"id": ...}``.
        """
        pass

    @abstractmethod
    async def add_message(self, thread_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Appends ``{"role": ..., "content": [...]}`` to a thread.
        """
        pass

    @abstractmethod
    async def list_messages(self, thread_id: str, limit: int = 20, order: str = "desc") -> Dict[str, Any]:
        """
        Returns ``{"data": [message, ...]}``.
        Raises ThreadNotFoundError if the thread does not exist.
        """
        pass

    @abstractmethod
    async def create_run(self, thread_id: str, assistant_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        """
        Returns the run with its ``status`` and, for failures, ``last_error``.
        """
        pass

    @abstractmethod
    async def upload_file(self, file_or_url: Union[bytes, str], filename: Optional[str] = None) -> Dict[str, Any]:
        """
        Uploads raw bytes, or the content behind a URL, for vision use.
        """
        pass

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> bool:
        """
        Deletes a thread by its id.
        Don't throw an exception if it does not exist, just return False.
        """
        pass

    @abstractmethod
    async def list_assistants(self, limit: int = 20) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def create_or_update_assistant(self, assistant_id: Optional[str], name: str,
                                         instructions: str, model: str) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        pass
