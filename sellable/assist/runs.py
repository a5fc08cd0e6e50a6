import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from sellable.assist.config import RunSettings
from sellable.assist.errors import (
    DataIntegrityError,
    RunFailedError,
    RunTimeoutError,
    TransientBackendError,
)
from sellable.assist.providers.client import ApiClient

LOGGER = logging.getLogger(__name__)

# requires_action is polled like a running state: no tools are registered
RUNNING_STATUSES = frozenset({"queued", "in_progress", "requires_action", "cancelling"})
FAILED_STATUSES = frozenset({"failed", "cancelled", "expired", "incomplete"})
COMPLETED_STATUS = "completed"
TERMINAL_STATUSES = FAILED_STATUSES | {COMPLETED_STATUS}


def extract_text(message: Optional[Dict[str, Any]]) -> str:
    """
    Joins the text blocks of a backend message. Image blocks are ignored.
    """
    if not message:
        return ""
    texts = []
    for block in message.get("content") or []:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        text = block.get("text")
        if isinstance(text, dict):
            text = text.get("value")
        if isinstance(text, str) and text:
            texts.append(text)
    return "\n".join(texts)


class RunCoordinator:
    """
    Runs an assistant against a thread and returns its reply text.

    At most one run is in flight per thread; a second caller for the same
    thread waits for the first to finish.
    """

    def __init__(self, api_client: ApiClient, settings: Optional[RunSettings] = None,
                 sleep=asyncio.sleep, clock: Callable[[], float] = time.monotonic):
        self.api_client = api_client
        self.settings = settings or RunSettings()
        self.sleep = sleep
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _thread_lock(self, thread_id: str):
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        self._lock_users[thread_id] = self._lock_users.get(thread_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[thread_id] -= 1
            if not self._lock_users[thread_id]:
                del self._lock_users[thread_id]
                del self._locks[thread_id]

    async def run(self, thread_id: str, assistant_id: str) -> str:
        """
        Starts a run, polls it to a terminal state and fetches the reply.

        Raises:
            RunFailedError: the run ended failed, cancelled or expired, or in an unknown state.
            RunTimeoutError: the run did not finish within the attempt limit or deadline.
            DataIntegrityError: the newest thread message is not a usable assistant reply.
        """
        async with self._thread_lock(thread_id):
            LOGGER.info(f"Running assistant {assistant_id} on thread {thread_id}")
            run = await self.api_client.create_run(thread_id, assistant_id)
            run_id = run.get("id")
            if not run_id:
                raise DataIntegrityError(f"Backend returned no run id for thread {thread_id}")
            LOGGER.debug(f"Started run {run_id} on thread {thread_id}")

            await self.wait_for_completion(thread_id, run_id)
            return await self.fetch_reply(thread_id)

    async def wait_for_completion(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        interval = self.settings.poll_interval_seconds
        deadline = self.clock() + self.settings.timeout_seconds
        transient_failures = 0
        attempts = 0

        while attempts < self.settings.max_attempts:
            attempts += 1
            try:
                run = await self.api_client.get_run(thread_id, run_id)
            except TransientBackendError as e:
                transient_failures += 1
                if transient_failures > self.settings.max_transient_retries:
                    LOGGER.error(f"Giving up polling run {run_id} after {transient_failures} errors: {e}",
                                 exc_info=True)
                    raise
                LOGGER.warning(f"Retrying due to polling error on run {run_id}. "
                               f"Attempt {transient_failures}/{self.settings.max_transient_retries}: {e}")
                await self._wait(interval * transient_failures, deadline, run_id, attempts)
                continue

            status = run.get("status")
            LOGGER.debug(f"Run {run_id} status: {status} (attempt {attempts})")
            if status == COMPLETED_STATUS:
                LOGGER.info(f"Run {run_id} completed successfully")
                return run
            if status in FAILED_STATUSES:
                last_error = run.get("last_error") or {}
                LOGGER.error(f"Run {run_id} {status}. Reason: {last_error.get('message') or 'Unknown error'}")
                raise RunFailedError(run_id, status, reason=last_error.get("message"), code=last_error.get("code"))
            if status not in RUNNING_STATUSES:
                LOGGER.error(f"Unknown run status for {run_id}: {status}")
                raise RunFailedError(run_id, status or "unknown", reason=f"Unknown run status: {status}")

            await self._wait(interval, deadline, run_id, attempts)

        LOGGER.error(f"Polling timed out for run {run_id} after {attempts} attempts")
        raise RunTimeoutError(run_id, attempts)

    async def _wait(self, delay: float, deadline: float, run_id: str, attempts: int) -> None:
        if self.clock() + delay > deadline:
            LOGGER.error(f"Run {run_id} did not finish before the deadline")
            raise RunTimeoutError(run_id, attempts)
        await self.sleep(delay)

    async def fetch_reply(self, thread_id: str) -> str:
        messages = await self.api_client.list_messages(thread_id, limit=1, order="desc")
        data = messages.get("data") or []
        latest = data[0] if data else None
        if not latest or latest.get("role") != "assistant":
            raise DataIntegrityError(f"No assistant message found as the latest message in thread {thread_id}")
        text = extract_text(latest)
        if not text:
            raise DataIntegrityError(f"No text content found in the assistant message of thread {thread_id}")
        LOGGER.debug(f"Retrieved assistant reply from thread {thread_id}")
        return text
