import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Union

from sellable.assist.chunker import MessageChunker
from sellable.assist.config import ThreadSettings
from sellable.assist.errors import BackendError, TransientBackendError
from sellable.assist.messages import ChatMessage, PreparedMessage, TextBlock, needs_chunking
from sellable.assist.providers.client import ApiClient
from sellable.assist.store import KeyValueStore

LOGGER = logging.getLogger(__name__)

ACTIVE_THREADS_KEY = "OPENAI_ACTIVE_THREADS"
THREAD_INFO_KEY = "OPENAI_THREAD_INFO"
CONTEXT_PREFIX = "[Context] "


@dataclass
class ThreadPosition:
    """Where the previous exchange stopped: the last message sent to the thread."""
    message_id: Optional[str] = None
    timestamp: Any = None
    date: Optional[float] = None
    content: Optional[str] = None


@dataclass
class ThreadResult:
    is_new: bool
    thread_id: str
    resume_position: Optional[ThreadPosition] = None


@dataclass
class ConversationThread:
    conversation_id: str
    thread_id: Optional[str] = None
    created_at: Optional[float] = None
    last_used_at: Optional[float] = None
    last_processed_message_id: Optional[str] = None
    last_processed_timestamp: Any = None
    last_processed_date: Optional[float] = None
    last_message_content_snippet: Optional[str] = None
    updated_at: Optional[float] = None

    @classmethod
    def from_records(cls, conversation_id: str, active: Optional[Dict] = None,
                     info: Optional[Dict] = None) -> "ConversationThread":
        active = active or {}
        info = info or {}
        return cls(
            conversation_id=conversation_id,
            thread_id=active.get("thread_id") or info.get("thread_id"),
            created_at=info.get("created_at", active.get("created_at")),
            last_used_at=active.get("last_used_at"),
            last_processed_message_id=info.get("last_processed_message_id"),
            last_processed_timestamp=info.get("last_processed_timestamp"),
            last_processed_date=info.get("last_processed_date"),
            last_message_content_snippet=info.get("last_message_content_snippet"),
            updated_at=info.get("updated_at"),
        )

    def resume_position(self) -> Optional[ThreadPosition]:
        if not (self.last_processed_message_id or self.last_processed_timestamp
                or self.last_message_content_snippet):
            return None
        return ThreadPosition(
            message_id=self.last_processed_message_id,
            timestamp=self.last_processed_timestamp,
            date=self.last_processed_date,
            content=self.last_message_content_snippet,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ThreadLifecycleManager:
    """
    Owns the mapping from chat conversations to backend threads.

    Two structures are persisted in the key-value store: the active map
    ``{conversation_id: {thread_id, created_at, last_used_at}}`` with a short
    TTL, and the extended metadata ``{conversation_id: {thread_id, anchor fields,
    created_at, updated_at}}`` kept much longer so an expired thread can be
    reactivated and resumed. Every mutation re-reads and rewrites a whole
    structure with no await in between.
    """

    def __init__(self, api_client: ApiClient, store: KeyValueStore, settings: Optional[ThreadSettings] = None,
                 clock: Callable[[], float] = time.time, chunker: Optional[MessageChunker] = None,
                 message_pause: float = 0.0, sleep=asyncio.sleep):
        self.api_client = api_client
        self.store = store
        self.settings = settings or ThreadSettings()
        self.clock = clock
        self.chunker = chunker or MessageChunker()
        self.message_pause = message_pause
        self.sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}

    # ---- persistence helpers ----

    def _load_active(self) -> Dict[str, Dict[str, Any]]:
        active = self.store.get(ACTIVE_THREADS_KEY, {})
        return active if isinstance(active, dict) else {}

    def _save_active(self, active: Dict[str, Dict[str, Any]]) -> None:
        self.store.set(ACTIVE_THREADS_KEY, active)

    def _load_info(self) -> Dict[str, Dict[str, Any]]:
        info = self.store.get(THREAD_INFO_KEY, {})
        return info if isinstance(info, dict) else {}

    def _save_info(self, info: Dict[str, Dict[str, Any]]) -> None:
        self.store.set(THREAD_INFO_KEY, info)

    def _drop(self, conversation_id: str) -> None:
        active = self._load_active()
        if active.pop(conversation_id, None) is not None:
            self._save_active(active)
        info = self._load_info()
        if info.pop(conversation_id, None) is not None:
            self._save_info(info)

    def _is_live(self, entry: Optional[Dict[str, Any]], now: float) -> bool:
        if not isinstance(entry, dict) or not entry.get("thread_id"):
            return False
        return now - (entry.get("last_used_at") or 0) < self.settings.ttl_seconds

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def _position_for(self, conversation_id: str, thread_id: str) -> Optional[ThreadPosition]:
        info = self._load_info().get(conversation_id)
        if not isinstance(info, dict):
            return None
        if info.get("thread_id") and info["thread_id"] != thread_id:
            return None
        return ConversationThread.from_records(conversation_id, info=info).resume_position()

    # ---- lifecycle ----

    async def get_or_create_thread(self, conversation_id: str) -> ThreadResult:
        """
        Returns the backend thread for a conversation, creating one if needed.

        Concurrent calls for the same conversation are serialized, so the
        second caller reuses the thread created by the first.

        Raises:
            BackendError: if a new thread cannot be created.
            TransientBackendError: if an expired thread cannot be checked after retrying.
        """
        if not conversation_id:
            raise ValueError("conversation_id is required")

        async with self._lock_for(conversation_id):
            now = self.clock()

            info = self._load_info().get(conversation_id)
            if isinstance(info, dict) and info.get("last_processed_date") \
                    and now - info["last_processed_date"] > self.settings.ignore_older_than_seconds:
                LOGGER.info(f"Conversation {conversation_id} is older than the ignore window, resetting its thread")
                self._drop(conversation_id)

            active = self._load_active()
            entry = active.get(conversation_id)
            if self._is_live(entry, now):
                entry["last_used_at"] = max(entry.get("last_used_at") or now, now)
                self._save_active(active)
                thread_id = entry["thread_id"]
                LOGGER.debug(f"Reusing existing thread {thread_id} for conversation {conversation_id}")
                return ThreadResult(is_new=False, thread_id=thread_id,
                                    resume_position=self._position_for(conversation_id, thread_id))

            info = self._load_info().get(conversation_id)
            if isinstance(info, dict) and info.get("thread_id"):
                thread_id = info["thread_id"]
                if await self._thread_exists(conversation_id, thread_id):
                    now = self.clock()
                    active = self._load_active()
                    active[conversation_id] = {
                        "thread_id": thread_id,
                        "created_at": info.get("created_at", now),
                        "last_used_at": now,
                    }
                    self._save_active(active)
                    LOGGER.info(f"Reactivated thread {thread_id} for conversation {conversation_id}")
                    return ThreadResult(is_new=False, thread_id=thread_id,
                                        resume_position=self._position_for(conversation_id, thread_id))

            return await self._create(conversation_id)

    async def _thread_exists(self, conversation_id: str, thread_id: str) -> bool:
        """
        Checks that an expired thread still exists on the backend.

        Transient errors are retried with linear backoff; any other backend
        error means the thread is gone.

        Raises:
            TransientBackendError: if the backend keeps failing after the retries.
        """
        failures = 0
        while True:
            try:
                await self.api_client.list_messages(thread_id, limit=1)
                return True
            except TransientBackendError as e:
                failures += 1
                if failures > self.settings.reactivation_retries:
                    LOGGER.error(f"Giving up checking thread {thread_id} after {failures} errors: {e}")
                    raise
                LOGGER.warning(f"Retrying check of thread {thread_id}. "
                               f"Attempt {failures}/{self.settings.reactivation_retries}: {e}")
                await self.sleep(self.settings.reactivation_backoff_seconds * failures)
            except BackendError as e:
                LOGGER.warning(f"Thread {thread_id} for conversation {conversation_id} is no longer valid, "
                               f"creating a new one: {e}")
                return False

    async def _create(self, conversation_id: str) -> ThreadResult:
        try:
            response = await self.api_client.create_thread()
        except Exception as e:
            LOGGER.error(f"Error creating thread for conversation {conversation_id}: {e}", exc_info=True)
            raise
        thread_id = response.get("id") if isinstance(response, dict) else None
        if not thread_id:
            raise BackendError(f"Backend returned no thread id for conversation {conversation_id}")

        now = self.clock()
        active = self._load_active()
        active[conversation_id] = {"thread_id": thread_id, "created_at": now, "last_used_at": now}
        self._save_active(active)

        info = self._load_info()
        info[conversation_id] = {
            "conversation_id": conversation_id,
            "thread_id": thread_id,
            "created_at": now,
            "updated_at": now,
        }
        self._save_info(info)
        LOGGER.info(f"Created new thread {thread_id} for conversation {conversation_id}")
        return ThreadResult(is_new=True, thread_id=thread_id, resume_position=None)

    def update_last_processed_message(self, conversation_id: str,
                                      message: Union[ChatMessage, Dict[str, Any]]) -> ConversationThread:
        """
        Records the anchor for the next request: the last message included in this one.
        """
        message = ChatMessage.from_raw(message)
        now = self.clock()

        active = self._load_active()
        entry = active.get(conversation_id)
        info = self._load_info()
        record = dict(info.get(conversation_id) or {})
        record.setdefault("conversation_id", conversation_id)
        record.setdefault("created_at", now)
        if not record.get("thread_id") and isinstance(entry, dict):
            record["thread_id"] = entry.get("thread_id")
        record.update({
            "last_processed_message_id": message.id,
            "last_processed_timestamp": message.timestamp,
            "last_processed_date": now,
            "last_message_content_snippet": message.text,
            "updated_at": now,
        })
        info[conversation_id] = record
        self._save_info(info)

        if isinstance(entry, dict):
            entry["last_used_at"] = max(entry.get("last_used_at") or now, now)
            self._save_active(active)

        LOGGER.debug(f"Updated last processed message for conversation {conversation_id}: {message.id}")
        return ConversationThread.from_records(conversation_id, active=entry, info=record)

    def get_thread_info(self, conversation_id: str) -> Optional[ConversationThread]:
        info = self._load_info().get(conversation_id)
        entry = self._load_active().get(conversation_id)
        if not isinstance(info, dict) and not isinstance(entry, dict):
            return None
        return ConversationThread.from_records(conversation_id, active=entry, info=info)

    def get_active_thread(self, conversation_id: str) -> Optional[ConversationThread]:
        entry = self._load_active().get(conversation_id)
        if not self._is_live(entry, self.clock()):
            return None
        return ConversationThread.from_records(conversation_id, active=entry,
                                               info=self._load_info().get(conversation_id))

    def remove_thread(self, conversation_id: str) -> bool:
        """
        Forgets a conversation's thread locally. The backend thread is left alone.
        """
        existed = conversation_id in self._load_active() or conversation_id in self._load_info()
        self._drop(conversation_id)
        if existed:
            LOGGER.info(f"Removed thread mapping for conversation {conversation_id}")
        return existed

    # ---- maintenance ----

    def cleanup_expired(self) -> Dict[str, int]:
        now = self.clock()
        active = self._load_active()
        expired = [cid for cid, entry in active.items() if not self._is_live(entry, now)]
        for conversation_id in expired:
            del active[conversation_id]
            lock = self._locks.get(conversation_id)
            if lock is not None and not lock.locked():
                del self._locks[conversation_id]
        if expired:
            self._save_active(active)
            LOGGER.info(f"Cleaned up {len(expired)} expired threads ({len(active)} active)")

        info = self._load_info()
        stale_info = []
        for conversation_id, record in info.items():
            if conversation_id in active:
                continue
            if not isinstance(record, dict):
                stale_info.append(conversation_id)
                continue
            last_touched = record.get("updated_at") or record.get("created_at") or 0
            if now - last_touched > self.settings.thread_info_max_age_seconds:
                stale_info.append(conversation_id)
        for conversation_id in stale_info:
            del info[conversation_id]
        if stale_info:
            self._save_info(info)
            LOGGER.info(f"Cleaned up extended info for {len(stale_info)} old threads")

        return {"threads": len(expired), "thread_info": len(stale_info)}

    def check_consistency(self) -> Dict[str, int]:
        """
        Repairs disagreements between the active map and the extended metadata.

        Malformed active entries are dropped. A live active entry always wins a
        thread id disagreement and the metadata is rewritten to match it; an
        expired entry loses to metadata updated after it was last used. Active
        entries with no metadata get it backfilled.
        """
        now = self.clock()
        active = self._load_active()
        info = self._load_info()
        counts = {"dropped": 0, "repaired": 0, "backfilled": 0}

        for conversation_id in list(active):
            entry = active[conversation_id]
            if not isinstance(entry, dict) or not entry.get("thread_id"):
                del active[conversation_id]
                counts["dropped"] += 1
                continue

            thread_id = entry["thread_id"]
            record = info.get(conversation_id)
            if not isinstance(record, dict) or not record.get("thread_id"):
                backfilled = dict(record) if isinstance(record, dict) else {}
                backfilled.update({
                    "conversation_id": conversation_id,
                    "thread_id": thread_id,
                    "created_at": backfilled.get("created_at") or entry.get("created_at") or now,
                    "updated_at": now,
                })
                info[conversation_id] = backfilled
                counts["backfilled"] += 1
            elif record["thread_id"] != thread_id:
                metadata_newer = (record.get("updated_at") or 0) > (entry.get("last_used_at") or 0)
                if metadata_newer and not self._is_live(entry, now):
                    del active[conversation_id]
                    counts["dropped"] += 1
                else:
                    info[conversation_id] = {
                        "conversation_id": conversation_id,
                        "thread_id": thread_id,
                        "created_at": entry.get("created_at") or now,
                        "updated_at": now,
                    }
                    counts["repaired"] += 1

        if counts["dropped"]:
            self._save_active(active)
        if counts["repaired"] or counts["backfilled"]:
            self._save_info(info)
        if any(counts.values()):
            LOGGER.warning(f"Thread consistency check fixed: {counts}")
        return counts

    def get_statistics(self) -> Dict[str, Any]:
        now = self.clock()
        threads = []
        for conversation_id, entry in self._load_active().items():
            if not isinstance(entry, dict):
                continue
            last_used_at = entry.get("last_used_at") or 0
            threads.append({
                "conversation_id": conversation_id,
                "thread_id": entry.get("thread_id"),
                "seconds_since_use": round(now - last_used_at),
                "expires_in": round(self.settings.ttl_seconds - (now - last_used_at)),
            })
        return {
            "active_threads": len(threads),
            "thread_info": len(self._load_info()),
            "threads": threads,
        }

    # ---- delivery ----

    async def send_messages(self, thread_id: str, messages: List[PreparedMessage]) -> List[str]:
        """
        Delivers prepared messages to a thread in order, chunking the oversized
        ones. System messages cannot be added to a thread, so they are sent as
        user messages marked with ``[Context]``.

        Returns:
            The ids of the created backend messages.
        """
        if not thread_id:
            raise ValueError("A valid thread_id is required to send messages")
        if not messages:
            LOGGER.warning(f"No messages to send to thread {thread_id}")
            return []

        deliverable = [as_thread_message(message) for message in messages]
        oversized = sum(1 for message in deliverable if needs_chunking(message, self.chunker.max_blocks))
        LOGGER.debug(f"Sending {len(deliverable)} message(s) to thread {thread_id} ({oversized} chunked)")
        return await self.chunker.send_conversation(self.api_client, thread_id, deliverable,
                                                    pause=self.message_pause, sleep=self.sleep)


def as_thread_message(message: PreparedMessage) -> PreparedMessage:
    if message.role != "system":
        return message
    content = list(message.content)
    for index, block in enumerate(content):
        if isinstance(block, TextBlock):
            content[index] = TextBlock(CONTEXT_PREFIX + block.text)
            break
    else:
        content.insert(0, TextBlock(CONTEXT_PREFIX.strip()))
    return PreparedMessage(role="user", content=content)
