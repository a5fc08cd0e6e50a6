import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Union

from sellable.assist.continuation import ContinuationPlanner
from sellable.assist.errors import ConfigurationError
from sellable.assist.messages import ChatContext, MessageContentPreparer
from sellable.assist.providers.client import ApiClient
from sellable.assist.runs import RunCoordinator
from sellable.assist.store import KeyValueStore
from sellable.assist.threads import ThreadLifecycleManager

LOGGER = logging.getLogger(__name__)

ASSISTANT_IDS_KEY = "ASSISTANT_IDS"
ASSISTANT_ROLES = ("seller", "buyer", "default")
DEFAULT_ASSISTANT_MODEL = "gpt-4o"


@dataclass
class ReplyMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_response_time: float = 0.0

    @property
    def average_response_time(self) -> float:
        if not self.successful_calls:
            return 0.0
        return self.total_response_time / self.successful_calls


class ReplyService:
    """
    Produces the assistant's reply for one scraped chat.

    Picks the assistant for the chat role, finds or creates the conversation's
    thread, sends only the context the thread has not seen yet, records the
    new anchor and runs the assistant. Errors propagate; callers are expected
    to fall back to a canned reply on RunError or DataIntegrityError.
    """

    def __init__(self, api_client: ApiClient, thread_manager: ThreadLifecycleManager,
                 preparer: MessageContentPreparer, run_coordinator: RunCoordinator,
                 planner: ContinuationPlanner, store: KeyValueStore,
                 assistants: Optional[Dict[str, str]] = None, clock: Callable[[], float] = time.monotonic):
        self.api_client = api_client
        self.thread_manager = thread_manager
        self.preparer = preparer
        self.run_coordinator = run_coordinator
        self.planner = planner
        self.store = store
        self.assistants = dict(assistants or {})
        self.clock = clock
        self.metrics = ReplyMetrics()

    # ---- assistants ----

    def _stored_assistants(self) -> Dict[str, str]:
        stored = self.store.get(ASSISTANT_IDS_KEY, {})
        return stored if isinstance(stored, dict) else {}

    def get_assistant_id_for_role(self, role: Optional[str]) -> str:
        stored = self._stored_assistants()
        role = role or "default"
        for source, key in ((stored, role), (self.assistants, role), (stored, "default"), (self.assistants, "default")):
            if source.get(key):
                return source[key]
        raise ConfigurationError(f"No assistant configured for role '{role}' and no default assistant")

    def set_assistant_for_role(self, role: str, assistant_id: str) -> None:
        if role not in ASSISTANT_ROLES:
            raise ValueError(f"Unknown role '{role}', expected one of {ASSISTANT_ROLES}")
        if not assistant_id:
            raise ValueError("assistant_id is required")
        stored = self._stored_assistants()
        stored[role] = assistant_id
        self.store.set(ASSISTANT_IDS_KEY, stored)
        LOGGER.info(f"Set assistant {assistant_id} for role {role}")

    async def create_or_update_assistant(self, role: str, name: str, instructions: str,
                                         model: str = DEFAULT_ASSISTANT_MODEL) -> str:
        if role not in ASSISTANT_ROLES:
            raise ValueError(f"Unknown role '{role}', expected one of {ASSISTANT_ROLES}")
        existing = self._stored_assistants().get(role) or self.assistants.get(role)
        assistant = await self.api_client.create_or_update_assistant(existing, name, instructions, model)
        self.set_assistant_for_role(role, assistant["id"])
        return assistant["id"]

    async def list_assistants(self) -> List[Dict[str, Any]]:
        response = await self.api_client.list_assistants()
        return response.get("data") or []

    # ---- replies ----

    async def generate_reply(self, context: Union[ChatContext, Dict[str, Any]]) -> str:
        if not isinstance(context, ChatContext):
            context = ChatContext.from_raw(context)

        started = self.clock()
        self.metrics.total_calls += 1
        try:
            assistant_id = self.get_assistant_id_for_role(context.role)
            LOGGER.info(f"Generating reply as {context.role} for chat {context.chat_id}")

            thread = await self.thread_manager.get_or_create_thread(context.chat_id)
            LOGGER.debug(f"Thread info: is_new={thread.is_new}, "
                         f"has resume position: {thread.resume_position is not None}")

            plan = self.planner.plan_messages(context, thread)
            prepared = await self.preparer.prepare_messages(plan.messages, plan.product)
            await self.thread_manager.send_messages(thread.thread_id, prepared)

            if context.messages:
                last_message = context.messages[-1]
                self.thread_manager.update_last_processed_message(context.chat_id, last_message)

            reply = await self.run_coordinator.run(thread.thread_id, assistant_id)
        except Exception as e:
            self.metrics.failed_calls += 1
            LOGGER.error(f"Error generating reply for chat {context.chat_id}: {e}", exc_info=True)
            raise

        self.metrics.successful_calls += 1
        self.metrics.total_response_time += self.clock() - started
        return reply

    def get_metrics(self) -> Dict[str, Any]:
        metrics = asdict(self.metrics)
        metrics["average_response_time"] = self.metrics.average_response_time
        metrics["active_threads"] = self.thread_manager.get_statistics()["active_threads"]
        return metrics
