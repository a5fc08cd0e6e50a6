import logging
LOGGER = logging.getLogger(__name__)

import itertools
from typing import Any, Dict, List, Optional, Union
from sellable.assist.errors import ThreadNotFoundError
from sellable.assist.providers.client import ApiClient


class FakeClock:
  """Settable clock usable as both the wall clock and the sleep function."""

  def __init__(self, now: float = 1_700_000_000.0):
    self.now = now
    self.sleeps: List[float] = []

  def __call__(self) -> float:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += seconds

  async def sleep(self, seconds: float) -> None:
    self.sleeps.append(seconds)
    self.now += seconds


class FakeApiClient(ApiClient):
  """
  In-memory backend. Threads hold message dicts shaped like the Assistants API;
  run polling follows ``run_statuses`` (status strings, dicts or exceptions),
  repeating the last entry once the script runs out.
  """

  def __init__(self, thread_ids: Optional[List[str]] = None, run_statuses: Optional[List[Any]] = None,
               reply: str = "Hello! Yes, it is still available."):
    self._thread_ids = iter(thread_ids) if thread_ids else (f"t_{i}" for i in itertools.count(1))
    self.threads: Dict[str, List[Dict[str, Any]]] = {}
    self.run_statuses = list(run_statuses or ["completed"])
    self.reply = reply
    self.create_thread_calls = 0
    self.add_message_calls: List[Dict[str, Any]] = []
    self.list_messages_calls = 0
    self.create_run_calls = 0
    self.get_run_calls = 0
    self.deleted: List[str] = []
    self.assistants: Dict[str, Dict[str, Any]] = {}
    self.uploads: List[Dict[str, Any]] = []

  async def create_thread(self) -> Dict[str, Any]:
    self.create_thread_calls += 1
    thread_id = next(self._thread_ids)
    self.threads[thread_id] = []
    return {"id": thread_id, "object": "thread"}

  def _thread(self, thread_id: str) -> List[Dict[str, Any]]:
    if thread_id not in self.threads:
      raise ThreadNotFoundError(f"No thread found with id '{thread_id}'", status_code=404)
    return self.threads[thread_id]

  async def add_message(self, thread_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
    thread = self._thread(thread_id)
    created = {"id": f"msg_{len(self.add_message_calls) + 1}", "thread_id": thread_id,
               "role": message["role"], "content": message["content"]}
    thread.append(created)
    self.add_message_calls.append({"thread_id": thread_id, **message})
    return created

  async def list_messages(self, thread_id: str, limit: int = 20, order: str = "desc") -> Dict[str, Any]:
    self.list_messages_calls += 1
    thread = self._thread(thread_id)
    ordered = list(reversed(thread)) if order == "desc" else list(thread)
    return {"data": ordered[:limit], "has_more": len(ordered) > limit}

  async def create_run(self, thread_id: str, assistant_id: str) -> Dict[str, Any]:
    self._thread(thread_id)
    self.create_run_calls += 1
    return {"id": f"run_{self.create_run_calls}", "thread_id": thread_id,
            "assistant_id": assistant_id, "status": "queued"}

  async def get_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
    index = min(self.get_run_calls, len(self.run_statuses) - 1)
    self.get_run_calls += 1
    step = self.run_statuses[index]
    if isinstance(step, Exception):
      raise step
    run = step if isinstance(step, dict) else {"status": step}
    run = {"id": run_id, "thread_id": thread_id, **run}
    if run["status"] == "completed" and self.reply is not None:
      self._thread(thread_id).append({
          "id": f"msg_reply_{run_id}", "thread_id": thread_id, "role": "assistant",
          "content": [{"type": "text", "text": {"value": self.reply, "annotations": []}}],
      })
    return run

  async def upload_file(self, file_or_url: Union[bytes, str], filename: Optional[str] = None) -> Dict[str, Any]:
    uploaded = {"id": f"file_{len(self.uploads) + 1}", "filename": filename, "purpose": "vision"}
    self.uploads.append(uploaded)
    return uploaded

  async def delete_thread(self, thread_id: str) -> bool:
    if thread_id not in self.threads:
      return False
    del self.threads[thread_id]
    self.deleted.append(thread_id)
    return True

  async def list_assistants(self, limit: int = 20) -> Dict[str, Any]:
    return {"data": list(self.assistants.values())[:limit]}

  async def create_or_update_assistant(self, assistant_id: Optional[str], name: str,
                                       instructions: str, model: str) -> Dict[str, Any]:
    assistant_id = assistant_id or f"asst_{len(self.assistants) + 1}"
    assistant = {"id": assistant_id, "name": name, "instructions": instructions, "model": model}
    self.assistants[assistant_id] = assistant
    return assistant


def make_raw_context(chat_id: str = "chat_42", count: int = 3, role: str = "seller",
                     product: Optional[Dict[str, Any]] = None, start: int = 1) -> Dict[str, Any]:
  """Scraper-shaped context with ``count`` alternating messages."""
  messages = [
      {"id": f"msg_{chat_id}_{i}", "content": {"text": f"message number {i}"},
       "sentByUs": i % 2 == 0}
      for i in range(start, start + count)
  ]
  context = {"chatId": chat_id, "role": role, "messages": messages}
  if product is not None:
    context["productDetails"] = product
  return context
