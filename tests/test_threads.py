import logging
LOGGER = logging.getLogger(__name__)

import asyncio
import pytest
from sellable.assist.config import ThreadSettings
from sellable.assist.errors import BackendError, TransientBackendError
from sellable.assist.messages import ChatMessage, ImageUrlBlock, PreparedMessage, TextBlock
from sellable.assist.store import InMemoryKeyValueStore
from sellable.assist.threads import (
    ACTIVE_THREADS_KEY,
    THREAD_INFO_KEY,
    ThreadLifecycleManager,
)
from tests.common import FakeApiClient, FakeClock


HOUR = 60 * 60
DAY = 24 * HOUR


class SlowFakeApiClient(FakeApiClient):

  async def create_thread(self):
    await asyncio.sleep(0.01)
    return await super().create_thread()


class FailingFakeApiClient(FakeApiClient):

  async def create_thread(self):
    raise TransientBackendError("Service unavailable", status_code=503)


class FlakyFakeApiClient(FakeApiClient):
  """Fails the first ``failures`` message listings with a 503."""

  def __init__(self, failures: int, **kwargs):
    super().__init__(**kwargs)
    self.failures = failures

  async def list_messages(self, thread_id, limit=20, order="desc"):
    if self.failures > 0:
      self.failures -= 1
      self.list_messages_calls += 1
      raise TransientBackendError("Service unavailable", status_code=503)
    return await super().list_messages(thread_id, limit=limit, order=order)


class TestThreadLifecycle:

  def setup_method(self):
    self.clock = FakeClock()
    self.store = InMemoryKeyValueStore()
    self.client = FakeApiClient(thread_ids=["t_abc", "t_def", "t_ghi"])
    self.manager = ThreadLifecycleManager(self.client, self.store, ThreadSettings(), clock=self.clock)

  def teardown_method(self):
    self.store.close()

  @pytest.mark.asyncio
  async def test_create_thread(self):
    result = await self.manager.get_or_create_thread("chat_42")
    assert result.is_new
    assert result.thread_id == "t_abc"
    assert result.resume_position is None
    assert self.store.get(ACTIVE_THREADS_KEY)["chat_42"]["thread_id"] == "t_abc"
    assert self.store.get(THREAD_INFO_KEY)["chat_42"]["thread_id"] == "t_abc"

  @pytest.mark.asyncio
  async def test_reuse_within_ttl(self):
    first = await self.manager.get_or_create_thread("chat_42")
    self.clock.advance(HOUR)
    second = await self.manager.get_or_create_thread("chat_42")
    assert not second.is_new
    assert second.thread_id == first.thread_id
    assert self.client.create_thread_calls == 1
    assert self.store.get(ACTIVE_THREADS_KEY)["chat_42"]["last_used_at"] == self.clock.now

  @pytest.mark.asyncio
  async def test_conversations_get_separate_threads(self):
    first = await self.manager.get_or_create_thread("chat_1")
    second = await self.manager.get_or_create_thread("chat_2")
    assert first.thread_id != second.thread_id

  @pytest.mark.asyncio
  async def test_expired_thread_is_reactivated(self):
    await self.manager.get_or_create_thread("chat_42")
    self.manager.update_last_processed_message("chat_42", ChatMessage(id="msg_3", text="see you at 5"))
    self.clock.advance(2 * HOUR + 1)
    assert self.manager.get_active_thread("chat_42") is None

    result = await self.manager.get_or_create_thread("chat_42")
    assert not result.is_new
    assert result.thread_id == "t_abc"
    assert result.resume_position.message_id == "msg_3"
    assert result.resume_position.content == "see you at 5"
    assert self.client.create_thread_calls == 1
    assert self.manager.get_active_thread("chat_42").thread_id == "t_abc"

  @pytest.mark.asyncio
  async def test_invalid_thread_is_replaced(self):
    await self.manager.get_or_create_thread("chat_42")
    self.clock.advance(2 * HOUR + 1)
    await self.client.delete_thread("t_abc")

    result = await self.manager.get_or_create_thread("chat_42")
    assert result.is_new
    assert result.thread_id == "t_def"
    assert result.resume_position is None
    assert self.store.get(THREAD_INFO_KEY)["chat_42"]["thread_id"] == "t_def"

  @pytest.mark.asyncio
  async def test_reactivation_retries_transient_errors(self):
    client = FlakyFakeApiClient(failures=2, thread_ids=["t_abc", "t_def"])
    manager = ThreadLifecycleManager(client, self.store, ThreadSettings(), clock=self.clock, sleep=self.clock.sleep)
    await manager.get_or_create_thread("chat_42")
    manager.update_last_processed_message("chat_42", ChatMessage(id="msg_3", text="see you at 5"))
    self.clock.advance(2 * HOUR + 1)

    result = await manager.get_or_create_thread("chat_42")
    assert not result.is_new
    assert result.thread_id == "t_abc"
    assert result.resume_position.message_id == "msg_3"
    assert client.create_thread_calls == 1
    assert client.list_messages_calls == 3
    assert self.clock.sleeps == [0.5, 1.0]

  @pytest.mark.asyncio
  async def test_reactivation_gives_up_after_retries(self):
    client = FlakyFakeApiClient(failures=10, thread_ids=["t_abc", "t_def"])
    settings = ThreadSettings(reactivation_retries=2)
    manager = ThreadLifecycleManager(client, self.store, settings, clock=self.clock, sleep=self.clock.sleep)
    await manager.get_or_create_thread("chat_42")
    self.clock.advance(2 * HOUR + 1)

    with pytest.raises(TransientBackendError):
      await manager.get_or_create_thread("chat_42")
    assert client.list_messages_calls == 3
    assert client.create_thread_calls == 1
    assert self.store.get(THREAD_INFO_KEY)["chat_42"]["thread_id"] == "t_abc"

  @pytest.mark.asyncio
  async def test_old_conversation_is_reset(self):
    await self.manager.get_or_create_thread("chat_42")
    self.manager.update_last_processed_message("chat_42", ChatMessage(id="msg_3", text="bye"))
    self.clock.advance(DAY + 1)

    result = await self.manager.get_or_create_thread("chat_42")
    assert result.is_new
    assert result.thread_id == "t_def"
    assert self.store.get(THREAD_INFO_KEY)["chat_42"].get("last_processed_message_id") is None

  @pytest.mark.asyncio
  async def test_concurrent_calls_share_one_thread(self):
    client = SlowFakeApiClient()
    manager = ThreadLifecycleManager(client, self.store, clock=self.clock)
    results = await asyncio.gather(*[manager.get_or_create_thread("chat_42") for _ in range(3)])
    assert {result.thread_id for result in results} == {"t_1"}
    assert [result.is_new for result in results] == [True, False, False]
    assert client.create_thread_calls == 1

  @pytest.mark.asyncio
  async def test_create_failure_propagates(self):
    manager = ThreadLifecycleManager(FailingFakeApiClient(), self.store, clock=self.clock)
    with pytest.raises(TransientBackendError):
      await manager.get_or_create_thread("chat_42")
    assert self.store.get(ACTIVE_THREADS_KEY) is None

  @pytest.mark.asyncio
  async def test_conversation_id_required(self):
    with pytest.raises(ValueError):
      await self.manager.get_or_create_thread("")

  # ---- anchors ----

  @pytest.mark.asyncio
  async def test_update_last_processed_message(self):
    await self.manager.get_or_create_thread("chat_42")
    self.clock.advance(30)
    thread = self.manager.update_last_processed_message(
        "chat_42", {"id": "msg_chat_42_3", "content": "message number 3", "timestamp": "Mon 2:11 PM"})
    assert thread.thread_id == "t_abc"
    assert thread.last_processed_message_id == "msg_chat_42_3"
    assert thread.last_processed_timestamp == "Mon 2:11 PM"
    assert thread.last_processed_date == self.clock.now
    assert thread.last_message_content_snippet == "message number 3"

    result = await self.manager.get_or_create_thread("chat_42")
    assert result.resume_position.message_id == "msg_chat_42_3"

  @pytest.mark.asyncio
  async def test_update_keeps_existing_thread_id(self):
    await self.manager.get_or_create_thread("chat_42")
    active = self.store.get(ACTIVE_THREADS_KEY)
    active["chat_42"]["thread_id"] = "t_other"
    self.store.set(ACTIVE_THREADS_KEY, active)
    self.manager.update_last_processed_message("chat_42", ChatMessage(id="m", text="x"))
    assert self.store.get(THREAD_INFO_KEY)["chat_42"]["thread_id"] == "t_abc"

  @pytest.mark.asyncio
  async def test_position_ignored_for_other_thread(self):
    await self.manager.get_or_create_thread("chat_42")
    self.manager.update_last_processed_message("chat_42", ChatMessage(id="m", text="x"))
    info = self.store.get(THREAD_INFO_KEY)
    info["chat_42"]["thread_id"] = "t_old"
    self.store.set(THREAD_INFO_KEY, info)
    result = await self.manager.get_or_create_thread("chat_42")
    assert result.thread_id == "t_abc"
    assert result.resume_position is None

  @pytest.mark.asyncio
  async def test_get_thread_info_and_remove(self):
    assert self.manager.get_thread_info("chat_42") is None
    await self.manager.get_or_create_thread("chat_42")
    info = self.manager.get_thread_info("chat_42")
    assert info.thread_id == "t_abc"
    assert info.to_dict()["conversation_id"] == "chat_42"
    assert self.manager.remove_thread("chat_42") is True
    assert self.manager.get_thread_info("chat_42") is None
    assert self.manager.remove_thread("chat_42") is False
    assert "t_abc" in self.client.threads


class TestThreadMaintenance:

  def setup_method(self):
    self.clock = FakeClock()
    self.store = InMemoryKeyValueStore()
    self.client = FakeApiClient()
    self.manager = ThreadLifecycleManager(self.client, self.store, ThreadSettings(), clock=self.clock)

  @pytest.mark.asyncio
  async def test_cleanup_expired(self):
    await self.manager.get_or_create_thread("old")
    self.clock.advance(3 * HOUR)
    await self.manager.get_or_create_thread("fresh")

    assert self.manager.cleanup_expired() == {"threads": 1, "thread_info": 0}
    assert set(self.store.get(ACTIVE_THREADS_KEY)) == {"fresh"}
    assert set(self.store.get(THREAD_INFO_KEY)) == {"old", "fresh"}

    self.clock.advance(31 * DAY)
    assert self.manager.cleanup_expired() == {"threads": 1, "thread_info": 2}
    assert self.store.get(THREAD_INFO_KEY) == {}

  def test_consistency_backfills_and_drops(self):
    now = self.clock.now
    self.store.set(ACTIVE_THREADS_KEY, {
        "chat_1": {"thread_id": "t_1", "created_at": now, "last_used_at": now},
        "chat_2": {"created_at": now},
        "chat_3": "garbage",
    })
    counts = self.manager.check_consistency()
    assert counts == {"dropped": 2, "repaired": 0, "backfilled": 1}
    assert set(self.store.get(ACTIVE_THREADS_KEY)) == {"chat_1"}
    assert self.store.get(THREAD_INFO_KEY)["chat_1"]["thread_id"] == "t_1"

  def test_consistency_live_entry_wins(self):
    now = self.clock.now
    self.store.set(ACTIVE_THREADS_KEY, {"chat_1": {"thread_id": "t_live", "created_at": now, "last_used_at": now}})
    self.store.set(THREAD_INFO_KEY, {"chat_1": {"thread_id": "t_meta", "updated_at": now + 10}})
    assert self.manager.check_consistency()["repaired"] == 1
    assert self.store.get(THREAD_INFO_KEY)["chat_1"]["thread_id"] == "t_live"
    assert set(self.store.get(ACTIVE_THREADS_KEY)) == {"chat_1"}

  def test_consistency_expired_entry_loses_to_newer_metadata(self):
    old = self.clock.now - 3 * HOUR
    self.store.set(ACTIVE_THREADS_KEY, {"chat_1": {"thread_id": "t_old", "created_at": old, "last_used_at": old}})
    self.store.set(THREAD_INFO_KEY, {"chat_1": {"thread_id": "t_new", "updated_at": self.clock.now}})
    assert self.manager.check_consistency()["dropped"] == 1
    assert self.store.get(ACTIVE_THREADS_KEY) == {}
    assert self.store.get(THREAD_INFO_KEY)["chat_1"]["thread_id"] == "t_new"

  def test_consistency_clean_state(self):
    assert self.manager.check_consistency() == {"dropped": 0, "repaired": 0, "backfilled": 0}

  @pytest.mark.asyncio
  async def test_statistics(self):
    await self.manager.get_or_create_thread("chat_1")
    self.clock.advance(600)
    stats = self.manager.get_statistics()
    assert stats["active_threads"] == 1
    assert stats["thread_info"] == 1
    assert stats["threads"][0] == {"conversation_id": "chat_1", "thread_id": "t_1",
                                   "seconds_since_use": 600, "expires_in": 2 * HOUR - 600}


class TestSendMessages:

  def setup_method(self):
    self.clock = FakeClock()
    self.client = FakeApiClient()
    self.manager = ThreadLifecycleManager(self.client, InMemoryKeyValueStore(), clock=self.clock,
                                          message_pause=0.15, sleep=self.clock.sleep)

  @pytest.mark.asyncio
  async def test_system_messages_sent_as_context(self):
    thread = await self.manager.get_or_create_thread("chat_42")
    messages = [
        PreparedMessage("system", [TextBlock("CONVERSATIONAL CONTEXT: earlier talk")]),
        PreparedMessage("user", [TextBlock("Still available?")]),
    ]
    ids = await self.manager.send_messages(thread.thread_id, messages)
    assert len(ids) == 2
    assert self.client.add_message_calls[0]["role"] == "user"
    assert self.client.add_message_calls[0]["content"][0]["text"] == "[Context] CONVERSATIONAL CONTEXT: earlier talk"
    assert self.clock.sleeps == [0.15]

  @pytest.mark.asyncio
  async def test_oversized_message_is_chunked(self):
    thread = await self.manager.get_or_create_thread("chat_42")
    blocks = [TextBlock("album")] + [ImageUrlBlock(f"https://example.com/{i}.jpg") for i in range(14)]
    ids = await self.manager.send_messages(thread.thread_id, [PreparedMessage("user", blocks)])
    assert len(ids) == 2
    assert [len(call["content"]) for call in self.client.add_message_calls] == [10, 5]

  @pytest.mark.asyncio
  async def test_no_messages(self):
    assert await self.manager.send_messages("t_1", []) == []
    assert self.client.add_message_calls == []

  @pytest.mark.asyncio
  async def test_thread_id_required(self):
    with pytest.raises(ValueError):
      await self.manager.send_messages("", [PreparedMessage("user", [TextBlock("hi")])])

  @pytest.mark.asyncio
  async def test_unknown_thread(self):
    with pytest.raises(BackendError):
      await self.manager.send_messages("t_missing", [PreparedMessage("user", [TextBlock("hi")])])
