import asyncio
import dataclasses
import logging
from typing import List

from sellable.assist.messages import PreparedMessage, TextBlock
from sellable.assist.providers.client import ApiClient

LOGGER = logging.getLogger(__name__)

CONTINUATION_PREFIX = "[Continuation] "
CONTINUES_SUFFIX = " [Continues...]"
DEFAULT_MAX_BLOCKS = 10
DEFAULT_MESSAGE_PAUSE_SECONDS = 0.15


class MessageChunker:
    """
    Splits messages with too many content blocks into several wire messages
    and delivers them to a thread in order.

    Continuation chunks get ``[Continuation] `` on their first text block and
    every chunk but the last gets `` [Continues...]`` on its last text block,
    so the thread reads as one logical message.
    """

    def __init__(self, max_blocks: int = DEFAULT_MAX_BLOCKS):
        if max_blocks < 1:
            raise ValueError("max_blocks must be at least 1")
        self.max_blocks = max_blocks

    def split(self, message: PreparedMessage) -> List[PreparedMessage]:
        if len(message.content) <= self.max_blocks:
            return [message]

        slices = [message.content[i:i + self.max_blocks]
                  for i in range(0, len(message.content), self.max_blocks)]
        chunks = []
        for index, blocks in enumerate(slices):
            blocks = list(blocks)
            text_positions = [i for i, block in enumerate(blocks) if isinstance(block, TextBlock)]
            if text_positions and index > 0:
                first = text_positions[0]
                blocks[first] = dataclasses.replace(blocks[first], text=CONTINUATION_PREFIX + blocks[first].text)
            if text_positions and index < len(slices) - 1:
                last = text_positions[-1]
                blocks[last] = dataclasses.replace(blocks[last], text=blocks[last].text + CONTINUES_SUFFIX)
            chunks.append(PreparedMessage(role=message.role, content=blocks))

        LOGGER.debug(f"Split message with {len(message.content)} blocks into "
                     f"{len(chunks)} chunks of at most {self.max_blocks}")
        return chunks

    @staticmethod
    def strip_markers(text: str) -> str:
        if text.startswith(CONTINUATION_PREFIX):
            text = text[len(CONTINUATION_PREFIX):]
        if text.endswith(CONTINUES_SUFFIX):
            text = text[:-len(CONTINUES_SUFFIX)]
        return text

    async def send_chunked(self, api_client: ApiClient, thread_id: str, message: PreparedMessage) -> List[str]:
        """
        Sends a message, split if needed. Each chunk is sent only after the
        previous add-message call has returned.

        Returns:
            The ids of the created backend messages.
        """
        created_ids = []
        chunks = self.split(message)
        for index, chunk in enumerate(chunks):
            created = await api_client.add_message(thread_id, chunk.to_dict())
            created_ids.append(created.get("id"))
            if len(chunks) > 1:
                LOGGER.debug(f"Sent chunk {index + 1}/{len(chunks)} to thread {thread_id}")
        return created_ids

    async def send_conversation(self, api_client: ApiClient, thread_id: str, messages: List[PreparedMessage],
                                pause: float = DEFAULT_MESSAGE_PAUSE_SECONDS, sleep=asyncio.sleep) -> List[str]:
        """
        Sends messages one after another with a short pause between them.
        System messages cannot be added to a thread and are skipped.
        """
        created_ids = []
        sendable = [message for message in messages if message.role != "system"]
        skipped = len(messages) - len(sendable)
        if skipped:
            LOGGER.debug(f"Skipping {skipped} system message(s) for thread {thread_id}")
        for index, message in enumerate(sendable):
            created_ids.extend(await self.send_chunked(api_client, thread_id, message))
            if pause and index < len(sendable) - 1:
                await sleep(pause)
        LOGGER.info(f"Sent {len(sendable)} message(s) to thread {thread_id}")
        return created_ids
