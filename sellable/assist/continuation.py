import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, TYPE_CHECKING

from sellable.assist.config import ThreadSettings
from sellable.assist.messages import ChatContext, ChatMessage
from sellable.assist.products import ProductDetails
from sellable.utils.timestamps import find_message_by_timestamp

if TYPE_CHECKING:
    from sellable.assist.threads import ThreadPosition, ThreadResult

LOGGER = logging.getLogger(__name__)

PRICE_PATTERNS = [
    re.compile(r"price|precio|pay|pagar|\$|€|cost|costo|worth|vale", re.IGNORECASE),
    re.compile(r"discount|descuento|offer|oferta|lower|cheaper|barato|cheap", re.IGNORECASE),
]
AGREEMENT_PATTERNS = [
    re.compile(r"agree|agreed|acuerdo|deal|trato|accept|acepto", re.IGNORECASE),
    re.compile(r"sounds good|me parece bien|perfect|perfecto", re.IGNORECASE),
    re.compile(r"when can|we meet|nos encontramos|pickup|recoger", re.IGNORECASE),
]
PRODUCT_LINE_KEYWORDS = ("product", "price", "selling")
PRODUCT_LINE_SEARCH_DEPTH = 10
LAST_MESSAGE_EXCERPT_LENGTH = 100
SUMMARY_MIN_NEW_MESSAGES = 5
SUMMARY_MIN_START_INDEX = 10


@dataclass
class ConversationAnalysis:
    message_count: int = 0
    participant_count: int = 0
    has_price_negotiation: bool = False
    has_agreement: bool = False
    last_message: str = ""


@dataclass
class MessagePlan:
    """
    What to send for one request: the chat messages (possibly with a leading
    synthetic system message) and the product to describe, if any.
    """
    messages: List[ChatMessage] = field(default_factory=list)
    product: Optional[ProductDetails] = None
    is_continuation: bool = False
    anchor_index: int = -1


def analyze_conversation(messages: List[ChatMessage]) -> ConversationAnalysis:
    analysis = ConversationAnalysis(message_count=len(messages))
    participants = set()
    for index, message in enumerate(messages):
        if message.sent_by_us is not None:
            participants.add("me" if message.sent_by_us else "them")
        elif message.role:
            participants.add(message.role)

        text = message.text or ""
        if text and not analysis.has_price_negotiation:
            analysis.has_price_negotiation = any(p.search(text) for p in PRICE_PATTERNS)
        if text and not analysis.has_agreement:
            analysis.has_agreement = any(p.search(text) for p in AGREEMENT_PATTERNS)
        if text and index == len(messages) - 1:
            analysis.last_message = text[:LAST_MESSAGE_EXCERPT_LENGTH]
            if len(text) > LAST_MESSAGE_EXCERPT_LENGTH:
                analysis.last_message += "..."

    analysis.participant_count = len(participants)
    return analysis


def build_conversation_summary(messages: List[ChatMessage], analysis: ConversationAnalysis) -> ChatMessage:
    summary = "CONVERSATIONAL CONTEXT: "

    for message in messages[:PRODUCT_LINE_SEARCH_DEPTH]:
        lowered = (message.text or "").lower()
        if any(keyword in lowered for keyword in PRODUCT_LINE_KEYWORDS):
            summary += f"\nProduct discussed: {message.text}\n\n"
            break

    summary += f"This is a continuation of a conversation with {analysis.message_count} previous messages"
    if analysis.has_price_negotiation:
        summary += ". There has been price negotiation"
    if analysis.has_agreement:
        summary += ". The parties appear to have reached some agreement"
    else:
        summary += ". The conversation is ongoing with no final agreement yet"
    if analysis.last_message:
        summary += f".\n\nLast message context: \"{analysis.last_message}\""

    return ChatMessage(text=summary, role="system")


def continuation_note(position: Optional["ThreadPosition"]) -> ChatMessage:
    content = position.content if position is not None and position.content else "Unknown"
    return ChatMessage(
        text=f"Note: This is a continuation of a previous conversation. Last message context was: \"{content}\"",
        role="system",
    )


def find_last_processed_message_index(messages: List[ChatMessage], position: Optional["ThreadPosition"]) -> int:
    """
    Locates the stored anchor in the current message list.

    Tries, in order: id and content together, id alone, content alone, and
    finally the message nearest in time (within 15 minutes).

    Returns:
        The anchor index, or -1 if the anchor cannot be located.
    """
    if position is None:
        return -1

    if position.message_id and position.content:
        for index, message in enumerate(messages):
            if message.id == position.message_id and message.text == position.content:
                return index

    if position.message_id:
        for index, message in enumerate(messages):
            if message.id == position.message_id:
                return index

    if position.content:
        for index, message in enumerate(messages):
            if message.text == position.content:
                return index

    if position.timestamp:
        index = find_message_by_timestamp(messages, position)
        if index != -1:
            LOGGER.debug(f"Found anchor by timestamp at index {index}")
        return index

    return -1


class ContinuationPlanner:
    """
    Decides which part of a conversation a request has to carry, given whether
    the thread is new and where the previous exchange stopped.
    """

    def __init__(self, settings: Optional[ThreadSettings] = None):
        self.settings = settings or ThreadSettings()

    def plan_new_thread(self, messages: List[ChatMessage], product: Optional[ProductDetails],
                        note: Optional[ChatMessage] = None) -> MessagePlan:
        selected = messages[-self.settings.new_thread_max_messages:] if self.settings.new_thread_max_messages else []
        if note is not None:
            selected = [note] + selected
        return MessagePlan(messages=selected, product=product)

    def plan_messages(self, context: ChatContext, thread_result: "ThreadResult") -> MessagePlan:
        messages = list(context.messages)
        product = context.product
        position = thread_result.resume_position

        if thread_result.is_new or position is None or (not position.message_id and not position.timestamp
                                                         and not position.content):
            LOGGER.debug(f"Planning new thread context for {context.chat_id}")
            return self.plan_new_thread(messages, product)

        reduced_product = product.reduced() if product is not None else None
        anchor_index = find_last_processed_message_index(messages, position)
        new_count = len(messages) - anchor_index - 1

        if len(messages) > self.settings.long_conversation_threshold and \
                (anchor_index == -1 or new_count > self.settings.long_conversation_max_new_messages):
            analysis = analyze_conversation(messages)
            recent = messages[-self.settings.recent_messages:] if self.settings.recent_messages else []
            LOGGER.debug(f"Using summary plus {len(recent)} recent messages for long conversation "
                         f"{context.chat_id} ({len(messages)} messages)")
            return MessagePlan(
                messages=[build_conversation_summary(messages, analysis)] + recent,
                product=reduced_product,
                is_continuation=True,
                anchor_index=anchor_index,
            )

        if anchor_index == -1:
            LOGGER.warning(f"Could not find continuation point for {context.chat_id}, sending context hint")
            return self.plan_new_thread(messages, product, note=continuation_note(position))

        new_messages = messages[anchor_index + 1:]
        if not new_messages:
            LOGGER.warning(f"No new messages after the last processed point for {context.chat_id}")
            new_messages = [messages[anchor_index]]
        elif len(new_messages) > SUMMARY_MIN_NEW_MESSAGES and anchor_index + 1 > SUMMARY_MIN_START_INDEX:
            previous = messages[:anchor_index + 1]
            new_messages = [build_conversation_summary(previous, analyze_conversation(previous))] + new_messages
            LOGGER.debug(f"Added conversation summary for {context.chat_id}")

        LOGGER.info(f"Continuing {context.chat_id} from index {anchor_index + 1} "
                    f"with {len(new_messages)} message(s)")
        return MessagePlan(messages=new_messages, product=reduced_product,
                           is_continuation=True, anchor_index=anchor_index)
