import logging
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

from sellable.assist.config import PreparerSettings
from sellable.assist.errors import InvalidContextError
from sellable.assist.products import ProductDetails
from sellable.utils.image_validation import ImageValidator, filter_image_urls
from sellable.utils.timestamps import to_epoch_seconds

LOGGER = logging.getLogger(__name__)

VALID_ROLES = ("user", "assistant", "system")
TRIVIAL_MESSAGE_PATTERN = re.compile(r"^(👍|👌|✅|🙏|😊)$")
PRODUCT_DETAILS_PREFIX = "PRODUCT DETAILS:\n"
NO_CONTENT = "No content"
NO_VALID_CONTENT = "No valid content"


# ---- Content blocks ----

@dataclass(frozen=True)
class TextBlock:
    type: ClassVar[str] = "text"
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ImageUrlBlock:
    type: ClassVar[str] = "image_url"
    url: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        image_url = {"url": self.url}
        if self.detail:
            image_url["detail"] = self.detail
        return {"type": self.type, "image_url": image_url}


@dataclass(frozen=True)
class ImageFileBlock:
    type: ClassVar[str] = "image_file"
    file_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "image_file": {"file_id": self.file_id}}


ContentBlock = Union[TextBlock, ImageUrlBlock, ImageFileBlock]


def content_block_from_dict(block: Dict[str, Any]) -> Optional[ContentBlock]:
    """
    Parses one wire-format block. Returns None for blocks with no usable payload.

    Accepts both the request shape (``{"type": "text", "text": "..."}``) and the
    shape the backend returns for stored messages (``{"text": {"value": "..."}}``).
    """
    if not isinstance(block, dict):
        return None
    block_type = block.get("type")
    if block_type == "text":
        text = block.get("text")
        if isinstance(text, dict):
            text = text.get("value")
        if isinstance(text, str) and text.strip():
            return TextBlock(text)
        return None
    if block_type == "image_url":
        image_url = block.get("image_url") or {}
        url = image_url.get("url") if isinstance(image_url, dict) else image_url
        if isinstance(url, str) and url.strip():
            return ImageUrlBlock(url, image_url.get("detail") if isinstance(image_url, dict) else None)
        return None
    if block_type == "image_file":
        file_id = (block.get("image_file") or {}).get("file_id")
        return ImageFileBlock(file_id) if file_id else None
    LOGGER.debug(f"Ignoring unsupported content block type: {block_type}")
    return None


@dataclass
class PreparedMessage:
    role: str
    content: List[ContentBlock]

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": [block.to_dict() for block in self.content]}

    def text_blocks(self) -> List[TextBlock]:
        return [block for block in self.content if isinstance(block, TextBlock)]

    def has_text(self) -> bool:
        return any(isinstance(block, TextBlock) for block in self.content)


def needs_chunking(message: PreparedMessage, max_blocks: int) -> bool:
    return len(message.content) > max_blocks


# ---- Scraper context ----

@dataclass
class ChatMessage:
    id: Optional[str] = None
    text: str = ""
    image_urls: List[str] = field(default_factory=list)
    file_ids: List[str] = field(default_factory=list)
    timestamp: Any = None
    sent_by_us: Optional[bool] = None
    role: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Union[Dict[str, Any], "ChatMessage", str]) -> "ChatMessage":
        """
        Normalizes one scraped message.

        ``content`` may be a string, a ``{text, media: {images: [{url}]}, imageUrls}``
        object or a list of wire content blocks. Messages with nothing usable
        get a placeholder text so they still occupy their place in the conversation.
        """
        if isinstance(raw, ChatMessage):
            return raw
        if isinstance(raw, str):
            return cls(text=raw.strip() or NO_CONTENT)
        if not isinstance(raw, dict):
            raise InvalidContextError(f"Unsupported message shape: {type(raw).__name__}")

        content = raw.get("content", raw.get("text"))
        text = ""
        image_urls: List[str] = []
        file_ids: List[str] = []

        if content is None or (isinstance(content, str) and not content.strip()):
            text = NO_CONTENT
        elif isinstance(content, str):
            text = content.strip()
        elif isinstance(content, list):
            texts = []
            for block in (content_block_from_dict(item) for item in content):
                if isinstance(block, TextBlock):
                    texts.append(block.text.strip())
                elif isinstance(block, ImageUrlBlock):
                    image_urls.append(block.url)
                elif isinstance(block, ImageFileBlock):
                    file_ids.append(block.file_id)
            text = "\n".join(texts)
        elif isinstance(content, dict):
            if isinstance(content.get("text"), str):
                text = content["text"].strip()
            for url in content.get("imageUrls") or []:
                if isinstance(url, str) and url.strip():
                    image_urls.append(url)
            media = content.get("media") or {}
            for image in media.get("images") or []:
                url = image.get("url") if isinstance(image, dict) else image
                if isinstance(url, str) and url.strip():
                    image_urls.append(url)
        else:
            raise InvalidContextError(f"Unsupported message content: {type(content).__name__}")

        if not text and not image_urls and not file_ids:
            text = NO_VALID_CONTENT

        sent_by_us = raw.get("sentByUs", raw.get("sent_by_us"))
        role = raw.get("role")
        return cls(
            id=raw.get("id"),
            text=text,
            image_urls=image_urls,
            file_ids=file_ids,
            timestamp=raw.get("timestamp"),
            sent_by_us=sent_by_us if isinstance(sent_by_us, bool) else None,
            role=role if role in VALID_ROLES else None,
        )

    def has_media(self) -> bool:
        return bool(self.image_urls or self.file_ids)

    def is_trivial(self) -> bool:
        if self.has_media():
            return False
        return TRIVIAL_MESSAGE_PATTERN.match(self.text.strip()) is not None


@dataclass
class ChatContext:
    chat_id: str
    role: str = "seller"
    messages: List[ChatMessage] = field(default_factory=list)
    product: Optional[ProductDetails] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "ChatContext":
        """
        Validates a scraped context. Messages come back in chronological order
        with their roles assigned, so later stages never reorder them.
        """
        if not isinstance(raw, dict):
            raise InvalidContextError("Chat context must be a dict")
        chat_id = raw.get("chatId") or raw.get("chat_id")
        if not chat_id:
            raise InvalidContextError("Chat context has no chat id")
        messages = raw.get("messages")
        if not isinstance(messages, list) or not messages:
            raise InvalidContextError(f"Chat context for {chat_id} has no messages")
        return cls(
            chat_id=str(chat_id),
            role=raw.get("role") or "seller",
            messages=assign_roles(sort_chronologically([ChatMessage.from_raw(message) for message in messages])),
            product=ProductDetails.from_raw(raw.get("productDetails") or raw.get("product")),
        )


# ---- Ordering and roles ----

def _numeric_suffix(message_id: Optional[str]) -> Optional[int]:
    if not message_id or "_" not in str(message_id):
        return None
    suffix = str(message_id).rsplit("_", 1)[-1]
    return int(suffix) if suffix.isdigit() else None


def sort_chronologically(messages: List[ChatMessage]) -> List[ChatMessage]:
    """
    Timestamped messages first, in time order. The rest are ordered by the
    numeric suffix of their ids when every one of them has such a suffix,
    otherwise they keep their original order. The sort is stable.
    """
    untimed_suffixes = [
        _numeric_suffix(message.id) for message in messages
        if to_epoch_seconds(message.timestamp) is None
    ]
    use_suffix = bool(untimed_suffixes) and all(suffix is not None for suffix in untimed_suffixes)

    def sort_key(item):
        index, message = item
        seconds = to_epoch_seconds(message.timestamp)
        if seconds is not None:
            return (0, seconds, index)
        if use_suffix:
            return (1, _numeric_suffix(message.id), index)
        return (1, index, index)

    return [message for _, message in sorted(enumerate(messages), key=sort_key)]


def assign_roles(messages: List[ChatMessage]) -> List[ChatMessage]:
    result = []
    for index, message in enumerate(messages):
        if message.sent_by_us is not None:
            role = "assistant" if message.sent_by_us else "user"
        elif message.role in VALID_ROLES:
            role = message.role
        else:
            role = "user" if index % 2 == 0 else "assistant"
        result.append(ChatMessage(
            id=message.id, text=message.text, image_urls=list(message.image_urls),
            file_ids=list(message.file_ids), timestamp=message.timestamp,
            sent_by_us=message.sent_by_us, role=role,
        ))
    return result


# ---- Preparer ----

class MessageContentPreparer:
    """
    Turns a chat context into backend-ready messages.

    Oversized messages are left intact here; delivery hands them to the chunker.
    """

    def __init__(self, settings: Optional[PreparerSettings] = None, image_validator: Optional[ImageValidator] = None):
        self.settings = settings or PreparerSettings()
        self.image_validator = image_validator

    async def prepare(self, context: ChatContext, messages: Optional[List[ChatMessage]] = None,
                      product: Optional[ProductDetails] = None) -> List[PreparedMessage]:
        if context is None:
            raise InvalidContextError("No chat context to prepare")
        return await self.prepare_messages(
            messages if messages is not None else context.messages,
            product if product is not None else context.product,
        )

    async def prepare_messages(self, messages: List[ChatMessage],
                               product: Optional[ProductDetails] = None) -> List[PreparedMessage]:
        prepared: List[PreparedMessage] = []

        if product is not None:
            prepared.append(await self.build_product_message(product))

        # planned order is kept: synthetic system messages lead the chat messages
        ordered = assign_roles([ChatMessage.from_raw(m) for m in messages])
        kept = [message for message in ordered if not message.is_trivial()]
        if len(kept) != len(ordered):
            LOGGER.debug(f"Filtered out {len(ordered) - len(kept)} trivial messages")

        for message in kept:
            prepared.append(self.build_message(message))

        oversized = sum(1 for message in prepared if needs_chunking(message, self.settings.max_blocks_per_message))
        LOGGER.debug(f"Prepared {len(prepared)} messages ({oversized} need chunking)")
        return prepared

    def build_message(self, message: ChatMessage) -> PreparedMessage:
        blocks: List[ContentBlock] = []
        if message.text.strip():
            blocks.append(TextBlock(message.text.strip()))
        for url in filter_image_urls(message.image_urls):
            blocks.append(ImageUrlBlock(url, self.settings.image_detail))
        for file_id in message.file_ids:
            blocks.append(ImageFileBlock(file_id))

        if not blocks:
            blocks.append(TextBlock(NO_VALID_CONTENT))
        elif not any(isinstance(block, TextBlock) for block in blocks):
            blocks.insert(0, TextBlock(describe_media(blocks)))
        return PreparedMessage(role=message.role or "user", content=blocks)

    async def build_product_message(self, product: ProductDetails) -> PreparedMessage:
        blocks: List[ContentBlock] = [TextBlock(PRODUCT_DETAILS_PREFIX + product.summary())]
        limit = self.settings.max_product_images
        if self.settings.validate_images and self.image_validator is not None:
            urls = await self.image_validator.validate(product.images, limit=limit)
        else:
            urls = filter_image_urls(product.images)[:limit]
        blocks.extend(ImageUrlBlock(url, self.settings.image_detail) for url in urls)
        LOGGER.debug(f"Product message for {product.product_id} has {len(urls)} image(s)")
        return PreparedMessage(role="user", content=blocks)


def describe_media(blocks: List[ContentBlock]) -> str:
    types = []
    for block in blocks:
        if block.type not in types:
            types.append(block.type)
    if len(types) == 1:
        return f"[Content of type {types[0]}]"
    return f"[Multimedia content: {', '.join(types)}]"
