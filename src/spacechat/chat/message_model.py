"""Thread, message and content block data models."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Literal, Mapping, Sequence, Union

LOGGER = logging.getLogger(__name__)

ChatMode = Literal["chat", "create", "editor", "exp1"]
MessageSender = Literal["user", "assistant"]

CHAT_MODES: tuple[str, ...] = ("chat", "create", "editor", "exp1")
STOPPED_PLACEHOLDER = "[Generation stopped]"

_THREAD_NAMES: Mapping[str, str] = {
    "create": "New Conversation",
    "chat": "New Chat",
    "editor": "New Document",
    "exp1": "New Experiment",
}


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def default_thread_name(mode: str) -> str:
    """Return the display name given to freshly created threads of ``mode``."""

    return _THREAD_NAMES.get(mode, "New Thread")


@dataclass(slots=True)
class TextBlock:
    """Plain assistant or user text."""

    text: str
    type: Literal["text"] = "text"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True)
class ToolUseBlock:
    """Tool invocation requested by the model."""

    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id, "name": self.name, "input": dict(self.input)}


@dataclass(slots=True)
class ToolResultBlock:
    """Serialized tool output returned to the model."""

    tool_use_id: str
    content: str
    type: Literal["tool_result"] = "tool_result"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "tool_use_id": self.tool_use_id, "content": self.content}


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def block_from_dict(payload: Mapping[str, Any]) -> ContentBlock:
    """Rebuild a content block from its wire/persistence representation."""

    kind = payload.get("type")
    if kind == "text":
        return TextBlock(text=str(payload.get("text") or ""))
    if kind == "tool_use":
        raw_input = payload.get("input")
        return ToolUseBlock(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            input=dict(raw_input) if isinstance(raw_input, Mapping) else {},
        )
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(payload.get("tool_use_id") or ""),
            content=str(payload.get("content") or ""),
        )
    raise ValueError(f"Unsupported content block type: {kind!r}")


@dataclass(slots=True)
class Message:
    """A single chat message owned by a thread."""

    sender: MessageSender
    thread_id: str
    user_id: str
    content: list[ContentBlock] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)
    is_error: bool = False

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    def text_block(self) -> TextBlock | None:
        for block in self.content:
            if isinstance(block, TextBlock):
                return block
        return None

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def tool_result_ids(self) -> set[str]:
        return {block.tool_use_id for block in self.content if isinstance(block, ToolResultBlock)}

    def to_entity(self) -> Dict[str, Any]:
        """Serialize the message for the entity persistence service."""

        return {
            "_id": self.id,
            "entityType": "Message",
            "name": "Message",
            "user_id": self.user_id,
            "skeleton": {
                "@type": "Message",
                "content": [block.to_dict() for block in self.content],
                "sender": self.sender,
                "thread_id": self.thread_id,
                "sourceEntities": [],
            },
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_entity(cls, payload: Mapping[str, Any]) -> "Message":
        skeleton = payload.get("skeleton") or {}
        blocks = []
        for raw in skeleton.get("content") or ():
            if not isinstance(raw, Mapping):
                continue
            try:
                blocks.append(block_from_dict(raw))
            except ValueError as exc:
                LOGGER.warning("Skipping content block of message %s: %s", payload.get("_id"), exc)
        return cls(
            sender=skeleton.get("sender", "assistant"),
            thread_id=str(skeleton.get("thread_id") or ""),
            user_id=str(payload.get("user_id") or ""),
            content=blocks,
            id=str(payload.get("_id") or payload.get("id") or _new_id()),
            created_at=_parse_timestamp(payload.get("created_at")),
        )


@dataclass(slots=True)
class Thread:
    """Conversation container; one is current per chat mode."""

    mode: ChatMode
    user_id: str
    name: str
    message_ids: list[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)

    def link(self, message_id: str) -> bool:
        """Append ``message_id`` unless already present; return True when added."""

        if message_id in self.message_ids:
            return False
        self.message_ids.append(message_id)
        return True

    def to_entity(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "entityType": "Thread",
            "user_id": self.user_id,
            "name": self.name,
            "skeleton": {
                "@type": "Thread",
                "mode": self.mode,
                "message_ids": list(self.message_ids),
            },
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_entity(cls, payload: Mapping[str, Any]) -> "Thread":
        skeleton = payload.get("skeleton") or {}
        return cls(
            mode=skeleton.get("mode", "chat"),
            user_id=str(payload.get("user_id") or ""),
            name=str(payload.get("name") or ""),
            message_ids=[str(item) for item in skeleton.get("message_ids") or ()],
            id=str(payload.get("_id") or payload.get("id") or _new_id()),
            created_at=_parse_timestamp(payload.get("created_at")),
        )


class MessageFactory:
    """Creates thread and message records stamped with the owning user."""

    def __init__(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id is required")
        self.user_id = user_id

    def message(self, content: Iterable[ContentBlock], sender: MessageSender, thread_id: str) -> Message:
        return Message(sender=sender, thread_id=thread_id, user_id=self.user_id, content=list(content))

    def user_text(self, text: str, thread_id: str) -> Message:
        return self.message([TextBlock(text=text)], "user", thread_id)

    def assistant(self, content: Iterable[ContentBlock], thread_id: str) -> Message:
        return self.message(content, "assistant", thread_id)

    def error(self, text: str, thread_id: str) -> Message:
        message = self.message([TextBlock(text=text)], "assistant", thread_id)
        message.is_error = True
        return message

    def thread(self, mode: ChatMode, name: str, message_ids: Sequence[str] = ()) -> Thread:
        return Thread(mode=mode, user_id=self.user_id, name=name, message_ids=list(message_ids))


def push_tool_use(message: Message, tool_use: Mapping[str, Any]) -> ToolUseBlock:
    """Append a ``tool_use`` block built from a stream payload to ``message``."""

    raw_input = tool_use.get("input")
    block = ToolUseBlock(
        id=str(tool_use.get("id") or ""),
        name=str(tool_use.get("name") or ""),
        input=dict(raw_input) if isinstance(raw_input, Mapping) else {},
    )
    message.content.append(block)
    return block


def to_history(messages: Iterable[Message]) -> list[Dict[str, Any]]:
    """Convert messages into the ``conversation_history`` wire format."""

    history: list[Dict[str, Any]] = []
    for message in messages:
        if not message.content or message.is_error:
            continue
        history.append(
            {
                "role": message.sender,
                "content": [block.to_dict() for block in message.content],
            }
        )
    return history


def normalize_tool_result(payload: Any) -> Dict[str, Any]:
    """Wrap raw tool output in a ``{status, message, data}`` envelope.

    Payloads that already carry a ``status`` key pass through unchanged.
    """

    if isinstance(payload, Mapping) and payload.get("status"):
        return dict(payload)
    if isinstance(payload, Mapping) and payload.get("error"):
        return {
            "status": "error",
            "message": f"Error: {payload.get('error')}",
            "data": dict(payload),
        }
    return {
        "status": "success",
        "message": "Tool executed successfully",
        "data": payload,
    }


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return _utcnow()


__all__ = [
    "CHAT_MODES",
    "ChatMode",
    "ContentBlock",
    "Message",
    "MessageFactory",
    "MessageSender",
    "STOPPED_PLACEHOLDER",
    "TextBlock",
    "Thread",
    "ToolResultBlock",
    "ToolUseBlock",
    "block_from_dict",
    "default_thread_name",
    "normalize_tool_result",
    "push_tool_use",
    "to_history",
]
