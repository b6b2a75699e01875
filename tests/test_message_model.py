"""Tests for thread and message models."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from spacechat.chat.message_model import (
    Message,
    MessageFactory,
    TextBlock,
    Thread,
    ToolResultBlock,
    ToolUseBlock,
    block_from_dict,
    default_thread_name,
    normalize_tool_result,
    push_tool_use,
    to_history,
)


# =============================================================================
# Content blocks
# =============================================================================


class TestContentBlocks:
    def test_block_roundtrip(self) -> None:
        blocks = [
            TextBlock(text="hi"),
            ToolUseBlock(id="tu-1", name="pdf_zoomIn", input={"windowId": "w1"}),
            ToolResultBlock(tool_use_id="tu-1", content="{}"),
        ]

        assert [block_from_dict(block.to_dict()) for block in blocks] == blocks

    def test_unknown_block_type(self) -> None:
        with pytest.raises(ValueError):
            block_from_dict({"type": "image"})


# =============================================================================
# Messages and threads
# =============================================================================


class TestEntities:
    def test_message_entity_shape(self) -> None:
        message = MessageFactory("user-1").user_text("Hello", "thread-1")

        entity = message.to_entity()

        assert entity["_id"] == message.id
        assert entity["entityType"] == "Message"
        assert entity["user_id"] == "user-1"
        assert entity["skeleton"]["sender"] == "user"
        assert entity["skeleton"]["thread_id"] == "thread-1"
        assert entity["skeleton"]["content"] == [{"type": "text", "text": "Hello"}]

    def test_message_from_entity(self) -> None:
        entity = {
            "_id": "m1",
            "user_id": "u",
            "created_at": "2024-05-01T12:00:00Z",
            "skeleton": {
                "sender": "assistant",
                "thread_id": "t1",
                "content": [{"type": "text", "text": "Hey"}, "junk"],
            },
        }

        message = Message.from_entity(entity)

        assert message.id == "m1"
        assert message.text == "Hey"
        assert message.created_at == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    def test_message_from_entity_skips_unknown_blocks(self) -> None:
        entity = {
            "_id": "m2",
            "skeleton": {
                "sender": "assistant",
                "thread_id": "t1",
                "content": [{"type": "image", "source": "x.png"}, {"type": "text", "text": "Caption"}],
            },
        }

        message = Message.from_entity(entity)

        assert message.content == [TextBlock(text="Caption")]

    def test_thread_roundtrip_and_link(self) -> None:
        thread = MessageFactory("user-1").thread("editor", default_thread_name("editor"))

        assert thread.link("m1") is True
        assert thread.link("m1") is False
        restored = Thread.from_entity(thread.to_entity())

        assert restored.name == "New Document"
        assert restored.mode == "editor"
        assert restored.message_ids == ["m1"]
        assert restored.id == thread.id

    def test_factory_requires_user(self) -> None:
        with pytest.raises(ValueError):
            MessageFactory("")

    def test_default_thread_names(self) -> None:
        assert default_thread_name("create") == "New Conversation"
        assert default_thread_name("chat") == "New Chat"
        assert default_thread_name("other") == "New Thread"


def test_push_tool_use_and_history() -> None:
    factory = MessageFactory("user-1")
    user = factory.user_text("Zoom", "t1")
    assistant = factory.assistant([], "t1")
    empty = factory.assistant([], "t1")
    error = factory.error("Something failed", "t1")

    block = push_tool_use(assistant, {"id": "tu-1", "name": "pdf_zoomIn", "input": None})
    history = to_history([user, assistant, empty, error])

    assert block.input == {}
    assert error.is_error is True
    assert [entry["role"] for entry in history] == ["user", "assistant"]
    assert history[1]["content"] == [{"type": "tool_use", "id": "tu-1", "name": "pdf_zoomIn", "input": {}}]


def test_normalize_tool_result() -> None:
    assert normalize_tool_result({"status": "error", "message": "m", "data": None}) == {
        "status": "error",
        "message": "m",
        "data": None,
    }
    assert normalize_tool_result({"error": "boom"}) == {
        "status": "error",
        "message": "Error: boom",
        "data": {"error": "boom"},
    }
    assert normalize_tool_result("text") == {
        "status": "success",
        "message": "Tool executed successfully",
        "data": "text",
    }
