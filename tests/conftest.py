import io
import json
import zipfile
from typing import Any

import pendulum
import pytest

from convarchive.models import Conversation, Message, Role
from convarchive.normalization_utils import BatchClock

INGEST_TIME = pendulum.datetime(2024, 6, 1, 12, 0, 0, tz="UTC")

@pytest.fixture
def clock() -> BatchClock:
    return BatchClock(now=INGEST_TIME)

def tree_node(node_id: str, parent: str | None, children: list[str], role: str | None = None,
              text: str | None = None, create_time: float | None = None, **message_extra: Any) -> dict:
    """One node of a ChatGPT-style mapping; no role means a message-less placeholder."""
    message = None
    if role is not None:
        message = {
            "id": node_id,
            "author": {"role": role},
            "content": {"content_type": "text", "parts": [text or ""]},
            "create_time": create_time,
            **message_extra,
        }
    return {"id": node_id, "message": message, "parent": parent, "children": children}

@pytest.fixture
def branching_tree() -> dict:
    """
    root -> u1 -> a1 (older regeneration)
                -> a2 (newer regeneration) -> u2
    """
    return {
        "id": "conv-tree",
        "title": "Branching chat",
        "create_time": 1700000000.0,
        "default_model_slug": "gpt-4o",
        "mapping": {
            "root": tree_node("root", None, ["u1"]),
            "u1": tree_node("u1", "root", ["a1", "a2"], "user", "What is a monad?", 1700000000.0),
            "a1": tree_node("a1", "u1", [], "assistant", "Old answer", 1700000010.0),
            "a2": tree_node("a2", "u1", ["u2"], "assistant", "New answer", 1700000020.0,
                            metadata={"model_slug": "gpt-4o"}),
            "u2": tree_node("u2", "a2", [], "user", "Thanks", 1700000030.0),
        },
    }

@pytest.fixture
def claude_export() -> list:
    return [
        {
            "uuid": "claude-1",
            "name": "Naming things",
            "chat_messages": [
                {"uuid": "m1", "sender": "human", "text": "Help me name a cat",
                 "created_at": "2024-01-15T10:00:00Z"},
                {"uuid": "m2", "sender": "assistant", "text": "How about Pixel?",
                 "created_at": "2024-01-15T10:00:05.250Z"},
            ],
        },
        {
            "uuid": "claude-2",
            "name": "",
            "chat_messages": [
                {"uuid": "m1", "sender": "human", "text": "Second chat",
                 "created_at": "2024-02-01T08:00:00Z"},
            ],
        },
    ]

def make_zip(entries: dict[str, bytes | str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buffer.getvalue()

def flat_conversation_json(conversation_id: str, *texts: str) -> str:
    messages = [
        {"id": f"{conversation_id}-m{i}", "role": "user" if i % 2 == 0 else "assistant",
         "content": text, "timestamp": 1705312800000 + i * 1000}
        for i, text in enumerate(texts)
    ]
    return json.dumps({"id": conversation_id, "title": f"Chat {conversation_id}", "messages": messages})

def make_conversation(conversation_id: str, platform: str, turns: list[tuple[Role, str]],
                      start: pendulum.DateTime = INGEST_TIME, title: str = "") -> Conversation:
    messages = [
        Message(
            id=f"msg_{i}",
            timestamp=start.add(minutes=i),
            role=role,
            content=content,
            platform=platform,
        )
        for i, (role, content) in enumerate(turns)
    ]
    return Conversation.build(conversation_id, title, platform, messages)
