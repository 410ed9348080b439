"""
Output emitter: serializes reconciliation events as OpenAI-compatible chat completion chunks.

    Chunk(RESPONSE)      -> delta.content
    Chunk(REASONING)     -> delta.reasoning_content
    Replace(RESPONSE)    -> delta.content prefixed with __REPLACE__ (client discards earlier content)
    ConversationMarker   -> fenced ```wcb-conversation-id block appended to the content
    Done                 -> finish_reason "stop" chunk, then data: [DONE]
"""

import json
import re
import time
import uuid
from typing import Optional

from . import constants
from .fragments import Channel
from .reconcile import Chunk, ConversationMarker, Done, Replace

_CONVERSATION_ID_RE = re.compile(
    r"```" + re.escape(constants.CONVERSATION_ID_FENCE) + r"\s*\n\s*([^\s`]+)\s*\n?```"
)

def format_conversation_marker(handle: str) -> str:
    return f"\n\n```{constants.CONVERSATION_ID_FENCE}\n{handle}\n```"

def coerce_message_content_to_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(part.get("text") or "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return str(content or "")

def extract_conversation_id_from_messages(messages: list) -> Optional[str]:
    """Conversation handle embedded in the most recent assistant message, if any."""
    for message in reversed(messages or []):
        if not isinstance(message, dict) or message.get("role") != "assistant":
            continue
        match = _CONVERSATION_ID_RE.search(coerce_message_content_to_text(message.get("content")))
        return match.group(1) if match else None
    return None

def sse(payload) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"

def sse_error(message: str, error_type: str, code: int) -> list[str]:
    error_chunk = {
        "error": {
            "message": message,
            "type": error_type,
            "code": code,
        }
    }
    return [sse(error_chunk), "data: [DONE]\n\n"]

class StreamEmitter:
    def __init__(self, model: str):
        self.model = model
        self.chunk_id = f"chatcmpl-{uuid.uuid4()}"
        self.created = int(time.time())
        self.response_text = ""
        self.reasoning_text = ""
        self.conversation_id: Optional[str] = None
        self.replaced = False
        self.finished = False

    def _chunk(self, delta: dict, finish_reason: Optional[str] = None) -> str:
        return sse({
            "id": self.chunk_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }],
        })

    def start(self) -> list[str]:
        return [self._chunk({"role": "assistant"})]

    def render(self, event) -> list[str]:
        if isinstance(event, Chunk):
            if not event.text:
                return []
            if event.channel == Channel.REASONING:
                self.reasoning_text += event.text
                return [self._chunk({"reasoning_content": event.text})]
            self.response_text += event.text
            return [self._chunk({"content": event.text})]

        if isinstance(event, Replace):
            self.response_text = event.text
            self.replaced = True
            return [self._chunk({"content": constants.REPLACE_MARKER + event.text})]

        if isinstance(event, ConversationMarker):
            if not event.handle:
                return []
            self.conversation_id = event.handle
            return [self._chunk({"content": format_conversation_marker(event.handle)})]

        if isinstance(event, Done):
            self.finished = True
            return [self._chunk({}, finish_reason="stop"), "data: [DONE]\n\n"]

        return []

class CompletionCollector:
    """Non-streaming counterpart: folds events into one chat.completion object."""

    def __init__(self, model: str):
        self.model = model
        self.response_text = ""
        self.reasoning_text = ""
        self.conversation_id: Optional[str] = None

    def feed(self, event) -> None:
        if isinstance(event, Chunk):
            if event.channel == Channel.REASONING:
                self.reasoning_text += event.text
            else:
                self.response_text += event.text
        elif isinstance(event, Replace):
            self.response_text = event.text
        elif isinstance(event, ConversationMarker) and event.handle:
            self.conversation_id = event.handle

    def build(self, prompt: str) -> dict:
        content = self.response_text.strip()
        if self.conversation_id:
            content += format_conversation_marker(self.conversation_id)
        message_obj = {"role": "assistant", "content": content}
        if self.reasoning_text:
            message_obj["reasoning_content"] = self.reasoning_text.strip()

        prompt_tokens = len(prompt)
        completion_tokens = len(self.response_text)
        reasoning_tokens = len(self.reasoning_text)
        usage_obj = {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens + reasoning_tokens,
        }
        if reasoning_tokens > 0:
            usage_obj["reasoning_tokens"] = reasoning_tokens

        return {
            "id": f"chatcmpl-{uuid.uuid4()}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": self.model,
            "conversation_id": self.conversation_id,
            "choices": [{
                "index": 0,
                "message": message_obj,
                "finish_reason": "stop",
            }],
            "usage": usage_obj,
        }
