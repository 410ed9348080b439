import json
import unittest

from webchatbridge import constants
from webchatbridge.emitter import (
    CompletionCollector,
    StreamEmitter,
    extract_conversation_id_from_messages,
    format_conversation_marker,
    sse_error,
)
from webchatbridge.fragments import Channel
from webchatbridge.reconcile import Chunk, ConversationMarker, Done, Replace


def payloads(lines: list[str]) -> list:
    out = []
    for line in lines:
        body = line[len("data: "):].strip()
        out.append(body if body == "[DONE]" else json.loads(body))
    return out


class TestStreamEmitter(unittest.TestCase):
    def test_events_map_to_openai_chunks(self) -> None:
        emitter = StreamEmitter("deepseek-web-reasoner")
        lines = emitter.start()
        for event in (
            Chunk(Channel.REASONING, "thinking"),
            Chunk(Channel.RESPONSE, "Hello"),
            Replace(Channel.RESPONSE, "Hello!"),
            ConversationMarker("abc-123"),
            Done(),
        ):
            lines.extend(emitter.render(event))

        chunks = payloads(lines)
        deltas = [c["choices"][0]["delta"] for c in chunks[:-1]]

        self.assertEqual(deltas[0], {"role": "assistant"})
        self.assertEqual(deltas[1], {"reasoning_content": "thinking"})
        self.assertEqual(deltas[2], {"content": "Hello"})
        self.assertEqual(deltas[3], {"content": constants.REPLACE_MARKER + "Hello!"})
        self.assertEqual(deltas[4], {"content": format_conversation_marker("abc-123")})
        self.assertEqual(chunks[-2]["choices"][0]["finish_reason"], "stop")
        self.assertEqual(chunks[-1], "[DONE]")
        self.assertEqual({c["id"] for c in chunks[:-1]}, {emitter.chunk_id})
        self.assertEqual(emitter.response_text, "Hello!")
        self.assertEqual(emitter.conversation_id, "abc-123")

    def test_marker_without_handle_emits_nothing(self) -> None:
        emitter = StreamEmitter("gpt-web-chat")
        self.assertEqual(emitter.render(ConversationMarker(None)), [])
        self.assertEqual(emitter.render(Chunk(Channel.RESPONSE, "")), [])

    def test_sse_error_shape(self) -> None:
        lines = sse_error("boom", "upstream_error", 502)
        self.assertEqual(payloads(lines), [{"error": {"message": "boom", "type": "upstream_error", "code": 502}}, "[DONE]"])


class TestCompletionCollector(unittest.TestCase):
    def test_build_folds_events(self) -> None:
        collector = CompletionCollector("deepseek-web-reasoner")
        for event in (
            Chunk(Channel.REASONING, "hmm"),
            Chunk(Channel.RESPONSE, "draft"),
            Replace(Channel.RESPONSE, "final"),
            ConversationMarker("conv-9"),
            Done(),
        ):
            collector.feed(event)

        result = collector.build("prompt")
        message = result["choices"][0]["message"]

        self.assertEqual(result["object"], "chat.completion")
        self.assertEqual(result["conversation_id"], "conv-9")
        self.assertEqual(message["content"], "final" + format_conversation_marker("conv-9"))
        self.assertEqual(message["reasoning_content"], "hmm")
        self.assertEqual(result["usage"]["reasoning_tokens"], 3)


class TestConversationIdExtraction(unittest.TestCase):
    def test_handle_is_read_from_latest_assistant_message(self) -> None:
        messages = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "Hello" + format_conversation_marker("old-1")},
            {"role": "user", "content": "again"},
            {"role": "assistant", "content": [{"type": "text", "text": "Sure" + format_conversation_marker("new-2")}]},
            {"role": "user", "content": "more"},
        ]
        self.assertEqual(extract_conversation_id_from_messages(messages), "new-2")

    def test_latest_assistant_without_marker_means_new_conversation(self) -> None:
        messages = [
            {"role": "assistant", "content": "Hello" + format_conversation_marker("old-1")},
            {"role": "assistant", "content": "no marker here"},
            {"role": "user", "content": "hi"},
        ]
        self.assertIsNone(extract_conversation_id_from_messages(messages))
        self.assertIsNone(extract_conversation_id_from_messages([{"role": "user", "content": "hi"}]))
