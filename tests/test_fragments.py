import json
import unittest

from webchatbridge.fragments import (
    Channel,
    Fragment,
    SseLineBuffer,
    common_prefix_length,
    longest_prefix_delta,
    sse_json,
)
from webchatbridge.providers import ChatGPTAdapter, DeepSeekAdapter


def data(payload) -> str:
    return "data: " + json.dumps(payload, ensure_ascii=False) + "\n"


class TestLongestPrefixDelta(unittest.TestCase):
    def test_cumulative_redelivery_yields_only_the_new_suffix(self) -> None:
        self.assertEqual(longest_prefix_delta("hel", "hello"), "lo")

    def test_first_observation_is_emitted_whole(self) -> None:
        self.assertEqual(longest_prefix_delta("", "hello"), "hello")

    def test_repeated_or_stale_snapshot_yields_nothing(self) -> None:
        self.assertEqual(longest_prefix_delta("hello", "hello"), "")
        self.assertEqual(longest_prefix_delta("hello", "hel"), "")

    def test_rewritten_prefix_reports_only_growth(self) -> None:
        self.assertEqual(longest_prefix_delta("hallo", "hello world"), " world")

    def test_common_prefix_length(self) -> None:
        self.assertEqual(common_prefix_length("abcdef", "abcxyz"), 3)
        self.assertEqual(common_prefix_length("", "abc"), 0)


class TestSseLineBuffer(unittest.TestCase):
    def test_partial_line_is_held_until_completed(self) -> None:
        buf = SseLineBuffer()
        self.assertEqual(buf.feed('data: {"v": "He'), [])
        self.assertEqual(buf.feed('llo"}\ndata: {"v"'), ['data: {"v": "Hello"}'])
        self.assertEqual(buf.feed(': "!"}\n'), ['data: {"v": "!"}'])

    def test_flush_releases_the_trailing_line(self) -> None:
        buf = SseLineBuffer()
        self.assertEqual(buf.feed("event: finish"), [])
        self.assertEqual(buf.flush(), ["event: finish"])
        self.assertEqual(buf.flush(), [])

    def test_sse_json_ignores_done_and_garbage(self) -> None:
        self.assertIsNone(sse_json("data: [DONE]"))
        self.assertIsNone(sse_json("data: {not json"))
        self.assertIsNone(sse_json("event: ping"))
        self.assertEqual(sse_json('data: {"a": 1}'), {"a": 1})


class TestDeepSeekParser(unittest.TestCase):
    def setUp(self) -> None:
        self.adapter = DeepSeekAdapter()
        self.parser = self.adapter.new_parser()

    def test_think_then_response_fragments(self) -> None:
        raw = (
            data({"v": {"response": {"fragments": [{"type": "THINK", "content": "Let me"}]}}})
            + data({"p": "response/fragments/-1/content", "o": "APPEND", "v": " think"})
            + data({"p": "response/fragments", "o": "APPEND", "v": [{"type": "RESPONSE", "content": "Hi"}]})
            + data({"v": " there"})
        )
        result = self.parser.feed(raw)

        self.assertEqual(
            result.fragments,
            [
                Fragment(0, "Let me", "THINK"),
                Fragment(0, "Let me think", "THINK"),
                Fragment(1, "Hi", "RESPONSE"),
                Fragment(1, "Hi there", "RESPONSE"),
            ],
        )
        self.assertFalse(result.completed)

    def test_batch_and_set_operations(self) -> None:
        self.parser.feed(data({"v": {"response": {"fragments": [{"type": "RESPONSE", "content": "a"}]}}}))
        result = self.parser.feed(
            data({
                "p": "response",
                "o": "BATCH",
                "v": [
                    {"p": "fragments/0/content", "o": "SET", "v": "rewritten"},
                    {"p": "quasi_status", "v": "ignored"},
                ],
            })
        )
        self.assertEqual(result.fragments, [Fragment(0, "rewritten", "RESPONSE")])

    def test_completion_markers(self) -> None:
        result = self.parser.feed(data({"v": "x"}) + "event: finish\n")
        self.assertTrue(result.completed)
        self.assertTrue(self.adapter.is_completion_marker(data({"p": "response/status", "v": "FINISHED"}).strip()))
        self.assertFalse(self.adapter.is_completion_marker(data({"p": "response/status", "v": "WIP"}).strip()))

    def test_split_chunks_produce_the_same_fragments(self) -> None:
        line = data({"v": {"response": {"fragments": [{"type": "RESPONSE", "content": "Hello"}]}}})
        first = self.parser.feed(line[:20])
        second = self.parser.feed(line[20:])
        self.assertEqual(first.fragments, [])
        self.assertEqual(second.fragments, [Fragment(0, "Hello", "RESPONSE")])

    def test_untyped_continuation_without_fragments_opens_a_source(self) -> None:
        result = self.parser.feed(data({"v": "orphan"}))
        self.assertEqual(result.fragments, [Fragment(0, "orphan", None)])


class TestChatGPTParser(unittest.TestCase):
    def setUp(self) -> None:
        self.adapter = ChatGPTAdapter()
        self.parser = self.adapter.new_parser()

    def test_parts_and_continuations(self) -> None:
        raw = (
            data({"p": "/message/content/parts/0", "o": "append", "v": "Hel"})
            + data({"v": "lo"})
            + data({"p": "", "o": "patch", "v": [{"p": "/message/content/parts/0", "o": "append", "v": "!"}]})
        )
        result = self.parser.feed(raw)
        self.assertEqual([f.text for f in result.fragments], ["Hel", "Hello", "Hello!"])
        self.assertTrue(all(f.source == 0 and f.hint == "RESPONSE" for f in result.fragments))

    def test_thoughts_map_to_reasoning_sources(self) -> None:
        raw = (
            data({"p": "/message/content/thoughts", "o": "append", "v": [{"summary": "s", "content": "Hmm"}]})
            + data({"p": "/message/content/thoughts/0/content", "o": "append", "v": ", ok"})
        )
        result = self.parser.feed(raw)
        self.assertEqual(result.fragments[-1], Fragment(100, "Hmm, ok", "THINK"))
        self.assertEqual(self.adapter.classify(result.fragments[-1], _State()), Channel.REASONING)

    def test_message_snapshot_never_shrinks_a_part(self) -> None:
        self.parser.feed(data({"p": "/message/content/parts/0", "o": "append", "v": "Hello world"}))
        result = self.parser.feed(
            data({"v": {"message": {"author": {"role": "assistant"}, "content": {"content_type": "text", "parts": ["Hello"]}}}})
        )
        self.assertEqual(result.fragments, [Fragment(0, "Hello world", "RESPONSE")])

    def test_user_message_snapshot_is_ignored(self) -> None:
        result = self.parser.feed(
            data({"p": "", "v": {"message": {"author": {"role": "user"}, "content": {"parts": ["my prompt"]}}}})
        )
        self.assertEqual(result.fragments, [])

    def test_done_marker(self) -> None:
        result = self.parser.feed(data({"p": "/message/content/parts/0", "o": "append", "v": "x"}) + "data: [DONE]\n")
        self.assertTrue(result.completed)


class _State:
    channel_map: dict = {}


class TestClassify(unittest.TestCase):
    def test_untyped_fragment_follows_reasoning_only_state(self) -> None:
        adapter = DeepSeekAdapter()
        state = _State()
        state.channel_map = {0: Channel.REASONING}
        self.assertEqual(adapter.classify(Fragment(1, "x"), state), Channel.REASONING)
        state.channel_map = {0: Channel.REASONING, 1: Channel.RESPONSE}
        self.assertEqual(adapter.classify(Fragment(2, "x"), state), Channel.RESPONSE)
