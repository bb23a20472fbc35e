import json
import unittest

from ally_ai.decoder import StreamDecoder, ThinkTagSplitter, ToolCallAssembler, chunks_from_response
from ally_ai.errors import ProtocolViolation
from ally_ai.types import (
    ChatMessage,
    Choice,
    CompletionResponse,
    FunctionCall,
    ToolCall,
    UsageInfo,
)


def _event(delta=None, *, finish_reason=None, model="m-1", usage=None) -> str:
    payload = {"id": "c1", "model": model, "choices": []}
    if delta is not None or finish_reason is not None:
        payload["choices"] = [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}]
    if usage is not None:
        payload["usage"] = usage
    return "data: " + json.dumps(payload)


def _feed(decoder: StreamDecoder, lines: list[str]) -> list:
    chunks = []
    for line in lines:
        chunks.extend(decoder.feed_line(line))
    return chunks


class StreamDecoderTests(unittest.TestCase):
    def test_plain_text_stream(self) -> None:
        decoder = StreamDecoder()
        chunks = _feed(
            decoder,
            [
                ": keep-alive",
                _event({"role": "assistant", "content": "Hel"}),
                "",
                _event({"content": "lo"}),
                _event({}, finish_reason="stop"),
                _event(usage={"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}),
                "data: [DONE]",
            ],
        )
        self.assertEqual(
            [c.type for c in chunks],
            ["model_info", "content", "content", "usage", "done"],
        )
        self.assertTrue(chunks[1].is_first)
        self.assertFalse(chunks[2].is_first)
        self.assertEqual(chunks[3].total_tokens, 7)
        self.assertEqual(decoder.finish_reason, "stop")
        self.assertEqual(decoder.finish(), [])

    def test_nothing_after_terminal(self) -> None:
        decoder = StreamDecoder()
        _feed(decoder, ["data: [DONE]"])
        self.assertEqual(decoder.feed_line(_event({"content": "late"})), [])
        self.assertEqual(decoder.finish(), [])

    def test_tool_call_fragments_are_buffered_by_id(self) -> None:
        decoder = StreamDecoder()
        chunks = _feed(
            decoder,
            [
                _event({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "get_weather", "arguments": ""}}]}),
                _event({"tool_calls": [{"index": 0, "function": {"arguments": '{"city":'}}]}),
                _event({"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "get_time", "arguments": "{}"}}]}),
                _event({"tool_calls": [{"index": 0, "function": {"arguments": ' "Oslo"}'}}]}),
                _event({}, finish_reason="tool_calls"),
                "data: [DONE]",
            ],
        )
        types = [c.type for c in chunks]
        self.assertEqual(types.count("tool_call_start"), 2)
        self.assertEqual(types.count("tool_call_end"), 2)
        self.assertEqual(types[-1], "done")

        ends = {c.id: c.tool_call for c in chunks if c.type == "tool_call_end"}
        self.assertEqual(ends["call_a"].function.name, "get_weather")
        self.assertEqual(json.loads(ends["call_a"].function.arguments), {"city": "Oslo"})
        self.assertEqual(ends["call_b"].function.arguments, "{}")

        # Arguments never precede their start nor follow their end.
        for call_id in ("call_a", "call_b"):
            positions = [(i, c.type) for i, c in enumerate(chunks) if getattr(c, "id", None) == call_id]
            self.assertEqual(positions[0][1], "tool_call_start")
            self.assertEqual(positions[-1][1], "tool_call_end")

    def test_reused_index_ends_previous_call(self) -> None:
        decoder = StreamDecoder()
        chunks = _feed(
            decoder,
            [
                _event({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "one", "arguments": "{}"}}]}),
                _event({"tool_calls": [{"index": 0, "id": "call_b", "function": {"name": "two", "arguments": "{}"}}]}),
            ],
        )
        self.assertEqual(
            [(c.type, c.id) for c in chunks if c.type.startswith("tool_call")],
            [
                ("tool_call_start", "call_a"),
                ("tool_call_arguments", "call_a"),
                ("tool_call_end", "call_a"),
                ("tool_call_start", "call_b"),
                ("tool_call_arguments", "call_b"),
            ],
        )

    def test_orphan_arguments_are_fatal(self) -> None:
        decoder = StreamDecoder()
        chunks = _feed(decoder, [_event({"tool_calls": [{"index": 3, "function": {"arguments": "{}"}}]})])
        self.assertEqual(chunks[-1].type, "error")
        self.assertEqual(chunks[-1].code, "protocol_violation")
        self.assertFalse(chunks[-1].retryable)
        self.assertTrue(decoder.finished)

    def test_malformed_events_tolerated_up_to_threshold(self) -> None:
        decoder = StreamDecoder(max_malformed_events=3)
        chunks = _feed(decoder, ["data: {not json", "data: [1, 2]", _event({"content": "ok"}), "data: {oops"])
        self.assertEqual([c.type for c in chunks], ["model_info", "content"])
        self.assertEqual(decoder.malformed_events, 3)

        chunks = decoder.feed_line("data: still broken")
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].code, "malformed_stream")
        self.assertFalse(chunks[0].retryable)

    def test_rejected_event_leaves_no_partial_tool_call(self) -> None:
        decoder = StreamDecoder()
        valid = {"index": 0, "id": "call_1", "function": {"name": "remember", "arguments": '{"fact":'}}
        chunks = _feed(
            decoder,
            [
                _event({"tool_calls": [valid, "garbage"]}),
                _event({}, finish_reason="tool_calls"),
                "data: [DONE]",
            ],
        )
        self.assertEqual(decoder.malformed_events, 1)
        self.assertEqual([c.type for c in chunks], ["model_info", "done"])

    def test_rejected_event_keeps_earlier_state(self) -> None:
        decoder = StreamDecoder()
        chunks = _feed(
            decoder,
            [
                _event({"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "remember", "arguments": "{"}}]}),
                _event({"content": "dropped", "tool_calls": [{"index": 0, "function": {"arguments": 42}}]}),
                _event({"tool_calls": [{"index": 0, "function": {"arguments": "}"}}]}, usage={"total_tokens": "many"}),
                _event({"tool_calls": [{"index": 0, "function": {"arguments": "}"}}]}),
                "data: [DONE]",
            ],
        )
        self.assertEqual(decoder.malformed_events, 2)
        self.assertNotIn("content", [c.type for c in chunks])
        ends = [c for c in chunks if c.type == "tool_call_end"]
        self.assertEqual(len(ends), 1)
        self.assertEqual(ends[0].tool_call.function.arguments, "{}")

    def test_argument_fragmentation_does_not_change_result(self) -> None:
        arguments = '{"query": "weather in Oslo", "days": [1, 2, 3], "units": "metric"}'
        splits = {
            "whole": [arguments],
            "per_character": list(arguments),
            "with_empty_fragments": [part for ch in arguments for part in (ch, "")],
            "uneven": [arguments[:1], arguments[1:17], arguments[17:18], arguments[18:]],
        }
        for label, fragments in splits.items():
            with self.subTest(split=label):
                lines = [_event({"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "search", "arguments": ""}}]})]
                lines += [_event({"tool_calls": [{"index": 0, "function": {"arguments": f}}]}) for f in fragments]
                lines += [_event({}, finish_reason="tool_calls"), "data: [DONE]"]
                chunks = _feed(StreamDecoder(), lines)
                ends = [c for c in chunks if c.type == "tool_call_end"]
                self.assertEqual(len(ends), 1)
                self.assertEqual(ends[0].tool_call.function.arguments, arguments)
                self.assertEqual("".join(c.arguments for c in chunks if c.type == "tool_call_arguments"), arguments)

    def test_error_event_terminates(self) -> None:
        decoder = StreamDecoder()
        chunks = _feed(
            decoder,
            [
                _event({"content": "partial"}),
                'data: {"error": {"message": "Rate limit reached", "type": "rate_limit_error"}}',
            ],
        )
        self.assertEqual(chunks[-1].type, "error")
        self.assertTrue(chunks[-1].retryable)
        self.assertEqual(chunks[-1].message, "Rate limit reached")

    def test_client_error_event_is_fatal(self) -> None:
        for error_obj in (
            {"message": "Invalid tool schema", "type": "invalid_request_error"},
            {"message": "too many tokens", "code": "context_length_exceeded"},
        ):
            with self.subTest(error=error_obj):
                chunks = _feed(StreamDecoder(), [_event({"content": "partial"}), "data: " + json.dumps({"error": error_obj})])
                self.assertEqual(chunks[-1].type, "error")
                self.assertEqual(chunks[-1].status_code, 400)
                self.assertFalse(chunks[-1].retryable)

    def test_named_error_event(self) -> None:
        decoder = StreamDecoder()
        chunks = _feed(decoder, ["event: error", 'data: {"message": "upstream exploded"}'])
        self.assertEqual(chunks[-1].type, "error")
        self.assertEqual(chunks[-1].message, "upstream exploded")

    def test_finish_without_done_reports_dropped_connection(self) -> None:
        decoder = StreamDecoder()
        chunks = _feed(decoder, [_event({"content": "half"})])
        chunks.extend(decoder.finish())
        self.assertEqual(chunks[-1].code, "connection_closed")
        self.assertTrue(chunks[-1].retryable)

    def test_reasoning_routed_only_when_enabled(self) -> None:
        lines = [_event({"reasoning_content": "thinking..."}), _event({"content": "answer"}), "data: [DONE]"]
        routed = _feed(StreamDecoder(route_reasoning=True), lines)
        self.assertEqual([c.type for c in routed], ["model_info", "reasoning", "content", "done"])
        self.assertTrue(routed[2].is_first)

        dropped = _feed(StreamDecoder(), lines)
        self.assertEqual([c.type for c in dropped], ["model_info", "content", "done"])

    def test_think_tags_split_across_deltas(self) -> None:
        decoder = StreamDecoder(parse_think_tags=True)
        chunks = _feed(
            decoder,
            [
                _event({"content": "<thi"}),
                _event({"content": "nk>step one"}),
                _event({"content": "</think>The answer"}),
                _event({"content": " is 4"}),
                "data: [DONE]",
            ],
        )
        reasoning = "".join(c.text for c in chunks if c.type == "reasoning")
        content = "".join(c.text for c in chunks if c.type == "content")
        self.assertEqual(reasoning, "step one")
        self.assertEqual(content, "The answer is 4")
        self.assertNotIn("<think>", content)

    def test_model_info_emitted_on_change(self) -> None:
        decoder = StreamDecoder()
        chunks = _feed(decoder, [_event({"content": "a"}), _event({"content": "b"}), _event({"content": "c"}, model="m-2")])
        self.assertEqual([c.model for c in chunks if c.type == "model_info"], ["m-1", "m-2"])


class ToolCallAssemblerTests(unittest.TestCase):
    def test_assembles_in_arrival_order(self) -> None:
        assembler = ToolCallAssembler()
        assembler.start("a", "f")
        assembler.append("a", '{"x"')
        assembler.append("a", ": 1}")
        call = assembler.end("a")
        self.assertEqual(call.function.arguments, '{"x": 1}')
        self.assertEqual(assembler.open_ids, [])

    def test_unknown_id(self) -> None:
        assembler = ToolCallAssembler()
        with self.assertRaises(ProtocolViolation):
            assembler.append("missing", "{}")
        with self.assertRaises(ProtocolViolation):
            assembler.end("missing")


class ThinkTagSplitterTests(unittest.TestCase):
    def test_holds_back_partial_tag(self) -> None:
        splitter = ThinkTagSplitter()
        self.assertEqual(splitter.feed("hello <"), [(False, "hello ")])
        self.assertEqual(splitter.feed("b>"), [(False, "<b>")])

    def test_flush_releases_pending(self) -> None:
        splitter = ThinkTagSplitter()
        splitter.feed("<think>unfinished</thi")
        self.assertEqual(splitter.flush(), [(True, "</thi")])


class ChunksFromResponseTests(unittest.TestCase):
    def test_response_as_chunks(self) -> None:
        call = ToolCall(id="call_1", function=FunctionCall(name="lookup", arguments='{"q": 1}'))
        response = CompletionResponse(
            id="r",
            model="m",
            choices=[Choice(message=ChatMessage(role="assistant", content="hi", reasoning="hmm", tool_calls=[call]))],
            usage=UsageInfo(prompt_tokens=1, completion_tokens=2, total_tokens=3),
        )
        self.assertEqual(
            [c.type for c in chunks_from_response(response)],
            [
                "model_info",
                "reasoning",
                "content",
                "tool_call_start",
                "tool_call_arguments",
                "tool_call_end",
                "usage",
                "done",
            ],
        )


if __name__ == "__main__":
    unittest.main()
