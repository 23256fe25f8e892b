import io
import json
import unittest

from micro_x_agent_bridge.messages import AgentProgressEvent, Message, ResultMessage, SystemMessage, item_from_dict
from micro_x_agent_bridge.output import StructuredOutputSink, TextOutputRenderer


def _assistant(text: str) -> Message:
    return Message(role="assistant", content=[{"type": "text", "text": text}], uuid="a-1", parent_uuid="u-1", session_id="s1")


class _CountingStream(io.StringIO):
    def __init__(self) -> None:
        super().__init__()
        self.flushes = 0

    def flush(self) -> None:
        self.flushes += 1
        super().flush()


class StructuredOutputSinkTests(unittest.TestCase):
    def test_writes_one_flushed_json_line_per_item(self) -> None:
        stream = _CountingStream()
        sink = StructuredOutputSink(stream, enabled=True)
        sink.write(SystemMessage(session_id="s1", model="m", cwd="/w", tools=["Task"]))
        sink.write(_assistant("hi"))
        sink.write(
            AgentProgressEvent(
                session_id="s1",
                parent_tool_use_id="toolu_1",
                agent_id="ag",
                agent_type="general-purpose",
                status="completed",
            )
        )
        sink.write(ResultMessage(session_id="s1", is_error=False, result="hi", seq=1, uuid="u-1"))

        lines = stream.getvalue().splitlines()
        self.assertEqual(4, len(lines))
        self.assertEqual(4, stream.flushes)
        decoded = [json.loads(line) for line in lines]
        self.assertEqual(["system", "message", "agent_progress", "result"], [d["type"] for d in decoded])
        self.assertEqual("toolu_1", decoded[2]["parentToolUseId"])
        self.assertEqual("success", decoded[3]["subtype"])
        self.assertEqual("hi", item_from_dict(decoded[1]).text)

    def test_disabled_sink_writes_nothing(self) -> None:
        stream = io.StringIO()
        sink = StructuredOutputSink(stream, enabled=False)
        sink.write(_assistant("hidden"))
        self.assertFalse(sink.enabled)
        self.assertEqual("", stream.getvalue())

    def test_unknown_item_type_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            item_from_dict({"type": "telemetry"})


class TextOutputRendererTests(unittest.TestCase):
    def test_renders_assistant_text_and_result_summary(self) -> None:
        stream = io.StringIO()
        renderer = TextOutputRenderer(stream)
        renderer.write(Message(role="user", content=[{"type": "text", "text": "skip me"}], uuid="u", parent_uuid=None, session_id="s1"))
        renderer.write(_assistant("hello"))
        renderer.write(ResultMessage(session_id="s1", is_error=True, result="", error="boom", num_turns=1))

        output = stream.getvalue()
        self.assertNotIn("skip me", output)
        self.assertIn("assistant> hello", output)
        self.assertIn("error> boom", output)
        self.assertIn("1 turn(s)", output)


if __name__ == "__main__":
    unittest.main()
