# Tests for stream_framer.py
import os
import sys
import unittest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from stream_framer import MessageKind, StreamFramer, classify, parse_line


def fixed_clock():
    return 1700000000.0


class ParseLineTests(unittest.TestCase):
    def test_blank_line_yields_nothing(self):
        self.assertIsNone(parse_line("   ", 0.0))
        self.assertIsNone(parse_line("", 0.0))

    def test_invalid_json_becomes_raw_text(self):
        message = parse_line("  not json at all \r", 1.0)
        self.assertEqual(message.kind, MessageKind.RAW)
        self.assertEqual(message.type, "raw")
        self.assertEqual(message.text, "not json at all")

    def test_non_object_json_becomes_raw_text(self):
        message = parse_line("[1, 2, 3]", 1.0)
        self.assertEqual(message.kind, MessageKind.RAW)
        self.assertEqual(message.raw, {"text": "[1, 2, 3]"})

    def test_record_keeps_type_and_subtype(self):
        message = parse_line('{"type":"system","subtype":"init","session_id":"c1"}', 2.0)
        self.assertEqual(message.kind, MessageKind.LIFECYCLE_INIT)
        self.assertEqual(message.type, "system")
        self.assertEqual(message.subtype, "init")
        self.assertEqual(message.conversation_handle, "c1")
        self.assertEqual(message.to_dict()["ts"], 2000)

    def test_only_init_records_carry_a_handle(self):
        message = parse_line('{"type":"result","session_id":"c1"}', 2.0)
        self.assertEqual(message.kind, MessageKind.RESULT)
        self.assertIsNone(message.conversation_handle)

    def test_record_without_type(self):
        message = parse_line('{"foo": 1}', 0.0)
        self.assertEqual(message.kind, MessageKind.OTHER)
        self.assertEqual(message.type, "unknown")
        self.assertNotIn("subtype", message.to_dict())


class ClassifyTests(unittest.TestCase):
    def test_known_types(self):
        self.assertEqual(classify({"type": "assistant"}), MessageKind.ASSISTANT)
        self.assertEqual(classify({"type": "tool_call"}), MessageKind.TOOL_CALL)
        self.assertEqual(classify({"type": "user"}), MessageKind.USER)
        self.assertEqual(classify({"type": "system", "subtype": "status"}), MessageKind.LIFECYCLE)
        self.assertEqual(classify({"type": "thinking"}), MessageKind.OTHER)


class StreamFramerTests(unittest.TestCase):
    def test_line_split_across_chunks(self):
        framer = StreamFramer(clock=fixed_clock)
        first = framer.feed(b'{"type":"assis')
        self.assertEqual(first, [])
        self.assertEqual(framer.pending, '{"type":"assis')
        second = framer.feed(b'tant","message":{"content":"hi"}}\n{"type":"result"')
        self.assertEqual(len(second), 1)
        self.assertEqual(second[0].kind, MessageKind.ASSISTANT)
        self.assertEqual(second[0].raw["message"]["content"], "hi")
        third = framer.feed(b"}\n")
        self.assertEqual([m.kind for m in third], [MessageKind.RESULT])
        self.assertEqual(framer.pending, "")

    def test_multibyte_character_split_across_chunks(self):
        framer = StreamFramer(clock=fixed_clock)
        payload = '{"type":"assistant","text":"café ✓"}\n'.encode("utf-8")
        cut = payload.index("✓".encode("utf-8")) + 1
        self.assertEqual(framer.feed(payload[:cut]), [])
        messages = framer.feed(payload[cut:])
        self.assertEqual(len(messages), 1)
        self.assertEqual(messages[0].raw["text"], "café ✓")

    def test_several_lines_in_one_chunk_keep_order(self):
        framer = StreamFramer(clock=fixed_clock)
        chunk = b'{"type":"system","subtype":"init","session_id":"abc"}\n\n{"type":"user"}\nplain text\n'
        messages = framer.feed(chunk)
        self.assertEqual(
            [m.kind for m in messages],
            [MessageKind.LIFECYCLE_INIT, MessageKind.USER, MessageKind.RAW],
        )
        self.assertEqual(messages[0].conversation_handle, "abc")

    def test_flush_frames_trailing_partial_line(self):
        framer = StreamFramer(clock=fixed_clock)
        self.assertEqual(framer.feed(b'{"type":"result","subtype":"success"}'), [])
        tail = framer.flush()
        self.assertEqual(len(tail), 1)
        self.assertEqual(tail[0].kind, MessageKind.RESULT)
        self.assertEqual(framer.flush(), [])

    def test_stderr_chunks_become_stderr_messages(self):
        framer = StreamFramer(clock=fixed_clock)
        self.assertIsNone(framer.feed_stderr(b"   \n"))
        message = framer.feed_stderr(b"warning: rate limited\n")
        self.assertEqual(message.kind, MessageKind.STDERR)
        self.assertEqual(message.text, "warning: rate limited")


if __name__ == '__main__':
    unittest.main()
