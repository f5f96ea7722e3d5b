# Tests for event_broadcaster.py
import asyncio
import json
import os
import sys
import unittest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from event_broadcaster import EventBroadcaster, format_sse


class ExplodingSink:
    def put_nowait(self, frame):
        raise ConnectionResetError("client went away")


def decode(frame):
    head, data = frame.strip().split("\n", 1)
    return head[len("event: "):], json.loads(data[len("data: "):])


class FormatTests(unittest.TestCase):
    def test_frame_layout(self):
        frame = format_sse("agent-status", {"id": "acme/app#1", "summary": "ünïcode"})
        self.assertTrue(frame.startswith("event: agent-status\ndata: {"))
        self.assertTrue(frame.endswith("}\n\n"))
        self.assertIn("ünïcode", frame)
        self.assertEqual(frame.count("\n"), 3)


class BroadcasterTests(unittest.IsolatedAsyncioTestCase):
    async def test_subscribe_sends_connected_first(self):
        broadcaster = EventBroadcaster(keepalive_seconds=0)
        client = broadcaster.subscribe()
        event, data = decode(client.sink.get_nowait())
        self.assertEqual(event, "connected")
        self.assertEqual(data, {"clientId": client.id})

    async def test_publish_reaches_every_client(self):
        broadcaster = EventBroadcaster(keepalive_seconds=0)
        a = broadcaster.subscribe()
        b = broadcaster.subscribe()
        self.assertEqual(broadcaster.publish("pr-update", {"pr": {"number": 1}}), 2)
        for client in (a, b):
            client.sink.get_nowait()
            self.assertEqual(decode(client.sink.get_nowait()), ("pr-update", {"pr": {"number": 1}}))

    async def test_failing_sink_does_not_block_others(self):
        broadcaster = EventBroadcaster(keepalive_seconds=0)
        broken = broadcaster.subscribe(ExplodingSink())
        healthy = broadcaster.subscribe()
        healthy.sink.get_nowait()
        self.assertEqual(broadcaster.publish("agent-status", {"status": "running"}), 1)
        self.assertEqual(decode(healthy.sink.get_nowait())[0], "agent-status")
        self.assertEqual(len(broadcaster), 2)
        self.assertTrue(broadcaster.unsubscribe(broken.id))
        self.assertFalse(broadcaster.unsubscribe(broken.id))
        self.assertEqual(len(broadcaster), 1)

    async def test_late_subscriber_misses_earlier_publish(self):
        broadcaster = EventBroadcaster(keepalive_seconds=0)
        a = broadcaster.subscribe()
        b = broadcaster.subscribe()
        broadcaster.publish("agent-status", {"id": "acme/app#1", "status": "running"})
        c = broadcaster.subscribe()
        frames_a = [a.sink.get_nowait() for _ in range(2)]
        frames_b = [b.sink.get_nowait() for _ in range(2)]
        self.assertEqual(frames_a[1], frames_b[1])
        self.assertEqual(decode(c.sink.get_nowait())[0], "connected")
        self.assertTrue(c.sink.empty())

    async def test_full_queue_drops_frames(self):
        broadcaster = EventBroadcaster(keepalive_seconds=0, queue_size=2)
        client = broadcaster.subscribe()
        self.assertEqual(broadcaster.publish("ping", {}), 1)
        self.assertEqual(broadcaster.publish("ping", {}), 0)
        self.assertEqual(client.sink.qsize(), 2)

    async def test_publish_with_no_clients(self):
        broadcaster = EventBroadcaster(keepalive_seconds=0)
        self.assertEqual(broadcaster.publish("agent-complete", {"sessionId": "s"}), 0)

    async def test_unsubscribed_client_gets_nothing(self):
        broadcaster = EventBroadcaster(keepalive_seconds=0)
        client = broadcaster.subscribe()
        client.sink.get_nowait()
        broadcaster.unsubscribe(client.id)
        broadcaster.publish("agent-status", {})
        self.assertTrue(client.sink.empty())

    async def test_keepalive_pings(self):
        broadcaster = EventBroadcaster(keepalive_seconds=0.01, clock=lambda: 42.0)
        client = broadcaster.subscribe()
        client.sink.get_nowait()
        event, data = decode(await asyncio.wait_for(client.sink.get(), timeout=1))
        self.assertEqual(event, "ping")
        self.assertEqual(data, {"time": 42000})
        broadcaster.unsubscribe(client.id)
        await asyncio.sleep(0.01)
        self.assertTrue(client.keepalive.done())

    async def test_close_ends_every_stream(self):
        broadcaster = EventBroadcaster(keepalive_seconds=10)
        client = broadcaster.subscribe()
        client.sink.get_nowait()
        broadcaster.close()
        self.assertIsNone(client.sink.get_nowait())
        await asyncio.sleep(0.01)
        self.assertTrue(client.keepalive.done())


if __name__ == '__main__':
    unittest.main()
