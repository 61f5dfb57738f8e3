import io
import json
import os
import tempfile
import unittest

from chatrelay.server import _load_frames, main, simulate


def _lines(buffer: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


def _events(lines: list[dict], *, skip_presence: bool = True) -> list[dict]:
    return [
        line for line in lines if line["t"] == "event" and not (skip_presence and line["event"] == "getOnlineUsers")
    ]


USERS = [
    {"t": "user.create", "user_id": "xavier", "username": "xavier", "email": "x@example.com"},
    {"t": "user.create", "user_id": "yara", "username": "yara", "email": "y@example.com"},
    {"t": "user.create", "user_id": "mo", "username": "mo", "email": "m@example.com"},
]


class TestChatRelayServer(unittest.TestCase):
    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "connect"}]))
        ndjson_buffer = io.StringIO("\n".join(['{"t": "one"}', '{"t": "two"}']))

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "connect"}])
        self.assertEqual(list(_load_frames(ndjson_buffer)), [{"t": "one"}, {"t": "two"}])
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])

    def test_simulate_direct_message_to_online_user(self):
        frames = USERS + [
            {"t": "connect", "user_id": "yara"},
            {"t": "dm.send", "sender_id": "xavier", "receiver_id": "yara", "text": "hi", "image": None},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        lines = _lines(buffer)
        self.assertEqual(lines[0], {"t": "event", "user_id": "yara", "event": "getOnlineUsers", "payload": ["yara"]})
        events = _events(lines)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["user_id"], "yara")
        self.assertEqual(events[0]["event"], "newMessage")
        self.assertEqual(events[0]["payload"]["text"], "hi")

    def test_simulate_refs_and_errors(self):
        frames = USERS + [
            {"t": "connect", "user_id": "yara"},
            {"t": "dm.send", "ref": "m1", "sender_id": "xavier", "receiver_id": "yara", "text": "draft"},
            {"t": "dm.delete", "user_id": "yara", "message_id": "m1"},
            {"t": "dm.edit", "user_id": "xavier", "message_id": "m1", "text": "final"},
            {"t": "dm.list", "user_id": "yara", "peer_id": "xavier"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        lines = [line for line in _lines(buffer) if line.get("event") != "getOnlineUsers"]
        self.assertEqual([line["t"] for line in lines], ["event", "error", "event", "result"])
        self.assertEqual(lines[1]["code"], "forbidden")
        self.assertEqual(lines[2]["event"], "messageEdited")
        self.assertEqual(lines[3]["messages"][0]["text"], "final")

    def test_simulate_group_removal(self):
        frames = USERS + [
            {"t": "group.create", "ref": "g", "user_id": "xavier", "name": "crew", "member_ids": ["yara", "mo"]},
            {"t": "connect", "user_id": "yara"},
            {"t": "connect", "user_id": "mo"},
            {"t": "group.remove_member", "user_id": "xavier", "group_id": "g", "member_id": "mo"},
            {"t": "group.list_messages", "user_id": "mo", "group_id": "g"},
            {"t": "group.update", "user_id": "yara", "group_id": "g", "name": "takeover"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        lines = _lines(buffer)
        events = _events(lines)
        self.assertEqual([(e["user_id"], e["event"]) for e in events], [("mo", "removedFromGroup"), ("yara", "memberRemoved")])
        self.assertEqual(events[1]["payload"]["removedMemberId"], "mo")
        errors = [line for line in lines if line["t"] == "error"]
        self.assertEqual([e["code"] for e in errors], ["forbidden", "forbidden"])

    def test_unsupported_frame_raises(self):
        with self.assertRaises(ValueError):
            simulate([{"t": "conv.subscribe"}], io.StringIO())

    def test_main_simulate_reads_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "frames.json")
            with open(path, "w", encoding="utf-8") as handle:
                json.dump(USERS[:2] + [{"t": "connect", "user_id": "xavier"}], handle)
            buffer = io.StringIO()

            exit_code = main(["simulate", "-f", path], output=buffer)

        self.assertEqual(exit_code, 0)
        self.assertEqual(_lines(buffer)[0]["payload"], ["xavier"])


if __name__ == "__main__":
    unittest.main()
