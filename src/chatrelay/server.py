"""Chat relay CLI: run the aiohttp server or drive the core from JSON frames."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import Any, Dict, Iterable, TextIO

from aiohttp import web

from .config import load_config_from_env
from .direct import DirectMessageChannel
from .dispatcher import FanoutDispatcher
from .errors import ChatError
from .groups import GroupChannel
from .log_config import configure_logging
from .presence import Connection, PresenceRegistry
from .store import InMemoryConversationStore
from .users import UserDirectory
from .ws_transport import app_from_config


logger = logging.getLogger(__name__)


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Process JSON frames through an in-memory core and emit delivered events.

    Frames that create a message or group may carry a ``ref`` alias; later
    frames can then use that alias wherever a ``message_id`` or ``group_id``
    is expected.
    """

    store = InMemoryConversationStore()
    presence = PresenceRegistry()
    dispatcher = FanoutDispatcher(presence)
    users = UserDirectory(store)
    direct = DirectMessageChannel(store, dispatcher)
    groups = GroupChannel(store, dispatcher)
    connections: Dict[str, Connection] = {}
    refs: Dict[str, str] = {}

    def emit(message: dict) -> None:
        output.write(json.dumps(message) + "\n")

    def connection_for(user_id: str) -> Connection:
        def _callback(event: str, payload: Any, user: str = user_id) -> None:
            emit({"t": "event", "user_id": user, "event": event, "payload": payload})

        return Connection(user_id=user_id, callback=_callback)

    def resolve(frame: dict, key: str) -> str:
        value = frame[key]
        return refs.get(value, value)

    def remember(frame: dict, record_id: str) -> None:
        alias = frame.get("ref")
        if alias:
            refs[alias] = record_id

    def result(frame_type: str, user_id: str, key: str, records: list) -> None:
        emit({"t": "result", "frame": frame_type, "user_id": user_id, key: [r.to_api_dict() for r in records]})

    for frame in frames:
        frame_type = frame.get("t")
        try:
            if frame_type == "user.create":
                user = users.register(
                    frame["username"],
                    frame["email"],
                    bio=frame.get("bio", ""),
                    user_id=frame.get("user_id"),
                )
                remember(frame, user.id)
            elif frame_type == "connect":
                user_id = resolve(frame, "user_id")
                connections[user_id] = connection_for(user_id)
                presence.connect(user_id, connections[user_id])
            elif frame_type == "disconnect":
                user_id = resolve(frame, "user_id")
                connection = connections.pop(user_id, None)
                if connection is not None:
                    presence.disconnect(user_id, connection)
            elif frame_type == "dm.send":
                message = direct.send(
                    resolve(frame, "sender_id"),
                    resolve(frame, "receiver_id"),
                    text=frame.get("text"),
                    image=frame.get("image"),
                )
                remember(frame, message.id)
            elif frame_type == "dm.edit":
                direct.edit(resolve(frame, "user_id"), resolve(frame, "message_id"), frame.get("text") or "")
            elif frame_type == "dm.delete":
                direct.delete(resolve(frame, "user_id"), resolve(frame, "message_id"))
            elif frame_type == "dm.list":
                user_id = resolve(frame, "user_id")
                result(frame_type, user_id, "messages", direct.list_conversation(user_id, resolve(frame, "peer_id")))
            elif frame_type == "group.create":
                group = groups.create(
                    resolve(frame, "user_id"),
                    frame.get("name") or "",
                    [refs.get(member_id, member_id) for member_id in frame.get("member_ids", [])],
                    description=frame.get("description"),
                    avatar=frame.get("avatar"),
                )
                remember(frame, group.id)
            elif frame_type == "group.send":
                message = groups.send(
                    resolve(frame, "user_id"),
                    resolve(frame, "group_id"),
                    text=frame.get("text"),
                    image=frame.get("image"),
                )
                remember(frame, message.id)
            elif frame_type == "group.edit":
                groups.edit(resolve(frame, "user_id"), resolve(frame, "message_id"), frame.get("text") or "")
            elif frame_type == "group.delete_message":
                groups.delete_message(resolve(frame, "user_id"), resolve(frame, "message_id"))
            elif frame_type == "group.list_messages":
                user_id = resolve(frame, "user_id")
                result(frame_type, user_id, "messages", groups.list_messages(user_id, resolve(frame, "group_id")))
            elif frame_type == "group.update":
                groups.update_info(
                    resolve(frame, "user_id"),
                    resolve(frame, "group_id"),
                    name=frame.get("name"),
                    description=frame.get("description"),
                    avatar=frame.get("avatar"),
                )
            elif frame_type == "group.delete":
                groups.delete_group(resolve(frame, "user_id"), resolve(frame, "group_id"))
            elif frame_type == "group.add_member":
                groups.add_member(resolve(frame, "user_id"), resolve(frame, "group_id"), resolve(frame, "member_id"))
            elif frame_type == "group.remove_member":
                groups.remove_member(
                    resolve(frame, "user_id"), resolve(frame, "group_id"), resolve(frame, "member_id")
                )
            else:
                raise ValueError(f"unsupported frame type: {frame_type}")
        except ChatError as exc:
            emit({"t": "error", "code": exc.code, "message": str(exc)})


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config_from_env()
    overrides = {
        "host": args.host,
        "port": args.port,
        "db_path": args.db,
        "ping_interval_s": args.ping_interval,
        "log_level": args.log_level.upper() if args.log_level else None,
    }
    config = replace(config, **{key: value for key, value in overrides.items() if value is not None})
    configure_logging(config.log_level)
    logger.info("starting chat relay on %s:%s (db=%s)", config.host, config.port, config.db_path or "memory")
    app = app_from_config(config)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Chat relay CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Drive the chat core from JSON frames")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=None, help="Seconds between heartbeat pings")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--log-level", default=None, help="Minimum log level")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
