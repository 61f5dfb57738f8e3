from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Dict

from aiohttp import WSMsgType, web

from .config import DEFAULT_MAX_MSG_SIZE, ServerConfig
from .direct import DirectMessageChannel
from .dispatcher import FanoutDispatcher
from .errors import AuthorizationError, ChatError, NotFoundError, StoreError, ValidationError
from .groups import GroupChannel
from .presence import Connection, PresenceRegistry
from .sessions import Session, SessionStore
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteConversationStore
from .store import ConversationStore, InMemoryConversationStore
from .users import UserDirectory


logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    ValidationError: 400,
    AuthorizationError: 403,
    NotFoundError: 404,
    StoreError: 500,
}


class Runtime:
    def __init__(
        self,
        *,
        store: ConversationStore,
        presence: PresenceRegistry,
        sessions: SessionStore,
    ) -> None:
        self.store = store
        self.presence = presence
        self.sessions = sessions
        self.dispatcher = FanoutDispatcher(presence)
        self.users = UserDirectory(store)
        self.direct = DirectMessageChannel(store, self.dispatcher)
        self.groups = GroupChannel(store, self.dispatcher)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _unauthorized() -> web.Response:
    return web.json_response(
        {"success": False, "code": "unauthorized", "message": "invalid session_token"}, status=401
    )


def _chat_error(exc: ChatError) -> web.Response:
    status = 500
    for error_type, error_status in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status = error_status
            break
    message = "server error" if status == 500 else str(exc)
    return web.json_response({"success": False, "code": exc.code, "message": message}, status=status)


def _ok(status: int = 200, **data: Any) -> web.Response:
    return web.json_response({"success": True, **data}, status=status)


def _authenticate_request(request: web.Request) -> Session | None:
    runtime: Runtime = request.app["runtime"]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get(session_token)


async def _read_json(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise ValidationError("malformed json")
    if not isinstance(body, dict):
        raise ValidationError("json body must be an object")
    return body


def _optional_str(body: Dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


Handler = Callable[[web.Request, Session], Awaitable[web.Response]]


def authenticated(handler: Handler) -> Callable[[web.Request], Awaitable[web.Response]]:
    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.Response:
        session = _authenticate_request(request)
        if session is None:
            return _unauthorized()
        try:
            return await handler(request, session)
        except ChatError as exc:
            return _chat_error(exc)

    return wrapper


async def handle_session_start(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        body = await _read_json(request)
        user_id = _optional_str(body, "user_id")
        if not user_id:
            raise ValidationError("user_id required")
        user = runtime.users.get(user_id)
    except ChatError as exc:
        return _chat_error(exc)
    session = runtime.sessions.create(user.id)
    return _ok(
        session_token=session.session_token,
        expires_at=session.expires_at_ms,
        user=user.to_api_dict(),
    )


async def handle_user_register(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        body = await _read_json(request)
        user = runtime.users.register(
            _optional_str(body, "username") or "",
            _optional_str(body, "email") or "",
            profile_picture=_optional_str(body, "profilePicture") or "",
            bio=_optional_str(body, "bio") or "",
        )
    except ChatError as exc:
        return _chat_error(exc)
    return _ok(201, user=user.to_api_dict())


@authenticated
async def handle_users_list(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    users, unseen = runtime.direct.list_users_with_unseen_counts(session.user_id)
    return _ok(users=[user.to_api_dict() for user in users], unseenMessages=unseen)


@authenticated
async def handle_profile_update(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    user = runtime.users.update_profile(
        session.user_id,
        username=_optional_str(body, "username"),
        bio=_optional_str(body, "bio"),
        profile_picture=_optional_str(body, "profilePicture"),
    )
    return _ok(user=user.to_api_dict())


@authenticated
async def handle_user_delete(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    runtime.users.delete(session.user_id)
    runtime.sessions.invalidate_user(session.user_id)
    return _ok()


# direct messages


@authenticated
async def handle_direct_send(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    message = runtime.direct.send(
        session.user_id,
        request.match_info["peer_id"],
        text=_optional_str(body, "text"),
        image=_optional_str(body, "image"),
    )
    return _ok(201, message=message.to_api_dict())


@authenticated
async def handle_direct_list(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    messages = runtime.direct.list_conversation(session.user_id, request.match_info["peer_id"])
    return _ok(messages=[message.to_api_dict() for message in messages])


@authenticated
async def handle_direct_edit(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    message = runtime.direct.edit(
        session.user_id, request.match_info["message_id"], _optional_str(body, "text") or ""
    )
    return _ok(message=message.to_api_dict())


@authenticated
async def handle_direct_mark_seen(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    message = runtime.direct.mark_seen(session.user_id, request.match_info["message_id"])
    return _ok(message=message.to_api_dict())


@authenticated
async def handle_direct_delete(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    message_id = runtime.direct.delete(session.user_id, request.match_info["message_id"])
    return _ok(messageId=message_id)


# groups


@authenticated
async def handle_group_create(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    member_ids = body.get("memberIds") or []
    if not isinstance(member_ids, list) or any(not isinstance(m, str) for m in member_ids):
        raise ValidationError("memberIds must be a list of user ids")
    group = runtime.groups.create(
        session.user_id,
        _optional_str(body, "name") or "",
        member_ids,
        description=_optional_str(body, "description"),
        avatar=_optional_str(body, "avatar"),
    )
    return _ok(201, group=group.to_api_dict())


@authenticated
async def handle_group_list(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    groups = runtime.groups.list_groups(session.user_id)
    return _ok(groups=[group.to_api_dict() for group in groups])


@authenticated
async def handle_group_update(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    group = runtime.groups.update_info(
        session.user_id,
        request.match_info["group_id"],
        name=_optional_str(body, "name"),
        description=_optional_str(body, "description"),
        avatar=_optional_str(body, "avatar"),
    )
    return _ok(group=group.to_api_dict())


@authenticated
async def handle_group_delete(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    group_id = runtime.groups.delete_group(session.user_id, request.match_info["group_id"])
    return _ok(groupId=group_id)


@authenticated
async def handle_group_messages(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    messages = runtime.groups.list_messages(session.user_id, request.match_info["group_id"])
    return _ok(messages=[message.to_api_dict() for message in messages])


@authenticated
async def handle_group_send(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    message = runtime.groups.send(
        session.user_id,
        request.match_info["group_id"],
        text=_optional_str(body, "text"),
        image=_optional_str(body, "image"),
    )
    return _ok(201, message=message.to_api_dict())


@authenticated
async def handle_group_add_member(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    user_id = _optional_str(body, "userId")
    if not user_id:
        raise ValidationError("userId required")
    group = runtime.groups.add_member(session.user_id, request.match_info["group_id"], user_id)
    return _ok(group=group.to_api_dict())


@authenticated
async def handle_group_remove_member(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    target = request.match_info["user_id"]
    runtime.groups.remove_member(session.user_id, request.match_info["group_id"], target)
    left = target == session.user_id
    return _ok(message="left group successfully" if left else "member removed successfully")


@authenticated
async def handle_group_message_edit(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    message = runtime.groups.edit(
        session.user_id, request.match_info["message_id"], _optional_str(body, "text") or ""
    )
    return _ok(message=message.to_api_dict())


@authenticated
async def handle_group_message_delete(request: web.Request, session: Session) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    message_id = runtime.groups.delete_message(session.user_id, request.match_info["message_id"])
    return _ok(messageId=message_id)


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = DEFAULT_MAX_MSG_SIZE,
    outbound_queue_size: int = 1000,
    db_path: str | None = None,
    store: ConversationStore | None = None,
    presence: PresenceRegistry | None = None,
    sessions: SessionStore | None = None,
) -> web.Application:
    backend: SQLiteBackend | None = None
    if store is None:
        if db_path is not None:
            backend = SQLiteBackend(db_path)
            store = SQLiteConversationStore(backend)
        else:
            store = InMemoryConversationStore()

    runtime = Runtime(
        store=store,
        presence=presence or PresenceRegistry(),
        sessions=sessions or SessionStore(),
    )
    app = web.Application(client_max_size=max_msg_size)
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
        "outbound_queue_size": outbound_queue_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_post("/v1/users", handle_user_register)
    app.router.add_get("/v1/users", handle_users_list)
    app.router.add_put("/v1/users/me", handle_profile_update)
    app.router.add_delete("/v1/users/me", handle_user_delete)
    app.router.add_post("/v1/messages/send/{peer_id}", handle_direct_send)
    app.router.add_put("/v1/messages/edit/{message_id}", handle_direct_edit)
    app.router.add_put("/v1/messages/mark-seen/{message_id}", handle_direct_mark_seen)
    app.router.add_get("/v1/messages/{peer_id}", handle_direct_list)
    app.router.add_delete("/v1/messages/{message_id}", handle_direct_delete)
    app.router.add_post("/v1/groups/create", handle_group_create)
    app.router.add_get("/v1/groups", handle_group_list)
    app.router.add_put("/v1/groups/message/{message_id}", handle_group_message_edit)
    app.router.add_delete("/v1/groups/message/{message_id}", handle_group_message_delete)
    app.router.add_put("/v1/groups/{group_id}", handle_group_update)
    app.router.add_delete("/v1/groups/{group_id}", handle_group_delete)
    app.router.add_get("/v1/groups/{group_id}/messages", handle_group_messages)
    app.router.add_post("/v1/groups/{group_id}/send", handle_group_send)
    app.router.add_post("/v1/groups/{group_id}/add-member", handle_group_add_member)
    app.router.add_delete("/v1/groups/{group_id}/remove-member/{user_id}", handle_group_remove_member)
    app.router.add_get("/v1/ws", websocket_handler)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def app_from_config(config: ServerConfig) -> web.Application:
    return create_app(
        ping_interval_s=config.ping_interval_s,
        ping_miss_limit=config.ping_miss_limit,
        max_msg_size=config.max_msg_size,
        outbound_queue_size=config.outbound_queue_size,
        db_path=config.db_path,
    )


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    connection: Connection | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue_event(event: str, payload: Any) -> None:
        try:
            outbound.put_nowait({"v": 1, "t": event, "body": payload})
        except asyncio.QueueFull:
            logger.warning("outbound queue full for %s, closing", connection.user_id if connection else "?")
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.debug("websocket went away while writing")

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if not isinstance(payload, dict):
            await ws.send_json(_error_frame("invalid_request", "frame must be a json object"))
            await ws.close()
            return ws

        if payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=payload.get("id")))
            await ws.close()
            return ws

        if payload.get("t") != "session.start":
            await ws.send_json(
                _error_frame("invalid_request", "first frame must start session", request_id=payload.get("id"))
            )
            await ws.close()
            return ws

        body = payload.get("body")
        session_token = body.get("session_token") if isinstance(body, dict) else None
        session = runtime.sessions.get(session_token) if isinstance(session_token, str) else None
        if session is None:
            await ws.send_json(_error_frame("unauthorized", "invalid session_token", request_id=payload.get("id")))
            await ws.close()
            return ws

        mark_activity()
        connection = Connection(user_id=session.user_id, callback=enqueue_event)
        await ws.send_json(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {"user_id": session.user_id, "conn_id": connection.conn_id},
            }
        )
        runtime.presence.connect(session.user_id, connection)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    await ws.send_json(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict):
                    await ws.send_json(_error_frame("invalid_request", "frame must be a json object"))
                    continue
                if frame.get("v") != 1:
                    await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                if frame_type == "ping":
                    await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                else:
                    await ws.send_json(
                        _error_frame("invalid_request", "unknown frame type", request_id=frame.get("id"))
                    )
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        if connection is not None:
            runtime.presence.disconnect(connection.user_id, connection)
        writer_task.cancel()
        if not outbound.full():
            outbound.put_nowait(None)
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
