import os
import tempfile
import unittest

from aiohttp.test_utils import TestClient, TestServer

from chatrelay.ws_transport import create_app

from tests.ws_receive_util import assert_no_event, recv_event


class WsTransportTests(unittest.IsolatedAsyncioTestCase):
    def make_app(self):
        return create_app(ping_interval_s=3600)

    async def asyncSetUp(self):
        self.app = self.make_app()
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.sockets = []

    async def asyncTearDown(self):
        for ws in self.sockets:
            await ws.close()
        await self.client.close()
        await self.server.close()

    async def _register(self, username: str) -> tuple[str, str]:
        resp = await self.client.post("/v1/users", json={"username": username, "email": f"{username}@example.com"})
        self.assertEqual(resp.status, 201)
        user_id = (await resp.json())["user"]["id"]
        resp = await self.client.post("/v1/session/start", json={"user_id": user_id})
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        return user_id, body["session_token"]

    async def _connect(self, session_token: str):
        ws = await self.client.ws_connect("/v1/ws")
        self.sockets.append(ws)
        await ws.send_json({"v": 1, "t": "session.start", "id": "start", "body": {"session_token": session_token}})
        ready = await ws.receive_json()
        self.assertEqual(ready["t"], "session.ready")
        return ws

    @staticmethod
    def _auth(session_token: str) -> dict:
        return {"Authorization": f"Bearer {session_token}"}

    async def test_health(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(await resp.text(), "ok")

    async def test_presence_broadcast_on_connect_and_disconnect(self):
        alice_id, alice_token = await self._register("alice")
        bob_id, bob_token = await self._register("bob")

        alice_ws = await self._connect(alice_token)
        self.assertEqual(await recv_event(alice_ws, "getOnlineUsers"), [alice_id])

        bob_ws = await self._connect(bob_token)
        self.assertEqual(await recv_event(alice_ws, "getOnlineUsers"), sorted([alice_id, bob_id]))

        await bob_ws.close()
        self.assertEqual(await recv_event(alice_ws, "getOnlineUsers"), [alice_id])

    async def test_direct_message_pushed_to_online_receiver(self):
        _, xavier_token = await self._register("xavier")
        yara_id, yara_token = await self._register("yara")
        yara_ws = await self._connect(yara_token)

        resp = await self.client.post(
            f"/v1/messages/send/{yara_id}", json={"text": "hi", "image": None}, headers=self._auth(xavier_token)
        )
        self.assertEqual(resp.status, 201)
        sent = (await resp.json())["message"]

        pushed = await recv_event(yara_ws, "newMessage")
        self.assertEqual(pushed["id"], sent["id"])
        self.assertEqual(pushed["text"], "hi")

        resp = await self.client.get("/v1/users", headers=self._auth(yara_token))
        body = await resp.json()
        self.assertEqual(list(body["unseenMessages"].values()), [1])

        resp = await self.client.get(f"/v1/messages/{sent['sender']}", headers=self._auth(yara_token))
        self.assertEqual([m["id"] for m in (await resp.json())["messages"]], [sent["id"]])

        resp = await self.client.get("/v1/users", headers=self._auth(yara_token))
        self.assertEqual((await resp.json())["unseenMessages"], {})

    async def test_error_status_mapping(self):
        _, xavier_token = await self._register("xavier")
        yara_id, yara_token = await self._register("yara")

        resp = await self.client.get("/v1/users")
        self.assertEqual(resp.status, 401)
        self.assertEqual((await resp.json())["code"], "unauthorized")

        resp = await self.client.post(f"/v1/messages/send/{yara_id}", json={}, headers=self._auth(xavier_token))
        self.assertEqual(resp.status, 400)
        self.assertEqual(await resp.json(), {"success": False, "code": "invalid_request", "message": "message must have text or image"})

        resp = await self.client.post(
            f"/v1/messages/send/{yara_id}", data="{not json", headers=self._auth(xavier_token)
        )
        self.assertEqual(resp.status, 400)

        resp = await self.client.post("/v1/messages/send/usr_ghost", json={"text": "hi"}, headers=self._auth(xavier_token))
        self.assertEqual(resp.status, 404)

        resp = await self.client.post(f"/v1/messages/send/{yara_id}", json={"text": "hi"}, headers=self._auth(xavier_token))
        message_id = (await resp.json())["message"]["id"]
        resp = await self.client.delete(f"/v1/messages/{message_id}", headers=self._auth(yara_token))
        self.assertEqual(resp.status, 403)
        self.assertEqual((await resp.json())["code"], "forbidden")

        resp = await self.client.post("/v1/session/start", json={"user_id": "usr_ghost"})
        self.assertEqual(resp.status, 404)

    async def test_group_flow_over_http_and_ws(self):
        ana_id, ana_token = await self._register("ana")
        ben_id, ben_token = await self._register("ben")
        cy_id, cy_token = await self._register("cy")
        ben_ws = await self._connect(ben_token)
        cy_ws = await self._connect(cy_token)

        resp = await self.client.post(
            "/v1/groups/create", json={"name": "crew", "memberIds": [ben_id, cy_id]}, headers=self._auth(ana_token)
        )
        self.assertEqual(resp.status, 201)
        group = (await resp.json())["group"]
        self.assertEqual((await recv_event(ben_ws, "newGroup"))["id"], group["id"])

        resp = await self.client.put(f"/v1/groups/{group['id']}", json={"name": "mine"}, headers=self._auth(ben_token))
        self.assertEqual(resp.status, 403)
        await assert_no_event(cy_ws, "groupUpdated")

        resp = await self.client.post(
            f"/v1/groups/{group['id']}/send", json={"text": "hello"}, headers=self._auth(cy_token)
        )
        self.assertEqual(resp.status, 201)
        pushed = await recv_event(ben_ws, "newGroupMessage")
        self.assertEqual(pushed["message"]["sender"]["username"], "cy")

        resp = await self.client.delete(
            f"/v1/groups/{group['id']}/remove-member/{ben_id}", headers=self._auth(ana_token)
        )
        self.assertEqual(resp.status, 200)
        self.assertEqual(await recv_event(ben_ws, "removedFromGroup"), {"groupId": group["id"]})
        removed = await recv_event(cy_ws, "memberRemoved")
        self.assertEqual(removed["removedMemberId"], ben_id)

        resp = await self.client.get(f"/v1/groups/{group['id']}/messages", headers=self._auth(ben_token))
        self.assertEqual(resp.status, 403)

        resp = await self.client.delete(
            f"/v1/groups/{group['id']}/remove-member/{ana_id}", headers=self._auth(ana_token)
        )
        self.assertEqual(resp.status, 400)

        resp = await self.client.get("/v1/groups", headers=self._auth(cy_token))
        groups = (await resp.json())["groups"]
        self.assertEqual(groups[0]["lastMessage"]["text"], "hello")

    async def test_invalid_session_token_is_rejected(self):
        ws = await self.client.ws_connect("/v1/ws")
        self.sockets.append(ws)
        await ws.send_json({"v": 1, "t": "session.start", "id": "s", "body": {"session_token": "st_bogus"}})

        error = await ws.receive_json()
        self.assertEqual(error["t"], "error")
        self.assertEqual(error["body"]["code"], "unauthorized")

    async def test_non_object_frames_get_error_and_socket_stays_open(self):
        _, token = await self._register("shaper")
        ws = await self._connect(token)

        await ws.send_json([1, 2])
        error = await recv_event(ws, "error")
        self.assertEqual(error["code"], "invalid_request")

        await ws.send_json("just a string")
        error = await recv_event(ws, "error")
        self.assertEqual(error["code"], "invalid_request")

        await ws.send_json({"v": 1, "t": "ping", "id": "after"})
        pong = await recv_event(ws, "pong")
        self.assertIsNone(pong)
        self.assertFalse(ws.closed)

    async def test_non_object_first_frame_is_rejected(self):
        ws = await self.client.ws_connect("/v1/ws")
        self.sockets.append(ws)
        await ws.send_json([{"t": "session.start"}])

        error = await ws.receive_json()
        self.assertEqual(error["t"], "error")
        self.assertEqual(error["body"]["code"], "invalid_request")

    async def test_non_string_session_token_is_rejected(self):
        ws = await self.client.ws_connect("/v1/ws")
        self.sockets.append(ws)
        await ws.send_json({"v": 1, "t": "session.start", "body": {"session_token": ["st_x"]}})

        error = await ws.receive_json()
        self.assertEqual(error["body"]["code"], "unauthorized")

    async def test_client_ping_gets_pong(self):
        _, token = await self._register("pinger")
        ws = await self._connect(token)

        await ws.send_json({"v": 1, "t": "ping", "id": "p1"})
        while True:
            frame = await ws.receive_json(timeout=2)
            if frame["t"] == "pong":
                break
        self.assertEqual(frame["id"], "p1")

    async def test_deleting_account_ends_sessions(self):
        _, token = await self._register("leaver")

        resp = await self.client.delete("/v1/users/me", headers=self._auth(token))
        self.assertEqual(resp.status, 200)

        resp = await self.client.get("/v1/users", headers=self._auth(token))
        self.assertEqual(resp.status, 401)


class SQLiteWsTransportTests(WsTransportTests):
    def make_app(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        return create_app(ping_interval_s=3600, db_path=os.path.join(self.tmpdir.name, "chat.db"))


if __name__ == "__main__":
    unittest.main()
