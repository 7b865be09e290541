from __future__ import annotations

import base64
import logging
import shlex
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from sessionrelay.adapters.events import Done, Token
from sessionrelay.engine.config import RelayConfig
from sessionrelay.gateway.server import RelayServer
from sessionrelay.shared.services.log_buffer import LogRingHandler

FAKE_CLAUDE = Path(__file__).parent / "fake_claude.py"
PASSWORD = "s3cret"


class TestRelayServer(AioHTTPTestCase):
    async def get_application(self) -> web.Application:
        self.tmpdir = tempfile.mkdtemp()
        root = Path(self.tmpdir)
        self.config = RelayConfig(
            password=PASSWORD,
            data_dir=root / "data",
            claude_home=root / "claude",
            claude_command=f"{shlex.quote(sys.executable)} {shlex.quote(str(FAKE_CLAUDE))}",
        )
        self.ring = LogRingHandler()
        self.relay_server = RelayServer(self.config, log_ring=self.ring)
        return self.relay_server.app

    async def asyncTearDown(self) -> None:
        await self.relay_server.shutdown()
        await super().asyncTearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    async def _connect(self, password: str = PASSWORD):
        ws = await self.client.ws_connect("/ws")
        await ws.send_json({"type": "auth", "password": password})
        reply = await ws.receive_json(timeout=5)
        return ws, reply

    async def _receive_until(self, ws, kind: str) -> list[dict[str, Any]]:
        events = []
        while True:
            event = await ws.receive_json(timeout=10)
            events.append(event)
            if event["type"] == kind:
                return events

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "ok"
        assert body["sessions"] == 0

    async def test_bad_password_gets_auth_fail(self):
        ws, reply = await self._connect("wrong")
        assert reply == {"type": "auth_fail"}
        await ws.send_json({"type": "auth", "password": PASSWORD})
        reply = await ws.receive_json(timeout=5)
        assert reply["type"] == "auth_ok"
        await ws.close()

    async def test_commands_before_auth_are_ignored(self):
        ws = await self.client.ws_connect("/")
        await ws.send_json({"type": "ping"})
        await ws.send_str("not json")
        await ws.send_json({"type": "auth", "password": PASSWORD})
        reply = await ws.receive_json(timeout=5)
        assert reply == {"type": "auth_ok", "sessions": []}
        await ws.close()

    async def test_ping_pong(self):
        ws, _ = await self._connect()
        await ws.send_json({"type": "ping"})
        assert await ws.receive_json(timeout=5) == {"type": "pong"}
        await ws.close()

    async def test_auth_replays_buffer_then_deferred_done(self):
        store = self.relay_server.store
        store.create_if_absent("k", "Earlier")
        self.relay_server.relay.publish("k", Token(session_key="k", text="partial"))
        self.relay_server.relay.complete("k", Done(session_key="k", subtype="success"))

        ws, reply = await self._connect()
        assert reply["type"] == "auth_ok"
        assert reply["sessions"][0]["sessionKey"] == "k"
        assert reply["sessions"][0]["label"] == "Earlier"
        assert reply["sessions"][0]["thinking"] is False
        assert await ws.receive_json(timeout=5) == {"type": "token", "sessionKey": "k", "text": "partial"}
        assert await ws.receive_json(timeout=5) == {"type": "done", "sessionKey": "k", "subtype": "success"}
        assert store.get("k").deferred_terminal is None
        await ws.close()

    async def test_message_streams_events_and_done(self):
        ws, _ = await self._connect()
        await ws.send_json({"type": "message", "sessionKey": "m", "text": "hi"})
        events = await self._receive_until(ws, "done")

        assert [e["type"] for e in events] == ["session_init", "token", "usage", "done"]
        assert events[1] == {"type": "token", "sessionKey": "m", "text": "hello"}
        assert events[-1]["subtype"] == "success"
        record = self.relay_server.store.get("m")
        assert [e.text for e in record.history] == ["hi", "hello"]
        await ws.close()

    async def test_first_message_creates_session_with_its_label(self):
        ws, _ = await self._connect()
        await ws.send_json({"type": "message", "sessionKey": "lab", "text": "hi", "label": "Notes"})
        await self._receive_until(ws, "done")
        assert self.relay_server.store.get("lab").label == "Notes"

        await ws.send_json({"type": "message", "sessionKey": "plain", "text": "hi"})
        await self._receive_until(ws, "done")
        assert self.relay_server.store.get("plain").label == "Session"
        await ws.close()

    async def test_idle_cancel_is_answered_but_not_replayed(self):
        ws, _ = await self._connect()
        await ws.send_json({"type": "message", "sessionKey": "c", "text": "hi"})
        await self._receive_until(ws, "done")
        await ws.send_json({"type": "cancel", "sessionKey": "c"})
        assert await ws.receive_json(timeout=5) == {
            "type": "done", "sessionKey": "c", "subtype": "cancelled",
        }
        await ws.close()

        ws, _ = await self._connect()
        replay = await self._receive_until(ws, "done")
        assert [e["type"] for e in replay] == ["session_init", "token", "usage", "done"]
        assert replay[-1]["subtype"] == "success"
        await ws.send_json({"type": "ping"})
        assert await ws.receive_json(timeout=5) == {"type": "pong"}
        await ws.close()

    async def test_blank_message_is_ignored(self):
        ws, _ = await self._connect()
        await ws.send_json({"type": "message", "sessionKey": "m", "text": "   "})
        await ws.send_json({"type": "ping"})
        assert await ws.receive_json(timeout=5) == {"type": "pong"}
        assert "m" not in self.relay_server.store
        await ws.close()

    async def test_new_session_and_settings(self):
        ws, _ = await self._connect()
        await ws.send_json({
            "type": "new_session", "sessionKey": "n", "label": "Work",
            "planMode": True, "agentName": "reviewer", "resumeSessionId": "term-1",
        })
        await ws.send_json({"type": "set_effort", "sessionKey": "n", "level": "low"})
        await ws.send_json({"type": "set_model", "sessionKey": "n", "model": "claude-opus-4-6"})
        await ws.send_json({"type": "set_plan_mode", "sessionKey": "n", "enabled": False})
        await ws.send_json({"type": "ping"})
        assert await ws.receive_json(timeout=5) == {"type": "pong"}

        record = self.relay_server.store.get("n")
        assert record.label == "Work"
        assert record.agent_name == "reviewer"
        assert record.conversation_id == "term-1"
        assert (record.effort, record.model, record.plan_mode) == ("low", "claude-opus-4-6", False)
        assert self.config.sessions_file.exists()
        await ws.close()

    async def test_kill_session(self):
        self.relay_server.store.create_if_absent("doomed")
        ws, _ = await self._connect()
        await ws.send_json({"type": "kill_session", "sessionKey": "doomed"})
        assert await ws.receive_json(timeout=5) == {"type": "session_killed", "sessionKey": "doomed"}
        assert "doomed" not in self.relay_server.store
        await ws.close()

    async def test_cancel_unknown_session_still_answers_done(self):
        ws, _ = await self._connect()
        await ws.send_json({"type": "cancel", "sessionKey": "ghost"})
        assert await ws.receive_json(timeout=5) == {
            "type": "done", "sessionKey": "ghost", "subtype": "cancelled",
        }
        await ws.close()

    async def test_attachment_saved_and_acknowledged(self):
        ws, _ = await self._connect()
        await ws.send_json({
            "type": "attachment", "sessionKey": "a", "name": "pic.png",
            "data": base64.b64encode(b"\x89PNG").decode(),
        })
        assert await ws.receive_json(timeout=5) == {
            "type": "attachment_ok", "sessionKey": "a", "name": "pic.png",
        }
        record = self.relay_server.store.get("a")
        assert len(record.attachments) == 1
        assert record.attachments[0].path.read_bytes() == b"\x89PNG"

        await ws.send_json({"type": "attachment", "sessionKey": "a", "name": "bad.bin", "data": "abc"})
        reply = await ws.receive_json(timeout=5)
        assert reply["type"] == "error"
        assert "bad.bin" in reply["text"]
        await ws.close()

    async def test_agents_round_trip(self):
        ws, _ = await self._connect()
        await ws.send_json({"type": "create_agent", "name": "Planner", "prompt": "Plan first."})
        assert await ws.receive_json(timeout=5) == {"type": "agent_saved", "name": "planner"}
        await ws.send_json({"type": "list_agents"})
        assert await ws.receive_json(timeout=5) == {
            "type": "agents_list", "agents": [{"name": "planner", "desc": "Plan first."}],
        }
        await ws.send_json({"type": "create_agent", "name": "", "prompt": ""})
        assert (await ws.receive_json(timeout=5))["type"] == "error"
        await ws.close()

    async def test_run_cmd_rejects_unknown_commands(self):
        ws, _ = await self._connect()
        await ws.send_json({"type": "run_cmd", "sessionKey": "s", "cmd": "rm"})
        assert await ws.receive_json(timeout=5) == {
            "type": "sys_msg", "sessionKey": "s", "text": "⚠ Unknown command",
        }
        await ws.close()

    async def test_terminal_sessions_and_history(self):
        ws, _ = await self._connect()
        await ws.send_json({"type": "list_terminal_sessions"})
        assert await ws.receive_json(timeout=5) == {"type": "terminal_sessions", "sessions": []}

        await ws.send_json({"type": "get_terminal_history", "sessionId": "missing"})
        reply = await ws.receive_json(timeout=5)
        assert reply["type"] == "terminal_history"
        assert reply["sessionId"] == "missing"
        assert reply["messages"] == []
        assert "missing" in reply["error"]
        await ws.close()

    async def test_files_listing_and_download(self):
        self.config.uploads_dir.mkdir(parents=True, exist_ok=True)
        (self.config.uploads_dir / "report <1>.md").write_text("# Report", encoding="utf-8")

        resp = await self.client.get("/files")
        assert resp.status == 200
        page = await resp.text()
        assert "report &lt;1&gt;.md" in page
        assert "Files (1)" in page

        resp = await self.client.get("/file/report%20%3C1%3E.md")
        assert resp.status == 200
        assert await resp.text() == "# Report"
        assert resp.headers["Content-Disposition"].startswith("inline")
        assert resp.headers["Content-Type"].startswith("text/plain")

        resp = await self.client.get("/file/nothing-here.txt")
        assert resp.status == 404

    async def test_root_without_index_is_404(self):
        resp = await self.client.get("/")
        assert resp.status == 404

    async def test_transcribe_without_key(self):
        resp = await self.client.post("/transcribe", json={"audio": base64.b64encode(b"x").decode()})
        assert resp.status == 500
        assert (await resp.json())["error"] == "No OpenAI key configured"

        resp = await self.client.post("/transcribe", data="not json")
        assert resp.status == 400

    async def test_logs_page_escapes_messages(self):
        logging.getLogger("sessionrelay.tests").addHandler(self.ring)
        try:
            logging.getLogger("sessionrelay.tests").warning("<script>boom</script>")
        finally:
            logging.getLogger("sessionrelay.tests").removeHandler(self.ring)

        resp = await self.client.get("/logs")
        assert resp.status == 200
        page = await resp.text()
        assert "&lt;script&gt;boom&lt;/script&gt;" in page
        assert "<script>boom" not in page
