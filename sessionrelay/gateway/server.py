"""HTTP + WebSocket gateway for the session relay.

One aiohttp application serves the client page, the upload browser,
transcription, and the WebSocket the client drives sessions through.
A connection must authenticate with the shared password before any
other command is honoured; once it does, it is bound to every session
and receives each session's replay.

Usage:
    sessionrelay [--host HOST] [--port PORT] [--config PATH]
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import html
import json
import logging
import os
import shlex
import time
import uuid
import weakref
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import quote

from aiohttp import WSCloseCode, WSMsgType, web

from sessionrelay.adapters.channel import Channel, WebSocketChannel
from sessionrelay.adapters.events import (
    AgentSaved,
    AgentsList,
    AttachmentOk,
    AuthFail,
    AuthOk,
    ErrorEvent,
    Pong,
    SessionKilled,
    SysMsg,
    TerminalHistory,
    TerminalSessions,
)
from sessionrelay.adapters.relay import EventRelay
from sessionrelay.engine.config import RelayConfig
from sessionrelay.engine.driver import ProcessDriver
from sessionrelay.engine.errors import TranscriptionError, UploadError
from sessionrelay.shared.models.session import DEFAULT_LABEL
from sessionrelay.shared.services.agents import AgentLibrary
from sessionrelay.shared.services.log_buffer import LogRingHandler
from sessionrelay.shared.services.persistence import SessionStore
from sessionrelay.shared.services.terminal_history import TerminalHistory as TerminalHistoryReader
from sessionrelay.shared.services.transcribe import Transcriber
from sessionrelay.shared.services.uploads import UploadStore

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Channel, str, dict[str, Any]], Awaitable[None]]

# Attachments arrive base64-encoded inside a single frame.
_MAX_WS_MESSAGE = 64 * 1024 * 1024

_TEXT_EXTENSIONS = {".md", ".txt", ".py", ".ts", ".tsx", ".js", ".jsx"}
_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
_CODE_EXTENSIONS = {".py", ".js", ".ts", ".jsx", ".tsx"}

# Housekeeping subcommands the client may run; nothing else is accepted.
_ALLOWED_COMMANDS = {
    "doctor": ["doctor"],
    "version": ["--version"],
}

_PAGE_STYLE = (
    "body{background:#0d0d0d;color:#e8e8e8;font-family:-apple-system,sans-serif;"
    "margin:0;padding:0}"
    "h2{margin:0;padding:16px;font-size:17px;border-bottom:1px solid #222}"
    "table{width:100%;border-collapse:collapse}"
    "tr{border-bottom:1px solid #1a1a1a}tr:hover{background:#1a1a1a}"
    "td{padding:10px 8px}.meta{color:#888;font-size:12px;white-space:nowrap}"
    ".empty{padding:40px;text-align:center;color:#666}"
    ".line{padding:3px 12px;border-bottom:1px solid #1a1a1a;white-space:pre-wrap;"
    "word-break:break-all;font-family:monospace;font-size:12px}"
    ".error{color:#d47070}.ts{color:#555;margin-right:8px}"
)


def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"UTF-8\"/>"
        "<meta name=\"viewport\" content=\"width=device-width,initial-scale=1\"/>"
        f"<title>{html.escape(title)}</title><style>{_PAGE_STYLE}</style></head>"
        f"<body>{body}</body></html>"
    )


def _file_icon(name: str) -> str:
    ext = Path(name).suffix.lower()
    if ext in _IMAGE_EXTENSIONS:
        return "🖼"
    if ext == ".pdf":
        return "📄"
    if ext in _CODE_EXTENSIONS:
        return "💻"
    return "📁"


class RelayServer:
    """Gateway in front of the relay engine.

    All session state lives in the SessionStore and ProcessDriver; this
    class only authenticates connections, dispatches commands and serves
    the HTTP side routes.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        log_ring: LogRingHandler | None = None,
        index_path: Path | None = None,
    ) -> None:
        self._config = config
        self._log_ring = log_ring
        self._index_path = index_path or config.data_dir / "index.html"
        self._started_at = time.time()

        self._store = SessionStore(
            config.sessions_file,
            buffer_capacity=config.live_buffer_capacity,
            default_model=config.default_model,
            default_effort=config.default_effort,
        )
        self._store.load()
        self._uploads = UploadStore(config.uploads_dir)
        self._uploads.ensure()
        self._agents = AgentLibrary(config.agents_dir)
        self._relay = EventRelay(self._store)
        self._driver = ProcessDriver(
            config, self._store, self._relay, uploads=self._uploads, agents=self._agents,
        )
        self._transcriber = Transcriber(
            config.openai_api_key, url=config.transcribe_url, model=config.transcribe_model,
        )
        self._terminal = TerminalHistoryReader(config.claude_home)

        self._sockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()
        self._background: set[asyncio.Task] = set()
        self._commands: dict[str, CommandHandler] = {
            "ping": self._cmd_ping,
            "message": self._cmd_message,
            "new_session": self._cmd_new_session,
            "cancel": self._cmd_cancel,
            "kill_session": self._cmd_kill_session,
            "set_effort": self._cmd_set_effort,
            "set_model": self._cmd_set_model,
            "set_plan_mode": self._cmd_set_plan_mode,
            "set_agent": self._cmd_set_agent,
            "plan_approve": self._cmd_plan_approve,
            "plan_reject": self._cmd_plan_reject,
            "attachment": self._cmd_attachment,
            "list_agents": self._cmd_list_agents,
            "create_agent": self._cmd_create_agent,
            "run_cmd": self._cmd_run_cmd,
            "list_terminal_sessions": self._cmd_list_terminal_sessions,
            "get_terminal_history": self._cmd_get_terminal_history,
        }

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def driver(self) -> ProcessDriver:
        return self._driver

    @property
    def relay(self) -> EventRelay:
        return self._relay

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/", self._handle_root)
        r.add_get("/index.html", self._handle_root)
        r.add_get("/ws", self._handle_root)
        r.add_get("/health", self._handle_health)
        r.add_get("/files", self._handle_files)
        r.add_get("/file/{name}", self._handle_file)
        r.add_post("/transcribe", self._handle_transcribe)
        r.add_get("/logs", self._handle_logs)

    # ── HTTP handlers ──

    async def _handle_root(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=30.0, max_msg_size=_MAX_WS_MESSAGE)
        if ws.can_prepare(request).ok:
            await ws.prepare(request)
            await self._serve_socket(request, ws)
            return ws
        if not self._index_path.is_file():
            raise web.HTTPNotFound(text="index.html not found")
        return web.FileResponse(self._index_path, headers={"Content-Type": "text/html"})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "sessions": len(self._store),
            "running": sum(1 for record in self._store.records() if record.running),
        })

    async def _handle_files(self, request: web.Request) -> web.Response:
        try:
            files = self._uploads.list_files()
        except OSError as exc:
            logger.error("Could not list uploads: %s", exc)
            return web.Response(status=500, text=f"Error: {exc}")
        rows = "".join(
            "<tr onclick=\"window.open('/file/{href}','_blank')\" style=\"cursor:pointer\">"
            "<td>{icon}</td><td style=\"word-break:break-all\">{name}</td>"
            "<td class=\"meta\">{kb:.1f} KB</td><td class=\"meta\">{date}</td></tr>".format(
                href=quote(f.name),
                icon=_file_icon(f.name),
                name=html.escape(f.name),
                kb=f.size / 1024,
                date=f.modified.strftime("%Y-%m-%d"),
            )
            for f in files
        )
        body = f"<h2>📁 Files ({len(files)})</h2>"
        body += f"<table>{rows}</table>" if files else "<div class=\"empty\">No files yet</div>"
        return web.Response(text=_page("Files", body), content_type="text/html")

    async def _handle_file(self, request: web.Request) -> web.StreamResponse:
        path = self._uploads.resolve(request.match_info["name"])
        if path is None:
            raise web.HTTPNotFound(text="Not found")
        headers = {"Content-Disposition": f'inline; filename="{path.name}"'}
        if path.suffix.lower() in _TEXT_EXTENSIONS:
            headers["Content-Type"] = "text/plain; charset=utf-8"
        return web.FileResponse(path, headers=headers)

    async def _handle_transcribe(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
            audio = base64.b64decode(data.get("audio") or "")
        except (ValueError, AttributeError, binascii.Error) as exc:
            return web.json_response({"error": f"Invalid request: {exc}"}, status=400)
        try:
            text = await self._transcriber.transcribe(audio, data.get("mimeType") or "audio/webm")
        except TranscriptionError as exc:
            logger.warning("Transcription failed: %s", exc)
            return web.json_response({"error": str(exc)}, status=500)
        return web.json_response({"text": text})

    async def _handle_logs(self, request: web.Request) -> web.Response:
        lines = self._log_ring.lines() if self._log_ring is not None else []
        rows = "".join(
            "<div class=\"line {level}\"><span class=\"ts\">{ts}</span>{msg}</div>".format(
                level=line.level,
                ts=datetime.fromtimestamp(line.created).strftime("%H:%M:%S"),
                msg=html.escape(line.message),
            )
            for line in lines
        )
        body = (
            "<h2>Server Logs</h2>"
            "<button onclick=\"location.reload()\">↻ Refresh</button>"
            f"<div id=\"logs\">{rows}</div>"
        )
        return web.Response(text=_page("Server Logs", body), content_type="text/html")

    # ── WebSocket ──

    async def _serve_socket(self, request: web.Request, ws: web.WebSocketResponse) -> None:
        channel = WebSocketChannel(
            ws, maxsize=self._config.channel_queue_size, label=str(request.remote),
        )
        channel.start()
        self._sockets.add(ws)
        authenticated = False
        logger.info("📱 Client connected from %s", request.remote)
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error from %s: %s", request.remote, ws.exception())
                    continue
                if msg.type != WSMsgType.TEXT:
                    continue
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    continue
                if not isinstance(data, dict):
                    continue
                if not authenticated:
                    if data.get("type") == "auth":
                        authenticated = self._authenticate(channel, data)
                    continue
                await self.dispatch(channel, data)
        finally:
            channel.close()
            logger.info("📱 Client disconnected from %s", request.remote)

    def _authenticate(self, channel: Channel, data: dict[str, Any]) -> bool:
        supplied = str(data.get("password") or "").encode("utf-8")
        if not hmac.compare_digest(supplied, self._config.password.encode("utf-8")):
            self._relay.send_direct(channel, AuthFail())
            logger.warning("🔒 Bad password attempt")
            return False
        sessions = [record.to_summary() for record in self._store.records()]
        self._relay.send_direct(channel, AuthOk(sessions=sessions))
        logger.info("📱 Client authenticated (%d existing sessions)", len(sessions))
        self._relay.attach_all(channel)
        return True

    async def dispatch(self, channel: Channel, data: dict[str, Any]) -> None:
        """Run one authenticated command. Failures become ``error`` events."""
        kind = data.get("type")
        handler = self._commands.get(kind)
        if handler is None:
            logger.debug("Ignoring unknown command type %r", kind)
            return
        key = data.get("sessionKey") or "default"
        try:
            await handler(channel, key, data)
        except Exception as exc:
            logger.exception("[%s] %s failed", key, kind)
            self._relay.send_direct(channel, ErrorEvent(session_key=key, text=str(exc)))

    # ── Commands ──

    async def _cmd_ping(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        self._relay.send_direct(channel, Pong())

    async def _cmd_message(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        text = data.get("text") or ""
        if not text.strip():
            return
        self._store.create_if_absent(key, data.get("label") or DEFAULT_LABEL).channel = channel
        await self._driver.submit(key, text, attachments=data.get("attachments"))

    async def _cmd_new_session(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        if key not in self._store:
            record = self._store.create_if_absent(key, data.get("label") or DEFAULT_LABEL)
            record.plan_mode = bool(data.get("planMode"))
            record.agent_name = data.get("agentName") or None
            # Resuming a terminal session: the first message passes --resume.
            if data.get("resumeSessionId"):
                record.conversation_id = data["resumeSessionId"]
        self._store.get(key).channel = channel
        self._store.save()

    async def _cmd_cancel(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        self._driver.cancel(key, channel)

    async def _cmd_kill_session(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        self._driver.kill_session(key)
        self._relay.send_direct(channel, SessionKilled(session_key=key))
        logger.info("🗑 [%s] Session killed", key)

    async def _cmd_set_effort(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        if data.get("level"):
            self._driver.set_effort(key, data["level"])

    async def _cmd_set_model(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        if data.get("model"):
            self._driver.set_model(key, data["model"])

    async def _cmd_set_plan_mode(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        self._driver.set_plan_mode(key, bool(data.get("enabled")))

    async def _cmd_set_agent(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        self._driver.set_agent(key, data.get("agentName"))

    async def _cmd_plan_approve(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        await self._driver.approve_plan(key)

    async def _cmd_plan_reject(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        await self._driver.reject_plan(key)

    async def _cmd_attachment(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        name = data.get("name") or "upload"
        try:
            self._driver.add_attachment(key, name, data.get("data") or "")
        except UploadError as exc:
            logger.error("📎 [%s] %s", key, exc)
            self._relay.send_direct(channel, ErrorEvent(session_key=key, text=str(exc)))
            return
        self._store.get(key).channel = channel
        self._relay.send_direct(channel, AttachmentOk(session_key=key, name=name))

    async def _cmd_list_agents(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        self._relay.send_direct(channel, AgentsList(agents=self._agents.list_agents()))

    async def _cmd_create_agent(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        name, prompt = data.get("name"), data.get("prompt")
        if not name or not prompt:
            self._relay.send_direct(
                channel, ErrorEvent(session_key=key, text="Agent name and prompt are required"),
            )
            return
        safe = self._agents.create(name, prompt)
        self._relay.send_direct(channel, AgentSaved(name=safe))

    async def _cmd_run_cmd(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        extra = _ALLOWED_COMMANDS.get(data.get("cmd"))
        if extra is None:
            self._relay.send_direct(channel, SysMsg(session_key=key, text="⚠ Unknown command"))
            return
        # Off the receive loop: doctor can take several seconds.
        task = asyncio.create_task(self._run_housekeeping(channel, key, extra))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cmd_list_terminal_sessions(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        open_ids = {r.conversation_id for r in self._store.records() if r.conversation_id}
        try:
            sessions = self._terminal.list_sessions(open_ids)
        except OSError as exc:
            logger.error("list_terminal_sessions error: %s", exc)
            sessions = []
        self._relay.send_direct(channel, TerminalSessions(sessions=sessions))

    async def _cmd_get_terminal_history(self, channel: Channel, key: str, data: dict[str, Any]) -> None:
        session_id = data.get("sessionId") or ""
        try:
            messages = self._terminal.load_messages(session_id, data.get("projectPath"))
        except OSError as exc:
            logger.error("get_terminal_history error: %s", exc)
            self._relay.send_direct(
                channel, TerminalHistory(session_id=session_id, messages=[], error=str(exc)),
            )
            return
        self._relay.send_direct(channel, TerminalHistory(session_id=session_id, messages=messages))

    async def _run_housekeeping(self, channel: Channel, key: str, extra: list[str]) -> None:
        args = shlex.split(self._config.claude_command) + extra
        env = os.environ.copy()
        if self._config.child_path:
            env["PATH"] = os.pathsep.join(p for p in (self._config.child_path, env.get("PATH", "")) if p)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            self._relay.send_direct(channel, SysMsg(session_key=key, text=str(exc)))
            return
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._config.command_timeout_seconds,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self._relay.send_direct(channel, SysMsg(session_key=key, text="⚠ Command timed out"))
            return
        output = (stdout + stderr).decode("utf-8", errors="replace").strip()
        self._relay.send_direct(channel, SysMsg(session_key=key, text=output or "No output"))

    # ── Lifecycle ──

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._sockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def shutdown(self) -> None:
        """Terminate every job and persist the store."""
        for task in list(self._background):
            task.cancel()
        await self._driver.shutdown()
        self._store.save()

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        logger.info(
            "Relay server listening on %s:%d (%d saved sessions)",
            self._config.host, self._config.port, len(self._store),
        )
        logger.info("Uploads: %s", self._uploads.directory)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.shutdown()
            await runner.cleanup()
