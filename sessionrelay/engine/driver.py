"""Process driver — one supervised ``claude`` child per session.

Spawns the CLI in ``--output-format stream-json`` mode, reassembles its
stdout into lines, turns the upstream events into relay events, and
produces exactly one terminal ``done`` per process.

Per-session state machine:

    IDLE → RUNNING ⇄ PLAN_WAITING → DONE | CANCELLED | KILLED → IDLE

Submitting while RUNNING cancels the old job first. A cancelled or
killed job's handle is cleared synchronously; whatever the old process
still writes, and its eventual exit, are ignored.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
from typing import Any, Callable

from sessionrelay.adapters.events import (
    Done,
    ErrorEvent,
    PlanWaiting,
    SessionInit,
    SysMsg,
    Token,
    ToolResult,
    ToolUse,
    Usage,
)
from sessionrelay.adapters.channel import Channel
from sessionrelay.adapters.relay import EventRelay
from sessionrelay.engine.config import RelayConfig
from sessionrelay.engine.decoder import LineKind, classify_line, compile_patterns
from sessionrelay.engine.errors import AgentLoadError, SpawnError, UploadError
from sessionrelay.engine.plan_gate import PlanGate
from sessionrelay.shared.models.session import (
    Attachment,
    HistoryRole,
    Job,
    JobState,
    SessionRecord,
)
from sessionrelay.shared.services.agents import AgentLibrary
from sessionrelay.shared.services.persistence import SessionStore
from sessionrelay.shared.services.uploads import UploadStore

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


def truncate_utf8(text: str, limit: int) -> str:
    """Cut text to at most ``limit`` UTF-8 bytes without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text
    return encoded[:limit].decode("utf-8", errors="ignore")


def _tool_result_text(content: Any) -> str:
    if isinstance(content, list):
        return "\n".join(
            c.get("text", "") for c in content
            if isinstance(c, dict) and c.get("type") == "text"
        )
    return str(content or "")


class ProcessDriver:
    def __init__(
        self,
        config: RelayConfig,
        store: SessionStore,
        relay: EventRelay,
        uploads: UploadStore | None = None,
        agents: AgentLibrary | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._relay = relay
        self._uploads = uploads or UploadStore(config.uploads_dir)
        self._agents = agents or AgentLibrary(config.agents_dir)
        self._prompt_patterns = compile_patterns(config.plan_prompt_patterns)
        self._benign_stderr = compile_patterns(config.benign_stderr_patterns)

    # ── Job submission ──

    async def submit(
        self,
        key: str,
        text: str,
        *,
        label: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> SessionRecord:
        """Start a job for key, replacing any job already running."""
        record = self._store.create_if_absent(key, label)
        if record.job is not None:
            logger.info("[%s] new job while running — cancelling pid=%s", key, record.job.pid)
            self._stop_job(record, JobState.CANCELLED, emit=True)

        record.add_history(HistoryRole.USER, text)
        self._store.save()

        for item in attachments or []:
            try:
                self._queue_attachment(record, item.get("name") or "upload", item.get("data") or "")
                logger.info("📎 [%s] saved inline attachment: %s", key, item.get("name"))
            except UploadError as exc:
                logger.error("📎 [%s] %s", key, exc)

        prompt = self._prompt_with_manifest(record, text)

        # New response cycle: replay starts from here.
        self._relay.reset(key)
        record.decoder.reset()

        agent_prompt = self._load_agent_prompt(record)
        args = self.build_args(record, prompt, agent_prompt=agent_prompt)
        effort = record.effort if self._uses_effort(record.model) else "n/a"
        logger.info('→ [%s] model=%s effort=%s text="%s"', key, record.model, effort, text[:60])
        logger.debug("  args: %s", shlex.join(args))

        job = Job(plan_mode=record.plan_mode)
        record.job = job
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._child_env(),
                start_new_session=True,
            )
        except OSError as exc:
            self._spawn_failed(record, job, SpawnError(key, str(exc)))
            return record

        if record.job is not job or self._store.get(key) is not record:
            # Cancelled or replaced while the process was starting.
            logger.info("[%s] job superseded during spawn, terminating pid=%s", key, process.pid)
            self._signal(process)
            return record

        job.process = process
        if job.plan_mode:
            job.gate = PlanGate(
                self._config.plan_idle_seconds,
                has_response=lambda: bool(job.response_text),
                on_waiting=lambda source: self._on_plan_waiting(record, job, source),
            )
        job.tasks.append(asyncio.create_task(self._supervise(record, job)))
        return record

    def build_args(
        self,
        record: SessionRecord,
        prompt: str,
        *,
        agent_prompt: str | None = None,
    ) -> list[str]:
        """Command line for one job, derived from the session's settings."""
        cfg = self._config
        args: list[str] = []
        if cfg.wrapper_command:
            args.extend(shlex.split(cfg.wrapper_command))
        args.extend(shlex.split(cfg.claude_command))
        args.extend([
            "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--append-system-prompt", cfg.directive(),
            "--model", record.model,
        ])
        if record.plan_mode:
            args.extend(["--permission-mode", "plan"])
        else:
            args.append("--dangerously-skip-permissions")
        if self._uses_effort(record.model):
            args.extend(["--effort", record.effort])
        if agent_prompt:
            args.extend(["--append-system-prompt", agent_prompt])
        if record.conversation_id:
            args.extend(["--resume", record.conversation_id])
        return args

    def add_attachment(self, key: str, name: str, data_b64: str) -> Attachment:
        """Save an upload and queue it for the session's next prompt."""
        record = self._store.create_if_absent(key)
        attachment = self._queue_attachment(record, name, data_b64)
        logger.info("📎 [%s] %s", key, name)
        return attachment

    # ── Control ──

    def cancel(self, key: str, channel: Channel | None = None) -> bool:
        """Cancel the running job.

        With nothing running the cancelled ``done`` only acknowledges the
        request: it goes straight to the asking channel and is neither
        buffered nor deferred.
        """
        record = self._store.get(key)
        if record is None or record.job is None:
            if channel is None and record is not None:
                channel = record.channel
            self._relay.send_direct(channel, Done(session_key=key, subtype="cancelled"))
            return False
        self._stop_job(record, JobState.CANCELLED, emit=True)
        return True

    def kill_session(self, key: str) -> bool:
        """Terminate any job and remove the session entirely."""
        record = self._store.get(key)
        if record is None:
            return False
        if record.job is not None:
            self._stop_job(record, JobState.KILLED, emit=False)
        self._store.delete(key)
        self._store.save()
        return True

    async def approve_plan(self, key: str) -> bool:
        record = self._store.get(key)
        job = record.job if record is not None else None
        if job is None or job.process is None:
            return False
        if job.gate is not None:
            job.gate.resume()
        job.state = JobState.RUNNING
        ok = await self._write_stdin(record, job, b"yes\n")
        if ok:
            logger.info("✓ [%s] Plan approved", key)
        return ok

    async def reject_plan(self, key: str) -> bool:
        record = self._store.get(key)
        job = record.job if record is not None else None
        if job is None or job.process is None:
            return False
        job.subtype = "plan_rejected"
        await self._write_stdin(record, job, b"no\n")
        # Give the child a moment to exit on its own before forcing it.
        asyncio.get_running_loop().call_later(
            self._config.plan_reject_grace_seconds,
            self._signal_if_current, record, job,
        )
        logger.info("✗ [%s] Plan rejected", key)
        return True

    def set_effort(self, key: str, level: str) -> bool:
        return self._update(key, lambda r: setattr(r, "effort", level))

    def set_model(self, key: str, model: str) -> bool:
        return self._update(key, lambda r: setattr(r, "model", model))

    def set_plan_mode(self, key: str, enabled: bool) -> bool:
        return self._update(key, lambda r: setattr(r, "plan_mode", bool(enabled)))

    def set_agent(self, key: str, agent_name: str | None) -> bool:
        return self._update(key, lambda r: setattr(r, "agent_name", agent_name or None))

    async def shutdown(self) -> None:
        """Terminate every running job and wait briefly for them to exit."""
        tasks: list[asyncio.Task] = []
        for record in list(self._store.records()):
            if record.job is None:
                continue
            tasks.extend(record.job.tasks)
            self._stop_job(record, JobState.KILLED, emit=False)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=5.0)
            for task in pending:
                task.cancel()

    # ── Output handling ──

    def handle_output(self, record: SessionRecord, job: Job, data: bytes) -> None:
        """Feed one stdout chunk through the decoder."""
        if record.job is not job:
            return
        if job.gate is not None:
            job.gate.touch()
        for line in record.decoder.feed(data):
            self._handle_line(record, job, line)

    def handle_stderr(self, record: SessionRecord, job: Job, data: bytes) -> None:
        if record.job is not job:
            return
        text = data.decode("utf-8", errors="replace").strip()
        if not text:
            return
        key = record.session_key
        logger.warning("[%s] stderr: %s", key, text)
        if any(p.search(text) for p in self._benign_stderr):
            return
        self._relay.publish(key, SysMsg(session_key=key, text=text, level="warning"))

    def handle_event(self, record: SessionRecord, job: Job, event: dict[str, Any]) -> None:
        """Translate one upstream stream-json event into relay events."""
        key = record.session_key
        kind = event.get("type")
        if kind == "system":
            if event.get("subtype") == "init" and event.get("session_id"):
                record.conversation_id = event["session_id"]
                self._store.save()
                self._relay.publish(key, SessionInit(session_key=key, session_id=event["session_id"]))
        elif kind == "assistant":
            for block in (event.get("message") or {}).get("content") or []:
                if block.get("type") == "text":
                    job.response_text += block.get("text", "")
                    self._relay.publish(key, Token(session_key=key, text=block.get("text", "")))
                elif block.get("type") == "tool_use":
                    self._relay.publish(key, ToolUse(
                        session_key=key,
                        name=block.get("name", ""),
                        input=block.get("input"),
                        id=block.get("id", ""),
                    ))
        elif kind == "user":
            for block in (event.get("message") or {}).get("content") or []:
                if not isinstance(block, dict) or block.get("type") != "tool_result":
                    continue
                content = truncate_utf8(
                    _tool_result_text(block.get("content")),
                    self._config.tool_result_limit,
                )
                self._relay.publish(key, ToolResult(
                    session_key=key,
                    tool_use_id=block.get("tool_use_id", ""),
                    content=content,
                ))
        elif kind == "result":
            usage = event.get("usage")
            if usage:
                self._relay.publish(key, Usage(
                    session_key=key,
                    input_tokens=usage.get("input_tokens") or 0,
                    output_tokens=usage.get("output_tokens") or 0,
                    context_limit=self._config.context_limit,
                ))
            if job.subtype is None:
                job.subtype = event.get("subtype")
        else:
            logger.debug("[%s] ignoring %s event", key, kind)

    def finish(self, record: SessionRecord, job: Job, code: int | None) -> None:
        """Process exited. No-op unless job is still the session's current job."""
        key = record.session_key
        if record.job is not job or self._store.get(key) is not record:
            logger.debug("[%s] exit of superseded process code=%s ignored", key, code)
            job.finished.set()
            return
        for line in record.decoder.flush():
            self._handle_line(record, job, line)
        logger.info(
            "← [%s] Claude exited code=%s hadResponse=%s", key, code, bool(job.response_text)
        )
        record.job = None
        self._finalize(record, job, JobState.DONE)
        failed = code != 0
        subtype = job.subtype or ("error" if failed else "success")
        self._relay.complete(key, Done(session_key=key, subtype=subtype, error=failed, code=code))

    # ── Internals ──

    def _handle_line(self, record: SessionRecord, job: Job, line: str) -> None:
        key = record.session_key
        decoded = classify_line(
            line, plan_mode=job.plan_mode, prompt_patterns=self._prompt_patterns,
        )
        if decoded.kind is LineKind.JSON:
            try:
                self.handle_event(record, job, decoded.event)
            except (AttributeError, KeyError, TypeError) as exc:
                logger.error("[%s] handleEvent error: %s", key, exc)
        elif decoded.kind is LineKind.MALFORMED:
            logger.warning("[%s] dropping malformed event line: %s", key, line[:120])
        elif decoded.kind is LineKind.PLAN_PROMPT:
            logger.info("[%s] approval prompt: %s", key, line[:120])
            if job.gate is not None:
                job.gate.prompt_detected()
        else:
            logger.info("[%s] non-json: %s", key, line[:120])
            self._relay.publish(key, SysMsg(session_key=key, text=line))

    async def _supervise(self, record: SessionRecord, job: Job) -> None:
        process = job.process
        code: int | None = None
        try:
            await asyncio.gather(
                self._pump(process.stdout, lambda d: self.handle_output(record, job, d)),
                self._pump(process.stderr, lambda d: self.handle_stderr(record, job, d)),
            )
            code = await process.wait()
        except asyncio.CancelledError:
            job.finished.set()
            raise
        except Exception as exc:
            logger.exception("[%s] process supervision failed", record.session_key)
            if record.job is job:
                self._relay.publish(
                    record.session_key, ErrorEvent(session_key=record.session_key, text=str(exc))
                )
        self.finish(record, job, code)

    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, handler: Callable[[bytes], None]) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            handler(chunk)

    def _stop_job(self, record: SessionRecord, state: JobState, *, emit: bool) -> None:
        """Clear the handle now, signal the process, close out the job."""
        job = record.job
        if job is None:
            return
        record.job = None
        self._signal(job.process)
        self._finalize(record, job, state)
        if emit:
            key = record.session_key
            self._relay.complete(key, Done(session_key=key, subtype="cancelled"))

    def _finalize(self, record: SessionRecord, job: Job, state: JobState) -> None:
        job.state = state
        if job.gate is not None:
            job.gate.close()
        if job.response_text:
            record.add_history(HistoryRole.ASSISTANT, job.response_text)
        self._store.save()
        job.finished.set()

    def _spawn_failed(self, record: SessionRecord, job: Job, exc: SpawnError) -> None:
        key = record.session_key
        logger.error("[%s] %s", key, exc)
        if record.job is job:
            record.job = None
        job.state = JobState.DONE
        job.finished.set()
        self._relay.publish(key, ErrorEvent(session_key=key, text=str(exc)))
        self._relay.complete(key, Done(session_key=key, subtype="error", error=True))

    def _on_plan_waiting(self, record: SessionRecord, job: Job, source: str) -> None:
        if record.job is not job:
            return
        job.state = JobState.PLAN_WAITING
        logger.info("⏸ [%s] plan waiting for approval (%s)", record.session_key, source)
        self._relay.publish(record.session_key, PlanWaiting(session_key=record.session_key))

    async def _write_stdin(self, record: SessionRecord, job: Job, data: bytes) -> bool:
        stdin = job.process.stdin if job.process is not None else None
        if stdin is None:
            return False
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
            key = record.session_key
            logger.warning("[%s] could not write to child stdin: %s", key, exc)
            self._relay.publish(key, ErrorEvent(session_key=key, text=f"Could not reach process: {exc}"))
            return False
        return True

    def _signal_if_current(self, record: SessionRecord, job: Job) -> None:
        if record.job is job:
            self._signal(job.process)

    @staticmethod
    def _signal(process: asyncio.subprocess.Process | None) -> None:
        """SIGTERM the whole process group (wrapper and child alike)."""
        if process is None or process.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGTERM)
            else:
                process.terminate()
        except (ProcessLookupError, PermissionError):
            pass

    def _queue_attachment(self, record: SessionRecord, name: str, data_b64: str) -> Attachment:
        path = self._uploads.save(name, data_b64)
        attachment = Attachment(path=path.resolve(), name=name)
        record.attachments.append(attachment)
        return attachment

    @staticmethod
    def _prompt_with_manifest(record: SessionRecord, text: str) -> str:
        if not record.attachments:
            return text
        manifest = "\n".join(str(a.path) for a in record.attachments)
        record.attachments = []
        return f"{text}\n\nAttached files:\n{manifest}"

    def _load_agent_prompt(self, record: SessionRecord) -> str | None:
        if not record.agent_name:
            return None
        key = record.session_key
        try:
            body = self._agents.load_prompt(record.agent_name)
        except AgentLoadError as exc:
            logger.warning("⚠ [%s] %s", key, exc)
            self._relay.publish(key, SysMsg(session_key=key, text=f"⚠ {exc}", level="warning"))
            return None
        logger.info("🤖 [%s] Loaded agent: %s", key, record.agent_name)
        return body or None

    def _uses_effort(self, model: str) -> bool:
        marker = self._config.effort_model_marker
        return bool(marker) and marker in model

    def _child_env(self) -> dict[str, str]:
        env = os.environ.copy()
        if self._config.child_path:
            existing = env.get("PATH", "")
            env["PATH"] = os.pathsep.join(p for p in (self._config.child_path, existing) if p)
        return env

    def _update(self, key: str, mutate: Callable[[SessionRecord], None]) -> bool:
        record = self._store.get(key)
        if record is None:
            return False
        mutate(record)
        self._store.save()
        return True
