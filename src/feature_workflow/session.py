from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from .errors import ProviderUnavailable
from .events import EventKind, EventStreamDecoder, StreamEvent, iter_events
from .models import Persona, SessionResult
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

CANCELLED_MESSAGE = "Cancelled by user"
_STDERR_CHUNK_BYTES = 8192
_DEFAULT_TERMINATE_GRACE_SECONDS = 10.0


@dataclass(frozen=True)
class AgentSession:
    """One conversation with the agent, started fresh or resumed by id."""

    session_id: str
    persona: Persona
    resumable: bool = True


def new_session(persona: Persona) -> AgentSession:
    """Create a session with a never-before-used id.

    Reviewer sessions are single-use so a review never sees the generating
    conversation.
    """
    return AgentSession(
        session_id=str(uuid.uuid4()),
        persona=persona,
        resumable=persona is not Persona.REVIEWER,
    )


class SessionRunner(Protocol):
    async def run(
        self,
        prompt: str,
        *,
        session: AgentSession,
        resume: bool = False,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SessionResult:
        ...

    def ensure_available(self) -> None:
        ...


class SessionManager:
    """Runs one agent process per call: prompt on stdin, JSON events on stdout.

    Timeouts and cancellation terminate the process (SIGTERM, then SIGKILL
    after ``terminate_grace_seconds``) and return a failed result.
    """

    def __init__(
        self,
        *,
        executable: str = "claude",
        cwd: Path | None = None,
        timeout_seconds: float | None = 600.0,
        preview_chars: int = 100,
        terminate_grace_seconds: float = _DEFAULT_TERMINATE_GRACE_SECONDS,
    ) -> None:
        self.executable = executable
        self.cwd = cwd if cwd is not None else Path.cwd()
        self.timeout_seconds = timeout_seconds
        self.preview_chars = preview_chars
        self.terminate_grace_seconds = terminate_grace_seconds

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "SessionManager":
        return cls(
            executable=settings.agent_executable,
            cwd=settings.workspace_root_path,
            timeout_seconds=settings.session_timeout_seconds,
            preview_chars=settings.progress_preview_chars,
        )

    def ensure_available(self) -> None:
        """Raise ProviderUnavailable if the agent executable cannot be found."""
        if shutil.which(self.executable) is None:
            raise ProviderUnavailable(
                f"Agent executable {self.executable!r} is not installed or not on PATH"
            )

    def build_command(self, session: AgentSession, *, resume: bool) -> list[str]:
        command = [
            self.executable,
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            "bypassPermissions",
        ]
        if resume:
            command.extend(["--resume", session.session_id])
        else:
            command.extend(["--session-id", session.session_id])
        return command

    def _preview(self, event: StreamEvent) -> str | None:
        if event.kind is EventKind.ASSISTANT_TEXT:
            text = event.text.strip()
            if len(text) > self.preview_chars:
                return text[: self.preview_chars] + "..."
            return text
        if event.kind is EventKind.TOOL_INVOCATION:
            return f"Using tool: {event.tool_name}"
        return None

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("[PID %s] did not exit after SIGTERM, killing", proc.pid)
            proc.kill()
            await proc.wait()

    async def run(
        self,
        prompt: str,
        *,
        session: AgentSession,
        resume: bool = False,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SessionResult:
        if resume and not session.resumable:
            raise ValueError(f"{session.persona.value} session {session.session_id} cannot be resumed")
        if cancel_event is not None and cancel_event.is_set():
            return SessionResult(session_id=session.session_id, succeeded=False, error=CANCELLED_MESSAGE, cancelled=True)

        command = self.build_command(session, resume=resume)
        logger.info(
            "Spawning agent session %s (persona=%s, resume=%s, prompt_chars=%d)",
            session.session_id,
            session.persona.value,
            resume,
            len(prompt),
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Failed to spawn %s: %s", self.executable, exc)
            return SessionResult(session_id=session.session_id, succeeded=False, error=str(exc), spawn_failed=True)

        logger.info("Agent process spawned with PID %s", proc.pid)
        decoder = EventStreamDecoder()
        stderr_chunks: list[bytes] = []
        counts = {EventKind.ASSISTANT_TEXT: 0, EventKind.TOOL_INVOCATION: 0}

        async def write_prompt() -> None:
            assert proc.stdin is not None
            try:
                proc.stdin.write(prompt.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.warning("[PID %s] agent closed stdin early: %s", proc.pid, exc)
            finally:
                proc.stdin.close()

        async def drain_stderr() -> None:
            assert proc.stderr is not None
            while True:
                chunk = await proc.stderr.read(_STDERR_CHUNK_BYTES)
                if not chunk:
                    break
                stderr_chunks.append(chunk)

        async def consume_stdout() -> int:
            assert proc.stdout is not None
            async for event in iter_events(proc.stdout, decoder):
                if event.kind in counts:
                    counts[event.kind] += 1
                if event.kind is EventKind.RUN_SUMMARY:
                    logger.info("[PID %s] run summary %s", proc.pid, event.payload)
                preview = self._preview(event)
                if preview and on_progress is not None:
                    try:
                        on_progress(preview)
                    except Exception as exc:  # noqa: BLE001 - progress sinks never stop the session.
                        logger.warning("[PID %s] progress callback failed: %s", proc.pid, exc)
            return await proc.wait()

        exchange = asyncio.ensure_future(asyncio.gather(write_prompt(), drain_stderr(), consume_stdout()))
        waiters: set[asyncio.Future] = {exchange}
        cancel_waiter: asyncio.Task | None = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=self.timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            logger.warning("[PID %s] session task cancelled, terminating agent", proc.pid)
            await self._terminate(proc)
            exchange.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if exchange not in done:
            cancelled = cancel_waiter is not None and cancel_waiter in done
            if cancelled:
                logger.warning("[PID %s] cancellation requested, terminating agent", proc.pid)
            else:
                logger.warning("[PID %s] timed out after %ss, terminating agent", proc.pid, self.timeout_seconds)
            await self._terminate(proc)
            exchange.cancel()
            await asyncio.gather(exchange, return_exceptions=True)
            return SessionResult(
                session_id=session.session_id,
                succeeded=False,
                output=decoder.final_text,
                error=CANCELLED_MESSAGE if cancelled else f"Session timed out after {self.timeout_seconds:g}s",
                exit_code=proc.returncode,
                cancelled=cancelled,
                timed_out=not cancelled,
            )

        if exchange.exception() is not None:
            logger.error("[PID %s] stream handling failed, terminating agent", proc.pid)
            await self._terminate(proc)
        exit_code = exchange.result()[2]
        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
        logger.info(
            "[PID %s] exited with code %s (messages=%d, tools=%d, noise=%d)",
            proc.pid,
            exit_code,
            counts[EventKind.ASSISTANT_TEXT],
            counts[EventKind.TOOL_INVOCATION],
            decoder.noise_count,
        )
        if stderr_text:
            logger.debug("[PID %s] stderr: %s", proc.pid, stderr_text[:2000])

        if cancel_event is not None and cancel_event.is_set():
            return SessionResult(
                session_id=session.session_id,
                succeeded=False,
                output=decoder.final_text,
                error=CANCELLED_MESSAGE,
                exit_code=exit_code,
                cancelled=True,
            )
        if exit_code != 0:
            logger.error("[PID %s] non-zero exit %s", proc.pid, exit_code)
            return SessionResult(
                session_id=session.session_id,
                succeeded=False,
                output=decoder.final_text,
                error=stderr_text or f"Process exited with code {exit_code}",
                exit_code=exit_code,
            )
        return SessionResult(session_id=session.session_id, succeeded=True, output=decoder.final_text, exit_code=0)
