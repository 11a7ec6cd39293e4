import asyncio
import sys
from pathlib import Path

import pytest

from feature_workflow.errors import ProviderUnavailable, SessionTimeout
from feature_workflow.models import Persona
from feature_workflow.session import CANCELLED_MESSAGE, SessionManager, new_session


FAKE_AGENT = """#!{python}
import json
import os
import sys
import time

mode = os.environ.get("FAKE_AGENT_MODE", "ok")
prompt = sys.stdin.read()


def emit(record):
    print(json.dumps(record), flush=True)


emit({{"type": "system", "subtype": "init"}})
print("not json at all", flush=True)
if mode == "sleep":
    emit({{"type": "assistant", "message": {{"content": "thinking"}}}})
    time.sleep(30)
if mode == "fail":
    sys.stderr.write("model overloaded\\n")
    sys.exit(3)
emit({{"type": "assistant", "message": {{"content": [{{"type": "tool_use", "name": "Edit", "input": {{}}}}]}}}})
emit({{"type": "assistant", "message": {{"content": "args=" + " ".join(sys.argv[1:]) + " prompt=" + prompt}}}})
emit({{"type": "result", "subtype": "success", "result": "done"}})
"""


@pytest.fixture
def fake_agent(tmp_path: Path) -> Path:
    script = tmp_path / "fake-agent"
    script.write_text(FAKE_AGENT.format(python=sys.executable), encoding="utf-8")
    script.chmod(0o755)
    return script


def test_fresh_session_passes_session_id(fake_agent: Path, tmp_path: Path) -> None:
    manager = SessionManager(executable=str(fake_agent), cwd=tmp_path, timeout_seconds=30)
    session = new_session(Persona.ARCHITECT)
    progress: list[str] = []

    result = asyncio.run(manager.run("write the spec", session=session, on_progress=progress.append))

    assert result.succeeded
    assert result.exit_code == 0
    assert f"--session-id {session.session_id}" in result.output
    assert "--resume" not in result.output
    assert result.output.endswith("prompt=write the spec")
    assert "Using tool: Edit" in progress


def test_resumed_session_passes_resume_flag(fake_agent: Path, tmp_path: Path) -> None:
    manager = SessionManager(executable=str(fake_agent), cwd=tmp_path, timeout_seconds=30)
    session = new_session(Persona.BUILDER)
    result = asyncio.run(manager.run("continue", session=session, resume=True))
    assert f"--resume {session.session_id}" in result.output
    assert "--session-id" not in result.output


def test_reviewer_sessions_cannot_be_resumed(fake_agent: Path, tmp_path: Path) -> None:
    manager = SessionManager(executable=str(fake_agent), cwd=tmp_path)
    with pytest.raises(ValueError):
        asyncio.run(manager.run("again", session=new_session(Persona.REVIEWER), resume=True))


def test_progress_preview_is_truncated(fake_agent: Path, tmp_path: Path) -> None:
    manager = SessionManager(executable=str(fake_agent), cwd=tmp_path, timeout_seconds=30, preview_chars=10)
    progress: list[str] = []
    asyncio.run(manager.run("hello", session=new_session(Persona.ARCHITECT), on_progress=progress.append))
    assert "args=--pri..." in progress


def test_nonzero_exit_reports_stderr(fake_agent: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_AGENT_MODE", "fail")
    manager = SessionManager(executable=str(fake_agent), cwd=tmp_path, timeout_seconds=30)
    result = asyncio.run(manager.run("x", session=new_session(Persona.ARCHITECT)))
    assert not result.succeeded
    assert result.exit_code == 3
    assert result.error == "model overloaded"


def test_spawn_failure_is_reported(tmp_path: Path) -> None:
    manager = SessionManager(executable=str(tmp_path / "missing-agent"), cwd=tmp_path)
    result = asyncio.run(manager.run("x", session=new_session(Persona.ARCHITECT)))
    assert not result.succeeded
    assert result.spawn_failed
    assert result.error


def test_ensure_available_raises_for_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(ProviderUnavailable):
        SessionManager(executable=str(tmp_path / "missing-agent")).ensure_available()


def test_timeout_terminates_process(fake_agent: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_AGENT_MODE", "sleep")
    manager = SessionManager(
        executable=str(fake_agent), cwd=tmp_path, timeout_seconds=1.0, terminate_grace_seconds=2.0
    )
    result = asyncio.run(manager.run("x", session=new_session(Persona.BUILDER)))
    assert not result.succeeded
    assert result.timed_out
    assert result.exit_code is not None
    with pytest.raises(SessionTimeout):
        result.raise_for_status()


def test_cancellation_terminates_process(fake_agent: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_AGENT_MODE", "sleep")
    manager = SessionManager(
        executable=str(fake_agent), cwd=tmp_path, timeout_seconds=30, terminate_grace_seconds=2.0
    )

    async def run_and_cancel():
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.5, cancel_event.set)
        return await manager.run("x", session=new_session(Persona.BUILDER), cancel_event=cancel_event)

    result = asyncio.run(run_and_cancel())
    assert result.cancelled
    assert result.error == CANCELLED_MESSAGE


def test_already_cancelled_does_not_spawn(tmp_path: Path) -> None:
    manager = SessionManager(executable=str(tmp_path / "missing-agent"), cwd=tmp_path)

    async def run_cancelled():
        cancel_event = asyncio.Event()
        cancel_event.set()
        return await manager.run("x", session=new_session(Persona.BUILDER), cancel_event=cancel_event)

    result = asyncio.run(run_cancelled())
    assert result.cancelled
    assert not result.spawn_failed


def test_failing_progress_callback_does_not_break_session(fake_agent: Path, tmp_path: Path) -> None:
    manager = SessionManager(executable=str(fake_agent), cwd=tmp_path, timeout_seconds=30)
    seen: list[str] = []

    def flaky(message: str) -> None:
        seen.append(message)
        raise OSError("terminal closed")

    result = asyncio.run(manager.run("write the spec", session=new_session(Persona.ARCHITECT), on_progress=flaky))

    assert result.succeeded
    assert result.output.endswith("prompt=write the spec")
    assert len(seen) >= 2
