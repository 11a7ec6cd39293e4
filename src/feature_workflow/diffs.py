from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Protocol

from .errors import ProviderUnavailable
from .models import DiffSnapshot

logger = logging.getLogger(__name__)


class DiffSource(Protocol):
    def ensure_available(self) -> None:
        ...

    async def snapshot(self) -> DiffSnapshot:
        ...


class GitDiffSource:
    """Stages every change in the workspace and returns the staged diff."""

    def __init__(self, workspace_root: Path, *, executable: str = "git") -> None:
        self.workspace_root = workspace_root
        self.executable = executable

    def ensure_available(self) -> None:
        if shutil.which(self.executable) is None:
            raise ProviderUnavailable("git is required for code review diff capture but is not on PATH")
        if not any((parent / ".git").exists() for parent in (self.workspace_root, *self.workspace_root.parents)):
            raise ProviderUnavailable(f"{self.workspace_root} is not inside a git repository")

    async def _git(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            self.executable,
            *args,
            cwd=str(self.workspace_root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise RuntimeError(
                f"git {' '.join(args)} failed with code {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )
        return stdout.decode("utf-8", errors="replace")

    async def snapshot(self) -> DiffSnapshot:
        await self._git("add", "-A")
        diff = await self._git("diff", "--staged")
        names = await self._git("diff", "--staged", "--name-only")
        files = [line for line in names.splitlines() if line.strip()]
        logger.info("Staged diff covers %d file(s)", len(files))
        return DiffSnapshot(diff=diff.strip(), files=files)
