import asyncio
import shutil
import subprocess
from pathlib import Path

import pytest

from feature_workflow.diffs import GitDiffSource
from feature_workflow.errors import ProviderUnavailable


pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


def test_snapshot_stages_new_and_modified_files(tmp_path: Path) -> None:
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "config", "user.email", "dev@example.com")
    _git(tmp_path, "config", "user.name", "Dev")
    (tmp_path / "app.py").write_text("print('a')\n", encoding="utf-8")
    _git(tmp_path, "add", "app.py")
    _git(tmp_path, "commit", "-q", "-m", "init")

    source = GitDiffSource(tmp_path)
    source.ensure_available()
    assert not asyncio.run(source.snapshot()).has_changes

    (tmp_path / "app.py").write_text("print('b')\n", encoding="utf-8")
    (tmp_path / "new.py").write_text("x = 1\n", encoding="utf-8")
    snapshot = asyncio.run(source.snapshot())

    assert snapshot.has_changes
    assert snapshot.files == ["app.py", "new.py"]
    assert "+print('b')" in snapshot.diff


def test_outside_repository_is_unavailable(tmp_path: Path) -> None:
    with pytest.raises(ProviderUnavailable):
        GitDiffSource(tmp_path / "not-a-repo").ensure_available()
