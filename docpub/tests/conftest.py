"""Shared fixtures and helpers for the test suite."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import subprocess
import threading
from typing import Callable, Mapping

import pytest

from docpub.models.run import BuildResult


def git(repo: Path, *args: str) -> str:
    """Run a git command in ``repo`` and return its stripped stdout."""

    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    return result.stdout.strip()


def init_repo(path: Path, *, bare: bool = False) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(
        ["git", "init", *(["--bare"] if bare else [])],
        cwd=path,
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    if not bare:
        git(path, "config", "user.name", "Docs Bot")
        git(path, "config", "user.email", "bot@example.com")
    return path


def branch_files(repo: Path, branch: str) -> list[str]:
    """Return the sorted file paths stored on ``branch``."""

    listing = git(repo, "ls-tree", "-r", "--name-only", f"refs/heads/{branch}")
    return sorted(line for line in listing.splitlines() if line)


def branch_file_bytes(repo: Path, branch: str, path: str) -> bytes:
    return subprocess.run(
        ["git", "cat-file", "blob", f"refs/heads/{branch}:{path}"],
        cwd=repo,
        check=True,
        stdout=subprocess.PIPE,
    ).stdout


def write_tree(root: Path, files: Mapping[str, str | bytes]) -> Path:
    """Create ``files`` (relative path -> content) below ``root``."""

    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
    return root


@dataclass(slots=True)
class StubBuilder:
    """Builder returning a canned result and recording each invocation."""

    result: BuildResult
    calls: list[Path] = field(default_factory=list, init=False)
    on_build: Callable[[], None] | None = None

    def build(self, source_root: Path, *, cancel_event: threading.Event | None = None) -> BuildResult:
        self.calls.append(source_root)
        if self.on_build is not None:
            self.on_build()
        return self.result


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    """Provide an initialised, empty git repository."""

    return init_repo(tmp_path / "repo")


@pytest.fixture()
def artifact(tmp_path: Path) -> Callable[..., Path]:
    """Provide a factory that materialises an artifact directory."""

    counter = {"n": 0}

    def _factory(files: Mapping[str, str | bytes]) -> Path:
        counter["n"] += 1
        root = tmp_path / f"artifact-{counter['n']}"
        root.mkdir()
        return write_tree(root, files)

    return _factory
