"""Helpers for inspecting artifact directories on disk."""
from __future__ import annotations

from pathlib import Path
import stat


_SKIPPED_DIRECTORIES = frozenset({".git"})


def list_artifact_files(root: Path) -> list[str]:
    """Return sorted POSIX paths, relative to ``root``, of every file below it.

    ``.git`` directories are skipped. Symlinked files are reported like regular
    files and symlinked directories are descended into, so the listing matches
    what a reader of the directory sees. A directory link that resolves outside
    ``root`` or back onto one of its own parents raises ``ValueError``.
    """

    root = Path(root)
    real_root = root.resolve()
    found: list[str] = []
    _collect(root, real_root, "", frozenset({real_root}), found)
    return sorted(found)


def _collect(directory: Path, real_root: Path, prefix: str, active: frozenset[Path], found: list[str]) -> None:
    for entry in directory.iterdir():
        name = f"{prefix}{entry.name}"
        if entry.is_dir():
            if entry.name in _SKIPPED_DIRECTORIES:
                continue
            real = entry.resolve()
            if real != real_root and real_root not in real.parents:
                raise ValueError(f"Directory '{name}' links outside the artifact")
            if real in active:
                raise ValueError(f"Directory '{name}' links back to one of its parents")
            _collect(entry, real_root, f"{name}/", active | {real}, found)
        elif entry.is_file():
            found.append(name)


def is_executable(path: Path) -> bool:
    """Return ``True`` when any execute bit is set on ``path``."""

    return bool(Path(path).stat().st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


__all__ = ["is_executable", "list_artifact_files"]
