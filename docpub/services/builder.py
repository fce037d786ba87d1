"""Artifact builders that turn a source checkout into a documentation directory."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import shlex
import subprocess
import threading
import time
from typing import Protocol, Sequence

from docpub.models.run import BuildResult


logger = logging.getLogger(__name__)

DEFAULT_BUILD_COMMAND: tuple[str, ...] = ("cargo", "+nightly", "doc", "--release", "--lib", "-Zrustdoc-map")
DEFAULT_OUTPUT_DIR = "target/doc"
NO_DEPS_FLAG = "--no-deps"
CANCELLED_DIAGNOSTIC = "Build cancelled"


class SupportsBuilding(Protocol):
    """Protocol describing the artifact builder collaborator."""

    def build(self, source_root: Path, *, cancel_event: threading.Event | None = None) -> BuildResult:
        """Generate documentation for ``source_root`` and report where it was written."""


def parse_command(value: str | Sequence[str]) -> tuple[str, ...]:
    """Normalise a command given as a shell-style string or an argument list."""

    if isinstance(value, str):
        parts = shlex.split(value)
    else:
        parts = [str(part) for part in value]
    if not parts:
        raise ValueError("Build command must not be empty")
    return tuple(parts)


@dataclass(slots=True)
class CommandBuilder:
    """Run an external documentation generator inside the source checkout.

    Output from the command is captured line by line, stdout and stderr merged,
    and returned untouched as build diagnostics. The builder never raises for a
    failing generator: non-zero exits, timeouts, a missing executable or an
    empty output directory all produce ``success=False``.
    """

    command: tuple[str, ...] = DEFAULT_BUILD_COMMAND
    output_dir: str = DEFAULT_OUTPUT_DIR
    exclude_dependencies: bool = True
    timeout: float | None = None
    poll_interval: float = 0.2
    env: dict[str, str] | None = field(default=None, repr=False)

    def resolved_command(self) -> list[str]:
        """Return the argument list executed for a build."""

        args = list(parse_command(self.command))
        if self.exclude_dependencies and NO_DEPS_FLAG not in args:
            args.append(NO_DEPS_FLAG)
        return args

    def build(self, source_root: Path, *, cancel_event: threading.Event | None = None) -> BuildResult:
        """Run the generator and return the resulting :class:`BuildResult`."""

        source_root = Path(source_root)
        artifact_path = source_root / self.output_dir
        if not source_root.is_dir():
            return BuildResult(
                artifact_path=artifact_path,
                success=False,
                diagnostics=[f"Source root '{source_root}' is not a directory"],
            )

        args = self.resolved_command()
        logger.info("Running documentation build: %s", shlex.join(args))
        try:
            process = subprocess.Popen(
                args,
                cwd=source_root,
                env=self.env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            return BuildResult(
                artifact_path=artifact_path,
                success=False,
                diagnostics=[f"Could not start build command '{args[0]}': {exc}"],
            )

        output, failure, cancelled = self._wait(process, cancel_event)
        diagnostics = output.splitlines()
        if failure is not None:
            diagnostics.append(failure)
            return BuildResult(
                artifact_path=artifact_path,
                success=False,
                diagnostics=diagnostics,
                cancelled=cancelled,
            )

        if process.returncode != 0:
            diagnostics.append(f"Build command exited with status {process.returncode}")
            return BuildResult(artifact_path=artifact_path, success=False, diagnostics=diagnostics)

        if not artifact_path.is_dir() or not any(artifact_path.iterdir()):
            diagnostics.append(f"Build produced no files in '{self.output_dir}'")
            return BuildResult(artifact_path=artifact_path, success=False, diagnostics=diagnostics)

        return BuildResult(artifact_path=artifact_path, success=True, diagnostics=diagnostics)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _wait(
        self,
        process: subprocess.Popen[str],
        cancel_event: threading.Event | None,
    ) -> tuple[str, str | None, bool]:
        """Collect output until the process exits, is cancelled, or times out."""

        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            try:
                stdout, _ = process.communicate(timeout=self.poll_interval)
                return stdout or "", None, False
            except subprocess.TimeoutExpired:
                pass

            if cancel_event is not None and cancel_event.is_set():
                return self._stop(process), CANCELLED_DIAGNOSTIC, True
            if deadline is not None and time.monotonic() >= deadline:
                return self._stop(process), f"Build timed out after {self.timeout:g} seconds", False

    @staticmethod
    def _stop(process: subprocess.Popen[str]) -> str:
        process.terminate()
        try:
            stdout, _ = process.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, _ = process.communicate()
        return stdout or ""


__all__ = [
    "CANCELLED_DIAGNOSTIC",
    "CommandBuilder",
    "DEFAULT_BUILD_COMMAND",
    "DEFAULT_OUTPUT_DIR",
    "SupportsBuilding",
    "parse_command",
]
