"""Publishers responsible for replacing a destination branch with a built artifact."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import os
from pathlib import Path
import subprocess
import tempfile
from typing import Protocol, Sequence

from docpub.models.publisher import PublishRecord, PublishTarget
from docpub.utils.files import is_executable, list_artifact_files


logger = logging.getLogger(__name__)

NOJEKYLL_MARKER = ".nojekyll"

_UNAUTHORIZED_MARKERS = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "could not read password",
    "invalid username or password",
    "access denied",
    "not authorized",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
    "protected branch hook declined",
)
_UNREACHABLE_MARKERS = (
    "could not resolve host",
    "unable to access",
    "connection refused",
    "connection timed out",
    "operation timed out",
    "network is unreachable",
    "does not appear to be a git repository",
    "could not read from remote repository",
    "no such device or address",
)


class PublishError(RuntimeError):
    """Raised when an artifact could not be published; the destination is unchanged."""

    def __init__(self, message: str, *, command: Sequence[str] | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.command = tuple(command or ())
        self.stderr = stderr


class UnauthorizedError(PublishError):
    """The destination rejected the credentials or permissions used for publishing."""


class DestinationUnreachableError(PublishError):
    """The destination could not be contacted."""


class InvalidArtifactError(PublishError):
    """The artifact directory is missing, empty, or otherwise unusable."""


def classify_git_failure(message: str, *, command: Sequence[str] = (), stderr: str = "") -> PublishError:
    """Return the :class:`PublishError` subclass matching a failed git command's stderr."""

    lowered = stderr.lower()
    if any(marker in lowered for marker in _UNAUTHORIZED_MARKERS):
        return UnauthorizedError(message, command=command, stderr=stderr)
    if any(marker in lowered for marker in _UNREACHABLE_MARKERS):
        return DestinationUnreachableError(message, command=command, stderr=stderr)
    return PublishError(message, command=command, stderr=stderr)


class SupportsPublishing(Protocol):
    """Protocol describing the publisher interface used by the pipeline."""

    def publish(
        self,
        artifact_path: Path,
        target: PublishTarget,
        *,
        source_revision: str | None = None,
        published_at: datetime | None = None,
    ) -> PublishRecord:
        """Replace the destination contents with ``artifact_path`` and return the new record."""


@dataclass(slots=True)
class GitBranchPublisher:
    """Publish artifact directories as commits on a git branch.

    The artifact is hashed into the object database and staged in a throwaway
    index, so neither the artifact directory nor the repository's working tree
    is touched. The destination only changes in the final step: a
    compare-and-swap ``update-ref`` for local branches, or a non-forced push
    when ``target.remote`` is set. Any earlier failure leaves the destination
    exactly as it was.
    """

    repo_path: Path
    git_executable: str = "git"
    token: str | None = field(default=None, repr=False)

    def publish(
        self,
        artifact_path: Path,
        target: PublishTarget,
        *,
        source_revision: str | None = None,
        published_at: datetime | None = None,
    ) -> PublishRecord:
        """Commit the artifact's contents as the full new content of ``target.branch``."""

        if not Path(self.repo_path).is_dir():
            raise DestinationUnreachableError(f"Repository path '{self.repo_path}' does not exist")

        content_root = self._resolve_content_root(Path(artifact_path), target.publish_dir)
        try:
            files = list_artifact_files(content_root)
        except ValueError as exc:
            raise InvalidArtifactError(str(exc)) from exc
        if not files:
            raise InvalidArtifactError(f"Artifact directory '{content_root}' contains no files")

        published = (published_at or datetime.now(timezone.utc)).astimezone(timezone.utc)

        with tempfile.TemporaryDirectory(prefix="docpub-index-") as scratch:
            index_env = {"GIT_INDEX_FILE": str(Path(scratch) / "index")}
            self._stage(content_root, files, index_env)
            if target.disable_processing and NOJEKYLL_MARKER not in files:
                self._stage_marker(index_env)
                files = sorted([*files, NOJEKYLL_MARKER])
            tree_hash = self._run_git("write-tree", env=index_env).stdout.strip()

        parent = self._current_tip(target)
        message = target.commit_message or self._default_message(source_revision)
        commit_hash = self._commit(tree_hash, parent, message, target, published)

        if target.remote:
            self._run_git(
                *self._auth_args(),
                "push",
                "--porcelain",
                target.remote,
                f"{commit_hash}:{target.ref}",
            )
        else:
            self._run_git("update-ref", "-m", message, target.ref, commit_hash, parent or "")

        logger.info(
            "Published %s files to %s as %s",
            len(files),
            f"{target.remote}:{target.branch}" if target.remote else target.branch,
            commit_hash,
        )
        return PublishRecord(
            branch=target.branch,
            commit_hash=commit_hash,
            parent_hash=parent,
            tree_hash=tree_hash,
            author=target.author,
            files=tuple(files),
            published_at=published,
            remote=target.remote,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _resolve_content_root(artifact_path: Path, publish_dir: str | None) -> Path:
        """Return the directory whose contents become the destination content."""

        if not artifact_path.is_dir():
            raise InvalidArtifactError(f"Artifact path '{artifact_path}' is not a directory")
        if not publish_dir:
            return artifact_path

        root = artifact_path.resolve()
        candidate = (root / publish_dir).resolve()
        if candidate != root and root not in candidate.parents:
            raise InvalidArtifactError(f"Publish directory '{publish_dir}' escapes the artifact tree")
        if not candidate.is_dir():
            raise InvalidArtifactError(f"Publish directory '{publish_dir}' not found in '{artifact_path}'")
        return candidate

    def _stage(self, content_root: Path, files: list[str], index_env: dict[str, str]) -> None:
        """Write every file as a blob, bypassing filters, and add it to the temporary index."""

        paths = "".join(f"{content_root / name}\n" for name in files)
        hashes = self._run_git("hash-object", "-w", "--no-filters", "--stdin-paths", input=paths)
        blob_ids = hashes.stdout.split()
        if len(blob_ids) != len(files):
            raise PublishError("git hash-object returned an unexpected number of objects")

        entries = []
        for name, blob_id in zip(files, blob_ids):
            mode = "100755" if is_executable(content_root / name) else "100644"
            entries.append(f"{mode} {blob_id}\t{name}\n")
        self._run_git("update-index", "--add", "--index-info", env=index_env, input="".join(entries))

    def _stage_marker(self, index_env: dict[str, str]) -> None:
        blob_id = self._run_git("hash-object", "-w", "--stdin", input="").stdout.strip()
        self._run_git(
            "update-index",
            "--add",
            "--cacheinfo",
            f"100644,{blob_id},{NOJEKYLL_MARKER}",
            env=index_env,
        )

    def _current_tip(self, target: PublishTarget) -> str | None:
        """Return the commit currently at the destination, fetching it when remote."""

        if target.remote:
            listing = self._run_git(*self._auth_args(), "ls-remote", "--heads", target.remote, target.ref)
            if not listing.stdout.strip():
                return None
            self._run_git(*self._auth_args(), "fetch", "--no-tags", "--quiet", target.remote, target.ref)
            return self._run_git("rev-parse", "FETCH_HEAD").stdout.strip()

        result = self._run_git("rev-parse", "--verify", "--quiet", f"{target.ref}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def _commit(
        self,
        tree_hash: str,
        parent: str | None,
        message: str,
        target: PublishTarget,
        published: datetime,
    ) -> str:
        timestamp = f"{int(published.timestamp())} +0000"
        identity_env = {
            "GIT_AUTHOR_NAME": target.author.name,
            "GIT_AUTHOR_EMAIL": target.author.email,
            "GIT_AUTHOR_DATE": timestamp,
            "GIT_COMMITTER_NAME": target.author.name,
            "GIT_COMMITTER_EMAIL": target.author.email,
            "GIT_COMMITTER_DATE": timestamp,
        }
        parent_args = ["-p", parent] if parent else []
        result = self._run_git(
            "-c",
            "commit.gpgSign=false",
            "commit-tree",
            tree_hash,
            *parent_args,
            "-m",
            message,
            env=identity_env,
        )
        return result.stdout.strip()

    @staticmethod
    def _default_message(source_revision: str | None) -> str:
        if source_revision:
            return f"deploy: {source_revision}"
        return "deploy: publish documentation"

    def _auth_args(self) -> list[str]:
        if not self.token:
            return []
        credential = base64.b64encode(f"x-access-token:{self.token}".encode("utf-8")).decode("ascii")
        return ["-c", f"http.extraheader=AUTHORIZATION: basic {credential}"]

    def _run_git(
        self,
        *args: str,
        env: dict[str, str] | None = None,
        input: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Execute a Git command within the repository and raise on error."""

        command = [self.git_executable, *args]
        try:
            result = subprocess.run(
                command,
                cwd=self.repo_path,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0", **(env or {})},
                input=input,
                text=True,
                check=False,
                capture_output=True,
            )
        except OSError as exc:
            raise PublishError(f"Could not run {self.git_executable}: {exc}", command=_visible_args(args)) from exc

        if check and result.returncode != 0:
            visible = _visible_args(args)
            stderr = result.stderr.strip()
            raise classify_git_failure(
                f"git {' '.join(visible)} failed: {stderr}",
                command=visible,
                stderr=stderr,
            )
        return result



def _visible_args(args: Sequence[str]) -> list[str]:
    """Return ``args`` without the credential header option."""

    return [arg for arg in args if not arg.startswith("http.extraheader")]

__all__ = [
    "DestinationUnreachableError",
    "GitBranchPublisher",
    "InvalidArtifactError",
    "NOJEKYLL_MARKER",
    "PublishError",
    "SupportsPublishing",
    "UnauthorizedError",
    "classify_git_failure",
]
