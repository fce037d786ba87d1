"""Data structures describing publish destinations and the commits written to them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class OverwritePolicy(str, Enum):
    """How a publish treats the content already present at the destination."""

    REPLACE_ALL = "replace-all"


@dataclass(slots=True, frozen=True)
class AuthorIdentity:
    """Name and e-mail attributed to every publish commit."""

    name: str = "github-actions[bot]"
    email: str = "github-actions@users.noreply.github.com"

    def __post_init__(self) -> None:
        if not self.name.strip() or not self.email.strip():
            raise ValueError("Author identity requires a non-empty name and email")


@dataclass(slots=True, frozen=True)
class PublishTarget:
    """Static configuration describing where built documentation is published."""

    branch: str = "gh-pages"
    author: AuthorIdentity = field(default_factory=AuthorIdentity)
    overwrite_policy: OverwritePolicy = OverwritePolicy.REPLACE_ALL
    publish_dir: str | None = None
    remote: str | None = None
    disable_processing: bool = False
    commit_message: str | None = None

    def __post_init__(self) -> None:
        branch = self.branch.strip()
        if not branch or branch.startswith("-") or " " in branch or ".." in branch:
            raise ValueError(f"Invalid publish branch name: {self.branch!r}")
        if self.overwrite_policy is not OverwritePolicy.REPLACE_ALL:
            raise ValueError(f"Unsupported overwrite policy: {self.overwrite_policy!r}")

    @property
    def ref(self) -> str:
        """Return the fully qualified ref updated by a publish."""

        return f"refs/heads/{self.branch}"


@dataclass(slots=True, frozen=True)
class PublishRecord:
    """Outcome returned by the publisher after committing an artifact to the destination."""

    branch: str
    commit_hash: str
    parent_hash: str | None
    tree_hash: str
    author: AuthorIdentity
    files: tuple[str, ...]
    published_at: datetime
    remote: str | None = None
