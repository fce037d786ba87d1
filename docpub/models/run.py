"""Domain models describing a single pipeline invocation and its result."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from docpub.models.publisher import PublishRecord


class EventKind(str, Enum):
    """Kind of event that started a pipeline run."""

    MANUAL = "manual"
    PUSH = "push"
    OTHER = "other"

    @classmethod
    def from_event_name(cls, value: str | None) -> "EventKind":
        """Map a CI event name (``workflow_dispatch``, ``push``...) onto an event kind."""

        normalised = (value or "").strip().lower()
        if normalised in {"workflow_dispatch", "manual", "dispatch"}:
            return cls.MANUAL
        if normalised == "push":
            return cls.PUSH
        return cls.OTHER


@dataclass(slots=True, frozen=True)
class RunContext:
    """Immutable description of the event and ref a run was started for."""

    event_kind: EventKind
    ref_name: str
    is_default_publish_branch: bool
    source_revision: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.event_kind, EventKind):
            raise TypeError("event_kind must be an EventKind")
        if not self.ref_name or not self.ref_name.strip():
            raise ValueError("RunContext requires a ref name")


@dataclass(slots=True)
class BuildResult:
    """Output reported by an artifact builder."""

    artifact_path: Path
    success: bool
    diagnostics: list[str] = field(default_factory=list)
    cancelled: bool = False


class OutcomeStatus(str, Enum):
    """Terminal states of the pipeline state machine."""

    SKIPPED = "skipped"
    PUBLISHED = "published"
    BUILD_FAILED = "build_failed"
    PUBLISH_FAILED = "publish_failed"
    CANCELLED = "cancelled"


_EXIT_CODES = {
    OutcomeStatus.SKIPPED: 0,
    OutcomeStatus.PUBLISHED: 0,
    OutcomeStatus.BUILD_FAILED: 1,
    OutcomeStatus.PUBLISH_FAILED: 1,
    OutcomeStatus.CANCELLED: 130,
}


@dataclass(slots=True)
class RunOutcome:
    """Structured summary of a pipeline execution."""

    status: OutcomeStatus
    context: RunContext
    build: BuildResult | None = None
    record: PublishRecord | None = None
    error: str | None = None
    diagnostics: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the run ended without a failure."""

        return self.status in {OutcomeStatus.SKIPPED, OutcomeStatus.PUBLISHED}

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.status]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation of the outcome."""

        record = self.record
        return {
            "status": self.status.value,
            "event": self.context.event_kind.value,
            "ref": self.context.ref_name,
            "source_revision": self.context.source_revision,
            "artifact_path": str(self.build.artifact_path) if self.build else None,
            "built": self.build is not None,
            "record": (
                {
                    "branch": record.branch,
                    "commit": record.commit_hash,
                    "parent": record.parent_hash,
                    "tree": record.tree_hash,
                    "author": f"{record.author.name} <{record.author.email}>",
                    "files": len(record.files),
                    "published_at": record.published_at.isoformat(),
                    "remote": record.remote,
                }
                if record
                else None
            ),
            "error": self.error,
            "diagnostics": list(self.diagnostics),
            "warnings": list(self.warnings),
        }
