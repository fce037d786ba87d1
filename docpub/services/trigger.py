"""Decide whether a run should publish, and derive run contexts from CI inputs."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from docpub.models.run import EventKind, RunContext


_BRANCH_PREFIX = "refs/heads/"


def should_publish(context: RunContext) -> bool:
    """Return ``True`` when the run targets the default publish branch.

    Manual dispatches and pushes qualify alike; only the ref matters.
    """

    return bool(context.is_default_publish_branch)


def is_publish_ref(ref: str, publish_branch: str) -> bool:
    """Return ``True`` when ``ref`` names ``publish_branch`` (qualified or bare)."""

    ref = ref.strip()
    if ref.startswith("refs/"):
        return ref == f"{_BRANCH_PREFIX}{publish_branch}"
    return ref == publish_branch


def _short_ref(ref: str) -> str:
    for prefix in (_BRANCH_PREFIX, "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def build_context(
    event: str | EventKind | None,
    ref: str,
    *,
    publish_branch: str,
    source_revision: str | None = None,
) -> RunContext:
    """Create a :class:`RunContext` for ``ref`` triggered by ``event``."""

    ref = (ref or "").strip()
    if not ref:
        raise ValueError("A ref is required to evaluate the publish trigger")

    event_kind = event if isinstance(event, EventKind) else EventKind.from_event_name(event)
    return RunContext(
        event_kind=event_kind,
        ref_name=_short_ref(ref),
        is_default_publish_branch=is_publish_ref(ref, publish_branch),
        source_revision=(source_revision or "").strip() or None,
    )


def context_from_environment(environ: Mapping[str, str], *, publish_branch: str) -> RunContext:
    """Build a run context from GitHub Actions style environment variables.

    ``DOCPUB_EVENT`` and ``DOCPUB_REF`` take precedence over ``GITHUB_EVENT_NAME``
    and ``GITHUB_REF``/``GITHUB_REF_NAME`` so the pipeline can be driven locally.
    """

    event = environ.get("DOCPUB_EVENT") or environ.get("GITHUB_EVENT_NAME") or "manual"
    ref = environ.get("DOCPUB_REF") or environ.get("GITHUB_REF") or environ.get("GITHUB_REF_NAME") or ""
    revision = environ.get("DOCPUB_SOURCE_REVISION") or environ.get("GITHUB_SHA")
    return build_context(event, ref, publish_branch=publish_branch, source_revision=revision)


def context_from_push_payload(payload: Mapping[str, Any], *, publish_branch: str) -> RunContext:
    """Build a run context from a push webhook body (``ref`` and ``after`` keys)."""

    ref = payload.get("ref")
    if not isinstance(ref, str) or not ref.strip():
        raise ValueError("Push payload does not contain a ref")
    revision = payload.get("after")
    return build_context(
        EventKind.PUSH,
        ref,
        publish_branch=publish_branch,
        source_revision=revision if isinstance(revision, str) else None,
    )


__all__ = [
    "build_context",
    "context_from_environment",
    "context_from_push_payload",
    "is_publish_ref",
    "should_publish",
]
