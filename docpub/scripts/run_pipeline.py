"""Build the project documentation and publish it to the configured branch.

Intended to run as a CI step on every push and manual dispatch. The run context
is read from the CI environment (``GITHUB_EVENT_NAME``, ``GITHUB_REF``,
``GITHUB_SHA``) unless ``--event``/``--ref`` are given, and publishing only
happens for the publish branch (``main`` by default).

Exit codes: 0 when the documentation was published or publishing was skipped,
1 when the build or publish failed, 130 when the run was cancelled, 2 for
configuration errors.
"""
from __future__ import annotations

import argparse
from contextlib import contextmanager
import dataclasses
import json
import logging
import os
from pathlib import Path
import signal
import sys
import threading
from typing import Iterator, Sequence

from docpub.models.publisher import AuthorIdentity
from docpub.services.builder import parse_command
from docpub.services.config import ConfigError, PipelineConfig, load_config
from docpub.services.pipeline import DocsPipeline, GatingPolicy
from docpub.services.publisher import GitBranchPublisher
from docpub.services.trigger import build_context, context_from_environment

LOGGER = logging.getLogger("docpub.pipeline")

if not LOGGER.handlers:  # avoid duplicates on re-import
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.addHandler(handler)
    LOGGER.setLevel(logging.INFO)
    LOGGER.propagate = False


def _configure_logging() -> None:
    """Configure root logging based on ``DOCPUB_LOG_LEVEL``."""
    level_name = os.getenv("DOCPUB_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _default_source_root() -> str:
    return os.getenv("DOCPUB_SOURCE_ROOT") or os.getenv("GITHUB_WORKSPACE") or "."


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build documentation and publish it to a git branch")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML configuration file (default: DOCPUB_CONFIG or ./docpub.yaml when present)",
    )
    parser.add_argument(
        "--source-root",
        type=Path,
        default=Path(_default_source_root()),
        help="Checked-out source tree to document (default: DOCPUB_SOURCE_ROOT, GITHUB_WORKSPACE or .)",
    )
    parser.add_argument(
        "--repo",
        type=Path,
        default=None,
        help="Git repository used to create publish commits (default: the source root)",
    )
    parser.add_argument("--event", default=None, help="Triggering event, e.g. push or workflow_dispatch")
    parser.add_argument("--ref", default=None, help="Ref the run was triggered for, e.g. refs/heads/main")
    parser.add_argument("--source-revision", default=None, help="Commit being documented")
    parser.add_argument("--publish-branch", default=None, help="Branch whose runs publish (default: main)")
    parser.add_argument("--target-branch", default=None, help="Branch receiving the docs (default: gh-pages)")
    parser.add_argument("--remote", default=None, help="Remote to push the publish branch to")
    parser.add_argument("--publish-dir", default=None, help="Subdirectory of the artifact to publish")
    parser.add_argument("--build-command", default=None, help="Documentation build command")
    parser.add_argument("--output-dir", default=None, help="Build output directory relative to the source root")
    parser.add_argument(
        "--include-deps",
        action="store_true",
        default=False,
        help="Also document dependencies (omit the --no-deps flag)",
    )
    parser.add_argument(
        "--gating",
        choices=[policy.value for policy in GatingPolicy],
        default=None,
        help="Build even when the ref does not publish (always-build) or not at all (skip-build)",
    )
    parser.add_argument("--author-name", default=None, help="Name recorded on publish commits")
    parser.add_argument("--author-email", default=None, help="Email recorded on publish commits")
    return parser.parse_args(argv)


def _apply_overrides(config: PipelineConfig, args: argparse.Namespace) -> PipelineConfig:
    """Return ``config`` with any command line overrides applied."""

    build = config.build
    if args.build_command:
        build = dataclasses.replace(build, command=parse_command(args.build_command))
    if args.output_dir:
        build = dataclasses.replace(build, output_dir=args.output_dir)
    if args.include_deps:
        build = dataclasses.replace(build, exclude_dependencies=False)

    target = config.target
    target_changes: dict[str, object] = {}
    if args.target_branch:
        target_changes["branch"] = args.target_branch
    if args.remote:
        target_changes["remote"] = args.remote
    if args.publish_dir:
        target_changes["publish_dir"] = args.publish_dir
    if args.author_name or args.author_email:
        target_changes["author"] = AuthorIdentity(
            name=args.author_name or target.author.name,
            email=args.author_email or target.author.email,
        )
    if target_changes:
        try:
            target = dataclasses.replace(target, **target_changes)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

    return dataclasses.replace(
        config,
        publish_branch=args.publish_branch or config.publish_branch,
        gating=GatingPolicy(args.gating) if args.gating else config.gating,
        build=build,
        target=target,
    )


@contextmanager
def _cancel_on_signals() -> Iterator[threading.Event]:
    """Yield an event that is set when the process receives SIGINT or SIGTERM."""

    cancel = threading.Event()

    def _handler(signum: int, _frame: object) -> None:
        LOGGER.warning("PIPELINE_CANCEL signal=%s", signal.Signals(signum).name)
        cancel.set()

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, _handler)
    try:
        yield cancel
    finally:
        for signum, original in previous.items():
            signal.signal(signum, original)


def _build_pipeline(config: PipelineConfig, repo_path: Path) -> DocsPipeline:
    return DocsPipeline(
        builder=config.build.create_builder(),
        publisher=GitBranchPublisher(repo_path=repo_path, token=config.token),
        gating=config.gating,
    )


def main(argv: Sequence[str] | None = None) -> int:
    _configure_logging()
    args = _parse_args(argv)

    try:
        config = _apply_overrides(load_config(args.config), args)
        if args.ref:
            context = build_context(
                args.event or "manual",
                args.ref,
                publish_branch=config.publish_branch,
                source_revision=args.source_revision,
            )
        else:
            context = context_from_environment(os.environ, publish_branch=config.publish_branch)
    except (ConfigError, ValueError) as exc:
        LOGGER.error("PIPELINE_CONFIG_ERROR %s", exc)
        return 2

    source_root = args.source_root.resolve()
    pipeline = _build_pipeline(config, (args.repo or source_root).resolve())
    LOGGER.info(
        "PIPELINE_START event=%s ref=%s publish=%s target=%s",
        context.event_kind.value,
        context.ref_name,
        context.is_default_publish_branch,
        config.target.branch,
    )

    with _cancel_on_signals() as cancel:
        outcome = pipeline.run(context, source_root, config.target, cancel_event=cancel)

    for warning in outcome.warnings:
        LOGGER.warning("PIPELINE_WARNING %s", warning)
    if not outcome.succeeded:
        for line in outcome.diagnostics:
            LOGGER.error("BUILD_DIAGNOSTIC %s", line)
        LOGGER.error("PIPELINE_%s %s", outcome.status.name, outcome.error or "")
    elif outcome.record is not None:
        LOGGER.info(
            "PIPELINE_PUBLISHED branch=%s commit=%s files=%s",
            outcome.record.branch,
            outcome.record.commit_hash,
            len(outcome.record.files),
        )
    else:
        LOGGER.info("PIPELINE_SKIPPED ref=%s", context.ref_name)

    print(json.dumps(outcome.to_dict(), ensure_ascii=False))
    return outcome.exit_code


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
