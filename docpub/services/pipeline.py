"""Orchestration layer that chains the trigger check, artifact builder, and publisher."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from pathlib import Path
import threading

from docpub.models.publisher import PublishTarget
from docpub.models.run import BuildResult, OutcomeStatus, RunContext, RunOutcome
from docpub.services.builder import SupportsBuilding
from docpub.services.publisher import PublishError, SupportsPublishing
from docpub.services.trigger import should_publish


logger = logging.getLogger(__name__)


class GatingPolicy(str, Enum):
    """Whether a run that will not publish still builds the documentation."""

    SKIP_BUILD = "skip-build"
    ALWAYS_BUILD = "always-build"


@dataclass(slots=True)
class DocsPipeline:
    """Coordinate one run from trigger evaluation through publication.

    With ``GatingPolicy.SKIP_BUILD`` a declined trigger ends the run before the
    builder is invoked. ``GatingPolicy.ALWAYS_BUILD`` builds on every ref, so
    broken documentation is still reported for refs that never publish.
    """

    builder: SupportsBuilding
    publisher: SupportsPublishing
    gating: GatingPolicy = GatingPolicy.SKIP_BUILD

    def run(
        self,
        context: RunContext,
        source_root: Path,
        target: PublishTarget,
        *,
        cancel_event: threading.Event | None = None,
    ) -> RunOutcome:
        """Execute the pipeline state machine and return its terminal outcome."""

        publish = should_publish(context)
        warnings: list[str] = []
        if not publish:
            message = f"Ref '{context.ref_name}' is not the publish branch; publishing skipped."
            if self.gating is GatingPolicy.SKIP_BUILD:
                logger.info(message)
                return RunOutcome(status=OutcomeStatus.SKIPPED, context=context, warnings=[message])
            warnings.append(message)

        if _cancelled(cancel_event):
            return self._cancelled(context, None, warnings)

        try:
            build = self.builder.build(Path(source_root), cancel_event=cancel_event)
        except Exception as exc:
            logger.exception("Artifact builder raised")
            build = BuildResult(
                artifact_path=Path(source_root),
                success=False,
                diagnostics=[f"Builder failed: {exc}"],
            )

        if _cancelled(cancel_event) or build.cancelled:
            return self._cancelled(context, build, warnings)

        if not build.success:
            return RunOutcome(
                status=OutcomeStatus.BUILD_FAILED,
                context=context,
                build=build,
                error="Documentation build failed",
                diagnostics=list(build.diagnostics),
                warnings=warnings,
            )

        if not publish:
            return RunOutcome(
                status=OutcomeStatus.SKIPPED,
                context=context,
                build=build,
                diagnostics=list(build.diagnostics),
                warnings=warnings,
            )

        try:
            record = self.publisher.publish(
                build.artifact_path,
                target,
                source_revision=context.source_revision,
            )
        except PublishError as exc:
            logger.error("Publish to %s failed: %s", target.branch, exc)
            return RunOutcome(
                status=OutcomeStatus.PUBLISH_FAILED,
                context=context,
                build=build,
                error=f"{type(exc).__name__}: {exc}",
                diagnostics=list(build.diagnostics),
                warnings=warnings,
            )

        return RunOutcome(
            status=OutcomeStatus.PUBLISHED,
            context=context,
            build=build,
            record=record,
            diagnostics=list(build.diagnostics),
            warnings=warnings,
        )

    @staticmethod
    def _cancelled(context: RunContext, build: BuildResult | None, warnings: list[str]) -> RunOutcome:
        logger.warning("Run for %s cancelled before publishing", context.ref_name)
        return RunOutcome(
            status=OutcomeStatus.CANCELLED,
            context=context,
            build=build,
            error="Run cancelled",
            diagnostics=list(build.diagnostics) if build else [],
            warnings=warnings,
        )


def _cancelled(event: threading.Event | None) -> bool:
    return event is not None and event.is_set()


__all__ = ["DocsPipeline", "GatingPolicy"]
