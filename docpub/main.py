"""FastAPI application exposing push-webhook and manual-dispatch triggers for the pipeline"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from functools import lru_cache
import hashlib
import hmac
import json
import logging
import os
from pathlib import Path
import subprocess
import threading

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from docpub.models.publisher import PublishTarget
from docpub.models.run import RunContext, RunOutcome
from docpub.services.config import ConfigError, PipelineConfig, load_config
from docpub.services.pipeline import DocsPipeline
from docpub.services.publisher import GitBranchPublisher
from docpub.services.trigger import build_context, context_from_push_payload

app = FastAPI(title="docpub")

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50

_DESTINATION_LOCKS: dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


def _destination_lock(target: PublishTarget) -> threading.Lock:
    """Return the lock serialising publishes to ``target``."""

    key = f"{target.remote or ''}:{target.ref}"
    with _LOCKS_GUARD:
        return _DESTINATION_LOCKS.setdefault(key, threading.Lock())


@dataclass(slots=True)
class PipelineRunner:
    """Run the pipeline for incoming triggers, one run per destination at a time."""

    pipeline: DocsPipeline
    config: PipelineConfig
    source_root: Path
    history: deque[RunOutcome] = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))

    def run(self, context: RunContext) -> RunOutcome:
        with _destination_lock(self.config.target):
            outcome = self.pipeline.run(context, self.source_root, self.config.target)
        self.history.appendleft(outcome)
        return outcome

    def checkout_revision(self) -> str | None:
        """Return the commit checked out in the source root, or ``None`` when it is not a git work tree."""

        try:
            result = subprocess.run(
                ["git", "rev-parse", "--verify", "HEAD"],
                cwd=self.source_root,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError:
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None


@lru_cache(maxsize=1)
def _cached_runner() -> PipelineRunner:
    config = load_config()
    source_root = Path(os.getenv("DOCPUB_SOURCE_ROOT") or ".").resolve()
    pipeline = DocsPipeline(
        builder=config.build.create_builder(),
        publisher=GitBranchPublisher(repo_path=source_root, token=config.token),
        gating=config.gating,
    )
    return PipelineRunner(pipeline=pipeline, config=config, source_root=source_root)


def get_runner() -> PipelineRunner:
    """FastAPI dependency returning the shared pipeline runner."""

    try:
        return _cached_runner()
    except (ConfigError, ValueError) as exc:
        logger.exception("Pipeline configuration invalid", extra={"event": "pipeline.config"})
        raise HTTPException(
            status_code=503,
            detail={"message": "Pipeline not configured", "debug": str(exc)},
        ) from exc


def get_webhook_secret() -> str | None:
    """Return the shared secret used to verify push webhooks, when configured."""

    return os.getenv("DOCPUB_WEBHOOK_SECRET") or None


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Return ``True`` when ``signature`` is the ``sha256=`` HMAC of ``body``."""

    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.split("=", 1)[1])


def _ensure_checkout_matches(runner: PipelineRunner, context: RunContext) -> None:
    """Reject a publishing run whose requested revision is not the checkout that would be built."""

    revision = context.source_revision
    if not revision or not context.is_default_publish_branch:
        return
    checkout = runner.checkout_revision()
    if checkout == revision or (checkout and len(revision) >= 7 and checkout.startswith(revision)):
        return
    logger.warning(
        "Source checkout does not match requested revision",
        extra={"event": "run.revision_mismatch", "requested": revision, "checkout": checkout},
    )
    raise HTTPException(
        status_code=409,
        detail={
            "message": "Source checkout is not at the requested revision",
            "requested": revision,
            "checkout": checkout,
        },
    )


def _outcome_response(outcome: RunOutcome) -> JSONResponse:
    return JSONResponse(outcome.to_dict(), status_code=200 if outcome.succeeded else 500)


class ManualRunRequest(BaseModel):
    """Payload submitted to dispatch a run by hand."""

    ref: str = Field(..., description="Branch or fully qualified ref to build.")
    source_revision: str | None = Field(None, description="Commit being documented.")

    @field_validator("ref")
    @classmethod
    def _ensure_ref_not_empty(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Ref must not be empty.")
        return cleaned


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.post("/hooks/push")
async def push_hook(
    request: Request,
    runner: PipelineRunner = Depends(get_runner),
    secret: str | None = Depends(get_webhook_secret),
) -> JSONResponse:
    """Handle a push webhook, publishing when the pushed ref is the publish branch."""

    body = await request.body()
    if secret is not None and not verify_signature(body, request.headers.get("X-Hub-Signature-256"), secret):
        logger.warning("Rejected webhook with invalid signature", extra={"event": "hook.signature"})
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    event = (request.headers.get("X-GitHub-Event") or "push").strip().lower()
    if event == "ping":
        return JSONResponse({"ok": True, "event": "ping"})
    if event != "push":
        return JSONResponse({"ignored": event}, status_code=202)

    try:
        payload = json.loads(body or b"{}")
        if not isinstance(payload, dict):
            raise ValueError("Webhook body must be a JSON object")
        context = context_from_push_payload(payload, publish_branch=runner.config.publish_branch)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    _ensure_checkout_matches(runner, context)
    logger.info(
        "Push received",
        extra={"event": "hook.push", "ref": context.ref_name, "publish": context.is_default_publish_branch},
    )
    outcome = await run_in_threadpool(runner.run, context)
    return _outcome_response(outcome)


@app.post("/api/runs")
def dispatch_run(
    payload: ManualRunRequest,
    runner: PipelineRunner = Depends(get_runner),
) -> JSONResponse:
    """Start a run by hand for the requested ref."""

    context = build_context(
        "workflow_dispatch",
        payload.ref,
        publish_branch=runner.config.publish_branch,
        source_revision=payload.source_revision,
    )
    _ensure_checkout_matches(runner, context)
    logger.info("Manual dispatch received", extra={"event": "run.dispatch", "ref": context.ref_name})
    return _outcome_response(runner.run(context))


@app.get("/api/runs")
def list_runs(
    limit: int = Query(10, ge=1, le=HISTORY_LIMIT),
    runner: PipelineRunner = Depends(get_runner),
):
    """Return the most recent run outcomes, newest first."""

    return {"runs": [outcome.to_dict() for outcome in list(runner.history)[:limit]]}
