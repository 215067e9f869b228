"""
Ephemera — API Server

FastAPI application serving:
  POST /v1/environments/{id}/deploy    — submit a deploy intent
  POST /v1/environments/{id}/restart   — submit a restart intent
  POST /v1/environments/{id}/cleanup   — submit a cleanup intent
  GET  /v1/environments                — list records (?state=&closed=)
  GET  /v1/environments/{id}           — one record
  GET  /v1/environments/{id}/history  — audit trail
  POST /v1/environments/{id}/activity  — report traffic/log activity
  POST /v1/environments/{id}/close     — report change-request closed/reopened
  POST /v1/sweep                       — run one staleness sweep now
  GET  /health                         — liveness
  GET  /ready                          — readiness
  GET  /v1/stats                       — counts per state, dispatcher stats

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080
    python -m lifecycle.cli serve --port 8080
"""

import logging
import time
from typing import Any

logger = logging.getLogger("ephemera.api")

_STATUS_CODES = {
    "accepted": 202,
    "coalesced": 202,
}


def create_app(plane: Any = None, config: dict[str, Any] | None = None) -> Any:
    """
    Create and configure the FastAPI application.

    `plane` is built lazily from `config` (or ephemera.yaml) on first
    use when not given, so tests can inject their own.
    """
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.responses import JSONResponse

    from api.models import (
        ActivityReport, ClosureReport, ConflictResponse,
        IntentSubmission, SubmitResponse,
    )
    from lifecycle.intents import SubmitResult
    from lifecycle.runtime import ControlPlane
    from lifecycle.types import EnvironmentState, IntentAction

    app = FastAPI(
        title="Ephemera API",
        version="0.1.0",
        description="Preview environment control plane",
    )

    # ── State ────────────────────────────────────────────────

    _plane: ControlPlane | None = plane

    def get_plane() -> ControlPlane:
        nonlocal _plane
        if _plane is None:
            _plane = ControlPlane.from_config(config)
        return _plane

    async def _body(request: Request) -> dict[str, Any]:
        raw = await request.body()
        if not raw:
            return {}
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=422, detail="body must be valid JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=422, detail="body must be a JSON object")
        return body

    def _submitted(result: SubmitResult, message: str = "") -> JSONResponse:
        if not result.accepted:
            code = 429 if result.reason == "backpressure" else 422
            return JSONResponse(status_code=code, content={
                "environment_id": result.environment_id,
                "status": result.status.value,
                "errors": [result.reason],
            })
        response = SubmitResponse(
            environment_id=result.environment_id,
            id=result.intent_id,
            status=result.status.value,
            message=message or (f"coalesced into {result.coalesced_into}"
                                if result.coalesced_into else "queued"),
        )
        return JSONResponse(status_code=_STATUS_CODES[result.status.value],
                            content=response.to_dict())

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        if _plane is not None and plane is None:
            _plane.stop(wait=False)

    # ── Intents ───────────────────────────────────────────────

    async def _submit_intent(environment_id: str, action: IntentAction, request: Request):
        submission = IntentSubmission.from_body(environment_id, await _body(request))
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        cp = get_plane()
        if submission.submitted_generation is not None:
            current = cp.get(environment_id)
            if current is not None and current.generation > submission.submitted_generation:
                conflict = ConflictResponse(
                    environment_id=environment_id,
                    submitted_generation=submission.submitted_generation,
                    current_generation=current.generation,
                    state=current.state.value,
                )
                return JSONResponse(status_code=409, content=conflict.to_dict())

        result = cp.submit(
            environment_id, action,
            source=submission.source,
            submitted_generation=submission.submitted_generation,
        )
        logger.info("%s %s for %s: %s", action.value, result.intent_id,
                    environment_id, result.status.value)
        return _submitted(result)

    @app.post("/v1/environments/{environment_id}/deploy")
    async def deploy(environment_id: str, request: Request):
        return await _submit_intent(environment_id, IntentAction.DEPLOY, request)

    @app.post("/v1/environments/{environment_id}/restart")
    async def restart(environment_id: str, request: Request):
        return await _submit_intent(environment_id, IntentAction.RESTART, request)

    @app.post("/v1/environments/{environment_id}/cleanup")
    async def cleanup(environment_id: str, request: Request):
        return await _submit_intent(environment_id, IntentAction.CLEANUP, request)

    # ── Observations ──────────────────────────────────────────

    @app.post("/v1/environments/{environment_id}/activity")
    async def report_activity(environment_id: str, request: Request):
        body = await _body(request)
        report = ActivityReport(environment_id=environment_id, at=body.get("at"))
        errors = report.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        return _submitted(get_plane().record_activity(environment_id, at=report.at),
                          message="activity recorded")

    @app.post("/v1/environments/{environment_id}/close")
    async def report_closed(environment_id: str, request: Request):
        body = await _body(request)
        report = ClosureReport(environment_id=environment_id,
                               closed=body.get("closed", True))
        errors = report.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        return _submitted(get_plane().mark_closed(environment_id, closed=report.closed),
                          message="closure recorded")

    # ── Reads ─────────────────────────────────────────────────

    @app.get("/v1/environments")
    async def list_environments(state: str | None = None, closed: bool | None = None):
        if state is not None and state not in {s.value for s in EnvironmentState}:
            return JSONResponse(status_code=422,
                                content={"errors": [f"unknown state: {state}"]})
        envs = get_plane().list(state=state, closed=closed)
        return JSONResponse(content={
            "count": len(envs),
            "environments": [e.to_dict() for e in envs],
        })

    @app.get("/v1/environments/{environment_id}")
    async def get_environment(environment_id: str):
        env = get_plane().get(environment_id)
        if env is None:
            raise HTTPException(status_code=404, detail="Environment not found")
        return JSONResponse(content=env.to_dict())

    @app.get("/v1/environments/{environment_id}/history")
    async def get_history(environment_id: str):
        entries = get_plane().history(environment_id)
        if not entries:
            raise HTTPException(status_code=404, detail="Environment not found")
        return JSONResponse(content={
            "environment_id": environment_id,
            "count": len(entries),
            "history": entries[-500:],
        })

    # ── Sweeper ───────────────────────────────────────────────

    @app.post("/v1/sweep")
    async def sweep():
        proposals = get_plane().sweep()
        return JSONResponse(content={
            "count": len(proposals),
            "proposed": [p.to_dict() for p in proposals],
        })

    # ── Stats ─────────────────────────────────────────────────

    @app.get("/v1/stats")
    async def get_stats():
        return JSONResponse(content=get_plane().stats())

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        try:
            get_plane().registry.stats()
            return JSONResponse(content={"status": "ok"})
        except Exception as e:
            logger.warning("Readiness check failed: %s", e)
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app()
