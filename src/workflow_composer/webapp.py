"""FastAPI web frontend for the workflow composer.

Objective:
    Provide a JSON API for composing, deploying and rolling back tenant
    automation graphs, implemented in :mod:`src.workflow_composer.pipeline`.
    This module keeps business logic inside the pipeline and only handles
    HTTP request parsing, error mapping and response rendering.

High-level call tree:
    - :func:`create_app`:
        - defines routes:
            - ``GET /health`` -> :func:`health`
            - ``POST /api/profiles/{profile_id}/deploy`` -> :func:`deploy_api`
            - ``POST /api/profiles/{profile_id}/rollback`` -> :func:`rollback_api`
            - ``GET /api/profiles/{profile_id}/history`` -> :func:`history_api`
        - installs an exception handler for :class:`PipelineError`
    - :func:`get_pipeline`:
        - returns a :class:`src.workflow_composer.pipeline.DeploymentPipeline`.

Error mapping:
    - deployment already running -> 409
    - missing profile or category -> 404
    - build data problems (no categories, placeholders, labels, inactive
      profile, nothing to roll back) -> 422
    - engine failure or cancellation -> 502

Operational notes:
    - For tests, :func:`get_pipeline` is overridden via
      ``app.dependency_overrides``.
"""

from __future__ import annotations

import time
from functools import lru_cache
from typing import Any, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .errors import (
    CategoryNotFoundError,
    DeploymentFailedError,
    DeploymentInProgressError,
    InjectionError,
    InsufficientInputError,
    PipelineError,
    ProfileInactiveError,
    ProfileNotFoundError,
    RollbackUnavailableError,
)
from .models import DeploymentOutcome
from .pipeline import DeploymentPipeline

_STATUS_BY_ERROR: tuple[tuple[type[PipelineError], int, str], ...] = (
    (DeploymentInProgressError, 409, "deployment_in_progress"),
    (ProfileNotFoundError, 404, "profile_not_found"),
    (CategoryNotFoundError, 404, "category_not_found"),
    (InjectionError, 422, "injection_failed"),
    (InsufficientInputError, 422, "insufficient_input"),
    (ProfileInactiveError, 422, "profile_inactive"),
    (RollbackUnavailableError, 422, "rollback_unavailable"),
    (DeploymentFailedError, 502, "deployment_failed"),
)


def error_status(error: PipelineError) -> tuple[int, str]:
    """Map a pipeline error to an HTTP status code and error code."""
    for error_cls, status_code, code in _STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            return status_code, code
    return 500, "pipeline_error"


@lru_cache(maxsize=1)
def get_pipeline() -> DeploymentPipeline:
    """Return the process-wide :class:`DeploymentPipeline`.

    A single instance is shared so the per-profile deployment locks apply
    across requests. Tests override this dependency with a stub.

    Returns:
        DeploymentPipeline: Pipeline built from environment settings.
    """
    return DeploymentPipeline()


def _outcome_payload(outcome: DeploymentOutcome) -> dict[str, Any]:
    payload = outcome.model_dump(mode="json")
    payload["record"] = outcome.record.model_dump(mode="json", by_alias=True)
    payload["success"] = outcome.success
    return payload


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: FastAPI app.
    """

    app = FastAPI(title="Workflow Composer")

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        status_code, code = error_status(exc)
        body: dict[str, Any] = {"error": code, "message": str(exc)}
        offending = getattr(exc, "offending", None) or getattr(exc, "tokens", None)
        if offending:
            body["offending"] = offending
        return JSONResponse(body, status_code=status_code)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Health check endpoint; performs no external calls."""

        return {"status": "ok"}

    @app.post("/api/profiles/{profile_id}/deploy")
    def deploy_api(
        profile_id: str,
        payload: Optional[dict[str, Any]] = None,
        pipeline: DeploymentPipeline = Depends(get_pipeline),
    ) -> dict[str, Any]:
        """Compose and deploy a profile's graph.

        Expected request body (optional):
            ``{"timeout": 30}`` - overall deadline in seconds.

        Args:
            profile_id: Tenant identifier.
            payload: Optional JSON payload.
            pipeline: Pipeline dependency.

        Returns:
            dict[str, Any]: Outcome payload.
        """

        timeout = (payload or {}).get("timeout")
        deadline = time.monotonic() + float(timeout) if timeout else None

        outcome = pipeline.compose_and_deploy(profile_id, deadline=deadline)
        return _outcome_payload(outcome)

    @app.post("/api/profiles/{profile_id}/rollback")
    def rollback_api(
        profile_id: str,
        pipeline: DeploymentPipeline = Depends(get_pipeline),
    ) -> dict[str, Any]:
        """Roll back a profile after a failed deployment."""

        outcome = pipeline.rollback(profile_id)
        return _outcome_payload(outcome)

    @app.get("/api/profiles/{profile_id}/history")
    def history_api(
        profile_id: str,
        pipeline: DeploymentPipeline = Depends(get_pipeline),
    ) -> dict[str, Any]:
        """Return the profile's deployment history, oldest first."""

        records = pipeline.get_history(profile_id)
        status = pipeline.get_status(profile_id)
        return {
            "profileId": profile_id,
            "status": status.value if status else None,
            "records": [r.model_dump(mode="json", by_alias=True) for r in records],
        }

    return app


app = create_app()
