"""FastAPI route definitions for the protocol API.

Identity comes from the ``X-User-Id`` header, set by the gateway after
authentication.  Domain errors (:class:`~odonto.errors.OdontoError`)
propagate to the handler registered in ``server.py``; anything else is
logged here and answered with a generic 500.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Header, HTTPException, Request

from odonto.api.schemas import (
    EvaluationView,
    HealthResponse,
    InventoryResponse,
    InventoryUpdateRequest,
    RecommendCementationResponse,
    RecommendResinResponse,
    RegenerateRequest,
    RegenerateResponse,
    RetryResponse,
    SessionEvaluationsResponse,
    SubmitTeethRequest,
    SubmitTeethResponse,
)
from odonto.container import ServiceContainer
from odonto.errors import AuthorizationError, NotFoundError, OdontoError, RequestValidationError
from odonto.validation import is_uuid, is_valid_tooth

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_services(request: Request) -> ServiceContainer:
    """Retrieve the service container built during the FastAPI lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return services


def _require_user(x_user_id: str | None) -> str:
    if not is_uuid(x_user_id):
        raise AuthorizationError()
    return x_user_id


def _require_uuid(value: str, message: str) -> str:
    if not is_uuid(value):
        raise RequestValidationError(message)
    return value


def _internal_error(request_id: str, action: str) -> HTTPException:
    # Full traceback stays server-side
    logger.exception("[%s] Error processing %s", request_id, action)
    return HTTPException(status_code=500, detail="Erro interno. Tente novamente.")


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/recommend-resin", response_model=RecommendResinResponse)
async def recommend_resin(
    http_request: Request,
    payload: Any = Body(...),
    x_user_id: str | None = Header(default=None),
):
    """Generate, correct and store a resin stratification protocol."""
    services = _get_services(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    user_id = _require_user(x_user_id)

    try:
        recommendation = await services.recommendations.recommend_resin(payload, user_id, request_id)
    except OdontoError:
        raise
    except Exception as e:
        raise _internal_error(request_id, "recommend-resin") from e
    return RecommendResinResponse(recommendation=recommendation.model_dump(mode="json"))


@router.post("/recommend-cementation", response_model=RecommendCementationResponse)
async def recommend_cementation(
    http_request: Request,
    payload: Any = Body(...),
    x_user_id: str | None = Header(default=None),
):
    """Generate, correct and store a ceramic cementation protocol."""
    services = _get_services(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    user_id = _require_user(x_user_id)

    try:
        protocol = await services.recommendations.recommend_cementation(payload, user_id, request_id)
    except OdontoError:
        raise
    except Exception as e:
        raise _internal_error(request_id, "recommend-cementation") from e
    return RecommendCementationResponse(protocol=protocol.model_dump(mode="json"))


@router.post("/sessions/{session_id}/teeth", response_model=SubmitTeethResponse)
async def submit_teeth(
    session_id: str,
    body: SubmitTeethRequest,
    http_request: Request,
    x_user_id: str | None = Header(default=None),
):
    """Create one evaluation per selected tooth and generate its protocol.

    A partial failure is still a 200: the body lists the teeth that
    failed, which stay pending for resubmission.
    """
    services = _get_services(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    user_id = _require_user(x_user_id)
    _require_uuid(session_id, "ID de sessão inválido")
    for tooth in body.selected_teeth:
        if not is_valid_tooth(tooth):
            raise RequestValidationError(f"Número de dente inválido: {tooth[:10]}")

    try:
        if body.pending_teeth:
            await services.evaluations.add_pending_teeth(session_id, user_id, body.pending_teeth)
        pending = await services.evaluations.list_pending_teeth(session_id, user_id)

        outcome = await services.reconciler(user_id, request_id).submit_teeth(
            session_id,
            user_id,
            body.patient,
            body.selected_teeth,
            body.tooth_treatments,
            pending,
        )
    except OdontoError:
        raise
    except Exception as e:
        raise _internal_error(request_id, "submit teeth") from e

    return SubmitTeethResponse(
        status=outcome.status.value,
        message=outcome.message,
        failed_teeth=outcome.failed_teeth,
        results=outcome.results,
        synced=outcome.synced,
    )


@router.post("/evaluations/{evaluation_id}/retry", response_model=RetryResponse)
async def retry_evaluation(
    evaluation_id: str,
    http_request: Request,
    x_user_id: str | None = Header(default=None),
):
    """Re-run protocol generation for one evaluation."""
    services = _get_services(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    user_id = _require_user(x_user_id)
    _require_uuid(evaluation_id, "ID de avaliação inválido")

    try:
        evaluation = await services.reconciler(user_id, request_id).retry_evaluation(evaluation_id, user_id)
    except OdontoError:
        raise
    except Exception as e:
        raise _internal_error(request_id, "retry evaluation") from e
    return RetryResponse(evaluation=EvaluationView.of(evaluation))


@router.post("/sessions/{session_id}/regenerate", response_model=RegenerateResponse)
async def regenerate_with_budget(
    session_id: str,
    body: RegenerateRequest,
    http_request: Request,
    x_user_id: str | None = Header(default=None),
):
    """Switch the session budget and regenerate every AI-backed protocol."""
    services = _get_services(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    user_id = _require_user(x_user_id)
    _require_uuid(session_id, "ID de sessão inválido")

    try:
        outcome = await services.reconciler(user_id, request_id).regenerate_with_budget(
            session_id, user_id, body.budget
        )
    except OdontoError:
        raise
    except Exception as e:
        raise _internal_error(request_id, "regenerate") from e
    return RegenerateResponse(**outcome.model_dump())


@router.get("/sessions/{session_id}/evaluations", response_model=SessionEvaluationsResponse)
async def list_session_evaluations(
    session_id: str,
    http_request: Request,
    x_user_id: str | None = Header(default=None),
):
    services = _get_services(http_request)
    user_id = _require_user(x_user_id)
    _require_uuid(session_id, "ID de sessão inválido")

    evaluations = await services.evaluations.list_by_session(session_id, user_id)
    return SessionEvaluationsResponse(
        session_id=session_id,
        evaluations=[EvaluationView.of(e) for e in evaluations],
    )


@router.get("/inventory", response_model=InventoryResponse)
async def list_inventory(http_request: Request, x_user_id: str | None = Header(default=None)):
    """Resin lines the dentist keeps in stock."""
    services = _get_services(http_request)
    user_id = _require_user(x_user_id)
    return InventoryResponse(items=await services.inventory.list_for_user(user_id))


@router.post("/inventory", response_model=InventoryResponse)
async def add_inventory(
    body: InventoryUpdateRequest,
    http_request: Request,
    x_user_id: str | None = Header(default=None),
):
    services = _get_services(http_request)
    user_id = _require_user(x_user_id)
    await services.inventory.add_items(user_id, body.items)
    return InventoryResponse(items=await services.inventory.list_for_user(user_id))


@router.delete("/inventory/{product_line}", response_model=InventoryResponse)
async def remove_inventory(
    product_line: str,
    http_request: Request,
    x_user_id: str | None = Header(default=None),
):
    services = _get_services(http_request)
    user_id = _require_user(x_user_id)
    if not await services.inventory.remove_item(user_id, product_line):
        raise NotFoundError("Resina não encontrada no inventário")
    return InventoryResponse(items=await services.inventory.list_for_user(user_id))
