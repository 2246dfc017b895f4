"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from odonto.inventory import InventoryItem
from odonto.models import Evaluation, PatientContext, PendingTooth
from odonto.reconciliation import ToothResult
from odonto.validation import MAX_TEETH_PER_REQUEST


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "odonto-protocols"


class RecommendResinResponse(BaseModel):
    success: bool = True
    recommendation: dict[str, Any]


class RecommendCementationResponse(BaseModel):
    success: bool = True
    protocol: dict[str, Any]


class SubmitTeethRequest(BaseModel):
    """Teeth selected for protocol generation in one session."""

    patient: PatientContext
    selected_teeth: list[str] = Field(..., min_length=1, max_length=MAX_TEETH_PER_REQUEST)
    tooth_treatments: dict[str, str] = Field(
        default_factory=dict,
        description="Treatment type per tooth; falls back to the pending tooth's AI indication",
    )
    pending_teeth: list[PendingTooth] = Field(
        default_factory=list,
        description="Clinical data to store as pending before processing",
    )


class SubmitTeethResponse(BaseModel):
    status: str
    message: str
    failed_teeth: list[str]
    results: list[ToothResult]
    synced: int = 0


class RegenerateRequest(BaseModel):
    budget: str = Field(..., description="padrão or premium")


class RegenerateResponse(BaseModel):
    budget: str
    aesthetic_level: str
    regenerated: int
    failed_teeth: list[str]
    synced: int


class EvaluationView(BaseModel):
    evaluation: Evaluation
    checklist_completion: float

    @classmethod
    def of(cls, evaluation: Evaluation) -> EvaluationView:
        return cls(evaluation=evaluation, checklist_completion=evaluation.checklist_completion())


class RetryResponse(BaseModel):
    success: bool = True
    evaluation: EvaluationView


class SessionEvaluationsResponse(BaseModel):
    session_id: str
    evaluations: list[EvaluationView]


class InventoryUpdateRequest(BaseModel):
    items: list[InventoryItem] = Field(..., min_length=1, max_length=100)


class InventoryResponse(BaseModel):
    items: list[InventoryItem]
