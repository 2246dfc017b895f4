"""Domain model: treatment types, evaluation lifecycle and protocol records.

AI output arrives as loosely-shaped JSON.  It is coerced into one of the
three protocol records below by :func:`parse_ai_response` the moment it is
received, so no raw dict travels past the AI client boundary.  Every
record accepts extra keys (``extra="allow"``) because the model regularly
adds harmless fields we still want to persist.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from odonto.errors import AIProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


# ── Treatment types ──────────────────────────────────────────────────


class TreatmentType(str, Enum):
    RESINA = "resina"
    PORCELANA = "porcelana"
    COROA = "coroa"
    IMPLANTE = "implante"
    ENDODONTIA = "endodontia"
    ENCAMINHAMENTO = "encaminhamento"
    GENGIVOPLASTIA = "gengivoplastia"
    RECOBRIMENTO_RADICULAR = "recobrimento_radicular"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, value: str | TreatmentType | None) -> TreatmentType:
        """Resolve a stored or user-supplied treatment string.

        Unknown strings map to ``UNRECOGNIZED`` rather than raising; new
        treatment types may appear in stored data before this enum knows
        about them.
        """
        if isinstance(value, TreatmentType):
            return value
        key = (value or "").strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(key)
        except ValueError:
            return _TREATMENT_ALIASES.get(key, cls.UNRECOGNIZED)

    @property
    def uses_ai(self) -> bool:
        return self in (TreatmentType.RESINA, TreatmentType.PORCELANA)

    @property
    def protocol_field(self) -> str:
        if self is TreatmentType.RESINA:
            return "stratification_protocol"
        if self is TreatmentType.PORCELANA:
            return "cementation_protocol"
        return "generic_protocol"


_TREATMENT_ALIASES: dict[str, TreatmentType] = {
    "resin": TreatmentType.RESINA,
    "resin_composite": TreatmentType.RESINA,
    "porcelain": TreatmentType.PORCELANA,
    "ceramic_veneer": TreatmentType.PORCELANA,
    "veneer": TreatmentType.PORCELANA,
    "crown": TreatmentType.COROA,
    "implant": TreatmentType.IMPLANTE,
    "endodontic": TreatmentType.ENDODONTIA,
    "referral": TreatmentType.ENCAMINHAMENTO,
    "gingivoplasty": TreatmentType.GENGIVOPLASTIA,
    "root_coverage": TreatmentType.RECOBRIMENTO_RADICULAR,
}


class EvaluationStatus(str, Enum):
    ANALYZING = "analyzing"
    DRAFT = "draft"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EvaluationStatus.COMPLETED, EvaluationStatus.ERROR)


# ── Protocol records ─────────────────────────────────────────────────

_CONFIDENCE_MAP = {
    "alta": "alta",
    "high": "alta",
    "média": "média",
    "media": "média",
    "medium": "média",
    "moderate": "média",
    "moderada": "média",
    "baixa": "baixa",
    "low": "baixa",
}


def normalize_confidence(value: Any) -> str:
    """Map English or unaccented confidence labels to ``alta/média/baixa``."""
    return _CONFIDENCE_MAP.get(str(value or "").strip().lower(), "média")


class _Record(BaseModel):
    model_config = ConfigDict(extra="allow")


class ProtocolLayer(_Record):
    order: int
    name: str
    resin_brand: str
    shade: str
    thickness: str
    purpose: str
    technique: str


class ProtocolAlternative(_Record):
    resin: str
    shade: str
    technique: str
    tradeoff: str


class PolishingStep(_Record):
    order: int
    tool: str
    grit: str | None = None
    speed: str
    time: str
    tip: str


class FinishingProtocol(_Record):
    contouring: list[PolishingStep] = Field(default_factory=list)
    polishing: list[PolishingStep] = Field(default_factory=list)
    final_glaze: str | None = None
    maintenance_advice: str


class StratificationProtocol(_Record):
    layers: list[ProtocolLayer] = Field(..., min_length=1)
    alternative: ProtocolAlternative
    finishing: FinishingProtocol | None = None
    checklist: list[str] = Field(..., min_length=1)
    alerts: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    justification: str | None = None
    confidence: str = "média"

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, value: Any) -> str:
        return normalize_confidence(value)


class NamedAlternative(_Record):
    name: str
    reason: str


class ResinRecommendation(_Record):
    """Full tool-call payload of a resin recommendation."""

    protocol: StratificationProtocol
    justification: str | None = None
    recommended_resin_name: str | None = None
    is_from_inventory: bool | None = None
    ideal_resin_name: str | None = None
    ideal_reason: str | None = None
    price_range: str | None = None
    budget_compliance: bool | None = None
    inventory_alternatives: list[NamedAlternative] | None = None
    external_alternatives: list[NamedAlternative] | None = None


class CementationStep(_Record):
    order: int
    step: str
    material: str
    technique: str | None = None
    time: str | None = None


class CementationDetails(_Record):
    cement_type: str
    cement_brand: str
    shade: str
    light_curing_time: str
    technique: str


class CementationProtocol(_Record):
    preparation_steps: list[CementationStep] = Field(default_factory=list)
    ceramic_treatment: list[CementationStep] = Field(default_factory=list)
    tooth_treatment: list[CementationStep] = Field(default_factory=list)
    cementation: CementationDetails
    finishing: list[CementationStep] = Field(default_factory=list)
    post_operative: list[str] = Field(default_factory=list)
    checklist: list[str] = Field(default_factory=list)
    alerts: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    confidence: str = "média"

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, value: Any) -> str:
        return normalize_confidence(value)


class GenericProtocol(_Record):
    treatment_type: str
    tooth: str
    ai_reason: str | None = None
    summary: str
    checklist: list[str] = Field(default_factory=list)
    alerts: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


def parse_ai_response(model: type[T], data: Any, fn_name: str) -> T:
    """Validate raw AI output against ``model`` or raise a structural error.

    Every issue is logged with its path so a malformed response can be
    diagnosed from the logs alone; the caller only sees a generic AI error.
    """
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        issues = [
            f"  - {'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']} ({err['type']})"
            for err in exc.errors()
        ]
        logger.error(
            "[%s] AI response failed validation (%d issue(s)):\n%s",
            fn_name, len(issues), "\n".join(issues),
        )
        logger.error("[%s] Raw AI data snapshot: %.1000s", fn_name, repr(data))
        raise AIProviderError(
            f"AI response validation failed in {fn_name}: {len(issues)} issue(s)",
            transient=False,
        ) from exc


# ── Evaluations ──────────────────────────────────────────────────────


class Evaluation(BaseModel):
    """One clinical assessment of a single tooth."""

    id: str
    user_id: str
    session_id: str
    patient_name: str | None = None
    patient_age: str | None = None
    tooth: str
    region: str | None = None
    cavity_class: str | None = None
    restoration_size: str | None = None
    substrate: str | None = None
    depth: str | None = None
    substrate_condition: str | None = None
    enamel_condition: str | None = None
    tooth_color: str | None = None
    aesthetic_level: str | None = None
    aesthetic_goals: str | None = None
    budget: str | None = None
    longevity_expectation: str | None = None
    bruxism: bool = False
    stratification_needed: bool = True
    clinical_notes: str | None = None
    treatment_type: str = TreatmentType.RESINA.value
    ai_indication_reason: str | None = None
    status: EvaluationStatus = EvaluationStatus.ANALYZING
    stratification_protocol: dict[str, Any] | None = None
    cementation_protocol: dict[str, Any] | None = None
    generic_protocol: dict[str, Any] | None = None
    recommendation_text: str | None = None
    checklist_progress: list[int] = Field(default_factory=list)
    created_at: float | None = None
    updated_at: float | None = None

    @property
    def treatment(self) -> TreatmentType:
        return TreatmentType.parse(self.treatment_type)

    @property
    def protocol(self) -> dict[str, Any] | None:
        """The protocol payload selected by the treatment type."""
        return getattr(self, self.treatment.protocol_field)

    def checklist_completion(self) -> float:
        """Fraction of checklist items done.

        Progress may list more indices than the checklist has items (the
        checklist can shrink after a regenerate); that counts as complete.
        """
        protocol = self.protocol or {}
        checklist = protocol.get("checklist") or []
        if not checklist:
            return 0.0
        done = len(set(self.checklist_progress))
        return min(done, len(checklist)) / len(checklist)


class PendingTooth(BaseModel):
    """Clinical data detected for a tooth that has not been submitted yet."""

    tooth: str
    tooth_region: str | None = None
    cavity_class: str | None = None
    restoration_size: str | None = None
    substrate: str | None = None
    substrate_condition: str | None = None
    enamel_condition: str | None = None
    depth: str | None = None
    treatment_indication: str | None = None
    indication_reason: str | None = None


class PatientContext(BaseModel):
    """Patient-wide answers shared by every tooth in a session."""

    name: str | None = None
    age: str
    vita_shade: str
    bruxism: bool = False
    aesthetic_level: str = "funcional"
    budget: str = "padrão"
    longevity_expectation: str = "médio"
    aesthetic_goals: str | None = None


# ── Protocol fingerprint ─────────────────────────────────────────────


def protocol_fingerprint(evaluation: Evaluation) -> str:
    """Stable string identifying the clinically relevant protocol content.

    Two evaluations with the same fingerprint would render the same plan;
    the group sync uses it to skip no-op writes.
    """
    treatment = evaluation.treatment
    protocol = evaluation.protocol or {}

    if treatment is TreatmentType.RESINA:
        layers = sorted(protocol.get("layers") or [], key=lambda layer: layer.get("order", 0))
        layer_key = "|".join(f"{layer.get('resin_brand', '')}:{layer.get('shade', '')}" for layer in layers)
        return f"resina::{layer_key}"

    if treatment is TreatmentType.PORCELANA:
        cementation = protocol.get("cementation") or {}
        return f"porcelana::{cementation.get('cement_type', '')}::{cementation.get('cement_brand', '')}"

    return evaluation.treatment_type
