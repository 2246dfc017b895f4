"""Structural validation of inbound request payloads.

Every validator is pure and synchronous and never raises on bad input.  It
returns a :class:`ValidationResult` whose ``error`` is the Portuguese
message shown to the dentist.  The first failing field wins, in the
order fields are checked.

Ceramic type is the one field treated as a safety gate rather than a
convenience: the resolved type selects the etching chemistry applied by
:mod:`odonto.safety`, so anything outside the closed set is rejected.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any

from pydantic import BaseModel, Field

# ── Patterns and closed enumerations ─────────────────────────────────

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
TOOTH_RE = re.compile(r"^[1-4][1-8]$")
AGE_RE = re.compile(r"^\d+$")

VITA_SHADES = frozenset({
    "A1", "A2", "A3", "A3.5", "A4",
    "B1", "B2", "B3", "B4",
    "C1", "C2", "C3", "C4",
    "D2", "D3", "D4",
    "BL1", "BL2", "BL3", "BL4",
    "OM1", "OM2", "OM3",
})

REGIONS = ("anterior-superior", "anterior-inferior", "posterior-superior", "posterior-inferior")
CAVITY_CLASSES = (
    "Classe I", "Classe II", "Classe III", "Classe IV", "Classe V", "Classe VI",
    "Faceta Direta", "Recontorno Estético", "Fechamento de Diastema",
    "Reparo de Restauração", "Lente de Contato",
)
RESTORATION_SIZES = ("Pequena", "Média", "Grande", "Extensa")
SUBSTRATES = ("Esmalte", "Dentina", "Esmalte e Dentina", "Dentina profunda")
AESTHETIC_LEVELS = ("funcional", "estético", "baixo", "médio", "alto", "muito alto")
LONGEVITY_EXPECTATIONS = ("curto", "médio", "longo")
BUDGETS = ("padrão", "premium", "econômico", "moderado")

MAX_TEETH_PER_REQUEST = 32

# ── Ceramic types ────────────────────────────────────────────────────

CERAMIC_TYPES: dict[str, str] = {
    "lithium_disilicate": "Dissilicato de lítio",
    "leucite": "Cerâmica reforçada por leucita",
    "feldspathic": "Cerâmica feldspática",
    "zirconia": "Zircônia",
    "reinforced_zirconia": "Silicato de lítio reforçado por zircônia",
    "cad_cam_resin": "Resina CAD/CAM",
}

# keys are already lowercased and accent-stripped
_CERAMIC_ALIASES: dict[str, str] = {
    "dissilicato de litio": "lithium_disilicate",
    "disilicato de litio": "lithium_disilicate",
    "lithium disilicate": "lithium_disilicate",
    "e.max": "lithium_disilicate",
    "emax": "lithium_disilicate",
    "e max": "lithium_disilicate",
    "ips e.max": "lithium_disilicate",
    "ips emax": "lithium_disilicate",
    "leucita": "leucite",
    "ceramica reforcada por leucita": "leucite",
    "empress": "leucite",
    "ips empress": "leucite",
    "ips empress cad": "leucite",
    "feldspatica": "feldspathic",
    "ceramica feldspatica": "feldspathic",
    "porcelana feldspatica": "feldspathic",
    "feldspathic porcelain": "feldspathic",
    "zirconia": "zirconia",
    "zirconio": "zirconia",
    "zirconia translucida": "zirconia",
    "silicato de litio reforcado por zirconia": "reinforced_zirconia",
    "zirconia reinforced lithium silicate": "reinforced_zirconia",
    "zls": "reinforced_zirconia",
    "celtra": "reinforced_zirconia",
    "celtra duo": "reinforced_zirconia",
    "suprinity": "reinforced_zirconia",
    "vita suprinity": "reinforced_zirconia",
    "resina cad/cam": "cad_cam_resin",
    "resina cad cam": "cad_cam_resin",
    "cad/cam resin": "cad_cam_resin",
    "ceramica hibrida": "cad_cam_resin",
    "cerasmart": "cad_cam_resin",
    "lava ultimate": "cad_cam_resin",
    "vita enamic": "cad_cam_resin",
    "enamic": "cad_cam_resin",
}

DEFAULT_CERAMIC_TYPE = "lithium_disilicate"


def _fold(value: str) -> str:
    """Lowercase, strip accents (NFD) and collapse whitespace."""
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.split())


def normalize_ceramic_type(value: Any) -> str | None:
    """Resolve a ceramic type label or alias to its canonical key."""
    if not isinstance(value, str) or not value.strip():
        return None
    folded = _fold(value)
    underscored = folded.replace(" ", "_").replace("-", "_")
    if underscored in CERAMIC_TYPES:
        return underscored
    if folded in _CERAMIC_ALIASES:
        return _CERAMIC_ALIASES[folded]
    for key, label in CERAMIC_TYPES.items():
        if folded == _fold(label):
            return key
    return None


# ── Primitive checks ─────────────────────────────────────────────────


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value))


def is_valid_tooth(value: Any) -> bool:
    """FDI two-digit designator: quadrant 1-4, tooth 1-8."""
    return isinstance(value, str) and bool(TOOTH_RE.match(value))


_CONTRALATERAL_QUADRANT = {"1": "2", "2": "1", "3": "4", "4": "3"}


def contralateral_tooth(tooth: str) -> str | None:
    """Mirror tooth across the midline (11 -> 21, 36 -> 46)."""
    if not is_valid_tooth(tooth):
        return None
    return _CONTRALATERAL_QUADRANT[tooth[0]] + tooth[1]


_VITA_PREFIX = re.compile(r"^VITA\s*", re.IGNORECASE)
_VITA_WORD_SUFFIX = re.compile(r"(DENTINA|ESMALTE|BODY|INCISAL|OPACO)$")
_VITA_LETTER_SUFFIX = re.compile(r"(?<=\d)[DEBIO]$")


def normalize_vita_shade(value: str) -> str:
    """Reduce a shade label to its base VITA code.

    Strips the ``VITA`` prefix, whitespace, and a trailing dentin / enamel /
    body / incisal / opaque suffix, then uppercases.  Applying it twice
    gives the same result as applying it once.
    """
    shade = value.strip().upper()
    while True:
        previous = shade
        shade = _VITA_PREFIX.sub("", shade)
        shade = re.sub(r"\s+", "", shade)
        shade = _VITA_WORD_SUFFIX.sub("", shade)
        shade = _VITA_LETTER_SUFFIX.sub("", shade)
        if shade == previous:
            return shade


def is_valid_vita_shade(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    raw = re.sub(r"\s+", "", value.strip().upper())
    return raw in VITA_SHADES or normalize_vita_shade(value) in VITA_SHADES


def _is_str(value: Any, max_length: int = 500) -> bool:
    return isinstance(value, str) and len(value) <= max_length


def _is_enum(value: Any, allowed: tuple[str, ...]) -> bool:
    return isinstance(value, str) and value in allowed


def _optional_str(obj: dict[str, Any], key: str, max_length: int) -> bool:
    value = obj.get(key)
    return value is None or _is_str(value, max_length)


# ── Results and validated requests ───────────────────────────────────


class ValidationResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any) -> ValidationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> ValidationResult:
        return cls(success=False, error=error)


class ResinRequest(BaseModel):
    evaluation_id: str
    user_id: str
    patient_age: str
    tooth: str
    region: str
    cavity_class: str
    restoration_size: str
    substrate: str
    aesthetic_level: str
    tooth_color: str
    stratification_needed: bool
    bruxism: bool
    longevity_expectation: str
    budget: str
    depth: str | None = None
    substrate_condition: str | None = None
    enamel_condition: str | None = None
    clinical_notes: str | None = None
    aesthetic_goals: str | None = None


class DSDContext(BaseModel):
    current_issue: str = ""
    proposed_change: str = ""
    observations: list[str] = Field(default_factory=list)


class CementationRequest(BaseModel):
    evaluation_id: str
    teeth: list[str]
    shade: str
    ceramic_type: str = DEFAULT_CERAMIC_TYPE
    substrate: str
    substrate_condition: str | None = None
    aesthetic_goals: str | None = None
    dsd_context: DSDContext | None = None

    @property
    def ceramic_label(self) -> str:
        return CERAMIC_TYPES[self.ceramic_type]


class AnalyzePhotosRequest(BaseModel):
    evaluation_id: str
    photo_frontal: str | None = None
    photo_45: str | None = None
    photo_face: str | None = None


# ── Request validators ───────────────────────────────────────────────


def validate_evaluation_data(data: Any) -> ValidationResult:
    """Validate a resin recommendation request."""
    if not isinstance(data, dict):
        return ValidationResult.fail("Dados inválidos")
    obj = data

    checks: list[tuple[bool, str]] = [
        (is_uuid(obj.get("evaluationId")), "ID de avaliação inválido"),
        (is_uuid(obj.get("userId")), "ID de usuário inválido"),
        (
            _is_str(obj.get("patientAge"), 10) and bool(AGE_RE.match(obj["patientAge"])),
            "Idade do paciente inválida",
        ),
        (is_valid_tooth(obj.get("tooth")), "Número do dente inválido"),
        (_is_enum(obj.get("region"), REGIONS), "Região inválida"),
        (_is_enum(obj.get("cavityClass"), CAVITY_CLASSES), "Classe de cavidade inválida"),
        (_is_enum(obj.get("restorationSize"), RESTORATION_SIZES), "Tamanho de restauração inválido"),
        (_is_enum(obj.get("substrate"), SUBSTRATES), "Substrato inválido"),
        (_is_enum(obj.get("aestheticLevel"), AESTHETIC_LEVELS), "Nível estético inválido"),
        (is_valid_vita_shade(obj.get("toothColor")), "Cor VITA inválida"),
        (isinstance(obj.get("stratificationNeeded"), bool), "Campo estratificação inválido"),
        (isinstance(obj.get("bruxism"), bool), "Campo bruxismo inválido"),
        (_is_enum(obj.get("longevityExpectation"), LONGEVITY_EXPECTATIONS), "Expectativa de longevidade inválida"),
        (_is_enum(obj.get("budget"), BUDGETS), "Orçamento inválido"),
        (_optional_str(obj, "depth", 50), "Profundidade inválida"),
        (_optional_str(obj, "substrateCondition", 50), "Condição do substrato inválida"),
        (_optional_str(obj, "enamelCondition", 50), "Condição do esmalte inválida"),
        (_optional_str(obj, "clinicalNotes", 2000), "Notas clínicas muito longas"),
    ]
    for passed, message in checks:
        if not passed:
            return ValidationResult.fail(message)

    goals = obj.get("aestheticGoals")
    if goals not in (None, ""):
        if not isinstance(goals, str):
            return ValidationResult.fail("aestheticGoals deve ser uma string")
        if len(goals) > 1000:
            return ValidationResult.fail("aestheticGoals muito longo (máx 1000 caracteres)")

    return ValidationResult.ok(
        ResinRequest(
            evaluation_id=obj["evaluationId"],
            user_id=obj["userId"],
            patient_age=obj["patientAge"],
            tooth=obj["tooth"],
            region=obj["region"],
            cavity_class=obj["cavityClass"],
            restoration_size=obj["restorationSize"],
            substrate=obj["substrate"],
            aesthetic_level=obj["aestheticLevel"],
            tooth_color=obj["toothColor"],
            stratification_needed=obj["stratificationNeeded"],
            bruxism=obj["bruxism"],
            longevity_expectation=obj["longevityExpectation"],
            budget=obj["budget"],
            depth=obj.get("depth"),
            substrate_condition=obj.get("substrateCondition"),
            enamel_condition=obj.get("enamelCondition"),
            clinical_notes=obj.get("clinicalNotes"),
            aesthetic_goals=goals or None,
        )
    )


def validate_cementation_request(data: Any) -> ValidationResult:
    """Validate a cementation protocol request."""
    if not isinstance(data, dict):
        return ValidationResult.fail("Dados inválidos")
    obj = data

    if not is_uuid(obj.get("evaluationId")):
        return ValidationResult.fail("ID da avaliação inválido")

    teeth = obj.get("teeth")
    if not isinstance(teeth, list) or not teeth:
        return ValidationResult.fail("Dentes não especificados")
    if len(teeth) > MAX_TEETH_PER_REQUEST:
        return ValidationResult.fail(f"Máximo de {MAX_TEETH_PER_REQUEST} dentes por solicitação")
    for tooth in teeth:
        if not is_valid_tooth(tooth):
            return ValidationResult.fail(f"Número de dente inválido: {str(tooth)[:10]}")

    shade = obj.get("shade")
    if not shade or not _is_str(shade, 50):
        return ValidationResult.fail("Cor não especificada")

    substrate = obj.get("substrate")
    if not substrate or not _is_str(substrate, 100):
        return ValidationResult.fail("Substrato não especificado")

    raw_ceramic = obj.get("ceramicType")
    if raw_ceramic in (None, ""):
        ceramic_type = DEFAULT_CERAMIC_TYPE
    else:
        ceramic_type = normalize_ceramic_type(raw_ceramic)
        if ceramic_type is None:
            allowed = ", ".join(CERAMIC_TYPES.values())
            return ValidationResult.fail(
                f"Tipo de cerâmica inválido: {str(raw_ceramic)[:50]}. Tipos aceitos: {allowed}"
            )

    if not _optional_str(obj, "substrateCondition", 100):
        return ValidationResult.fail("Condição do substrato inválida")

    goals = obj.get("aestheticGoals")
    if goals not in (None, "") and not _is_str(goals, 1000):
        return ValidationResult.fail("aestheticGoals muito longo (máx 1000 caracteres)")

    dsd_context = None
    raw_dsd = obj.get("dsdContext")
    if raw_dsd is not None:
        if not isinstance(raw_dsd, dict):
            return ValidationResult.fail("Contexto DSD inválido")
        observations = raw_dsd.get("observations") or []
        if not isinstance(observations, list) or not all(isinstance(o, str) for o in observations):
            return ValidationResult.fail("Contexto DSD inválido")
        dsd_context = DSDContext(
            current_issue=str(raw_dsd.get("currentIssue") or "")[:1000],
            proposed_change=str(raw_dsd.get("proposedChange") or "")[:1000],
            observations=observations,
        )

    return ValidationResult.ok(
        CementationRequest(
            evaluation_id=obj["evaluationId"],
            teeth=teeth,
            shade=shade,
            ceramic_type=ceramic_type,
            substrate=substrate,
            substrate_condition=obj.get("substrateCondition"),
            aesthetic_goals=goals or None,
            dsd_context=dsd_context,
        )
    )


def validate_analyze_photos_data(data: Any) -> ValidationResult:
    """Validate a photo-analysis request (storage paths only, no upload)."""
    if not isinstance(data, dict):
        return ValidationResult.fail("Dados inválidos")
    if not is_uuid(data.get("evaluationId")):
        return ValidationResult.fail("ID de avaliação inválido")
    for key in ("photoFrontal", "photo45", "photoFace"):
        if not _optional_str(data, key, 500):
            return ValidationResult.fail("Caminho de foto inválido")
    return ValidationResult.ok(
        AnalyzePhotosRequest(
            evaluation_id=data["evaluationId"],
            photo_frontal=data.get("photoFrontal"),
            photo_45=data.get("photo45"),
            photo_face=data.get("photoFace"),
        )
    )
