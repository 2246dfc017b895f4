"""Clinical safety post-processor for AI-generated protocols.

Deterministic corrections applied after the AI response has passed
schema validation and before it is persisted.  These rules run on every
protocol, however plausible the AI output looks:

HF etch correction (cementation)
    Lithium disilicate must be etched with 5% hydrofluoric acid.  Any
    10% mention in a ceramic-treatment step is rewritten to 5%, matching
    checklist lines are fixed too, and a fixed warning is appended once.

Shade normalization (resin)
    Each layer's shade is checked against the catalog rows of its product
    line.  Unknown shades are replaced (type filter, then base-code
    match, then first candidate).  Enamel layers on lines that have named
    enamel shades are moved off a universal shade; that one is an
    optimization and always produces an alert.  Every substitution is
    propagated to the checklist with whole-token matching.

Alert merge
    Post-processor alerts that overlap an existing BL / bleach alert are
    dropped so the dentist does not see the same concern twice.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, ConfigDict

from odonto.catalog import CatalogShade, ShadeCatalog
from odonto.models import (
    CementationProtocol,
    GenericProtocol,
    ResinRecommendation,
    StratificationProtocol,
)
from odonto.validation import normalize_ceramic_type

logger = logging.getLogger(__name__)


class SafetyContext(BaseModel):
    """Request facts the rules need besides the protocol itself."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    ceramic_type: str | None = None
    aesthetic_goals: str | None = None
    catalog: ShadeCatalog | None = None


# ── HF etch correction ───────────────────────────────────────────────

HF_SAFETY_WARNING = (
    "Dissilicato de lítio: condicionar com ácido fluorídrico 5% por 20s. "
    "A concentração de 10% indicada foi corrigida para 5% (10% causa "
    "sobrecondicionamento e enfraquece a cerâmica)."
)

_HF_MENTION = re.compile(r"fluor[ií]drico|hydrofluoric|\bHF\b", re.IGNORECASE)
_TEN_PERCENT = re.compile(r"\b10\s*%")


def _fix_concentration(text: str | None) -> str | None:
    if not text:
        return text
    return _TEN_PERCENT.sub("5%", text)


def correct_hf_concentration(protocol: CementationProtocol, ceramic_type: str | None) -> bool:
    """Rewrite 10% HF etching to 5% for lithium disilicate.  Returns True if changed."""
    if normalize_ceramic_type(ceramic_type) != "lithium_disilicate":
        return False

    corrected = False
    for step in protocol.ceramic_treatment:
        text = " ".join(filter(None, (step.step, step.material, step.technique)))
        if not (_HF_MENTION.search(text) and _TEN_PERCENT.search(text)):
            continue
        step.step = _fix_concentration(step.step)
        step.material = _fix_concentration(step.material)
        step.technique = _fix_concentration(step.technique)
        corrected = True

    if not corrected:
        return False

    protocol.checklist = [
        _fix_concentration(item) if _HF_MENTION.search(item) else item
        for item in protocol.checklist
    ]
    if HF_SAFETY_WARNING not in protocol.warnings:
        protocol.warnings.append(HF_SAFETY_WARNING)
    logger.warning("HF safety net: rewrote 10%% hydrofluoric etch to 5%% for lithium disilicate")
    return True


# ── Shade normalization ──────────────────────────────────────────────

_BRAND_RE = re.compile(r"^(.+?)\s*-\s*(.+)$")

# named enamel variants, most preferred first
ENAMEL_PREFERENCE = ("WE", "CE", "JE", "CT", "Trans")
_NON_UNIVERSAL_MARKERS = ("WE", "CE", "JE", "CT", "TRANS", "IT", "TN", "OPAL", "INC")
_WHITENING_WISHES = ("hollywood", "bl1", "bl2", "bl3", "intenso", "notável")


def product_line_of(resin_brand: str | None) -> str | None:
    """``"3M - Filtek Z350 XT"`` -> ``"Filtek Z350 XT"``."""
    if not resin_brand:
        return None
    match = _BRAND_RE.match(resin_brand)
    return match.group(2).strip() if match else resin_brand.strip()


def _layer_type_filter(layer_name: str) -> str:
    if "opaco" in layer_name or "mascaramento" in layer_name:
        return "opaco"
    if "dentina" in layer_name or "body" in layer_name:
        return "universal"
    if _is_enamel_layer(layer_name):
        return "esmalte"
    return ""


def _is_enamel_layer(layer_name: str) -> bool:
    return "esmalte" in layer_name or "enamel" in layer_name


def _base_shade(shade: str) -> str:
    return re.sub(r"[DE]$", "", re.sub(r"^O", "", shade))


def _closest_shade(original: str, rows: list[CatalogShade], type_filter: str) -> CatalogShade | None:
    if type_filter:
        candidates = [r for r in rows if type_filter in r.type.lower()][:5]
    else:
        candidates = rows[:5]
    if not candidates:
        return None
    base = _base_shade(original)
    return next((c for c in candidates if base and base in c.shade), candidates[0])


def _record(replacements: dict[str, str], original: str, replacement: str) -> None:
    for key, value in replacements.items():
        if value == original:
            replacements[key] = replacement
    replacements[original] = replacement


def replace_shade_tokens(text: str, replacements: dict[str, str]) -> str:
    """Apply every replacement at once, whole tokens only.

    ``Z9`` is rewritten but ``DZ9E`` is not.
    """
    if not replacements:
        return text
    keys = sorted(replacements, key=len, reverse=True)
    pattern = re.compile(r"\b(" + "|".join(re.escape(k) for k in keys) + r")\b")
    return pattern.sub(lambda m: replacements[m.group(1)], text)


def normalize_layer_shades(
    protocol: StratificationProtocol,
    catalog: ShadeCatalog,
    aesthetic_goals: str | None = None,
) -> list[str]:
    """Validate layer shades against the catalog.

    Mutates the layers and checklist of ``protocol`` and returns the alerts
    produced; the caller merges them into ``protocol.alerts``.
    """
    alerts: list[str] = []
    replacements: dict[str, str] = {}
    goals = (aesthetic_goals or "").lower()
    wants_whitening = any(wish in goals for wish in _WHITENING_WISHES)
    line_without_bl: str | None = None

    for layer in protocol.layers:
        product_line = product_line_of(layer.resin_brand)
        if not product_line or not layer.shade:
            continue
        is_z350 = "z350" in product_line.lower()

        if is_z350 and layer.shade == "WT":
            _record(replacements, "WT", "CT")
            layer.shade = "CT"

        rows = catalog.rows_for_line(product_line)
        if not rows:
            logger.warning("No catalog rows for product line %s, keeping shade %s", product_line, layer.shade)
            continue

        layer_name = (layer.name or "").lower()
        is_enamel = _is_enamel_layer(layer_name)

        if "crista" in layer_name or "proxima" in layer_name:
            line_lower = product_line.lower()
            allowed = (
                "harmonize" in line_lower
                or "empress" in line_lower
                or (is_z350 and layer.shade == "WE")
            )
            if not allowed:
                alerts.append(
                    f"Cristas Proximais: {product_line} ({layer.shade}) não é ideal. "
                    "Recomendado: XLE (Harmonize) ou BL-L (Empress Direct)."
                )

        if is_z350 and re.fullmatch(r"BL\d?", layer.shade, re.IGNORECASE):
            non_bl = [r for r in rows if not r.shade.upper().startswith("BL")]
            if is_enamel:
                fallback = next((r for r in non_bl if r.shade == "A1E"), None) or next(
                    (r for r in non_bl if "esmalte" in r.type.lower()), None
                )
            else:
                fallback = next((r for r in non_bl if r.shade == "A1"), None) or (non_bl[0] if non_bl else None)
            if fallback is not None:
                alerts.append(
                    f"Cor {layer.shade} NÃO EXISTE na linha Filtek Z350 XT. Substituída por {fallback.shade}."
                )
                _record(replacements, layer.shade, fallback.shade)
                layer.shade = fallback.shade

        if not any(r.shade == layer.shade for r in rows):
            closest = _closest_shade(layer.shade, rows, _layer_type_filter(layer_name))
            if closest is None:
                logger.warning("No valid shades found for %s, keeping original: %s", product_line, layer.shade)
            else:
                alerts.append(
                    f"Cor {layer.shade} substituída por {closest.shade}: a cor original não está "
                    f"disponível na linha {product_line}."
                )
                logger.warning("Shade validation: %s -> %s for %s", layer.shade, closest.shade, product_line)
                _record(replacements, layer.shade, closest.shade)
                layer.shade = closest.shade

        if is_enamel:
            enamel_rows = [r for r in rows if "esmalte" in r.type.lower()]
            named = [r for r in enamel_rows if any(p.upper() in r.shade.upper() for p in ENAMEL_PREFERENCE)]
            is_universal = not any(m in layer.shade.upper() for m in _NON_UNIVERSAL_MARKERS)
            if named and is_universal:
                best = next(
                    r for pref in ENAMEL_PREFERENCE for r in named if pref.upper() in r.shade.upper()
                )
                alerts.append(
                    f"Camada de esmalte otimizada: {layer.shade} → {best.shade} "
                    "para máxima translucidez incisal."
                )
                logger.info("Enamel optimization: %s -> %s for %s", layer.shade, best.shade, product_line)
                _record(replacements, layer.shade, best.shade)
                layer.shade = best.shade

        if wants_whitening and line_without_bl is None:
            if not any(re.search(r"bl|bianco", r.shade, re.IGNORECASE) for r in rows):
                line_without_bl = product_line

    if line_without_bl:
        alerts.append(
            f"A linha {line_without_bl} não possui cores BL (Bleach). Para atingir nível de "
            "clareamento Hollywood, considere linhas como Palfique LX5, Forma (Ultradent) ou "
            "Estelite Bianco que oferecem cores BL."
        )

    if replacements:
        logger.info("Applying %d shade replacements to checklist: %s", len(replacements), replacements)
        protocol.checklist = [replace_shade_tokens(item, replacements) for item in protocol.checklist]

    return alerts


# ── Alert merge ──────────────────────────────────────────────────────

_BLEACH_TOKEN = re.compile(r"\bBL\d?\b|bleach|clareamento", re.IGNORECASE)


def merge_alerts(existing: list[str], new: list[str]) -> list[str]:
    """Append ``new`` alerts, dropping those that repeat a bleach concern."""
    existing_mentions_bleach = any(_BLEACH_TOKEN.search(a) for a in existing)
    merged = list(existing)
    for alert in new:
        if existing_mentions_bleach and _BLEACH_TOKEN.search(alert):
            continue
        if alert not in merged:
            merged.append(alert)
    return merged


# ── Entry point ──────────────────────────────────────────────────────


def apply_safety_rules(protocol, context: SafetyContext):
    """Apply every rule relevant to ``protocol``'s type and return it."""
    match protocol:
        case ResinRecommendation():
            apply_safety_rules(protocol.protocol, context)
        case StratificationProtocol():
            if context.catalog is not None:
                alerts = normalize_layer_shades(protocol, context.catalog, context.aesthetic_goals)
                protocol.alerts = merge_alerts(protocol.alerts, alerts)
        case CementationProtocol():
            correct_hf_concentration(protocol, context.ceramic_type)
        case GenericProtocol():
            pass
        case _:
            raise TypeError(f"Unsupported protocol type: {type(protocol).__name__}")
    return protocol
