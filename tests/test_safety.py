"""Tests for the clinical safety post-processor."""

from __future__ import annotations

import pytest

from odonto.catalog import CatalogShade, ShadeCatalog
from odonto.models import CementationProtocol, GenericProtocol, ResinRecommendation, StratificationProtocol
from odonto.safety import (
    HF_SAFETY_WARNING,
    SafetyContext,
    apply_safety_rules,
    correct_hf_concentration,
    merge_alerts,
    normalize_layer_shades,
    product_line_of,
    replace_shade_tokens,
)


def _cementation(**overrides) -> CementationProtocol:
    data = {
        "ceramic_treatment": [
            {"order": 1, "step": "Condicionamento ácido", "material": "10% HF", "time": "20s"},
            {"order": 2, "step": "Silanização", "material": "Silano"},
        ],
        "cementation": {
            "cement_type": "Resinoso",
            "cement_brand": "RelyX Veneer",
            "shade": "TR",
            "light_curing_time": "40s",
            "technique": "Pressão digital",
        },
        "checklist": ["Condicionar com HF 10%", "Fotopolimerizar 10 segundos"],
    }
    data.update(overrides)
    return CementationProtocol.model_validate(data)


def _stratification(layers, checklist=None, alerts=None) -> StratificationProtocol:
    return StratificationProtocol.model_validate(
        {
            "layers": [
                {
                    "order": i + 1,
                    "name": name,
                    "resin_brand": brand,
                    "shade": shade,
                    "thickness": "0.5mm",
                    "purpose": "teste",
                    "technique": "incremental",
                }
                for i, (name, brand, shade) in enumerate(layers)
            ],
            "alternative": {"resin": "Z250", "shade": "A2", "technique": "bulk", "tradeoff": "menos estética"},
            "checklist": checklist or ["Isolamento absoluto"],
            "alerts": alerts or [],
        }
    )


# ── HF etch correction ───────────────────────────────────────────────


class TestHFCorrection:
    def test_ten_percent_rewritten_for_emax(self):
        protocol = _cementation()
        result = apply_safety_rules(protocol, SafetyContext(ceramic_type="e.max"))
        assert result.ceramic_treatment[0].material == "5% HF"
        warnings = [w for w in result.warnings if "5%" in w and "20s" in w]
        assert len(warnings) == 1

    def test_checklist_hf_lines_fixed_others_untouched(self):
        protocol = _cementation(
            checklist=["Condicionar com HF 10%", "Remover 10% do excesso de cimento"]
        )
        correct_hf_concentration(protocol, "lithium_disilicate")
        assert protocol.checklist == ["Condicionar com HF 5%", "Remover 10% do excesso de cimento"]

    def test_warning_appended_once(self):
        protocol = _cementation()
        correct_hf_concentration(protocol, "lithium_disilicate")
        protocol.ceramic_treatment[0].material = "ácido fluorídrico 10%"
        correct_hf_concentration(protocol, "lithium_disilicate")
        assert protocol.warnings.count(HF_SAFETY_WARNING) == 1

    def test_other_ceramics_untouched(self):
        protocol = _cementation()
        assert correct_hf_concentration(protocol, "feldspathic") is False
        assert protocol.ceramic_treatment[0].material == "10% HF"
        assert protocol.warnings == []

    def test_five_percent_protocol_not_flagged(self):
        protocol = _cementation(
            ceramic_treatment=[{"order": 1, "step": "Ácido fluorídrico 5%", "material": "Condac Porcelana"}]
        )
        assert correct_hf_concentration(protocol, "lithium_disilicate") is False
        assert protocol.warnings == []

    def test_ten_percent_without_hf_mention_untouched(self):
        protocol = _cementation(
            ceramic_treatment=[{"order": 1, "step": "Diluir primer a 10%", "material": "Primer"}]
        )
        assert correct_hf_concentration(protocol, "lithium_disilicate") is False


# ── Shade normalization ──────────────────────────────────────────────


class TestShadeNormalization:
    def test_unknown_shade_replaced_and_checklist_token_safe(self):
        catalog = ShadeCatalog([CatalogShade(product_line="Test Line", shade="A2E", type="Esmalte")])
        protocol = _stratification(
            [("Esmalte vestibular", "Marca - Test Line", "Z9")],
            checklist=["Aplicar Z9 na vestibular", "Não confundir com DZ9E"],
        )
        alerts = normalize_layer_shades(protocol, catalog)

        assert protocol.layers[0].shade == "A2E"
        assert protocol.checklist == ["Aplicar A2E na vestibular", "Não confundir com DZ9E"]
        assert any("Z9" in a and "A2E" in a for a in alerts)

    def test_valid_shade_kept(self):
        catalog = ShadeCatalog([CatalogShade(product_line="Test Line", shade="A2D", type="Dentina")])
        protocol = _stratification([("Dentina", "Marca - Test Line", "A2D")])
        assert normalize_layer_shades(protocol, catalog) == []
        assert protocol.layers[0].shade == "A2D"

    def test_type_filter_prefers_matching_rows(self):
        catalog = ShadeCatalog([
            CatalogShade(product_line="Line X", shade="A3E", type="Esmalte"),
            CatalogShade(product_line="Line X", shade="OA3", type="Opaco"),
        ])
        protocol = _stratification([("Opaco de mascaramento", "Marca - Line X", "OA9")])
        normalize_layer_shades(protocol, catalog)
        assert protocol.layers[0].shade == "OA3"

    def test_unknown_product_line_keeps_shade(self):
        catalog = ShadeCatalog([CatalogShade(product_line="Test Line", shade="A2E", type="Esmalte")])
        protocol = _stratification([("Dentina", "Marca - Desconhecida", "Q1")])
        assert normalize_layer_shades(protocol, catalog) == []
        assert protocol.layers[0].shade == "Q1"

    def test_z350_bleach_shade_replaced(self):
        catalog = ShadeCatalog([
            CatalogShade(product_line="Filtek Z350 XT", shade="A1", type="Body"),
            CatalogShade(product_line="Filtek Z350 XT", shade="A2", type="Body"),
        ])
        protocol = _stratification(
            [("Dentina", "3M - Filtek Z350 XT", "BL2")],
            checklist=["Aplicar BL2"],
        )
        alerts = normalize_layer_shades(protocol, catalog)
        assert protocol.layers[0].shade == "A1"
        assert protocol.checklist == ["Aplicar A1"]
        assert any("NÃO EXISTE" in a for a in alerts)

    def test_z350_wt_becomes_ct(self):
        catalog = ShadeCatalog([CatalogShade(product_line="Filtek Z350 XT", shade="CT", type="Translúcido")])
        protocol = _stratification([("Efeito incisal", "3M - Filtek Z350 XT", "WT")], checklist=["Usar WT"])
        normalize_layer_shades(protocol, catalog)
        assert protocol.layers[0].shade == "CT"
        assert protocol.checklist == ["Usar CT"]

    def test_enamel_layer_optimized_to_named_enamel(self):
        catalog = ShadeCatalog([
            CatalogShade(product_line="Filtek Z350 XT", shade="A1E", type="Esmalte"),
            CatalogShade(product_line="Filtek Z350 XT", shade="WE", type="Esmalte"),
        ])
        protocol = _stratification([("Esmalte vestibular", "3M - Filtek Z350 XT", "A1E")])
        alerts = normalize_layer_shades(protocol, catalog)
        assert protocol.layers[0].shade == "WE"
        assert any("otimizada" in a for a in alerts)

    def test_whitening_wish_without_bl_shades_alerts(self):
        catalog = ShadeCatalog([CatalogShade(product_line="Line X", shade="A2D", type="Dentina")])
        protocol = _stratification([("Dentina", "Marca - Line X", "A2D")])
        alerts = normalize_layer_shades(protocol, catalog, aesthetic_goals="Sorriso Hollywood")
        assert any("não possui cores BL" in a for a in alerts)

    def test_proximal_ridge_warning(self):
        catalog = ShadeCatalog([CatalogShade(product_line="Line X", shade="A2E", type="Esmalte")])
        protocol = _stratification([("Cristas proximais", "Marca - Line X", "A2E")])
        alerts = normalize_layer_shades(protocol, catalog)
        assert any(a.startswith("Cristas Proximais") for a in alerts)


class TestShadeHelpers:
    def test_product_line_of(self):
        assert product_line_of("3M - Filtek Z350 XT") == "Filtek Z350 XT"
        assert product_line_of("Estelite Omega") == "Estelite Omega"
        assert product_line_of(None) is None

    def test_replace_shade_tokens_whole_words(self):
        assert replace_shade_tokens("A2 e A2E", {"A2": "A1"}) == "A1 e A2E"

    def test_replace_shade_tokens_no_cascade(self):
        assert replace_shade_tokens("A2 A1", {"A2": "A1", "A1": "B1"}) == "A1 B1"


class TestMergeAlerts:
    def test_bleach_duplicates_dropped(self):
        merged = merge_alerts(["Paciente deseja BL1"], ["A linha X não possui cores BL (Bleach)."])
        assert merged == ["Paciente deseja BL1"]

    def test_unrelated_alerts_appended_once(self):
        merged = merge_alerts(["Alerta A"], ["Alerta B", "Alerta A"])
        assert merged == ["Alerta A", "Alerta B"]


class TestApplySafetyRules:
    def test_resin_recommendation_delegates_to_protocol(self):
        catalog = ShadeCatalog([CatalogShade(product_line="Test Line", shade="A2E", type="Esmalte")])
        recommendation = ResinRecommendation.model_validate(
            {"protocol": _stratification([("Esmalte", "Marca - Test Line", "Z9")]).model_dump()}
        )
        apply_safety_rules(recommendation, SafetyContext(catalog=catalog))
        assert recommendation.protocol.layers[0].shade == "A2E"
        assert recommendation.protocol.alerts

    def test_generic_protocol_passes_through(self):
        protocol = GenericProtocol(treatment_type="coroa", tooth="16", summary="Coroa total")
        assert apply_safety_rules(protocol, SafetyContext()) is protocol

    def test_unsupported_type_raises(self):
        with pytest.raises(TypeError):
            apply_safety_rules({"layers": []}, SafetyContext())
