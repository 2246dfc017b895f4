"""Tests for the resin prompt's inventory and contralateral sections."""

from __future__ import annotations

import pytest

from odonto.inventory import InventoryItem
from odonto.models import Evaluation
from odonto.prompts import build_resin_user_prompt
from odonto.validation import ResinRequest

Z350 = InventoryItem(brand="3M", product_line="Filtek Z350 XT", price_range="Premium")
Z250 = InventoryItem(brand="3M", product_line="Filtek Z250", price_range="Intermediário")


@pytest.fixture
def request_() -> ResinRequest:
    return ResinRequest(
        evaluation_id="eval-1",
        user_id="user-1",
        patient_age="34",
        tooth="11",
        region="anterior-superior",
        cavity_class="Classe IV",
        restoration_size="Média",
        substrate="Esmalte e Dentina",
        aesthetic_level="estético",
        tooth_color="A2",
        stratification_needed=True,
        bruxism=False,
        longevity_expectation="longo",
        budget="padrão",
    )


class TestInventorySection:
    def test_without_inventory_asks_for_best_option(self, request_):
        prompt = build_resin_user_prompt(request_)
        assert "ainda não cadastrou seu inventário" in prompt
        assert '"is_from_inventory" deve ser false' in prompt

    def test_budget_fitting_lines_listed_first(self, request_):
        prompt = build_resin_user_prompt(request_, inventory=[Z350, Z250])

        fitting = prompt.index('compatíveis com orçamento "padrão"')
        outside = prompt.index("fora do orçamento")
        assert fitting < prompt.index("3M - Filtek Z250 (Intermediário)") < outside
        assert prompt.index("3M - Filtek Z350 XT (Premium)") > outside
        assert "PRIORIDADE DO INVENTÁRIO" in prompt

    def test_no_fitting_line_falls_back_to_catalog(self, request_):
        prompt = build_resin_user_prompt(request_, inventory=[Z350])
        assert 'Nenhuma resina do inventário é compatível com o orçamento "padrão"' in prompt
        assert "budget_compliance=false" in prompt

    def test_premium_budget_fits_premium_line(self, request_):
        prompt = build_resin_user_prompt(request_.model_copy(update={"budget": "premium"}), inventory=[Z350])
        assert "fora do orçamento):\nNenhuma" in prompt


class TestContralateralSection:
    def test_protocol_must_match_mirror_tooth(self, request_, resin_ai_output):
        mirror = Evaluation(
            id="eval-2",
            user_id="user-1",
            session_id="session-1",
            tooth="21",
            stratification_protocol=resin_ai_output["protocol"],
        )

        prompt = build_resin_user_prompt(request_, contralateral=mirror)

        assert "DEVE ser IDÊNTICO ao do dente contralateral 21" in prompt
        assert '"shade": "A2D"' in prompt
        assert "Mesmo protocolo do dente 21" in prompt

    def test_absent_without_mirror(self, request_):
        assert "CONTRALATERAL" not in build_resin_user_prompt(request_)
