"""Shared test fixtures for the Odonto protocol test suite."""

from __future__ import annotations

import copy
import os
import uuid
from typing import Any

import pytest

from odonto.db import create_db_engine, init_db
from odonto.errors import AIProviderError
from odonto.evaluations import EvaluationRepository


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.setdefault("DATABASE_URL", "sqlite://")


# ── Canned AI outputs ────────────────────────────────────────────────

RESIN_AI_OUTPUT: dict[str, Any] = {
    "protocol": {
        "layers": [
            {
                "order": 1,
                "name": "Dentina",
                "resin_brand": "3M - Filtek Z350 XT",
                "shade": "A2D",
                "thickness": "0.5-1.0mm",
                "purpose": "Reproduzir o corpo dentinário",
                "technique": "Incrementos oblíquos",
            },
        ],
        "alternative": {
            "resin": "Filtek Z250",
            "shade": "A2",
            "technique": "Incremento único",
            "tradeoff": "Menor translucidez",
        },
        "checklist": ["Isolamento absoluto", "Aplicar A2D em incrementos"],
        "alerts": [],
        "warnings": [],
        "confidence": "high",
    },
    "justification": "Caso classe I com substrato saudável.",
    "recommended_resin_name": "Filtek Z350 XT",
}

CEMENTATION_AI_OUTPUT: dict[str, Any] = {
    "preparation_steps": [
        {"order": 1, "step": "Profilaxia", "material": "Pedra-pomes e água"},
    ],
    "ceramic_treatment": [
        {
            "order": 1,
            "step": "Condicionamento com ácido fluorídrico 10%",
            "material": "10% HF",
            "technique": "Aplicar na superfície interna",
            "time": "20s",
        },
        {"order": 2, "step": "Silanização", "material": "Silano", "time": "60s"},
    ],
    "tooth_treatment": [
        {"order": 1, "step": "Ácido fosfórico 37%", "material": "Condac 37", "time": "30s"},
    ],
    "cementation": {
        "cement_type": "Resinoso fotoativado",
        "cement_brand": "RelyX Veneer",
        "shade": "TR",
        "light_curing_time": "40s por face",
        "technique": "Assentamento com pressão digital",
    },
    "checklist": ["Aplicar HF 10% por 20s", "Aplicar silano"],
    "alerts": [],
    "warnings": [],
    "confidence": "alta",
}


@pytest.fixture
def resin_ai_output() -> dict[str, Any]:
    return copy.deepcopy(RESIN_AI_OUTPUT)


@pytest.fixture
def cementation_ai_output() -> dict[str, Any]:
    return copy.deepcopy(CEMENTATION_AI_OUTPUT)


# ── Fakes ────────────────────────────────────────────────────────────


class FakeAIClient:
    """Returns canned tool arguments per tool name and records every call."""

    def __init__(self, responses: dict[str, Any]):
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    async def call_tool(self, *, prompt_id, model, tool, system_prompt, user_prompt):
        self.calls.append(
            {
                "prompt_id": prompt_id,
                "model": model,
                "tool": tool.name,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
            }
        )
        response = self.responses[tool.name]
        if isinstance(response, Exception):
            raise response
        return copy.deepcopy(response)


class FakeDispatchClients:
    """Dispatch ports that write canned protocols straight to the repository.

    Teeth listed in ``fail_teeth`` raise a transient AI error instead.
    """

    def __init__(self, evaluations: EvaluationRepository, fail_teeth: tuple[str, ...] = ()):
        self._evaluations = evaluations
        self.fail_teeth = set(fail_teeth)
        self.resin_calls: list[dict[str, Any]] = []
        self.cementation_calls: list[dict[str, Any]] = []
        self.generic_calls: list[tuple[str, Any]] = []

    async def invoke_resin(self, params):
        self.resin_calls.append(params)
        if params["tooth"] in self.fail_teeth:
            raise AIProviderError("provider unreachable", transient=True)
        await self._evaluations.update_evaluation(
            params["evaluationId"],
            {
                "stratification_protocol": copy.deepcopy(RESIN_AI_OUTPUT["protocol"]),
                "recommendation_text": RESIN_AI_OUTPUT["justification"],
            },
        )

    async def invoke_cementation(self, params):
        self.cementation_calls.append(params)
        if params["teeth"][0] in self.fail_teeth:
            raise AIProviderError("provider unreachable", transient=True)
        await self._evaluations.update_evaluation(
            params["evaluationId"],
            {"cementation_protocol": copy.deepcopy(CEMENTATION_AI_OUTPUT)},
        )

    async def save_generic_protocol(self, evaluation_id, protocol):
        self.generic_calls.append((evaluation_id, protocol))
        if protocol.tooth in self.fail_teeth:
            raise RuntimeError("save failed")
        await self._evaluations.update_evaluation(
            evaluation_id, {"generic_protocol": protocol.model_dump(mode="json")}
        )


# ── Database ─────────────────────────────────────────────────────────


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def evaluations(engine) -> EvaluationRepository:
    return EvaluationRepository(engine)


@pytest.fixture
def user_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def session_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def fake_dispatch_clients(evaluations):
    return FakeDispatchClients(evaluations)


@pytest.fixture
def make_dispatch_clients(evaluations):
    """Factory for dispatch fakes that fail on the given teeth."""

    def _make(fail_teeth: tuple[str, ...] = ()) -> FakeDispatchClients:
        return FakeDispatchClients(evaluations, fail_teeth)

    return _make


@pytest.fixture
def fake_ai(resin_ai_output, cementation_ai_output) -> FakeAIClient:
    return FakeAIClient(
        {
            "generate_resin_recommendation": resin_ai_output,
            "generate_cementation_protocol": cementation_ai_output,
        }
    )


@pytest.fixture
def services(fake_ai):
    """Fully wired container on an in-memory database with the fake AI."""
    from odonto.container import build_services
    from odonto.services.metrics import MetricsClient

    container = build_services("sqlite://", ai_client=fake_ai, metrics_client=MetricsClient())
    yield container
    container.close()
