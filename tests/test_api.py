"""Tests for the FastAPI endpoints."""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from odonto.models import EvaluationStatus
from odonto.server import app


@pytest.fixture
def client(services):
    """FastAPI test client with the in-memory container wired up."""
    # Attach to app state the same way the lifespan does
    app.state.services = services
    yield TestClient(app)
    # Clean up
    app.state.services = None


def _headers(user_id: str, request_id: str = "req-api-1") -> dict[str, str]:
    return {"X-User-Id": user_id, "X-Request-ID": request_id}


def _evaluation(services, user_id, session_id):
    row = {
        "user_id": user_id,
        "session_id": session_id,
        "tooth": "11",
        "treatment_type": "resina",
        "status": EvaluationStatus.ANALYZING,
    }
    return asyncio.run(services.evaluations.insert_evaluation(row))


def _resin_payload(evaluation_id: str, user_id: str, **overrides) -> dict:
    payload = {
        "evaluationId": evaluation_id,
        "userId": user_id,
        "patientAge": "41",
        "tooth": "11",
        "region": "anterior-superior",
        "cavityClass": "Classe IV",
        "restorationSize": "Média",
        "substrate": "Esmalte e Dentina",
        "aestheticLevel": "estético",
        "toothColor": "A2",
        "stratificationNeeded": True,
        "bruxism": False,
        "longevityExpectation": "longo",
        "budget": "padrão",
    }
    payload.update(overrides)
    return payload


def _submit_body(**overrides) -> dict:
    body = {
        "patient": {"age": "41", "vita_shade": "A2"},
        "selected_teeth": ["11"],
        "tooth_treatments": {"11": "resina"},
        "pending_teeth": [
            {"tooth": "11", "cavity_class": "Classe IV", "substrate": "Esmalte e Dentina"},
        ],
    }
    body.update(overrides)
    return body


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "odonto-protocols"

    def test_request_id_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "trace-42"})
        assert response.headers["X-Request-ID"] == "trace-42"

    def test_request_id_generated_when_absent(self, client):
        response = client.get("/api/health")
        assert response.headers["X-Request-ID"]


class TestIdentity:
    def test_missing_user_header_is_401(self, client):
        response = client.post("/api/recommend-resin", json={})
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_non_uuid_user_is_401(self, client):
        response = client.post("/api/recommend-resin", json={}, headers={"X-User-Id": "admin"})
        assert response.status_code == 401


class TestRecommendResinEndpoint:
    def test_success(self, client, services, user_id, session_id):
        services.ledger.grant(user_id, 2)
        evaluation = _evaluation(services, user_id, session_id)

        response = client.post(
            "/api/recommend-resin",
            json=_resin_payload(evaluation.id, user_id),
            headers=_headers(user_id),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["recommendation"]["protocol"]["layers"][0]["shade"] == "A2D"
        assert services.ledger.balance(user_id) == (1, True)

    def test_reused_request_id_charged_per_call(self, client, services, fake_ai, user_id, session_id):
        services.ledger.grant(user_id, 2)
        evaluation = _evaluation(services, user_id, session_id)
        payload = _resin_payload(evaluation.id, user_id)

        first = client.post("/api/recommend-resin", json=payload, headers=_headers(user_id, "req-same"))
        second = client.post("/api/recommend-resin", json=payload, headers=_headers(user_id, "req-same"))
        third = client.post("/api/recommend-resin", json=payload, headers=_headers(user_id, "req-same"))

        assert [first.status_code, second.status_code, third.status_code] == [200, 200, 402]
        assert len(fake_ai.calls) == 2
        assert services.ledger.balance(user_id) == (0, True)

    def test_invalid_tooth_is_400(self, client, services, user_id, session_id):
        evaluation = _evaluation(services, user_id, session_id)
        response = client.post(
            "/api/recommend-resin",
            json=_resin_payload(evaluation.id, user_id, tooth="99"),
            headers=_headers(user_id),
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Número do dente inválido", "code": "INVALID_REQUEST"}

    def test_no_credits_is_402_with_upgrade_details(self, client, services, user_id, session_id):
        evaluation = _evaluation(services, user_id, session_id)
        response = client.post(
            "/api/recommend-resin",
            json=_resin_payload(evaluation.id, user_id),
            headers=_headers(user_id),
        )
        assert response.status_code == 402
        data = response.json()
        assert data["code"] == "INSUFFICIENT_CREDITS"
        assert data["credits_available"] == 0
        assert data["credits_required"] == 1
        assert data["upgrade_url"] == "/pricing"

    def test_ai_failure_is_502(self, client, services, fake_ai, user_id, session_id):
        from odonto.errors import AIProviderError

        services.ledger.grant(user_id, 2)
        evaluation = _evaluation(services, user_id, session_id)
        fake_ai.responses["generate_resin_recommendation"] = AIProviderError("HTTP 529", transient=True)

        response = client.post(
            "/api/recommend-resin",
            json=_resin_payload(evaluation.id, user_id),
            headers=_headers(user_id),
        )
        assert response.status_code == 502
        assert response.json()["code"] == "AI_ERROR"
        assert services.ledger.balance(user_id) == (2, True)


class TestRecommendCementationEndpoint:
    def test_hf_corrected_in_response(self, client, services, user_id, session_id):
        services.ledger.grant(user_id, 1)
        evaluation = _evaluation(services, user_id, session_id)

        response = client.post(
            "/api/recommend-cementation",
            json={
                "evaluationId": evaluation.id,
                "teeth": ["11"],
                "shade": "A1",
                "substrate": "Esmalte",
                "ceramicType": "e.max",
            },
            headers=_headers(user_id),
        )

        assert response.status_code == 200
        protocol = response.json()["protocol"]
        assert protocol["ceramic_treatment"][0]["material"] == "5% HF"


class TestSubmitTeethEndpoint:
    def test_submit_single_resin_tooth(self, client, services, user_id, session_id):
        services.ledger.grant(user_id, 3)

        response = client.post(
            f"/api/sessions/{session_id}/teeth",
            json=_submit_body(),
            headers=_headers(user_id),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["failed_teeth"] == []
        assert data["results"][0]["tooth"] == "11"
        assert services.ledger.balance(user_id) == (2, True)

    def test_partial_failure_is_still_200(self, client, services, user_id, session_id):
        # No credits: the resin tooth fails, the crown needs none
        body = _submit_body(
            selected_teeth=["11", "36"],
            tooth_treatments={"11": "resina", "36": "coroa"},
            pending_teeth=[{"tooth": "11"}, {"tooth": "36"}],
        )
        response = client.post(f"/api/sessions/{session_id}/teeth", json=body, headers=_headers(user_id))

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "partial"
        assert data["failed_teeth"] == ["11"]

    def test_invalid_tooth_is_400(self, client, user_id, session_id):
        response = client.post(
            f"/api/sessions/{session_id}/teeth",
            json=_submit_body(selected_teeth=["11", "99"]),
            headers=_headers(user_id),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Número de dente inválido: 99"

    def test_invalid_session_id_is_400(self, client, user_id):
        response = client.post("/api/sessions/not-a-uuid/teeth", json=_submit_body(), headers=_headers(user_id))
        assert response.status_code == 400

    def test_evaluations_listed_after_submit(self, client, services, user_id, session_id):
        services.ledger.grant(user_id, 3)
        client.post(f"/api/sessions/{session_id}/teeth", json=_submit_body(), headers=_headers(user_id))

        response = client.get(f"/api/sessions/{session_id}/evaluations", headers=_headers(user_id))

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == session_id
        (view,) = data["evaluations"]
        assert view["evaluation"]["tooth"] == "11"
        assert view["evaluation"]["status"] == "draft"
        assert view["checklist_completion"] == 0.0


class TestRetryEndpoint:
    def test_unknown_evaluation_is_404(self, client, user_id):
        response = client.post(
            "/api/evaluations/7c9e6679-7425-40de-944b-e07fc1f90ae7/retry",
            headers=_headers(user_id),
        )
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_foreign_evaluation_is_403(self, client, services, user_id, session_id):
        other = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
        evaluation = _evaluation(services, other, session_id)
        response = client.post(f"/api/evaluations/{evaluation.id}/retry", headers=_headers(user_id))
        assert response.status_code == 403
        assert response.json()["code"] == "ACCESS_DENIED"


class TestRegenerateEndpoint:
    def test_invalid_budget_is_400(self, client, user_id, session_id):
        response = client.post(
            f"/api/sessions/{session_id}/regenerate",
            json={"budget": "luxo"},
            headers=_headers(user_id),
        )
        assert response.status_code == 400


class TestInventoryEndpoints:
    def test_add_list_and_remove(self, client, user_id):
        body = {"items": [{"brand": "FGM", "product_line": "Opallis", "price_range": "Médio-alto"}]}

        added = client.post("/api/inventory", json=body, headers=_headers(user_id))
        assert added.status_code == 200
        assert added.json()["items"][0]["product_line"] == "Opallis"

        listed = client.get("/api/inventory", headers=_headers(user_id))
        assert [i["brand"] for i in listed.json()["items"]] == ["FGM"]

        removed = client.delete("/api/inventory/Opallis", headers=_headers(user_id))
        assert removed.status_code == 200
        assert removed.json()["items"] == []

    def test_remove_unknown_line_is_404(self, client, user_id):
        response = client.delete("/api/inventory/Opallis", headers=_headers(user_id))
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_unknown_price_range_rejected(self, client, user_id):
        body = {"items": [{"brand": "FGM", "product_line": "Opallis", "price_range": "Barato"}]}
        response = client.post("/api/inventory", json=body, headers=_headers(user_id))
        assert response.status_code == 422
