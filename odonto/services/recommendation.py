"""Resin and cementation recommendation pipelines.

Each request runs these steps in order:

  1. validate the payload                  → 400
  2. check ownership                       → 403
  3. check the rate limit                  → 429
  4. pre-check the credit balance          → 402
  5. load prompt context (resin only: the dentist's inventory and the
     contralateral tooth's protocol; lookups that fail are skipped)
  6. sanitize free text for the prompt
  7. call the AI (one forced tool call)    → 502
  8. parse the output at the boundary      → 502
  9. consume credits (``credit_scope``)
 10. apply the clinical safety rules
 11. persist                               → 500 SAVE_FAILED

Credits are consumed only after step 8, so a discarded response is never
billed.  Anything that fails inside the credit scope (steps 10-11) is
refunded before the error reaches the caller.  The credit operation id
is a fresh UUID per AI call; the caller's request id only tags logs.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from odonto.catalog import ShadeCatalog
from odonto.compensation import best_effort
from odonto.errors import AuthorizationError, PersistenceError, RequestValidationError
from odonto.evaluations import EvaluationRepository
from odonto.inventory import InventoryItem, InventoryRepository
from odonto.models import (
    CementationProtocol,
    Evaluation,
    GenericProtocol,
    ResinRecommendation,
    TreatmentType,
    parse_ai_response,
)
from odonto.prompts import (
    CEMENTATION_PROMPT_ID,
    RESIN_PROMPT_ID,
    build_cementation_system_prompt,
    build_cementation_user_prompt,
    build_resin_system_prompt,
    build_resin_user_prompt,
)
from odonto.safety import SafetyContext, apply_safety_rules
from odonto.sanitizer import sanitize_fields_for_prompt, sanitize_for_prompt
from odonto.services.credits import CreditGuard
from odonto.services.llm_client import CEMENTATION_TOOL, RESIN_TOOL, ProtocolAIClient
from odonto.services.rate_limit import RATE_LIMITS
from odonto.validation import (
    CementationRequest,
    DSDContext,
    ResinRequest,
    validate_cementation_request,
    validate_evaluation_data,
)

logger = logging.getLogger(__name__)

RESIN_CREDIT_OPERATION = "resin_recommendation"
CEMENTATION_CREDIT_OPERATION = "cementation_recommendation"


class RecommendationService:
    def __init__(
        self,
        evaluations: EvaluationRepository,
        guard: CreditGuard,
        ai_client: ProtocolAIClient,
        catalog: ShadeCatalog,
        *,
        resin_model: str,
        cementation_model: str,
        inventory: InventoryRepository | None = None,
    ):
        self._evaluations = evaluations
        self._guard = guard
        self._ai = ai_client
        self._catalog = catalog
        self._resin_model = resin_model
        self._cementation_model = cementation_model
        self._inventory = inventory

    # ── Resin ────────────────────────────────────────────────────────

    async def recommend_resin(self, payload: Any, user_id: str, request_id: str) -> ResinRecommendation:
        validation = validate_evaluation_data(payload)
        if not validation.success:
            logger.info("[%s] recommend-resin validation failed: %s", request_id, validation.error)
            raise RequestValidationError(validation.error)
        request: ResinRequest = validation.data

        if request.user_id != user_id:
            raise AuthorizationError("Acesso negado", status_code=403)
        evaluation = await self._owned_evaluation(request.evaluation_id, user_id)

        await self._guard.enforce_rate_limit(user_id, RESIN_PROMPT_ID, RATE_LIMITS["AI_HEAVY"])
        await self._guard.ensure_credits(user_id, RESIN_CREDIT_OPERATION)

        inventory = await self._inventory_of(user_id)
        contralateral = await best_effort(
            f"contralateral lookup {request.evaluation_id}",
            self._evaluations.find_contralateral_protocol,
            evaluation.session_id,
            user_id,
            request.tooth,
        )
        if contralateral is not None:
            logger.info("[%s] Tooth %s follows contralateral tooth %s", request_id, request.tooth, contralateral.tooth)

        prompt_request = ResinRequest.model_validate(
            sanitize_fields_for_prompt(request.model_dump(), ("clinical_notes", "aesthetic_goals"))
        )
        raw = await self._ai.call_tool(
            prompt_id=RESIN_PROMPT_ID,
            model=self._resin_model,
            tool=RESIN_TOOL,
            system_prompt=build_resin_system_prompt(self._catalog),
            user_prompt=build_resin_user_prompt(prompt_request, inventory=inventory, contralateral=contralateral),
        )
        recommendation = parse_ai_response(ResinRecommendation, raw, RESIN_PROMPT_ID)
        if not inventory:
            recommendation.is_from_inventory = False

        operation_id = self._new_operation_id()
        async with self._guard.credit_scope(user_id, RESIN_CREDIT_OPERATION, operation_id):
            apply_safety_rules(
                recommendation,
                SafetyContext(catalog=self._catalog, aesthetic_goals=request.aesthetic_goals),
            )
            await self._persist(
                request.evaluation_id,
                {
                    "stratification_protocol": recommendation.protocol.model_dump(mode="json"),
                    "recommendation_text": recommendation.justification or recommendation.protocol.justification,
                    "treatment_type": TreatmentType.RESINA.value,
                },
                request_id,
            )

        logger.info(
            "[%s] Resin protocol saved for evaluation %s (%d layers, operation %s)",
            request_id, request.evaluation_id, len(recommendation.protocol.layers), operation_id,
        )
        return recommendation

    # ── Cementation ──────────────────────────────────────────────────

    async def recommend_cementation(self, payload: Any, user_id: str, request_id: str) -> CementationProtocol:
        validation = validate_cementation_request(payload)
        if not validation.success:
            logger.info("[%s] recommend-cementation validation failed: %s", request_id, validation.error)
            raise RequestValidationError(validation.error)
        request: CementationRequest = validation.data

        await self._owned_evaluation(request.evaluation_id, user_id)

        await self._guard.enforce_rate_limit(user_id, CEMENTATION_PROMPT_ID, RATE_LIMITS["AI_LIGHT"])
        await self._guard.ensure_credits(user_id, CEMENTATION_CREDIT_OPERATION)

        prompt_request = self._sanitized_cementation(request)
        raw = await self._ai.call_tool(
            prompt_id=CEMENTATION_PROMPT_ID,
            model=self._cementation_model,
            tool=CEMENTATION_TOOL,
            system_prompt=build_cementation_system_prompt(prompt_request),
            user_prompt=build_cementation_user_prompt(prompt_request),
        )
        protocol = parse_ai_response(CementationProtocol, raw, CEMENTATION_PROMPT_ID)

        operation_id = self._new_operation_id()
        async with self._guard.credit_scope(user_id, CEMENTATION_CREDIT_OPERATION, operation_id):
            apply_safety_rules(protocol, SafetyContext(ceramic_type=request.ceramic_type))
            await self._persist(
                request.evaluation_id,
                {
                    "cementation_protocol": protocol.model_dump(mode="json"),
                    "treatment_type": TreatmentType.PORCELANA.value,
                },
                request_id,
            )

        logger.info(
            "[%s] Cementation protocol saved for evaluation %s (operation %s)",
            request_id, request.evaluation_id, operation_id,
        )
        return protocol

    @staticmethod
    def _sanitized_cementation(request: CementationRequest) -> CementationRequest:
        update: dict[str, Any] = {"aesthetic_goals": sanitize_for_prompt(request.aesthetic_goals)}
        if request.dsd_context is not None:
            dsd = request.dsd_context
            update["dsd_context"] = DSDContext(
                current_issue=sanitize_for_prompt(dsd.current_issue) or "",
                proposed_change=sanitize_for_prompt(dsd.proposed_change) or "",
                observations=[sanitize_for_prompt(o) or "" for o in dsd.observations],
            )
        return request.model_copy(update=update)

    # ── Generic ──────────────────────────────────────────────────────

    async def save_generic_protocol(self, evaluation_id: str, protocol: GenericProtocol) -> None:
        await self._evaluations.update_evaluation(
            evaluation_id,
            {
                "generic_protocol": protocol.model_dump(mode="json"),
                "recommendation_text": protocol.summary,
            },
        )

    # ── Helpers ──────────────────────────────────────────────────────

    async def _owned_evaluation(self, evaluation_id: str, user_id: str) -> Evaluation:
        evaluation = await self._evaluations.get_by_id(evaluation_id)
        if evaluation is None or evaluation.user_id != user_id:
            raise AuthorizationError("Acesso negado", status_code=403)
        return evaluation

    async def _inventory_of(self, user_id: str) -> list[InventoryItem]:
        if self._inventory is None:
            return []
        items = await best_effort(f"inventory lookup {user_id}", self._inventory.list_for_user, user_id)
        return items or []

    @staticmethod
    def _new_operation_id() -> str:
        """Credit idempotency key for one AI call; never taken from the client."""
        return str(uuid.uuid4())

    async def _persist(self, evaluation_id: str, patch: dict[str, Any], request_id: str) -> None:
        try:
            await self._evaluations.update_evaluation(evaluation_id, patch)
        except Exception as exc:
            logger.exception("[%s] Failed to save protocol for evaluation %s", request_id, evaluation_id)
            raise PersistenceError() from exc


class InProcessDispatchClients:
    """Dispatch ports bound to one caller and one request.

    ``request_id`` only correlates logs; each dispatched AI call gets its
    own credit operation id inside :class:`RecommendationService`.
    """

    def __init__(self, service: RecommendationService, user_id: str, request_id: str):
        self._service = service
        self._user_id = user_id
        self._request_id = request_id

    async def invoke_resin(self, params: dict[str, Any]) -> ResinRecommendation:
        return await self._service.recommend_resin(params, self._user_id, self._request_id)

    async def invoke_cementation(self, params: dict[str, Any]) -> CementationProtocol:
        return await self._service.recommend_cementation(params, self._user_id, self._request_id)

    async def save_generic_protocol(self, evaluation_id: str, protocol: GenericProtocol) -> None:
        await self._service.save_generic_protocol(evaluation_id, protocol)
