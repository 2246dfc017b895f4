"""Multi-tooth reconciliation for a clinical session.

Three flows touch several evaluations of one session:

* **submit** – one evaluation per selected tooth.  Only the *primary*
  tooth of each resin / porcelain group (the first selected) calls the
  AI; its siblings are filled in afterwards by :meth:`sync_group_protocols`.
  Generic treatments always dispatch since they cost no AI call.
* **retry** – re-dispatch a single evaluation from its stored fields.
* **regenerate** – change the session budget and re-dispatch every
  AI-backed evaluation.

All AI-dispatching loops run strictly one tooth at a time, in selection
order.  Concurrent calls for one visit exceed the provider's execution
ceiling, so these loops must not be moved onto ``asyncio.gather`` or a
worker pool.

Sync and cleanup steps are fire-and-log (:func:`best_effort`): every
evaluation they touch has already succeeded on its own.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from odonto.compensation import best_effort
from odonto.dispatch import (
    DEFAULT_CERAMIC_TYPE,
    DispatchClients,
    DispatchRequest,
    EnrichHook,
    dispatch_treatment_protocol,
)
from odonto.errors import AuthorizationError, NotFoundError, RequestValidationError
from odonto.evaluations import EvaluationRepository
from odonto.models import (
    Evaluation,
    EvaluationStatus,
    PatientContext,
    PendingTooth,
    TreatmentType,
    protocol_fingerprint,
)

logger = logging.getLogger(__name__)

ANTERIOR_TEETH = frozenset({
    "11", "12", "13", "21", "22", "23",
    "31", "32", "33", "41", "42", "43",
})

REGENERATE_BUDGETS = ("padrão", "premium")


def get_full_region(tooth: str) -> str:
    """Region label for an FDI tooth (quadrants 1-2 are upper)."""
    upper = tooth[:1] in ("1", "2")
    arch = "superior" if upper else "inferior"
    side = "anterior" if tooth in ANTERIOR_TEETH else "posterior"
    return f"{side}-{arch}"


def select_primary_teeth(
    selected_teeth: list[str],
    treatment_of: Mapping[str, TreatmentType],
) -> dict[TreatmentType, str]:
    """First tooth per treatment group, in selection order."""
    primaries: dict[TreatmentType, str] = {}
    for tooth in selected_teeth:
        treatment = treatment_of.get(tooth)
        if treatment is not None and treatment not in primaries:
            primaries[treatment] = tooth
    return primaries


def _compact(params: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


# ── Outcomes ─────────────────────────────────────────────────────────


class SubmitStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class ToothResult(BaseModel):
    tooth: str
    success: bool
    evaluation_id: str | None = None
    error: str | None = None


class SubmitOutcome(BaseModel):
    """Per-tooth results of a submit.  A partial failure is data, not an exception."""

    results: list[ToothResult] = Field(default_factory=list)
    treatment_counts: dict[str, int] = Field(default_factory=dict)
    synced: int = 0

    @property
    def failed_teeth(self) -> list[str]:
        return [r.tooth for r in self.results if not r.success]

    @property
    def succeeded_teeth(self) -> list[str]:
        return [r.tooth for r in self.results if r.success]

    @property
    def status(self) -> SubmitStatus:
        failed = len(self.failed_teeth)
        if self.results and failed == len(self.results):
            return SubmitStatus.FAILURE
        if failed:
            return SubmitStatus.PARTIAL
        return SubmitStatus.SUCCESS

    @property
    def message(self) -> str:
        total = len(self.results)
        match self.status:
            case SubmitStatus.FAILURE:
                return "Erro ao adicionar dentes. Tente novamente."
            case SubmitStatus.PARTIAL:
                failed = len(self.failed_teeth)
                return (
                    f"{total - failed} de {total} dentes processados. "
                    f"{failed} falharam, tente novamente."
                )
            case _:
                details = ", ".join(f"{count} {kind}" for kind, count in self.treatment_counts.items())
                return f"Casos adicionados: {details}" if details else "Nenhum dente processado"


class RegenerateOutcome(BaseModel):
    budget: str
    aesthetic_level: str
    regenerated: int = 0
    failed_teeth: list[str] = Field(default_factory=list)
    synced: int = 0


# ── Reconciler ───────────────────────────────────────────────────────


class SessionReconciler:
    def __init__(
        self,
        evaluations: EvaluationRepository,
        clients: DispatchClients,
        *,
        enrich: EnrichHook | None = None,
    ):
        self._evaluations = evaluations
        self._clients = clients
        self._enrich = enrich

    # ── Submit ───────────────────────────────────────────────────────

    async def submit_teeth(
        self,
        session_id: str,
        user_id: str,
        patient: PatientContext,
        selected_teeth: list[str],
        tooth_treatments: Mapping[str, str],
        pending_teeth: list[PendingTooth],
    ) -> SubmitOutcome:
        """Create and dispatch one evaluation per selected tooth."""
        existing = await self._evaluations.list_by_session(session_id, user_id)
        pending_by_tooth = {t.tooth: t for t in pending_teeth}

        treatment_of: dict[str, TreatmentType] = {}
        raw_type_of: dict[str, str] = {}
        for tooth in selected_teeth:
            tooth_data = pending_by_tooth.get(tooth)
            if tooth_data is None:
                logger.warning("No pending data for tooth %s in session %s; skipping", tooth, session_id)
                continue
            raw = tooth_treatments.get(tooth) or tooth_data.treatment_indication or TreatmentType.RESINA.value
            treatment_of[tooth] = TreatmentType.parse(raw)
            raw_type_of[tooth] = raw

        primaries = select_primary_teeth(selected_teeth, treatment_of)
        failed_primaries: set[TreatmentType] = set()
        outcome = SubmitOutcome()
        new_ids: list[str] = []

        for tooth in selected_teeth:
            if tooth not in treatment_of:
                continue
            treatment = treatment_of[tooth]
            tooth_data = pending_by_tooth[tooth]
            stored_type = treatment.value if treatment is not TreatmentType.UNRECOGNIZED else raw_type_of[tooth]
            is_primary = primaries.get(treatment) == tooth or not treatment.uses_ai

            if not is_primary and treatment in failed_primaries:
                # no protocol to share; the tooth stays pending for resubmission
                logger.warning(
                    "Tooth %s left pending: primary tooth %s of its %s group failed",
                    tooth, primaries[treatment], treatment.value,
                )
                outcome.results.append(
                    ToothResult(tooth=tooth, success=False, error=f"Protocolo do dente {primaries[treatment]} falhou")
                )
                continue

            try:
                evaluation = await self._evaluations.insert_evaluation(
                    self._submit_row(session_id, user_id, patient, tooth_data, stored_type, treatment)
                )
                new_ids.append(evaluation.id)

                if is_primary:
                    await dispatch_treatment_protocol(
                        self._dispatch_request(evaluation, tooth_data=tooth_data),
                        self._clients,
                        enrich=self._enrich,
                    )
                else:
                    logger.info("Tooth %s shares the %s protocol of tooth %s", tooth, treatment.value, primaries[treatment])

                await self._evaluations.update_status(evaluation.id, EvaluationStatus.DRAFT)
                outcome.treatment_counts[stored_type] = outcome.treatment_counts.get(stored_type, 0) + 1
                outcome.results.append(ToothResult(tooth=tooth, success=True, evaluation_id=evaluation.id))
            except Exception as exc:
                logger.exception("Error processing tooth %s in session %s", tooth, session_id)
                if is_primary:
                    failed_primaries.add(treatment)
                outcome.results.append(ToothResult(tooth=tooth, success=False, error=str(exc)))
                await self._mark_analyzing_as_error(new_ids, tooth)

        logger.info(
            "Submit session=%s status=%s succeeded=%s failed=%s",
            session_id, outcome.status.value, outcome.succeeded_teeth, outcome.failed_teeth,
        )

        if outcome.succeeded_teeth:
            all_ids = list(dict.fromkeys([e.id for e in existing] + new_ids))
            if len(all_ids) >= 2:
                synced = await best_effort(
                    f"post-submit protocol sync {session_id}",
                    self.sync_group_protocols,
                    session_id,
                    all_ids,
                )
                outcome.synced = synced or 0

            # failed teeth stay pending for resubmission
            await best_effort(
                f"pending teeth cleanup {session_id}",
                self._evaluations.delete_pending_teeth,
                session_id,
                user_id,
                outcome.succeeded_teeth,
            )

        return outcome

    @staticmethod
    def _submit_row(
        session_id: str,
        user_id: str,
        patient: PatientContext,
        tooth_data: PendingTooth,
        treatment_type: str,
        treatment: TreatmentType,
    ) -> dict[str, Any]:
        return {
            "user_id": user_id,
            "session_id": session_id,
            "patient_name": patient.name,
            "patient_age": patient.age,
            "tooth": tooth_data.tooth,
            "region": tooth_data.tooth_region or get_full_region(tooth_data.tooth),
            "cavity_class": tooth_data.cavity_class or "Classe I",
            "restoration_size": tooth_data.restoration_size or "Média",
            "substrate": tooth_data.substrate or "Esmalte e Dentina",
            "tooth_color": patient.vita_shade,
            "depth": tooth_data.depth or "Média",
            "substrate_condition": tooth_data.substrate_condition or "Saudável",
            "enamel_condition": tooth_data.enamel_condition or "Íntegro",
            "bruxism": patient.bruxism,
            "aesthetic_level": patient.aesthetic_level,
            "aesthetic_goals": patient.aesthetic_goals,
            "budget": patient.budget,
            "longevity_expectation": patient.longevity_expectation,
            "status": EvaluationStatus.ANALYZING,
            "treatment_type": treatment_type,
            "ai_indication_reason": tooth_data.indication_reason,
            "stratification_needed": treatment
            not in (TreatmentType.GENGIVOPLASTIA, TreatmentType.RECOBRIMENTO_RADICULAR),
        }

    async def _mark_analyzing_as_error(self, evaluation_ids: list[str], tooth: str) -> None:
        for evaluation_id in evaluation_ids:
            evaluation = await best_effort(
                f"load evaluation {evaluation_id}", self._evaluations.get_by_id, evaluation_id,
            )
            if evaluation and evaluation.tooth == tooth and evaluation.status is EvaluationStatus.ANALYZING:
                await best_effort(
                    f"mark tooth {tooth} as error",
                    self._evaluations.update_status,
                    evaluation_id,
                    EvaluationStatus.ERROR,
                )

    # ── Retry ────────────────────────────────────────────────────────

    async def retry_evaluation(self, evaluation_id: str, user_id: str) -> Evaluation:
        """Re-dispatch one evaluation.  Re-raises the dispatch error after marking it."""
        evaluation = await self._owned(evaluation_id, user_id)

        try:
            await self._evaluations.update_status(evaluation_id, EvaluationStatus.ANALYZING)
            await dispatch_treatment_protocol(
                self._dispatch_request(evaluation), self._clients, enrich=self._enrich,
            )
            await self._evaluations.update_status(evaluation_id, EvaluationStatus.DRAFT)
        except Exception:
            logger.exception("Retry failed for evaluation %s", evaluation_id)
            await best_effort(
                f"mark evaluation {evaluation_id} as error",
                self._evaluations.update_status,
                evaluation_id,
                EvaluationStatus.ERROR,
            )
            raise

        session = await self._evaluations.list_by_session(evaluation.session_id, user_id)
        if len(session) >= 2:
            await best_effort(
                f"post-retry protocol sync {evaluation.session_id}",
                self.sync_group_protocols,
                evaluation.session_id,
                [e.id for e in session],
            )

        refreshed = await self._evaluations.get_by_id(evaluation_id)
        return refreshed or evaluation

    # ── Regenerate ───────────────────────────────────────────────────

    async def regenerate_with_budget(self, session_id: str, user_id: str, budget: str) -> RegenerateOutcome:
        if budget not in REGENERATE_BUDGETS:
            raise RequestValidationError("Orçamento inválido")

        session = await self._evaluations.list_by_session(session_id, user_id)
        if not session:
            raise NotFoundError("Sessão não encontrada")

        aesthetic_level = "estético" if budget == "premium" else "funcional"
        all_ids = [e.id for e in session]
        await self._evaluations.update_evaluations_bulk(
            all_ids, {"budget": budget, "aesthetic_level": aesthetic_level}
        )

        outcome = RegenerateOutcome(budget=budget, aesthetic_level=aesthetic_level)
        for evaluation in session:
            if not evaluation.treatment.uses_ai:
                continue
            evaluation = evaluation.model_copy(update={"budget": budget, "aesthetic_level": aesthetic_level})
            try:
                await self._evaluations.update_status(evaluation.id, EvaluationStatus.ANALYZING)
                await dispatch_treatment_protocol(
                    self._dispatch_request(evaluation), self._clients, enrich=self._enrich,
                )
                await self._evaluations.update_status(evaluation.id, EvaluationStatus.DRAFT)
                outcome.regenerated += 1
            except Exception:
                logger.exception("Regenerate failed for tooth %s", evaluation.tooth)
                outcome.failed_teeth.append(evaluation.tooth)
                await best_effort(
                    f"mark evaluation {evaluation.id} as error",
                    self._evaluations.update_status,
                    evaluation.id,
                    EvaluationStatus.ERROR,
                )

        if outcome.regenerated >= 2:
            synced = await best_effort(
                f"post-regenerate protocol sync {session_id}",
                self.sync_group_protocols,
                session_id,
                all_ids,
            )
            outcome.synced = synced or 0

        logger.info(
            "Regenerated %d protocol(s) as %s for session %s", outcome.regenerated, budget, session_id,
        )
        return outcome

    # ── Group sync ───────────────────────────────────────────────────

    async def sync_group_protocols(self, session_id: str, evaluation_ids: list[str]) -> int:
        """Copy each AI group's protocol from its source to differing siblings.

        The source is the first evaluation, in ``evaluation_ids`` order,
        that has a protocol.  Returns the number of evaluations updated.
        """
        if len(evaluation_ids) < 2:
            return 0

        members = [
            e for e in await self._evaluations.list_by_ids(evaluation_ids)
            if e.session_id == session_id
        ]
        if len(members) < 2:
            return 0

        groups: dict[TreatmentType, list[Evaluation]] = {}
        for evaluation in members:
            if evaluation.treatment.uses_ai:
                groups.setdefault(evaluation.treatment, []).append(evaluation)

        updated = 0
        for treatment, group in groups.items():
            if len(group) < 2:
                continue
            field = treatment.protocol_field
            source = next((e for e in group if getattr(e, field)), None)
            if source is None:
                continue

            fingerprint = protocol_fingerprint(source)
            targets = [
                e.id for e in group
                if e.id != source.id and (getattr(e, field) is None or protocol_fingerprint(e) != fingerprint)
            ]
            if not targets:
                continue

            await self._evaluations.update_evaluations_bulk(
                targets,
                {
                    field: getattr(source, field),
                    "recommendation_text": source.recommendation_text,
                    "checklist_progress": [],
                },
            )
            logger.info(
                "Synced %s protocol from tooth %s to %d sibling(s) in session %s",
                treatment.value, source.tooth, len(targets), session_id,
            )
            updated += len(targets)

        return updated

    # ── Helpers ──────────────────────────────────────────────────────

    async def _owned(self, evaluation_id: str, user_id: str) -> Evaluation:
        evaluation = await self._evaluations.get_by_id(evaluation_id)
        if evaluation is None:
            raise NotFoundError("Avaliação não encontrada")
        if evaluation.user_id != user_id:
            raise AuthorizationError("Acesso negado", status_code=403)
        return evaluation

    @staticmethod
    def _dispatch_request(evaluation: Evaluation, *, tooth_data: PendingTooth | None = None) -> DispatchRequest:
        """Build dispatch parameters from an evaluation's stored clinical fields."""
        treatment = evaluation.treatment
        resin_params = cementation_params = None

        if treatment is TreatmentType.RESINA:
            resin_params = _compact({
                "userId": evaluation.user_id,
                "patientAge": evaluation.patient_age,
                "tooth": evaluation.tooth,
                "region": evaluation.region or get_full_region(evaluation.tooth),
                "cavityClass": evaluation.cavity_class or "Classe I",
                "restorationSize": evaluation.restoration_size or "Média",
                "substrate": evaluation.substrate or "Esmalte e Dentina",
                "bruxism": evaluation.bruxism,
                "aestheticLevel": evaluation.aesthetic_level,
                "toothColor": evaluation.tooth_color,
                "stratificationNeeded": True,
                "budget": evaluation.budget,
                "longevityExpectation": evaluation.longevity_expectation,
                "aestheticGoals": evaluation.aesthetic_goals or None,
            })
        elif treatment is TreatmentType.PORCELANA:
            cementation_params = _compact({
                "teeth": [evaluation.tooth],
                "shade": evaluation.tooth_color,
                "ceramicType": DEFAULT_CERAMIC_TYPE,
                "substrate": evaluation.substrate or "Esmalte e Dentina",
                "substrateCondition": evaluation.substrate_condition or "Saudável",
                "aestheticGoals": evaluation.aesthetic_goals or None,
            })

        return DispatchRequest(
            treatment_type=evaluation.treatment_type,
            evaluation_id=evaluation.id,
            tooth=evaluation.tooth,
            resin_params=resin_params,
            cementation_params=cementation_params,
            generic_tooth_data=tooth_data
            or PendingTooth(tooth=evaluation.tooth, indication_reason=evaluation.ai_indication_reason),
        )
