"""Protocol dispatch router.

Given a treatment type, make exactly one of three calls:

* ``resina``    → ``clients.invoke_resin(params)``        (AI)
* ``porcelana`` → ``clients.invoke_cementation(params)``  (AI)
* everything else → synthesize a generic protocol, let the optional
  enrichment hook adjust it, then ``clients.save_generic_protocol``.

Unrecognized treatment types take the generic path with a warning rather
than failing: new types can reach stored data before this router is
updated.  Errors from the clients propagate untouched; refund policy
belongs to the credit guard, not here.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, assert_never

from pydantic import BaseModel

from odonto.errors import DispatchError
from odonto.generic_protocols import build_generic_protocol
from odonto.models import GenericProtocol, PendingTooth, TreatmentType

logger = logging.getLogger(__name__)

DEFAULT_CERAMIC_TYPE = "Dissilicato de lítio"

EnrichHook = Callable[[GenericProtocol], Awaitable[GenericProtocol | None] | GenericProtocol | None]


class DispatchRequest(BaseModel):
    treatment_type: str
    evaluation_id: str
    tooth: str
    resin_params: dict[str, Any] | None = None
    cementation_params: dict[str, Any] | None = None
    generic_tooth_data: PendingTooth | None = None


class DispatchClients(Protocol):
    async def invoke_resin(self, params: dict[str, Any]) -> Any: ...

    async def invoke_cementation(self, params: dict[str, Any]) -> Any: ...

    async def save_generic_protocol(self, evaluation_id: str, protocol: GenericProtocol) -> None: ...


async def dispatch_treatment_protocol(
    request: DispatchRequest,
    clients: DispatchClients,
    *,
    enrich: EnrichHook | None = None,
) -> None:
    """Route one evaluation to its protocol source.  Raises on failure."""
    treatment = TreatmentType.parse(request.treatment_type)

    match treatment:
        case TreatmentType.RESINA:
            if request.resin_params is None:
                raise DispatchError("Parâmetros de resina ausentes")
            await clients.invoke_resin({**request.resin_params, "evaluationId": request.evaluation_id})

        case TreatmentType.PORCELANA:
            if request.cementation_params is None:
                raise DispatchError("Parâmetros de cimentação ausentes")
            await clients.invoke_cementation(
                {**request.cementation_params, "evaluationId": request.evaluation_id}
            )

        case (
            TreatmentType.COROA
            | TreatmentType.IMPLANTE
            | TreatmentType.ENDODONTIA
            | TreatmentType.ENCAMINHAMENTO
            | TreatmentType.GENGIVOPLASTIA
            | TreatmentType.RECOBRIMENTO_RADICULAR
        ):
            await _save_generic(request, clients, enrich)

        case TreatmentType.UNRECOGNIZED:
            logger.warning(
                "Unrecognized treatment type %r for evaluation %s; using generic protocol",
                request.treatment_type, request.evaluation_id,
            )
            await _save_generic(request, clients, enrich)

        case _:
            assert_never(treatment)


async def _save_generic(
    request: DispatchRequest,
    clients: DispatchClients,
    enrich: EnrichHook | None,
) -> None:
    protocol = build_generic_protocol(request.treatment_type, request.tooth, request.generic_tooth_data)
    if enrich is not None:
        enriched = enrich(protocol)
        if isinstance(enriched, Awaitable):
            enriched = await enriched
        if enriched is not None:
            protocol = enriched
    await clients.save_generic_protocol(request.evaluation_id, protocol)
