"""Wiring of engine, repositories, guards and the AI client.

The server builds one :class:`ServiceContainer` during its lifespan and
stores it on ``app.state``.  Tests build their own with an in-memory
database and a fake AI client.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from odonto.catalog import ShadeCatalog, load_catalog, seed_catalog_if_empty
from odonto.db import create_db_engine, init_db
from odonto.evaluations import EvaluationRepository
from odonto.inventory import InventoryRepository
from odonto.reconciliation import SessionReconciler
from odonto.services.credits import CreditGuard, SqlCreditLedger
from odonto.services.llm_client import AnthropicProtocolClient, ProtocolAIClient
from odonto.services.metrics import MetricsClient
from odonto.services.rate_limit import SqlRateLimitStore
from odonto.services.recommendation import InProcessDispatchClients, RecommendationService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    engine: Engine
    evaluations: EvaluationRepository
    inventory: InventoryRepository
    ledger: SqlCreditLedger
    guard: CreditGuard
    catalog: ShadeCatalog
    recommendations: RecommendationService

    def reconciler(self, user_id: str, request_id: str) -> SessionReconciler:
        """A reconciler whose dispatches are billed to ``user_id`` and logged under ``request_id``."""
        clients = InProcessDispatchClients(self.recommendations, user_id, request_id)
        return SessionReconciler(self.evaluations, clients)

    def close(self) -> None:
        self.engine.dispose()


def build_services(
    database_url: str | None = None,
    *,
    ai_client: ProtocolAIClient | None = None,
    metrics_client: MetricsClient | None = None,
    resin_model: str | None = None,
    cementation_model: str | None = None,
) -> ServiceContainer:
    """Create the schema if needed and wire every service.  Blocking."""
    from odonto import config  # noqa: PLC0415 (ANTHROPIC_API_KEY is only read when serving)

    engine = create_db_engine(database_url or config.DATABASE_URL)
    init_db(engine)
    seed_catalog_if_empty(engine)
    catalog = load_catalog(engine)

    if ai_client is None:
        ai_client = AnthropicProtocolClient(
            config.ANTHROPIC_API_KEY,
            timeout_seconds=config.AI_REQUEST_TIMEOUT_SECONDS,
            max_tokens=config.AI_MAX_TOKENS,
            metrics_client=metrics_client,
        )

    evaluations = EvaluationRepository(engine)
    inventory = InventoryRepository(engine)
    ledger = SqlCreditLedger(engine)
    guard = CreditGuard(SqlRateLimitStore(engine), ledger, metrics_client=metrics_client)
    recommendations = RecommendationService(
        evaluations,
        guard,
        ai_client,
        catalog,
        resin_model=resin_model or config.RESIN_MODEL_NAME,
        cementation_model=cementation_model or config.CEMENTATION_MODEL_NAME,
        inventory=inventory,
    )
    logger.info("Services ready (%d catalog shades)", len(catalog))
    return ServiceContainer(
        engine=engine,
        evaluations=evaluations,
        inventory=inventory,
        ledger=ledger,
        guard=guard,
        catalog=catalog,
        recommendations=recommendations,
    )
