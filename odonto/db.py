"""SQLAlchemy Core schema and engine factory.

Timestamps are stored as epoch seconds (``Float``).  Protocol payloads
are JSON columns.  The rate-limit and credit tables are the only
cross-request shared state; their atomicity comes from unique
constraints plus single-statement upserts and conditional updates, never
from in-process locks.
"""

from __future__ import annotations

import logging

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

metadata = sa.MetaData()

evaluations = sa.Table(
    "evaluations",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), nullable=False),
    sa.Column("session_id", sa.String(36), nullable=False),
    sa.Column("patient_name", sa.Text),
    sa.Column("patient_age", sa.String(10)),
    sa.Column("tooth", sa.String(2), nullable=False),
    sa.Column("region", sa.Text),
    sa.Column("cavity_class", sa.Text),
    sa.Column("restoration_size", sa.Text),
    sa.Column("substrate", sa.Text),
    sa.Column("depth", sa.Text),
    sa.Column("substrate_condition", sa.Text),
    sa.Column("enamel_condition", sa.Text),
    sa.Column("tooth_color", sa.Text),
    sa.Column("aesthetic_level", sa.Text),
    sa.Column("aesthetic_goals", sa.Text),
    sa.Column("budget", sa.Text),
    sa.Column("longevity_expectation", sa.Text),
    sa.Column("bruxism", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("stratification_needed", sa.Boolean, nullable=False, server_default=sa.true()),
    sa.Column("clinical_notes", sa.Text),
    sa.Column("treatment_type", sa.Text, nullable=False),
    sa.Column("ai_indication_reason", sa.Text),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("stratification_protocol", sa.JSON),
    sa.Column("cementation_protocol", sa.JSON),
    sa.Column("generic_protocol", sa.JSON),
    sa.Column("recommendation_text", sa.Text),
    sa.Column("checklist_progress", sa.JSON, nullable=False),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.Column("updated_at", sa.Float, nullable=False),
)
sa.Index("idx_evaluations_session", evaluations.c.session_id, evaluations.c.user_id)

pending_teeth = sa.Table(
    "pending_teeth",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("session_id", sa.String(36), nullable=False),
    sa.Column("user_id", sa.String(36), nullable=False),
    sa.Column("tooth", sa.String(2), nullable=False),
    sa.Column("data", sa.JSON, nullable=False),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.UniqueConstraint("session_id", "user_id", "tooth", name="uq_pending_teeth_session_user_tooth"),
)

rate_limits = sa.Table(
    "rate_limits",
    metadata,
    sa.Column("user_id", sa.String(36), primary_key=True),
    sa.Column("operation", sa.String(64), primary_key=True),
    sa.Column("minute_count", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("minute_window", sa.Float, nullable=False),
    sa.Column("hour_count", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("hour_window", sa.Float, nullable=False),
    sa.Column("day_count", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("day_window", sa.Float, nullable=False),
    sa.Column("updated_at", sa.Float, nullable=False),
)

credit_balances = sa.Table(
    "credit_balances",
    metadata,
    sa.Column("user_id", sa.String(36), primary_key=True),
    sa.Column("credits", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("is_free_user", sa.Boolean, nullable=False, server_default=sa.true()),
    sa.Column("updated_at", sa.Float, nullable=False),
)

credit_costs = sa.Table(
    "credit_costs",
    metadata,
    sa.Column("operation", sa.String(64), primary_key=True),
    sa.Column("cost", sa.Integer, nullable=False),
)

credit_transactions = sa.Table(
    "credit_transactions",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("user_id", sa.String(36), nullable=False),
    sa.Column("operation", sa.String(64), nullable=False),
    sa.Column("operation_id", sa.String(128), nullable=False),
    sa.Column("type", sa.String(16), nullable=False),
    sa.Column("amount", sa.Integer, nullable=False),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.UniqueConstraint("user_id", "operation_id", "type", name="uq_credit_tx_idempotency"),
)

user_inventory = sa.Table(
    "user_inventory",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("user_id", sa.String(36), nullable=False),
    sa.Column("brand", sa.Text, nullable=False),
    sa.Column("product_line", sa.Text, nullable=False),
    sa.Column("price_range", sa.String(32), nullable=False),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.UniqueConstraint("user_id", "product_line", name="uq_user_inventory_line"),
)

resin_catalog = sa.Table(
    "resin_catalog",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("brand", sa.Text, nullable=False),
    sa.Column("product_line", sa.Text, nullable=False),
    sa.Column("shade", sa.Text, nullable=False),
    sa.Column("type", sa.Text, nullable=False),
    sa.Column("opacity", sa.Text),
)
sa.Index("idx_resin_catalog_line", resin_catalog.c.product_line)

DEFAULT_CREDIT_COSTS = {
    "resin_recommendation": 1,
    "cementation_recommendation": 1,
}


def create_db_engine(url: str) -> Engine:
    """Create an engine for ``url``.

    In-memory SQLite gets a single shared connection so every thread sees
    the same database.
    """
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}, "future": True}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return sa.create_engine(url, **kwargs)
    return sa.create_engine(url, pool_pre_ping=True, future=True)


def init_db(engine: Engine) -> None:
    """Create missing tables and seed default credit costs."""
    metadata.create_all(engine)
    with engine.begin() as conn:
        existing = {row.operation for row in conn.execute(sa.select(credit_costs.c.operation))}
        missing = [
            {"operation": op, "cost": cost}
            for op, cost in DEFAULT_CREDIT_COSTS.items()
            if op not in existing
        ]
        if missing:
            conn.execute(credit_costs.insert(), missing)
    logger.info("Database schema ready (%s)", engine.url.get_backend_name())
