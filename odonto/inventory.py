"""The dentist's resin inventory.

Inventory entries are product lines the dentist keeps in the office,
each tagged with a price range.  The resin prompt lists the lines that
fit the case budget first so the recommendation favours material the
dentist already has.
"""

from __future__ import annotations

import asyncio
import logging
import time

import sqlalchemy as sa
from pydantic import BaseModel, field_validator
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from odonto.db import user_inventory

logger = logging.getLogger(__name__)

PRICE_RANGES = ("Econômico", "Intermediário", "Médio-alto", "Premium")

# Price ranges a budget may use; Premium lines only fit a premium budget
BUDGET_PRICE_RANGES: dict[str, frozenset[str]] = {
    "econômico": frozenset({"Econômico", "Intermediário"}),
    "moderado": frozenset({"Econômico", "Intermediário", "Médio-alto"}),
    "padrão": frozenset({"Econômico", "Intermediário", "Médio-alto"}),
    "premium": frozenset(PRICE_RANGES),
}


class InventoryItem(BaseModel):
    brand: str
    product_line: str
    price_range: str

    @field_validator("price_range")
    @classmethod
    def _known_price_range(cls, value: str) -> str:
        if value not in PRICE_RANGES:
            raise ValueError(f"price_range must be one of {', '.join(PRICE_RANGES)}")
        return value

    @property
    def label(self) -> str:
        return f"{self.brand} - {self.product_line}"


def budget_appropriate(items: list[InventoryItem], budget: str) -> list[InventoryItem]:
    """Items whose price range fits ``budget``; unknown budgets allow everything."""
    allowed = BUDGET_PRICE_RANGES.get(budget, frozenset(PRICE_RANGES))
    return [item for item in items if item.price_range in allowed]


class InventoryRepository:
    def __init__(self, engine: Engine):
        self._engine = engine

    async def list_for_user(self, user_id: str) -> list[InventoryItem]:
        return await asyncio.to_thread(self._list, user_id)

    def _list(self, user_id: str) -> list[InventoryItem]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                sa.select(user_inventory.c.brand, user_inventory.c.product_line, user_inventory.c.price_range)
                .where(user_inventory.c.user_id == user_id)
                .order_by(user_inventory.c.brand, user_inventory.c.product_line)
            ).all()
        return [InventoryItem.model_validate(dict(r._mapping)) for r in rows]

    async def add_items(self, user_id: str, items: list[InventoryItem]) -> None:
        """Add product lines, updating the price range of lines already listed."""
        if items:
            await asyncio.to_thread(self._upsert, user_id, items)

    def _upsert(self, user_id: str, items: list[InventoryItem]) -> None:
        insert = postgresql.insert if self._engine.dialect.name == "postgresql" else sqlite.insert
        now = time.time()
        with self._engine.begin() as conn:
            for item in items:
                stmt = insert(user_inventory).values(user_id=user_id, created_at=now, **item.model_dump())
                conn.execute(
                    stmt.on_conflict_do_update(
                        index_elements=[user_inventory.c.user_id, user_inventory.c.product_line],
                        set_={"brand": stmt.excluded.brand, "price_range": stmt.excluded.price_range},
                    )
                )
        logger.info("Inventory updated for user=%s (%d lines)", user_id, len(items))

    async def remove_item(self, user_id: str, product_line: str) -> bool:
        return await asyncio.to_thread(self._remove, user_id, product_line)

    def _remove(self, user_id: str, product_line: str) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(
                user_inventory.delete().where(
                    user_inventory.c.user_id == user_id,
                    user_inventory.c.product_line == product_line,
                )
            )
        return result.rowcount > 0
