"""Read-only resin shade catalog.

The safety post-processor resolves layer shades against this catalog.
Rows live in the ``resin_catalog`` table and are seeded from
``odonto/data/resin_catalog.json`` on first start.  Lookups match the
product line by case-insensitive substring, so ``"Z350 XT"`` finds
``"Filtek Z350 XT"``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import sqlalchemy as sa
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from odonto.db import resin_catalog

logger = logging.getLogger(__name__)

_SEED_PATH = Path(__file__).resolve().parent / "data" / "resin_catalog.json"


class CatalogShade(BaseModel):
    brand: str = ""
    product_line: str
    shade: str
    type: str
    opacity: str | None = None


class ShadeCatalog:
    """In-memory index of catalog rows."""

    def __init__(self, rows: list[CatalogShade]):
        self._rows = list(rows)

    def __len__(self) -> int:
        return len(self._rows)

    def rows_for_line(self, product_line: str) -> list[CatalogShade]:
        needle = product_line.lower()
        return [row for row in self._rows if needle in row.product_line.lower()]

    def has_shade(self, product_line: str, shade: str) -> bool:
        return any(row.shade == shade for row in self.rows_for_line(product_line))

    def shades_by_line(self) -> dict[str, list[str]]:
        """Shades grouped by product line, in catalog order."""
        grouped: dict[str, list[str]] = {}
        for row in self._rows:
            grouped.setdefault(row.product_line, []).append(row.shade)
        return grouped


def load_seed_rows(path: Path = _SEED_PATH) -> list[CatalogShade]:
    """Read the bundled catalog seed file."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.error("Resin catalog seed not found at %s", path)
        return []
    return [CatalogShade.model_validate(item) for item in raw]


def seed_catalog_if_empty(engine: Engine) -> int:
    """Populate ``resin_catalog`` from the seed file.  Returns rows inserted."""
    with engine.begin() as conn:
        existing = conn.execute(sa.select(resin_catalog.c.id).limit(1)).first()
        if existing is not None:
            return 0
        rows = [row.model_dump() for row in load_seed_rows()]
        if rows:
            conn.execute(resin_catalog.insert(), rows)
    logger.info("Seeded resin catalog with %d shades", len(rows))
    return len(rows)


def load_catalog(engine: Engine) -> ShadeCatalog:
    """Load every catalog row into a :class:`ShadeCatalog`."""
    with engine.connect() as conn:
        result = conn.execute(
            sa.select(
                resin_catalog.c.brand,
                resin_catalog.c.product_line,
                resin_catalog.c.shade,
                resin_catalog.c.type,
                resin_catalog.c.opacity,
            ).order_by(resin_catalog.c.id)
        )
        rows = [CatalogShade.model_validate(dict(r._mapping)) for r in result]
    logger.info("Loaded %d resin catalog shades", len(rows))
    return ShadeCatalog(rows)
