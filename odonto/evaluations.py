"""Evaluation and pending-tooth persistence.

The repository exposes async methods; each runs its blocking SQLAlchemy
work on the default thread pool via ``asyncio.to_thread`` so the event
loop stays free while the database round-trips.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Iterable
from typing import Any

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from odonto.db import evaluations, pending_teeth
from odonto.models import Evaluation, EvaluationStatus, PendingTooth
from odonto.validation import contralateral_tooth

logger = logging.getLogger(__name__)

_UPDATABLE = frozenset(c.name for c in evaluations.columns) - {"id", "user_id", "session_id", "created_at"}


def _clean_patch(patch: dict[str, Any]) -> dict[str, Any]:
    unknown = set(patch) - _UPDATABLE
    if unknown:
        raise ValueError(f"Unknown evaluation fields: {sorted(unknown)}")
    values = {k: (v.value if isinstance(v, EvaluationStatus) else v) for k, v in patch.items()}
    values["updated_at"] = time.time()
    return values


class EvaluationRepository:
    def __init__(self, engine: Engine):
        self._engine = engine

    # ── Evaluations ──────────────────────────────────────────────────

    async def insert_evaluation(self, row: dict[str, Any]) -> Evaluation:
        return await asyncio.to_thread(self._insert, row)

    def _insert(self, row: dict[str, Any]) -> Evaluation:
        now = time.time()
        values = {
            "id": str(uuid.uuid4()),
            "status": EvaluationStatus.ANALYZING.value,
            "checklist_progress": [],
            **row,
            "created_at": now,
            "updated_at": now,
        }
        if isinstance(values["status"], EvaluationStatus):
            values["status"] = values["status"].value
        with self._engine.begin() as conn:
            conn.execute(evaluations.insert().values(**values))
        return Evaluation.model_validate(values)

    async def get_by_id(self, evaluation_id: str) -> Evaluation | None:
        return await asyncio.to_thread(self._get, evaluation_id)

    def _get(self, evaluation_id: str) -> Evaluation | None:
        with self._engine.connect() as conn:
            row = conn.execute(sa.select(evaluations).where(evaluations.c.id == evaluation_id)).first()
        return Evaluation.model_validate(dict(row._mapping)) if row else None

    async def list_by_session(self, session_id: str, user_id: str) -> list[Evaluation]:
        return await asyncio.to_thread(self._list_by_session, session_id, user_id)

    def _list_by_session(self, session_id: str, user_id: str) -> list[Evaluation]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                sa.select(evaluations)
                .where(evaluations.c.session_id == session_id, evaluations.c.user_id == user_id)
                .order_by(evaluations.c.created_at, evaluations.c.tooth)
            ).all()
        return [Evaluation.model_validate(dict(r._mapping)) for r in rows]

    async def list_by_ids(self, evaluation_ids: Iterable[str]) -> list[Evaluation]:
        """Fetch evaluations preserving the order of ``evaluation_ids``."""
        ids = list(evaluation_ids)
        found = await asyncio.to_thread(self._list_by_ids, ids)
        by_id = {e.id: e for e in found}
        return [by_id[i] for i in ids if i in by_id]

    def _list_by_ids(self, ids: list[str]) -> list[Evaluation]:
        if not ids:
            return []
        with self._engine.connect() as conn:
            rows = conn.execute(sa.select(evaluations).where(evaluations.c.id.in_(ids))).all()
        return [Evaluation.model_validate(dict(r._mapping)) for r in rows]

    async def find_contralateral_protocol(self, session_id: str, user_id: str, tooth: str) -> Evaluation | None:
        """The session's mirror-tooth evaluation, if it already has a resin protocol."""
        mirror = contralateral_tooth(tooth)
        if mirror is None:
            return None
        return await asyncio.to_thread(self._find_with_protocol, session_id, user_id, mirror)

    def _find_with_protocol(self, session_id: str, user_id: str, tooth: str) -> Evaluation | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                sa.select(evaluations)
                .where(
                    evaluations.c.session_id == session_id,
                    evaluations.c.user_id == user_id,
                    evaluations.c.tooth == tooth,
                    evaluations.c.stratification_protocol.is_not(None),
                )
                .order_by(evaluations.c.updated_at.desc())
                .limit(1)
            ).first()
        return Evaluation.model_validate(dict(row._mapping)) if row else None

    async def update_evaluation(self, evaluation_id: str, patch: dict[str, Any]) -> None:
        await self.update_evaluations_bulk([evaluation_id], patch)

    async def update_status(self, evaluation_id: str, status: EvaluationStatus) -> None:
        await self.update_evaluations_bulk([evaluation_id], {"status": status})

    async def update_status_bulk(self, evaluation_ids: list[str], status: EvaluationStatus) -> None:
        await self.update_evaluations_bulk(evaluation_ids, {"status": status})

    async def update_evaluations_bulk(self, evaluation_ids: list[str], patch: dict[str, Any]) -> None:
        if not evaluation_ids:
            return
        values = _clean_patch(patch)
        await asyncio.to_thread(self._update, list(evaluation_ids), values)

    def _update(self, ids: list[str], values: dict[str, Any]) -> None:
        with self._engine.begin() as conn:
            conn.execute(evaluations.update().where(evaluations.c.id.in_(ids)).values(**values))

    # ── Pending teeth ────────────────────────────────────────────────

    async def add_pending_teeth(self, session_id: str, user_id: str, teeth: list[PendingTooth]) -> None:
        await asyncio.to_thread(self._add_pending, session_id, user_id, teeth)

    def _add_pending(self, session_id: str, user_id: str, teeth: list[PendingTooth]) -> None:
        now = time.time()
        with self._engine.begin() as conn:
            conn.execute(
                pending_teeth.delete().where(
                    pending_teeth.c.session_id == session_id,
                    pending_teeth.c.user_id == user_id,
                    pending_teeth.c.tooth.in_([t.tooth for t in teeth]),
                )
            )
            if teeth:
                conn.execute(
                    pending_teeth.insert(),
                    [
                        {
                            "session_id": session_id,
                            "user_id": user_id,
                            "tooth": t.tooth,
                            "data": t.model_dump(),
                            "created_at": now,
                        }
                        for t in teeth
                    ],
                )

    async def list_pending_teeth(self, session_id: str, user_id: str) -> list[PendingTooth]:
        return await asyncio.to_thread(self._list_pending, session_id, user_id)

    def _list_pending(self, session_id: str, user_id: str) -> list[PendingTooth]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                sa.select(pending_teeth.c.data)
                .where(pending_teeth.c.session_id == session_id, pending_teeth.c.user_id == user_id)
                .order_by(pending_teeth.c.id)
            ).all()
        return [PendingTooth.model_validate(r.data) for r in rows]

    async def delete_pending_teeth(self, session_id: str, user_id: str, teeth: list[str]) -> None:
        if not teeth:
            return
        await asyncio.to_thread(self._delete_pending, session_id, user_id, list(teeth))

    def _delete_pending(self, session_id: str, user_id: str, teeth: list[str]) -> None:
        with self._engine.begin() as conn:
            result = conn.execute(
                pending_teeth.delete().where(
                    pending_teeth.c.session_id == session_id,
                    pending_teeth.c.user_id == user_id,
                    pending_teeth.c.tooth.in_(teeth),
                )
            )
        logger.info("Deleted %d pending teeth from session %s", result.rowcount, session_id)
