"""Metered credits and the guard that combines them with rate limiting.

A credit is consumed per AI-backed operation, **after** the AI response
has passed schema validation, and refunded if anything fails before the
response reaches the caller.

Idempotency
-----------
``credit_transactions`` has a unique ``(user_id, operation_id, type)``
key.  Consuming twice with the same operation id charges once; a refund
only applies if a matching consume exists and no refund was recorded
yet.  Operation ids are generated server-side, one per AI call, and
:meth:`CreditGuard.credit_scope` refuses an id that was already
charged, so a replayed id can never buy a second AI response.

Consistency gap
---------------
A refund that itself fails is logged (``credit refund failed``) and
counted in metrics, never retried in-process.  Those log lines carry the
``(user, operation, operation_id)`` tuple a reconciliation job needs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import sqlalchemy as sa
from pydantic import BaseModel
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from odonto.compensation import best_effort
from odonto.db import credit_balances, credit_costs, credit_transactions
from odonto.errors import InsufficientCreditsError, RateLimitError, ServiceUnavailableError
from odonto.services.metrics import MetricsClient, metrics
from odonto.services.rate_limit import RateLimitConfig, RateLimitResult, SqlRateLimitStore, check_rate_limit

logger = logging.getLogger(__name__)

TX_CONSUME = "consume"
TX_REFUND = "refund"


class CreditCheckResult(BaseModel):
    allowed: bool
    credits_available: int
    credits_required: int
    is_free_user: bool = True
    already_consumed: bool = False


class SqlCreditLedger:
    """Credit balances and transactions.  Methods are blocking."""

    def __init__(self, engine: Engine):
        self._engine = engine

    # ── Reads ────────────────────────────────────────────────────────

    def cost_of(self, operation: str, conn=None) -> int:
        stmt = sa.select(credit_costs.c.cost).where(credit_costs.c.operation == operation)
        if conn is None:
            with self._engine.connect() as conn:
                cost = conn.execute(stmt).scalar_one_or_none()
        else:
            cost = conn.execute(stmt).scalar_one_or_none()
        return 1 if cost is None else cost

    def balance(self, user_id: str, conn=None) -> tuple[int, bool]:
        """Return ``(credits, is_free_user)``; unknown users have none."""
        stmt = sa.select(credit_balances.c.credits, credit_balances.c.is_free_user).where(
            credit_balances.c.user_id == user_id
        )
        if conn is None:
            with self._engine.connect() as conn:
                row = conn.execute(stmt).first()
        else:
            row = conn.execute(stmt).first()
        return (row.credits, bool(row.is_free_user)) if row else (0, True)

    def check(self, user_id: str, operation: str) -> CreditCheckResult:
        """Non-consuming balance check used to fail fast before the AI call."""
        cost = self.cost_of(operation)
        credits, is_free = self.balance(user_id)
        return CreditCheckResult(
            allowed=credits >= cost,
            credits_available=credits,
            credits_required=cost,
            is_free_user=is_free,
        )

    # ── Writes ───────────────────────────────────────────────────────

    def grant(self, user_id: str, credits: int, *, is_free_user: bool = True) -> None:
        """Set a user's balance (admin / billing webhook entry point)."""
        now = time.time()
        with self._engine.begin() as conn:
            updated = conn.execute(
                credit_balances.update()
                .where(credit_balances.c.user_id == user_id)
                .values(credits=credits, is_free_user=is_free_user, updated_at=now)
            )
            if updated.rowcount == 0:
                conn.execute(
                    credit_balances.insert().values(
                        user_id=user_id, credits=credits, is_free_user=is_free_user, updated_at=now,
                    )
                )

    def consume(self, user_id: str, operation: str, operation_id: str) -> CreditCheckResult:
        """Charge the operation's cost once per ``operation_id``."""
        try:
            with self._engine.begin() as conn:
                cost = self.cost_of(operation, conn)
                if self._has_tx(conn, user_id, operation_id, TX_CONSUME):
                    credits, is_free = self.balance(user_id, conn)
                    return CreditCheckResult(
                        allowed=True,
                        credits_available=credits,
                        credits_required=cost,
                        is_free_user=is_free,
                        already_consumed=True,
                    )

                charged = conn.execute(
                    credit_balances.update()
                    .where(
                        credit_balances.c.user_id == user_id,
                        credit_balances.c.credits >= cost,
                    )
                    .values(credits=credit_balances.c.credits - cost, updated_at=time.time())
                )
                credits, is_free = self.balance(user_id, conn)
                if charged.rowcount == 0:
                    return CreditCheckResult(
                        allowed=False,
                        credits_available=credits,
                        credits_required=cost,
                        is_free_user=is_free,
                    )
                conn.execute(
                    credit_transactions.insert().values(
                        user_id=user_id,
                        operation=operation,
                        operation_id=operation_id,
                        type=TX_CONSUME,
                        amount=cost,
                        created_at=time.time(),
                    )
                )
        except IntegrityError:
            # a concurrent request with the same operation id won the insert
            logger.info("Duplicate consume for user=%s operation_id=%s", user_id, operation_id)
            credits, is_free = self.balance(user_id)
            return CreditCheckResult(
                allowed=True,
                credits_available=credits,
                credits_required=self.cost_of(operation),
                is_free_user=is_free,
                already_consumed=True,
            )

        logger.info(
            "Consumed %d credit(s) user=%s operation=%s operation_id=%s remaining=%d",
            cost, user_id, operation, operation_id, credits,
        )
        return CreditCheckResult(
            allowed=True, credits_available=credits, credits_required=cost, is_free_user=is_free,
        )

    def refund(self, user_id: str, operation: str, operation_id: str) -> bool:
        """Return the credits of a recorded consume.  Returns True if refunded now."""
        try:
            with self._engine.begin() as conn:
                consumed = conn.execute(
                    sa.select(credit_transactions.c.amount).where(
                        credit_transactions.c.user_id == user_id,
                        credit_transactions.c.operation_id == operation_id,
                        credit_transactions.c.type == TX_CONSUME,
                    )
                ).scalar_one_or_none()
                if consumed is None:
                    logger.warning(
                        "Refund skipped, no consume recorded user=%s operation_id=%s", user_id, operation_id,
                    )
                    return False
                if self._has_tx(conn, user_id, operation_id, TX_REFUND):
                    return False

                conn.execute(
                    credit_transactions.insert().values(
                        user_id=user_id,
                        operation=operation,
                        operation_id=operation_id,
                        type=TX_REFUND,
                        amount=consumed,
                        created_at=time.time(),
                    )
                )
                conn.execute(
                    credit_balances.update()
                    .where(credit_balances.c.user_id == user_id)
                    .values(credits=credit_balances.c.credits + consumed, updated_at=time.time())
                )
        except IntegrityError:
            logger.info("Duplicate refund for user=%s operation_id=%s", user_id, operation_id)
            return False

        logger.info("Refunded %d credit(s) user=%s operation=%s operation_id=%s", consumed, user_id, operation, operation_id)
        return True

    @staticmethod
    def _has_tx(conn, user_id: str, operation_id: str, tx_type: str) -> bool:
        return (
            conn.execute(
                sa.select(credit_transactions.c.id).where(
                    credit_transactions.c.user_id == user_id,
                    credit_transactions.c.operation_id == operation_id,
                    credit_transactions.c.type == tx_type,
                )
            ).first()
            is not None
        )


class CreditGuard:
    """Rate limiting plus credit consume / refund for one AI-backed call."""

    def __init__(
        self,
        rate_limit_store: SqlRateLimitStore,
        ledger: SqlCreditLedger,
        *,
        metrics_client: MetricsClient | None = None,
    ):
        self._rate_limit_store = rate_limit_store
        self._ledger = ledger
        self._metrics = metrics_client or metrics

    async def enforce_rate_limit(self, user_id: str, operation: str, config: RateLimitConfig) -> RateLimitResult:
        result = await check_rate_limit(self._rate_limit_store, user_id, operation, config)
        if not result.allowed:
            raise RateLimitError(result)
        return result

    async def ensure_credits(self, user_id: str, operation: str) -> None:
        """Fail fast with 402 before spending an AI call the user cannot pay for."""
        try:
            result = await asyncio.to_thread(self._ledger.check, user_id, operation)
        except Exception as exc:
            logger.exception("Credit check failed for user=%s operation=%s", user_id, operation)
            raise ServiceUnavailableError() from exc
        if not result.allowed:
            raise InsufficientCreditsError(
                result.credits_available, result.credits_required, is_free_user=result.is_free_user,
            )

    @asynccontextmanager
    async def credit_scope(self, user_id: str, operation: str, operation_id: str) -> AsyncIterator[CreditCheckResult]:
        """Consume on entry; refund and re-raise if the body fails.

        Consume errors fail closed: without a working ledger nothing is
        billed and nothing is generated.
        """
        try:
            result = await asyncio.to_thread(self._ledger.consume, user_id, operation, operation_id)
        except Exception as exc:
            logger.exception("Credit consume failed for user=%s operation=%s", user_id, operation)
            raise ServiceUnavailableError() from exc

        if not result.allowed:
            raise InsufficientCreditsError(
                result.credits_available, result.credits_required, is_free_user=result.is_free_user,
            )
        if result.already_consumed:
            # already charged by an earlier call
            logger.error(
                "Operation id reused user=%s operation=%s operation_id=%s; refusing", user_id, operation, operation_id,
            )
            raise ServiceUnavailableError()

        try:
            yield result
        except Exception:
            await self.refund(user_id, operation, operation_id)
            raise

    async def refund(self, user_id: str, operation: str, operation_id: str) -> bool:
        refunded = await best_effort(
            f"credit refund {operation}/{operation_id}",
            asyncio.to_thread,
            self._ledger.refund,
            user_id,
            operation,
            operation_id,
        )
        if refunded is None:
            logger.error(
                "credit refund failed user=%s operation=%s operation_id=%s; needs reconciliation",
                user_id, operation, operation_id,
            )
            self._metrics.increment("Credits/RefundFailed", Operation=operation)
            return False
        return refunded
