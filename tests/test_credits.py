"""Tests for the credit ledger and the credit guard."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import sqlalchemy as sa

from odonto.db import credit_transactions
from odonto.errors import InsufficientCreditsError, RateLimitError, ServiceUnavailableError
from odonto.services.credits import CreditGuard, SqlCreditLedger
from odonto.services.metrics import MetricsClient
from odonto.services.rate_limit import RateLimitConfig, SqlRateLimitStore

OPERATION = "resin_recommendation"


@pytest.fixture
def ledger(engine) -> SqlCreditLedger:
    return SqlCreditLedger(engine)


@pytest.fixture
def metrics_client() -> MetricsClient:
    with patch.dict("os.environ", {"METRICS_ENABLED": "false"}):
        return MetricsClient()


@pytest.fixture
def guard(engine, ledger, metrics_client) -> CreditGuard:
    return CreditGuard(SqlRateLimitStore(engine), ledger, metrics_client=metrics_client)


def _transactions(engine, user_id):
    with engine.connect() as conn:
        rows = conn.execute(
            sa.select(credit_transactions.c.operation_id, credit_transactions.c.type)
            .where(credit_transactions.c.user_id == user_id)
            .order_by(credit_transactions.c.id)
        ).all()
    return [(r.operation_id, r.type) for r in rows]


# ── Ledger ───────────────────────────────────────────────────────────


class TestLedger:
    def test_unknown_user_has_no_credits(self, ledger):
        result = ledger.check("nobody", OPERATION)
        assert result.allowed is False
        assert result.credits_available == 0
        assert result.credits_required == 1

    def test_default_cost_seeded(self, ledger):
        assert ledger.cost_of("cementation_recommendation") == 1

    def test_consume_charges_once_per_operation_id(self, ledger, engine):
        ledger.grant("u1", 5)
        first = ledger.consume("u1", OPERATION, "req-1")
        again = ledger.consume("u1", OPERATION, "req-1")

        assert first.allowed is True
        assert first.credits_available == 4
        assert again.already_consumed is True
        assert ledger.balance("u1") == (4, True)
        assert _transactions(engine, "u1") == [("req-1", "consume")]

    def test_consume_denied_without_balance(self, ledger):
        ledger.grant("u1", 0)
        result = ledger.consume("u1", OPERATION, "req-1")
        assert result.allowed is False
        assert ledger.balance("u1") == (0, True)

    def test_refund_restores_balance_once(self, ledger, engine):
        ledger.grant("u1", 3)
        ledger.consume("u1", OPERATION, "req-1")

        assert ledger.refund("u1", OPERATION, "req-1") is True
        assert ledger.refund("u1", OPERATION, "req-1") is False
        assert ledger.balance("u1") == (3, True)
        assert _transactions(engine, "u1") == [("req-1", "consume"), ("req-1", "refund")]

    def test_refund_without_consume_is_noop(self, ledger):
        ledger.grant("u1", 3)
        assert ledger.refund("u1", OPERATION, "never-consumed") is False
        assert ledger.balance("u1") == (3, True)

    def test_grant_overwrites_balance(self, ledger):
        ledger.grant("u1", 3)
        ledger.grant("u1", 10, is_free_user=False)
        assert ledger.balance("u1") == (10, False)


# ── Guard ────────────────────────────────────────────────────────────


class TestCreditGuard:
    @pytest.mark.asyncio
    async def test_ensure_credits_raises_402(self, guard):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await guard.ensure_credits("broke-user", OPERATION)
        body = exc_info.value.to_dict()
        assert body["code"] == "INSUFFICIENT_CREDITS"
        assert body["credits_required"] == 1
        assert exc_info.value.status_code == 402

    @pytest.mark.asyncio
    async def test_ensure_credits_fails_closed_on_storage_error(self, guard, ledger):
        with patch.object(ledger, "check", side_effect=RuntimeError("db down")):
            with pytest.raises(ServiceUnavailableError):
                await guard.ensure_credits("u1", OPERATION)

    @pytest.mark.asyncio
    async def test_scope_consumes_on_success(self, guard, ledger):
        ledger.grant("u1", 2)
        async with guard.credit_scope("u1", OPERATION, "req-1") as result:
            assert result.allowed is True
        assert ledger.balance("u1") == (1, True)

    @pytest.mark.asyncio
    async def test_scope_refunds_with_same_operation_id_on_failure(self, guard, ledger, engine):
        ledger.grant("u1", 2)
        with patch.object(ledger, "refund", wraps=ledger.refund) as refund:
            with pytest.raises(ValueError):
                async with guard.credit_scope("u1", OPERATION, "req-1"):
                    raise ValueError("save failed")

        refund.assert_called_once_with("u1", OPERATION, "req-1")
        assert ledger.balance("u1") == (2, True)
        assert _transactions(engine, "u1") == [("req-1", "consume"), ("req-1", "refund")]

    @pytest.mark.asyncio
    async def test_scope_refuses_reused_operation_id(self, guard, ledger, engine):
        ledger.grant("u1", 3)
        async with guard.credit_scope("u1", OPERATION, "op-1"):
            pass

        with pytest.raises(ServiceUnavailableError):
            async with guard.credit_scope("u1", OPERATION, "op-1"):
                pytest.fail("body must not run")

        assert ledger.balance("u1") == (2, True)
        assert _transactions(engine, "u1") == [("op-1", "consume")]

    @pytest.mark.asyncio
    async def test_scope_denies_without_credits(self, guard):
        with pytest.raises(InsufficientCreditsError):
            async with guard.credit_scope("broke-user", OPERATION, "req-1"):
                pytest.fail("body must not run")

    @pytest.mark.asyncio
    async def test_failed_refund_is_logged_and_counted(self, guard, ledger, metrics_client, caplog):
        ledger.grant("u1", 2)
        with patch.object(ledger, "refund", side_effect=RuntimeError("db down")):
            with pytest.raises(ValueError):
                async with guard.credit_scope("u1", OPERATION, "req-1"):
                    raise ValueError("save failed")

        assert "credit refund failed" in caplog.text
        names = [m["MetricName"] for m in metrics_client._buffer]
        assert "Credits/RefundFailed" in names

    @pytest.mark.asyncio
    async def test_rate_limit_raises_429(self, guard):
        config = RateLimitConfig(per_minute=1, per_hour=1, per_day=1)
        await guard.enforce_rate_limit("u1", "recommend-resin", config)
        with pytest.raises(RateLimitError) as exc_info:
            await guard.enforce_rate_limit("u1", "recommend-resin", config)
        assert exc_info.value.status_code == 429
        assert exc_info.value.to_dict()["retry_after"] >= 1

    @pytest.mark.asyncio
    async def test_consume_storage_error_fails_closed(self, guard, ledger):
        with patch.object(ledger, "consume", MagicMock(side_effect=RuntimeError("db down"))):
            with pytest.raises(ServiceUnavailableError):
                async with guard.credit_scope("u1", OPERATION, "req-1"):
                    pytest.fail("body must not run")
