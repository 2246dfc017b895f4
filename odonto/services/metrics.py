"""CloudWatch custom metrics emitter with background batching.

Publishes per-AI-call metrics (count, latency, tokens, estimated cost,
errors) for every prompt the service sends, plus a few ledger counters
(e.g. refunds that could not be applied).

Design
------
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), metrics are
  logged at DEBUG level but **not** pushed to CloudWatch.
* Each ``put_metric_data`` call sends up to 1 000 metric data points
  (the CloudWatch API limit per request).

Usage
-----
>>> from odonto.services.metrics import with_metrics
>>> result = await with_metrics("recommend-resin", "2.1.0", "claude-sonnet-4-5-20250929")(call)
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import threading
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

NAMESPACE = "OdontoProtocols"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call

# USD per 1k tokens: (input, output)
MODEL_COSTS: dict[str, tuple[float, float]] = {
    "claude-sonnet-4-5-20250929": (0.003, 0.015),
    "claude-sonnet-4-5": (0.003, 0.015),
    "claude-haiku-4-5": (0.001, 0.005),
    "claude-opus-4-1": (0.015, 0.075),
}
DEFAULT_COST: tuple[float, float] = (0.003, 0.015)

TResult = TypeVar("TResult")


def estimate_cost(model: str, tokens_in: int, tokens_out: int) -> float:
    """Estimated USD cost of one call; unknown models use ``DEFAULT_COST``."""
    in_rate, out_rate = MODEL_COSTS.get(model, DEFAULT_COST)
    return tokens_in / 1000 * in_rate + tokens_out / 1000 * out_rate


class MetricsPayload(BaseModel, Generic[TResult]):
    """What a wrapped AI call returns: its result and token usage."""

    result: TResult
    tokens_in: int = 0
    tokens_out: int = 0


class PromptCallRecord(BaseModel):
    prompt_id: str
    prompt_version: str
    model: str
    tokens_in: int
    tokens_out: int
    estimated_cost: float
    latency_ms: float
    success: bool
    error: str | None = None
    timestamp: str

    def to_log_dict(self) -> dict[str, Any]:
        data = {
            "promptId": self.prompt_id,
            "promptVersion": self.prompt_version,
            "model": self.model,
            "tokensIn": self.tokens_in,
            "tokensOut": self.tokens_out,
            "estimatedCost": self.estimated_cost,
            "latencyMs": self.latency_ms,
            "success": self.success,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    # ── Lazy CloudWatch client ────────────────────────────────────────

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_prompt_call(self, record: PromptCallRecord) -> None:
        """Buffer the data points for one AI call."""
        now = datetime.now(UTC)
        dims_prompt = [
            {"Name": "PromptId", "Value": record.prompt_id},
            {"Name": "Model", "Value": record.model},
        ]
        status = "success" if record.success else "failure"

        self._append(
            {
                "MetricName": "AI/RequestCount",
                "Dimensions": dims_prompt + [{"Name": "Status", "Value": status}],
                "Timestamp": now,
                "Value": 1,
                "Unit": "Count",
            }
        )
        self._append(
            {
                "MetricName": "AI/Latency",
                "Dimensions": dims_prompt,
                "Timestamp": now,
                "Value": record.latency_ms,
                "Unit": "Milliseconds",
            }
        )
        if record.success:
            for name, value in (
                ("AI/TokensIn", record.tokens_in),
                ("AI/TokensOut", record.tokens_out),
            ):
                self._append(
                    {
                        "MetricName": name,
                        "Dimensions": dims_prompt,
                        "Timestamp": now,
                        "Value": value,
                        "Unit": "Count",
                    }
                )
            self._append(
                {
                    "MetricName": "AI/EstimatedCost",
                    "Dimensions": dims_prompt,
                    "Timestamp": now,
                    "Value": record.estimated_cost,
                    "Unit": "None",
                }
            )
        else:
            self._append(
                {
                    "MetricName": "AI/ErrorCount",
                    "Dimensions": dims_prompt,
                    "Timestamp": now,
                    "Value": 1,
                    "Unit": "Count",
                }
            )
        logger.debug(
            "Metric: %s %s %s latency=%.1fms", record.prompt_id, record.model, status, record.latency_ms,
        )

    def increment(self, metric_name: str, **dimensions: str) -> None:
        """Buffer a single count data point."""
        self._append(
            {
                "MetricName": metric_name,
                "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
                "Timestamp": datetime.now(UTC),
                "Value": 1,
                "Unit": "Count",
            }
        )

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info(
            "Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS,
        )


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()


# ── Prompt-call wrapper ─────────────────────────────────────────────


def with_metrics(
    prompt_id: str,
    prompt_version: str,
    model: str,
    *,
    client: MetricsClient | None = None,
) -> Callable[[Callable[[], Awaitable[MetricsPayload]]], Awaitable[Any]]:
    """Wrap exactly one AI call with latency / token / cost instrumentation.

    ``execute`` returns a :class:`MetricsPayload`; the wrapper returns its
    ``result``.  On failure the record is written with zeroed token and
    cost fields and the original exception is re-raised unchanged.
    """
    sink = client or metrics

    async def run(execute: Callable[[], Awaitable[MetricsPayload]]) -> Any:
        started = time.perf_counter()
        try:
            payload = await execute()
        except Exception as exc:
            record = PromptCallRecord(
                prompt_id=prompt_id,
                prompt_version=prompt_version,
                model=model,
                tokens_in=0,
                tokens_out=0,
                estimated_cost=0.0,
                latency_ms=round((time.perf_counter() - started) * 1000, 1),
                success=False,
                error=str(exc),
                timestamp=datetime.now(UTC).isoformat(),
            )
            _emit(sink, record)
            raise

        record = PromptCallRecord(
            prompt_id=prompt_id,
            prompt_version=prompt_version,
            model=model,
            tokens_in=payload.tokens_in,
            tokens_out=payload.tokens_out,
            estimated_cost=estimate_cost(model, payload.tokens_in, payload.tokens_out),
            latency_ms=round((time.perf_counter() - started) * 1000, 1),
            success=True,
            timestamp=datetime.now(UTC).isoformat(),
        )
        _emit(sink, record)
        return payload.result

    return run


def _emit(sink: MetricsClient, record: PromptCallRecord) -> None:
    # metrics must never mask the wrapped call's outcome
    try:
        logger.info("prompt_metrics %s", json.dumps(record.to_log_dict(), ensure_ascii=False))
        sink.record_prompt_call(record)
    except Exception:
        logger.exception("Failed to record prompt metrics for %s", record.prompt_id)
