"""Tests for the Anthropic tool-call adapter."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import pytest

from odonto.errors import AIProviderError
from odonto.services.llm_client import CEMENTATION_TOOL, RESIN_TOOL, AnthropicProtocolClient
from odonto.services.metrics import MetricsClient

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _response(tool_calls, usage=None):
    response = MagicMock()
    response.tool_calls = tool_calls
    response.usage_metadata = usage
    response.response_metadata = {"stop_reason": "end_turn"}
    return response


def _status_error(status_code: int) -> anthropic.APIStatusError:
    return anthropic.APIStatusError(
        "provider error",
        response=httpx.Response(status_code, request=_REQUEST),
        body=None,
    )


@pytest.fixture
def bound_llm():
    """Patch ChatAnthropic and return the tool-bound model the client will call."""
    with patch("odonto.services.llm_client.ChatAnthropic") as chat_cls:
        bound = MagicMock()
        bound.ainvoke = AsyncMock()
        chat_cls.return_value.bind_tools.return_value = bound
        bound.chat_cls = chat_cls
        yield bound


@pytest.fixture
def metrics_client() -> MetricsClient:
    return MetricsClient()


async def _call(client, tool=RESIN_TOOL):
    return await client.call_tool(
        prompt_id="recommend-resin",
        model="claude-sonnet-4-5-20250929",
        tool=tool,
        system_prompt="Você é um especialista em odontologia restauradora.",
        user_prompt="Dente 11, classe IV.",
    )


class TestToolSpec:
    def test_schema_exported_from_model(self):
        spec = CEMENTATION_TOOL.to_anthropic()
        assert spec["name"] == "generate_cementation_protocol"
        assert "cementation" in spec["input_schema"]["properties"]


class TestCallTool:
    @pytest.mark.asyncio
    async def test_returns_tool_arguments(self, bound_llm, metrics_client):
        bound_llm.ainvoke.return_value = _response(
            [{"name": "generate_resin_recommendation", "args": {"protocol": {}}, "id": "t1"}],
            usage={"input_tokens": 900, "output_tokens": 400, "total_tokens": 1300},
        )
        client = AnthropicProtocolClient("key", metrics_client=metrics_client)

        assert await _call(client) == {"protocol": {}}
        tokens_out = next(m for m in metrics_client._buffer if m["MetricName"] == "AI/TokensOut")
        assert tokens_out["Value"] == 400

    @pytest.mark.asyncio
    async def test_model_forced_to_call_tool_without_retries(self, bound_llm):
        bound_llm.ainvoke.return_value = _response(
            [{"name": "generate_resin_recommendation", "args": {}, "id": "t1"}]
        )
        client = AnthropicProtocolClient("key", metrics_client=MetricsClient())
        await _call(client)
        await _call(client)

        chat_cls = bound_llm.chat_cls
        chat_cls.assert_called_once()
        assert chat_cls.call_args.kwargs["max_retries"] == 0
        assert chat_cls.call_args.kwargs["temperature"] == 0.0
        _, kwargs = chat_cls.return_value.bind_tools.call_args
        assert kwargs["tool_choice"] == "generate_resin_recommendation"

    @pytest.mark.asyncio
    async def test_missing_tool_call_is_not_transient(self, bound_llm):
        bound_llm.ainvoke.return_value = _response([])
        client = AnthropicProtocolClient("key", metrics_client=MetricsClient())

        with pytest.raises(AIProviderError) as exc_info:
            await _call(client)
        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, transient", [(529, True), (500, True), (429, True), (400, False)])
    async def test_status_errors_mapped(self, bound_llm, status_code, transient):
        bound_llm.ainvoke.side_effect = _status_error(status_code)
        client = AnthropicProtocolClient("key", metrics_client=MetricsClient())

        with pytest.raises(AIProviderError) as exc_info:
            await _call(client)
        assert exc_info.value.transient is transient

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, bound_llm, metrics_client):
        bound_llm.ainvoke.side_effect = anthropic.APITimeoutError(request=_REQUEST)
        client = AnthropicProtocolClient("key", metrics_client=metrics_client)

        with pytest.raises(AIProviderError) as exc_info:
            await _call(client)
        assert exc_info.value.transient is True
        assert any(m["MetricName"] == "AI/ErrorCount" for m in metrics_client._buffer)
