"""LangChain / Anthropic adapter for the two protocol-generating calls.

Each call is a single forced tool call: the model must answer through
``generate_resin_recommendation`` or ``generate_cementation_protocol`` so
the response is a JSON object, never free text.  The raw tool arguments
are returned untouched; ``odonto.models.parse_ai_response`` validates them.

Every call runs inside :func:`with_metrics`.  There are no automatic
retries (``max_retries=0``); retrying is an explicit user action.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import anthropic
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel

from odonto.errors import AIProviderError
from odonto.models import CementationProtocol, ResinRecommendation
from odonto.prompts import PROMPT_VERSION
from odonto.services.metrics import MetricsClient, MetricsPayload, with_metrics

logger = logging.getLogger(__name__)


class ToolSpec(BaseModel):
    name: str
    description: str
    schema_model: type[BaseModel]

    def to_anthropic(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.schema_model.model_json_schema(),
        }


RESIN_TOOL = ToolSpec(
    name="generate_resin_recommendation",
    description="Gera a recomendação de resina com protocolo de estratificação completo",
    schema_model=ResinRecommendation,
)

CEMENTATION_TOOL = ToolSpec(
    name="generate_cementation_protocol",
    description="Gera um protocolo completo de cimentação de facetas cerâmicas",
    schema_model=CementationProtocol,
)


class ProtocolAIClient(Protocol):
    async def call_tool(
        self,
        *,
        prompt_id: str,
        model: str,
        tool: ToolSpec,
        system_prompt: str,
        user_prompt: str,
    ) -> dict[str, Any]: ...


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class AnthropicProtocolClient:
    """:class:`ProtocolAIClient` backed by ``ChatAnthropic``."""

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 55.0,
        max_tokens: int = 4096,
        metrics_client: MetricsClient | None = None,
    ):
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._max_tokens = max_tokens
        self._metrics = metrics_client
        self._bound: dict[tuple[str, str], Any] = {}

    def _build_llm(self, model: str, tool: ToolSpec):
        """Build (once per model/tool pair) a chat model forced to call ``tool``."""
        key = (model, tool.name)
        if key not in self._bound:
            llm = ChatAnthropic(
                model=model,
                api_key=self._api_key,
                temperature=0.0,  # Same case, same protocol
                max_tokens=self._max_tokens,
                default_request_timeout=self._timeout,
                max_retries=0,
            )
            self._bound[key] = llm.bind_tools([tool.to_anthropic()], tool_choice=tool.name)
        return self._bound[key]

    async def call_tool(
        self,
        *,
        prompt_id: str,
        model: str,
        tool: ToolSpec,
        system_prompt: str,
        user_prompt: str,
    ) -> dict[str, Any]:
        llm = self._build_llm(model, tool)
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]

        async def execute() -> MetricsPayload:
            try:
                response = await llm.ainvoke(messages)
            except anthropic.APIStatusError as exc:
                transient = _is_transient_status(exc.status_code)
                logger.error(
                    "[%s] Anthropic returned HTTP %s (transient=%s): %s",
                    prompt_id, exc.status_code, transient, exc,
                )
                raise AIProviderError(f"HTTP {exc.status_code} from provider", transient=transient) from exc
            except anthropic.APIConnectionError as exc:
                # APITimeoutError is a subclass
                logger.error("[%s] Anthropic connection failed: %s", prompt_id, exc)
                raise AIProviderError(f"provider unreachable: {type(exc).__name__}", transient=True) from exc

            calls = [call for call in response.tool_calls if call["name"] == tool.name]
            if not calls:
                logger.error(
                    "[%s] No %s tool call in response (stop_reason=%s)",
                    prompt_id, tool.name, response.response_metadata.get("stop_reason"),
                )
                raise AIProviderError(f"no {tool.name} call in response", transient=False)

            usage = response.usage_metadata or {}
            return MetricsPayload(
                result=calls[0]["args"],
                tokens_in=usage.get("input_tokens", 0),
                tokens_out=usage.get("output_tokens", 0),
            )

        return await with_metrics(prompt_id, PROMPT_VERSION, model, client=self._metrics)(execute)
