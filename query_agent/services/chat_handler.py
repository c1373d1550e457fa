from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from query_agent.agent.orchestrator import ToolOrchestrator
from query_agent.api.schemas import AIChunk, ChatRequest
from query_agent.core.cancellation import AbortSignal
from query_agent.core.errors import GENERIC_UPSTREAM_MESSAGE, RequestValidationError, UpstreamError
from query_agent.core.guardrails import Guardrails
from query_agent.core.observability import TraceManager, hash_tenant_id
from query_agent.core.prompts import build_system_prompt
from query_agent.core.security import TenantContext
from query_agent.core.settings import AppSettings, settings as default_settings
from query_agent.core.streaming import ChatStreamEncoder, to_line
from query_agent.llm.router import LLMRouter, llm_router, resolve_tier
from query_agent.llm.stream import ModelStream
from query_agent.services.query_executor import QueryExecutor
from query_agent.services.tools import ToolRunner
from query_agent.services.usage import DeepResearchUsage


@dataclass
class PreparedChat:
    content: str
    preferred_table: Optional[str]
    tier: str
    deep_research: bool
    timeout_ms: int
    messages: List[BaseMessage] = field(default_factory=list)


def resolve_preferred_table(mode: Optional[str], body_table: Optional[str]) -> Optional[str]:
    # A concrete mode prefix overrides the body; `auto` defers to it
    if mode and mode != "auto":
        return mode
    return body_table


class ChatHandler:
    """Per-process wiring of one chat turn: prompt, deadline, orchestrator, encoder."""

    def __init__(
        self,
        executor: QueryExecutor,
        router: LLMRouter = llm_router,
        settings: AppSettings = default_settings,
    ):
        self.executor = executor
        self.router = router
        self.settings = settings

    def prepare(self, body: ChatRequest, tenant: TenantContext) -> PreparedChat:
        sanitized = Guardrails.sanitize_user_input(body.content)
        if not sanitized:
            raise RequestValidationError("Invalid input: content cannot be empty after sanitization")

        mode, content = Guardrails.parse_mode_prefix(sanitized)
        preferred_table = resolve_preferred_table(mode, body.preferred_table)

        ai = self.settings.ai
        timeout_ms = ai.total_timeout_ms
        if body.deep_research:
            timeout_ms = max(timeout_ms, ai.deep_research_timeout_ms)

        system_prompt = build_system_prompt(
            tenant_id=self.executor.scope_tenant(tenant.tenant_id),
            max_rows=self.executor.max_rows,
            max_tool_calls=ai.max_tool_calls,
            preferred_table=preferred_table,
            deep_research=body.deep_research,
        )
        messages: List[BaseMessage] = [SystemMessage(content=system_prompt)]
        for item in body.recent_history():
            if item.role == "user":
                text = Guardrails.sanitize_user_input(item.content)
                if text:
                    messages.append(HumanMessage(content=text))
            elif item.content:
                messages.append(AIMessage(content=item.content))
        messages.append(HumanMessage(content=content))

        return PreparedChat(
            content=content,
            preferred_table=preferred_table,
            tier=resolve_tier(body.model_tier, body.deep_research),
            deep_research=body.deep_research,
            timeout_ms=timeout_ms,
            messages=messages,
        )

    async def check_usage(self, prepared: PreparedChat, tenant: TenantContext):
        if prepared.deep_research:
            await DeepResearchUsage.consume(tenant.user_id, self.settings.ai.deep_research_monthly_limit)

    async def stream(
        self,
        prepared: PreparedChat,
        tenant: TenantContext,
        request_signal: Optional[AbortSignal] = None,
    ) -> AsyncIterator[str]:
        timeout_signal = AbortSignal.timeout(prepared.timeout_ms)
        signal = AbortSignal.any([request_signal, timeout_signal])
        TraceManager.info(
            "Chat turn started",
            tenant_hash=hash_tenant_id(tenant.tenant_id),
            tier=prepared.tier,
            deep_research=prepared.deep_research,
            preferred_table=prepared.preferred_table,
            api_mode=self.settings.ai.api_mode,
        )
        try:
            try:
                model, provider, model_name = await self.router.get_chat_model(
                    tier=prepared.tier,
                    deep_research=prepared.deep_research,
                    timeout_ms=self.settings.openai.timeout_ms,
                )
            except UpstreamError as e:
                TraceManager.error("No model available", exc=e)
                yield to_line(AIChunk(error=GENERIC_UPSTREAM_MESSAGE))
                return

            TraceManager.info("Model selected", provider=provider, model=model_name)

            orchestrator = ToolOrchestrator(
                ModelStream(
                    model,
                    timeout_ms=self.settings.openai.timeout_ms,
                    max_retries=self.settings.openai.max_retries,
                    slow_threshold_ms=self.settings.openai.slow_threshold_ms,
                ),
                ToolRunner(self.executor, tenant.tenant_id),
                max_tool_calls=self.settings.ai.max_tool_calls,
            )
            async for line in ChatStreamEncoder().encode(orchestrator.run(prepared.messages, signal)):
                if request_signal is not None and request_signal.aborted:
                    return
                yield line
        finally:
            timeout_signal.dispose()
