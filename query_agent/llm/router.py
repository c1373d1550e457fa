import logging
from typing import Optional, Tuple

from langchain_core.language_models import BaseChatModel

from query_agent.core.errors import UpstreamError
from query_agent.core.settings import settings
from query_agent.llm.client import LLMClient
from query_agent.llm.providers.groq_client import GroqClient
from query_agent.llm.providers.openai_client import OpenAIClient
from query_agent.llm.providers.self_hosted_client import SelfHostedClient

logger = logging.getLogger(__name__)

MODEL_TIERS = ("auto", "fast", "thinking", "pro")


def resolve_tier(tier: Optional[str], deep_research: bool = False) -> str:
    # Deep research always runs on the strongest tier
    if deep_research:
        return "pro"
    return tier if tier in MODEL_TIERS else "auto"


class LLMRouter:
    def __init__(self):
        self.clients = {
            "openai": OpenAIClient(),
            "groq": GroqClient(),
            "self_hosted": SelfHostedClient(),
        }

    def get_client(self, provider: str) -> LLMClient:
        return self.clients.get(provider, self.clients[settings.llm.primary_provider])

    async def get_chat_model(
        self,
        tier: str = "auto",
        deep_research: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> Tuple[BaseChatModel, str, str]:
        """
        Returns (ChatModel, provider_name, model_name) for the requested tier.
        Fallback chain: Primary -> Fallback, first healthy provider wins.
        """
        tier = resolve_tier(tier, deep_research)
        chain = []
        for provider in (settings.llm.primary_provider, settings.llm.fallback_provider):
            if provider in self.clients and provider not in chain:
                chain.append(provider)

        for provider in chain:
            client = self.clients[provider]
            if await client.check_health():
                model = client.get_chat_model(model_name=client.model_for_tier(tier), timeout_ms=timeout_ms)
                model_name = getattr(model, "model_name", None) or getattr(model, "model", "") or ""
                logger.info(f"Routing to {provider} ({model_name}) for tier {tier}")
                return model, provider, model_name
            logger.warning(f"Provider {provider} unhealthy, falling back...")

        logger.error("All LLM providers failed health checks.")
        raise UpstreamError("No language model provider is available", status=503)


llm_router = LLMRouter()
