from typing import Optional

from langchain_openai import ChatOpenAI
from langchain_core.language_models import BaseChatModel

from query_agent.core.settings import settings
from query_agent.llm.client import LLMClient

FAST_MODEL = "gpt-4o-mini"
THINKING_MODEL = "gpt-4o"
PRO_MODEL = "gpt-4o-2024-08-06"


class OpenAIClient(LLMClient):
    def get_chat_model(
        self,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_ms: Optional[int] = None,
    ) -> BaseChatModel:
        return ChatOpenAI(
            api_key=settings.openai.api_key,
            base_url=settings.openai.base_url,
            organization=settings.openai.organization,
            model=model_name or settings.openai.default_model,
            temperature=settings.llm.temperature if temperature is None else temperature,
            max_tokens=settings.llm.max_tokens,
            timeout=(timeout_ms or settings.openai.timeout_ms) / 1000,
            max_retries=0,
            streaming=True,
            use_responses_api=settings.ai.api_mode == "responses",
        )

    def model_for_tier(self, tier: str) -> Optional[str]:
        default = settings.openai.default_model
        # A pinned full gpt-4o in the environment wins for the heavier tiers
        pinned_full = "gpt-4o" in default and "mini" not in default
        if tier == "fast":
            return FAST_MODEL
        if tier == "thinking":
            return default if pinned_full else THINKING_MODEL
        if tier == "pro":
            return default if pinned_full else PRO_MODEL
        return default

    async def check_health(self) -> bool:
        return bool(settings.openai.api_key)
