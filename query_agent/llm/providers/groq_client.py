from typing import Optional

from langchain_groq import ChatGroq
from langchain_core.language_models import BaseChatModel

from query_agent.core.settings import settings
from query_agent.llm.client import LLMClient


class GroqClient(LLMClient):
    def get_chat_model(
        self,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_ms: Optional[int] = None,
    ) -> BaseChatModel:
        return ChatGroq(
            groq_api_key=settings.groq.api_key,
            model_name=model_name or settings.groq.default_model,
            temperature=settings.llm.temperature if temperature is None else temperature,
            max_tokens=settings.llm.max_tokens,
            base_url=settings.groq.base_url,
            timeout=(timeout_ms or settings.openai.timeout_ms) / 1000,
            max_retries=0,
            streaming=True,
        )

    async def check_health(self) -> bool:
        # Key presence only, a real call per request is too expensive
        return bool(settings.groq.api_key)
