from typing import Optional

import httpx
from langchain_openai import ChatOpenAI
from langchain_core.language_models import BaseChatModel

from query_agent.core.settings import settings
from query_agent.llm.client import LLMClient


class SelfHostedClient(LLMClient):
    """Any OpenAI-compatible server (vLLM, Ollama, llama.cpp)."""

    def get_chat_model(
        self,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_ms: Optional[int] = None,
    ) -> BaseChatModel:
        return ChatOpenAI(
            base_url=settings.self_hosted.base_url,
            api_key=settings.self_hosted.api_key,
            model=model_name or settings.self_hosted.default_model,
            temperature=settings.llm.temperature if temperature is None else temperature,
            max_tokens=settings.llm.max_tokens,
            timeout=(timeout_ms or settings.openai.timeout_ms) / 1000,
            max_retries=0,
            streaming=True,
        )

    async def check_health(self) -> bool:
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(f"{settings.self_hosted.base_url}/models", timeout=2.0)
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
