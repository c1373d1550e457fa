from abc import ABC, abstractmethod
from typing import Optional

from langchain_core.language_models import BaseChatModel


class LLMClient(ABC):
    """
    Abstract Base Class for LLM Providers.
    Wraps LangChain's BaseChatModel and provides a unified interface.
    Retries are disabled on the SDK side, the stream adapter owns them.
    """

    @abstractmethod
    def get_chat_model(
        self,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_ms: Optional[int] = None,
    ) -> BaseChatModel:
        """Returns a configured, streaming LangChain ChatModel instance."""
        pass

    def model_for_tier(self, tier: str) -> Optional[str]:
        """Model name for a user-selected tier, None means the provider default."""
        return None

    @abstractmethod
    async def check_health(self) -> bool:
        """Checks if the provider is configured and reachable."""
        pass
