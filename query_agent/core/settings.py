from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Common Config for all settings classes to pick up .env
settings_config = SettingsConfigDict(
    env_file=".env",
    env_file_encoding="utf-8",
    extra="ignore"
)

class OpenAISettings(BaseSettings):
    api_key: str = Field("", alias="OPENAI_API_KEY")
    base_url: Optional[str] = Field(None, alias="OPENAI_BASE_URL")
    organization: Optional[str] = Field(None, alias="OPENAI_ORG_ID")
    default_model: str = Field("gpt-4o-mini", alias="OPENAI_SQL_MODEL")
    timeout_ms: int = Field(120000, alias="OPENAI_TIMEOUT_MS")
    max_retries: int = Field(1, alias="OPENAI_MAX_RETRIES")
    slow_threshold_ms: int = Field(2000, alias="OPENAI_SLOW_THRESHOLD_MS")

    model_config = settings_config

class GroqSettings(BaseSettings):
    api_key: str = Field("", alias="GROQ_API_KEY")
    base_url: str = Field("https://api.groq.com", alias="GROQ_BASE_URL")
    default_model: str = Field("llama-3.3-70b-versatile", alias="GROQ_DEFAULT_MODEL")

    model_config = settings_config

class SelfHostedSettings(BaseSettings):
    base_url: str = Field("http://localhost:8001/v1", alias="SELF_HOSTED_BASE_URL")
    api_key: str = Field("none", alias="SELF_HOSTED_API_KEY")
    default_model: str = Field("qwen2.5:7b", alias="SELF_HOSTED_DEFAULT_MODEL")

    model_config = settings_config

class LLMSettings(BaseSettings):
    primary_provider: str = Field("openai", alias="LLM_PRIMARY_PROVIDER")
    fallback_provider: str = Field("groq", alias="LLM_FALLBACK_PROVIDER")
    temperature: float = Field(0.7, alias="LLM_TEMPERATURE")
    max_tokens: int = Field(2000, alias="LLM_MAX_TOKENS")

    model_config = settings_config

class AISettings(BaseSettings):
    max_tool_calls: int = Field(3, alias="AI_MAX_TOOL_CALLS", ge=0)
    total_timeout_ms: int = Field(60000, alias="AI_TOTAL_TIMEOUT_MS", gt=0)
    deep_research_timeout_ms: int = Field(120000, alias="AI_DEEP_RESEARCH_TIMEOUT_MS", gt=0)
    query_timeout_ms: int = Field(5000, alias="AI_QUERY_TIMEOUT_MS", gt=0)
    max_rows: int = Field(100, alias="AI_MAX_ROWS", ge=1)
    api_mode: Literal["chat_completions", "responses"] = Field("chat_completions", alias="AI_API_MODE")
    use_mock_db: bool = Field(True, alias="AI_USE_MOCK_DB")
    mock_tenant_id: str = Field("demo-tenant", alias="AI_MOCK_TENANT_ID")
    enforce_rbac: bool = Field(True, alias="AI_ENFORCE_RBAC")
    deep_research_monthly_limit: int = Field(10, alias="DEEP_RESEARCH_MONTHLY_LIMIT", ge=0)

    model_config = settings_config

class DatabaseSettings(BaseSettings):
    url: Optional[str] = Field(None, alias="DATABASE_URL")
    pool_size: int = Field(5, alias="DB_POOL_SIZE")
    max_overflow: int = Field(10, alias="DB_MAX_OVERFLOW")
    concurrency_limit: int = Field(8, alias="DB_CONCURRENCY_LIMIT", ge=1)

    model_config = settings_config

class RedisSettings(BaseSettings):
    url: str = Field("redis://redis:6379", alias="REDIS_URL")

    model_config = settings_config

class AuthSettings(BaseSettings):
    secret_key: str = Field("dev_secret_key_change_in_prod", alias="SECRET_KEY")
    algorithm: str = Field("HS512", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    allow_dev_bypass: bool = Field(False, alias="AUTH_ALLOW_DEV_BYPASS")

    model_config = settings_config

class AppSettings(BaseSettings):
    env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Using default_factory with BaseSettings classes will now trigger their own env loading
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    groq: GroqSettings = Field(default_factory=GroqSettings)
    self_hosted: SelfHostedSettings = Field(default_factory=SelfHostedSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    ai: AISettings = Field(default_factory=AISettings)
    db: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)

    model_config = settings_config

    @property
    def use_mock_db(self) -> bool:
        # No real store configured means the fixture-backed store, whatever the flag says
        return self.ai.use_mock_db or not self.db.url


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()


settings = get_settings()
