from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = (
    "Você é um assistente curto, educado e objetivo. "
    "Responda em português do Brasil, em no máximo 5 linhas."
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Built once at startup and read-only afterwards.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
        frozen=True,
    )

    # Webhook subscription
    WHATSAPP_VERIFY_TOKEN: Optional[str] = None
    WHATSAPP_APP_SECRET: Optional[str] = None

    # Outbound send to WhatsApp
    WHATSAPP_TOKEN: Optional[str] = None
    WHATSAPP_PHONE_NUMBER_ID: Optional[str] = None
    WHATSAPP_SEND_ENABLED: bool = False
    GRAPH_API_BASE_URL: str = "https://graph.facebook.com"
    GRAPH_API_VERSION: str = "v20.0"

    # Completion service
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4.1-mini"
    OPENAI_TEMPERATURE: float = 0.3
    SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT
    FALLBACK_REPLY: str = "Não consegui gerar uma resposta agora."

    # Persistence is disabled when unset
    DATABASE_URL: Optional[str] = None

    HTTP_TIMEOUT_SECONDS: float = 15.0

    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.DATABASE_URL)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
