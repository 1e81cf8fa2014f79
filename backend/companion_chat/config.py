"""Application configuration models."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


REPO_ROOT = Path(__file__).resolve().parents[2]


class LLMSettings(BaseModel):
    """Settings for the OpenAI-compatible completion endpoint."""

    host: str = Field(default="https://api.openai.com", description="LLM base URL")
    api_key: str = Field(default="", description="Provider API key")
    model: str = Field(default="gpt-4o-mini", description="Model used when a request names none")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    timeout: float = Field(default=120.0, description="Seconds to wait on the provider")


class PlatformSettings(BaseModel):
    """Settings for the hosted platform: stream producer and realtime broadcast."""

    url: str = Field(default="", description="Base URL the stream producer is reachable on")
    anon_key: str = Field(default="", description="Public key presented to the stream producer")
    service_role_key: str = Field(default="", description="Key used for realtime broadcasts")
    function_path: str = Field(default="/functions/v1/chat-stream")
    broadcast_enabled: bool = Field(default=False, description="Forward broadcasts to the platform REST API")

    @property
    def function_url(self) -> str:
        return f"{self.url.rstrip('/')}{self.function_path}"

    @property
    def broadcast_url(self) -> str:
        return f"{self.url.rstrip('/')}/realtime/v1/api/broadcast"


class CompanionSettings(BaseModel):
    """Static defaults for the built-in companion used when no persona is named.

    ``temperature`` applies to every companion turn, persona turns included;
    ``llm.temperature`` is only the producer default for payloads that name none.
    """

    name: str = Field(default="Kinky Kincade")
    model: str = Field(default="gpt-4o-mini")
    temperature: float = Field(default=0.8, ge=0.0, le=2.0)
    instructions: str = Field(
        default=(
            "You are Kinky Kincade, the companion guide of the KINK IT app. "
            "You help partners in a D/s dynamic with tasks, rules, rewards, journaling and check-ins. "
            "Be warm, playful and direct. Respect every stated boundary and hard limit, "
            "and encourage open communication and consent."
        ),
    )


class AppSettings(BaseSettings):
    """Top-level settings entry point."""

    model_config = SettingsConfigDict(
        env_prefix="COMPANION_CHAT_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        protected_namespaces=(),
    )

    llm: LLMSettings = LLMSettings()
    platform: PlatformSettings = PlatformSettings()
    companion: CompanionSettings = CompanionSettings()
    database_path: Path = Field(default=REPO_ROOT / "backend" / "data" / "companion_chat.db")
    media_root: Path = Field(default=REPO_ROOT / "backend" / "data" / "media")
    media_url_prefix: str = Field(default="/media")
    dead_letter_path: Optional[Path] = Field(default=REPO_ROOT / "backend" / "data" / "dead_letters.jsonl")
    cors_origins: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000",
        ]
    )
    log_level: str = Field(default="INFO")

    def missing_configuration(self) -> list[str]:
        """Return the names of required settings that are not set."""
        missing = []
        if not self.llm.api_key:
            missing.append("llm.api_key")
        if not self.platform.url:
            missing.append("platform.url")
        if not self.platform.anon_key:
            missing.append("platform.anon_key")
        return missing


_settings_instance: AppSettings | None = None


def get_settings() -> AppSettings:
    """Singleton accessor for settings."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = AppSettings()
    return _settings_instance


def override_settings(settings: AppSettings | None) -> AppSettings | None:
    """Replace the settings instance; ``None`` reloads from the environment on next access."""
    global _settings_instance
    _settings_instance = settings
    return settings
