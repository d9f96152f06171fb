"""Service configuration, built once at start-up and passed into each client."""

from enum import Enum

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SPRING26_TERM = "spring26"
SPRING26_SEARCH_RPC = "search_courses_spring26_by_embedding_paginated"
DEFAULT_SEARCH_RPC = "search_courses_by_embedding_paginated"


class EnrichmentStrategy(str, Enum):
    """How the pipeline attaches explanations to a results page."""

    EAGER = "eager"        # explain sequentially before responding, drop failures
    DEFERRED = "deferred"  # respond with raw results, caller streams explanations


class Settings(BaseSettings):
    """Application configuration with environment variable support"""

    # Embedding collaborator (OpenAI-compatible embeddings endpoint)
    deepinfra_api_key: str | None = Field(default=None, description="Embedding service API key")
    embedding_model: str = Field(
        default="Qwen/Qwen3-Embedding-4B", description="Embedding model identifier"
    )
    embedding_api_url: str = Field(
        default="https://api.deepinfra.com/v1/embeddings", description="Embeddings endpoint"
    )

    # Catalog collaborator (PostgREST RPC)
    supabase_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
    )
    supabase_anon_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY"),
    )
    search_term: str = Field(
        default=SPRING26_TERM,
        validation_alias=AliasChoices("SEARCH_TERM", "NEXT_PUBLIC_SEARCH_TERM"),
        description="Catalog snapshot; selects which search RPC is called",
    )

    # Text-generation collaborator (OpenAI-compatible chat completions)
    cerebras_api_key: str | None = Field(default=None, description="Chat completion API key")
    cerebras_model: str = Field(default="llama3.1-8b", description="Chat completion model")
    cerebras_base_url: str = Field(default="https://api.cerebras.ai/v1")

    # Pipeline
    enrichment: EnrichmentStrategy = Field(default=EnrichmentStrategy.DEFERRED)
    search_limit: int = Field(default=3, ge=1, le=50, description="Default page size")
    request_timeout: float = Field(
        default=30.0, gt=0, description="Timeout in seconds for every outbound call"
    )
    explain_max_attempts: int = Field(default=5, ge=1, le=10)
    explain_backoff_ms: int = Field(
        default=1000, ge=0, description="Delay unit; attempt n waits n * this before retrying"
    )
    eager_delay_ms: int = Field(
        default=300, ge=0, description="Pause between explanation calls in eager mode"
    )
    explain_temperature: float = Field(default=0.7, ge=0, le=2)
    explain_max_tokens: int = Field(default=260, ge=1)

    leaderboard_limit: int = Field(default=200, ge=1)

    # Frontend / service
    api_url: str = Field(default="http://localhost:8000", description="Base URL of this API")
    log_dir: str = Field(default="logs")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def search_rpc(self) -> str:
        """Stored procedure for the configured catalog snapshot."""
        if self.search_term == SPRING26_TERM:
            return SPRING26_SEARCH_RPC
        return DEFAULT_SEARCH_RPC

    @property
    def catalog_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)


def load_settings(**overrides) -> Settings:
    """Build the process-wide settings object; keyword overrides win over the environment."""
    return Settings(**overrides)
