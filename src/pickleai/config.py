"""PickleAI gateway configuration."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    return Path(os.environ.get("PICKLEAI_DATA_DIR", Path(__file__).resolve().parents[2] / "data"))


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class EmbeddingConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("PICKLEAI_EMBED_PROVIDER", "hash"))
    model: str = "text-embedding-3-small"
    dims: int = 384
    base_url: str = ""
    timeout: float = 30.0
    memo_size: int = 2048


class ChatConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("PICKLEAI_CHAT_PROVIDER", "openai"))
    api_key: str = Field(default_factory=lambda: os.environ.get("OPENAI_API_KEY", ""))
    base_url: str = "https://api.openai.com/v1"
    ollama_url: str = Field(default_factory=lambda: os.environ.get("OLLAMA_HOST", "http://127.0.0.1:11434"))
    model: str = "gpt-3.5-turbo"
    timeout: float = 30.0
    temperature: float = 0.7
    max_tokens: int = 500
    upstream_retries: int = 2
    retry_backoff: float = 0.5


class ContextConfig(BaseModel):
    max_context_tokens: int = 4000
    prompt_candidates: int = 10
    default_limit: int = 5
    prune_days: int = 30


class AnalyzerConfig(BaseModel):
    trend_window_days: int = 7
    inactivity_days: int = 7
    long_session_seconds: float = 3600.0
    high_engagement_threshold: float = 0.7


class CacheConfig(BaseModel):
    enabled: bool = Field(default_factory=lambda: _env_flag("AI_CACHE_ENABLED", True))
    prefix: str = "ai_cache:"
    default_ttl: float = Field(default_factory=lambda: _env_int("AI_CACHE_DEFAULT_TTL", 3600))
    player_recommendations_ttl: float = 4 * 3600
    challenges_ttl: float = 24 * 3600
    schedule_recommendations_ttl: float = 2 * 3600
    skill_analysis_ttl: float = 3 * 24 * 3600
    chat_ttl: float = 3600


class OptimizerConfig(BaseModel):
    throttle_delay: float = 0.0
    starvation_interval: float = 5.0
    max_concurrency: int = 4
    cost_per_request_type: dict[str, float] = Field(
        default_factory=lambda: {
            "playerRecommendations": 0.02,
            "skillAnalysis": 0.05,
            "challengeGeneration": 0.01,
            "scheduleOptimization": 0.03,
            "chat": 0.002,
            "default": 0.01,
        }
    )


class SecurityConfig(BaseModel):
    per_user_minute: int = 20
    per_user_day: int = 300
    cooldown_seconds: float = 60.0
    minute_window_seconds: float = 60.0
    day_window_seconds: float = 24 * 3600.0
    state_retention_seconds: float = 24 * 3600.0
    sweep_interval_seconds: float = 3600.0


class ContentConfig(BaseModel):
    request_timeout: float = 10.0
    validate_timeout: float = 5.0
    cache_ttl: float = 24 * 3600
    user_agent: str = "Mozilla/5.0 (compatible; NetGains/1.0)"
    max_body_bytes: int = 2 * 1024 * 1024
    max_redirects: int = 5
    allow_private_networks: bool = False


class IdentityConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("PICKLEAI_IDENTITY_PROVIDER", "static"))
    supabase_url: str = Field(default_factory=lambda: os.environ.get("SUPABASE_URL", ""))
    supabase_key: str = Field(default_factory=lambda: os.environ.get("SUPABASE_SERVICE_ROLE_KEY", ""))
    # token -> "user_id:email", e.g. PICKLEAI_STATIC_TOKENS="tok1=user-1:a@b.c,tok2=user-2:"
    static_tokens: str = Field(default_factory=lambda: os.environ.get("PICKLEAI_STATIC_TOKENS", ""))
    timeout: float = 10.0


class APIConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8430
    log_level: str = Field(default_factory=lambda: os.environ.get("PICKLEAI_LOG_LEVEL", "INFO"))


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    content: ContentConfig = Field(default_factory=ContentConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db" / "pickleai.db"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)
