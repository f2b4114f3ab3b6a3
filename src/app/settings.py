from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _optional_float(name: str, default: str) -> float | None:
    raw = os.getenv(name, default).strip()
    if not raw or raw.lower() in {"none", "off", "0"}:
        return None
    return float(raw)


@dataclass(frozen=True)
class Settings:
    log_level: str = os.getenv("RAG_LOG_LEVEL", "INFO")
    embedding_provider: str = os.getenv("EMBEDDING_PROVIDER", "hash")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", "256"))
    embedding_timeout: float = float(os.getenv("RAG_EMBEDDING_TIMEOUT", "10"))
    openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_embedding_model: str | None = os.getenv("OPENAI_EMBEDDING_MODEL")
    openai_chat_model: str | None = os.getenv("OPENAI_CHAT_MODEL")
    ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_embedding_model: str | None = os.getenv("OLLAMA_EMBEDDING_MODEL")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "llama3.1")
    questions_db_uri: str | None = os.getenv("RAG_QUESTIONS_DB_URI")
    questions_table: str = os.getenv("RAG_QUESTIONS_TABLE", "quiz_questions")
    default_strategy: str = os.getenv("RAG_DEFAULT_STRATEGY", "hybrid")
    default_top_k: int = int(os.getenv("RAG_DEFAULT_TOP_K", "5"))
    overfetch_factor: int = int(os.getenv("RAG_OVERFETCH_FACTOR", "3"))
    hybrid_alpha: float = float(os.getenv("RAG_HYBRID_ALPHA", "0.5"))
    scoring_policy: str = os.getenv("RAG_SCORING_POLICY", "weighted")
    cache_capacity: int = int(os.getenv("RAG_CACHE_CAPACITY", "1024"))
    cache_ttl: float = float(os.getenv("RAG_CACHE_TTL", "300"))
    query_timeout: float | None = _optional_float("RAG_QUERY_TIMEOUT", "5")
    context_max_chars: int = int(os.getenv("RAG_CONTEXT_MAX_CHARS", "6000"))
    llm_provider: str = os.getenv("RAG_LLM_PROVIDER", "extractive")
    llm_temperature: float = float(os.getenv("RAG_LLM_TEMPERATURE", "0.1"))
    llm_max_tokens: int = int(os.getenv("RAG_LLM_MAX_TOKENS", "512"))
    llm_timeout: float = float(os.getenv("RAG_LLM_TIMEOUT", "60"))
    snapshot_path: str | None = os.getenv("RAG_SNAPSHOT_PATH")
    refresh_interval: float = float(os.getenv("RAG_REFRESH_INTERVAL", "0"))
    refresh_db_uri: str | None = os.getenv("RAG_REFRESH_DB_URI")
    metrics_enabled: bool = os.getenv("RAG_METRICS_ENABLED", "true").lower() in {"1", "true", "yes"}

    @property
    def embedding_model(self) -> str | None:
        provider = self.embedding_provider.lower().strip()
        if provider == "openai":
            return self.openai_embedding_model
        if provider == "ollama":
            return self.ollama_embedding_model
        return None


settings = Settings()
