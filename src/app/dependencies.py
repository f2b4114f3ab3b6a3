from __future__ import annotations

from functools import lru_cache

from src.app.settings import settings
from src.loaders.questions import DocumentSource, SQLQuestionSource
from src.metadata.store import RefreshLog
from src.rag.answerer import ExtractiveAnswerer
from src.rag.embeddings import (
    EmbeddingConfigError,
    EmbeddingConfigReport,
    EmbeddingProvider,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    build_embedding_config_report,
)
from src.rag.engine import Answerer, EngineConfig, RetrievalEngine
from src.rag.llm import build_llm_answerer


@lru_cache
def get_engine() -> RetrievalEngine:
    source = build_source()
    return RetrievalEngine(
        embedder=build_embedder(),
        source=source,
        config=build_engine_config(),
        answerer=build_answerer(),
        refresh_log=get_refresh_log(),
        source_uri=settings.questions_db_uri or "memory",
    )


def reset_engine_cache() -> None:
    get_engine.cache_clear()
    get_refresh_log.cache_clear()


@lru_cache
def get_refresh_log() -> RefreshLog | None:
    if not settings.refresh_db_uri:
        return None
    return RefreshLog(settings.refresh_db_uri)


def get_embedding_config_report() -> EmbeddingConfigReport:
    return build_embedding_config_report(
        settings.embedding_provider, settings.embedding_model, settings.embedding_dimension
    )


def build_engine_config() -> EngineConfig:
    return EngineConfig(
        default_strategy=settings.default_strategy,
        default_top_k=settings.default_top_k,
        overfetch_factor=settings.overfetch_factor,
        alpha=settings.hybrid_alpha,
        scoring_policy=settings.scoring_policy,
        cache_capacity=settings.cache_capacity,
        cache_ttl=settings.cache_ttl,
        query_timeout=settings.query_timeout,
        embedding_timeout=settings.embedding_timeout,
        context_max_chars=settings.context_max_chars,
    )


def build_source() -> DocumentSource | None:
    if not settings.questions_db_uri:
        return None
    return SQLQuestionSource(settings.questions_db_uri, table=settings.questions_table)


def build_answerer() -> Answerer:
    provider = settings.llm_provider.lower().strip()
    if provider in {"", "extractive"}:
        return ExtractiveAnswerer()
    return build_llm_answerer(
        provider,
        api_key_openai=settings.openai_api_key,
        openai_base_url=settings.openai_base_url,
        openai_model=settings.openai_chat_model,
        ollama_base_url=settings.ollama_base_url,
        ollama_model=settings.ollama_model,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout=settings.llm_timeout,
    )


def build_embedder() -> EmbeddingProvider:
    provider = settings.embedding_provider.lower().strip()
    if provider == "hash":
        return HashEmbedder(dimension=settings.embedding_dimension)
    if provider == "openai":
        return OpenAIEmbedder(
            api_key=settings.openai_api_key or "",
            model=settings.openai_embedding_model or "",
            dimension=settings.embedding_dimension,
            base_url=settings.openai_base_url,
            timeout=settings.embedding_timeout,
        )
    if provider == "ollama":
        return OllamaEmbedder(
            base_url=settings.ollama_base_url,
            model=settings.ollama_embedding_model or "",
            dimension=settings.embedding_dimension,
            timeout=settings.embedding_timeout,
        )
    raise EmbeddingConfigError(f"Unsupported embedding provider: {provider}")
