from __future__ import annotations

"""Retrieval engine: wires the corpus, query processing, cache and generator."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, Sequence

from src.index.corpus import CorpusIndex
from src.loaders.questions import DocumentSource
from src.metadata.store import RefreshLog
from src.rag.answerer import ExtractiveAnswerer
from src.rag.cache import ResultCache, fingerprint
from src.rag.context import ContextAssembler
from src.rag.embeddings import EmbeddingProvider
from src.rag.errors import (
    EmbeddingUnavailableError,
    IndexUnavailableError,
    InvalidTopKError,
    RetrievalTimeoutError,
)
from src.rag.guardrails import DEFAULT_REFUSAL, filter_source_ids, require_context
from src.rag.llm import LLMResult
from src.rag.query import QueryProcessor, query_log_fields
from src.rag.ranking import build_policy
from src.rag.retriever import HybridRetriever
from src.rag.text import normalize_text
from src.rag.types import STRATEGIES, Document, SearchHit, SearchResponse, validate_filters

logger = logging.getLogger(__name__)


class Answerer(Protocol):
    async def generate(self, query: str, context: str, hits: Sequence[SearchHit]) -> LLMResult:
        raise NotImplementedError


@dataclass(frozen=True)
class EngineConfig:
    """Tunable retrieval parameters."""
    default_strategy: str = "hybrid"
    default_top_k: int = 5
    overfetch_factor: int = 3
    alpha: float = 0.5
    scoring_policy: str = "weighted"
    cache_capacity: int = 1024
    cache_ttl: float = 300.0
    query_timeout: float | None = 5.0
    embedding_timeout: float = 10.0
    context_max_chars: int = 6000
    refresh_concurrency: int = 4


@dataclass(frozen=True)
class RefreshSummary:
    corpus_version: int
    document_count: int
    upserted: int
    removed: int
    skipped: int
    source_version: int | None = None


@dataclass(frozen=True)
class AskResult:
    answer: str
    sources: list[SearchHit] = field(default_factory=list)
    degraded: bool = False
    refusal_reason: str | None = None
    corpus_version: int = 0


class RetrievalEngine:
    """Hybrid retrieval over an exam question corpus.

    Collaborators are injected: the embedding provider, an optional document
    source, an optional answerer and an optional refresh log.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        source: DocumentSource | None = None,
        config: EngineConfig | None = None,
        answerer: Answerer | None = None,
        refresh_log: RefreshLog | None = None,
        source_uri: str = "memory",
        clock=time.monotonic,
    ) -> None:
        self.config = config or EngineConfig()
        if self.config.default_strategy not in STRATEGIES:
            raise ValueError(f"Unsupported strategy: {self.config.default_strategy}")
        self.embedder = embedder
        self.source = source
        self.source_uri = source_uri
        self.answerer: Answerer = answerer or ExtractiveAnswerer()
        self.refresh_log = refresh_log
        self.corpus = CorpusIndex(embedder.dimension, embedder.model_id)
        self.processor = QueryProcessor(embedder, self.config.embedding_timeout)
        self.retriever = HybridRetriever(
            self.corpus,
            policy=build_policy(self.config.scoring_policy, self.config.alpha),
            overfetch_factor=self.config.overfetch_factor,
        )
        self.cache = ResultCache(self.config.cache_capacity, self.config.cache_ttl, clock=clock)
        self.assembler = ContextAssembler()
        self._refresh_lock = asyncio.Lock()
        self._source_version: int | None = None

    @property
    def is_loaded(self) -> bool:
        return self.corpus.is_loaded

    async def search(
        self,
        raw_text: str,
        strategy: str | None = None,
        filters: Mapping[str, Any] | None = None,
        top_k: int | None = None,
        timeout: float | None = None,
    ) -> SearchResponse:
        """Search the corpus, serving repeated shapes from the result cache."""
        top_k = self.config.default_top_k if top_k is None else top_k
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k <= 0:
            raise InvalidTopKError("top_k must be a positive integer")
        strategy = strategy or self.config.default_strategy
        if strategy not in STRATEGIES:
            raise ValueError(f"Unsupported strategy: {strategy}")
        validated = validate_filters(filters)
        if not self.corpus.is_loaded:
            raise IndexUnavailableError("No corpus has been loaded")
        deadline = self.config.query_timeout if timeout is None else timeout
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._search(raw_text, strategy, validated, top_k),
                timeout=deadline,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "search_timeout",
                extra={**query_log_fields(raw_text), "strategy": strategy, "timeout": deadline},
            )
            raise RetrievalTimeoutError(f"Search exceeded {deadline} seconds") from exc
        logger.info(
            "search_completed",
            extra={
                **query_log_fields(raw_text),
                "strategy": strategy,
                "top_k": top_k,
                "result_count": len(response.results),
                "degraded": response.degraded,
                "corpus_version": response.corpus_version,
                "elapsed_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return response

    async def _search(
        self,
        raw_text: str,
        strategy: str,
        filters: tuple[tuple[str, Any], ...],
        top_k: int,
    ) -> SearchResponse:
        normalized = normalize_text(raw_text if isinstance(raw_text, str) else "")
        key = fingerprint(normalized, filters, strategy, top_k)
        state = self.corpus.state

        async def compute() -> SearchResponse:
            query = await self.processor.process(
                raw_text, dict(filters), want_vector=strategy != "keyword"
            )
            result = self.retriever.retrieve(query, strategy, top_k, filters, state=state)
            hits = []
            for candidate in result.candidates:
                document = state.documents[candidate.document_id]
                hits.append(
                    SearchHit(
                        document_id=document.doc_id,
                        score=candidate.combined_score,
                        content=document.content,
                        metadata=document.metadata.as_dict(),
                    )
                )
            return SearchResponse(
                results=tuple(hits), degraded=result.degraded, corpus_version=state.version
            )

        return await self.cache.get_or_compute(
            key, state.version, compute, cacheable=lambda response: not response.degraded
        )

    async def ask(
        self,
        raw_text: str,
        strategy: str | None = None,
        filters: Mapping[str, Any] | None = None,
        top_k: int | None = None,
        timeout: float | None = None,
    ) -> AskResult:
        """Search, assemble a bounded context and hand it to the answerer."""
        response = await self.search(raw_text, strategy, filters, top_k, timeout)
        guard = require_context(response.results)
        if not guard.allowed:
            return AskResult(
                answer=DEFAULT_REFUSAL,
                degraded=response.degraded,
                refusal_reason=guard.reason,
                corpus_version=response.corpus_version,
            )
        selected = self.assembler.select(response.results, self.config.context_max_chars)
        if not selected:
            return AskResult(
                answer=DEFAULT_REFUSAL,
                degraded=response.degraded,
                refusal_reason="context_budget",
                corpus_version=response.corpus_version,
            )
        hits = [hit for hit, _ in selected]
        context = self.assembler.separator.join(passage for _, passage in selected)
        result = await self.answerer.generate(raw_text, context, hits)
        cited = filter_source_ids(result.source_ids, hits)
        sources = [hit for hit in hits if hit.document_id in cited] if cited else hits
        if result.refusal_reason or not result.answer:
            return AskResult(
                answer=DEFAULT_REFUSAL,
                sources=sources,
                degraded=response.degraded,
                refusal_reason=result.refusal_reason or "empty_answer",
                corpus_version=response.corpus_version,
            )
        return AskResult(
            answer=result.answer,
            sources=sources,
            degraded=response.degraded,
            corpus_version=response.corpus_version,
        )

    async def index_documents(
        self, documents: Iterable[Document], removals: Iterable[str] = ()
    ) -> RefreshSummary:
        """Embed documents and apply them, with removals, as one mutation."""
        documents = list(documents)
        removals = list(removals)
        upserts, failed = await self._embed_documents(documents)
        current = self.corpus.state.documents
        # Documents that failed to embed must not keep a stale entry either.
        stale = [doc_id for doc_id in failed if doc_id in current]
        version = self.corpus.apply(upserts, removals + stale)
        self.cache.invalidate()
        return RefreshSummary(
            corpus_version=version,
            document_count=len(self.corpus),
            upserted=len(upserts),
            removed=len([doc_id for doc_id in removals if doc_id in current]) + len(stale),
            skipped=len(failed),
        )

    async def _embed_documents(
        self, documents: Sequence[Document]
    ) -> tuple[list[tuple[Document, list[float]]], list[str]]:
        semaphore = asyncio.Semaphore(max(1, self.config.refresh_concurrency))

        async def embed_one(document: Document) -> list[float] | None:
            async with semaphore:
                try:
                    return await asyncio.wait_for(
                        asyncio.to_thread(self.embedder.embed, document.content),
                        timeout=self.config.embedding_timeout,
                    )
                except (EmbeddingUnavailableError, asyncio.TimeoutError) as exc:
                    logger.warning(
                        "document_embedding_failed",
                        extra={"document_id": document.doc_id, "error": type(exc).__name__},
                    )
                    return None

        vectors = await asyncio.gather(*(embed_one(document) for document in documents))
        upserts = []
        failed = []
        for document, vector in zip(documents, vectors):
            if vector is None:
                failed.append(document.doc_id)
            else:
                upserts.append((document, vector))
        return upserts, failed

    async def refresh(self, trigger: str = "manual") -> RefreshSummary:
        """Pull the data source and apply the difference to the corpus.

        Unchanged documents are not re-embedded. All upserts and removals land
        in one corpus mutation.
        """
        if self.source is None:
            raise IndexUnavailableError("No document source configured")
        async with self._refresh_lock:
            record_id = None
            if self.refresh_log is not None:
                record_id = await asyncio.to_thread(
                    self.refresh_log.record_start, trigger, self.source_uri
                )
            try:
                source_version = await asyncio.to_thread(self.source.corpus_version)
                documents = await asyncio.to_thread(self.source.fetch_documents)
                current = self.corpus.state.documents
                incoming = {document.doc_id for document in documents}
                changed = [doc for doc in documents if current.get(doc.doc_id) != doc]
                removals = [doc_id for doc_id in current if doc_id not in incoming]
                if changed or removals or not self.corpus.is_loaded:
                    summary = await self.index_documents(changed, removals)
                else:
                    summary = RefreshSummary(
                        corpus_version=self.corpus.version,
                        document_count=len(self.corpus),
                        upserted=0,
                        removed=0,
                        skipped=0,
                    )
                summary = RefreshSummary(**{**asdict(summary), "source_version": source_version})
                self._source_version = source_version
            except Exception as exc:
                if record_id is not None:
                    await asyncio.to_thread(self.refresh_log.record_failure, record_id, str(exc))
                logger.exception("corpus_refresh_failed", extra={"trigger": trigger})
                raise
            if record_id is not None:
                await asyncio.to_thread(
                    self.refresh_log.record_complete,
                    record_id,
                    summary.corpus_version,
                    summary.upserted,
                    summary.removed,
                    summary.skipped,
                    summary.source_version,
                )
        logger.info("corpus_refreshed", extra={"trigger": trigger, **asdict(summary)})
        return summary

    async def refresh_if_changed(self) -> RefreshSummary | None:
        """Refresh only when the source reports a new version."""
        if self.source is None:
            return None
        source_version = await asyncio.to_thread(self.source.corpus_version)
        if self.corpus.is_loaded and source_version == self._source_version:
            return None
        return await self.refresh(trigger="poll")

    async def save_snapshot(self, path: str | Path) -> Path:
        return await asyncio.to_thread(self.corpus.save, path)

    async def load_snapshot(self, path: str | Path) -> None:
        await asyncio.to_thread(self.corpus.load, path)
        self.cache.invalidate()

    def stats(self) -> dict[str, Any]:
        return {
            "loaded": self.corpus.is_loaded,
            "corpus_version": self.corpus.version,
            "document_count": len(self.corpus),
            "model_id": self.corpus.model_id,
            "dimension": self.corpus.dimension,
            "source_version": self._source_version,
            "cache": asdict(self.cache.stats()),
        }
