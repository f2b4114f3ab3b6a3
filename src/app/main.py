from __future__ import annotations

"""FastAPI application entrypoint for the exam question retrieval service."""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from src.app.dependencies import get_embedding_config_report, get_engine
from src.app.metrics import (
    metrics_middleware,
    metrics_response,
    record_corpus_version,
    record_search,
)
from src.app.schemas import (
    AskRequest,
    AskResponse,
    EmbeddingHealthResponse,
    RefreshResponse,
    SearchRequest,
    SearchResponseModel,
    SearchResultItem,
    SnapshotResponse,
    SourceQuestion,
    StatsResponse,
)
from src.app.settings import settings
from src.index.corpus import SnapshotError
from src.loaders.questions import QuestionSourceError
from src.metadata.store import RefreshLogError
from src.rag.engine import RetrievalEngine
from src.rag.errors import RetrievalError
from src.rag.llm import LLMError

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "empty_query": 400,
    "invalid_top_k": 400,
    "invalid_filter": 400,
    "index_unavailable": 503,
    "timeout": 504,
    "dimension_mismatch": 500,
}


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


def _safe_error_message(exc: Exception) -> str:
    """Return a safe error type name for logs and responses."""
    return type(exc).__name__


async def _warm_start(engine: RetrievalEngine) -> None:
    """Load the snapshot when one exists, otherwise pull the data source."""
    snapshot = Path(settings.snapshot_path) if settings.snapshot_path else None
    if snapshot is not None and snapshot.exists():
        try:
            await engine.load_snapshot(snapshot)
            record_corpus_version(engine.corpus.version)
            return
        except (SnapshotError, RetrievalError) as exc:
            logger.error(
                "snapshot_load_failed",
                extra={"path": str(snapshot), "detail": _safe_error_message(exc)},
            )
    if engine.source is None:
        logger.warning("no_corpus_source_configured")
        return
    summary = await engine.refresh(trigger="startup")
    record_corpus_version(summary.corpus_version)


async def _poll_source(engine: RetrievalEngine, interval: float) -> None:
    """Refresh the corpus whenever the data source reports a new version."""
    while True:
        await asyncio.sleep(interval)
        try:
            summary = await engine.refresh_if_changed()
        except (QuestionSourceError, RefreshLogError, RetrievalError) as exc:
            logger.error("corpus_poll_failed", extra={"detail": _safe_error_message(exc)})
            continue
        if summary is not None:
            record_corpus_version(summary.corpus_version)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    await _warm_start(engine)
    poller = None
    if settings.refresh_interval > 0 and engine.source is not None:
        poller = asyncio.create_task(_poll_source(engine, settings.refresh_interval))
    try:
        yield
    finally:
        if poller is not None:
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass


app = FastAPI(title="Exam Question Retrieval Service", version="0.1.0", lifespan=lifespan)


@app.exception_handler(RetrievalError)
async def retrieval_error_handler(request: Request, exc: RetrievalError) -> JSONResponse:
    status = ERROR_STATUS.get(exc.code, 500)
    logger.warning(
        "retrieval_error",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "code": exc.code,
            "status": status,
        },
    )
    return JSONResponse(status_code=status, content={"error": exc.code, "detail": str(exc)})


@app.exception_handler(LLMError)
async def llm_error_handler(request: Request, exc: LLMError) -> JSONResponse:
    logger.error(
        "llm_failed",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "detail": _safe_error_message(exc),
        },
    )
    return JSONResponse(status_code=502, content={"error": "llm_error", "detail": str(exc)})


@app.exception_handler(QuestionSourceError)
async def source_error_handler(request: Request, exc: QuestionSourceError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"error": "source_error", "detail": str(exc)})


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach or create a request ID for traceability."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    """Capture request metrics before returning the response."""
    return await metrics_middleware(request, call_next)


@app.get("/metrics")
async def metrics():
    """Expose Prometheus-style metrics."""
    return metrics_response()


@app.get("/health")
async def health() -> dict[str, str]:
    """Simple health probe for uptime checks."""
    return {"status": "ok"}


@app.get("/stats", response_model=StatsResponse)
async def stats(engine: RetrievalEngine = Depends(get_engine)) -> StatsResponse:
    """Return corpus and cache statistics."""
    return StatsResponse(**engine.stats())


@app.get("/stats/embedding", response_model=EmbeddingHealthResponse)
async def embedding_health() -> EmbeddingHealthResponse:
    """Return embedding configuration health checks."""
    report = get_embedding_config_report()
    return EmbeddingHealthResponse(**report.__dict__)


@app.post("/search", response_model=SearchResponseModel)
async def search(
    request: SearchRequest,
    http_request: Request,
    engine: RetrievalEngine = Depends(get_engine),
) -> SearchResponseModel:
    """Run a hybrid, semantic or keyword search."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    strategy = request.strategy or engine.config.default_strategy
    started = time.monotonic()
    try:
        response = await engine.search(
            request.query,
            strategy=strategy,
            filters=request.filters,
            top_k=request.top_k,
            timeout=request.timeout,
        )
    except RetrievalError as exc:
        record_search(strategy, exc.code, time.monotonic() - started)
        raise
    record_search(strategy, "ok", time.monotonic() - started, degraded=response.degraded)
    return SearchResponseModel(
        results=[
            SearchResultItem(document_id=hit.document_id, score=hit.score, metadata=hit.metadata)
            for hit in response.results
        ],
        degraded=response.degraded,
        corpus_version=response.corpus_version,
        request_id=request_id,
    )


@app.post("/ask", response_model=AskResponse)
async def ask(
    request: AskRequest,
    http_request: Request,
    engine: RetrievalEngine = Depends(get_engine),
) -> AskResponse:
    """Answer a question from the retrieved exam questions."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    result = await engine.ask(
        request.query,
        strategy=request.strategy,
        filters=request.filters,
        top_k=request.top_k,
        timeout=request.timeout,
    )
    logger.info(
        "ask_completed",
        extra={
            "request_id": request_id,
            "source_count": len(result.sources),
            "refusal_reason": result.refusal_reason,
            "degraded": result.degraded,
        },
    )
    return AskResponse(
        answer=result.answer,
        sources=[
            SourceQuestion(
                document_id=hit.document_id,
                content=hit.content,
                metadata=hit.metadata,
                score=hit.score,
            )
            for hit in result.sources
        ],
        degraded=result.degraded,
        refusal_reason=result.refusal_reason,
        request_id=request_id,
    )


@app.post("/refresh", response_model=RefreshResponse)
async def refresh(engine: RetrievalEngine = Depends(get_engine)) -> RefreshResponse:
    """Pull the question source now and apply changes to the corpus."""
    summary = await engine.refresh(trigger="api")
    record_corpus_version(summary.corpus_version)
    return RefreshResponse(
        corpus_version=summary.corpus_version,
        document_count=summary.document_count,
        upserted=summary.upserted,
        removed=summary.removed,
        skipped=summary.skipped,
    )


@app.post("/snapshot", response_model=SnapshotResponse)
async def snapshot(engine: RetrievalEngine = Depends(get_engine)) -> SnapshotResponse:
    """Write the index snapshot to the configured path."""
    if not settings.snapshot_path:
        raise HTTPException(status_code=400, detail="RAG_SNAPSHOT_PATH is not configured")
    if not engine.is_loaded:
        raise HTTPException(status_code=409, detail="No corpus loaded to snapshot")
    path = await engine.save_snapshot(settings.snapshot_path)
    return SnapshotResponse(
        path=str(path),
        corpus_version=engine.corpus.version,
        document_count=len(engine.corpus),
    )
