"""FastAPI application exposing the ChatArbor knowledge and chat APIs."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .chat import ChatOrchestrator
from .config import Settings
from .embeddings import EmbeddingService
from .errors import ErrorCategory, KnowledgeBaseError, SourceNotFound
from .extraction import extract_text
from .knowledge import KnowledgeService
from .llm import ChatModel, build_chat_model
from .models import IngestOutcome, IngestResult, ScrapeResult, SourceType
from .observability import MetricsRecorder
from .retrieval import build_retriever
from .scraper import UrlScraper
from .sources import JsonSourceRepository, SourceRepository
from .vector_store import ChromaVectorStore

logger = logging.getLogger(__name__)

_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.CONTENT: 400,
    ErrorCategory.SECURITY: 403,
    ErrorCategory.UPSTREAM: 503,
}

_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    package_logger = logging.getLogger("chatarbor")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        package_logger.handlers = []
        for handler in handlers:
            package_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        package_logger.addHandler(handler)

    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    package_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        repository: SourceRepository,
        embedding_service: EmbeddingService,
        vector_store: ChromaVectorStore | None,
        knowledge_service: KnowledgeService,
        scraper: UrlScraper,
        chat_model: ChatModel,
        chat_orchestrator: ChatOrchestrator,
        metrics: MetricsRecorder,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.knowledge_service = knowledge_service
        self.scraper = scraper
        self.chat_model = chat_model
        self.chat_orchestrator = chat_orchestrator
        self.metrics = metrics


def create_app(
    *,
    settings: Settings | None = None,
    repository: SourceRepository | None = None,
    embedding_service: EmbeddingService | None = None,
    vector_store: ChromaVectorStore | None = None,
    scraper: UrlScraper | None = None,
    chat_model: ChatModel | None = None,
    metrics: MetricsRecorder | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    repository = repository or JsonSourceRepository(settings.source_store_path())
    embedding_service = embedding_service or EmbeddingService.from_settings(settings)
    if vector_store is None and settings.vector_store_enabled:
        vector_store = ChromaVectorStore.from_settings(settings, embedding_service)

    retriever = build_retriever(settings, repository, vector_store)
    knowledge_service = KnowledgeService.from_settings(
        settings,
        repository,
        retriever,
        store=vector_store,
        metrics=metrics,
    )
    scraper = scraper or UrlScraper.from_settings(settings, metrics=metrics)
    chat_model = chat_model or build_chat_model(settings)
    chat_orchestrator = ChatOrchestrator.from_settings(settings, knowledge_service, chat_model, metrics=metrics)

    logger.info(
        "app.start retrieval=%s embeddings=%s embeddings_configured=%s chat_backend=%s vector_store=%s",
        retriever.name,
        embedding_service.backend.name.lower(),
        settings.embeddings_configured,
        chat_model.name,
        settings.chroma_url or "disabled",
    )

    app = FastAPI(title="ChatArbor")
    app.state.services = ApplicationState(
        settings=settings,
        repository=repository,
        embedding_service=embedding_service,
        vector_store=vector_store,
        knowledge_service=knowledge_service,
        scraper=scraper,
        chat_model=chat_model,
        chat_orchestrator=chat_orchestrator,
        metrics=metrics,
    )

    @app.on_event("shutdown")
    async def _close_clients() -> None:
        await scraper.aclose()
        await chat_model.aclose()
        if vector_store is not None:
            await vector_store.aclose()
        await embedding_service.aclose()

    @app.exception_handler(KnowledgeBaseError)
    async def _knowledge_error_handler(request: Request, exc: KnowledgeBaseError) -> JSONResponse:
        if isinstance(exc, SourceNotFound):
            return JSONResponse({"error": exc.user_message}, status_code=404)
        status = _STATUS_BY_CATEGORY.get(exc.category, 500)
        if exc.category is not ErrorCategory.SECURITY:
            logger.info("api.error path=%s category=%s error=%s", request.url.path, exc.category.value, exc)
        return JSONResponse({"error": exc.user_message, "category": exc.category.value}, status_code=status)

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_knowledge_service(request: Request) -> KnowledgeService:
        return get_state(request).knowledge_service

    def get_scraper(request: Request) -> UrlScraper:
        return get_state(request).scraper

    def get_chat_orchestrator(request: Request) -> ChatOrchestrator:
        return get_state(request).chat_orchestrator

    def get_vector_store(request: Request) -> ChromaVectorStore | None:
        return get_state(request).vector_store

    def get_metrics(request: Request) -> MetricsRecorder:
        return get_state(request).metrics

    # Knowledge -----------------------------------------------------------

    @app.get("/api/knowledge")
    async def list_knowledge(
        knowledge: KnowledgeService = Depends(get_knowledge_service),
    ) -> JSONResponse:
        return JSONResponse([source.to_dict() for source in knowledge.list()])

    @app.post("/api/knowledge")
    async def add_knowledge(
        request: Request,
        knowledge: KnowledgeService = Depends(get_knowledge_service),
    ) -> JSONResponse:
        payload = await _json_object(request)
        result = await knowledge.add(payload)
        return JSONResponse(_result_payload(result), status_code=201)

    @app.post("/api/knowledge/bulk")
    async def add_knowledge_bulk(
        request: Request,
        knowledge: KnowledgeService = Depends(get_knowledge_service),
    ) -> JSONResponse:
        payload = await _json_body(request)
        items = payload.get("items") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise HTTPException(status_code=400, detail="Expected an array of knowledge items")
        results = await knowledge.add_bulk(items)
        persisted = sum(1 for result in results if result.outcome is not IngestOutcome.FAILED)
        return JSONResponse({"count": persisted, "results": [result.to_dict() for result in results]})

    @app.put("/api/knowledge/{source_id}")
    async def update_knowledge(
        source_id: str,
        request: Request,
        knowledge: KnowledgeService = Depends(get_knowledge_service),
    ) -> JSONResponse:
        payload = await _json_object(request)
        result = await knowledge.update(source_id, payload)
        return JSONResponse(_result_payload(result))

    @app.delete("/api/knowledge/{source_id}")
    async def delete_knowledge(
        source_id: str,
        knowledge: KnowledgeService = Depends(get_knowledge_service),
    ) -> JSONResponse:
        await knowledge.remove(source_id)
        return JSONResponse({"success": True})

    @app.post("/api/knowledge/reindex")
    async def reindex_knowledge(
        knowledge: KnowledgeService = Depends(get_knowledge_service),
    ) -> JSONResponse:
        results = await knowledge.reindex()
        return JSONResponse({"count": len(results), "results": [result.to_dict() for result in results]})

    @app.post("/api/knowledge/search")
    async def search_knowledge(
        request: Request,
        knowledge: KnowledgeService = Depends(get_knowledge_service),
    ) -> JSONResponse:
        payload = await _json_object(request)
        results = await knowledge.search(str(payload.get("query") or ""))
        return JSONResponse([result.to_dict() for result in results])

    @app.post("/api/knowledge/scrape")
    async def scrape_url(
        request: Request,
        scraper: UrlScraper = Depends(get_scraper),
    ) -> JSONResponse:
        payload = await _json_object(request)
        url = str(payload.get("url") or "").strip()
        if not url:
            raise HTTPException(status_code=400, detail="url is required")
        result = await scraper.scrape(url)
        return JSONResponse(result.to_dict(), status_code=_scrape_status(result))

    @app.post("/api/knowledge/upload")
    async def upload_knowledge(
        file: UploadFile = File(...),
        title: str | None = Form(None),
        knowledge: KnowledgeService = Depends(get_knowledge_service),
        state: ApplicationState = Depends(get_state),
    ) -> JSONResponse:
        filename = (file.filename or "").strip()
        if not filename:
            raise HTTPException(status_code=400, detail="File name is required")
        limit = state.settings.upload_max_bytes
        data = await file.read(limit + 1)
        if len(data) > limit:
            raise HTTPException(status_code=413, detail=f"File exceeds the {limit} byte upload limit")
        document = await asyncio.to_thread(extract_text, filename, data, file.content_type)
        result = await knowledge.add(
            {
                "type": SourceType.FILE.value,
                "content": filename,
                "data": document.text,
                "title": title or document.title,
            }
        )
        return JSONResponse(_result_payload(result), status_code=201)

    # Chat ----------------------------------------------------------------

    @app.post("/api/chat/stream", response_class=StreamingResponse)
    async def chat_stream(
        request: Request,
        orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
    ) -> StreamingResponse:
        payload = await _json_object(request)
        message = str(payload.get("message") or "").strip()
        history = payload.get("history") or []
        if not message:
            raise HTTPException(status_code=400, detail="message is required")
        if not isinstance(history, list):
            raise HTTPException(status_code=400, detail="history must be an array")

        async def _event_source() -> AsyncGenerator[str, None]:
            events = orchestrator.stream(message, history)
            try:
                async for event in events:
                    if await request.is_disconnected():
                        logger.info("chat.stream.client_disconnected")
                        break
                    yield f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
            finally:
                await events.aclose()

        return StreamingResponse(
            _event_source(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # Operations ----------------------------------------------------------

    @app.get("/api/vectors/health")
    async def vector_health(
        store: ChromaVectorStore | None = Depends(get_vector_store),
    ) -> JSONResponse:
        if store is None:
            return JSONResponse({"status": "disabled"})
        connected = await store.heartbeat()
        return JSONResponse({"status": "connected" if connected else "disconnected"})

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder = Depends(get_metrics)) -> Response:
        if not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        return Response(content=metrics.render_prometheus(), media_type=metrics.prometheus_content_type)

    return app


async def _json_body(request: Request) -> object:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc


async def _json_object(request: Request) -> dict:
    payload = await _json_body(request)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return payload


def _result_payload(result: IngestResult) -> dict:
    payload = result.to_dict()
    if result.source is not None:
        payload["source"] = result.source.to_dict()
    return payload


def _scrape_status(result: ScrapeResult) -> int:
    if result.success or result.failure is None:
        return 200
    return _STATUS_BY_CATEGORY.get(result.failure.category, 400)


__all__ = ["ApplicationState", "create_app"]
