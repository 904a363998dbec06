from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse, Response
from fastapi.staticfiles import StaticFiles
from loguru import logger

from kbchat import config as CFG
from kbchat.access import AccessGuard
from kbchat.errors import KBChatError, MalformedSourceError, format_error_for_logging
from kbchat.kb_store import KBStore, normalize_kb, read_kb_source
from kbchat.llm_client import CompletionClient, close_http_client
from kbchat.logging_config import log_error, setup_logging
from kbchat.metrics import get_content_type, get_metrics, track_request
from kbchat.models import ChatRequest, ChatResponse, ErrorResponse
from kbchat.registry import RegistryWatcher, TenantRegistry, normalize_slug
from kbchat.resolver import AnswerResolver
from kbchat.usage import UsageRecorder


def create_app(
    registry_file: Path = CFG.REGISTRY_FILE,
    clients_dir: Path = CFG.CLIENTS_DIR,
    usage_log_file: Path = CFG.USAGE_LOG_FILE,
    public_dir: Optional[Path] = CFG.PUBLIC_DIR,
    completion_client: Optional[CompletionClient] = None,
    fallback_origins=tuple(CFG.CORS_FALLBACK_ORIGINS),
    kb_ttl_seconds: float = CFG.KB_CACHE_TTL_SECONDS,
    poll_seconds: float = CFG.REGISTRY_POLL_SECONDS,
) -> FastAPI:
    """Wire registry, KB store, guard and resolver into a FastAPI app."""
    registry = TenantRegistry(registry_file)
    registry.reload()
    watcher = RegistryWatcher(registry, interval_seconds=poll_seconds)
    kb_store = KBStore(clients_dir, ttl_seconds=kb_ttl_seconds)
    guard = AccessGuard(registry, fallback_origins=fallback_origins)
    resolver = AnswerResolver(
        registry=registry,
        kb_store=kb_store,
        completion_client=completion_client or CompletionClient(),
        guard=guard,
    )
    usage_recorder = UsageRecorder(usage_log_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the registry poller; close the shared HTTP client on shutdown."""
        registry.refresh_if_changed()
        watcher.start()
        logger.info(f"kbchat ready: {len(registry.snapshot)} tenant(s), kb dir {clients_dir}")
        yield
        watcher.stop()
        try:
            close_http_client()
        except Exception as e:
            logger.warning(f"Error closing HTTP client: {e}")

    app = FastAPI(default_response_class=ORJSONResponse, lifespan=lifespan)
    app.state.registry = registry
    app.state.kb_store = kb_store
    app.state.guard = guard
    app.state.resolver = resolver
    app.state.usage_recorder = usage_recorder

    @app.middleware("http")
    async def cors_guard(request: Request, call_next):
        """Answer preflights here; annotate every other response after the route ran."""
        origin = request.headers.get("origin")
        if request.method == "OPTIONS":
            decision = guard.authorize(request.query_params.get("client"), origin, is_preflight=True)
            response = Response(status_code=204)
            guard.apply(response, decision)
            return response

        response = await call_next(request)
        # /chat names its tenant in the body and records it on request.state
        client = getattr(request.state, "client", None) or request.query_params.get("client")
        guard.apply(response, guard.authorize(client, origin, is_preflight=False))
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests with timing and status information."""
        request_id = str(uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        logger.info(
            f"[{request_id}] → {request.method} {request.url.path} "
            f"origin={request.headers.get('origin') or '-'}"
        )

        response = await call_next(request)
        duration = time.time() - start_time

        if request.url.path != "/metrics":
            track_request(
                endpoint=request.url.path,
                method=request.method,
                status=response.status_code,
                duration=duration,
            )

        logger.info(
            f"[{request_id}] ← {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s"
        )
        return response

    @app.exception_handler(KBChatError)
    async def kbchat_error_handler(request: Request, exc: KBChatError):
        return ORJSONResponse(status_code=exc.status_code, content=exc.to_response_body())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.info(f"Rejected malformed request body: {exc.errors()}")
        return ORJSONResponse(status_code=400, content={"reply": "Invalid request.", "unsure": True})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        logger.opt(exception=exc).error(
            f"Unhandled error on {request.url.path}: {format_error_for_logging(exc, request_id)}"
        )
        return ORJSONResponse(status_code=500, content={"reply": KBChatError.reply, "unsure": True})

    # --------- Chat ---------
    @app.post(
        "/chat",
        response_model=ChatResponse,
        response_model_exclude_none=True,
        responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse},
                   500: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    )
    def chat(req: ChatRequest, request: Request, background_tasks: BackgroundTasks) -> Any:
        """Answer from the tenant's KB, or fall back to the completion provider."""
        origin = request.headers.get("origin") or ""
        request.state.client = req.client
        try:
            resolution = resolver.resolve(req.client, req.message, origin)
        except KBChatError as e:
            log_error(
                type(e).__name__,
                e.message,
                request_id=getattr(request.state, "request_id", None),
                error_code=e.error_code,
                status_code=e.status_code,
            )
            return ORJSONResponse(status_code=e.status_code, content=e.to_response_body())

        background_tasks.add_task(usage_recorder.record, resolution.usage_record(origin))
        return resolution.to_response()

    # --------- Health / Debug ---------
    @app.get("/ping")
    def ping() -> Dict[str, Any]:
        return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}

    @app.get("/debug-kb")
    def debug_kb(client: str = CFG.DEFAULT_CLIENT) -> Dict[str, Any]:
        """Read a tenant's kb.json straight from disk (bypasses the cache)."""
        slug = normalize_slug(client)
        kb_path = kb_store.kb_path(slug)
        raw: Any = []
        error = None
        try:
            raw = read_kb_source(kb_path)
        except MalformedSourceError as e:
            error = str(e.cause or e.message)
        kb = normalize_kb(raw)
        return {
            "client": slug,
            "kbPath": str(kb_path),
            "exists": kb_path.exists(),
            "rawCount": len(raw) if isinstance(raw, list) else -1,
            "kbCount": len(kb),
            "sample": [e.to_record() for e in kb[:2]],
            "error": error,
        }

    @app.get("/debug-cors")
    def debug_cors(request: Request) -> Dict[str, Any]:
        """Inspect what the CORS guard sees; demoOrigins are the default tenant's origins."""
        default_tenant = registry.get(normalize_slug(resolver.default_client))
        return {
            "seenOrigin": request.headers.get("origin"),
            "fallbackAllowed": sorted(guard.fallback_origins),
            "registryClients": sorted(registry.snapshot),
            "demoOrigins": sorted(default_tenant.allowed_origins) if default_tenant else [],
            "kbCache": kb_store.stats(),
            "settings": CFG.health_summary(),
        }

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_content_type())

    # --------- Static site (optional) ---------
    if public_dir is not None and Path(public_dir).exists():
        app.mount("/", StaticFiles(directory=str(public_dir), html=True), name="public")
        logger.info(f"Mounted static files from {public_dir}")

    return app


def main() -> None:
    import uvicorn

    setup_logging()
    uvicorn.run(create_app(), host=CFG.HOST, port=CFG.PORT)


if __name__ == "__main__":
    main()
