import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError as BodyValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from query_agent.api.deps import get_chat_handler, require_ai_access
from query_agent.api.schemas import ChatRequest, ErrorResponse, HealthResponse
from query_agent.core.cache import CacheClient
from query_agent.core.cancellation import AbortSignal, REASON_CLIENT
from query_agent.core.concurrency import ConcurrencyLimiter
from query_agent.core.errors import QueryAgentError
from query_agent.core.logging import setup_logging
from query_agent.core.observability import TraceManager
from query_agent.core.security import TenantContext
from query_agent.core.settings import settings
from query_agent.core.streaming import NDJSON_MEDIA_TYPE
from query_agent.db.session import create_store_engine
from query_agent.llm.router import llm_router
from query_agent.services.chat_handler import ChatHandler
from query_agent.services.query_executor import MockStore, QueryExecutor, SqlAlchemyStore

# Setup
setup_logging()
logger = logging.getLogger(__name__)


async def build_executor() -> QueryExecutor:
    limiter = ConcurrencyLimiter(settings.db.concurrency_limit)
    if settings.use_mock_db:
        store = await MockStore.create(settings.ai.mock_tenant_id)
        logger.info("Using fixture-backed mock store")
    else:
        store = SqlAlchemyStore(create_store_engine(settings.db.url))
        logger.info("Using database store")
    return QueryExecutor(
        store,
        limiter,
        timeout_ms=settings.ai.query_timeout_ms,
        max_rows=settings.ai.max_rows,
        use_mock=settings.use_mock_db,
        mock_tenant_id=settings.ai.mock_tenant_id,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One limiter and one store per process
    executor = await build_executor()
    app.state.executor = executor
    app.state.chat_handler = ChatHandler(executor)

    yield

    # Shutdown
    await executor.close()
    await CacheClient.close()


app = FastAPI(title="AI Query Agent", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Middleware for Trace ID
@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("X-Trace-Id", str(uuid.uuid4()))
    TraceManager.set_trace_id(trace_id)
    request.state.trace_id = trace_id

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    response.headers["X-Trace-Id"] = trace_id
    TraceManager.info(f"Request: {request.method} {request.url.path}", status=response.status_code, duration_ms=duration*1000)
    return response


def _error_response(request: Request, status_code: int, message: str, code: str) -> JSONResponse:
    body = ErrorResponse(error=message, code=code, trace_id=getattr(request.state, "trace_id", None))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(QueryAgentError)
async def query_agent_error_handler(request: Request, exc: QueryAgentError):
    TraceManager.warning("Request rejected", code=exc.code, status=exc.status_code)
    return _error_response(request, exc.status_code, exc.message, exc.code)


@app.exception_handler(BodyValidationError)
async def body_validation_error_handler(request: Request, exc: BodyValidationError):
    # Field locations only, never echo the submitted content
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    TraceManager.warning("Invalid chat request body", fields=fields)
    return _error_response(request, 400, "Invalid request body", "VALIDATION_ERROR")


# Routes
@app.get("/health", response_model=HealthResponse)
async def health_check():
    providers = {name: await client.check_health() for name, client in llm_router.clients.items()}
    return HealthResponse(
        status="ok" if any(providers.values()) else "degraded",
        store="mock" if settings.use_mock_db else "database",
        cache=await CacheClient.ping(),
        providers=providers,
    )


@app.post("/api/v1/ai/chat")
async def chat_endpoint(
    body: ChatRequest,
    tenant: Annotated[TenantContext, Depends(require_ai_access)],
    handler: Annotated[ChatHandler, Depends(get_chat_handler)],
):
    prepared = handler.prepare(body, tenant)
    await handler.check_usage(prepared, tenant)

    request_signal = AbortSignal()

    async def generator():
        try:
            async for line in handler.stream(prepared, tenant, request_signal):
                yield line
        finally:
            # Normal end or client disconnect, either way nothing more may run
            request_signal.abort(REASON_CLIENT)

    return StreamingResponse(
        generator(),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
