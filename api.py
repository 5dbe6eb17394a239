"""
Chemical Replacement Assistant — FastAPI Application Layer

Endpoints:
  1. POST /api/replacements/score                   — Rank replacement candidates
  2. POST /api/disambiguation/parse                 — Detect & parse ambiguous answers
  3. GET  /api/products/search                      — Product search
  4. POST /api/products                             — Register a product
  5. GET  /api/replacement-reasons                  — Active reason codes
  6. POST /api/admin/replacement-reasons            — Add a reason code
  7. POST /api/replacement-requests                 — Open a replacement request
  8. GET  /api/replacement-requests/{id}            — Request lookup
  9. GET  /api/replacement-requests/{id}/replacements — Persisted candidates
  10. POST /api/replacement-requests/{id}/discover  — Run discovery
  11. POST /api/rag/search                          — Upstream product search
  12. GET/DELETE /api/rag/cache                     — Search cache stats / reset
  13. GET  /health                                  — Health check
"""
from __future__ import annotations
import logging
import random
import time
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, configure_logging, get_settings
from disambiguation import DisambiguationParser
from models import (
    CreateReplacementRequest, DisambiguationParseRequest,
    DisambiguationParseResponse, DiscoveryResponse, HealthResponse, Product,
    ProductReplacement, ProductSearchResponse, RagQuery, RagSearchResult,
    ReplacementReason, ReplacementRequest, ScoreReplacementsRequest,
    ScoreReplacementsResponse,
)
from rag_service import RagService
from replacement_algorithms import score_replacements
from repository import InMemoryRepository, ProductRepository, discover_replacements

logger = logging.getLogger(__name__)

APP_NAME = "Chemical Replacement Assistant"
APP_VERSION = "1.0.0"


# ============================================================
# Application State (shared singletons)
# ============================================================

class AppState:
    """Holds all shared service instances."""
    settings: Settings
    repo: ProductRepository
    rag: RagService
    parser: DisambiguationParser
    start_time: float
    request_count: int = 0

    def __init__(self):
        self.start_time = time.monotonic()
        self.request_count = 0


_state = AppState()


# ============================================================
# Lifespan: Startup / Shutdown
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, cleanup on shutdown."""
    settings = get_settings()
    configure_logging(settings)
    logger.info(f"Starting {APP_NAME}...")

    _state.settings = settings
    # In production: a database-backed repository
    _state.repo = InMemoryRepository()
    _state.parser = DisambiguationParser(
        rng=random.Random(settings.disambiguation_seed),
        enrich_categories=settings.disambiguation_enrich_categories,
    )
    _state.rag = RagService(settings, parser=_state.parser)

    logger.info(
        f"System ready. Environment: {settings.app_env}, "
        f"upstream search configured: {_state.rag.is_configured()}")
    yield

    logger.info(f"Shutting down {APP_NAME}...")
    await _state.rag.close()


# ============================================================
# FastAPI App
# ============================================================

app = FastAPI(
    title="Chemical Replacement Assistant API",
    description="Replacement scoring for discontinued or restricted chemical "
                "products, and disambiguation of upstream product search answers.",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Rejected {request.method} {request.url.path}: {len(exc.errors())} error(s)")
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request", "errors": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


# ============================================================
# Middleware: Request Counting & Timing
# ============================================================

@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    start = time.monotonic()
    _state.request_count += 1
    response = await call_next(request)
    elapsed = int((time.monotonic() - start) * 1000)
    response.headers["X-Response-Time-Ms"] = str(elapsed)
    return response


# ============================================================
# 1. POST /api/replacements/score — Rank Candidates
# ============================================================

@app.post("/api/replacements/score", response_model=ScoreReplacementsResponse,
          tags=["Replacements"])
async def score_replacement_candidates(body: ScoreReplacementsRequest):
    """
    Score and rank ``candidates`` as replacements for ``original``.
    Candidates matching an excluded substance are dropped; an empty result
    is a valid outcome.
    """
    try:
        ranked = score_replacements(
            body.original, body.candidates, body.criteria, body.request)
    except Exception as e:
        logger.exception("Replacement scoring failed")
        raise HTTPException(500, f"Scoring error: {str(e)}")

    return ScoreReplacementsResponse(
        candidates=ranked,
        total_candidates=len(body.candidates),
        excluded_count=len(body.candidates) - len(ranked),
        message=None if ranked else "No matches found",
    )


# ============================================================
# 2. POST /api/disambiguation/parse
# ============================================================

@app.post("/api/disambiguation/parse", response_model=DisambiguationParseResponse,
          tags=["Disambiguation"])
async def parse_disambiguation_payload(body: DisambiguationParseRequest):
    detected, data = _state.parser.check(body.raw_response, body.original_query)
    return DisambiguationParseResponse(
        disambiguation_detected=detected,
        disambiguation_data=data,
    )


# ============================================================
# 3-4. Products
# ============================================================

@app.get("/api/products/search", response_model=ProductSearchResponse, tags=["Products"])
async def search_products(
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
):
    try:
        results = await _state.repo.search_products(q, limit)
    except Exception as e:
        logger.exception("Product search failed")
        raise HTTPException(500, f"Search error: {str(e)}")
    return ProductSearchResponse(results=results, total_results=len(results), search_term=q)


@app.post("/api/products", response_model=Product, status_code=201, tags=["Products"])
async def create_product(product: Product):
    if not product.name:
        raise HTTPException(400, "Product name is required")
    return await _state.repo.create_product(product)


# ============================================================
# 5-6. Replacement Reasons
# ============================================================

@app.get("/api/replacement-reasons", response_model=list[ReplacementReason],
         tags=["Replacements"])
async def list_replacement_reasons():
    return await _state.repo.get_replacement_reasons()


@app.post("/api/admin/replacement-reasons", response_model=ReplacementReason,
          status_code=201, tags=["Admin"])
async def create_replacement_reason(reason: ReplacementReason):
    if not reason.code.strip() or not reason.label.strip():
        raise HTTPException(400, "Code and label are required")
    return await _state.repo.create_replacement_reason(reason)


# ============================================================
# 7-10. Replacement Requests & Discovery
# ============================================================

@app.post("/api/replacement-requests", response_model=ReplacementRequest,
          status_code=201, tags=["Replacements"])
async def create_replacement_request(body: CreateReplacementRequest):
    if not body.original_product_name.strip():
        raise HTTPException(400, "Original product name is required")

    request = ReplacementRequest(**body.model_dump())
    created = await _state.repo.create_replacement_request(request)
    logger.info(
        f"[replacement-request] id={created.id} product={created.original_product_name!r} "
        f"reasons={created.reason_codes}")
    return created


async def _get_request_or_404(request_id: UUID) -> ReplacementRequest:
    request = await _state.repo.get_replacement_request(request_id)
    if request is None:
        raise HTTPException(404, "Replacement request not found")
    return request


@app.get("/api/replacement-requests/{request_id}", response_model=ReplacementRequest,
         tags=["Replacements"])
async def get_replacement_request(request_id: UUID):
    return await _get_request_or_404(request_id)


@app.get("/api/replacement-requests/{request_id}/replacements",
         response_model=list[ProductReplacement], tags=["Replacements"])
async def get_product_replacements(request_id: UUID):
    await _get_request_or_404(request_id)
    return await _state.repo.get_product_replacements(request_id)


@app.post("/api/replacement-requests/{request_id}/discover",
          response_model=DiscoveryResponse, tags=["Replacements"])
async def discover(request_id: UUID):
    """
    Pull similar products for the request's original product, rank them and
    store the top candidates. Marks the request as discovery attempted.
    """
    await _get_request_or_404(request_id)
    try:
        result = await discover_replacements(
            _state.repo, request_id,
            top_n=_state.settings.replacement_top_n,
            pool_limit=_state.settings.similar_products_limit,
        )
    except Exception as e:
        logger.exception("Replacement discovery failed")
        raise HTTPException(500, f"Discovery error: {str(e)}")

    if result is None:
        raise HTTPException(404, "Replacement request not found")

    return DiscoveryResponse(
        request_id=request_id,
        candidates=result.candidates,
        total_candidates=result.pool_size,
        stored=len(result.stored),
        message=result.message,
    )


# ============================================================
# 11-12. Upstream Search (RAG)
# ============================================================

@app.post("/api/rag/search", response_model=RagSearchResult, tags=["Search"])
async def rag_search(query: RagQuery, process: bool = False):
    """Forward a query upstream. ``process=true`` adds formatted context."""
    if process:
        return await _state.rag.search_with_processing(query)
    return await _state.rag.search(query)


@app.get("/api/rag/cache", tags=["Search"])
async def rag_cache_stats():
    return _state.rag.cache_stats()


@app.delete("/api/rag/cache", tags=["Search"])
async def rag_cache_clear():
    _state.rag.clear_cache()
    return {"cleared": True}


# ============================================================
# 13. GET /health — Health Check
# ============================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """System health check."""
    uptime = int(time.monotonic() - _state.start_time)

    components = {
        "repository": {
            "status": "healthy",
            "products": len(getattr(_state.repo, 'products', {})),
            "requests": len(getattr(_state.repo, 'requests', {})),
        },
        "replacement_engine": {"status": "healthy"},
        "rag_service": {
            "status": "healthy" if _state.rag.is_configured() else "not_configured",
            "cached_queries": len(_state.rag.cache),
        },
    }

    return HealthResponse(
        status="healthy",
        components=components,
        version=APP_VERSION,
        uptime_seconds=uptime,
    )


# ============================================================
# Entry Point
# ============================================================

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(app, host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())
