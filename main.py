import asyncio
import contextlib
import logging
import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, status, Query, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from app_types import InvalidationKind
from cache_manager import CACHE_CONFIGS, CacheManager
from cache_middleware import run_cleanup, with_cache
from cache_store import DEFAULT_MAX_ENTRIES, DEFAULT_MAX_TOTAL_BYTES, MemoryCache
from fetcher import SupabaseDataSource, UpstreamError

load_dotenv()  # ensure .env is loaded here too

logger = logging.getLogger("uvicorn.error")

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")
CACHE_MAX_TOTAL_BYTES = int(os.getenv("CACHE_MAX_TOTAL_BYTES", str(DEFAULT_MAX_TOTAL_BYTES)))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", str(DEFAULT_MAX_ENTRIES)))
CACHE_CLEANUP_INTERVAL_SECONDS = float(os.getenv("CACHE_CLEANUP_INTERVAL_SECONDS", "600"))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(message: str, code: str, status_code: int) -> JSONResponse:
    return JSONResponse(content={"error": message, "code": code}, status_code=status_code)


def _int_param(request: Request, name: str, default: int, lo: int, hi: int) -> int:
    raw = request.query_params.get(name)
    if raw is None:
        return default
    value = int(raw)  # ValueError handled by caller
    if not lo <= value <= hi:
        raise ValueError(f"{name} must be between {lo} and {hi}")
    return value


def create_app(
    store: MemoryCache | None = None,
    data_source: SupabaseDataSource | None = None,
    admin_token: str | None = ADMIN_TOKEN,
    cleanup_interval: float = CACHE_CLEANUP_INTERVAL_SECONDS,
) -> FastAPI:
    # One store per process, handed to every cached route.
    cache = store if store is not None else MemoryCache(
        max_total_size=CACHE_MAX_TOTAL_BYTES, max_entries=CACHE_MAX_ENTRIES
    )
    db = data_source if data_source is not None else SupabaseDataSource()
    manager = CacheManager(cache)
    logger.info("CACHE INIT → pid=%s cache_id=%s", os.getpid(), id(cache))

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if cleanup_interval > 0:
            task = asyncio.create_task(run_cleanup(cache, cleanup_interval))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(lifespan=lifespan)
    app.state.cache = cache
    app.state.cache_manager = manager

    def _auth(x_admin_token: str | None):
        if not admin_token:
            raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
        if x_admin_token != admin_token:
            raise HTTPException(status_code=401, detail="Unauthorized")

    # -------------------------------------------------------
    # Read handlers (wrapped with the cache below)
    # -------------------------------------------------------
    def list_legislations(request: Request) -> Response:
        try:
            limit = _int_param(request, "limit", 50, 1, 1000)
            offset = _int_param(request, "offset", 0, 0, 1_000_000)
        except ValueError as e:
            return _error(str(e), "VALIDATION_ERROR", status.HTTP_400_BAD_REQUEST)
        try:
            rows = db.list_legislations(limit=limit, offset=offset)
        except UpstreamError as e:
            return _error(str(e), "DATABASE_ERROR", status.HTTP_502_BAD_GATEWAY)
        return JSONResponse(content=rows)

    def get_legislation(request: Request) -> Response:
        try:
            row = db.get_legislation(request.path_params["legislation_id"])
        except UpstreamError as e:
            return _error(str(e), "DATABASE_ERROR", status.HTTP_502_BAD_GATEWAY)
        if row is None:
            return _error("Legislation not found", "NOT_FOUND", status.HTTP_404_NOT_FOUND)
        return JSONResponse(content=row)

    def get_article(request: Request) -> Response:
        try:
            row = db.get_article(request.path_params["article_id"])
        except UpstreamError as e:
            return _error(str(e), "DATABASE_ERROR", status.HTTP_502_BAD_GATEWAY)
        if row is None:
            return _error("Article not found", "NOT_FOUND", status.HTTP_404_NOT_FOUND)
        return JSONResponse(content=row)

    def list_cases(request: Request) -> Response:
        params = request.query_params
        try:
            limit = _int_param(request, "limit", 25, 1, 100)
            offset = _int_param(request, "offset", 0, 0, 1_000_000)
        except ValueError as e:
            return _error(str(e), "VALIDATION_ERROR", status.HTTP_400_BAD_REQUEST)
        latest = params.get("latest", "").lower() in ("true", "1")
        topics = params.get("topics")
        date_from = params.get("date_from")
        date_to = params.get("date_to")
        try:
            rows, total = db.list_cases(
                limit=limit, offset=offset, latest=latest,
                topics=topics, date_from=date_from, date_to=date_to,
            )
        except UpstreamError as e:
            return _error(str(e), "DATABASE_ERROR", status.HTTP_502_BAD_GATEWAY)

        has_next = offset + limit < total
        has_prev = offset > 0
        return JSONResponse(content={
            "data": rows,
            "pagination": {
                "currentPage": offset // limit + 1,
                "totalPages": -(-total // limit),
                "totalItems": total,
                "itemsPerPage": limit,
                "hasNext": has_next,
                "hasPrev": has_prev,
                "nextOffset": offset + limit if has_next else None,
                "prevOffset": max(0, offset - limit) if has_prev else None,
            },
            "metadata": {
                "filters": {
                    "latest": latest,
                    "topics": topics,
                    "dateRange": {"from": date_from, "to": date_to} if date_from or date_to else None,
                },
            },
        })

    def get_case(request: Request) -> Response:
        try:
            row = db.get_case(request.path_params["case_id"])
        except UpstreamError as e:
            return _error(str(e), "DATABASE_ERROR", status.HTTP_502_BAD_GATEWAY)
        if row is None:
            return _error("Case not found", "NOT_FOUND", status.HTTP_404_NOT_FOUND)
        return JSONResponse(content=row)

    def search(request: Request) -> Response:
        q = (request.query_params.get("q") or "").strip()
        if len(q) < 2:
            return _error("Query must be at least 2 characters", "VALIDATION_ERROR", status.HTTP_400_BAD_REQUEST)
        try:
            results = db.search(q)
        except UpstreamError as e:
            return _error(str(e), "DATABASE_ERROR", status.HTTP_502_BAD_GATEWAY)
        return JSONResponse(content={"query": q, **results})

    async def generate_report(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return _error("Invalid JSON body", "VALIDATION_ERROR", status.HTTP_400_BAD_REQUEST)
        article_ids = body.get("article_ids") if isinstance(body, dict) else None
        if not isinstance(article_ids, list) or not article_ids or not all(isinstance(a, str) for a in article_ids):
            return _error("article_ids must be a non-empty list of strings", "VALIDATION_ERROR",
                          status.HTTP_400_BAD_REQUEST)
        try:
            articles = await run_in_threadpool(db.report_articles, article_ids)
        except UpstreamError as e:
            return _error(str(e), "DATABASE_ERROR", status.HTTP_502_BAD_GATEWAY)
        return JSONResponse(content={
            "title": body.get("title") or "Legal research report",
            "generated_at": _now_iso(),
            "articles": articles,
        })

    # -------------------------------------------------------
    # Routes
    # -------------------------------------------------------
    def cached(name: str, handler, prefix: str):
        return with_cache(CACHE_CONFIGS[name], handler, prefix, store=cache)

    app.add_api_route("/api/legislations", cached("legislation", list_legislations, "legislations"), methods=["GET"])
    app.add_api_route(
        "/api/legislations/{legislation_id}", cached("legislation", get_legislation, "legislations"), methods=["GET"]
    )
    app.add_api_route("/api/articles/{article_id}", cached("articles", get_article, "articles"), methods=["GET"])
    app.add_api_route("/api/cases", cached("cases", list_cases, "cases"), methods=["GET"])
    app.add_api_route("/api/cases/{case_id}", cached("cases", get_case, "cases"), methods=["GET"])
    app.add_api_route("/api/search", cached("search", search, "search"), methods=["GET"])
    app.add_api_route("/api/reports/generate", cached("reports", generate_report, "reports"), methods=["POST"])

    @app.get("/api/health")
    def health():
        """Service health with a cache snapshot."""
        checks = {}
        overall = "healthy"
        try:
            checks["cache"] = {"status": "healthy", "stats": manager.stats(), "lastCheck": _now_iso()}
        except Exception as e:
            logger.exception("Cache health check failed")
            checks["cache"] = {"status": "unhealthy", "error": str(e), "lastCheck": _now_iso()}
            overall = "degraded"
        return {"status": overall, "service": "eu-legal-research", "checks": checks}

    @app.get("/admin/cache/stats")
    def admin_cache_stats(x_admin_token: str | None = Header(default=None)):
        _auth(x_admin_token)
        return manager.stats()

    @app.post("/admin/cache/clear")
    def admin_cache_clear(x_admin_token: str | None = Header(default=None)):
        _auth(x_admin_token)
        manager.clear()
        return {"ok": True}

    @app.post("/admin/cache/invalidate/{kind}")
    def admin_cache_invalidate(
        kind: InvalidationKind,
        record_id: str | None = Query(default=None, alias="id", min_length=1),
        x_admin_token: str | None = Header(default=None),
    ):
        _auth(x_admin_token)
        invalidate = {
            InvalidationKind.LEGISLATION: manager.invalidate_legislation,
            InvalidationKind.ARTICLE: manager.invalidate_article,
            InvalidationKind.CASE: manager.invalidate_case,
        }[kind]
        return {"ok": True, "kind": kind.value, "removed": invalidate(record_id)}

    return app


app = create_app()
