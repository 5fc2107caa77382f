"""
cache_middleware.py
-------------------
Wraps read-only FastAPI/Starlette handlers with the in-process MemoryCache.

    GET = with_cache(CACHE_CONFIGS["cases"], list_cases, "cases", store=cache)

On a HIT the wrapped handler is not called. On a MISS the handler runs once and
its 200 JSON body is stored. Responses carry `X-Cache: HIT|MISS` and `X-Cache-Key`.
Failures inside the cache layer are logged and otherwise ignored.
"""
import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from cache_store import CacheConfig, MemoryCache

logger = logging.getLogger("uvicorn.error")

RequestHandler = Callable[[Request], Union[Response, Awaitable[Response]]]

_MISSING = object()


def generate_cache_key(request: Request, prefix: Optional[str] = "") -> str:
    """`{prefix:}{METHOD}:{path}{?sorted-query}`; parameter order never changes the key."""
    params = sorted(request.query_params.multi_items(), key=lambda kv: kv[0])
    query = "&".join(f"{k}={v}" for k, v in params)
    base = f"{request.method}:{request.url.path}"
    if query:
        base = f"{base}?{query}"
    return f"{prefix}:{base}" if prefix else base


async def _invoke(handler: RequestHandler, request: Request) -> Response:
    if inspect.iscoroutinefunction(handler):
        return await handler(request)
    # Plain handlers do blocking I/O against the data source.
    result = await run_in_threadpool(handler, request)
    if inspect.isawaitable(result):
        result = await result
    return result


def _json_body(response: Response) -> Any:
    """Decoded JSON body of a buffered response, or _MISSING if it can't be cached."""
    body = getattr(response, "body", None)
    if body is None:
        return _MISSING
    content_type = response.headers.get("content-type", "")
    if not content_type.startswith("application/json"):
        return _MISSING
    try:
        return json.loads(body)
    except (ValueError, RecursionError):
        return _MISSING


def _mark(response: Response, status: str, key: str, config: CacheConfig) -> Response:
    response.headers["X-Cache"] = status
    response.headers["X-Cache-Key"] = key
    if "cache-control" not in response.headers:
        response.headers["Cache-Control"] = f"public, max-age={config.max_age_seconds}"
    return response


def with_cache(
    config: CacheConfig,
    handler: RequestHandler,
    key_prefix: Optional[str] = None,
    *,
    store: MemoryCache,
) -> Callable[[Request], Awaitable[Response]]:
    """Return a handler that serves `handler`'s successful responses from `store`."""

    async def cached_handler(request: Request) -> Response:
        if config.duration <= 0:
            return await _invoke(handler, request)

        try:
            key = generate_cache_key(request, key_prefix)
            cached = store.get(key, _MISSING)
        except Exception:
            logger.exception("Cache lookup failed; calling handler uncached")
            return await _invoke(handler, request)

        if cached is not _MISSING:
            logger.info("CACHE HIT → key=%s", key)
            return _mark(JSONResponse(cached), "HIT", key, config)

        logger.info("CACHE MISS → key=%s", key)
        response = await _invoke(handler, request)
        if response.status_code != 200:
            return response

        payload = _json_body(response)
        if payload is _MISSING:
            logger.debug("CACHE SKIP → key=%s (non-JSON or streaming body)", key)
            return response

        try:
            store.set(key, payload, config)
        except Exception:
            logger.exception("Cache store failed for key=%s", key)
        return _mark(response, "MISS", key, config)

    cached_handler.__name__ = getattr(handler, "__name__", "cached_handler")
    cached_handler.__doc__ = getattr(handler, "__doc__", None)

    return cached_handler


async def run_cleanup(store: MemoryCache, interval_seconds: float) -> None:
    """Housekeeping loop: drop expired entries every `interval_seconds`."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = store.purge_expired()
            stats = store.stats()
            logger.info(
                "Cache cleanup → removed=%s entries=%s size=%s bytes",
                removed, stats["entry_count"], stats["total_size_bytes"],
            )
        except Exception:
            logger.exception("Cache cleanup failed")
