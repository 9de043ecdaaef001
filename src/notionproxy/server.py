"""HTTP server entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState via the Starlette lifespan context manager
- Register routes and translate handler results into responses
- Start uvicorn
"""

from __future__ import annotations

import functools
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

import notionproxy.handlers.admin as h_admin
import notionproxy.handlers.asset as h_asset
import notionproxy.handlers.page as h_page
import notionproxy.handlers.register as h_register
from notionproxy import __version__
from notionproxy.config import Settings
from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.fetcher import Fetcher, build_http_client
from notionproxy.pipeline import Pipeline
from notionproxy.security import AdminKeyMiddleware
from notionproxy.state import AppState
from notionproxy.storage import open_storage, seed_mappings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from starlette.requests import Request

    from notionproxy.models.proxy import ProxyResponse

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def build_state(settings: Settings) -> AsyncGenerator[AppState, None]:
    """Create and tear down all shared resources for the server's lifetime."""
    log.info("server_starting", version=__version__)

    # Storage is decided once; an unreachable store means memory until restart
    storage = await open_storage(settings.store)
    await seed_mappings(storage.mappings, settings.upstream)

    http_client = build_http_client(settings.upstream)
    fetcher = Fetcher(http_client)
    pipeline = Pipeline(
        settings=settings,
        cache=storage.cache,
        mappings=storage.mappings,
        fetcher=fetcher,
    )

    state = AppState(
        settings=settings,
        storage=storage,
        fetcher=fetcher,
        pipeline=pipeline,
        http_client=http_client,
    )

    if not settings.server.admin_key:
        log.warning("admin_key_not_set", detail="cache clear and mapping deletion are open")

    log.info(
        "server_started",
        version=__version__,
        storage=storage.backend,
        upstream=settings.upstream.base_url,
        auto_discover_links=settings.upstream.auto_discover_links,
    )

    try:
        yield state
    finally:
        await pipeline.drain()
        await http_client.aclose()
        await storage.close()
        log.info("server_stopping")


@asynccontextmanager
async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
    if app.state.proxy is not None:
        # Pre-built state (tests, embedding) is owned by the caller
        yield
        return
    async with build_state(app.state.settings) as state:
        app.state.proxy = state
        yield


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _state(request: Request) -> AppState:
    return request.app.state.proxy


def _base_url(request: Request) -> str:
    configured = _state(request).settings.server.public_base_url
    return (configured or str(request.base_url)).rstrip("/")


def _raw_path(request: Request) -> str:
    """The request path as sent by the client, percent-encoding intact."""
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    # some servers include the query string in raw_path
    return raw.decode("latin-1").split("?", 1)[0]


def _proxy_response(result: ProxyResponse) -> Response:
    headers = dict(result.headers)
    headers["X-Cache"] = "HIT" if result.cache_hit else "MISS"
    return Response(content=result.payload, media_type=result.content_type, headers=headers)


def _endpoint(
    name: str,
) -> Callable[[Callable[[Request], Awaitable[Response]]], Callable[[Request], Awaitable[Response]]]:
    """Wrap a route so ProxyError and unexpected failures become clean responses."""

    def decorator(
        fn: Callable[[Request], Awaitable[Response]],
    ) -> Callable[[Request], Awaitable[Response]]:
        @functools.wraps(fn)
        async def wrapper(request: Request) -> Response:
            try:
                return await fn(request)
            except ProxyError as exc:
                log.warning(
                    "request_error",
                    route=name,
                    path=request.url.path,
                    code=exc.code,
                    message=exc.message,
                    status_code=exc.status_code,
                )
                return JSONResponse(exc.to_dict(), status_code=exc.status_code)
            except Exception:
                # Never hand back partially rewritten content
                log.error(
                    "request_unexpected_error",
                    route=name,
                    path=request.url.path,
                    exc_info=True,
                )
                return PlainTextResponse("Error loading page", status_code=500)

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _service_description(state: AppState) -> dict:
    return {
        "service": "notionproxy",
        "version": __version__,
        "storage": state.storage.backend,
        "rootPage": "Not configured",
        "endpoints": {
            "GET /p/{id}": "Proxied page by id",
            "GET /{path}": "Proxied page by registered path",
            "POST /register": "Register a page URL",
            "GET /list": "List registered pages",
            "GET /cache/stats": "Cache statistics",
            "POST /cache/clear": "Clear the cache",
            "GET /health": "Health check",
        },
    }


@_endpoint("root")
async def root(request: Request) -> Response:
    state = _state(request)
    try:
        result = await h_page.handle("/", request.url.query, state)
    except ProxyError as exc:
        if exc.code != ErrorCode.NOT_FOUND:
            raise
        return JSONResponse(_service_description(state))
    return _proxy_response(result)


@_endpoint("page")
async def page(request: Request) -> Response:
    result = await h_page.handle(
        request.url.path, request.url.query, _state(request), raw_path=_raw_path(request)
    )
    return _proxy_response(result)


@_endpoint("upstream_asset")
async def upstream_asset(request: Request) -> Response:
    result = await h_asset.handle_upstream(_raw_path(request), request.url.query, _state(request))
    return _proxy_response(result)


@_endpoint("cdn_asset")
async def cdn_asset(request: Request) -> Response:
    result = await h_asset.handle_cdn(request.query_params.get("url"), _state(request))
    return _proxy_response(result)


@_endpoint("register")
async def register(request: Request) -> Response:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProxyError(
            code=ErrorCode.BAD_REQUEST,
            message="Request body is not valid JSON",
            suggestion='Send {"sourceUrl": "..."} with Content-Type: application/json.',
        ) from exc
    result = await h_register.handle(body, _base_url(request), _state(request))
    return JSONResponse(result)


@_endpoint("list")
async def list_mappings(request: Request) -> Response:
    return JSONResponse(await h_admin.list_mappings(_base_url(request), _state(request)))


@_endpoint("delete_mapping")
async def delete_mapping(request: Request) -> Response:
    mapping_id = request.path_params["mapping_id"]
    return JSONResponse(await h_admin.delete_mapping(mapping_id, _state(request)))


@_endpoint("cache_stats")
async def cache_stats(request: Request) -> Response:
    return JSONResponse(await h_admin.cache_stats(_state(request)))


@_endpoint("cache_clear")
async def cache_clear(request: Request) -> Response:
    return JSONResponse(await h_admin.cache_clear(_state(request)))


@_endpoint("health")
async def health(request: Request) -> Response:
    return JSONResponse(h_admin.health(_state(request)))


ROUTES = [
    Route("/", root, methods=["GET"]),
    Route("/health", health, methods=["GET"]),
    Route("/list", list_mappings, methods=["GET"]),
    Route("/register", register, methods=["POST"]),
    Route("/mappings/{mapping_id}", delete_mapping, methods=["DELETE"]),
    Route("/cache/stats", cache_stats, methods=["GET"]),
    Route("/cache/clear", cache_clear, methods=["POST"]),
    Route("/proxy/asset", cdn_asset, methods=["GET"]),
    Route("/p/{mapping_id}", page, methods=["GET"]),
    Route("/_assets/{asset_path:path}", upstream_asset, methods=["GET"]),
    Route("/assets/{asset_path:path}", upstream_asset, methods=["GET"]),
    # Catch-all must stay last
    Route("/{page_path:path}", page, methods=["GET"]),
]


def create_app(settings: Settings | None = None, *, state: AppState | None = None) -> Starlette:
    """Build the Starlette application.

    With ``state`` given the app serves from it directly and the lifespan
    builds nothing; otherwise the lifespan creates all resources from
    ``settings``.
    """
    if settings is None:
        settings = state.settings if state is not None else Settings()

    app = Starlette(
        routes=ROUTES,
        middleware=[Middleware(AdminKeyMiddleware, admin_key=settings.server.admin_key)],
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.proxy = state
    return app


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    settings = Settings()
    _setup_logging(settings)

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # Disable uvicorn's default logging; structlog handles it
    )


if __name__ == "__main__":
    main()
