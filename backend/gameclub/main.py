from __future__ import annotations

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware
from starlette.requests import Request
from starlette.responses import Response

from gameclub.api.router import router as api_router
from gameclub.core.cookies import has_cookie, request_is_secure
from gameclub.core.errors import AuthError
from gameclub.core.logging import setup_logging
from gameclub.core.settings import get_settings, parse_allowed_hosts


def create_app() -> FastAPI:
    # Fails here, at startup, when a required secret or client setting is missing.
    settings = get_settings()
    setup_logging(debug=settings.app_env == "dev", level=settings.log_level)

    app = FastAPI(
        title="Game Club",
        version="0.1.0",
        docs_url="/api/docs" if settings.app_env == "dev" else None,
        redoc_url="/api/redoc" if settings.app_env == "dev" else None,
        openapi_url="/api/openapi.json" if settings.app_env == "dev" else None,
    )

    app.add_middleware(TrustedHostMiddleware, allowed_hosts=parse_allowed_hosts(settings))

    @app.middleware("http")
    async def session_cookie(request: Request, call_next):
        request.state.session_read = None
        resp: Response = await call_next(request)
        read = request.state.session_read
        # A handler that wrote the session cookie itself knows better than the
        # refresh computed on read; any other cookies are left alongside.
        if read is not None and read.cookie is not None and not has_cookie(resp, read.cookie.name):
            read.cookie.apply(resp, secure=request_is_secure(request, settings))
        return resp

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        resp: Response = await call_next(request)
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        return resp

    @app.exception_handler(AuthError)
    async def auth_error(request: Request, exc: AuthError) -> Response:
        return PlainTextResponse(exc.detail, status_code=exc.status_code)

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
