import logging
import threading

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from coderider_proxy.config import Settings, get_settings
from coderider_proxy.errors import (
    AccountError,
    ErrorKind,
    ProxyError,
    SETUP_COMMAND,
    UpstreamAuthExpired,
    normalize_error_message,
)
from coderider_proxy.redaction import redact_mapping, redact_query
from coderider_proxy.routes import router
from coderider_proxy.services import ServiceContainer, build_services

logger = logging.getLogger("coderider_proxy")

PROXY_ERROR_STATUS = {
    ErrorKind.MISSING_CREDENTIALS: 500,
    ErrorKind.MISSING_CLIENT_CREDENTIALS: 500,
    ErrorKind.MALFORMED_UPSTREAM_RESPONSE: 502,
    ErrorKind.UPSTREAM_FAILURE: 502,
}


class SessionSweeper:
    """Daemon thread that deletes idle sessions every ``interval_seconds``."""

    def __init__(self, services: ServiceContainer, interval_seconds: float):
        self._services = services
        self._interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="session-sweep", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval_seconds):
            try:
                self._services.accounts.sweep_expired_sessions()
            except Exception:
                logger.exception("session_sweep_failed")


def auth_expired_body(exc: UpstreamAuthExpired, settings: Settings) -> dict:
    return {
        "detail": {
            "error": ErrorKind.UPSTREAM_AUTH_EXPIRED.value,
            "message": normalize_error_message(exc.message),
            "login_url": settings.oauth_applications_url,
            "local_oauth_url": "/auth/oauth-start",
            "hint": f'Run "{SETUP_COMMAND}" to re-authorize, or open /auth/oauth-start in a browser.',
        }
    }


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    app = FastAPI(title="CodeRider Proxy", version="0.1.0")
    app.state.services = services
    app.state.sweeper = None
    app.include_router(router)

    @app.middleware("http")
    async def redacted_request_logging(request: Request, call_next):
        logger.info(
            "request_received",
            extra={
                "method": request.method,
                "path": request.url.path,
                "query": redact_query(request.url.query),
                "headers": redact_mapping(dict(request.headers)),
            },
        )
        return await call_next(request)

    @app.exception_handler(UpstreamAuthExpired)
    async def handle_auth_expired(request: Request, exc: UpstreamAuthExpired) -> JSONResponse:
        logger.warning("upstream_auth_expired", extra={"path": request.url.path})
        settings = request.app.state.services.settings
        return JSONResponse(status_code=401, content=auth_expired_body(exc, settings))

    @app.exception_handler(ProxyError)
    async def handle_proxy_error(request: Request, exc: ProxyError) -> JSONResponse:
        status_code = PROXY_ERROR_STATUS.get(exc.kind, 502)
        logger.error("proxy_error", extra={"path": request.url.path, "kind": exc.kind.value})
        return JSONResponse(status_code=status_code, content={"detail": normalize_error_message(exc.message)})

    @app.exception_handler(AccountError)
    async def handle_account_error(request: Request, exc: AccountError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": normalize_error_message(exc.message)})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.on_event("startup")
    def startup() -> None:
        if app.state.services is None:
            app.state.services = build_services(get_settings())
        current = app.state.services
        sweeper = SessionSweeper(current, current.settings.session_sweep_interval_seconds)
        sweeper.start()
        app.state.sweeper = sweeper

    @app.on_event("shutdown")
    def shutdown() -> None:
        if app.state.sweeper is not None:
            app.state.sweeper.stop()
            app.state.sweeper = None

    return app


app = create_app()
