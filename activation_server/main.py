# activation_server/main.py
# Run with: uvicorn activation_server.main:create_app --factory --host 0.0.0.0 --port 8000
# or: activation-server (reads HOST/PORT)
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from activation_server.config import Settings
from activation_server.engine import TrialPolicy, utcnow
from activation_server.errors import MalformedBody
from activation_server.logging_config import configure_logging
from activation_server.routes import licenses as license_router
from activation_server.routes.licenses import CORS_HEADERS, signed_response
from activation_server.store import LicenseStore, create_store
from activation_server.utils.crypto import ResponseSigner

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, store: Optional[LicenseStore] = None,
               signer: Optional[ResponseSigner] = None, clock=None) -> FastAPI:
    """
    Build the FastAPI app.

    The store is opened and migrated once in the lifespan and closed at
    shutdown. A store passed in (tests, the CLI) stays the caller's: it is
    migrated but never closed here.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_store = store is None
        handle = create_store(settings) if owns_store else store
        handle.migrate()
        app.state.store = handle
        logger.info("License activation server ready")
        try:
            yield
        finally:
            if owns_store:
                handle.close()
                logger.info("License store closed")

    app = FastAPI(title="License Activation Server", lifespan=lifespan)
    app.state.settings = settings
    app.state.signer = signer or ResponseSigner.from_settings(settings)
    app.state.trial_policy = TrialPolicy(
        prefix=settings.trial_prefix,
        duration=timedelta(minutes=settings.trial_duration_minutes),
    )
    app.state.clock = clock or utcnow

    @app.middleware("http")
    async def add_cors_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("Access-Control-Allow-Origin", CORS_HEADERS["Access-Control-Allow-Origin"])
        return response

    @app.exception_handler(RequestValidationError)
    async def malformed_body_handler(request: Request, exc: RequestValidationError):
        logger.info("Rejected malformed request body: %s", exc.errors())
        err = MalformedBody()
        return signed_response(request.app.state.signer, err.status_code, False, err.message)

    @app.exception_handler(StarletteHTTPException)
    async def method_not_allowed_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code != 405:
            return await http_exception_handler(request, exc)
        response = signed_response(request.app.state.signer, 405, False, "Method Not Allowed")
        response.headers["Allow"] = "POST, OPTIONS"
        return response

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(license_router.router)
    return app


def run():
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
