"""
Bloodchain Backend - FastAPI Application
Hash-chained inter-organization messaging for the blood supply network
"""
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from bloodchain.config import Settings, get_settings
from bloodchain.database import Base, engine as default_engine
from bloodchain.exceptions import (
    LedgerError,
    global_exception_handler,
    http_exception_handler,
    ledger_exception_handler,
    validation_exception_handler,
)
from bloodchain.logging_config import REQUEST_ID_HEADER, bind_request_context, setup_logging
from bloodchain.models import Organization, Conversation, Message, IntegrityIncident  # noqa: F401
from bloodchain.routers import communication, realtime
from bloodchain.services.attachments import AttachmentStore
from bloodchain.services.chain_builder import ConversationLocks
from bloodchain.services.notifier import RealtimeNotifier

logger = structlog.get_logger()


def create_app(settings: Optional[Settings] = None, engine=None) -> FastAPI:
    """Build the application and the process-wide services it owns"""
    settings = settings or get_settings()
    engine = engine or default_engine
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        logger.info("startup", environment=settings.environment)
        yield
        await app.state.notifier.close_all()
        logger.info("shutdown")

    app = FastAPI(
        title="Bloodchain API",
        description="Append-only, hash-chained communication ledger for hospitals and blood banks",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Owned by the application, created once per process
    app.state.settings = settings
    app.state.notifier = RealtimeNotifier(send_timeout=settings.realtime_send_timeout)
    app.state.conversation_locks = ConversationLocks()
    app.state.attachment_store = AttachmentStore(settings)

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_log_context(request: Request, call_next):
        request_id = bind_request_context(request.method, request.url.path, request.headers.get(REQUEST_ID_HEADER))
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    app.add_exception_handler(LedgerError, ledger_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "service": "bloodchain-api"}

    app.include_router(communication.router, prefix="/communication", tags=["communication"])
    app.include_router(realtime.router, prefix="/communication", tags=["realtime"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
