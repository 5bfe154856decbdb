"""FastAPI app factory with error mapping, storage mount and WebSocket."""

import logging

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from stryp.config import LOG_LEVEL
from stryp.database import init_db
from stryp.errors import (
    AuthDomainError, BatchBusyError, EntitlementError, GenerationError, GenerationTimeout,
    NotFoundError, QuotaExceededError, StrypError, UploadError,
)
from stryp.api.auth import router as auth_router
from stryp.api.projects import router as projects_router
from stryp.api.generation import router as generation_router
from stryp.api.characters import router as characters_router
from stryp.api.locations import router as locations_router
from stryp.api.settings import router as settings_router
from stryp.security import decode_access_token
from stryp.services.documents import COLLECTIONS, document_store
from stryp.services.storage import STORAGE_ROUTE, object_storage
from stryp.services.studio import studio_registry
from stryp.web.ws import ws_manager

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (GenerationTimeout, 504),
    (QuotaExceededError, 429),
    (EntitlementError, 403),
    (GenerationError, 502),
    (UploadError, 502),
    (AuthDomainError, 403),
    (BatchBusyError, 409),
    (NotFoundError, 404),
]


def error_response(exc: StrypError) -> JSONResponse:
    for cls, status_code in ERROR_STATUS:
        if isinstance(exc, cls):
            break
    else:
        status_code = 500
    detail = str(exc)
    if isinstance(exc, GenerationTimeout):
        detail = f"Generation timed out: {exc}. Please try again."
    return JSONResponse({"detail": detail}, status_code=status_code)


def register_error_handlers(app: FastAPI):
    @app.exception_handler(StrypError)
    async def handle_stryp_error(request: Request, exc: StrypError):
        return error_response(exc)

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        return JSONResponse({"detail": str(exc)}, status_code=400)


def create_app() -> FastAPI:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="Stryp", version="0.1.0")

    # Init DB on startup
    @app.on_event("startup")
    def startup():
        init_db()

    # Pending debounced writes must land before exit
    @app.on_event("shutdown")
    async def shutdown():
        await studio_registry.shutdown()

    register_error_handlers(app)

    # API routes
    app.include_router(auth_router)
    app.include_router(projects_router)
    app.include_router(generation_router)
    app.include_router(characters_router)
    app.include_router(locations_router)
    app.include_router(settings_router)

    # Serve stored media
    app.mount(STORAGE_ROUTE, StaticFiles(directory=str(object_storage.root)), name="storage")

    # WebSocket endpoint: live collection snapshots and generation progress
    @app.websocket("/ws")
    async def ws_live(ws: WebSocket, token: str = ""):
        user_id = decode_access_token(token)
        if not user_id:
            await ws.close(code=1008)
            return

        await studio_registry.get(user_id)
        await ws_manager.connect(user_id, ws)

        def forward(collection):
            async def send_snapshot(data):
                await ws_manager.send(ws, {"type": "snapshot", "collection": collection, "data": data})
            return send_snapshot

        unsubscribers = []
        try:
            for collection in COLLECTIONS:
                unsubscribers.append(await document_store.subscribe(user_id, collection, forward(collection)))
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            logger.debug("WebSocket closed for %s", user_id)
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            ws_manager.disconnect(user_id, ws)

    @app.get("/health")
    def health():
        return {"ok": True}

    return app
