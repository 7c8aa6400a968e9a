import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings
from database import create_store
from errors import RoomError
from provider import LiveKitGateway
from registry import RoomRegistry
from schemas import CreateBreakoutRoomRequest, CreateMainRoomRequest, SweepRequest, TokenRequest

logger = logging.getLogger(__name__)


async def build_registry(settings: Settings) -> RoomRegistry:
    store = await create_store(settings)
    return RoomRegistry(
        store,
        LiveKitGateway(settings),
        live_session_limit=settings.live_session_limit,
        max_attempts=settings.breakout_max_attempts,
        retry_backoff=settings.breakout_retry_backoff_seconds,
        allow_breakout_on_archived=settings.allow_breakout_on_archived,
        room_prefix=settings.room_prefix,
        orphan_grace_seconds=settings.orphan_grace_seconds,
    )


def _error(message: str, error: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": message, "error": str(error)})


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def create_app(registry: Optional[RoomRegistry] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.registry is None
        if owned:
            app.state.registry = await build_registry(settings)
            logger.info("Room registry ready (%s)", type(app.state.registry.store).__name__)
        reconciler = None
        if settings.reconcile_interval_seconds:
            logger.info("Reconciling rooms every %ss", settings.reconcile_interval_seconds)
            reconciler = asyncio.create_task(
                app.state.registry.run_periodic_reconciliation(settings.reconcile_interval_seconds)
            )
        try:
            yield
        finally:
            if reconciler is not None:
                reconciler.cancel()
                try:
                    await reconciler
                except asyncio.CancelledError:
                    pass
            if owned:
                await app.state.registry.close()
                app.state.registry = None

    app = FastAPI(title="Video Rooms API", lifespan=lifespan)
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        return _error("Invalid request", exc)

    @app.get("/")
    def read_root():
        return {"message": "Video rooms backend running"}

    @app.get("/health")
    async def health(registry: RoomRegistry = Depends(get_registry)):
        database = await registry.store.ping()
        return {
            "backend": "running",
            "database": "connected" if database else "unavailable",
            "store": type(registry.store).__name__,
        }

    # --------------------- Rooms API ---------------------
    @app.get("/rooms/")
    async def list_active_rooms(registry: RoomRegistry = Depends(get_registry)):
        try:
            report = await registry.reconcile_active_rooms()
        except RoomError as e:
            return _error("Could not list rooms", e)
        return {"rooms": [room.to_public() for room in report.rooms]}

    @app.post("/rooms/main")
    async def create_main_room(payload: CreateMainRoomRequest, registry: RoomRegistry = Depends(get_registry)):
        try:
            room = await registry.create_main_room(payload.room_name)
        except RoomError as e:
            return _error("Create room failed", e)
        return {"message": "New video room created", "room": room.to_public()}

    @app.post("/rooms/breakout")
    async def create_breakout_room(
        payload: CreateBreakoutRoomRequest, registry: RoomRegistry = Depends(get_registry)
    ):
        try:
            room = await registry.create_breakout_room(payload.room_name, payload.parent_sid)
        except RoomError as e:
            return _error("Create breakout room failed", e)
        return {"message": "Breakout room created", "room": room.to_public()}

    @app.post("/rooms/sweep")
    async def sweep_orphans(payload: SweepRequest, registry: RoomRegistry = Depends(get_registry)):
        try:
            orphans = await registry.sweep_orphaned_sessions(terminate=payload.terminate)
        except RoomError as e:
            return _error("Orphan sweep failed", e)
        verb = "Ended" if payload.terminate else "Found"
        return {
            "message": f"{verb} {len(orphans)} orphaned session(s)",
            "orphans": [session.model_dump() for session in orphans],
        }

    @app.get("/rooms/{sid}")
    async def get_room(sid: str, registry: RoomRegistry = Depends(get_registry)):
        try:
            status = await registry.get_main_room_status(sid)
        except RoomError as e:
            return _error("Fetch room failed", e)
        if not status.active:
            return {"message": "Room is no longer active"}
        return {"room": status.room.to_public()}

    @app.post("/token")
    async def issue_token(payload: TokenRequest, registry: RoomRegistry = Depends(get_registry)):
        try:
            token = await registry.issue_access_credential(payload.identity, payload.room_sid)
        except RoomError as e:
            return _error("Token request failed", e)
        return {"accessToken": token}

    return app


settings = Settings.from_env()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
app = create_app(settings=settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
