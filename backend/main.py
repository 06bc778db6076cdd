import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from config import settings
from core.exceptions import DomainError
from core.security import verify_access_token
from database import connect_db, close_db
from models.common import UserRole
from models.user import Actor
from services.delivery_service import DeliveryStateMachine
from services.event_sink import BroadcastEventSink
from services.reconciliation_service import reconcile_forever

# Routers
from routers import deliveries, wallets, vehicles, admin

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address, default_limits=["120/minute"])


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await connect_db()
    events = BroadcastEventSink()
    events.start()
    app.state.events = events
    app.state.delivery_service = DeliveryStateMachine(events, settings.DRIVER_COMMISSION_RATE)
    task = asyncio.create_task(reconcile_forever())
    logger.info("Fleetline API started")
    yield
    # Shutdown
    task.cancel()
    await events.stop()
    await close_db()
    logger.info("Fleetline API stopped")


app = FastAPI(
    title="Fleetline API",
    description="Cycle de vie des livraisons, flotte et wallets",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else ["https://fleetline.in"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} : {exc.kind} {exc.detail} {exc.context}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Routers (avec auth)
app.include_router(deliveries.router, prefix="/api/deliveries", tags=["Deliveries"])
app.include_router(wallets.router, prefix="/api/wallets", tags=["Wallets"])
app.include_router(vehicles.router, prefix="/api/vehicles", tags=["Vehicles"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.websocket("/ws/deliveries/{delivery_id}")
async def delivery_updates(websocket: WebSocket, delivery_id: str, token: str = ""):
    """Suivi temps réel d'une livraison : ?token=<access token>."""
    payload = verify_access_token(token)
    if not payload or payload.get("role") not in [r.value for r in UserRole]:
        await websocket.close(code=1008)
        return
    actor = Actor(user_id=payload["sub"], role=UserRole(payload["role"]))
    try:
        await websocket.app.state.delivery_service.get_delivery(actor, delivery_id)
    except DomainError:
        await websocket.close(code=1008)
        return

    events: BroadcastEventSink = websocket.app.state.events
    await events.connect(delivery_id, websocket)
    try:
        while True:
            # Les messages entrants sont ignorés, seule la déconnexion compte
            await websocket.receive_text()
    except WebSocketDisconnect:
        events.disconnect(delivery_id, websocket)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "app": "fleetline", "version": "1.0.0"}
