import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from . import runtime
from .aggregation import compute_dashboard
from .api.endpoints import router as api_router
from .db import init_db
from .schemas import ALL_PARTNERS
from .snapshot import ScopeFilter
from .sync import SubscriptionError, ViewSession

logger = logging.getLogger(__name__)

# Events consumed by a dashboard socket
SNAPSHOT = "snapshot"
SCOPE = "scope"
CLOSED = "closed"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database, seed data and live notifications on startup."""
    init_db()
    runtime.start()
    yield
    runtime.stop()


# Create FastAPI app
app = FastAPI(
    title="SafeFleet Compliance",
    description="Fleet compliance dashboard: infraction severity, aggregated metrics and live updates",
    version="1.0.0",
    lifespan=lifespan
)

# Include API routes
app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    return {"message": "SafeFleet Compliance", "dashboard": "/api/dashboard"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


async def _read_scope_changes(websocket: WebSocket, scope: ScopeFilter, events: asyncio.Queue):
    """Forward scope changes sent by the client until it disconnects."""
    try:
        while True:
            try:
                message = await websocket.receive_json()
                scope = ScopeFilter.model_validate({**scope.model_dump(), **message})
            except (ValueError, TypeError) as e:
                logger.warning("Ignoring invalid dashboard scope message: %s", e)
                continue
            events.put_nowait((SCOPE, scope))
    except WebSocketDisconnect:
        pass
    finally:
        events.put_nowait((CLOSED, None))


@app.websocket("/ws/dashboard")
async def dashboard_socket(
    websocket: WebSocket,
    partner: str = ALL_PARTNERS,
    driver: Optional[str] = None,
    year: Optional[int] = None
):
    """Live dashboard: one view session per connection, recomputed on every change."""
    await runtime.dashboard_connections.connect(websocket)
    loop = asyncio.get_running_loop()
    events: asyncio.Queue = asyncio.Queue()

    try:
        scope = ScopeFilter(partner=partner, driver=driver or None, year=year or date.today().year)
    except ValidationError as e:
        logger.warning("Rejecting dashboard socket with invalid scope: %s", e)
        runtime.dashboard_connections.disconnect(websocket)
        await websocket.close(code=1008)
        return

    session = ViewSession(
        runtime.shared_subscriptions,
        on_change=lambda snapshot: loop.call_soon_threadsafe(events.put_nowait, (SNAPSHOT, None))
    )
    reader = asyncio.create_task(_read_scope_changes(websocket, scope, events))

    try:
        session.activate()
        closed = False
        while not closed:
            # Coalesce bursts of updates into one recomputation
            pending = [await events.get()]
            while not events.empty():
                pending.append(events.get_nowait())

            for kind, value in pending:
                if kind == CLOSED:
                    closed = True
                elif kind == SCOPE:
                    scope = value

            if closed or not session.ready:
                continue
            await runtime.dashboard_connections.send_personal_message({
                "type": "dashboard",
                "payload": compute_dashboard(session.snapshot, scope)
            }, websocket)
    except SubscriptionError as e:
        logger.error("Dashboard socket could not subscribe: %s", e)
        await websocket.close(code=1011)
    finally:
        reader.cancel()
        session.deactivate()
        runtime.dashboard_connections.disconnect(websocket)


@app.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket):
    """WebSocket endpoint pushing new notifications as they are raised."""
    await runtime.notification_connections.connect(websocket)
    try:
        while True:
            # Keep connection alive - wait for messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        runtime.notification_connections.disconnect(websocket)
