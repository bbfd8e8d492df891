"""
LiveClass Backend - Unified Application Entry Point
Mounts the live presentation service and the live sync websocket under a single FastAPI application
"""

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from services.auth import resolve_identity
import importlib

live_module = importlib.import_module("services.live.app")
from services.sync.hub import live_manager
from shared.utils import config, setup_logging

logger = setup_logging("liveclass-backend")

live_app = live_module.app

app = FastAPI(
    title="LiveClass Backend API",
    description="""
    Live classroom presentations: slide sync, comments, comment groups and polls.

    REST endpoints live under /api/v1/live; real-time updates stream over /ws/live.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {
            "name": "Health",
            "description": "Service health and status endpoints",
        },
        {
            "name": "Live",
            "description": "Presentations, slides, annotations and polls - mounted at /api/v1/live",
        },
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get("allowed_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes to exclude (internal FastAPI docs routes)
EXCLUDED_PATHS = {"/openapi.json", "/docs", "/docs/oauth2-redirect", "/redoc"}

# Include live service routes with prefix
for route in live_app.routes:
    if hasattr(route, "path") and hasattr(route, "endpoint"):
        if route.path in EXCLUDED_PATHS:
            continue
        route_kwargs = {
            "path": f"/api/v1/live{route.path}",
            "endpoint": route.endpoint,
            "methods": route.methods,
            "tags": ["Live"],
        }
        if hasattr(route, "name"):
            route_kwargs["name"] = f"live_{route.name}"
        if hasattr(route, "response_model"):
            route_kwargs["response_model"] = route.response_model
        if hasattr(route, "status_code"):
            route_kwargs["status_code"] = route.status_code
        app.add_api_route(**route_kwargs)


@app.on_event("startup")
async def start_change_relay() -> None:
    store = live_module.get_services().store
    if store.relay is not None:
        await store.relay.start()
        logger.info("Change relay started")


@app.on_event("shutdown")
async def stop_services() -> None:
    services = live_module.app.state.services
    await live_manager.reset()
    if services is None:
        return
    await services.annotations.close()
    if services.store.relay is not None:
        await services.store.relay.stop()
    services.store.close()


@app.websocket("/ws/live")
async def live_websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint streaming presentation state, annotations and sync status."""
    params = websocket.query_params
    try:
        identity = resolve_identity(params.get("token"), params.get("session_id"), params.get("display_name"))
    except HTTPException as exc:
        await websocket.close(code=4401, reason=str(exc.detail))
        return

    live_module.get_services()
    client_id = await live_manager.connect(websocket, identity, params.get("client_id"))
    live_manager.send(client_id, {"event": "connected", "client_id": client_id, "user_id": identity.user_id})

    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                live_manager.send(client_id, {"event": "error", "detail": "Messages must be JSON objects"})
                continue
            await live_manager.handle_message(client_id, message)
    except WebSocketDisconnect:
        await live_manager.disconnect(client_id)
    except Exception:
        await live_manager.disconnect(client_id)
        raise


@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with service information and API navigation"""
    return {
        "service": "LiveClass Backend API",
        "version": "1.0.0",
        "services": {
            "live": {
                "base_url": "/api/v1/live",
                "health": "/api/v1/live/health",
                "websocket": "/ws/live",
            },
        },
        "documentation": {
            "swagger_ui": "/docs",
            "redoc": "/redoc",
            "openapi_json": "/openapi.json",
        },
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for all services"""
    services = live_module.app.state.services
    return {
        "status": "healthy",
        "services": {
            "api_gateway": "operational",
            "live": "operational",
            "store": services.store.driver_name if services is not None else "not initialised",
            "live_connections": live_manager.connection_count,
        },
    }


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting LiveClass Backend on http://0.0.0.0:8000")
    uvicorn.run("app:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
