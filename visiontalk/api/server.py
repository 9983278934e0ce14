import random
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from core.config import ConfigManager
from core.events import EventRecorder
from core.pipeline import PipelineOrchestrator
from core.state import SessionRegistry

# High-frequency routes polled by the webview
POLL_ROUTES = ("/api/events", "/api/sessions")


def create_app(
    config_manager: ConfigManager,
    registry: SessionRegistry,
    recorder: EventRecorder,
    orchestrator: PipelineOrchestrator,
) -> FastAPI:
    """Create and configure the diagnostics API."""

    app = FastAPI(title="VisionTalk", version="1.0.0")

    # CORS for local network access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Store references for route handlers
    app.state.config_manager = config_manager
    app.state.registry = registry
    app.state.recorder = recorder
    app.state.orchestrator = orchestrator
    app.state.started_at = datetime.now(timezone.utc)

    server_cfg = config_manager.config.server

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        path = request.url.path
        mode = server_cfg.http_log
        client = request.client.host if request.client else ""
        is_poll = path.startswith(POLL_ROUTES)
        if mode == "basic" and not is_poll:
            logger.info("HTTP {} {} from={}", request.method, path, client)
        elif mode == "sampled":
            if not is_poll:
                logger.info("HTTP {} {} from={}", request.method, path, client)
            elif random.random() < server_cfg.http_sample_rate:
                logger.info("POLL {} {} from={}", request.method, path, client)
        return await call_next(request)

    from api.routes.dashboard import router as dashboard_router
    from api.routes.control import router as control_router
    from api.routes.diagnostics import router as diagnostics_router

    app.include_router(dashboard_router, prefix="/api", tags=["dashboard"])
    app.include_router(control_router, prefix="/api/control", tags=["control"])
    app.include_router(diagnostics_router, prefix="/api/diag", tags=["diagnostics"])

    @app.get("/api/health")
    async def health():
        active = registry.active_user_ids()
        return {
            "status": "ok",
            "active_sessions": len(active),
            "processing": {uid: registry.get(uid).processing for uid in active if registry.get(uid)},
            "capture_only": config_manager.is_capture_only,
            "vision_configured": config_manager.has_openai_key,
            "photos_captured": orchestrator.photos_captured,
            "latest_capture_time": (
                orchestrator.latest_capture_time.isoformat() if orchestrator.latest_capture_time else None
            ),
            "events_stored": len(recorder),
            "uptime_seconds": int((datetime.now(timezone.utc) - app.state.started_at).total_seconds()),
        }

    return app
