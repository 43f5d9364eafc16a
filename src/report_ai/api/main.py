from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.analysis import router as analysis_router
from ..observability.metrics import metrics_middleware_factory
from ..observability.telemetry import list_recent_events

load_dotenv()  # Provider keys and AI_/REALTIME_ settings may come from .env

app = FastAPI(title="Report AI Analysis API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(analysis_router)
# Also expose the router under /api, where the report client calls it
app.include_router(analysis_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"name": "Report AI Analysis API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "settings": "in-memory",
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/telemetry/events")
def telemetry_events(limit: int = 50, field_name: str | None = None):
    return [e.__dict__ for e in list_recent_events(limit, field_name)]
