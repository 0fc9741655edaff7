"""FastAPI application hosting the FreeVoice signaling relay."""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, PlainTextResponse, Response

from .core.config import settings
from .routers import signaling

app = FastAPI(title="FreeVoice Signaling Relay", version="1.0.0")

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(signaling.router)

INDEX_PAGE = """<!DOCTYPE html>
<html lang=\"en\">
<head><meta charset=\"UTF-8\" /><title>FreeVoice Signaling Server</title></head>
<body>
    <h1>FreeVoice Signaling Server</h1>
    <p>WebSocket endpoint: ws://{host}</p>
</body>
</html>
"""


@app.get("/", response_class=HTMLResponse, tags=["meta"])
async def index(request: Request) -> HTMLResponse:
    """Informational landing page; not part of the signaling protocol."""

    host = request.headers.get("host") or f"localhost:{settings.port}"
    return HTMLResponse(content=INDEX_PAGE.format(host=host))


@app.head("/", tags=["meta"])
async def index_head() -> Response:
    """Fast health checks issue HEAD /; answer with 200 to avoid noisy 405s."""

    return Response(status_code=200)


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, object]:
    """Simple liveness probe with the number of active rooms."""

    return {"status": "ok", "rooms": len(signaling.relay.registry.rooms())}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)


@app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
async def robots() -> PlainTextResponse:
    """Serve a minimal robots.txt to avoid 404 noise."""

    return PlainTextResponse("User-agent: *\nDisallow:")
