import pytest
from httpx import ASGITransport, AsyncClient

from freevoice.main import app
from freevoice.routers import signaling as signaling_router
from freevoice.services.relay import SignalingRelay
from freevoice.services.rooms import SignalingConnection


async def _discard(message: dict) -> None:
    return None


@pytest.mark.asyncio
async def test_health_endpoint(monkeypatch) -> None:
    relay = SignalingRelay()
    monkeypatch.setattr(signaling_router, "relay", relay)
    await relay.handle(SignalingConnection("a", _discard), {"type": "join", "room": "R1", "streamId": "P1"})
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/api/health")
        head = await client.head("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "rooms": 1}
    assert head.status_code == 200


@pytest.mark.asyncio
async def test_index_page_and_robots() -> None:
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        index = await client.get("/")
        robots = await client.get("/robots.txt")

    assert index.status_code == 200
    assert "ws://testserver" in index.text
    assert robots.status_code == 200
    assert "User-agent" in robots.text
