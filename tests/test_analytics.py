import httpx
import pytest

import analytics

TRACK = "/api/analytics/track"


@pytest.mark.asyncio
async def test_disabled_analytics_sends_nothing(client, backend):
    assert not await analytics.track_search(client, "dragon", 3, "http://testserver")
    assert backend.count(TRACK) == 0


@pytest.mark.asyncio
async def test_enabled_analytics_posts_event(monkeypatch, client, backend):
    monkeypatch.setenv("TENT_CARDS_ANALYTICS", "true")
    assert await analytics.track_pdf_download(client, 6, 2, "http://testserver")
    body = backend.calls[TRACK][0]
    assert body["eventType"] == "pdf_download"
    assert body["metadata"]["cardCount"] == 6
    assert body["metadata"]["pageCount"] == 2
    assert body["metadata"]["client"] == "tent-cards-cli"
    assert "timestamp" in body["metadata"]


@pytest.mark.asyncio
async def test_unknown_event_is_rejected(monkeypatch, client, backend):
    monkeypatch.setenv("TENT_CARDS_ANALYTICS", "true")
    assert not await analytics.track_event(client, "page_view", {}, "http://testserver")
    assert backend.count(TRACK) == 0


@pytest.mark.asyncio
async def test_tracking_failures_are_swallowed(monkeypatch):
    monkeypatch.setenv("TENT_CARDS_ANALYTICS", "true")

    async def server_error(request):
        return httpx.Response(500, json={"error": "boom"})

    async def unreachable(request):
        raise httpx.ConnectError("down", request=request)

    for handler in (server_error, unreachable):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert not await analytics.track_image_regeneration(client, "Owlbear", "http://testserver")


@pytest.mark.asyncio
async def test_monster_added_event(monkeypatch, client, backend):
    monkeypatch.setenv("TENT_CARDS_ANALYTICS", "true")
    assert await analytics.track_monster_added(client, "Owlbear", 2, "http://testserver")
    body = backend.calls[TRACK][0]
    assert body["eventType"] == "monster_added"
    assert body["metadata"]["monsterName"] == "Owlbear"
    assert body["metadata"]["quantity"] == 2
