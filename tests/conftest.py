import asyncio
import io
import json
from collections import defaultdict
from typing import Optional

import httpx
import pytest
from PIL import Image

from image_generation import GenerationCoordinator
from images_api import MonsterImagesApi
from monster_images import ImageCache

BASE_URL = "http://testserver"


def png_bytes(color=(180, 40, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (32, 32), color).save(buf, format="PNG")
    return buf.getvalue()


def monster_slug(name: str) -> str:
    return name.lower().replace(" ", "-")


class FakeBackend:
    """In-process stand-in for the tent card backend."""

    def __init__(self):
        self.calls = defaultdict(list)
        self.fail_generate = False
        self.fail_regenerate = False
        self.fail_save = False
        self.gate: Optional[asyncio.Event] = None
        self.image_delay = 0.0
        self.missing_images = set()
        self.regenerations = 0

    def count(self, path: str) -> int:
        return len(self.calls[path])

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.calls[path].append(body)

        if path == "/api/generate-monster-image":
            if self.gate is not None:
                await self.gate.wait()
            if self.fail_generate:
                return httpx.Response(500, json={"error": "generation failed"})
            slug = monster_slug(body["monsterName"])
            return httpx.Response(200, json={"url": f"/images/monsters/{slug}.png", "cached": False})

        if path == "/api/regenerate-monster-image":
            if self.fail_regenerate:
                return httpx.Response(502, json={"error": "provider unavailable"})
            self.regenerations += 1
            slug = monster_slug(body["monsterName"])
            return httpx.Response(200, json={"url": f"/images/monsters/{slug}-v{self.regenerations}.png", "cached": False})

        if path == "/api/save-monster-image":
            if self.fail_save:
                return httpx.Response(500, json={"error": "storage unavailable"})
            slug = monster_slug(body["monsterName"])
            return httpx.Response(200, json={"success": True, "path": f"/images/monsters/{slug}.png"})

        if path.startswith("/images/monsters/"):
            if self.image_delay:
                await asyncio.sleep(self.image_delay)
            if path in self.missing_images:
                return httpx.Response(404, json={"error": "Not found"})
            return httpx.Response(200, content=png_bytes(), headers={"content-type": "image/png"})

        if path == "/api/health":
            return httpx.Response(200, json={"status": "ok"})

        if path == "/api/analytics/track":
            return httpx.Response(200, json={"success": True})

        return httpx.Response(404, json={"error": "Not found"})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(backend):
    return httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))


@pytest.fixture
def api(client):
    return MonsterImagesApi(client, BASE_URL)


@pytest.fixture
def cache():
    return ImageCache()


@pytest.fixture
def coordinator(cache, api):
    return GenerationCoordinator(cache, api)


@pytest.fixture(autouse=True)
def no_analytics(monkeypatch, tmp_path):
    monkeypatch.setenv("TENT_CARDS_ANALYTICS", "false")
    monkeypatch.setenv("TENT_CARDS_CACHE_DIR", str(tmp_path / "cache"))
