"""
Client for the monster image endpoints of the tent card backend.

    POST /api/generate-monster-image    {monsterName}            -> {url, cached}
    POST /api/regenerate-monster-image  {monsterName}            -> {url, cached: false}
    POST /api/save-monster-image        {monsterName, imageUrl}  -> {success, path}
    GET  /api/health

Every failure (non-2xx status, transport error, malformed body) surfaces as
ImageApiError; callers do not distinguish 4xx from 5xx.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from api_config import GENERATION_TIMEOUT, REQUEST_TIMEOUT, api_url, get_api_base_url, resolve_image_url


class ImageApiError(Exception):
    """A backend image operation failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass
class FetchedImage:
    content: bytes
    content_type: str


class MonsterImagesApi:
    def __init__(self, client: httpx.AsyncClient, base_url: Optional[str] = None):
        self.client = client
        self.base_url = (base_url or get_api_base_url()).rstrip("/")

    async def _post(self, path: str, payload: Dict[str, Any], timeout: float = REQUEST_TIMEOUT) -> Dict[str, Any]:
        try:
            response = await self.client.post(api_url(path, self.base_url), json=payload, timeout=timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ImageApiError(f"{path}: {e}") from e
        if response.status_code < 200 or response.status_code >= 300:
            raise ImageApiError(_error_message(response), status=response.status_code)
        try:
            data = response.json()
        except ValueError as e:
            raise ImageApiError(f"{path}: invalid JSON response") from e
        if not isinstance(data, dict):
            raise ImageApiError(f"{path}: unexpected response body")
        return data

    def _image_url(self, data: Dict[str, Any], path: str) -> str:
        url = data.get("url")
        if not url or not isinstance(url, str):
            raise ImageApiError(f"{path}: response has no image url")
        return resolve_image_url(url, self.base_url)

    async def generate_monster_image(self, monster_name: str) -> str:
        """Return the image for a monster, generating it server-side if needed."""
        path = "/api/generate-monster-image"
        data = await self._post(path, {"monsterName": monster_name}, timeout=GENERATION_TIMEOUT)
        return self._image_url(data, path)

    async def regenerate_monster_image(self, monster_name: str) -> str:
        """Generate a fresh image; the backend does not persist it."""
        path = "/api/regenerate-monster-image"
        data = await self._post(path, {"monsterName": monster_name}, timeout=GENERATION_TIMEOUT)
        return self._image_url(data, path)

    async def save_monster_image(self, monster_name: str, image_url: str) -> Optional[str]:
        """Persist image_url as the confirmed image; returns the stored path."""
        data = await self._post("/api/save-monster-image", {"monsterName": monster_name, "imageUrl": image_url})
        if not data.get("success"):
            raise ImageApiError(data.get("error") or "save-monster-image was not acknowledged")
        return data.get("path")

    async def fetch_image(self, url: str, timeout: float = REQUEST_TIMEOUT) -> FetchedImage:
        try:
            response = await self.client.get(resolve_image_url(url, self.base_url), timeout=timeout, follow_redirects=True)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ImageApiError(f"Failed to fetch image {url}: {e}") from e
        content_type = response.headers.get("content-type", "image/png").split(";")[0].strip()
        return FetchedImage(content=response.content, content_type=content_type or "image/png")

    async def health(self) -> bool:
        try:
            response = await self.client.get(api_url("/api/health", self.base_url), timeout=5.0)
        except (httpx.HTTPError, httpx.InvalidURL):
            return False
        return response.status_code == 200


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"
