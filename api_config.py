"""
API configuration.

The backend base URL comes from TENT_CARDS_API_URL so the same tools work
against a local dev server or a deployed worker.
"""
from __future__ import annotations
import os
from typing import Optional

DEFAULT_API_URL = "http://localhost:3001"
API_URL_ENV = "TENT_CARDS_API_URL"
ANALYTICS_ENV = "TENT_CARDS_ANALYTICS"
CACHE_DIR_ENV = "TENT_CARDS_CACHE_DIR"

# Seconds
REQUEST_TIMEOUT = 30.0
GENERATION_TIMEOUT = 120.0
IMAGE_EMBED_TIMEOUT = 10.0
BATCH_EMBED_TIMEOUT = 60.0


def get_api_base_url() -> str:
    return (os.getenv(API_URL_ENV) or DEFAULT_API_URL).rstrip("/")


def api_url(path: str, base: Optional[str] = None) -> str:
    base_url = (base if base is not None else get_api_base_url()).rstrip("/")
    clean_path = path if path.startswith("/") else f"/{path}"
    return f"{base_url}{clean_path}"


def resolve_image_url(url: str, base: Optional[str] = None) -> str:
    """Resolve a backend image locator to something usable outside the backend.

    Inline data URLs and absolute URLs pass through; relative paths such as
    /images/monsters/goblin.png are joined onto the API base URL.
    """
    if url.startswith("data:") or url.startswith("http://") or url.startswith("https://"):
        return url
    return api_url(url, base)


def analytics_enabled() -> bool:
    return os.getenv(ANALYTICS_ENV, "").strip().lower() != "false"


def get_cache_dir() -> str:
    return os.getenv(CACHE_DIR_ENV) or os.path.join(os.path.expanduser("~"), ".cache", "tent_cards")
