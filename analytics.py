"""
Usage analytics. Tracking must never break the tools, so every failure is
logged and dropped.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from api_config import analytics_enabled, api_url
from card_common import warn

EVENT_TYPES = ("search", "monster_added", "pdf_download", "image_regeneration")


async def track_event(client: httpx.AsyncClient, event_type: str, metadata: Optional[Dict[str, Any]] = None, base_url: Optional[str] = None) -> bool:
    if event_type not in EVENT_TYPES:
        warn(f"Unknown analytics event: {event_type}")
        return False
    if not analytics_enabled():
        return False
    payload = {
        "eventType": event_type,
        "metadata": dict(metadata or {}, timestamp=datetime.now(timezone.utc).isoformat(), client="tent-cards-cli"),
    }
    try:
        response = await client.post(api_url("/api/analytics/track", base_url), json=payload, timeout=5.0)
    except httpx.HTTPError as e:
        warn(f"Analytics tracking error: {e}")
        return False
    if response.status_code >= 300:
        warn(f"Failed to track analytics event: {event_type}")
        return False
    return True


async def track_search(client, query: str, result_count: Optional[int] = None, base_url: Optional[str] = None) -> bool:
    return await track_event(client, "search", {"query": query, "resultCount": result_count}, base_url)


async def track_pdf_download(client, card_count: int, page_count: int, base_url: Optional[str] = None) -> bool:
    return await track_event(client, "pdf_download", {"cardCount": card_count, "pageCount": page_count}, base_url)


async def track_image_regeneration(client, monster_name: str, base_url: Optional[str] = None) -> bool:
    return await track_event(client, "image_regeneration", {"monsterName": monster_name}, base_url)


async def track_monster_added(client, monster_name: str, quantity: int = 1, base_url: Optional[str] = None) -> bool:
    return await track_event(client, "monster_added", {"monsterName": monster_name, "quantity": quantity}, base_url)
