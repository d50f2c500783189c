"""
Open5e monster search.

Search queries go straight to the API. An empty query lists every monster,
following the paginated `next` links, and keeps the result on disk for a day.
"""
from __future__ import annotations
import json
import os
import time
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import httpx

from api_config import REQUEST_TIMEOUT, get_cache_dir
from card_common import info, slugify, warn

API_BASE = "https://api.open5e.com/v1"
API_ORIGIN = "https://api.open5e.com"
CACHE_FILE = "monsters_cache.json"
CACHE_DURATION = 24 * 60 * 60  # seconds
MAX_PAGES = 50
MAX_MONSTERS = 10000


class SearchError(Exception):
    pass


@dataclass
class Monster:
    name: str
    slug: str = ""
    size: str = ""
    type: str = ""
    subtype: str = ""
    alignment: str = ""
    armor_class: Any = ""
    hit_points: Any = ""
    hit_dice: str = ""
    speed: Dict[str, Any] = field(default_factory=dict)
    strength: int = 10
    dexterity: int = 10
    constitution: int = 10
    intelligence: int = 10
    wisdom: int = 10
    charisma: int = 10
    challenge_rating: str = ""
    senses: str = ""
    languages: str = ""
    special_abilities: List[Dict[str, str]] = field(default_factory=list)
    actions: List[Dict[str, str]] = field(default_factory=list)
    img_main: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Monster":
        """Build from an Open5e record or a hand-authored custom card."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and v is not None}
        if not kwargs.get("name"):
            raise ValueError("monster has no name")
        if not isinstance(kwargs.get("speed", {}), dict):
            kwargs["speed"] = {"walk": kwargs["speed"]}
        kwargs["special_abilities"] = list(kwargs.get("special_abilities") or [])
        kwargs["actions"] = list(kwargs.get("actions") or [])
        if not kwargs.get("slug"):
            kwargs["slug"] = slugify(kwargs["name"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @property
    def ability_scores(self) -> List[tuple]:
        return [
            ("STR", self.strength),
            ("DEX", self.dexterity),
            ("CON", self.constitution),
            ("INT", self.intelligence),
            ("WIS", self.wisdom),
            ("CHA", self.charisma),
        ]


def ability_modifier(score) -> str:
    try:
        mod = (int(score) - 10) // 2
    except (TypeError, ValueError):
        return "+0"
    return f"+{mod}" if mod >= 0 else str(mod)


def format_speed(speed: Dict[str, Any]) -> str:
    parts = []
    for kind, value in speed.items():
        if isinstance(value, bool):
            continue
        label = f"{value} ft." if isinstance(value, (int, float)) else str(value)
        parts.append(label if kind == "walk" else f"{kind} {label}")
    return ", ".join(parts) or "0 ft."


# ------------------------------ Disk cache -----------------------------------

def _cache_path() -> str:
    return os.path.join(get_cache_dir(), CACHE_FILE)


def get_cached_monsters(now: Optional[float] = None) -> Optional[List[Monster]]:
    path = _cache_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cache = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        warn(f"Error reading monsters cache: {e}")
        return None
    if not isinstance(cache, dict) or not isinstance(cache.get("monsters"), list):
        warn("Monsters cache is malformed; ignoring it.")
        return None
    now = time.time() if now is None else now
    timestamp = cache.get("timestamp")
    if not isinstance(timestamp, (int, float)) or now - timestamp >= CACHE_DURATION:
        try:
            os.remove(path)
        except OSError:
            pass
        return None
    try:
        return [Monster.from_dict(m) for m in cache["monsters"]]
    except (AttributeError, TypeError, ValueError) as e:
        warn(f"Monsters cache has a bad entry; ignoring it: {e}")
        return None


def save_monsters_to_cache(monsters: List[Monster], now: Optional[float] = None) -> None:
    path = _cache_path()
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"monsters": [m.to_dict() for m in monsters], "timestamp": time.time() if now is None else now}, f)
    except OSError as e:
        warn(f"Error saving monsters cache: {e}")


# ------------------------------ API ------------------------------------------

def _next_url(next_link: Optional[str]) -> Optional[str]:
    if not next_link:
        return None
    if next_link.startswith("http"):
        return next_link
    if next_link.startswith("/"):
        return f"{API_ORIGIN}{next_link}"
    return f"{API_BASE}/{next_link}"


async def _get_page(client: httpx.AsyncClient, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    try:
        response = await client.get(url, params=params, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
        raise SearchError(f"Failed to fetch monsters: {e}") from e
    if not isinstance(data, dict):
        raise SearchError(f"Unexpected response from {url}")
    return data


def _parse_monsters(results: Any) -> List[Monster]:
    if not isinstance(results, list):
        raise SearchError("Unexpected monster list in response")
    monsters = []
    for raw in results:
        if not isinstance(raw, dict) or not raw.get("name"):
            warn("Skipping monster record without a name")
            continue
        monsters.append(Monster.from_dict(raw))
    return monsters


async def search_monsters(client: httpx.AsyncClient, query: str) -> List[Monster]:
    if not query.strip():
        return await get_all_monsters(client)
    data = await _get_page(client, f"{API_BASE}/monsters/", params={"search": query, "limit": 500})
    return _parse_monsters(data.get("results") or [])


async def get_all_monsters(client: httpx.AsyncClient, use_cache: bool = True) -> List[Monster]:
    if use_cache:
        cached = get_cached_monsters()
        if cached is not None:
            info(f"Using cached monsters ({len(cached)} monsters)")
            return cached

    collected: List[Monster] = []
    visited = set()
    url: Optional[str] = f"{API_BASE}/monsters/?limit=500"
    pages = 0
    while url and pages < MAX_PAGES:
        if url in visited:
            warn("Detected loop in pagination, stopping")
            break
        visited.add(url)
        pages += 1
        data = await _get_page(client, url)
        results = data.get("results") or []
        if not results:
            break
        collected.extend(_parse_monsters(results))
        if len(collected) > MAX_MONSTERS:
            warn(f"Reached safety limit of {MAX_MONSTERS} monsters")
            break
        url = _next_url(data.get("next"))

    collected.sort(key=lambda m: m.name.lower())
    if collected and use_cache:
        save_monsters_to_cache(collected)
    return collected
