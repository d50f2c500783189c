"""
Image cache store: the last confirmed artwork per creature name.

Keys are normalized creature names. Lookups walk an ordered list of name
variations so "The Goblins" finds an entry stored under "goblin".
"""
from __future__ import annotations
import json
import os
import re
from typing import Callable, Dict, List, Optional, Tuple

from card_common import warn

BUNDLED_SNAPSHOT = os.path.join(os.path.dirname(__file__), "monster_images.json")

DRAGON_COLORS = ("red", "blue", "green", "black", "white", "brass", "bronze", "copper", "silver", "gold", "shadow")
_DRAGON_AGE_RE = re.compile(r"(?:young|adult|ancient)\s+(" + "|".join(DRAGON_COLORS) + r")\s+dragon")


def normalize_monster_name(name: str) -> str:
    name = re.sub(r"[^a-z0-9\s]", "", (name or "").lower())
    return re.sub(r"\s+", " ", name).strip()


# ------------------------- Name variations -----------------------------------
# Each transform takes a normalized name and returns candidate keys. They run
# in the order listed; the first candidate present in the cache wins.

def _strip_article(n: str) -> List[str]:
    return [n[4:]] if n.startswith("the ") else []


def _flip_plural(n: str) -> List[str]:
    if n.endswith("s"):
        return [n[:-1]] if len(n) > 3 else []
    return [n + "s"]


def _compound_tail(n: str) -> List[str]:
    words = n.split(" ")
    if len(words) < 2:
        return []
    return [words[-1], " ".join(words[1:])]


def _dragon_color(n: str) -> List[str]:
    return [f"{m.group(1)} dragon" for m in _DRAGON_AGE_RE.finditer(n)]


NAME_VARIATIONS: Tuple[Callable[[str], List[str]], ...] = (
    _strip_article,
    _flip_plural,
    _compound_tail,
    _dragon_color,
)


def name_variations(name: str) -> List[str]:
    normalized = normalize_monster_name(name)
    candidates = [normalized]
    for transform in NAME_VARIATIONS:
        candidates.extend(transform(normalized))
    return [c for c in dict.fromkeys(candidates) if c]


# ------------------------- Cache store ---------------------------------------

class ImageCache:
    """In-memory name -> image reference mapping.

    Entries written with put() during this session are remembered separately
    so that reload() with a stale backend snapshot cannot roll them back.
    """

    def __init__(self, snapshot: Optional[Dict[str, str]] = None):
        self._entries: Dict[str, str] = {}
        self._session: Dict[str, str] = {}
        if snapshot:
            self.reload(snapshot)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def lookup(self, name: str) -> Optional[str]:
        if not name:
            return None
        for key in name_variations(name):
            ref = self._entries.get(key)
            if ref:
                return ref
        return None

    def has(self, name: str) -> bool:
        return self.lookup(name) is not None

    def put(self, name: str, ref: str) -> None:
        key = normalize_monster_name(name)
        self._entries[key] = ref
        self._session[key] = ref

    def reload(self, snapshot: Optional[Dict[str, str]] = None) -> None:
        """Merge a backend snapshot; session writes win over snapshot values."""
        if snapshot is None:
            snapshot = load_bundled_snapshot()
        merged = dict(self._entries)
        for name, ref in snapshot.items():
            key = normalize_monster_name(name)
            if key and ref:
                merged[key] = ref
        merged.update(self._session)
        self._entries = merged

    def snapshot(self) -> Dict[str, str]:
        return dict(self._entries)


def load_bundled_snapshot(path: Optional[str] = None) -> Dict[str, str]:
    """Load the bundled name -> image mapping; failures give an empty mapping."""
    path = path or BUNDLED_SNAPSHOT
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        warn(f"Image mapping not found: {path}")
        return {}
    except (OSError, ValueError) as e:
        warn(f"Failed to read image mapping {path}: {e}")
        return {}
    if not isinstance(data, dict):
        warn(f"Image mapping {path} is not an object; ignoring.")
        return {}
    return {str(k): str(v) for k, v in data.items() if v}
