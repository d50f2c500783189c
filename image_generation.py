"""
Generation coordinator: at most one first-image generation per creature.

Any number of cards may ask for the artwork of the same creature at once.
The first interactive caller starts a single backend generation; everyone
else subscribes to the same GenerationRecord and receives the same result.

Record lifecycle per normalized name::

    absent -> generating -> completed   (permanent for the session)
                         -> failed      (removed once the last subscriber leaves)

Everything here runs on one asyncio event loop. The settlement of a record
(write cache, flip flags, notify subscribers) is a single synchronous block
with no await in between, so no subscriber can observe a half-settled record.
"""
from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from card_common import warn
from images_api import ImageApiError, MonsterImagesApi
from monster_images import ImageCache, normalize_monster_name

# Receives the image reference, or None when generation failed.
ImageCallback = Callable[[Optional[str]], None]

STATE_ABSENT = "absent"
STATE_GENERATING = "generating"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"


def cache_busted(url: str, now: Optional[float] = None) -> str:
    """Append a t=<ms> parameter so a regenerated file at the same path reloads."""
    stamp = int((time.time() if now is None else now) * 1000)
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}t={stamp}"


class Subscription:
    """Handle returned to a subscriber; unsubscribe() may be called repeatedly."""

    def __init__(self, coordinator: "GenerationCoordinator", record: "GenerationRecord", callback: ImageCallback):
        self._coordinator = coordinator
        self.record = record
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._coordinator._release(self)


class GenerationRecord:
    def __init__(self, key: str):
        self.key = key
        self.task: Optional[asyncio.Task] = None
        self.subscribers: List[Subscription] = []
        self.is_generating = False
        self.completed = False
        self.result: Optional[str] = None

    @property
    def state(self) -> str:
        if self.is_generating:
            return STATE_GENERATING
        return STATE_COMPLETED if self.completed else STATE_FAILED

    def notify(self, url: Optional[str]) -> None:
        # Snapshot: a callback may unsubscribe itself while we iterate.
        for sub in list(self.subscribers):
            if sub.active:
                sub.callback(url)


@dataclass
class EnsureResult:
    image: Optional[str] = None
    is_generating: bool = False
    error: bool = False
    subscription: Optional[Subscription] = None


class GenerationCoordinator:
    """Deduplicates first generations across every card that shows a creature.

    One instance lives for the whole session and is handed to every card
    binding and to the print pipeline.
    """

    def __init__(self, cache: ImageCache, api: MonsterImagesApi):
        self.cache = cache
        self.api = api
        self._records: Dict[str, GenerationRecord] = {}

    def record_state(self, name: str) -> str:
        record = self._records.get(normalize_monster_name(name))
        return record.state if record else STATE_ABSENT

    def ensure_image(self, name: str, may_trigger: bool, callback: Optional[ImageCallback] = None) -> EnsureResult:
        """Return the confirmed image, join an in-flight generation, or start one.

        Observer calls (may_trigger=False) never start a generation. The
        callback is only registered when a record exists or is created; the
        caller must unsubscribe through the returned subscription.
        """
        cached = self.cache.lookup(name)
        if cached:
            return EnsureResult(image=cached)

        key = normalize_monster_name(name)
        record = self._records.get(key)
        if record is not None:
            sub = self._attach(record, callback)
            if record.completed:
                url = self.cache.lookup(name) or record.result
                record.notify(url)
                return EnsureResult(image=url, subscription=sub)
            if not record.is_generating:
                # Failed and still held by earlier subscribers.
                if sub is not None:
                    sub.callback(None)
                return EnsureResult(error=True, subscription=sub)
            return EnsureResult(is_generating=True, subscription=sub)

        if not may_trigger:
            return EnsureResult()

        record = GenerationRecord(key)
        record.is_generating = True
        self._records[key] = record
        sub = self._attach(record, callback)
        record.task = asyncio.ensure_future(self._generate(record, name))
        return EnsureResult(is_generating=True, subscription=sub)

    async def wait_for_image(self, name: str, may_trigger: bool) -> Optional[str]:
        """Awaitable form of ensure_image; None when absent or failed."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def deliver(url: Optional[str]) -> None:
            if not future.done():
                future.set_result(url)

        result = self.ensure_image(name, may_trigger, deliver)
        try:
            if result.image is not None:
                return result.image
            if not result.is_generating:
                return None
            return await future
        finally:
            if result.subscription is not None:
                result.subscription.unsubscribe()

    async def regenerate(self, name: str) -> str:
        """Always ask the backend for a fresh image.

        Not deduplicated and never written to the cache; raises ImageApiError.
        """
        return await self.api.regenerate_monster_image(name)

    async def drain(self) -> None:
        """Wait for every first generation currently in flight."""
        tasks = [r.task for r in self._records.values() if r.is_generating and r.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---------------------------------------------------------------------

    def _attach(self, record: GenerationRecord, callback: Optional[ImageCallback]) -> Optional[Subscription]:
        if callback is None:
            return None
        sub = Subscription(self, record, callback)
        record.subscribers.append(sub)
        return sub

    def _release(self, sub: Subscription) -> None:
        record = sub.record
        if sub in record.subscribers:
            record.subscribers.remove(sub)
        # Generating and completed records outlive their subscribers so a
        # remounting card joins them instead of issuing a second call.
        if record.is_generating or record.completed:
            return
        if not record.subscribers and self._records.get(record.key) is record:
            del self._records[record.key]

    async def _generate(self, record: GenerationRecord, name: str) -> Optional[str]:
        try:
            url: Optional[str] = await self.api.generate_monster_image(name)
        except ImageApiError as e:
            warn(f"Image generation failed for '{name}': {e}")
            url = None
        except Exception as e:
            # Any other failure still has to settle the record.
            warn(f"Unexpected error generating image for '{name}': {e!r}")
            url = None

        if url:
            self.cache.put(name, url)
            record.completed = True
            record.result = url
        record.is_generating = False
        record.notify(url)
        if not record.completed and not record.subscribers and self._records.get(record.key) is record:
            del self._records[record.key]
        return url
