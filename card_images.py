"""
Per-card image state.

CardImageBinding is what every card surface (search row, selected row,
preview dialog, print card) holds to get its artwork. ImageReview adds the
regenerate / accept / reject flow used by the interactive surfaces.
"""
from __future__ import annotations
from typing import Callable, Optional

from card_common import info, warn
from image_generation import GenerationCoordinator, Subscription, cache_busted
from images_api import ImageApiError, MonsterImagesApi


class CardImageBinding:
    """Image state for one card instance.

    Print surfaces (for_print=True) only observe: they show what is cached or
    already being generated, and never start a generation themselves.
    """

    def __init__(self, name: str, coordinator: GenerationCoordinator, for_print: bool = False, should_generate: Optional[bool] = None, on_change: Optional[Callable[["CardImageBinding"], None]] = None):
        self.name = name
        self.coordinator = coordinator
        self.for_print = for_print
        self.may_trigger = (not for_print) if should_generate is None else should_generate
        self.on_change = on_change
        self.image_url: Optional[str] = None
        self.is_generating = False
        self.error = False
        self.mounted = False
        self._subscription: Optional[Subscription] = None

    @property
    def can_regenerate(self) -> bool:
        return not self.for_print and not self.is_generating

    def mount(self) -> None:
        self.mounted = True
        cached = self.coordinator.cache.lookup(self.name)
        if cached:
            self._set(cached, generating=False, error=False)
            return
        result = self.coordinator.ensure_image(self.name, self.may_trigger, self._on_settled)
        self._subscription = result.subscription
        if result.image:
            self._set(result.image, generating=False, error=False)
        else:
            self._set(None, generating=result.is_generating, error=result.error)

    def unmount(self) -> None:
        # Detaching does not cancel the generation; other cards still want it.
        self.mounted = False
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def retry(self) -> None:
        """Manual "Generate" trigger shown on the placeholder after a failure."""
        self.unmount()
        self.mount()

    def confirm(self, url: str) -> None:
        self._set(url, generating=False, error=False)

    async def regenerate(self) -> Optional[str]:
        """Fetch a fresh image and return its cache-busted reference.

        The confirmed image is left alone; ImageReview decides what to keep.
        Returns None when disabled or when the backend call fails.
        """
        if not self.can_regenerate:
            return None
        self._set(self.image_url, generating=True, error=False)
        try:
            url = await self.coordinator.regenerate(self.name)
        except ImageApiError as e:
            warn(f"Failed to regenerate image for '{self.name}': {e}")
            self._set(self.image_url, generating=False, error=True)
            return None
        self._set(self.image_url, generating=False, error=False)
        return cache_busted(url)

    def _on_settled(self, url: Optional[str]) -> None:
        if url:
            self._set(url, generating=False, error=False)
        else:
            self._set(self.image_url, generating=False, error=True)

    def _set(self, url: Optional[str], generating: bool, error: bool) -> None:
        self.image_url = url
        self.is_generating = generating
        self.error = error
        if self.on_change is not None:
            self.on_change(self)


class ImageReview:
    """Pending-versus-confirmed image flow for an interactive card."""

    def __init__(self, binding: CardImageBinding, api: MonsterImagesApi):
        self.binding = binding
        self.api = api
        self.pending_image: Optional[str] = None
        self.error: Optional[str] = None

    @property
    def confirmed_image(self) -> Optional[str]:
        return self.binding.image_url

    @property
    def awaiting_confirmation(self) -> bool:
        return self.pending_image is not None

    @property
    def display_image(self) -> Optional[str]:
        return self.pending_image or self.confirmed_image

    async def on_regenerate_clicked(self) -> bool:
        if not self.binding.can_regenerate:
            return False
        self.error = None
        url = await self.binding.regenerate()
        if url is None:
            self.error = f"Could not regenerate image for {self.binding.name}"
            return False
        self.pending_image = url
        return True

    async def on_accept(self) -> bool:
        pending = self.pending_image
        if pending is None:
            return False
        try:
            await self.api.save_monster_image(self.binding.name, pending)
        except ImageApiError as e:
            warn(f"Failed to save image for '{self.binding.name}': {e}")
            self.error = f"Could not save image: {e.message}"
            return False
        self.binding.coordinator.cache.put(self.binding.name, pending)
        self.binding.confirm(pending)
        self.pending_image = None
        self.error = None
        info(f"Saved new image for '{self.binding.name}'")
        return True

    def on_reject(self) -> None:
        self.pending_image = None
        self.error = None
