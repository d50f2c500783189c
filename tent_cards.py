#!/usr/bin/env python3
"""
DnD Monster Tent Card Generator

Builds print-ready A4 landscape PDFs of fold-in-half monster tent cards, four
cards per sheet. Artwork comes from the tent card backend: cached images are
used as-is, missing ones can be generated on request, and every image is
embedded into the page before it is rasterized.

Usage:
    python tent_cards.py search "dragon"
    python tent_cards.py export selection.json --pdf cards.pdf --generate
    python tent_cards.py regenerate "Owlbear" --accept
    python tent_cards.py health

Global flags:
    --api-url           Backend base URL (default: $TENT_CARDS_API_URL or
                        http://localhost:3001)
    --images-map        Name -> image JSON mapping to seed the image cache
                        (default: bundled monster_images.json)

Export flags:
    --pdf               Output PDF path (default: dnd-monster-cards.pdf)
    --dpi               Raster resolution of each page (default: 300)
    --generate          Generate artwork for monsters that have none yet
    --image-timeout     Seconds to wait for a single image (default: 10)
    --batch-timeout     Seconds to wait for all images of the export (default: 60)

Selection JSON schema (list):
    Either Open5e monster records or hand-authored custom cards with at least
    a "name". An optional "quantity" prints that many copies.

Dependencies:
    - Pillow
    - reportlab
    - httpx

"""
from __future__ import annotations
import argparse
import asyncio
import io
import os
import sys
from dataclasses import dataclass
from typing import Awaitable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

import httpx
from PIL import Image, ImageDraw
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as pdf_canvas

import analytics
from api_config import BATCH_EMBED_TIMEOUT, IMAGE_EMBED_TIMEOUT, REQUEST_TIMEOUT, get_api_base_url
from card_common import (
    draw_rounded_image,
    draw_wrapped,
    fit_font,
    info,
    is_data_url,
    load_json,
    safe_load_image,
    to_data_url,
    warn,
)
from card_images import CardImageBinding, ImageReview
from image_generation import GenerationCoordinator
from images_api import ImageApiError, MonsterImagesApi
from monster_images import ImageCache, load_bundled_snapshot
from open5e import Monster, SearchError, ability_modifier, format_speed, search_monsters

# Constants
PAGE_WIDTH_MM = 297  # A4 landscape
PAGE_HEIGHT_MM = 210
CARD_WIDTH_MM = 72
CARD_HEIGHT_MM = 200
PAGE_PADDING_MM = 2
CARDS_PER_PAGE = 4
DEFAULT_DPI = 300
DEFAULT_PDF_NAME = "dnd-monster-cards.pdf"

PARCHMENT = (245, 238, 220, 255)
INK = (30, 24, 20, 255)
INK_LIGHT = (90, 70, 60, 255)
RULE = (130, 30, 20, 255)

T = TypeVar("T")


def mm_to_px(mm: float, dpi: int) -> int:
    return int(round(mm / 25.4 * dpi))


class ExportError(Exception):
    """The PDF could not be rasterized or assembled."""


# --------------------------- Working set -------------------------------------

@dataclass
class SelectedMonster:
    monster: Monster
    quantity: int = 1


@dataclass
class PrintConfig:
    dpi: int = DEFAULT_DPI
    image_timeout: float = IMAGE_EMBED_TIMEOUT
    batch_timeout: float = BATCH_EMBED_TIMEOUT
    font: Optional[str] = None


def expand_working_set(selection: Iterable[SelectedMonster]) -> List[Monster]:
    """One entry per printed copy, in selection order."""
    out: List[Monster] = []
    for item in selection:
        out.extend([item.monster] * max(int(item.quantity), 0))
    return out


def read_working_set(path: str) -> List[SelectedMonster]:
    data = load_json(path)
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of monsters")
    selection: List[SelectedMonster] = []
    by_slug: Dict[str, SelectedMonster] = {}
    for i, raw in enumerate(data):
        if not isinstance(raw, dict) or not raw.get("name"):
            warn(f"Entry {i} missing name; skipping.")
            continue
        monster = Monster.from_dict(raw)
        quantity = int(raw.get("quantity") or 1)
        if monster.slug in by_slug:
            by_slug[monster.slug].quantity += quantity
            continue
        item = SelectedMonster(monster, quantity)
        by_slug[monster.slug] = item
        selection.append(item)
    return selection


def paginate(entries: Sequence[T], per_page: int = CARDS_PER_PAGE) -> List[List[Optional[T]]]:
    """Split into pages of exactly per_page slots; None marks an empty slot.

    An empty working set still yields one page of placeholders.
    """
    pages: List[List[Optional[T]]] = []
    for i in range(0, len(entries), per_page):
        page: List[Optional[T]] = list(entries[i : i + per_page])
        page.extend([None] * (per_page - len(page)))
        pages.append(page)
    if not pages:
        pages.append([None] * per_page)
    return pages


# --------------------------- Image settling ----------------------------------

async def _bounded(coros: Dict[str, Awaitable], timeout: float) -> Dict[str, object]:
    """Run keyed awaitables with one overall deadline; late ones are cancelled."""
    if not coros:
        return {}
    tasks = {key: asyncio.ensure_future(c) for key, c in coros.items()}
    _, pending = await asyncio.wait(tasks.values(), timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    return {key: task.result() for key, task in tasks.items() if task not in pending}


async def resolve_print_images(monsters: Sequence[Monster], coordinator: GenerationCoordinator, timeout: float = BATCH_EMBED_TIMEOUT) -> Dict[str, Optional[str]]:
    """Confirmed image per monster name, as seen by print cards.

    Print cards never trigger generation; they wait for generations the
    interactive cards already started and otherwise use what is cached.
    """
    names = list(dict.fromkeys(m.name for m in monsters))
    settled = await _bounded({n: coordinator.wait_for_image(n, may_trigger=False) for n in names}, timeout)
    results: Dict[str, Optional[str]] = {}
    for name in names:
        if name in settled:
            results[name] = settled[name]
        else:
            warn(f"Timed out waiting for the image of '{name}'")
            results[name] = coordinator.cache.lookup(name)
    return results


async def embed_image(ref: str, api: MonsterImagesApi, timeout: float) -> str:
    """Return an inline data URL for ref, or ref itself if it cannot be fetched."""
    if is_data_url(ref) or os.path.isfile(ref):
        return ref
    try:
        fetched = await asyncio.wait_for(api.fetch_image(ref, timeout=timeout), timeout)
    except (ImageApiError, asyncio.TimeoutError) as e:
        warn(f"Could not embed image {ref}: {str(e) or 'timed out'}")
        return ref
    except Exception as e:
        warn(f"Could not embed image {ref}: {e!r}")
        return ref
    return to_data_url(fetched.content, fetched.content_type)


async def embed_images(refs: Iterable[str], api: MonsterImagesApi, per_image_timeout: float = IMAGE_EMBED_TIMEOUT, batch_timeout: float = BATCH_EMBED_TIMEOUT) -> Dict[str, str]:
    unique = [r for r in dict.fromkeys(refs) if r]
    embedded = await _bounded({r: embed_image(r, api, per_image_timeout) for r in unique}, batch_timeout)
    return {r: embedded.get(r, r) for r in unique}


# --------------------------- Rendering ---------------------------------------

def _line_height(draw: ImageDraw.ImageDraw, font) -> int:
    bbox = draw.textbbox((0, 0), "Ag", font=font)
    return bbox[3] - bbox[1]


def _render_front(monster: Monster, image_ref: Optional[str], size: Tuple[int, int], cfg: PrintConfig) -> Image.Image:
    """Portrait and name; faces the players once the card is folded."""
    w, h = size
    panel = Image.new("RGBA", size, PARCHMENT)
    draw = ImageDraw.Draw(panel)
    pad = int(w * 0.06)
    name_font = fit_font(cfg.font, max(12, int(h * 0.07)))
    img_box = (pad, pad, w - pad, int(h * 0.78))
    portrait = safe_load_image(image_ref, (img_box[2] - img_box[0], img_box[3] - img_box[1]))
    draw_rounded_image(panel, portrait, img_box, radius=max(6, pad // 2))
    draw_wrapped(draw, (pad, int(h * 0.81)), monster.name, name_font, w - 2 * pad, fill=RULE)
    return panel


def _render_stats(monster: Monster, size: Tuple[int, int], cfg: PrintConfig) -> Image.Image:
    w, h = size
    panel = Image.new("RGBA", size, PARCHMENT)
    draw = ImageDraw.Draw(panel)
    pad = int(w * 0.06)
    text_w = w - 2 * pad
    title_font = fit_font(cfg.font, max(12, int(h * 0.055)))
    body_font = fit_font(cfg.font, max(9, int(h * 0.028)))
    small_font = fit_font(cfg.font, max(8, int(h * 0.024)))

    y = draw_wrapped(draw, (pad, pad), monster.name, title_font, text_w, fill=RULE)
    kind = " ".join(p for p in (monster.size, monster.type) if p)
    if monster.subtype:
        kind += f" ({monster.subtype})"
    if monster.alignment:
        kind += f", {monster.alignment}"
    y = draw_wrapped(draw, (pad, y), kind, small_font, text_w, fill=INK_LIGHT)
    draw.line((pad, y + 4, w - pad, y + 4), fill=RULE, width=max(1, h // 300))
    y += 10
    y = draw_wrapped(draw, (pad, y), f"AC {monster.armor_class}   HP {monster.hit_points}", body_font, text_w)
    y = draw_wrapped(draw, (pad, y), f"Speed {format_speed(monster.speed)}", body_font, text_w)
    y += 6

    col_w = text_w // 6
    row_h = _line_height(draw, small_font)
    for i, (label, score) in enumerate(monster.ability_scores):
        x = pad + i * col_w
        draw.text((x, y), label, font=small_font, fill=RULE)
        draw.text((x, y + row_h + 2), f"{score} ({ability_modifier(score)})", font=small_font, fill=INK)
    y += 2 * row_h + 12

    if monster.challenge_rating:
        y = draw_wrapped(draw, (pad, y), f"Challenge {monster.challenge_rating}", body_font, text_w)
    for entry in monster.special_abilities + monster.actions:
        if y > h - pad - _line_height(draw, body_font):
            break
        line = f"{entry.get('name', '')}. {entry.get('desc', '')}".strip(". ")
        y = draw_wrapped(draw, (pad, y + 4), line, small_font, text_w)
    return panel


def render_tent_card(monster: Monster, image_ref: Optional[str], cfg: PrintConfig) -> Image.Image:
    # Top half is upside down so it reads correctly on the far side of the fold.
    w, h = mm_to_px(CARD_WIDTH_MM, cfg.dpi), mm_to_px(CARD_HEIGHT_MM, cfg.dpi)
    half = (w, h // 2)
    card = Image.new("RGBA", (w, h), PARCHMENT)
    card.paste(_render_front(monster, image_ref, half, cfg).rotate(180), (0, 0))
    card.paste(_render_stats(monster, half, cfg), (0, h // 2))
    draw = ImageDraw.Draw(card)
    draw.rectangle((0, 0, w - 1, h - 1), outline=INK_LIGHT, width=max(1, cfg.dpi // 100))
    draw.line((0, h // 2, w, h // 2), fill=(180, 170, 150, 255), width=1)
    return card


def render_empty_slot(cfg: PrintConfig) -> Image.Image:
    w, h = mm_to_px(CARD_WIDTH_MM, cfg.dpi), mm_to_px(CARD_HEIGHT_MM, cfg.dpi)
    slot = Image.new("RGBA", (w, h), (255, 255, 255, 255))
    draw = ImageDraw.Draw(slot)
    dash = max(4, cfg.dpi // 20)
    colour = (220, 220, 220, 255)
    for x in range(0, w, dash * 2):
        draw.line((x, 0, min(x + dash, w), 0), fill=colour, width=2)
        draw.line((x, h - 2, min(x + dash, w), h - 2), fill=colour, width=2)
    for y in range(0, h, dash * 2):
        draw.line((0, y, 0, min(y + dash, h)), fill=colour, width=2)
        draw.line((w - 2, y, w - 2, min(y + dash, h)), fill=colour, width=2)
    font = fit_font(cfg.font, max(10, cfg.dpi // 10))
    bbox = draw.textbbox((0, 0), "Empty", font=font)
    draw.text(((w - (bbox[2] - bbox[0])) // 2, (h - (bbox[3] - bbox[1])) // 2), "Empty", font=font, fill=colour)
    return slot


def render_page(slots: Sequence[Optional[Tuple[Monster, Optional[str]]]], cfg: PrintConfig) -> Image.Image:
    """Rasterize one sheet: cards side by side, centered on a white page."""
    page_w, page_h = mm_to_px(PAGE_WIDTH_MM, cfg.dpi), mm_to_px(PAGE_HEIGHT_MM, cfg.dpi)
    card_w, card_h = mm_to_px(CARD_WIDTH_MM, cfg.dpi), mm_to_px(CARD_HEIGHT_MM, cfg.dpi)
    page = Image.new("RGB", (page_w, page_h), (255, 255, 255))
    inner_w = page_w - 2 * mm_to_px(PAGE_PADDING_MM, cfg.dpi)
    gap = max(0, (inner_w - len(slots) * card_w) // max(len(slots) - 1, 1))
    total_w = len(slots) * card_w + (len(slots) - 1) * gap
    x = (page_w - total_w) // 2
    y = (page_h - card_h) // 2
    for slot in slots:
        card = render_tent_card(slot[0], slot[1], cfg) if slot else render_empty_slot(cfg)
        page.paste(card, (x, y), card)
        x += card_w + gap
    return page


def compose_pdf(pages: Iterable[Image.Image], outfile: str) -> int:
    """Write each page raster as a full A4 landscape PDF page; returns the count."""
    page_size = landscape(A4)
    c = pdf_canvas.Canvas(outfile, pagesize=page_size)
    count = 0
    for page in pages:
        buf = io.BytesIO()
        page.save(buf, format="PNG")
        buf.seek(0)
        c.drawImage(ImageReader(buf), 0, 0, width=page_size[0], height=page_size[1])
        c.showPage()
        count += 1
    c.save()
    return count


async def export_pdf(monsters: Sequence[Monster], coordinator: GenerationCoordinator, outfile: str, cfg: Optional[PrintConfig] = None) -> int:
    """Render the expanded working set to outfile and return the page count.

    The PDF is written to a temporary sibling and only moved into place once
    complete, so a failed export never leaves a truncated file behind.
    """
    cfg = cfg or PrintConfig()
    images = await resolve_print_images(monsters, coordinator, cfg.batch_timeout)
    embedded = await embed_images([r for r in images.values() if r], coordinator.api, cfg.image_timeout, cfg.batch_timeout)
    pages = paginate(list(monsters), CARDS_PER_PAGE)

    def rasterized():
        for i, page in enumerate(pages):
            info(f"Rendering page {i + 1}/{len(pages)}")
            slots = []
            for m in page:
                ref = images.get(m.name) if m else None
                slots.append((m, embedded.get(ref, ref)) if m else None)
            yield render_page(slots, cfg)

    tmp = f"{outfile}.part"
    try:
        count = compose_pdf(rasterized(), tmp)
        os.replace(tmp, outfile)
    except Exception as e:
        raise ExportError(f"Failed to generate PDF: {e}") from e
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)
    info(f"Wrote PDF: {outfile}")
    return count


# --------------------------- CLI and Orchestration ---------------------------

async def generate_missing(monsters: Sequence[Monster], coordinator: GenerationCoordinator) -> int:
    """Mount an interactive card per monster and wait for their generations.

    Returns the number of monsters still without artwork.
    """
    bindings = [CardImageBinding(m.name, coordinator) for m in monsters]
    for b in bindings:
        b.mount()
    try:
        await coordinator.drain()
    finally:
        for b in bindings:
            b.unmount()
    missing = {b.name for b in bindings if not coordinator.cache.lookup(b.name)}
    for name in sorted(missing):
        warn(f"No image for '{name}'")
    return len(missing)


async def _cmd_search(args, client: httpx.AsyncClient, coordinator: GenerationCoordinator) -> int:
    try:
        monsters = await search_monsters(client, args.query)
    except SearchError as e:
        warn(str(e))
        return 1
    await analytics.track_search(client, args.query, len(monsters), args.api_url)
    for m in monsters[: args.limit]:
        marker = "*" if coordinator.cache.has(m.name) else " "
        print(f"{marker} {m.name:<40} CR {m.challenge_rating:<5} {m.size} {m.type}".rstrip())
    info(f"{len(monsters)} result(s); * = image available")
    return 0


async def _cmd_export(args, client: httpx.AsyncClient, coordinator: GenerationCoordinator) -> int:
    try:
        selection = read_working_set(args.input)
    except (OSError, ValueError) as e:
        warn(f"Could not read selection: {e}")
        return 1
    monsters = expand_working_set(selection)
    if not monsters:
        warn("No monsters to print.")
        return 1
    for item in selection:
        await analytics.track_monster_added(client, item.monster.name, item.quantity, args.api_url)
    if args.generate:
        await generate_missing([s.monster for s in selection], coordinator)
    cfg = PrintConfig(dpi=args.dpi, image_timeout=args.image_timeout, batch_timeout=args.batch_timeout, font=args.font)
    try:
        pages = await export_pdf(monsters, coordinator, args.pdf, cfg)
    except ExportError as e:
        warn(str(e))
        return 1
    await analytics.track_pdf_download(client, len(monsters), pages, args.api_url)
    info(f"{len(monsters)} card(s) on {pages} page(s). Fold each card horizontally in the middle.")
    return 0


async def _cmd_regenerate(args, client: httpx.AsyncClient, coordinator: GenerationCoordinator) -> int:
    binding = CardImageBinding(args.name, coordinator, should_generate=False)
    binding.mount()
    review = ImageReview(binding, coordinator.api)
    try:
        await analytics.track_image_regeneration(client, args.name, args.api_url)
        if not await review.on_regenerate_clicked():
            warn(review.error or "Regeneration unavailable")
            return 1
        info(f"Pending image: {review.pending_image}")
        if args.accept:
            if not await review.on_accept():
                warn(review.error or "Could not save image")
                return 1
            info(f"Accepted: {review.confirmed_image}")
        else:
            review.on_reject()
            info(f"Rejected; keeping {review.confirmed_image or 'no image'}")
        return 0
    finally:
        binding.unmount()


async def _cmd_health(args, client: httpx.AsyncClient, coordinator: GenerationCoordinator) -> int:
    ok = await coordinator.api.health()
    (info if ok else warn)(f"Backend {coordinator.api.base_url} is {'up' if ok else 'unreachable'}")
    return 0 if ok else 1


COMMANDS = {
    "search": _cmd_search,
    "export": _cmd_export,
    "regenerate": _cmd_regenerate,
    "health": _cmd_health,
}


async def run(args) -> int:
    cache = ImageCache(load_bundled_snapshot(args.images_map))
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        coordinator = GenerationCoordinator(cache, MonsterImagesApi(client, args.api_url))
        return await COMMANDS[args.command](args, client, coordinator)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DnD Monster Tent Card Generator")
    parser.add_argument("--api-url", default=None, help="Backend base URL (default: $TENT_CARDS_API_URL)")
    parser.add_argument("--images-map", default=None, help="JSON name -> image mapping used to seed the image cache")
    sub = parser.add_subparsers(dest="command", required=True)

    p_search = sub.add_parser("search", help="Search Open5e for monsters")
    p_search.add_argument("query", nargs="?", default="", help="Search text; empty lists every monster")
    p_search.add_argument("--limit", type=int, default=50, help="Maximum results to print")

    p_export = sub.add_parser("export", help="Export a selection JSON to a tent card PDF")
    p_export.add_argument("input", help="Selection JSON file")
    p_export.add_argument("--pdf", default=DEFAULT_PDF_NAME, help="Output PDF path")
    p_export.add_argument("--dpi", type=int, default=DEFAULT_DPI, help="Raster resolution for each page")
    p_export.add_argument("--font", default=None, help="TTF font path for card text")
    p_export.add_argument("--generate", action="store_true", help="Generate artwork for monsters without an image")
    p_export.add_argument("--image-timeout", type=float, default=IMAGE_EMBED_TIMEOUT, help="Seconds to wait per image")
    p_export.add_argument("--batch-timeout", type=float, default=BATCH_EMBED_TIMEOUT, help="Seconds to wait for all images")

    p_regen = sub.add_parser("regenerate", help="Regenerate a monster's artwork and accept or reject it")
    p_regen.add_argument("name", help="Monster name")
    p_regen.add_argument("--accept", action="store_true", help="Persist the new image (default: reject)")

    sub.add_parser("health", help="Check that the backend is reachable")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    args.api_url = args.api_url or get_api_base_url()
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
