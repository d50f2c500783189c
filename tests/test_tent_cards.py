import asyncio
import json
import os

import pytest

import tent_cards
from card_common import to_data_url
from card_images import CardImageBinding
from open5e import Monster
from tent_cards import (
    CARDS_PER_PAGE,
    ExportError,
    PrintConfig,
    SelectedMonster,
    embed_images,
    expand_working_set,
    export_pdf,
    mm_to_px,
    paginate,
    read_working_set,
    render_page,
    render_tent_card,
    resolve_print_images,
)

from conftest import png_bytes

GENERATE = "/api/generate-monster-image"
LOW_DPI = PrintConfig(dpi=30, image_timeout=1.0, batch_timeout=5.0)


@pytest.mark.parametrize("count,pages", [(0, 1), (1, 1), (4, 1), (5, 2), (8, 2), (9, 3)])
def test_paginate_pads_every_page(count, pages):
    result = paginate(list(range(count)))
    assert len(result) == pages
    assert all(len(page) == CARDS_PER_PAGE for page in result)
    assert [x for page in result for x in page if x is not None] == list(range(count))


def test_paginate_last_page_padding():
    assert paginate(["a", "b", "c", "d", "e"]) == [["a", "b", "c", "d"], ["e", None, None, None]]


def test_expand_working_set_repeats_quantities():
    goblin, owlbear = Monster(name="Goblin"), Monster(name="Owlbear")
    expanded = expand_working_set([SelectedMonster(goblin, 2), SelectedMonster(owlbear, 1), SelectedMonster(owlbear, 0)])
    assert [m.name for m in expanded] == ["Goblin", "Goblin", "Owlbear"]


def test_read_working_set_merges_duplicates(tmp_path):
    path = tmp_path / "selection.json"
    path.write_text(
        json.dumps([
            {"name": "Goblin", "quantity": 2},
            {"name": "Owlbear", "speed": 40},
            {"name": "Goblin"},
            {"size": "Large"},
        ]),
        encoding="utf-8",
    )
    selection = read_working_set(str(path))
    assert [(s.monster.name, s.quantity) for s in selection] == [("Goblin", 3), ("Owlbear", 1)]
    assert selection[1].monster.speed == {"walk": 40}
    assert len(expand_working_set(selection)) == 4


def test_read_working_set_rejects_non_list(tmp_path):
    path = tmp_path / "selection.json"
    path.write_text(json.dumps({"name": "Goblin"}), encoding="utf-8")
    with pytest.raises(ValueError):
        read_working_set(str(path))


@pytest.mark.asyncio
async def test_embed_images_inlines_fetchable_refs(api, backend, tmp_path):
    local = tmp_path / "local.png"
    local.write_bytes(png_bytes())
    inline = to_data_url(png_bytes(), "image/png")
    backend.missing_images.add("/images/monsters/gone.png")

    refs = ["/images/monsters/goblin.png", "/images/monsters/gone.png", inline, str(local), "/images/monsters/goblin.png"]
    embedded = await embed_images(refs, api)

    assert embedded["/images/monsters/goblin.png"].startswith("data:image/png;base64,")
    assert embedded["/images/monsters/gone.png"] == "/images/monsters/gone.png"
    assert embedded[inline] == inline
    assert embedded[str(local)] == str(local)
    assert backend.count("/images/monsters/goblin.png") == 1


@pytest.mark.asyncio
async def test_embed_timeout_keeps_original_ref(api, backend):
    backend.image_delay = 1.0
    embedded = await embed_images(["/images/monsters/slow.png"], api, per_image_timeout=0.05, batch_timeout=5.0)
    assert embedded == {"/images/monsters/slow.png": "/images/monsters/slow.png"}


@pytest.mark.asyncio
async def test_embed_batch_timeout_keeps_original_refs(api, backend):
    backend.image_delay = 1.0
    refs = [f"/images/monsters/slow-{i}.png" for i in range(3)]
    embedded = await embed_images(refs, api, per_image_timeout=5.0, batch_timeout=0.05)
    assert embedded == {r: r for r in refs}


@pytest.mark.asyncio
async def test_print_resolution_never_triggers_generation(backend, coordinator):
    coordinator.cache.put("Goblin", "/images/monsters/goblin.png")
    images = await resolve_print_images([Monster(name="Goblin"), Monster(name="Beholder"), Monster(name="Goblin")], coordinator)
    assert images == {"Goblin": "/images/monsters/goblin.png", "Beholder": None}
    assert backend.count(GENERATE) == 0


@pytest.mark.asyncio
async def test_print_resolution_times_out_on_stalled_generation(backend, coordinator):
    backend.gate = asyncio.Event()
    preview = CardImageBinding("Mimic", coordinator)
    preview.mount()
    images = await resolve_print_images([Monster(name="Mimic")], coordinator, timeout=0.05)
    assert images == {"Mimic": None}
    backend.gate.set()
    await coordinator.drain()
    assert preview.image_url == "http://testserver/images/monsters/mimic.png"
    assert backend.count(GENERATE) == 1


@pytest.mark.asyncio
async def test_export_waits_for_preview_generation(backend, coordinator, tmp_path):
    preview = CardImageBinding("Young Red Dragon", coordinator)
    preview.mount()
    assert preview.is_generating

    outfile = tmp_path / "cards.pdf"
    pages = await export_pdf([Monster(name="Young Red Dragon")], coordinator, str(outfile), LOW_DPI)

    assert pages == 1
    assert outfile.read_bytes().startswith(b"%PDF")
    assert not os.path.exists(f"{outfile}.part")
    assert backend.count(GENERATE) == 1
    assert backend.count("/images/monsters/young-red-dragon.png") == 1
    preview.unmount()


@pytest.mark.asyncio
async def test_export_page_count_and_missing_images(backend, coordinator, tmp_path):
    monsters = expand_working_set([SelectedMonster(Monster(name="Goblin"), 3), SelectedMonster(Monster(name="Kobold"), 3)])
    coordinator.cache.put("Goblin", "/images/monsters/goblin.png")
    coordinator.cache.put("Kobold", "/images/monsters/kobold.png")
    backend.missing_images.add("/images/monsters/kobold.png")

    outfile = tmp_path / "cards.pdf"
    assert await export_pdf(monsters, coordinator, str(outfile), LOW_DPI) == 2
    assert outfile.exists()
    assert backend.count(GENERATE) == 0


@pytest.mark.asyncio
async def test_empty_export_writes_one_placeholder_page(coordinator, tmp_path):
    outfile = tmp_path / "empty.pdf"
    assert await export_pdf([], coordinator, str(outfile), LOW_DPI) == 1
    assert outfile.read_bytes().startswith(b"%PDF")


@pytest.mark.asyncio
async def test_export_failure_leaves_no_output(monkeypatch, coordinator, tmp_path):
    def boom(pages, outfile):
        with open(outfile, "wb") as f:
            f.write(b"partial")
        raise RuntimeError("canvas exploded")

    monkeypatch.setattr(tent_cards, "compose_pdf", boom)
    outfile = tmp_path / "cards.pdf"
    with pytest.raises(ExportError, match="canvas exploded"):
        await export_pdf([Monster(name="Goblin")], coordinator, str(outfile), LOW_DPI)
    assert not outfile.exists()
    assert not os.path.exists(f"{outfile}.part")


def test_render_page_is_a4_landscape():
    cfg = PrintConfig(dpi=30)
    page = render_page([(Monster(name="Goblin"), None), None, None, None], cfg)
    assert page.size == (mm_to_px(297, 30), mm_to_px(210, 30))
    assert page.mode == "RGB"


def test_render_tent_card_size_with_stats():
    monster = Monster.from_dict({
        "name": "Owlbear",
        "size": "Large",
        "type": "monstrosity",
        "armor_class": 13,
        "hit_points": 59,
        "speed": {"walk": 40},
        "strength": 20,
        "challenge_rating": "3",
        "actions": [{"name": "Multiattack", "desc": "The owlbear makes two attacks."}],
    })
    card = render_tent_card(monster, to_data_url(png_bytes()), PrintConfig(dpi=40))
    assert card.size == (mm_to_px(72, 40), mm_to_px(200, 40))


def test_cli_export_from_images_map(tmp_path):
    images_map = tmp_path / "images.json"
    images_map.write_text(json.dumps({"goblin": to_data_url(png_bytes())}), encoding="utf-8")
    selection = tmp_path / "selection.json"
    selection.write_text(json.dumps([{"name": "Goblin", "quantity": 5}]), encoding="utf-8")
    outfile = tmp_path / "out.pdf"

    code = tent_cards.main(["--images-map", str(images_map), "export", str(selection), "--pdf", str(outfile), "--dpi", "30"])
    assert code == 0
    assert outfile.read_bytes().startswith(b"%PDF")


def test_cli_export_bad_selection(tmp_path):
    assert tent_cards.main(["export", str(tmp_path / "missing.json")]) == 1


@pytest.mark.asyncio
async def test_export_survives_malformed_cached_url(coordinator, tmp_path):
    coordinator.cache.put("Goblin", "http://[::1/goblin.png")
    outfile = tmp_path / "cards.pdf"
    assert await export_pdf([Monster(name="Goblin")], coordinator, str(outfile), LOW_DPI) == 1
    assert outfile.read_bytes().startswith(b"%PDF")


@pytest.mark.asyncio
async def test_embed_keeps_ref_on_unexpected_error():
    class BrokenApi:
        async def fetch_image(self, url, timeout=None):
            raise RuntimeError("decoder crashed")

    embedded = await embed_images(["/images/monsters/goblin.png"], BrokenApi())
    assert embedded == {"/images/monsters/goblin.png": "/images/monsters/goblin.png"}
