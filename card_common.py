"""
Shared helpers for the tent card tools: console logging, JSON loading,
inline image encoding, and the small Pillow drawing primitives used by the
print layout.
"""
from __future__ import annotations
import base64
import binascii
import io
import json
import os
from typing import List, Optional, Tuple

from PIL import Image, ImageChops, ImageDraw, ImageFont, ImageOps

# ----------------------------- Logging ---------------------------------------

def warn(msg: str) -> None:
    print(f"[WARN] {msg}")


def info(msg: str) -> None:
    print(f"[INFO] {msg}")


# ----------------------------- Utilities -------------------------------------

def slugify(text: str) -> str:
    return "".join(c.lower() if c.isalnum() else "_" for c in text).strip("_")


def load_json(path: str):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def is_data_url(ref: Optional[str]) -> bool:
    return bool(ref) and ref.startswith("data:")


def to_data_url(data: bytes, content_type: str = "image/png") -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def decode_data_url(ref: str) -> bytes:
    """Return the payload of a base64 ``data:`` URL.

    Raises ValueError for anything that is not a base64 data URL.
    """
    if not is_data_url(ref):
        raise ValueError("not a data URL")
    header, _, payload = ref.partition(",")
    if not header.endswith(";base64"):
        raise ValueError("only base64 data URLs are supported")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 payload: {e}") from e


# ----------------------------- Images ----------------------------------------

def placeholder_image(size: Tuple[int, int], label: str = "No Image") -> Image.Image:
    w, h = size
    img = Image.new("RGBA", size, (200, 200, 200, 255))
    draw = ImageDraw.Draw(img)
    r = min(w, h) // 3
    cx, cy = w // 2, h // 3
    draw.ellipse((cx - r, cy - r, cx + r, cy + r), fill=(160, 160, 160, 255))
    draw.rectangle((w * 0.3, h * 0.55, w * 0.7, h * 0.95), fill=(160, 160, 160, 255))
    draw.text((10, h - 24), label, fill=(80, 80, 80, 255))
    return img


def safe_load_image(ref: Optional[str], target_size: Optional[Tuple[int, int]] = None) -> Image.Image:
    """Load an image from a data URL or a local path.

    Remote URLs are never fetched here; callers embed them beforehand. Anything
    that cannot be decoded yields the placeholder silhouette.
    """
    placeholder_size = target_size or (256, 256)
    if not ref:
        return placeholder_image(placeholder_size)
    try:
        if is_data_url(ref):
            img = Image.open(io.BytesIO(decode_data_url(ref)))
        elif ref.startswith("http://") or ref.startswith("https://"):
            warn(f"Image was not embedded, using placeholder: {ref}")
            return placeholder_image(placeholder_size)
        elif os.path.isfile(ref):
            img = Image.open(ref)
        else:
            warn(f"Image not found: {ref}. Using placeholder.")
            return placeholder_image(placeholder_size)
        img = img.convert("RGBA")
        if target_size:
            img = ImageOps.contain(img, target_size, method=Image.LANCZOS)
        return img
    except (OSError, ValueError) as e:
        warn(f"Failed to load image: {e}. Using placeholder.")
        return placeholder_image(placeholder_size)


def draw_rounded_image(base: Image.Image, img: Image.Image, box: Tuple[int, int, int, int], radius: int = 20) -> None:
    """Paste img centered in box, scaled to cover it, with rounded corners."""
    x0, y0, x1, y1 = map(int, box)
    w, h = x1 - x0, y1 - y0
    fitted = ImageOps.fit(img.convert("RGBA"), (w, h), method=Image.LANCZOS)
    mask = Image.new("L", (w, h), 0)
    ImageDraw.Draw(mask).rounded_rectangle((0, 0, w, h), radius=radius, fill=255)
    fitted.putalpha(ImageChops.multiply(fitted.split()[3], mask))
    base.paste(fitted, (x0, y0), fitted)


# ----------------------------- Text ------------------------------------------

def fit_font(fontpath_or_name: Optional[str], size: int) -> ImageFont.FreeTypeFont:
    """Try to load the font; fall back to DejaVuSans, then the PIL default."""
    if fontpath_or_name and os.path.isfile(fontpath_or_name):
        try:
            return ImageFont.truetype(fontpath_or_name, size=size)
        except OSError as e:
            warn(f"Failed to load font from path {fontpath_or_name}: {e}")
    try:
        return ImageFont.truetype("DejaVuSans.ttf", size=size)
    except OSError:
        return ImageFont.load_default(size=size)


def measure_wrapped_text(draw: ImageDraw.ImageDraw, text: str, font: ImageFont.FreeTypeFont, max_width: int, line_spacing: int = 0) -> Tuple[int, int, List[str]]:
    """Wraps text into lines that fit max_width; returns (w, h, lines)."""
    def text_size(s: str) -> Tuple[int, int]:
        bbox = draw.textbbox((0, 0), s, font=font)
        return bbox[2] - bbox[0], bbox[3] - bbox[1]

    lines: List[str] = []
    current: List[str] = []
    for word in text.split():
        tentative = " ".join(current + [word])
        if text_size(tentative)[0] <= max_width or not current:
            current.append(word)
        else:
            lines.append(" ".join(current))
            current = [word]
    if current:
        lines.append(" ".join(current))
    line_heights = [text_size(line)[1] for line in lines] or [text_size(" ")[1]]
    height = sum(line_heights) + line_spacing * max(len(lines) - 1, 0)
    width = min(max((text_size(line)[0] for line in lines), default=0), max_width)
    return width, height, lines


def draw_wrapped(draw: ImageDraw.ImageDraw, xy: Tuple[int, int], text: str, font: ImageFont.FreeTypeFont, max_width: int, fill=(30, 24, 20, 255), line_spacing: int = 4) -> int:
    """Draw wrapped text at xy and return the y coordinate below it."""
    x, y = xy
    _, _, lines = measure_wrapped_text(draw, text, font, max_width, line_spacing)
    for line in lines:
        draw.text((x, y), line, font=font, fill=fill)
        bbox = draw.textbbox((0, 0), line or " ", font=font)
        y += (bbox[3] - bbox[1]) + line_spacing
    return y
