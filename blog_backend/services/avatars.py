from __future__ import annotations

import hashlib
import io

from PIL import Image, ImageDraw, ImageFont

_SIZE = 256
_PALETTE = (
    (26, 115, 232),
    (217, 48, 37),
    (30, 142, 62),
    (249, 171, 0),
    (161, 66, 244),
    (0, 137, 123),
    (230, 81, 0),
    (84, 110, 122),
)


def initials(name: str) -> str:
    parts = [p for p in (name or "").split() if p]
    letters = "".join(p[0] for p in parts[:2]).upper()
    return letters or "?"


def _background(name: str) -> tuple[int, int, int]:
    digest = hashlib.sha256((name or "").strip().lower().encode("utf-8")).digest()
    return _PALETTE[digest[0] % len(_PALETTE)]


def render_placeholder_avatar(name: str) -> bytes:
    """Render a square PNG with the name's initials on a name-derived colour."""
    image = Image.new("RGB", (_SIZE, _SIZE), _background(name))
    draw = ImageDraw.Draw(image)
    text = initials(name)
    font = ImageFont.load_default(size=_SIZE // 2)
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    x = (_SIZE - (right - left)) / 2 - left
    y = (_SIZE - (bottom - top)) / 2 - top
    draw.text((x, y), text, fill=(255, 255, 255), font=font)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()
