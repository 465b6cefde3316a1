"""Procedural card artwork used when no real image can be found."""

from __future__ import annotations

import colorsys
import io
import zlib

from PIL import Image, ImageDraw, ImageFont

from ..models import CardSummary
from ..utils import issuer_from_card_id, title_from_card_id
from .classifier import category_color

CARD_WIDTH = 600
CARD_HEIGHT = 380
CORNER_RADIUS = 20

RGB = tuple[float, float, float]

ISSUER_COLORS: tuple[tuple[tuple[str, ...], RGB], ...] = (
    (("chase",), (0.0, 0.4, 0.8)),
    (("american express", "amex"), (0.0, 0.6, 0.5)),
    (("citi",), (0.0, 0.35, 0.6)),
    (("capital one",), (0.7, 0.0, 0.0)),
    (("discover",), (0.95, 0.4, 0.0)),
    (("wells fargo",), (0.8, 0.0, 0.0)),
)
CHIP_COLOR = (212, 175, 55)


def generic_card(card_id: str) -> CardSummary:
    """Build a display context for a card known only by its id."""

    cleaned = card_id.strip()
    return CardSummary(
        id=cleaned,
        name=title_from_card_id(cleaned) or "Credit Card",
        issuer=issuer_from_card_id(cleaned) or "Card",
        category="General",
    )


def base_color(card: CardSummary) -> RGB:
    """Pick the card colour from its category, issuer, or a name-derived hue."""

    color = category_color(card.category)
    if color is not None:
        return color

    issuer = card.issuer.lower()
    for needles, palette_color in ISSUER_COLORS:
        if any(needle in issuer for needle in needles):
            return palette_color

    hue = (zlib.crc32(card.name.encode("utf-8")) % 360) / 360.0
    return colorsys.hsv_to_rgb(hue, 0.6, 0.8)


def gradient_colors(color: RGB) -> tuple[RGB, RGB]:
    hue, saturation, value = colorsys.rgb_to_hsv(*color)

    def _clamp(component: float) -> float:
        return max(0.0, min(1.0, component))

    lighter = colorsys.hsv_to_rgb(hue, _clamp(saturation - 0.1), _clamp(value + 0.15))
    darker = colorsys.hsv_to_rgb(hue, _clamp(saturation + 0.1), _clamp(value - 0.15))
    return lighter, darker


def _to_rgb255(color: RGB) -> tuple[int, int, int]:
    return tuple(int(round(component * 255)) for component in color)  # type: ignore[return-value]


def _font(size: int) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
    return ImageFont.load_default(size=size)


def _draw_gradient(image: Image.Image, start: RGB, end: RGB) -> None:
    draw = ImageDraw.Draw(image)
    width, height = image.size
    steps = width + height
    start_rgb = _to_rgb255(start)
    end_rgb = _to_rgb255(end)
    for offset in range(steps):
        ratio = offset / max(steps - 1, 1)
        color = tuple(
            int(round(a + (b - a) * ratio)) for a, b in zip(start_rgb, end_rgb)
        )
        draw.line([(offset, 0), (offset - height, height)], fill=color + (255,), width=2)


def render_placeholder(card: CardSummary | None = None, *, card_id: str = "") -> bytes:
    """Return PNG bytes of a card-shaped gradient with issuer and name."""

    context = card if card is not None else generic_card(card_id)
    width, height = CARD_WIDTH, CARD_HEIGHT

    lighter, darker = gradient_colors(base_color(context))
    card_image = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    _draw_gradient(card_image, lighter, darker)

    overlay = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    draw.ellipse((40, 40, 120, 120), fill=(255, 255, 255, 51))
    draw.rounded_rectangle(
        (width - 120, 40, width - 70, 80), radius=6, fill=CHIP_COLOR + (255,)
    )

    initial = (context.issuer.strip()[:1] or "?").upper()
    letter_font = _font(40)
    left, top, right, bottom = draw.textbbox((0, 0), initial, font=letter_font)
    draw.text(
        (80 - (right - left) / 2 - left, 80 - (bottom - top) / 2 - top),
        initial,
        font=letter_font,
        fill=(255, 255, 255, 255),
    )

    draw.text((40, height - 80), context.name or "Credit Card", font=_font(28), fill=(255, 255, 255, 255))
    draw.text((40, height - 45), "Credit Card", font=_font(18), fill=(255, 255, 255, 204))

    card_image = Image.alpha_composite(card_image, overlay)

    mask = Image.new("L", (width, height), 0)
    ImageDraw.Draw(mask).rounded_rectangle(
        (0, 0, width - 1, height - 1), radius=CORNER_RADIUS, fill=255
    )
    card_image.putalpha(mask)

    buffer = io.BytesIO()
    card_image.save(buffer, format="PNG")
    return buffer.getvalue()
