from __future__ import annotations

import math
from dataclasses import dataclass

from .errors import QrBoxError
from .schemas import QrBox

MIN_QR_WIDTH = 100
MIN_QR_HEIGHT = 50

DEFAULT_QR_SIZE = 200
DEFAULT_QR_INSET = 220


@dataclass(frozen=True)
class GridLayout:
    cols: int
    rows: int
    scale: float
    count: int


FALLBACK_LAYOUT = GridLayout(cols=1, rows=1, scale=1.0, count=1)


def pack_grid(
    item_width: float,
    item_height: float,
    page_width: float,
    page_height: float,
    *,
    max_cols: int = 5,
    max_rows: int = 10,
    min_scale: float = 0.2,
) -> GridLayout:
    """Choose the grid that fits the most items on a page.

    Every (cols, rows) pair up to the bounds is tried; items are scaled
    uniformly so the whole grid fits the page. Pairs that would shrink items
    below ``min_scale`` are skipped. Ties on count go to the larger scale.
    When nothing qualifies the 1x1 layout at scale 1 is returned.
    """
    if min(item_width, item_height, page_width, page_height) <= 0:
        raise ValueError("Item and page sizes must be positive")

    best = FALLBACK_LAYOUT
    for cols in range(1, max_cols + 1):
        for rows in range(1, max_rows + 1):
            scale = min(page_width / (cols * item_width), page_height / (rows * item_height))
            if scale < min_scale:
                continue
            count = cols * rows
            if count > best.count or (count == best.count and scale > best.scale):
                best = GridLayout(cols=cols, rows=rows, scale=scale, count=count)
    return best


def round_half_up(value: float) -> int:
    # half-up, so 2.5 -> 3 like the editor does
    return int(math.floor(value + 0.5))


def scale_rect(
    rect: QrBox,
    from_size: tuple[int, int],
    to_size: tuple[int, int],
    *,
    min_width: int = MIN_QR_WIDTH,
    min_height: int = MIN_QR_HEIGHT,
) -> QrBox:
    """Map ``rect`` from one pixel space into another.

    A single uniform factor (the smaller of the two axis ratios) keeps the
    QR's aspect ratio. The result is floored at the minimum scannable size and
    clamped to lie inside ``to_size``: position first, then size.
    """
    from_w, from_h = from_size
    to_w, to_h = to_size
    if min(from_w, from_h, to_w, to_h) <= 0:
        raise ValueError("Pixel spaces must have a positive size")

    scale = min(to_w / from_w, to_h / from_h)

    x = round_half_up(rect.x * scale)
    y = round_half_up(rect.y * scale)
    width = max(min(min_width, to_w), round_half_up(rect.width * scale), 1)
    height = max(min(min_height, to_h), round_half_up(rect.height * scale), 1)

    x = max(0, min(x, to_w - width))
    y = max(0, min(y, to_h - height))
    width = min(width, to_w - x)
    height = min(height, to_h - y)
    return QrBox(x=x, y=y, width=width, height=height)


def check_rect_within(rect: QrBox, size: tuple[int, int]) -> None:
    width, height = size
    if rect.x + rect.width > width or rect.y + rect.height > height:
        raise QrBoxError(
            f"Barcode position exceeds template bounds. Template: {width}x{height}px, "
            f"Barcode: ({rect.x},{rect.y},{rect.width},{rect.height})",
            templateWidth=width,
            templateHeight=height,
            barcodeX=rect.x,
            barcodeY=rect.y,
            barcodeWidth=rect.width,
            barcodeHeight=rect.height,
        )


def default_rect(size: tuple[int, int]) -> QrBox:
    """Bottom-right placement used when a preview request carries no box."""
    width, height = size
    return QrBox(
        x=max(0, width - DEFAULT_QR_INSET),
        y=max(0, height - DEFAULT_QR_INSET),
        width=DEFAULT_QR_SIZE,
        height=DEFAULT_QR_SIZE,
    )
