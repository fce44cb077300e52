"""Ticket rendering and page layout.

One pipeline serves the single preview, the multi preview and the batch
download: decode the template, resolve the QR box into template pixels,
render one image per token, then lay the images out on A4 pages.
"""

from __future__ import annotations

import io
import logging
import zipfile
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import qrcode
from PIL import Image, ImageDraw, UnidentifiedImageError
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .errors import BatchSizeError, DocumentAssemblyError, TemplateError, TicketRenderError
from .layout import GridLayout, check_rect_within, default_rect, pack_grid, round_half_up, scale_rect
from .schemas import QrBox

logger = logging.getLogger(__name__)

# A4 at 300 dpi, for raster sheets
A4_SHEET_PX = (2480, 3508)

QR_BORDER_RATIO = 0.08

PDF_GUIDE_COLOR = (0.7, 0.7, 0.7)
PDF_GUIDE_WIDTH = 0.7
SHEET_GUIDE_COLOR = (120, 120, 120)
SHEET_GUIDE_WIDTH = 2


def load_template(data: bytes) -> Image.Image:
    """Decode PNG/JPEG bytes into an RGB image; transparency becomes white."""
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise TemplateError(f"Could not decode template image: {exc}") from exc

    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        image = image.convert("RGBA")
        flat = Image.new("RGB", image.size, "white")
        flat.paste(image, mask=image.getchannel("A"))
        return flat
    return image.convert("RGB")


def resolve_box(
    template_size: tuple[int, int],
    box: QrBox | None = None,
    canvas_size: tuple[int, int] | None = None,
) -> QrBox:
    """QR box in template pixels.

    ``box`` is in template pixels unless ``canvas_size`` names the editor
    canvas it was drawn on. Without a box the default bottom-right placement
    is used.
    """
    if box is None:
        return scale_rect(default_rect(template_size), template_size, template_size)
    space = canvas_size or template_size
    check_rect_within(box, space)
    return scale_rect(box, space, template_size)


def qr_payload(token: str, register_url: str) -> str:
    return f"{register_url}?token={token}"


def make_qr(payload: str, width: int, height: int) -> Image.Image:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=10,
        border=0,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    return img.resize((width, height), Image.Resampling.NEAREST)


def render_ticket(template: Image.Image, payload: str, box: QrBox) -> Image.Image:
    qr_img = make_qr(payload, box.width, box.height)
    border = round_half_up(max(box.width, box.height) * QR_BORDER_RATIO)
    framed = Image.new("RGB", (box.width + 2 * border, box.height + 2 * border), "white")
    framed.paste(qr_img, (border, border))

    ticket = template.copy()
    ticket.paste(framed, (box.x - border, box.y - border))
    return ticket


def render_batch(
    template: Image.Image,
    tokens: Sequence[str],
    box: QrBox,
    *,
    register_url: str,
    workers: int = 4,
) -> list[Image.Image]:
    """Render one ticket per token, in order. Any failure aborts the batch."""

    def render_one(token: str) -> Image.Image:
        try:
            return render_ticket(template, qr_payload(token, register_url), box)
        except Exception as exc:
            logger.error("QR/template error for token %s: %s", token, exc)
            raise TicketRenderError(token, exc) from exc

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        images = list(pool.map(render_one, tokens))
    logger.info("Rendered %d ticket images", len(images))
    return images


def check_batch_size(count: int, limit: int = 1000) -> None:
    if count == 0:
        raise BatchSizeError("No participants to generate tickets for")
    if count > limit:
        raise BatchSizeError(f"Too many tickets, maximum {limit} per batch")


def _grid_for(images: Sequence[Image.Image], page_size: tuple[float, float]) -> GridLayout:
    ticket_w, ticket_h = images[0].size
    return pack_grid(ticket_w, ticket_h, page_size[0], page_size[1])


def compose_pdf(images: Sequence[Image.Image], page_size: tuple[float, float] = A4) -> bytes:
    """Tickets on PDF pages, row-major from the top-left, with cutting guides."""
    if not images:
        raise ValueError("Nothing to lay out")
    page_w, page_h = page_size
    grid = _grid_for(images, page_size)
    ticket_w, ticket_h = images[0].size
    w = ticket_w * grid.scale
    h = ticket_h * grid.scale

    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=page_size)
    c.setTitle("Offline tickets")
    for idx, img in enumerate(images):
        slot = idx % grid.count
        if idx and slot == 0:
            c.showPage()
        row, col = divmod(slot, grid.cols)
        # (x, y) is bottom-left of the ticket
        x = col * w
        y = page_h - (row + 1) * h
        c.drawImage(ImageReader(img), x, y, width=w, height=h)
        c.setStrokeColorRGB(*PDF_GUIDE_COLOR)
        c.setLineWidth(PDF_GUIDE_WIDTH)
        c.rect(x, y, w, h, stroke=1, fill=0)
    c.save()
    return buf.getvalue()


def compose_sheets(
    images: Sequence[Image.Image],
    sheet_size: tuple[int, int] = A4_SHEET_PX,
    max_pages: int | None = None,
) -> list[Image.Image]:
    """Tickets on white raster sheets, row-major from the top-left."""
    if not images:
        raise ValueError("Nothing to lay out")
    grid = _grid_for(images, sheet_size)
    ticket_w, ticket_h = images[0].size
    w = round_half_up(ticket_w * grid.scale)
    h = round_half_up(ticket_h * grid.scale)

    sheets: list[Image.Image] = []
    for idx, img in enumerate(images):
        slot = idx % grid.count
        if slot == 0:
            if max_pages is not None and len(sheets) >= max_pages:
                break
            sheets.append(Image.new("RGB", sheet_size, "white"))
        row, col = divmod(slot, grid.cols)
        x = round_half_up(col * ticket_w * grid.scale)
        y = round_half_up(row * ticket_h * grid.scale)
        sheet = sheets[-1]
        sheet.paste(img.resize((w, h), Image.Resampling.LANCZOS), (x, y))
        ImageDraw.Draw(sheet).rectangle(
            [x, y, x + w - 1, y + h - 1], outline=SHEET_GUIDE_COLOR, width=SHEET_GUIDE_WIDTH
        )
    return sheets


def png_bytes(image: Image.Image) -> bytes:
    bio = io.BytesIO()
    image.save(bio, format="PNG")
    return bio.getvalue()


def build_archive(images: Sequence[Image.Image], tokens: Sequence[str]) -> bytes:
    archive = io.BytesIO()
    with zipfile.ZipFile(archive, "w", zipfile.ZIP_DEFLATED) as zipf:
        for token, img in zip(tokens, images):
            zipf.writestr(f"ticket-{token}.png", png_bytes(img))
    return archive.getvalue()


def assemble_document(images: Sequence[Image.Image], tokens: Sequence[str]) -> tuple[bytes, str]:
    """PDF of all tickets, or a ZIP of the raw images when the PDF fails.

    Returns ``(content, kind)`` where kind is ``"pdf"`` or ``"zip"``.
    """
    try:
        return compose_pdf(images), "pdf"
    except Exception as pdf_error:
        logger.error("PDF generation failed, falling back to ZIP: %s", pdf_error)
        try:
            return build_archive(images, tokens), "zip"
        except Exception as zip_error:
            logger.error("ZIP generation also failed: %s", zip_error)
            raise DocumentAssemblyError(pdf_error, zip_error) from zip_error
