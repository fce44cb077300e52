#!/usr/bin/env python3
"""Generate printable offline tickets from a template image and a token list.

Usage examples:
  ticketdesk-sheets --template design.png --tokens tokens.txt --x 700 --y 400 --width 300 --height 150
  ticketdesk-sheets --template design.jpg --tokens tokens.txt --x 10 --y 10 --width 200 --height 200 \
      --format png --out sheets

Notes:
- tokens.txt holds one ticket token per line; blank lines and "#" comments are skipped.
- The QR box is given in template pixels unless --canvas-width/--canvas-height
  name the editor canvas it was measured on.
- Default output is an A4 PDF; --format zip writes one PNG per ticket,
  --format png writes one PNG per A4 sheet into the --out directory.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .errors import BatchSizeError, QrBoxError, TemplateError, TicketRenderError
from .rendering import (
    build_archive,
    check_batch_size,
    compose_pdf,
    compose_sheets,
    load_template,
    render_batch,
    resolve_box,
)
from .schemas import QrBox
from .settings import settings

logger = logging.getLogger(__name__)


def read_tokens(path: Path) -> list[str]:
    tokens = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        raw = raw.strip()
        if not raw or raw.startswith("#"):
            continue
        tokens.append(raw)
    return tokens


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Generate offline ticket sheets")
    ap.add_argument("--template", type=Path, required=True, help="Ticket background (PNG or JPG)")
    ap.add_argument("--tokens", type=Path, required=True, help="File with one ticket token per line")
    ap.add_argument("--x", type=int, required=True, help="QR box left edge")
    ap.add_argument("--y", type=int, required=True, help="QR box top edge")
    ap.add_argument("--width", type=int, required=True, help="QR box width")
    ap.add_argument("--height", type=int, required=True, help="QR box height")
    ap.add_argument("--canvas-width", type=int, default=None, help="Editor canvas width the box was measured on")
    ap.add_argument("--canvas-height", type=int, default=None, help="Editor canvas height the box was measured on")
    ap.add_argument("--register-url", type=str, default=settings.TICKETDESK_REGISTER_URL, help="Base URL encoded in the QR")
    ap.add_argument("--format", type=str, default="pdf", choices=["pdf", "zip", "png"], help="Output format")
    ap.add_argument("--out", type=Path, default=None, help="Output file (pdf/zip) or directory (png)")
    ap.add_argument("--workers", type=int, default=settings.TICKETDESK_RENDER_WORKERS, help="Render threads")

    args = ap.parse_args(argv)
    logging.basicConfig(level=settings.TICKETDESK_LOG_LEVEL, format="%(levelname)s %(message)s")

    if (args.canvas_width is None) != (args.canvas_height is None):
        raise SystemExit("--canvas-width and --canvas-height go together")

    tokens = read_tokens(args.tokens)
    try:
        check_batch_size(len(tokens), settings.TICKETDESK_MAX_TICKETS_PER_BATCH)
        template = load_template(args.template.read_bytes())
        box = QrBox(x=args.x, y=args.y, width=args.width, height=args.height)
        canvas_size = (args.canvas_width, args.canvas_height) if args.canvas_width is not None else None
        box = resolve_box(template.size, box, canvas_size)
        images = render_batch(template, tokens, box, register_url=args.register_url, workers=args.workers)
    except (BatchSizeError, QrBoxError, TemplateError, TicketRenderError) as e:
        raise SystemExit(str(e))
    except ValueError as e:
        # pydantic rejects negative/zero box values
        raise SystemExit(f"Invalid QR box: {e}")

    out = args.out or Path(f"offline-tickets.{args.format}" if args.format != "png" else "offline-tickets")
    if args.format == "pdf":
        out.write_bytes(compose_pdf(images))
    elif args.format == "zip":
        out.write_bytes(build_archive(images, tokens))
    else:
        out.mkdir(parents=True, exist_ok=True)
        for n, sheet in enumerate(compose_sheets(images), start=1):
            sheet.save(out / f"sheet-{n:03d}.png", format="PNG")
    print(f"Saved: {out}")


if __name__ == "__main__":
    main()
