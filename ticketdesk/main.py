import io
import logging

from fastapi import FastAPI, Body, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .settings import settings
from .db import init_db, get_session
from . import services, storage
from .errors import DocumentAssemblyError, QrBoxError, TicketRenderError
from .layout import pack_grid, round_half_up
from .rendering import (
    A4_SHEET_PX,
    assemble_document,
    check_batch_size,
    compose_sheets,
    load_template,
    png_bytes,
    render_batch,
    resolve_box,
)
from .schemas import EventPayload, QrBox

logging.basicConfig(
    level=settings.TICKETDESK_LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ticketdesk")

@app.on_event("startup")
def _startup() -> None:
    init_db()

# ---------------------------
# Helpers
# ---------------------------

def _event_or_404(session, event_id: int):
    event = services.get_event(session, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event

def _json_error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse({"error": error, **extra}, status_code=status_code)

def _parse_int(value: str | None) -> int | None:
    if value is None or not str(value).strip():
        return None
    try:
        return round_half_up(float(value))
    except (ValueError, OverflowError):
        raise QrBoxError(f"Not a number: {value!r}") from None

def _parse_box(x: str | None, y: str | None, width: str | None, height: str | None) -> QrBox | None:
    """QR box from form/query strings; None when any of the four is absent."""
    values = [_parse_int(v) for v in (x, y, width, height)]
    if any(v is None for v in values):
        return None
    bx, by, bw, bh = values
    if bx < 0 or by < 0 or bw <= 0 or bh <= 0:
        raise QrBoxError(
            "Invalid barcode position or size",
            barcodeX=bx, barcodeY=by, barcodeWidth=bw, barcodeHeight=bh,
        )
    return QrBox(x=bx, y=by, width=bw, height=bh)

def _parse_canvas(width: str | None, height: str | None) -> tuple[int, int] | None:
    cw, ch = _parse_int(width), _parse_int(height)
    if cw is None or ch is None:
        return None
    if cw <= 0 or ch <= 0:
        raise QrBoxError("Invalid editor canvas size", canvasWidth=cw, canvasHeight=ch)
    return cw, ch

def _load_event_design(session, event):
    path = services.find_ticket_design(session, event)
    if not path:
        raise ValueError("No ticket design uploaded")
    try:
        data = storage.read(path)
    except FileNotFoundError:
        raise ValueError(f"Ticket design file is missing: {path}") from None
    return load_template(data)

def _event_form(
    name: str = Form(""),
    slug: str = Form(""),
    type: str = Form(""),
    location: str = Form(""),
    description: str = Form(""),
    start_time: str = Form("", alias="startTime"),
    end_time: str = Form("", alias="endTime"),
    quota: str = Form(""),
    ticket_qr_position: str | None = Form(None, alias="ticketQrPosition"),
    selected_template_path: str | None = Form(None, alias="selectedTemplatePath"),
) -> EventPayload:
    return EventPayload(
        name=name,
        slug=slug,
        type=type,
        location=location,
        description=description,
        start_time=start_time,
        end_time=end_time,
        quota=quota,
        ticket_qr_position=ticket_qr_position,
        selected_template_path=selected_template_path,
    )

def _uploaded(file: UploadFile | None) -> services.UploadedFile | None:
    if file is None or not file.filename:
        return None
    return services.UploadedFile(
        filename=file.filename,
        content_type=file.content_type or "",
        data=file.file.read(),
    )

# ---------------------------
# Events
# ---------------------------

@app.post("/api/events", status_code=201)
def create_event(
    payload: EventPayload = Depends(_event_form),
    ticket_design: UploadFile | None = File(None, alias="ticketDesign"),
    session=Depends(get_session),
):
    try:
        event = services.create_event(session, payload, _uploaded(ticket_design))
    except QrBoxError as e:
        session.rollback()
        return JSONResponse({"message": str(e), **e.values}, status_code=400)
    except ValueError as e:
        session.rollback()
        return JSONResponse({"message": str(e)}, status_code=400)
    except Exception as e:
        session.rollback()
        logger.exception("Error creating event")
        return JSONResponse({"message": "Internal server error: " + str(e)}, status_code=500)
    return {"message": "Event created successfully", "id": event.id}

@app.get("/api/events/{event_id}")
def get_event(event_id: int, session=Depends(get_session)):
    event = _event_or_404(session, event_id)
    return services.get_event_detail(session, event)

@app.put("/api/events/{event_id}")
def update_event(
    event_id: int,
    payload: EventPayload = Depends(_event_form),
    ticket_design: UploadFile | None = File(None, alias="ticketDesign"),
    session=Depends(get_session),
):
    event = _event_or_404(session, event_id)
    logger.info("Updating event %s: name=%s slug=%s", event_id, payload.name, payload.slug)
    try:
        services.update_event(session, event, payload, _uploaded(ticket_design))
    except QrBoxError as e:
        session.rollback()
        return JSONResponse({"message": str(e), **e.values}, status_code=400)
    except ValueError as e:
        session.rollback()
        return JSONResponse({"message": str(e)}, status_code=400)
    except Exception as e:
        session.rollback()
        logger.exception("Error updating event %s", event_id)
        return JSONResponse({"message": "Internal server error: " + str(e)}, status_code=500)
    return {"message": "Event updated successfully"}

@app.delete("/api/events/{event_id}")
def delete_event(event_id: int, session=Depends(get_session)):
    event = _event_or_404(session, event_id)
    try:
        services.delete_event(session, event)
    except Exception:
        session.rollback()
        logger.exception("Error deleting event %s and related data", event_id)
        return JSONResponse({"message": "Internal server error"}, status_code=500)
    return {"message": "Event and all related data/files deleted successfully"}

@app.get("/api/events/{event_id}/tickets")
def list_event_tickets(event_id: int, session=Depends(get_session)):
    _event_or_404(session, event_id)
    return [
        {"id": t.id, "token": t.token, "is_verified": t.is_verified}
        for t in services.list_tickets(session, event_id)
    ]

@app.put("/api/events/{event_id}/ticket-qr-position")
def save_ticket_qr_position(event_id: int, body: dict = Body(...), session=Depends(get_session)):
    event = _event_or_404(session, event_id)
    try:
        box = QrBox.model_validate(body)
    except ValidationError as e:
        return _json_error(400, "Invalid QR position", detail=str(e))
    try:
        position = services.save_qr_position(session, event, box)
    except QrBoxError as e:
        session.rollback()
        return _json_error(400, str(e), **e.values)
    return {"ticket_qr_position": position}

# ---------------------------
# Offline tickets
# ---------------------------

@app.post("/api/events/{event_id}/generate-offline-tickets")
def generate_offline_tickets(
    event_id: int,
    template: UploadFile | None = File(None),
    barcode_x: str = Form(""),
    barcode_y: str = Form(""),
    barcode_width: str = Form(""),
    barcode_height: str = Form(""),
    canvas_width: str = Form(""),
    canvas_height: str = Form(""),
    session=Depends(get_session),
):
    event = _event_or_404(session, event_id)
    tokens = [t.token for t in services.list_tickets(session, event.id)]
    logger.info("Generating offline tickets for event %s: %d participants", event_id, len(tokens))
    try:
        if template is None or not services.is_image_file(template.filename, template.content_type):
            return _json_error(400, "Template file must be PNG or JPG")
        check_batch_size(len(tokens), settings.TICKETDESK_MAX_TICKETS_PER_BATCH)

        box = _parse_box(barcode_x, barcode_y, barcode_width, barcode_height)
        if box is None:
            return _json_error(400, "Invalid barcode position or size")
        canvas_size = _parse_canvas(canvas_width, canvas_height)

        tpl = load_template(template.file.read())
        final_box = resolve_box(tpl.size, box, canvas_size)
        logger.info("Template %dx%d, barcode %s -> %s", tpl.width, tpl.height, box, final_box)

        images = render_batch(
            tpl,
            tokens,
            final_box,
            register_url=settings.TICKETDESK_REGISTER_URL,
            workers=settings.TICKETDESK_RENDER_WORKERS,
        )
        content, kind = assemble_document(images, tokens)
    except QrBoxError as e:
        return _json_error(400, str(e), **e.values)
    except ValueError as e:
        return _json_error(400, str(e))
    except TicketRenderError as e:
        return _json_error(500, "Failed to generate QR/ticket", detail=str(e.cause), token=e.token)
    except DocumentAssemblyError as e:
        return _json_error(
            500,
            "Failed to generate both PDF and ZIP",
            pdf_error=str(e.pdf_error),
            zip_error=str(e.zip_error),
        )
    except Exception as e:
        logger.exception("Generate offline tickets error for event %s", event_id)
        return _json_error(500, "Failed to generate tickets", detail=str(e))

    media_type = "application/pdf" if kind == "pdf" else "application/zip"
    logger.info("Offline tickets for event %s ready as %s (%d bytes)", event_id, kind, len(content))
    return StreamingResponse(
        io.BytesIO(content),
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="offline-tickets-{event_id}.{kind}"',
            "Content-Length": str(len(content)),
        },
    )

def _png_response(data: bytes, filename: str) -> StreamingResponse:
    return StreamingResponse(
        io.BytesIO(data),
        media_type="image/png",
        headers={
            "Content-Disposition": f'inline; filename="{filename}"',
            "Content-Length": str(len(data)),
        },
    )

@app.get("/api/events/{event_id}/generate-offline-tickets")
def preview_ticket(
    event_id: int,
    barcode_x: str | None = Query(None),
    barcode_y: str | None = Query(None),
    barcode_width: str | None = Query(None),
    barcode_height: str | None = Query(None),
    canvas_width: str | None = Query(None),
    canvas_height: str | None = Query(None),
    session=Depends(get_session),
):
    event = _event_or_404(session, event_id)
    try:
        tickets = services.list_tickets(session, event.id)
        if not tickets:
            return _json_error(400, "No tickets to preview")
        tpl = _load_event_design(session, event)
        box = resolve_box(
            tpl.size,
            _parse_box(barcode_x, barcode_y, barcode_width, barcode_height),
            _parse_canvas(canvas_width, canvas_height),
        )
        images = render_batch(tpl, [tickets[0].token], box, register_url=settings.TICKETDESK_REGISTER_URL, workers=1)
        sheet = compose_sheets(images, A4_SHEET_PX, max_pages=1)[0]
    except QrBoxError as e:
        return _json_error(400, str(e), **e.values)
    except ValueError as e:
        return _json_error(400, str(e))
    except TicketRenderError as e:
        return _json_error(500, "Failed to generate preview", detail=str(e.cause), token=e.token)
    except Exception as e:
        logger.exception("Preview ticket error for event %s", event_id)
        return _json_error(500, "Failed to generate preview", detail=str(e))
    return _png_response(png_bytes(sheet), f"preview-ticket-{event_id}.png")

@app.get("/api/events/{event_id}/generate-offline-tickets/multi-preview")
def multi_preview(
    event_id: int,
    barcode_x: str | None = Query(None),
    barcode_y: str | None = Query(None),
    barcode_width: str | None = Query(None),
    barcode_height: str | None = Query(None),
    canvas_width: str | None = Query(None),
    canvas_height: str | None = Query(None),
    session=Depends(get_session),
):
    event = _event_or_404(session, event_id)
    try:
        tickets = services.list_tickets(session, event.id)
        if not tickets:
            return _json_error(400, "No tickets to preview")
        tpl = _load_event_design(session, event)
        box = resolve_box(
            tpl.size,
            _parse_box(barcode_x, barcode_y, barcode_width, barcode_height),
            _parse_canvas(canvas_width, canvas_height),
        )
        # one sheet only, so render just the tickets that fit on it
        grid = pack_grid(tpl.width, tpl.height, *A4_SHEET_PX)
        tokens = [t.token for t in tickets[: grid.count]]
        images = render_batch(
            tpl,
            tokens,
            box,
            register_url=settings.TICKETDESK_REGISTER_URL,
            workers=settings.TICKETDESK_RENDER_WORKERS,
        )
        sheet = compose_sheets(images, A4_SHEET_PX, max_pages=1)[0]
    except QrBoxError as e:
        return _json_error(400, str(e), **e.values)
    except ValueError as e:
        return _json_error(400, str(e))
    except TicketRenderError as e:
        return _json_error(500, "Failed to generate multi-ticket preview", detail=str(e.cause), token=e.token)
    except Exception as e:
        logger.exception("Multi-ticket preview error for event %s", event_id)
        return _json_error(500, "Failed to generate multi-ticket preview", detail=str(e))
    return _png_response(png_bytes(sheet), f"multi-preview-tickets-{event_id}.png")
