from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError
from sqlalchemy import select, delete, func
from sqlalchemy.orm import Session

from . import models, storage
from .layout import check_rect_within
from .schemas import EventPayload, QrBox

logger = logging.getLogger(__name__)

TICKET_DESIGN = "ticket_design"

IMAGE_TYPES = ("image/png", "image/jpeg")
IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg")

# ---------------------------
# Validation helpers
# ---------------------------

@dataclass
class UploadedFile:
    filename: str
    content_type: str
    data: bytes


def is_image_file(filename: str | None, content_type: str | None) -> bool:
    if content_type in IMAGE_TYPES:
        return True
    return (filename or "").lower().endswith(IMAGE_SUFFIXES)


def _parse_datetime(s: str) -> datetime:
    try:
        return datetime.fromisoformat(s.strip())
    except ValueError:
        raise ValueError(f"Invalid date/time: {s!r}") from None


def parse_qr_position(raw: str | None) -> Optional[dict]:
    if raw is None or not raw.strip():
        return None
    return QrBox.model_validate_json(raw).model_dump()


def validate_event_payload(payload: EventPayload) -> dict:
    """Check required fields and convert them to column values."""
    required = {
        "name": payload.name,
        "slug": payload.slug,
        "type": payload.type,
        "location": payload.location,
        "startTime": payload.start_time,
        "endTime": payload.end_time,
        "quota": payload.quota,
    }
    missing = [k for k, v in required.items() if not (v or "").strip()]
    if missing:
        raise ValueError("Missing required fields: " + ", ".join(missing))

    try:
        quota = int(payload.quota)
    except ValueError:
        raise ValueError("Quota must be a number") from None
    if quota <= 0:
        raise ValueError("Quota must be positive")

    start_time = _parse_datetime(payload.start_time)
    end_time = _parse_datetime(payload.end_time)
    if end_time < start_time:
        raise ValueError("End time must not be before start time")

    return {
        "name": payload.name.strip(),
        "slug": payload.slug.strip(),
        "type": payload.type.strip(),
        "location": payload.location.strip(),
        "description": payload.description or "",
        "start_time": start_time,
        "end_time": end_time,
        "quota": quota,
    }


def slug_taken(session: Session, slug: str, exclude_id: int | None = None) -> bool:
    q = select(models.Event.id).where(models.Event.slug == slug)
    if exclude_id is not None:
        q = q.where(models.Event.id != exclude_id)
    return session.execute(q).first() is not None

# ---------------------------
# Events
# ---------------------------

def get_event(session: Session, event_id: int) -> Optional[models.Event]:
    return session.get(models.Event, event_id)


def list_tickets(session: Session, event_id: int) -> list[models.Ticket]:
    return session.execute(
        select(models.Ticket).where(models.Ticket.event_id == event_id).order_by(models.Ticket.id.asc())
    ).scalars().all()


def get_event_detail(session: Session, event: models.Event) -> dict:
    total = session.scalar(
        select(func.count(models.Ticket.id)).where(models.Ticket.event_id == event.id)
    ) or 0
    verified = session.scalar(
        select(func.count(models.Ticket.id)).where(
            models.Ticket.event_id == event.id, models.Ticket.is_verified.is_(True)
        )
    ) or 0
    rows = session.execute(
        select(models.Participant, models.Ticket)
        .join(models.Ticket, models.Participant.ticket_id == models.Ticket.id)
        .where(models.Ticket.event_id == event.id)
        .order_by(models.Participant.registered_at.desc())
    ).all()
    return {
        "event": {
            "id": event.id,
            "slug": event.slug,
            "name": event.name,
            "type": event.type,
            "location": event.location,
            "description": event.description,
            "start_time": event.start_time.isoformat(),
            "end_time": event.end_time.isoformat(),
            "quota": event.quota,
            "ticket_design": event.ticket_design,
            "ticket_design_size": event.ticket_design_size,
            "ticket_design_type": event.ticket_design_type,
            "ticket_qr_position": event.ticket_qr_position,
            "total_tickets": total,
            "verified_tickets": verified,
            "available_tickets": total - verified,
        },
        "participants": [
            {
                "id": p.id,
                "name": p.name,
                "email": p.email,
                "phone": p.phone,
                "registered_at": p.registered_at.isoformat(),
                "token": t.token,
                "is_verified": t.is_verified,
            }
            for p, t in rows
        ],
    }


def _is_selectable(path: str | None) -> bool:
    return bool(path) and path.startswith(storage.UPLOADS_PREFIX) and ".." not in path


def _image_size(data: bytes) -> tuple[int, int] | None:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError):
        return None


def design_size(path: str | None) -> tuple[int, int] | None:
    """Pixel size of a stored design; None when there is no readable image."""
    if not path:
        return None
    try:
        data = storage.read(path)
    except (OSError, ValueError):
        return None
    return _image_size(data)


def _incoming_design_size(
    session: Session,
    event: models.Event | None,
    selected_path: str | None,
    upload: UploadedFile | None,
) -> tuple[int, int] | None:
    # the design the event ends up with; same precedence as _attach_design
    if _is_selectable(selected_path):
        return design_size(selected_path)
    if upload is not None and upload.data and is_image_file(upload.filename, upload.content_type):
        return _image_size(upload.data)
    if event is None:
        return None
    return design_size(find_ticket_design(session, event))


def check_qr_position(position: dict | None, size: tuple[int, int] | None) -> None:
    """Raise QrBoxError when a stored QR position does not fit the design."""
    if position is None or size is None:
        return
    check_rect_within(QrBox(**position), size)


def _attach_design(
    session: Session,
    event: models.Event,
    selected_path: str | None,
    upload: UploadedFile | None,
) -> None:
    if _is_selectable(selected_path):
        event.ticket_design = selected_path
        record = session.execute(
            select(models.FileUpload)
            .where(models.FileUpload.file_path == selected_path)
            .order_by(models.FileUpload.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if record:
            event.ticket_design_size = record.file_size
            event.ticket_design_type = record.file_type
        return

    if upload is None or not upload.data:
        return
    if not is_image_file(upload.filename, upload.content_type):
        raise ValueError("Ticket design must be PNG or JPG")

    filename, public_path = storage.save_upload(upload.data, upload.filename)
    event.ticket_design = public_path
    event.ticket_design_size = len(upload.data)
    event.ticket_design_type = upload.content_type
    session.add(models.FileUpload(
        filename=filename,
        original_name=upload.filename,
        file_path=public_path,
        file_size=len(upload.data),
        file_type=upload.content_type,
        upload_type=TICKET_DESIGN,
        related_id=event.id,
    ))
    logger.info("New ticket design for event %s saved at %s", event.id, public_path)


def create_event(session: Session, payload: EventPayload, upload: UploadedFile | None = None) -> models.Event:
    values = validate_event_payload(payload)
    if slug_taken(session, values["slug"]):
        raise ValueError("Slug already exists. Please use a different slug.")
    qr_position = parse_qr_position(payload.ticket_qr_position)
    check_qr_position(
        qr_position,
        _incoming_design_size(session, None, payload.selected_template_path, upload),
    )

    event = models.Event(**values, ticket_qr_position=qr_position)
    session.add(event)
    session.flush()
    _attach_design(session, event, payload.selected_template_path, upload)
    session.commit()
    logger.info("Created event %s (%s)", event.id, event.slug)
    return event


def update_event(
    session: Session,
    event: models.Event,
    payload: EventPayload,
    upload: UploadedFile | None = None,
) -> models.Event:
    values = validate_event_payload(payload)
    if slug_taken(session, values["slug"], exclude_id=event.id):
        raise ValueError("Slug already exists. Please use a different slug.")
    qr_position = parse_qr_position(payload.ticket_qr_position)
    check_qr_position(
        qr_position,
        _incoming_design_size(session, event, payload.selected_template_path, upload),
    )

    for key, value in values.items():
        setattr(event, key, value)
    if qr_position is not None:
        event.ticket_qr_position = qr_position
    event.updated_at = datetime.utcnow()
    _attach_design(session, event, payload.selected_template_path, upload)
    session.commit()
    logger.info("Updated event %s", event.id)
    return event


def save_qr_position(session: Session, event: models.Event, box: QrBox) -> dict:
    position = box.model_dump()
    check_qr_position(position, design_size(find_ticket_design(session, event)))
    event.ticket_qr_position = position
    event.updated_at = datetime.utcnow()
    session.commit()
    return event.ticket_qr_position


def find_ticket_design(session: Session, event: models.Event) -> Optional[str]:
    """Latest uploaded ticket design of the event, else the one set on the event."""
    path = session.execute(
        select(models.FileUpload.file_path)
        .where(
            models.FileUpload.upload_type == TICKET_DESIGN,
            models.FileUpload.related_id == event.id,
        )
        .order_by(models.FileUpload.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    return path or event.ticket_design


def delete_event(session: Session, event: models.Event) -> None:
    """Delete an event, its dependent rows and their files.

    Files go first and are best effort: a missing file is logged and skipped.
    Only designs uploaded for this event are removed, and not while another
    event still uses them.
    Rows are then removed child to parent.
    """
    event_id = event.id
    ticket_ids = select(models.Ticket.id).where(models.Ticket.event_id == event_id)
    participant_ids = select(models.Participant.id).where(models.Participant.ticket_id.in_(ticket_ids))

    design_paths = session.execute(
        select(models.FileUpload.file_path).where(
            models.FileUpload.upload_type == TICKET_DESIGN,
            models.FileUpload.related_id == event_id,
        )
    ).scalars().all()
    qr_paths = session.execute(
        select(models.Ticket.qr_code_url).where(
            models.Ticket.event_id == event_id, models.Ticket.qr_code_url.is_not(None)
        )
    ).scalars().all()
    certificate_paths = session.execute(
        select(models.Certificate.path).where(
            models.Certificate.participant_id.in_(participant_ids),
            models.Certificate.path.is_not(None),
        )
    ).scalars().all()

    # event.ticket_design may point at another event's upload; only own uploads go
    if design_paths:
        in_use = set(session.execute(
            select(models.Event.ticket_design).where(
                models.Event.id != event_id,
                models.Event.ticket_design.in_(design_paths),
            )
        ).scalars())
        for path in in_use:
            logger.info("Keeping %s, still used by another event", path)
        design_paths = [p for p in design_paths if p not in in_use]

    paths = dict.fromkeys([*design_paths, *qr_paths, *certificate_paths])
    for path in paths:
        if path:
            storage.delete(path)

    session.execute(delete(models.FileUpload).where(models.FileUpload.related_id == event_id))
    session.execute(delete(models.CertificateTemplate).where(models.CertificateTemplate.event_id == event_id))
    session.execute(delete(models.Certificate).where(models.Certificate.participant_id.in_(participant_ids)))
    session.execute(delete(models.Participant).where(models.Participant.ticket_id.in_(ticket_ids)))
    session.execute(delete(models.Ticket).where(models.Ticket.event_id == event_id))
    session.execute(delete(models.Event).where(models.Event.id == event_id))
    session.commit()
    logger.info("Event %s and all related data/files deleted", event_id)
