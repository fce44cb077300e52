from __future__ import annotations
from pydantic import BaseModel, Field

class QrBox(BaseModel):
    """Where the QR is drawn on a ticket, in pixels of some raster space."""
    x: int = Field(ge=0)
    y: int = Field(ge=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)

class EventPayload(BaseModel):
    # strings as posted by the form; services.validate_event_payload checks them
    name: str = ""
    slug: str = ""
    type: str = ""
    location: str = ""
    description: str = ""
    start_time: str = ""
    end_time: str = ""
    quota: str = ""
    ticket_qr_position: str | None = None
    selected_template_path: str | None = None
