from __future__ import annotations

import io
import json
import zipfile

from PIL import Image
from sqlalchemy import func, select

from ticketdesk import models, rendering
from ticketdesk.settings import settings

from helpers import png_bytes

BOX = {"barcode_x": "250", "barcode_y": "150", "barcode_width": "100", "barcode_height": "100"}

EVENT_FORM = {
    "name": "Launch Party",
    "slug": "launch-party",
    "type": "offline",
    "location": "Hall A",
    "description": "Doors at six",
    "startTime": "2026-11-01T18:00",
    "endTime": "2026-11-01T22:00",
    "quota": "100",
}


def _template(size=(400, 300)):
    return {"template": ("design.png", png_bytes(size), "image/png")}


# ---------------------------
# Offline ticket generation
# ---------------------------

def test_generate_returns_pdf(client, make_event):
    event = make_event(tickets=3)
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=BOX, files=_template())
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/pdf"
    assert r.headers["content-disposition"] == f'attachment; filename="offline-tickets-{event.id}.pdf"'
    assert r.content.startswith(b"%PDF")


def test_generate_unknown_event_is_404(client):
    r = client.post("/api/events/999/generate-offline-tickets", data=BOX, files=_template())
    assert r.status_code == 404


def test_generate_without_participants(client, make_event):
    event = make_event(tickets=0)
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=BOX, files=_template())
    assert r.status_code == 400
    assert r.json()["error"] == "No participants to generate tickets for"


def test_generate_batch_limit(client, make_event, monkeypatch):
    monkeypatch.setattr(settings, "TICKETDESK_MAX_TICKETS_PER_BATCH", 3)
    at_limit = make_event(slug="at-limit", tickets=3)
    over_limit = make_event(slug="over-limit", tickets=4)

    r = client.post(f"/api/events/{at_limit.id}/generate-offline-tickets", data=BOX, files=_template())
    assert r.status_code == 200

    r = client.post(f"/api/events/{over_limit.id}/generate-offline-tickets", data=BOX, files=_template())
    assert r.status_code == 400
    assert r.json()["error"] == "Too many tickets, maximum 3 per batch"


def test_generate_rejects_non_image_template(client, make_event):
    event = make_event(tickets=1)
    files = {"template": ("notes.txt", b"hello", "text/plain")}
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=BOX, files=files)
    assert r.status_code == 400
    assert r.json()["error"] == "Template file must be PNG or JPG"


def test_generate_rejects_undecodable_template(client, make_event):
    event = make_event(tickets=1)
    files = {"template": ("design.png", b"not really a png", "image/png")}
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=BOX, files=files)
    assert r.status_code == 400
    assert "Could not decode template image" in r.json()["error"]


def test_generate_rejects_oversized_template(client, make_event, monkeypatch):
    event = make_event(tickets=1)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=BOX, files=_template())
    assert r.status_code == 400
    assert "Could not decode template image" in r.json()["error"]


def test_generate_echoes_out_of_bounds_box(client, make_event):
    event = make_event(tickets=1)
    data = {**BOX, "barcode_x": "350"}
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=data, files=_template())
    assert r.status_code == 400
    body = r.json()
    assert body["error"].startswith("Barcode position exceeds template bounds")
    assert body["templateWidth"] == 400
    assert body["templateHeight"] == 300
    assert body["barcodeX"] == 350


def test_generate_rejects_negative_box(client, make_event):
    event = make_event(tickets=1)
    data = {**BOX, "barcode_width": "0"}
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=data, files=_template())
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid barcode position or size"
    assert r.json()["barcodeWidth"] == 0


def test_generate_requires_box(client, make_event):
    event = make_event(tickets=1)
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data={}, files=_template())
    assert r.status_code == 400


def test_generate_scales_box_from_editor_canvas(client, make_event, monkeypatch):
    event = make_event(tickets=1)
    boxes = []
    real_render_batch = rendering.render_batch

    def spy(template, tokens, box, **kwargs):
        boxes.append(box)
        return real_render_batch(template, tokens, box, **kwargs)

    monkeypatch.setattr("ticketdesk.main.render_batch", spy)
    data = {
        "barcode_x": "100", "barcode_y": "75", "barcode_width": "50", "barcode_height": "25",
        "canvas_width": "200", "canvas_height": "150",
    }
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=data, files=_template())
    assert r.status_code == 200
    assert boxes[0].model_dump() == {"x": 200, "y": 150, "width": 100, "height": 50}


def test_generate_falls_back_to_zip(client, make_event, monkeypatch):
    event = make_event(tickets=2)

    def broken_pdf(images, page_size=None):
        raise RuntimeError("pdf backend down")

    monkeypatch.setattr(rendering, "compose_pdf", broken_pdf)
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=BOX, files=_template())
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/zip"
    assert r.headers["content-disposition"] == f'attachment; filename="offline-tickets-{event.id}.zip"'
    names = zipfile.ZipFile(io.BytesIO(r.content)).namelist()
    assert names == ["ticket-launch-party-tok-0000.png", "ticket-launch-party-tok-0001.png"]


def test_generate_reports_both_assembly_errors(client, make_event, monkeypatch):
    event = make_event(tickets=1)

    def broken_pdf(images, page_size=None):
        raise RuntimeError("pdf backend down")

    def broken_zip(images, tokens):
        raise OSError("zip backend down")

    monkeypatch.setattr(rendering, "compose_pdf", broken_pdf)
    monkeypatch.setattr(rendering, "build_archive", broken_zip)
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=BOX, files=_template())
    assert r.status_code == 500
    body = r.json()
    assert body["pdf_error"] == "pdf backend down"
    assert body["zip_error"] == "zip backend down"


def test_generate_reports_failing_token(client, make_event, monkeypatch):
    event = make_event(tickets=3)
    real_make_qr = rendering.make_qr

    def flaky_make_qr(payload, width, height):
        if payload.endswith("launch-party-tok-0001"):
            raise RuntimeError("encoder exploded")
        return real_make_qr(payload, width, height)

    monkeypatch.setattr(rendering, "make_qr", flaky_make_qr)
    r = client.post(f"/api/events/{event.id}/generate-offline-tickets", data=BOX, files=_template())
    assert r.status_code == 500
    body = r.json()
    assert body["error"] == "Failed to generate QR/ticket"
    assert body["token"] == "launch-party-tok-0001"


# ---------------------------
# Previews
# ---------------------------

def test_preview_returns_a4_png(client, make_event):
    event = make_event(tickets=2)
    r = client.get(f"/api/events/{event.id}/generate-offline-tickets", params=BOX)
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert "inline" in r.headers["content-disposition"]
    img = Image.open(io.BytesIO(r.content))
    assert img.size == rendering.A4_SHEET_PX


def test_preview_without_box_uses_default(client, make_event):
    event = make_event(tickets=1)
    r = client.get(f"/api/events/{event.id}/generate-offline-tickets")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"


def test_preview_needs_design(client, make_event):
    event = make_event(tickets=1, design_size=None)
    r = client.get(f"/api/events/{event.id}/generate-offline-tickets", params=BOX)
    assert r.status_code == 400
    assert r.json()["error"] == "No ticket design uploaded"


def test_preview_needs_tickets(client, make_event):
    event = make_event(tickets=0)
    r = client.get(f"/api/events/{event.id}/generate-offline-tickets/multi-preview", params=BOX)
    assert r.status_code == 400
    assert r.json()["error"] == "No tickets to preview"


def test_multi_preview_returns_one_sheet(client, make_event):
    event = make_event(tickets=4)
    r = client.get(f"/api/events/{event.id}/generate-offline-tickets/multi-preview", params=BOX)
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert Image.open(io.BytesIO(r.content)).size == rendering.A4_SHEET_PX


def test_multi_preview_rejects_box_outside_design(client, make_event):
    event = make_event(tickets=1)
    r = client.get(
        f"/api/events/{event.id}/generate-offline-tickets/multi-preview",
        params={**BOX, "barcode_y": "250"},
    )
    assert r.status_code == 400
    assert r.json()["barcodeY"] == 250


# ---------------------------
# Event resource
# ---------------------------

def test_create_and_get_event(client):
    r = client.post("/api/events", data=EVENT_FORM)
    assert r.status_code == 201
    event_id = r.json()["id"]

    r = client.get(f"/api/events/{event_id}")
    assert r.status_code == 200
    event = r.json()["event"]
    assert event["slug"] == "launch-party"
    assert event["quota"] == 100
    assert event["total_tickets"] == 0
    assert r.json()["participants"] == []


def test_get_event_stats_and_participants(client, make_event, db):
    event = make_event(tickets=3)
    tickets = db.execute(select(models.Ticket).where(models.Ticket.event_id == event.id)).scalars().all()
    tickets[0].is_verified = True
    db.add(models.Participant(ticket_id=tickets[0].id, name="Ada", email="ada@example.test"))
    db.commit()

    body = client.get(f"/api/events/{event.id}").json()
    assert body["event"]["total_tickets"] == 3
    assert body["event"]["verified_tickets"] == 1
    assert body["event"]["available_tickets"] == 2
    assert body["participants"][0]["name"] == "Ada"
    assert body["participants"][0]["token"] == tickets[0].token
    assert body["participants"][0]["is_verified"] is True


def test_get_missing_event(client):
    assert client.get("/api/events/42").status_code == 404


def test_update_requires_fields(client, make_event):
    event = make_event()
    form = {**EVENT_FORM, "location": ""}
    r = client.put(f"/api/events/{event.id}", data=form)
    assert r.status_code == 400
    assert "location" in r.json()["message"]


def test_update_rejects_taken_slug(client, make_event):
    make_event(slug="taken")
    event = make_event(slug="mine")
    r = client.put(f"/api/events/{event.id}", data={**EVENT_FORM, "slug": "taken"})
    assert r.status_code == 400
    assert r.json()["message"] == "Slug already exists. Please use a different slug."


def test_update_keeps_own_slug(client, make_event):
    event = make_event(slug="launch-party")
    r = client.put(f"/api/events/{event.id}", data=EVENT_FORM)
    assert r.status_code == 200


def test_update_stores_upload_and_qr_position(client, make_event, db, public_dir):
    event = make_event(design_size=None)
    position = {"x": 12, "y": 34, "width": 150, "height": 90}
    form = {**EVENT_FORM, "ticketQrPosition": json.dumps(position)}
    files = {"ticketDesign": ("My Design!.PNG", png_bytes((640, 320)), "image/png")}
    r = client.put(f"/api/events/{event.id}", data=form, files=files)
    assert r.status_code == 200

    db.expire_all()
    stored = db.get(models.Event, event.id)
    assert stored.ticket_design.startswith("/uploads/ticket-")
    assert stored.ticket_design.endswith("-my-design-.png")
    assert (public_dir / stored.ticket_design.lstrip("/")).exists()
    assert stored.ticket_design_type == "image/png"
    assert stored.ticket_qr_position == position

    audit = db.execute(
        select(models.FileUpload).where(models.FileUpload.related_id == event.id)
    ).scalar_one()
    assert audit.upload_type == "ticket_design"
    assert audit.original_name == "My Design!.PNG"
    assert audit.file_path == stored.ticket_design

    # preview now picks up the fresh design
    r = client.get(f"/api/events/{event.id}/generate-offline-tickets")
    assert r.status_code == 200


def test_update_with_selected_template(client, make_event, db):
    source = make_event(slug="source")
    target = make_event(slug="target", design_size=None)
    form = {**EVENT_FORM, "slug": "target", "selectedTemplatePath": source.ticket_design}
    r = client.put(f"/api/events/{target.id}", data=form)
    assert r.status_code == 200
    db.expire_all()
    stored = db.get(models.Event, target.id)
    assert stored.ticket_design == "/uploads/source-design.png"
    assert stored.ticket_design_type == "image/png"


def test_update_rejects_non_image_upload(client, make_event):
    event = make_event()
    files = {"ticketDesign": ("design.gif", b"GIF89a", "image/gif")}
    r = client.put(f"/api/events/{event.id}", data=EVENT_FORM, files=files)
    assert r.status_code == 400


def test_qr_position_round_trip(client, make_event):
    event = make_event()
    position = {"x": 100, "y": 50, "width": 200, "height": 150}
    r = client.put(f"/api/events/{event.id}/ticket-qr-position", json=position)
    assert r.status_code == 200
    assert client.get(f"/api/events/{event.id}").json()["event"]["ticket_qr_position"] == position


def test_qr_position_rejects_bad_box(client, make_event):
    event = make_event()
    r = client.put(f"/api/events/{event.id}/ticket-qr-position", json={"x": -1, "y": 0, "width": 10, "height": 10})
    assert r.status_code == 400


def test_qr_position_must_fit_design(client, make_event):
    event = make_event()
    r = client.put(
        f"/api/events/{event.id}/ticket-qr-position",
        json={"x": 5000, "y": 5000, "width": 100, "height": 100},
    )
    assert r.status_code == 400
    body = r.json()
    assert body["error"].startswith("Barcode position exceeds template bounds")
    assert (body["templateWidth"], body["templateHeight"]) == (400, 300)
    assert body["barcodeX"] == 5000
    assert client.get(f"/api/events/{event.id}").json()["event"]["ticket_qr_position"] is None


def test_qr_position_without_design_is_stored(client, make_event):
    event = make_event(design_size=None)
    position = {"x": 5000, "y": 5000, "width": 100, "height": 100}
    r = client.put(f"/api/events/{event.id}/ticket-qr-position", json=position)
    assert r.status_code == 200


def test_update_rejects_qr_position_outside_design(client, make_event, db):
    event = make_event()
    position = {"x": 350, "y": 0, "width": 100, "height": 100}
    r = client.put(f"/api/events/{event.id}", data={**EVENT_FORM, "ticketQrPosition": json.dumps(position)})
    assert r.status_code == 400
    assert r.json()["barcodeX"] == 350
    assert r.json()["templateWidth"] == 400
    db.expire_all()
    assert db.get(models.Event, event.id).ticket_qr_position is None


def test_update_checks_qr_position_against_new_upload(client, make_event):
    event = make_event()
    position = {"x": 500, "y": 0, "width": 100, "height": 100}
    form = {**EVENT_FORM, "ticketQrPosition": json.dumps(position)}
    files = {"ticketDesign": ("wide.png", png_bytes((800, 300)), "image/png")}
    r = client.put(f"/api/events/{event.id}", data=form, files=files)
    assert r.status_code == 200


def test_create_rejects_qr_position_outside_selected_design(client, make_event):
    source = make_event(slug="source")
    form = {
        **EVENT_FORM,
        "selectedTemplatePath": source.ticket_design,
        "ticketQrPosition": json.dumps({"x": 0, "y": 250, "width": 100, "height": 100}),
    }
    r = client.post("/api/events", data=form)
    assert r.status_code == 400
    assert r.json()["barcodeY"] == 250
    assert r.json()["templateHeight"] == 300


def test_list_tickets(client, make_event):
    event = make_event(tickets=2)
    r = client.get(f"/api/events/{event.id}/tickets")
    assert [t["token"] for t in r.json()] == ["launch-party-tok-0000", "launch-party-tok-0001"]


def test_delete_cascades_and_tolerates_missing_file(client, make_event, db, public_dir):
    event = make_event(tickets=2)
    other = make_event(slug="other", tickets=1)
    event_id, other_id = event.id, other.id
    tickets = db.execute(select(models.Ticket).where(models.Ticket.event_id == event_id)).scalars().all()

    (public_dir / "tickets").mkdir()
    (public_dir / "tickets" / "qr-0.png").write_bytes(b"qr")
    tickets[0].qr_code_url = "/tickets/qr-0.png"
    tickets[1].qr_code_url = "/tickets/qr-gone.png"  # never written
    participant = models.Participant(ticket_id=tickets[0].id, name="Ada", email="ada@example.test")
    db.add(participant)
    db.flush()
    (public_dir / "certificates").mkdir()
    (public_dir / "certificates" / "ada.pdf").write_bytes(b"%PDF")
    db.add(models.Certificate(participant_id=participant.id, path="/certificates/ada.pdf"))
    db.add(models.CertificateTemplate(event_id=event_id, template_path="/uploads/cert.png"))
    db.commit()

    r = client.delete(f"/api/events/{event_id}")
    assert r.status_code == 200

    assert not (public_dir / "uploads" / "launch-party-design.png").exists()
    assert not (public_dir / "tickets" / "qr-0.png").exists()
    assert not (public_dir / "certificates" / "ada.pdf").exists()
    assert (public_dir / "uploads" / "other-design.png").exists()

    db.expire_all()
    assert db.scalar(select(func.count()).select_from(models.Event).where(models.Event.id == event_id)) == 0
    assert db.scalar(select(func.count()).select_from(models.Participant)) == 0
    assert db.scalar(select(func.count()).select_from(models.Certificate)) == 0
    assert db.scalar(select(func.count()).select_from(models.CertificateTemplate)) == 0
    assert db.execute(select(models.Ticket.event_id)).scalars().all() == [other_id]
    assert db.execute(select(models.FileUpload.related_id)).scalars().all() == [other_id]


def test_delete_keeps_design_reused_by_other_event(client, make_event, public_dir):
    owner = make_event(slug="a-event")
    design = public_dir / "uploads" / "a-event-design.png"
    form = {**EVENT_FORM, "slug": "b-event", "selectedTemplatePath": owner.ticket_design}
    r = client.post("/api/events", data=form)
    assert r.status_code == 201
    reuser_id = r.json()["id"]

    r = client.delete(f"/api/events/{reuser_id}")
    assert r.status_code == 200
    assert design.exists()
    assert client.get(f"/api/events/{owner.id}/generate-offline-tickets").status_code == 200


def test_delete_keeps_own_design_while_another_event_uses_it(client, make_event, public_dir):
    owner = make_event(slug="a-event")
    owner_id = owner.id
    design = public_dir / "uploads" / "a-event-design.png"
    form = {**EVENT_FORM, "slug": "b-event", "selectedTemplatePath": owner.ticket_design}
    reuser_id = client.post("/api/events", data=form).json()["id"]

    assert client.delete(f"/api/events/{owner_id}").status_code == 200
    assert design.exists()
    assert client.get(f"/api/events/{reuser_id}").json()["event"]["ticket_design"] == "/uploads/a-event-design.png"


def test_delete_missing_event(client):
    assert client.delete("/api/events/7").status_code == 404
