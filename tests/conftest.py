from __future__ import annotations

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ticketdesk import models
from ticketdesk.db import Base, _sqlite_foreign_keys, get_session
from ticketdesk.main import app
from ticketdesk.settings import settings

from helpers import png_bytes


@pytest.fixture
def public_dir(tmp_path, monkeypatch):
    d = tmp_path / "public"
    d.mkdir()
    monkeypatch.setattr(settings, "TICKETDESK_PUBLIC_DIR", str(d))
    return d


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    event.listen(engine, "connect", _sqlite_foreign_keys)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory, public_dir):
    def _override():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_session] = _override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_event(db, public_dir):
    """Create an event with ``tickets`` tickets and, optionally, an uploaded design."""

    def _make(slug="launch-party", tickets=3, design_size=(400, 300)):
        event = models.Event(
            slug=slug,
            name="Launch Party",
            type="offline",
            location="Hall A",
            description="",
            start_time=datetime(2026, 11, 1, 18, 0),
            end_time=datetime(2026, 11, 1, 22, 0),
            quota=100,
        )
        db.add(event)
        db.flush()
        for n in range(tickets):
            db.add(models.Ticket(event_id=event.id, token=f"{slug}-tok-{n:04d}"))
        if design_size is not None:
            uploads = public_dir / "uploads"
            uploads.mkdir(exist_ok=True)
            (uploads / f"{slug}-design.png").write_bytes(png_bytes(design_size))
            path = f"/uploads/{slug}-design.png"
            event.ticket_design = path
            db.add(models.FileUpload(
                filename=f"{slug}-design.png",
                original_name="design.png",
                file_path=path,
                file_size=1,
                file_type="image/png",
                upload_type="ticket_design",
                related_id=event.id,
            ))
        db.commit()
        return event

    return _make
