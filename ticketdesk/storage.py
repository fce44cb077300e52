from __future__ import annotations

import logging
import re
import secrets
import string
import time
from pathlib import Path

from .settings import settings

logger = logging.getLogger(__name__)

UPLOADS_PREFIX = "/uploads/"

_ALPHABET = string.ascii_lowercase + string.digits


def public_dir() -> Path:
    return Path(settings.TICKETDESK_PUBLIC_DIR)


def resolve(public_path: str) -> Path:
    """Filesystem path of a stored public path such as "/uploads/x.png"."""
    relative = public_path.lstrip("/")
    if ".." in Path(relative).parts:
        raise ValueError(f"Invalid stored path: {public_path}")
    return public_dir() / relative


def make_upload_filename(original_name: str, prefix: str = "ticket") -> str:
    """e.g. "ticket-1700000000000-a1b2c3-my-design.png" """
    name = Path(original_name or "upload")
    base = re.sub(r"[^a-zA-Z0-9.-]", "-", name.stem).lower() or "upload"
    random_part = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{prefix}-{int(time.time() * 1000)}-{random_part}-{base}{name.suffix.lower()}"


def save_upload(data: bytes, original_name: str, prefix: str = "ticket") -> tuple[str, str]:
    """Write an upload under the public uploads dir. Returns (filename, public path)."""
    filename = make_upload_filename(original_name, prefix)
    target_dir = public_dir() / UPLOADS_PREFIX.strip("/")
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / filename
    target.write_bytes(data)
    logger.info("Saved upload %s (%d bytes)", target, len(data))
    return filename, f"{UPLOADS_PREFIX}{filename}"


def read(public_path: str) -> bytes:
    return resolve(public_path).read_bytes()


def delete(public_path: str) -> bool:
    """Remove a stored file. Missing or undeletable files are logged, not raised."""
    try:
        path = resolve(public_path)
        path.unlink()
    except FileNotFoundError:
        logger.warning("File already missing, skipped: %s", public_path)
        return False
    except (OSError, ValueError) as exc:
        logger.error("Error deleting file %s: %s", public_path, exc)
        return False
    logger.info("Deleted file %s", path)
    return True
