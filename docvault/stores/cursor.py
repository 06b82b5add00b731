"""
Opaque pagination cursors.

A cursor is the urlsafe-base64 form of ``"<created_at iso>|<id>"`` for the
last row of a page. Listings order by ``created_at DESC, id DESC``; the id
breaks ties between rows created in the same instant.
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from typing import Tuple

from docvault.engine.errors import ValidationError


def encode_cursor(created_at: datetime, row_id: str) -> str:
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    raw = f"{created_at.astimezone(timezone.utc).isoformat()}|{row_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    """Raises ValidationError for anything that was not produced by encode_cursor()."""
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        created_raw, row_id = raw.split("|", 1)
        created_at = datetime.fromisoformat(created_raw)
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValidationError("Malformed cursor", field="cursor") from e
    if not row_id:
        raise ValidationError("Malformed cursor", field="cursor")
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at, row_id
