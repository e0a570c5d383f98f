"""Recipient address lookup."""

from __future__ import annotations

import zlib
from typing import Optional

from sqlalchemy.orm import Session

from finjobs.common.models import UserContact

PLACEHOLDER_EMAIL_DOMAIN = "finance-app.com"


def resolve_address(db: Session, user_id: str, channel: str) -> Optional[str]:
    """Return the user's email or phone for ``channel``, if known."""
    contact = db.get(UserContact, user_id)
    if contact is None:
        return None
    if channel == "email":
        return contact.email or None
    if channel == "sms":
        return contact.phone or None
    return None


def placeholder_address(user_id: str, channel: str) -> str:
    """Address recorded for simulated deliveries to users without one."""
    if channel == "email":
        return f"{user_id}@{PLACEHOLDER_EMAIL_DOMAIN}"
    return f"+1555{zlib.crc32(user_id.encode()) % 10_000_000:07d}"
