"""Invite code generation for private trip groups.

Codes are 8-character alphanumeric (A-Z, 0-9), generated server-side
with a cryptographic random source and matched case-insensitively.
"""

from __future__ import annotations

import secrets
import string

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from uncharted.community.errors import CommunityFault
from uncharted.db.models import TripGroup

INVITE_CHARSET = string.ascii_uppercase + string.digits  # A-Z, 0-9
INVITE_LENGTH = 8
MAX_ATTEMPTS = 10


def generate_invite_code() -> str:
    """Generate a cryptographically random 8-character invite code."""
    return "".join(secrets.choice(INVITE_CHARSET) for _ in range(INVITE_LENGTH))


def normalize_invite_code(code: str) -> str:
    """Normalize an invite code to uppercase for case-insensitive lookup."""
    return code.strip().upper()


async def generate_unique_invite_code(db: AsyncSession) -> str:
    """Generate an invite code that no existing group uses.

    The unique constraint on trip_groups.invite_code still guards against a
    concurrent insert picking the same code between lookup and flush.
    """
    for _ in range(MAX_ATTEMPTS):
        code = generate_invite_code()
        existing = await db.execute(
            select(TripGroup.id).where(TripGroup.invite_code == code)
        )
        if existing.scalar_one_or_none() is None:
            return code
    msg = f"Failed to generate unique invite code after {MAX_ATTEMPTS} attempts"
    raise CommunityFault(msg)
