"""Invite tokens that gate a participant joining a deal.

A token is single-use: the first principal other than the creator to
present it before expiry becomes the participant. Consumed tokens are
kept so that later attempts report already-exists instead of not-found.
"""

import secrets
from dataclasses import dataclass

from handshake.errors import AlreadyExists, DeadlineExceeded, InvalidArgument
from handshake.protocol import INVITE_TTL_SECONDS

TOKEN_BYTES = 32


@dataclass
class Invite:
    token: str
    deal_id: str
    creator_id: str
    expires_at: float
    consumed_by: str | None = None
    consumed_at: float | None = None

    @property
    def consumed(self) -> bool:
        return self.consumed_by is not None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "deal_id": self.deal_id,
            "expires_at": self.expires_at,
            "consumed_by": self.consumed_by,
            "consumed_at": self.consumed_at,
        }


def generate_token() -> str:
    """High-entropy URL-safe token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def invite_expiry(now: float, ttl: float = INVITE_TTL_SECONDS) -> float:
    return now + ttl


def check_acceptable(invite: Invite, principal_id: str, now: float) -> None:
    """Raise if ``principal_id`` cannot consume ``invite`` at server time ``now``."""
    if invite.consumed:
        raise AlreadyExists("Deal already has a participant")
    if principal_id == invite.creator_id:
        raise InvalidArgument("Cannot join your own deal")
    if invite.is_expired(now):
        raise DeadlineExceeded("Invite link has expired")
