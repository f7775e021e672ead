"""Lock and subscription tables used by chat-platform adapters."""

import time
from dataclasses import dataclass
from sqlmodel import SQLModel, Field


class ResourceLock(SQLModel, table=True):
    """Currently held (or stale, not yet swept) lock per resource."""

    __tablename__ = "resource_locks"

    resource_id: str = Field(primary_key=True, max_length=512)
    token: str = Field(max_length=64)
    expires_at: float = Field(index=True)  # Unix timestamp
    acquired_at: float = Field(default_factory=time.time)


class Subscription(SQLModel, table=True):
    """Presence of a row means the resource is subscribed."""

    __tablename__ = "subscriptions"

    resource_id: str = Field(primary_key=True, max_length=512)
    subscribed_at: float = Field(default_factory=time.time)


@dataclass(frozen=True)
class Lock:
    """Proof of ownership handed out by a successful acquire.

    The token is the only thing that authorises extend/release.
    """
    resource_id: str
    token: str
    expires_at: float

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "token": self.token,
            "expires_at": self.expires_at,
        }
