"""Pydantic schemas for authenticated identities and stored users."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Identity(BaseModel):
    """The verified identity bound to a connection.

    Immutable for the lifetime of the connection.

    Attributes:
        id: Opaque, stable user identifier.
        displayName: Name shown in rosters and on messages.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable user ID")
    displayName: str = Field(..., min_length=1, description="Display name shown in UI")


class UserRecord(BaseModel):
    """A row of the users table."""
    id: str
    username: str
    is_active: bool = True
    created_at: Optional[datetime] = None

    def to_identity(self) -> Identity:
        return Identity(id=self.id, displayName=self.username)
