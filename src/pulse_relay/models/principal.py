"""
Identity and conversation snapshots returned by the news-site API.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Principal(BaseModel):
    """Authenticated caller attached to a connection for its whole life."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: str = ""
    name: str = ""
    # The bearer token the connection was opened with; used to act on the
    # principal's behalf against the REST API. Never serialized.
    token: Optional[str] = Field(default=None, exclude=True, repr=False)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Conversation(BaseModel):
    id: str
    user_id: str
    status: str = "open"
    subject: Optional[str] = None
