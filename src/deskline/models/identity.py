"""
Identity, profile and role models.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class Identity(BaseModel):
    """The authenticated principal. Role is looked up separately."""
    model_config = ConfigDict(frozen=True)

    id: str
    email: str = ""
    display_name: str = ""


class Profile(BaseModel):
    """profiles row"""
    id: str
    email: str = ""
    full_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        return self.email.split("@")[0] if self.email else self.id

    def to_identity(self) -> Identity:
        return Identity(id=self.id, email=self.email, display_name=self.display_name)


class RoleRow(BaseModel):
    """user_roles row"""
    user_id: str
    role: Role
