"""
Profiles and roles REST API.
"""

from __future__ import annotations

from typing import Optional

from deskline.models.identity import Profile, Role, RoleRow
from deskline.transport.http import HttpClient


class DirectoryAPI:
    def __init__(self, http: HttpClient):
        self._http = http

    async def list_profiles(self) -> list[Profile]:
        """Every profile the viewer may see."""
        rows = await self._http.get("/rest/v1/profiles", {"select": "id,email,full_name"})
        return [Profile.model_validate(r) for r in rows or []]

    async def get_role(self, user_id: str) -> Optional[Role]:
        """Single user_roles row, or None when the user has no row."""
        rows = await self._http.get(
            "/rest/v1/user_roles",
            {"select": "user_id,role", "user_id": f"eq.{user_id}", "limit": 1},
        )
        if not rows:
            return None
        return RoleRow.model_validate(rows[0]).role
