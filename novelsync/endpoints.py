"""
Endpoint descriptions for the reading backend.

An ``Endpoint`` is a plain description of a request (method, path, query,
JSON body); the authenticated client turns it into an httpx request.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel


@dataclass(frozen=True)
class Endpoint:
    """A single API call, independent of base URL and credentials."""
    method: str
    path: str
    params: dict[str, str] = field(default_factory=dict)
    body: Optional[Any] = None
    authenticated: bool = True

    def json_body(self) -> Optional[Any]:
        """Body as JSON-compatible data (pydantic models dumped by alias)."""
        if isinstance(self.body, BaseModel):
            return self.body.model_dump(mode="json", by_alias=True)
        return self.body


# =============================================================================
# Auth
# =============================================================================

def auth_login(email: str, password: str) -> Endpoint:
    return Endpoint(
        "POST", "/auth/login",
        body={"email": email, "password": password},
        authenticated=False,
    )


def auth_refresh(refresh_token: str) -> Endpoint:
    return Endpoint(
        "POST", "/auth/refresh",
        body={"refreshToken": refresh_token},
        authenticated=False,
    )


# =============================================================================
# Library (reading history)
# =============================================================================

def library_sync_history(body: BaseModel) -> Endpoint:
    return Endpoint("POST", "/v1/biblioteca/sync", body=body)


def library_history(limit: int, offset: int = 0) -> Endpoint:
    return Endpoint(
        "GET", "/v1/biblioteca/history",
        params={"limit": str(limit), "offset": str(offset)},
    )


def library_delete_progress(novel_id: str) -> Endpoint:
    return Endpoint("DELETE", f"/v1/biblioteca/history/{novel_id}")


def chapter_content(chapter_id: str) -> Endpoint:
    return Endpoint("GET", f"/v1/chapters/{chapter_id}/content")
