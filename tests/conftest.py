"""
Shared fixtures: settings, stores, JWT minting and an in-process backend.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Optional

import httpx
import pytest
from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from jose import jwt

from novelsync.config import ClientSettings
from novelsync.storage import LocalStore

TEST_SECRET = "test-secret"


def make_token(expires_in: float = 3600, **claims) -> str:
    """Mint an HS256 JWT that expires ``expires_in`` seconds from now."""
    now = int(time.time())
    payload = {
        "id": "user-1",
        "email": "reader@example.com",
        "roles": ["user"],
        "iat": now,
        "exp": now + int(expires_in),
        "jti": uuid.uuid4().hex,
    }
    payload.update(claims)
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


def envelope(data, ok: bool = True, message: Optional[str] = None) -> dict:
    return {"ok": ok, "message": message, "data": data}


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryBackup:
    """In-memory tracker backup slot."""

    def __init__(self, milliseconds: int = 0, novel_id: Optional[str] = None):
        self.milliseconds = milliseconds
        self.novel_id = novel_id
        self.saves = 0

    def load_backup(self):
        return self.milliseconds, self.novel_id

    def save_backup(self, milliseconds: int, novel_id: str) -> None:
        self.milliseconds = milliseconds
        self.novel_id = novel_id
        self.saves += 1

    def clear_backup(self) -> None:
        self.milliseconds = 0
        self.novel_id = None


# =============================================================================
# Fake Backend
# =============================================================================

class FakeLibrary:
    """Server-side state of the fake backend."""

    def __init__(self):
        self.access_token = make_token()
        self.refresh_token = make_token(expires_in=30 * 86400)
        self.password = "secret"
        self.history: dict[str, dict] = {}
        self.calls: dict[str, int] = {}
        self.page_requests: list[tuple[int, int]] = []
        self.rotate_refresh_token = True

    def hit(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def count(self, name: str) -> int:
        return self.calls.get(name, 0)

    def issue_tokens(self) -> dict:
        self.access_token = make_token()
        data = {"accessToken": self.access_token}
        if self.rotate_refresh_token:
            self.refresh_token = make_token(expires_in=30 * 86400)
            data["refreshToken"] = self.refresh_token
        return data

    def add_remote(
        self,
        novel_id: str,
        chapter: int = 1,
        chapter_id: Optional[str] = "ch-1",
        last_read_ms: int = 1_000,
        total_reading_time: int = 0,
        **extra,
    ) -> None:
        self.history[novel_id] = {
            "novelId": novel_id,
            "currentChapter": chapter,
            "currentChapterId": chapter_id,
            "currentPosition": 0,
            "totalChaptersRead": chapter,
            "lastReadTime": last_read_ms,
            "totalReadingTime": total_reading_time,
            **extra,
        }

    def remote_record(self, item: dict) -> dict:
        record = dict(item)
        record["lastReadTime"] = datetime.fromtimestamp(
            item["lastReadTime"] / 1000, tz=timezone.utc
        ).isoformat()
        record["totalReadingTime"] = str(item["totalReadingTime"])
        return record


def build_backend(library: FakeLibrary) -> FastAPI:
    """FastAPI app imitating the reading backend routes the client uses."""
    app = FastAPI()
    router = APIRouter(prefix="/api")

    def authorized(authorization: Optional[str]) -> bool:
        return authorization == f"Bearer {library.access_token}"

    def unauthorized() -> JSONResponse:
        return JSONResponse(status_code=401, content={"message": "Invalid token"})

    @router.post("/auth/login")
    async def login(request: Request):
        library.hit("login")
        body = await request.json()
        if body.get("password") != library.password:
            return JSONResponse(status_code=401, content={"message": "Invalid credentials"})
        data = library.issue_tokens()
        data["user"] = {"id": "user-1", "email": body.get("email"), "username": "reader"}
        return envelope(data)

    @router.post("/auth/refresh")
    async def refresh(request: Request):
        library.hit("refresh")
        body = await request.json()
        if body.get("refreshToken") != library.refresh_token:
            return JSONResponse(status_code=401, content={"message": "Invalid refresh token"})
        return envelope(library.issue_tokens())

    @router.post("/v1/biblioteca/sync")
    async def sync_history(request: Request, authorization: Optional[str] = Header(default=None)):
        library.hit("sync")
        if not authorized(authorization):
            return unauthorized()
        body = await request.json()
        for entry in body["history"]:
            current = library.history.get(entry["novelId"])
            if current is None:
                library.history[entry["novelId"]] = dict(entry)
                continue
            current["totalReadingTime"] += entry["totalReadingTime"]
            if entry["lastReadTime"] > current["lastReadTime"]:
                for key, value in entry.items():
                    if key != "totalReadingTime":
                        current[key] = value
        synced = len(body["history"])
        return envelope({"synced": synced, "failed": 0, "details": []})

    @router.get("/v1/biblioteca/history")
    async def history(limit: int, offset: int = 0, authorization: Optional[str] = Header(default=None)):
        library.hit("history")
        if not authorized(authorization):
            return unauthorized()
        library.page_requests.append((limit, offset))
        items = list(library.history.values())[offset:offset + limit]
        return envelope([library.remote_record(item) for item in items])

    @router.delete("/v1/biblioteca/history/{novel_id}")
    async def delete_history(novel_id: str, authorization: Optional[str] = Header(default=None)):
        library.hit("delete")
        if not authorized(authorization):
            return unauthorized()
        library.history.pop(novel_id, None)
        return envelope(None)

    app.include_router(router)
    return app


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings isolated to a temp data dir, with refresh rate limiting off."""
    return ClientSettings(
        api_base_url="http://testserver/api",
        data_dir=tmp_path,
        refresh_min_interval_seconds=0,
        max_retry_attempts=3,
    )


@pytest.fixture
def store(tmp_path):
    """LocalStore backed by a temp database."""
    return LocalStore(tmp_path / "test.db")


@pytest.fixture
def library():
    return FakeLibrary()


@pytest.fixture
def backend_transport(library):
    return httpx.ASGITransport(app=build_backend(library))


@pytest.fixture
def clock():
    return FakeClock()
