"""Shared test fixtures and configuration for backend tests."""
import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from app.auth.identity import IdentityResolver
from app.config import AppConfig, JWTSecrets, RealtimeSettings, Secrets, StoreSettings, set_config
from app.realtime.coordinator import RoomSessionCoordinator
from app.realtime.store import DuckDBRoomStore

TEST_SECRET = "test-secret-key"


class FakeWebSocket:
    """Stands in for a Starlette WebSocket; records every frame written to it."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed_with: Optional[int] = None
        self.fail = fail
        self.delay = delay

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.sent if frame["type"] == event_type]


async def settle(coordinator: RoomSessionCoordinator, *conns) -> None:
    """Let writers, delivery receipts and the events they trigger run to completion."""
    for _ in range(3):
        await coordinator.tasks.wait()
        for conn in conns:
            if not conn.closed:
                await conn.flush()


@pytest.fixture(autouse=True)
def reset_config():
    """Never leak a configuration installed by one test into the next."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def fast_settings():
    """Realtime settings with timers short enough for tests."""
    return RealtimeSettings(
        typing_timeout_seconds=0.2,
        presence_grace_seconds=0.1,
        membership_cache_ttl_seconds=30.0,
        backlog_size=50,
    )


@pytest.fixture
def store():
    """An in-memory DuckDB room store, separate from the singleton."""
    DuckDBRoomStore.reset_instance()
    room_store = DuckDBRoomStore(db_path=":memory:")
    yield room_store
    room_store._close()


@pytest_asyncio.fixture
async def coordinator(store, fast_settings):
    coord = RoomSessionCoordinator(store, fast_settings)
    yield coord
    await coord.close()


@pytest.fixture
def app_config(fast_settings):
    return AppConfig(
        realtime=fast_settings,
        store=StoreSettings(path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


@pytest.fixture
def resolver():
    return IdentityResolver(TEST_SECRET)


@pytest.fixture
def token_for(resolver):
    """Mint a bearer token for a user: ``token_for("alice", "Alice")``."""

    def _issue(user_id: str, user_name: Optional[str] = None) -> str:
        return resolver.issue_token(user_id, user_name)

    return _issue
