"""Shared fixtures and fakes for the Bubble Timer Backend tests."""

from datetime import UTC, datetime

import pytest

from bubble_timer.config import Settings
from bubble_timer.models import Connection, Timer
from bubble_timer.server import build_services
from bubble_timer.storage import MemoryTable, Tables

# ============================================================
# FAKES
# ============================================================


class FailingTable(MemoryTable):
    """MemoryTable whose listed methods raise, as an unreachable backend would."""

    def __init__(self, table: MemoryTable):
        super().__init__(table.name, table.key, table.indexes)
        self.fail_on: set[str] = set()

    def _check(self, method: str):
        if method in self.fail_on:
            raise RuntimeError(f"{self.name}.{method} unavailable")

    async def get(self, key):
        self._check("get")
        return await super().get(key)

    async def put(self, item):
        self._check("put")
        return await super().put(item)

    async def update(self, key, values, remove=()):
        self._check("update")
        return await super().update(key, values, remove)

    async def delete(self, key):
        self._check("delete")
        return await super().delete(key)

    async def query(self, partition_value):
        self._check("query")
        return await super().query(partition_value)

    async def query_index(self, index_name, value):
        self._check("query_index")
        return await super().query_index(index_name, value)


class FakeWebSocket:
    """Records every frame sent to it. With `broken`, sends fail like a closed socket."""

    def __init__(self, broken: bool = False):
        self.sent: list[dict] = []
        self.broken = broken
        self.close_code: int | None = None

    async def send_json(self, data: dict):
        if self.broken:
            raise RuntimeError("Cannot call send once a close message has been sent")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None):
        self.close_code = code


class RecordingPushGateway:
    def __init__(self):
        self.sent: list[dict] = []
        self.failing_tokens: set[str] = set()

    async def send(self, token: str, title: str, body: str, data: dict[str, str]) -> str:
        if token in self.failing_tokens:
            raise RuntimeError("Requested entity was not found")
        self.sent.append({"token": token, "title": title, "body": body, "data": data})
        return f"projects/test/messages/{len(self.sent)}"


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# ============================================================
# FIXTURES
# ============================================================


@pytest.fixture
def settings():
    return Settings(push_enabled=False, cors_origin="http://localhost:4000")


@pytest.fixture
def tables(settings):
    memory = Tables.in_memory(settings)
    return Tables(
        timers=FailingTable(memory.timers),
        shared_timers=FailingTable(memory.shared_timers),
        user_connections=FailingTable(memory.user_connections),
        device_tokens=FailingTable(memory.device_tokens),
    )


@pytest.fixture
def gateway():
    return RecordingPushGateway()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 5, 1, 14, 30, tzinfo=UTC))


@pytest.fixture
def services(settings, tables, gateway, clock):
    return build_services(settings, tables=tables, push_gateway=gateway, clock=clock)


@pytest.fixture
def connect(services):
    """Attach a fake socket for (user, device) and record it in the directory."""

    async def _connect(user_id: str, device_id: str, broken: bool = False) -> FakeWebSocket:
        connection_id = f"conn-{user_id}-{device_id}"
        websocket = FakeWebSocket(broken=broken)
        services.sockets.register(connection_id, websocket)
        await services.connections.update_connection(
            Connection(user_id=user_id, device_id=device_id, connection_id=connection_id)
        )
        return websocket

    return _connect


def make_timer(timer_id: str = "t1", user_id: str = "alice", **overrides) -> Timer:
    fields = {
        "id": timer_id,
        "user_id": user_id,
        "name": "Pasta",
        "total_duration": "PT10M",
        "remaining_duration": "PT10M",
    }
    fields.update(overrides)
    return Timer(**fields)
