"""Shared fixtures for alertrelay tests."""

import asyncio
import json
from collections import Counter
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import httpx
import pytest
import pytest_asyncio

from alertrelay.alerts import Alert
from alertrelay.alerts import AlertStatus
from alertrelay.engine import AlertEngine


class WebhookRecorder:
    """Records webhook payloads received through an httpx.MockTransport."""

    def __init__(self) -> None:
        self.payloads: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.statuses: dict[str, int] = {}  # by URL path
        self.delay = 0.0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.payloads.append(json.loads(request.content))
        status_code = self.statuses.get(request.url.path, self.status_code)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    async def slow_handler(self, request: httpx.Request) -> httpx.Response:
        response = self.handler(request)
        await asyncio.sleep(self.delay)
        return response

    def for_group(self, fragment: str) -> list[dict]:
        return [p for p in self.payloads if fragment in p["groupKey"]]

    def hits(self) -> Counter:
        return Counter(request.url.path for request in self.requests)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def recorder():
    return WebhookRecorder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def http_client(recorder):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder.handler))
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def slow_client(recorder):
    """Client whose webhook responses take ``recorder.delay`` seconds."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder.slow_handler))
    yield client
    await client.aclose()


@pytest.fixture
def make_alert():
    """Factory for Alert objects."""

    def _make(name: str = "InstanceDown", status: AlertStatus = AlertStatus.FIRING, **labels) -> Alert:
        now = datetime.now(timezone.utc)
        return Alert(
            labels={"alertname": name, **labels},
            annotations={"summary": f"{name} is happening"},
            starts_at=now,
            ends_at=now if status is AlertStatus.RESOLVED else None,
            status=status,
            updated_at=now,
        )

    return _make


@pytest.fixture
def make_config():
    """Factory for a routing configuration with short timers and one webhook receiver."""

    def _make(
        group_by=("alertname",),
        group_wait="100ms",
        group_interval="100ms",
        repeat_interval="1h",
        routes=None,
        inhibit_rules=None,
        send_resolved=True,
        resolve_timeout="5m",
        **root_extra,
    ) -> dict:
        return {
            "global": {"resolve_timeout": resolve_timeout},
            "route": {
                "receiver": "ops",
                "group_by": list(group_by),
                "group_wait": group_wait,
                "group_interval": group_interval,
                "repeat_interval": repeat_interval,
                "routes": routes or [],
                **root_extra,
            },
            "receivers": [
                {
                    "name": "ops",
                    "webhook_configs": [{"url": "http://hooks.test/ops", "send_resolved": send_resolved}],
                },
                {
                    "name": "db",
                    "webhook_configs": [{"url": "http://hooks.test/db"}],
                },
            ],
            "inhibit_rules": inhibit_rules or [],
        }

    return _make


@pytest_asyncio.fixture
async def engine_factory(http_client):
    """Factory for started engines wired to the recording webhook client."""
    created = []

    async def _make(config: dict, **kwargs) -> AlertEngine:
        kwargs.setdefault("maintenance_interval", timedelta(hours=1))
        kwargs.setdefault("backoff_base", 0.01)
        kwargs.setdefault("backoff_max", 0.02)
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("client", http_client)
        engine = AlertEngine(config, **kwargs)
        await engine.initialize()
        created.append(engine)
        return engine

    yield _make
    for engine in created:
        await engine.close()
