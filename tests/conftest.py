import pathlib
import sys
import threading

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.main import create_app
from app.services import build_services
from app.settings import CoreSettings
from app.webhooks import DeliveryTimeoutError, TransportResponse


class FakeTransport:
    """Records outbound deliveries; ``script`` holds status codes (or exceptions) to return in order."""

    def __init__(self, script: list | None = None, default_status: int = 200):
        self.script = list(script or [])
        self.default_status = default_status
        self.calls: list[dict] = []
        self._lock = threading.Lock()

    def __call__(self, *, url: str, body: bytes, headers: dict, timeout_s: float) -> TransportResponse:
        with self._lock:
            self.calls.append({"url": url, "body": body, "headers": dict(headers), "timeout_s": timeout_s})
            step = self.script.pop(0) if self.script else self.default_status
        if isinstance(step, BaseException):
            raise step
        if step == "timeout":
            raise DeliveryTimeoutError("request timeout")
        return TransportResponse(status_code=int(step), body="ok" if int(step) < 300 else "error")


@pytest.fixture
def settings() -> CoreSettings:
    return CoreSettings(
        webhook_timeout_s=1.0,
        webhook_max_workers=4,
        webhook_retry_delays_s=(0.0, 0.0, 0.0),
    )


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def services(settings: CoreSettings, transport: FakeTransport):
    core = build_services(settings, transport=transport)
    yield core
    core.close()


@pytest.fixture
def client(services) -> TestClient:
    return TestClient(create_app(services))
