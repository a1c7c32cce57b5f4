# Ensure tests import the package from this checkout first, installed or not.
import os
import sys
from typing import Callable, List

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from safe_proxy.app_proxy import forwarder  # noqa: E402
from safe_proxy.config import ProxyConfig  # noqa: E402
from safe_proxy.target import TargetDescriptor  # noqa: E402


def make_config(**overrides) -> ProxyConfig:
    values = dict(
        allowlist=frozenset({"example.com"}),
        default_target=TargetDescriptor(scheme="https", hostname="default.example.com"),
        rate_max=0,
        idle_timeout=5.0,
        static_dir="",
    )
    values.update(overrides)
    return ProxyConfig(**values)


@pytest.fixture
def config_factory() -> Callable[..., ProxyConfig]:
    return make_config


@pytest.fixture
def proxy_config() -> ProxyConfig:
    return make_config()


class UpstreamRecorder:
    """In-process upstream: records what the proxy sent and answers via ``responder``."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.bodies: List[bytes] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200,
            headers={"content-type": "text/plain", "server": "nginx/1.25"},
            content=b"upstream ok",
        )

    async def handle(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        self.requests.append(request)
        self.bodies.append(body)
        return self.responder(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def upstream(monkeypatch) -> UpstreamRecorder:
    """Route the forwarder's upstream HTTP traffic to an UpstreamRecorder."""
    recorder = UpstreamRecorder()
    real_client = forwarder._client

    def client_with_mock_transport(config):
        return real_client(config, transport=httpx.MockTransport(recorder.handle))

    monkeypatch.setattr(forwarder, "_client", client_with_mock_transport)
    return recorder
