from typing import AsyncGenerator, Tuple

import pytest
import pytest_asyncio
from scan_server import ScanServer

from gap_scan_client.models import PollingConfig, TransportConfig
from gap_scan_client.poller import ScanPoller
from gap_scan_client.scan_api import ScanApi
from gap_scan_client.transport import Transport

BASE_URL_TEMPLATE = "http://localhost:{}/api"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[Tuple[ScanServer, str], None]:
    """Start and yield a mock ScanServer and its base URL on a random port."""
    port = unused_tcp_port_factory()
    server_instance = ScanServer()
    await server_instance.start(port=port)
    try:
        yield server_instance, BASE_URL_TEMPLATE.format(port)
    finally:
        await server_instance.stop()


@pytest.fixture
def transport_config() -> TransportConfig:
    """Short timeouts and retry delays so failure paths run quickly."""
    return TransportConfig(timeout=2.0, max_retries=3, retry_delay=0.01)


@pytest.fixture
def polling_config() -> PollingConfig:
    return PollingConfig(
        initial_interval=0.05,
        max_interval=0.2,
        backoff_factor=1.15,
        timeout=5.0,
    )


@pytest.fixture
def make_poller(server, transport_config, polling_config):
    """Build a ScanPoller wired to the mock server."""
    _, base_url = server

    def _make(on_progress=None, config=None) -> ScanPoller:
        api = ScanApi(Transport(base_url, transport_config))
        return ScanPoller(api, config or polling_config, on_progress=on_progress)

    return _make
