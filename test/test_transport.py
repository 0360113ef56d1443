import asyncio

import pytest
from pydantic import ValidationError

from gap_scan_client.cancellation import CancellationToken
from gap_scan_client.errors import (
    HttpStatusError,
    InvalidResponse,
    NetworkFailure,
    RequestAborted,
    RequestTimeout,
)
from gap_scan_client.models import RequestDescriptor, TransportConfig
from gap_scan_client.transport import Transport


def count_requests(server_instance, method, path):
    return sum(1 for m, p in server_instance.requests if m == method and p == path)


@pytest.mark.asyncio
async def test_post_and_get_json(server, transport_config):
    """JSON bodies are sent and decoded."""
    server_instance, base_url = server
    transport = Transport(base_url + "/", transport_config)

    started = await transport.post("/scans", {"tags": ["A"], "excludedTerms": []})
    assert started == {"scanId": "scan-1"}

    status = await transport.get("scans/scan-1")
    assert status["id"] == "scan-1"
    assert status["status"] == "QUEUED"


@pytest.mark.asyncio
async def test_text_body_passed_through(server, transport_config):
    _, base_url = server
    transport = Transport(base_url, transport_config)

    assert await transport.get("/health") == "ok"


@pytest.mark.asyncio
async def test_malformed_json_is_not_retried(server, transport_config):
    server_instance, base_url = server
    transport = Transport(base_url, transport_config)

    with pytest.raises(InvalidResponse):
        await transport.get("/broken")
    assert count_requests(server_instance, "GET", "/api/broken") == 1


@pytest.mark.asyncio
async def test_client_error_uses_error_field_and_is_not_retried(server, transport_config):
    server_instance, base_url = server
    transport = Transport(base_url, transport_config)

    with pytest.raises(HttpStatusError) as exc_info:
        await transport.get("/scans/missing")

    assert exc_info.value.status == 404
    assert str(exc_info.value) == "Scan missing not found"
    assert exc_info.value.body == {"error": "Scan missing not found"}
    assert not exc_info.value.retryable
    assert count_requests(server_instance, "GET", "/api/scans/missing") == 1


@pytest.mark.asyncio
async def test_generic_message_without_error_field(server, transport_config):
    _, base_url = server
    transport = Transport(base_url, transport_config)

    with pytest.raises(HttpStatusError) as exc_info:
        await transport.get("/no-such-route")

    assert exc_info.value.status == 404
    assert str(exc_info.value) == "HTTP 404"


@pytest.mark.asyncio
async def test_server_errors_are_retried_transparently(server, transport_config):
    server_instance, base_url = server
    server_instance.fail_polls = 2
    transport = Transport(base_url, transport_config)

    await transport.post("/scans", {"tags": ["A"]})
    status = await transport.get("/scans/scan-1")

    assert status["status"] == "QUEUED"
    assert count_requests(server_instance, "GET", "/api/scans/scan-1") == 3


@pytest.mark.asyncio
async def test_server_errors_surface_once_retries_run_out(server, transport_config):
    server_instance, base_url = server
    server_instance.fail_polls = 10
    transport = Transport(base_url, transport_config)

    await transport.post("/scans", {"tags": ["A"]})
    with pytest.raises(HttpStatusError) as exc_info:
        await transport.get("/scans/scan-1")

    assert exc_info.value.status == 503
    assert exc_info.value.retryable
    assert str(exc_info.value) == "Scan engine temporarily unavailable"
    assert count_requests(server_instance, "GET", "/api/scans/scan-1") == 4


@pytest.mark.asyncio
async def test_timeout_is_terminal(server, transport_config):
    server_instance, base_url = server
    server_instance.status_delay = 0.5
    transport = Transport(base_url, transport_config)

    await transport.post("/scans", {"tags": ["A"]})
    with pytest.raises(RequestTimeout) as exc_info:
        await transport.get("/scans/scan-1", timeout=0.1)

    assert exc_info.value.timeout == 0.1
    assert count_requests(server_instance, "GET", "/api/scans/scan-1") == 1


@pytest.mark.asyncio
async def test_network_failure_after_retries(unused_tcp_port_factory):
    port = unused_tcp_port_factory()
    transport = Transport(
        f"http://localhost:{port}/api",
        TransportConfig(timeout=1.0, max_retries=2, retry_delay=0.01),
    )

    with pytest.raises(NetworkFailure) as exc_info:
        await transport.get("/health")
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_abort_before_request(server, transport_config):
    server_instance, base_url = server
    transport = Transport(base_url, transport_config)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(RequestAborted):
        await transport.request(RequestDescriptor(method="GET", path="/health", token=token))
    assert server_instance.requests == []


@pytest.mark.asyncio
async def test_abort_during_request(server, transport_config):
    server_instance, base_url = server
    server_instance.status_delay = 0.5
    transport = Transport(base_url, transport_config)
    token = CancellationToken()

    await transport.post("/scans", {"tags": ["A"]})
    task = asyncio.create_task(transport.get("/scans/scan-1", token=token))
    await asyncio.sleep(0.1)
    token.cancel()

    with pytest.raises(RequestAborted):
        await asyncio.wait_for(task, timeout=0.3)


@pytest.mark.asyncio
async def test_abort_during_retry_backoff(server):
    server_instance, base_url = server
    server_instance.fail_polls = 10
    transport = Transport(base_url, TransportConfig(timeout=1.0, retry_delay=5.0))
    token = CancellationToken()

    await transport.post("/scans", {"tags": ["A"]})
    task = asyncio.create_task(transport.get("/scans/scan-1", token=token))
    await asyncio.sleep(0.2)
    token.cancel()

    with pytest.raises(RequestAborted):
        await asyncio.wait_for(task, timeout=0.5)
    assert count_requests(server_instance, "GET", "/api/scans/scan-1") == 1


def test_retry_delay_doubles():
    transport = Transport("http://localhost")
    assert [transport._calculate_delay(n) for n in range(3)] == [1.0, 2.0, 4.0]


def test_request_descriptor_is_immutable():
    descriptor = RequestDescriptor(method="GET", path="/scans/1")
    with pytest.raises(ValidationError):
        descriptor.path = "/scans/2"


@pytest.mark.asyncio
async def test_undecodable_body_is_invalid_response(server, transport_config):
    server_instance, base_url = server
    transport = Transport(base_url, transport_config)

    with pytest.raises(InvalidResponse):
        await transport.get("/garbled")
    assert count_requests(server_instance, "GET", "/api/garbled") == 1
