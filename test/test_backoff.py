import asyncio
import itertools

import pytest

from gap_scan_client.cancellation import CancellationToken
from gap_scan_client.models import ScanStatus, ScanStatusSnapshot
from gap_scan_client.poller import backoff_intervals
from gap_scan_client.scan_api import ScanApi
from gap_scan_client.settings import Settings


def test_backoff_sequence():
    intervals = list(itertools.islice(backoff_intervals(1.2, 1.15, 3.0), 20))

    assert intervals[:3] == pytest.approx([1.2, 1.38, 1.587])
    assert all(a <= b for a, b in zip(intervals, intervals[1:]))
    assert max(intervals) == 3.0
    assert intervals[-1] == 3.0


def test_backoff_initial_above_cap():
    intervals = list(itertools.islice(backoff_intervals(5.0, 1.15, 3.0), 3))
    assert intervals == [3.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_token_interrupts_sleep():
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, token.cancel)

    started = loop.time()
    completed = await token.sleep(5.0)

    assert completed is False
    assert loop.time() - started < 1.0
    assert token.cancelled


@pytest.mark.asyncio
async def test_token_sleep_completes():
    assert await CancellationToken().sleep(0.01) is True


def test_snapshot_reads_wire_field_names():
    snapshot = ScanStatusSnapshot.model_validate(
        {"id": "scan-1", "status": "FAILED", "result": None, "errorMessage": "boom"}
    )

    assert snapshot.status == ScanStatus.failed
    assert snapshot.error_message == "boom"
    assert snapshot.progress == 100
    assert ScanStatusSnapshot(id="x", status=ScanStatus.queued).progress is None


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("GAP_SCAN_API_BASE", "http://scans.example.com/api/")

    api = ScanApi.from_settings(Settings())

    assert api.transport.base_url == "http://scans.example.com/api"
