import asyncio

from scan_server import ScanServer

from gap_scan_client.errors import ScanClientError
from gap_scan_client.models import PollingConfig, TransportConfig
from gap_scan_client.poller import ScanPoller
from gap_scan_client.scan_api import ScanApi
from gap_scan_client.transport import Transport


async def progress_changed(progress):
    stage = f" ({progress.stage})" if progress.stage else ""
    print(f"Scan {progress.scan_id} is {progress.status.value}{stage}")
    print(f"Elapsed time: {progress.elapsed_time:.2f}s")


async def main():
    PORT = 8000
    server = ScanServer(fail_polls=1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    api = ScanApi(Transport(f"http://localhost:{PORT}/api", TransportConfig(timeout=10.0)))
    poller = ScanPoller(
        api,
        PollingConfig(initial_interval=1.2, max_interval=3.0, timeout=60.0),
        on_progress=progress_changed,
    )

    try:
        result = await poller.submit(["remote work", "invoicing"], ["crypto"])
        print(f"Scan {result.scan_id} finished in {result.elapsed_time:.2f}s")
        print(f"Gaps: {result.result.get('gaps')}")
    except ScanClientError as e:
        print(f"Scan failed: {e}")
    finally:
        await poller.close()
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
