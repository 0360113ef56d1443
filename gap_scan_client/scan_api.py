from typing import List, Optional

import aiohttp
from loguru import logger
from pydantic import ValidationError

from gap_scan_client.cancellation import CancellationToken
from gap_scan_client.errors import ProtocolViolation
from gap_scan_client.models import ScanStatusSnapshot, TransportConfig
from gap_scan_client.settings import Settings, get_settings
from gap_scan_client.transport import Transport


class ScanApi:
    """The scan service's HTTP contract: start, inspect and cancel a scan."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.logger = logger

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ScanApi":
        settings = settings or get_settings()
        config = TransportConfig(timeout=settings.REQUEST_TIMEOUT)
        return cls(Transport(settings.API_BASE, config))

    async def start_scan(
        self,
        tags: List[str],
        excluded_terms: Optional[List[str]] = None,
        token: Optional[CancellationToken] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> str:
        data = await self.transport.post(
            "/scans",
            {"tags": list(tags), "excludedTerms": list(excluded_terms or [])},
            token=token,
            session=session,
        )
        scan_id = data.get("scanId") if isinstance(data, dict) else None
        if not scan_id:
            raise ProtocolViolation(f"Scan service did not return a scanId: {data!r}")

        self.logger.info(f"Started scan {scan_id} for tags {list(tags)}")
        return str(scan_id)

    async def get_scan(
        self,
        scan_id: str,
        token: Optional[CancellationToken] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> ScanStatusSnapshot:
        data = await self.transport.get(
            f"/scans/{scan_id}", token=token, session=session
        )
        try:
            return ScanStatusSnapshot.model_validate(data)
        except ValidationError as e:
            raise ProtocolViolation(
                f"Unexpected status payload for scan {scan_id}: {e}"
            ) from e

    async def cancel_scan(
        self, scan_id: str, session: Optional[aiohttp.ClientSession] = None
    ) -> None:
        await self.transport.delete(f"/scans/{scan_id}", session=session)
        self.logger.info(f"Cancelled scan {scan_id} on the server")
