import asyncio
import itertools
from typing import Any, Dict, List, Optional

from aiohttp import web
from loguru import logger

DEFAULT_SCRIPT = [
    {"status": "QUEUED"},
    {"status": "RUNNING", "stage": "EXPAND"},
    {"status": "SUCCESS", "result": {"gaps": [{"id": "gap-1", "title": "Sample gap"}]}},
]


class ScanServer:
    """In-process stand-in for the scan service.

    Every scan walks through `script`, one entry per status poll, and repeats
    the last entry once the script runs out.
    """

    def __init__(
        self,
        script: Optional[List[Dict[str, Any]]] = None,
        status_delay: float = 0.0,
        fail_polls: int = 0,
        fail_status: int = 503,
    ):
        self.script = script or DEFAULT_SCRIPT
        self.status_delay = status_delay
        self.fail_polls = fail_polls
        self.fail_status = fail_status
        self.start_error: Optional[tuple] = None
        self.scripts: Dict[str, List[Dict[str, Any]]] = {}
        self.delays: Dict[str, float] = {}
        self.polls: Dict[str, int] = {}
        self.failures: Dict[str, int] = {}
        self.cancelled: List[str] = []
        self.requests: List[tuple] = []
        self._ids = itertools.count(1)
        self.runner: Optional[web.AppRunner] = None

        self.app = web.Application(middlewares=[self._record])
        self.app.router.add_post("/api/scans", self.handle_start)
        self.app.router.add_get("/api/scans/{scan_id}", self.handle_status)
        self.app.router.add_delete("/api/scans/{scan_id}", self.handle_cancel)
        self.app.router.add_get("/api/health", self.handle_health)
        self.app.router.add_get("/api/broken", self.handle_broken)
        self.app.router.add_get("/api/garbled", self.handle_garbled)
        self.logger = logger

    @web.middleware
    async def _record(self, request, handler):
        self.requests.append((request.method, request.path))
        return await handler(request)

    def next_scan_id(self) -> str:
        return f"scan-{next(self._ids)}"

    async def handle_start(self, request):
        if self.start_error is not None:
            status, message = self.start_error
            return web.json_response({"error": message}, status=status)

        body = await request.json()
        if not body.get("tags"):
            return web.json_response({"error": "At least one tag is required"}, status=400)

        scan_id = self.next_scan_id()
        self.polls[scan_id] = 0
        self.failures[scan_id] = 0
        self.logger.info(f"Accepted scan {scan_id} for tags {body['tags']}")
        return web.json_response({"scanId": scan_id}, status=202)

    async def handle_status(self, request):
        scan_id = request.match_info["scan_id"]
        if scan_id not in self.polls:
            return web.json_response({"error": f"Scan {scan_id} not found"}, status=404)

        delay = self.delays.get(scan_id, self.status_delay)
        if delay:
            await asyncio.sleep(delay)

        if self.failures[scan_id] < self.fail_polls:
            self.failures[scan_id] += 1
            self.logger.info(f"Returning {self.fail_status} for scan {scan_id}")
            return web.json_response(
                {"error": "Scan engine temporarily unavailable"}, status=self.fail_status
            )

        script = self.scripts.get(scan_id, self.script)
        step = script[min(self.polls[scan_id], len(script) - 1)]
        self.polls[scan_id] += 1
        self.logger.info(f"Returning {step['status']} for scan {scan_id}")
        return web.json_response(
            {"id": scan_id, "result": None, **step}
        )

    async def handle_cancel(self, request):
        scan_id = request.match_info["scan_id"]
        self.cancelled.append(scan_id)
        return web.json_response({"id": scan_id, "status": "CANCELLED"})

    async def handle_health(self, request):
        return web.Response(text="ok")

    async def handle_broken(self, request):
        return web.Response(text="{not json", content_type="application/json")

    async def handle_garbled(self, request):
        return web.Response(body=b'{"id": "\xff\xfe"}', content_type="application/json")

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
