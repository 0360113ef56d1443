import asyncio
import inspect
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Iterator,
    List,
    Optional,
    Set,
)

import aiohttp
from loguru import logger

from gap_scan_client.cancellation import CancellationToken
from gap_scan_client.errors import (
    PollTimeout,
    ProtocolViolation,
    RequestAborted,
    ScanClientError,
    ScanFailed,
)
from gap_scan_client.models import (
    PollingConfig,
    ScanProgress,
    ScanResult,
    ScanStatus,
    ScanStatusSnapshot,
    SessionState,
)
from gap_scan_client.scan_api import ScanApi

ACTIVE_STATES = (SessionState.submitting, SessionState.polling)


def backoff_intervals(initial: float, factor: float, maximum: float) -> Iterator[float]:
    """Yields poll intervals growing geometrically by `factor`, capped at `maximum`."""
    interval = min(initial, maximum)
    while True:
        yield interval
        interval = min(interval * factor, maximum)


@dataclass
class PollingSession:
    generation: int
    started_at: float
    interval: float
    token: CancellationToken = field(default_factory=CancellationToken)
    scan_id: Optional[str] = None
    state: SessionState = SessionState.idle


class ScanPoller:
    """Drives one scan at a time from submission to its final result.

    Starting a new scan supersedes the previous one: its token fires and its
    generation no longer matches, so anything it produces afterwards is dropped.
    """

    def __init__(
        self,
        api: ScanApi,
        config: Optional[PollingConfig] = None,
        on_progress: Optional[Callable[[ScanProgress], Any]] = None,
    ):
        self.api = api
        self.config = config or PollingConfig()
        self.on_progress = on_progress
        self.logger = logger
        self._generation = 0
        self._session: Optional[PollingSession] = None
        self._remote_cancels: Set[asyncio.Task] = set()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.idle

    @property
    def current_scan_id(self) -> Optional[str]:
        return self._session.scan_id if self._session else None

    def _now(self) -> float:
        return asyncio.get_event_loop().time()

    def _is_current(self, session: PollingSession) -> bool:
        return session.generation == self._generation and not session.token.cancelled

    async def submit(
        self, tags: List[str], excluded_terms: Optional[List[str]] = None
    ) -> Optional[ScanResult]:
        """Starts a scan and polls it to completion.

        Returns the result, or None when the scan was cancelled or superseded
        by a later submit. Raises ScanClientError if the scan fails.
        """
        session = self._begin_session()
        self.logger.info(
            f"Submitting scan #{session.generation} for tags {list(tags)}"
        )

        async with aiohttp.ClientSession() as http:
            try:
                session.scan_id = await self.api.start_scan(
                    tags, excluded_terms, token=session.token, session=http
                )
                if not self._is_current(session):
                    return None
                session.state = SessionState.polling

                final: Optional[ScanStatusSnapshot] = None
                async with aclosing(self.poll(session.scan_id, session, http)) as snapshots:
                    async for snapshot in snapshots:
                        if not self._is_current(session):
                            return None
                        if snapshot.status.is_terminal:
                            final = snapshot
                        else:
                            await self._report_progress(session, snapshot)

                if final is None or not self._is_current(session):
                    return None
                return self._resolve(session, final)

            except RequestAborted:
                self.logger.debug(f"Scan #{session.generation} aborted")
                return None
            except ScanClientError as e:
                if not self._is_current(session):
                    return None
                session.state = SessionState.failed
                self.logger.error(f"Scan #{session.generation} failed: {e}")
                raise
            except asyncio.CancelledError:
                if session.state in ACTIVE_STATES:
                    self._abandon(session, SessionState.cancelled)
                raise
            except Exception as e:
                if session.state in ACTIVE_STATES:
                    session.state = SessionState.failed
                self.logger.exception(f"Scan #{session.generation} crashed: {e}")
                raise

    async def poll(
        self,
        scan_id: str,
        session: Optional[PollingSession] = None,
        http: Optional[aiohttp.ClientSession] = None,
    ) -> AsyncIterator[ScanStatusSnapshot]:
        """Yields a status snapshot per poll until the scan reaches a terminal
        status. Ends early, without raising, once the session's token fires.

        Without a session the scan is polled on its own, outside the
        supersession bookkeeping, with the clock starting now.
        """
        if session is None:
            session = PollingSession(
                generation=self._generation,
                started_at=self._now(),
                interval=self.config.initial_interval,
                scan_id=scan_id,
                state=SessionState.polling,
            )
        intervals = backoff_intervals(
            self.config.initial_interval,
            self.config.backoff_factor,
            self.config.max_interval,
        )
        for interval in intervals:
            session.interval = interval
            remaining = self._remaining(session)
            if remaining <= 0:
                raise PollTimeout(scan_id, self.config.timeout)

            delay = min(interval, remaining)
            self.logger.debug(
                f"Scan {scan_id} pending, waiting {delay:.2f}s before next poll"
            )
            if not await session.token.sleep(delay):
                return
            remaining = self._remaining(session)
            if remaining <= 0:
                raise PollTimeout(scan_id, self.config.timeout)

            # the status request, retries included, must not outlive the ceiling
            try:
                snapshot = await asyncio.wait_for(
                    self.api.get_scan(scan_id, token=session.token, session=http),
                    remaining,
                )
            except RequestAborted:
                return
            except asyncio.TimeoutError as e:
                raise PollTimeout(scan_id, self.config.timeout) from e

            yield snapshot
            if snapshot.status.is_terminal:
                return

    def _remaining(self, session: PollingSession) -> float:
        return self.config.timeout - (self._now() - session.started_at)

    def cancel(self) -> None:
        """Stops the active scan. The pending submit returns None; nothing is raised."""
        session = self._session
        if session is None or session.state not in ACTIVE_STATES:
            return
        self._abandon(session, SessionState.cancelled)

    async def close(self) -> None:
        self.cancel()
        if self._remote_cancels:
            await asyncio.gather(*self._remote_cancels, return_exceptions=True)

    def _begin_session(self) -> PollingSession:
        previous = self._session
        if previous is not None and previous.state in ACTIVE_STATES:
            self._abandon(previous, SessionState.superseded)

        self._generation += 1
        session = PollingSession(
            generation=self._generation,
            started_at=self._now(),
            interval=self.config.initial_interval,
            state=SessionState.submitting,
        )
        self._session = session
        return session

    def _abandon(self, session: PollingSession, state: SessionState) -> None:
        session.token.cancel()
        session.state = state
        self.logger.info(f"Scan #{session.generation} {state.value}")

        if session.scan_id and self.config.cancel_remote:
            self._schedule_remote_cancel(session.scan_id)

    def _schedule_remote_cancel(self, scan_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning(
                f"No running event loop, scan {scan_id} left running on the server"
            )
            return
        task = loop.create_task(self._cancel_remote(scan_id))
        self._remote_cancels.add(task)
        task.add_done_callback(self._remote_cancels.discard)

    async def _cancel_remote(self, scan_id: str) -> None:
        try:
            await self.api.cancel_scan(scan_id)
        except ScanClientError as e:
            self.logger.warning(f"Could not cancel scan {scan_id} on the server: {e}")

    async def _report_progress(
        self, session: PollingSession, snapshot: ScanStatusSnapshot
    ) -> None:
        progress = ScanProgress(
            scan_id=snapshot.id,
            status=snapshot.status,
            stage=snapshot.stage,
            elapsed_time=self._now() - session.started_at,
            progress=snapshot.progress,
            interval=session.interval,
        )
        self.logger.debug(
            f"Scan {snapshot.id} is {snapshot.status.value}"
            + (f" ({snapshot.stage})" if snapshot.stage else "")
        )
        if self.on_progress is None or not self._is_current(session):
            return

        result = self.on_progress(progress)
        if inspect.isawaitable(result):
            await result

    def _resolve(
        self, session: PollingSession, snapshot: ScanStatusSnapshot
    ) -> ScanResult:
        if snapshot.status == ScanStatus.failed:
            raise ScanFailed(
                snapshot.error_message or "Scan failed",
                snapshot.id,
                snapshot.error_code,
            )
        if not snapshot.result:
            raise ProtocolViolation(
                f"Scan {snapshot.id} reported {snapshot.status.value} without a result"
            )

        session.state = SessionState.succeeded
        elapsed = self._now() - session.started_at
        self.logger.info(f"Scan {snapshot.id} succeeded in {elapsed:.2f}s")
        return ScanResult(
            scan_id=session.scan_id, result=snapshot.result, elapsed_time=elapsed
        )
