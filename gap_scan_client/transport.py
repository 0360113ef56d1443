import asyncio
import json
from typing import Any, Optional

import aiohttp
from loguru import logger

from gap_scan_client.cancellation import CancellationToken
from gap_scan_client.errors import (
    HttpStatusError,
    InvalidResponse,
    NetworkFailure,
    RequestAborted,
    RequestTimeout,
    TransportError,
)
from gap_scan_client.models import RequestDescriptor, TransportConfig


class Transport:
    """JSON-over-HTTP requests with a per-attempt timeout, abort support and
    exponential-backoff retries for network failures and 5xx responses."""

    def __init__(self, base_url: str, config: Optional[TransportConfig] = None):
        self.base_url = base_url.rstrip("/")
        self.config = config or TransportConfig()
        self.logger = logger

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path if path.startswith('/') else '/' + path}"

    async def request(
        self,
        descriptor: RequestDescriptor,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> Any:
        """Performs the request and returns the parsed body.

        Raises a TransportError subclass once the request fails for good.
        """
        if session is None:
            async with aiohttp.ClientSession() as own_session:
                return await self._request_with_retry(descriptor, own_session)
        return await self._request_with_retry(descriptor, session)

    async def _request_with_retry(
        self, descriptor: RequestDescriptor, session: aiohttp.ClientSession
    ) -> Any:
        url = self._url(descriptor.path)
        token = descriptor.token or CancellationToken()
        attempt = 0

        while True:
            try:
                return await self._request_once(descriptor, url, session, token)
            except TransportError as error:
                if not error.retryable or attempt >= self.config.max_retries:
                    if not isinstance(error, RequestAborted):
                        self.logger.error(f"{descriptor.method} {url} failed: {error}")
                    raise

                delay = self._calculate_delay(attempt)
                attempt += 1
                self.logger.warning(
                    f"Retry {attempt}/{self.config.max_retries} after {delay:.2f}s "
                    f"for {descriptor.method} {descriptor.path}: {error}"
                )
                if not await token.sleep(delay):
                    raise RequestAborted(url) from error

    def _calculate_delay(self, attempt: int) -> float:
        return self.config.retry_delay * (2**attempt)

    async def _request_once(
        self,
        descriptor: RequestDescriptor,
        url: str,
        session: aiohttp.ClientSession,
        token: CancellationToken,
    ) -> Any:
        if token.cancelled:
            raise RequestAborted(url)

        timeout = (
            descriptor.timeout
            if descriptor.timeout is not None
            else self.config.timeout
        )
        self.logger.debug(f"HTTP {descriptor.method} {url}")

        try:
            body = await token.run(
                asyncio.wait_for(self._send(descriptor, url, session), timeout)
            )
        # aiohttp timeouts are also ClientErrors, and TimeoutError is an OSError
        except asyncio.TimeoutError as e:
            raise RequestTimeout(timeout, url) from e
        except (aiohttp.ClientError, OSError) as e:
            raise NetworkFailure(
                f"Network error calling {descriptor.method} {url}: {e}"
            ) from e

        if token.cancelled:
            raise RequestAborted(url)
        return body

    async def _send(
        self,
        descriptor: RequestDescriptor,
        url: str,
        session: aiohttp.ClientSession,
    ) -> Any:
        headers = {"Content-Type": "application/json", **descriptor.headers}
        data = json.dumps(descriptor.body) if descriptor.body is not None else None

        async with session.request(
            descriptor.method, url, headers=headers, data=data
        ) as response:
            content_type = response.headers.get("Content-Type", "")
            raw = await response.read()

            if not response.ok:
                try:
                    text = raw.decode(response.charset or "utf-8", errors="replace")
                except LookupError:
                    text = raw.decode("utf-8", errors="replace")
                body = self._parse_error_body(text, content_type)
                message = (
                    str(body["error"])
                    if isinstance(body, dict) and "error" in body
                    else f"HTTP {response.status}"
                )
                raise HttpStatusError(message, response.status, body)

            try:
                text = raw.decode(response.charset or "utf-8")
            except (UnicodeDecodeError, LookupError) as e:
                raise InvalidResponse(f"Undecodable body from {url}: {e}") from e

            if "application/json" in content_type:
                try:
                    return json.loads(text) if text else None
                except ValueError as e:
                    raise InvalidResponse(f"Malformed JSON from {url}: {e}") from e
            return text

    @staticmethod
    def _parse_error_body(text: str, content_type: str) -> Any:
        if "application/json" not in content_type:
            return text
        try:
            return json.loads(text)
        except ValueError:
            return None

    async def get(self, path: str, **options) -> Any:
        session = options.pop("session", None)
        return await self.request(
            RequestDescriptor(method="GET", path=path, **options), session
        )

    async def post(self, path: str, body: Any = None, **options) -> Any:
        session = options.pop("session", None)
        return await self.request(
            RequestDescriptor(method="POST", path=path, body=body, **options), session
        )

    async def put(self, path: str, body: Any = None, **options) -> Any:
        session = options.pop("session", None)
        return await self.request(
            RequestDescriptor(method="PUT", path=path, body=body, **options), session
        )

    async def delete(self, path: str, **options) -> Any:
        session = options.pop("session", None)
        return await self.request(
            RequestDescriptor(method="DELETE", path=path, **options), session
        )

