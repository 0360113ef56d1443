from typing import Any, Optional


class ScanClientError(Exception):
    """Base class for every error raised by the gap scan client."""


class TransportError(ScanClientError):
    retryable = False


class RequestTimeout(TransportError):
    def __init__(self, timeout: float, url: str):
        super().__init__(f"Request to {url} timed out after {timeout:g}s")
        self.timeout = timeout
        self.url = url


class RequestAborted(TransportError):
    """The caller's cancellation token fired. Never surfaced by the poller."""

    def __init__(self, url: str):
        super().__init__(f"Request to {url} was aborted")
        self.url = url


class NetworkFailure(TransportError):
    retryable = True


class InvalidResponse(TransportError):
    """A success response whose body could not be decoded."""


class HttpStatusError(TransportError):
    def __init__(self, message: str, status: int, body: Optional[Any] = None):
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:
        return 500 <= self.status < 600


class ScanFailed(ScanClientError):
    """The scan service reported the job as FAILED."""

    def __init__(self, message: str, scan_id: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.scan_id = scan_id
        self.error_code = error_code


class ProtocolViolation(ScanClientError):
    """The scan service answered with something the contract does not allow."""


class PollTimeout(ScanClientError):
    def __init__(self, scan_id: str, timeout: float):
        super().__init__(
            f"Scan {scan_id} timed out after {timeout:g}s. "
            "Try narrowing your tags or exclusions."
        )
        self.scan_id = scan_id
        self.timeout = timeout
