from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from gap_scan_client.cancellation import CancellationToken


class ScanStatus(str, Enum):
    queued = "QUEUED"
    running = "RUNNING"
    success = "SUCCESS"
    failed = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanStatus.success, ScanStatus.failed)


class SessionState(str, Enum):
    idle = "idle"
    submitting = "submitting"
    polling = "polling"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"
    superseded = "superseded"


class RequestDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    method: Literal["GET", "POST", "PUT", "DELETE"]
    path: str
    body: Optional[Any] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    token: Optional[CancellationToken] = None


class ScanStatusSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    status: ScanStatus
    stage: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    error_code: Optional[str] = Field(default=None, alias="errorCode")

    @property
    def progress(self) -> Optional[int]:
        """Coarse completion percentage; the service does not report a finer one."""
        if self.status == ScanStatus.running:
            return 30
        if self.status.is_terminal:
            return 100
        return None


class ScanProgress(BaseModel):
    scan_id: str
    status: ScanStatus
    stage: Optional[str] = None
    elapsed_time: float
    progress: Optional[int] = None
    interval: Optional[float] = None  # backoff before this poll


class ScanResult(BaseModel):
    scan_id: str
    result: Dict[str, Any]
    elapsed_time: float


class TransportConfig(BaseModel):
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0  # doubled on every retry


class PollingConfig(BaseModel):
    initial_interval: float = 1.2
    max_interval: float = 3.0
    backoff_factor: float = 1.15
    timeout: float = 300.0  # 5 minutes
    cancel_remote: bool = True
