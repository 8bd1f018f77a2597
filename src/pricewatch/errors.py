from __future__ import annotations

from typing import Optional


class PricewatchError(Exception):
    """Base class for errors raised by the pipeline."""


class UpstreamError(PricewatchError):
    """
    Network or HTTP failure talking to the price source.
    status is None for transport-level failures (timeouts, DNS, resets).
    """
    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitError(UpstreamError):
    """HTTP 429 from the price source. Raised after the backoff wait was served."""
    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        waited_s: float = 0.0,
    ):
        super().__init__(message, status=429)
        self.retry_after = retry_after
        self.waited_s = waited_s


class StoreError(PricewatchError):
    """Alert-store or cache-store I/O failure."""


class RecordingError(StoreError):
    """A firing was decided but its trigger timestamp could not be written."""
    def __init__(self, alert_id: int, cause: BaseException):
        super().__init__(f"failed to record trigger for alert {alert_id}: {cause}")
        self.alert_id = alert_id
        self.cause = cause
