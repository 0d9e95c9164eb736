from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field, field_validator

HttpMethod = Literal["GET", "HEAD", "POST"]

MIN_INTERVAL_SECONDS = 5


class EndpointStatus(str, Enum):
    """Last known liveness of an endpoint."""

    UP = "up"
    DOWN = "down"
    UNKNOWN = "unknown"


def _check_url(value: str) -> str:
    value = value.strip()
    if not value.lower().startswith(("http://", "https://")):
        raise ValueError("url must start with http:// or https://")
    return value


def redact_url(url: Optional[str]) -> Optional[str]:
    """*url* with any ``user:password@`` part removed, for logs and error text."""
    if not url or "@" not in url:
        return url
    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url
    return urlunsplit(parts._replace(netloc=parts.netloc.rsplit("@", 1)[1]))


class EndpointCreate(BaseModel):
    """Input model used to register a new endpoint."""

    url: str
    method: HttpMethod = "GET"
    interval_seconds: int = Field(default=60, ge=MIN_INTERVAL_SECONDS)
    webhook_url: Optional[str] = None
    enabled: bool = True

    @field_validator("url")
    @classmethod
    def _url(cls, value: str) -> str:
        return _check_url(value)

    @field_validator("webhook_url")
    @classmethod
    def _webhook_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return _check_url(value)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class EndpointUpdate(BaseModel):
    """
    Partial update. Only the fields explicitly sent are applied.

    An empty string for ``webhook_url`` clears it.
    """

    url: Optional[str] = None
    method: Optional[HttpMethod] = None
    interval_seconds: Optional[int] = Field(default=None, ge=MIN_INTERVAL_SECONDS)
    webhook_url: Optional[str] = None
    enabled: Optional[bool] = None

    @field_validator("url")
    @classmethod
    def _url(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_url(value)

    @field_validator("webhook_url")
    @classmethod
    def _webhook_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return value
        return _check_url(value)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    def changes(self) -> dict[str, Any]:
        """Fields set by the caller, with ``webhook_url=""`` normalised to None."""
        data = self.model_dump(exclude_unset=True)
        if "webhook_url" in data and not data["webhook_url"]:
            data["webhook_url"] = None
        return {k: v for k, v in data.items() if v is not None or k == "webhook_url"}


class Endpoint(BaseModel):
    """
    One monitored endpoint as persisted by the store.

    ``last_*`` fields describe the most recent completed probe and stay
    ``None`` (``last_status`` stays ``unknown``) until the first one finishes.
    """

    id: str
    url: str
    method: HttpMethod = "GET"
    interval_seconds: int = Field(default=60, ge=MIN_INTERVAL_SECONDS)
    webhook_url: Optional[str] = None
    enabled: bool = True
    last_status: EndpointStatus = EndpointStatus.UNKNOWN
    last_status_code: Optional[int] = None
    last_latency_ms: Optional[int] = None
    last_checked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    def fingerprint(self) -> tuple:
        """
        Identity of the endpoint's configuration for scheduling purposes.

        ``updated_at`` moves on every config write (status writes leave it
        alone), so a disable and re-enable that both land between two
        reconcile passes still restarts the task.
        """
        return (self.url, self.method, self.interval_seconds, self.webhook_url, self.updated_at)


class ProbeOutcome(BaseModel):
    """Normalised result of a single probe."""

    status: EndpointStatus
    status_code: Optional[int] = None
    latency_ms: int
    error: Optional[str] = None
    observed_at: datetime


class WebhookEndpointRef(BaseModel):
    id: str
    url: str
    method: HttpMethod


class StatusChangePayload(BaseModel):
    """Body POSTed to an endpoint's ``webhook_url`` on an up/down transition."""

    type: Literal["endpoint_status_changed"] = "endpoint_status_changed"
    occurred_at: datetime
    endpoint: WebhookEndpointRef
    previous_status: EndpointStatus
    current_status: EndpointStatus


class WebhookDelivery(BaseModel):
    """One webhook delivery attempt, successful or not."""

    id: str
    endpoint_id: str
    target_url: str
    success: bool
    status_code: Optional[int] = None
    response_ms: Optional[int] = None
    error: Optional[str] = None
    sent_at: datetime
    payload: Optional[dict] = None

    model_config = {"from_attributes": True}


class ReconcileResult(BaseModel):
    """What a reconciliation pass changed."""

    started: list[str] = Field(default_factory=list)
    stopped: list[str] = Field(default_factory=list)
    restarted: list[str] = Field(default_factory=list)
    unchanged: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.started or self.stopped or self.restarted)


class PulseEndpointMetric(BaseModel):
    """Per-endpoint probe aggregates kept in memory by PulseMetrics."""

    endpoint_id: str
    checks: int
    failures: int
    avg_latency_ms: int
    p95_latency_ms: int = 0
    max_latency_ms: int
    uptime_pct: float


class PulseMetricsSnapshot(BaseModel):
    """Returned by GET /pulse/api/metrics."""

    endpoints: list[PulseEndpointMetric]
    total_checks: int
    total_failures: int
    at_capacity: bool = False
    max_endpoints: int = 1_000


class PulseSchedulerState(BaseModel):
    """Returned by GET /pulse/api/scheduler."""

    running: bool
    scheduled: list[str]
    in_flight: list[str]
    reconcile_cycles: int
    pending_notifications: int


class PulseHealthReport(BaseModel):
    """Health report returned by GET /pulse/health."""

    status: Literal["ok", "degraded", "down"]
    storage_backend: str
    storage: Literal["ok", "error"]
    storage_error: Optional[str] = None
    worker_running: bool
    reconcile_cycles: int
    scheduled_endpoints: int
