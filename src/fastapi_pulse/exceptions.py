"""Exception hierarchy for fastapi-pulse."""
from __future__ import annotations

from typing import Optional


class PulseError(Exception):
    """Base class for every error raised by fastapi-pulse."""

    def __init__(self, message: str, *, endpoint_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.endpoint_id = endpoint_id


class EndpointNotFound(PulseError):
    """The endpoint id is not present in the store."""

    def __init__(self, endpoint_id: str) -> None:
        super().__init__(f"Endpoint not found: {endpoint_id}", endpoint_id=endpoint_id)


class EndpointNotScheduled(PulseError):
    """The endpoint exists but has no live task (disabled, or not reconciled yet)."""

    def __init__(self, endpoint_id: str) -> None:
        super().__init__(f"Endpoint is not scheduled: {endpoint_id}", endpoint_id=endpoint_id)


class StorageError(PulseError):
    """The store could not be reached or rejected an operation."""
