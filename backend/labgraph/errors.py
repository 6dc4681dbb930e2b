from __future__ import annotations

from typing import Any, Optional


class LabGraphError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(LabGraphError):
    status_code = 400


class NotFoundError(LabGraphError):
    status_code = 404


class CycleError(LabGraphError):
    status_code = 409


class ConfigurationError(LabGraphError):
    """Server-side setting is invalid; not the caller's fault."""

    status_code = 500


class UpstreamLookupError(LabGraphError):
    """Entity Store lookup failed; callers recover and drop the enrichment."""

    status_code = 502
