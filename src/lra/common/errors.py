"""
Error taxonomy for a report run.

Configuration and protocol errors are fatal for the run. Data-shape problems in
individual NDJSON lines are never raised; the classifier counts them instead.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class LabAlertError(Exception):
    """Base exception for all report-run errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ConfigurationError(LabAlertError):
    """Missing settings or unreadable credentials. Fatal at startup."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class TokenRequestError(LabAlertError):
    """The token endpoint refused or returned an unusable response."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(
            message,
            code="TOKEN_REQUEST_ERROR",
            details={"status": status, "body": body[:2000]},
        )
        self.status = status
        self.body = body


class ExportProtocolError(LabAlertError):
    """Unexpected HTTP status, missing header or malformed manifest."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: str = "",
        code: str = "EXPORT_PROTOCOL_ERROR",
    ):
        super().__init__(message, code=code, details={"status": status, "body": body[:2000]})
        self.status = status
        self.body = body


class ExportConflictError(ExportProtocolError):
    """Another export for the same client and cohort is already running."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message, status=status, body=body, code="EXPORT_CONFLICT")


class ExportTimeoutError(LabAlertError):
    """The poll loop ran past its deadline."""

    def __init__(self, message: str, status_url: str, waited_s: float):
        super().__init__(
            message,
            code="EXPORT_TIMEOUT",
            details={"status_url": status_url, "waited_s": round(waited_s, 1)},
        )
        self.status_url = status_url
        self.waited_s = waited_s


class ManifestRoutingError(ExportProtocolError):
    """The manifest lacks the Observation or Patient files a run needs."""

    def __init__(self, message: str, resource_types: Optional[list] = None):
        super().__init__(message, code="MANIFEST_ROUTING_ERROR")
        self.details["resource_types"] = list(resource_types or [])


class NotificationError(LabAlertError):
    """The notifier failed to deliver the report."""

    def __init__(self, message: str, recipient: str = "", report: Any = None):
        super().__init__(message, code="NOTIFICATION_ERROR", details={"recipient": recipient})
        self.recipient = recipient
        self.report = report
