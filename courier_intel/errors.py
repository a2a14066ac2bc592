"""
Error taxonomy for the ingestion pipeline.

Every error carries a short machine-readable ``kind`` and the HTTP status
the API layer renders it with.
"""
from typing import Any, Dict, List, Optional


class CourierIntelError(Exception):
    """Base class for all pipeline errors"""

    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class AuthenticationError(CourierIntelError):
    """Missing/invalid credentials, expired timestamp or bad signature."""

    kind = "authentication_failed"
    status_code = 401


class ValidationError(CourierIntelError):
    """Malformed or missing payload fields. ``fields`` lists every failure."""

    kind = "validation_failed"
    status_code = 422

    def __init__(self, message: str, fields: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.fields = fields or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["fields"] = self.fields
        return data


class ConfigurationError(CourierIntelError):
    """Fatal deployment misconfiguration (e.g. missing hash salt)."""

    kind = "configuration_error"
    status_code = 500


class NotFoundError(CourierIntelError):
    kind = "not_found"
    status_code = 404


class TransientStorageError(CourierIntelError):
    """Database failure; the whole ingestion was rolled back and is safe to retry."""

    kind = "storage_error"
    status_code = 500


class IngestionTimeoutError(CourierIntelError):
    kind = "timeout"
    status_code = 503
