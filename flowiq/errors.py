"""Domain exceptions shared by the service modules.

Each exception carries a machine readable ``code`` and the HTTP status the API
layer should answer with.  :mod:`flowiq.main` converts them into the standard
error envelope.
"""

from __future__ import annotations

from typing import Any, Optional


class FlowIQError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(FlowIQError):
    code = "not_found"
    status_code = 404


class ValidationError(FlowIQError):
    code = "validation_error"
    status_code = 422


class ConflictError(FlowIQError):
    code = "conflict"
    status_code = 409


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


class AuthenticationError(FlowIQError):
    code = "authentication_failed"
    status_code = 401


class PermissionDeniedError(FlowIQError):
    code = "forbidden"
    status_code = 403


class AccountLockedError(FlowIQError):
    code = "account_locked"
    status_code = 423


class UnknownAIServiceError(FlowIQError):
    code = "unknown_ai_service"
    status_code = 400


class UnsupportedEHRSystemError(FlowIQError):
    code = "unsupported_ehr_system"
    status_code = 400


class EraParseError(ValidationError):
    code = "era_parse_error"


class StorageError(FlowIQError):
    code = "storage_error"
    status_code = 400


class TemplateRenderError(ValidationError):
    code = "template_render_error"


class RemoteFunctionError(FlowIQError):
    code = "remote_function_error"
    status_code = 502

    def __init__(self, function: str, status: Optional[int], message: str) -> None:
        super().__init__(
            f"{function} failed: {message}",
            details={"function": function, "status": status},
        )
        self.function = function
        self.status = status


__all__ = [
    "AccountLockedError",
    "AuthenticationError",
    "ConflictError",
    "EraParseError",
    "FlowIQError",
    "InvalidTransitionError",
    "NotFoundError",
    "PermissionDeniedError",
    "RemoteFunctionError",
    "StorageError",
    "TemplateRenderError",
    "UnknownAIServiceError",
    "UnsupportedEHRSystemError",
    "ValidationError",
]
