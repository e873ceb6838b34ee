"""Error taxonomy shared by every control-plane component.

Each error knows the HTTP status it maps to; the handlers in ``app.main``
turn them into ``{"success": false, "error": ...}`` responses.
"""

from typing import Any


class ControlPlaneError(Exception):
    status_code = 500

    def __init__(self, message: str, **payload: Any):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, **self.payload}


class AuthenticationError(ControlPlaneError):
    status_code = 401


class AuthorizationError(ControlPlaneError):
    status_code = 403


class ValidationError(ControlPlaneError):
    status_code = 400

    def __init__(self, message: str, field: str | None = None):
        if field:
            super().__init__(message, field=field)
        else:
            super().__init__(message)
        self.field = field


class ConflictError(ControlPlaneError):
    status_code = 400


class NotFoundError(ControlPlaneError):
    status_code = 404


class RateLimitError(ControlPlaneError):
    status_code = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, retryAfter=retry_after)
        self.retry_after = retry_after


class StoreError(ControlPlaneError):
    status_code = 500


class ProvisioningError(ControlPlaneError):
    status_code = 500
