"""
Categorised errors raised by the clinical planner services.

Services raise these; the API layer maps them onto HTTP status codes.
"""

from typing import Any, Dict, Optional


class MamaCareError(Exception):
    """Base class for all categorised failures."""

    category = "internal"
    status_code = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def with_context(self, key: str, value: Any) -> "MamaCareError":
        self.context[key] = value
        return self

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.category, "message": self.message}
        if self.context:
            body["context"] = self.context
        return body


class BadRequest(MamaCareError):
    category = "bad_request"
    status_code = 400


class Unauthorized(MamaCareError):
    category = "unauthorized"
    status_code = 401


class Forbidden(MamaCareError):
    category = "forbidden"
    status_code = 403


class NotFound(MamaCareError):
    category = "not_found"
    status_code = 404


class Cancelled(MamaCareError):
    """The caller's deadline elapsed before the operation finished."""

    category = "cancelled"
    status_code = 499


class StorageError(MamaCareError):
    category = "storage_error"
    status_code = 500


class Internal(MamaCareError):
    category = "internal"
    status_code = 500


class PartialFailure(MamaCareError):
    """A bulk operation where some items failed.

    ``result`` is a :class:`mamacare.schemas.BatchResult` with the ids that
    succeeded and the reasons for every failure.
    """

    category = "partial_failure"
    status_code = 207

    def __init__(self, message: str, result, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.result = result

    @property
    def succeeded(self) -> int:
        return len(self.result.succeeded)

    @property
    def failed(self):
        return [item.item_id for item in self.result.failed]

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["result"] = self.result.model_dump(mode="json")
        return body


class SendError(MamaCareError):
    """Notification delivery failure."""

    category = "send_error"
    status_code = 502
    retryable = False


class TransientSend(SendError):
    retryable = True


class PermanentSend(SendError):
    retryable = False
