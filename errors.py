from __future__ import annotations

from typing import Any, Dict, Optional

# Author: Daniel Neugent


class PhotoServiceError(Exception):
    """Base class for failures that are reported straight back to the client.

    Every subclass pins an HTTP status and a short reason. ``details`` carries
    the request-specific explanation.
    """

    status_code = 500
    reason = "Internal Error"

    def __init__(self, details: str = "", *, reason: Optional[str] = None) -> None:
        if reason is not None:
            self.reason = reason
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        if not self.details:
            return self.reason
        return f"{self.reason}: {self.details}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.status_code,
            "reason": self.reason,
            "details": self.details,
        }


class Unauthenticated(PhotoServiceError):
    status_code = 401
    reason = "Authentication Missing"


class Unauthorized(PhotoServiceError):
    status_code = 401
    reason = "Invalid Token"


class BadRequest(PhotoServiceError):
    status_code = 400
    reason = "Bad Request"


class ValidationError(PhotoServiceError):
    status_code = 400
    reason = "Validation Failed"


class NotFound(PhotoServiceError):
    status_code = 404
    reason = "Not Found"


class UpstreamError(PhotoServiceError):
    status_code = 500
    reason = "Upstream Failure"
