"""
Error taxonomy and the JSON error envelope: {error, details?, validStatuses?}
"""
from typing import List, Optional


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None, valid_statuses: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.valid_statuses = valid_statuses

    def to_dict(self) -> dict:
        return error_body(self.message, self.details, self.valid_statuses)


class ValidationError(ApiError):
    """Malformed or missing client input."""
    status_code = 400


class UploadError(ApiError):
    """A file was rejected because of its type, size or count."""
    status_code = 400


class NotFoundError(ApiError):
    status_code = 404


class StoreUnavailableError(ApiError):
    status_code = 503


def error_body(message: str, details: Optional[str] = None, valid_statuses: Optional[List[str]] = None) -> dict:
    body = {"error": message}
    if details:
        body["details"] = details
    if valid_statuses is not None:
        body["validStatuses"] = valid_statuses
    return body
