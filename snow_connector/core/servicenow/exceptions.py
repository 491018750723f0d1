"""ServiceNow-specific exceptions for error handling."""
from __future__ import annotations


class ServiceNowError(Exception):
    """Base exception for all ServiceNow operations."""
    pass


class ServiceNowAPIError(ServiceNowError):
    """HTTP error from the ServiceNow Table API.

    Attributes:
        status_code: HTTP status code
        message: Error message from response
        endpoint: API endpoint that failed
    """

    def __init__(self, status_code: int, message: str, endpoint: str):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {message}")


class ResponseDecodeError(ServiceNowError):
    """Response body or paging headers could not be decoded."""
    pass


class CursorDecodeError(ServiceNowError):
    """Pagination token is malformed and cannot be resumed."""
    pass


class PreconditionError(ServiceNowError, ValueError):
    """Request rejected before any network call (bad principal, missing id)."""
    pass


class ResourceNotFoundError(ServiceNowError):
    """Record does not exist in the requested table."""
    pass


class PartialRevokeError(ServiceNowError):
    """A multi-record revoke failed after some records were already deleted.

    Attributes:
        deleted_ids: Record ids deleted before the failure
        failed_id: Record id whose deletion failed
        cause: Underlying error
    """

    def __init__(self, deleted_ids: list[str], failed_id: str, cause: Exception):
        self.deleted_ids = list(deleted_ids)
        self.failed_id = failed_id
        self.cause = cause
        super().__init__(
            f"Revoke stopped at record '{failed_id}' after deleting "
            f"{len(self.deleted_ids)} record(s): {cause}"
        )
