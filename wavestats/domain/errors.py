from enum import Enum
from typing import Optional


class FailureKind(Enum):
    """Discriminates why an upstream call failed."""

    AUTH_EXPIRED = "auth_expired"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"


_RETRYABLE_KINDS = {FailureKind.RATE_LIMITED, FailureKind.TRANSIENT, FailureKind.TIMEOUT}


class UpstreamFailure(Exception):
    """An upstream call failed. The kind tells callers what to do about it."""

    def __init__(self, kind: FailureKind, message: str = "Upstream call failed",
                 status: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def is_auth_expired(self) -> bool:
        return self.kind is FailureKind.AUTH_EXPIRED

    @property
    def retryable(self) -> bool:
        """Transient failures may succeed if the caller tries again later."""
        return self.kind in _RETRYABLE_KINDS


class QueryError(Exception):
    """Base for failures reported to the caller of a query."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Query failed") -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class Unauthenticated(QueryError):
    """Neither an access token nor a refresh token was supplied."""

    code = "UNAUTHENTICATED"


class UpstreamAuthError(QueryError):
    """The token endpoint rejected an authorization code or access was denied."""

    code = "UPSTREAM_AUTH_ERROR"


class RefreshError(UpstreamAuthError):
    """The refresh token is invalid or revoked. The session is over."""

    code = "REFRESH_ERROR"


class NotFound(QueryError):
    """Requested sub-resource does not exist upstream."""

    code = "NOT_FOUND"


class InternalError(QueryError):
    """Transport failure or anything else the caller cannot act on."""

    code = "INTERNAL_ERROR"


class InvalidResponseFormat(QueryError):
    """Upstream returned a payload the mapping layer cannot interpret."""

    code = "INVALID_RESPONSE_FORMAT"


class InvalidArgument(QueryError):
    """A query parameter is out of range or malformed."""

    code = "BAD_REQUEST"
