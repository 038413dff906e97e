from fastapi import HTTPException, status
from starlette.exceptions import HTTPException as StarletteHTTPException

from tscache.schemas import ErrorCode, ErrorDetail, ErrorResponse


# --- Domain errors ---
class TimeSeriesCacheError(Exception):
    """Base for every error raised by tscache."""


class InvalidKeyParameters(TimeSeriesCacheError):
    """Request parameters can't be turned into a cache key."""


class UpstreamFetchError(TimeSeriesCacheError):
    """Upstream call failed or returned an unexpected shape."""

    code = ErrorCode.UPSTREAM_ERROR


class UpstreamRateLimitError(UpstreamFetchError):
    code = ErrorCode.RATE_LIMIT


class UpstreamTimeoutError(UpstreamFetchError):
    code = ErrorCode.UPSTREAM_TIMEOUT


class RefreshFetchError(UpstreamFetchError):
    """A background refresh failed. Only ever logged, never raised to callers."""

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"refresh failed for {key}: {cause!r}")
        self.key = key
        self.cause = cause


# --- HTTP mapping ---
def http_error(
    code: ErrorCode, message: str, http_status=status.HTTP_400_BAD_REQUEST, hint: str | None = None
):
    detail = ErrorDetail(code=code, message=message, hint=hint)
    return HTTPException(status_code=http_status, detail=detail.model_dump(mode="json"))


# Framework-raised errors (routing 404/405) carry a plain string detail
_STATUS_CODES = {
    status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    status.HTTP_405_METHOD_NOT_ALLOWED: ErrorCode.METHOD_NOT_ALLOWED,
}


def envelope_from_http_exception(exc: StarletteHTTPException) -> ErrorResponse:
    d = exc.detail
    if isinstance(d, dict) and "code" in d and "message" in d:
        return ErrorResponse(error=d)  # already our shape
    code = _STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    return ErrorResponse(error=ErrorDetail(code=code, message=str(d), hint=None).model_dump())
