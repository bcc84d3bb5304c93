from fastapi import HTTPException, status

from services.errors import NotFoundError, ForbiddenError, RuleViolation


def to_http_exception(exc: Exception) -> HTTPException:
    """Map service-layer errors onto HTTP status codes."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc) or "Not found")
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc) or "Forbidden")
    if isinstance(exc, RuleViolation):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail())
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
