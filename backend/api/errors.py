from fastapi import HTTPException

from db.errors import DataIntegrityError, DuplicateSlugError, NotFoundError


def to_http_exception(exc: Exception) -> HTTPException:
    """Map store errors onto HTTP status codes."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DuplicateSlugError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, DataIntegrityError):
        return HTTPException(
            status_code=500,
            detail={"error": exc.code, "message": str(exc), "slug": exc.slug},
        )
    return HTTPException(status_code=422, detail=str(exc))
