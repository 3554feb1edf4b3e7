"""
業務異常 → HTTPException

依 ErrorKind 分流，不看異常的類別結構；沒有 kind 的異常一律 500。
"""
from fastapi import HTTPException

from core.exceptions import CheckinCoreException, ErrorKind

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.PRECONDITION_FAILED: 400,
    ErrorKind.CAPACITY_EXHAUSTED: 409,
    ErrorKind.FORBIDDEN: 403,
}


def to_http_exception(exc: CheckinCoreException) -> HTTPException:
    detail = {"kind": exc.kind.value, "message": exc.message}
    if exc.code:
        detail["code"] = exc.code
    if exc.details:
        detail.update(exc.details)
    return HTTPException(status_code=STATUS_BY_KIND.get(exc.kind, 500), detail=detail)
