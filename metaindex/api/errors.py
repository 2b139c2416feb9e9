from fastapi import HTTPException

from metaindex.core.results import Failure, FailureKind


def failure_to_http(failure: Failure) -> HTTPException:
    headers = None
    if failure.kind is FailureKind.RATE_LIMITED and failure.retry_after_seconds is not None:
        headers = {"Retry-After": str(failure.retry_after_seconds)}
    return HTTPException(status_code=failure.status_code, detail=failure.message, headers=headers)
