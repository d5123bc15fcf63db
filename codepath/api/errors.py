"""
Mapping from service exceptions to HTTP responses.
"""

import logging

from fastapi import HTTPException

from codepath.core.exceptions import (
    CodepathError,
    CyclicCurriculumError,
    FatalError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    ProviderRejectedError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (CyclicCurriculumError, 409),
    (InvalidStateError, 422),
    (InvalidInputError, 422),
    (TransientProviderError, 503),
    (ProviderRejectedError, 502),
    (FatalError, 500),
)


def to_http_exception(error: CodepathError) -> HTTPException:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            break
    else:
        status_code = 500

    if status_code >= 500:
        logger.error(f"❌ {type(error).__name__}: {error}", exc_info=error)
    detail = {"error": type(error).__name__, "message": str(error)}
    if isinstance(error, CyclicCurriculumError):
        detail["cycle"] = error.cycle
    return HTTPException(status_code=status_code, detail=detail)
