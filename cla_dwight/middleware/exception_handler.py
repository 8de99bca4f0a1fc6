"""Turn ClaException into structured JSON error responses."""

import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from ..exceptions import ClaException, ErrorCode

logger = logging.getLogger(__name__)

# Extra response headers per error code.
_CHALLENGES = {
    ErrorCode.UNAUTHORIZED: {"WWW-Authenticate": 'Basic realm="CLA"'},
}


async def cla_exception_handler(request: Request, exc: ClaException) -> JSONResponse:
    """
    Log a ClaException and answer with its ``to_dict()`` payload.

    Caller mistakes (4xx) are logged as warnings, everything else as errors.
    A 401 carries the basic-auth challenge so browsers prompt for credentials.

    Args:
        request: FastAPI request object
        exc: ClaException instance

    Returns:
        JSONResponse with error, message and details
    """
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        level,
        f"{exc.error_code.value}: {exc.message}",
        extra={
            "error_code": exc.error_code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
            "status_code": exc.status_code,
        },
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=_CHALLENGES.get(exc.error_code),
    )
