"""
Translate exceptions raised under API routes into HTTP errors.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from loadbench.errors import (
    AlreadyTerminal,
    CapacityExceeded,
    LoadBenchError,
    NotFoundError,
    RunCompleting,
    RunNotActive,
)

logger = logging.getLogger(__name__)


def http_exception(action: str, e: Exception) -> HTTPException:
    """
    Map ``e`` to an HTTPException.

    Known domain errors keep their message; anything else is logged with
    its traceback and surfaces as a 500 with a short detail.
    """
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if isinstance(e, (AlreadyTerminal, RunCompleting, RunNotActive)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    if isinstance(e, CapacityExceeded):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"reason": e.reason.value, "message": e.message},
        )
    if isinstance(e, LoadBenchError):
        logger.warning("Failed to %s: %s", action, e.message)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}: {e.message}",
        )

    logger.error("Failed to %s: %s", action, e, exc_info=e)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}",
    )
