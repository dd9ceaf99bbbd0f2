"""Map entity layer errors onto HTTP responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tross.core.errors import EntityServiceError

logger = logging.getLogger(__name__)


async def entity_error_handler(request: Request, exc: EntityServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.debug("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    """Install the EntityServiceError handler on *app*.

    Every subclass (UnknownEntity, ValidationError, PermissionDenied,
    NotFound, ProtectedResourceError, ConstraintError) is rendered as
    ``{error, code, message, ...}`` with its own status code.
    """
    app.add_exception_handler(EntityServiceError, entity_error_handler)
