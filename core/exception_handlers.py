import logging

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from .response import error as resp_error

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict) and "code" in detail:
            return JSONResponse(status_code=exc.status_code, content=resp_error(code=detail["code"], message=detail.get("message", "")))
        return JSONResponse(status_code=exc.status_code, content=resp_error(code=str(exc.status_code), message=str(detail)))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("[api] Unhandled exception on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content=resp_error(code="internal_error", message="Internal server error"))
