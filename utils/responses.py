"""
Normalized JSON envelope: {"ok", "data", "error", "message"}
"""
from fastapi.responses import JSONResponse

from errors import AppError


def _envelope(ok: bool, data, error, message: str) -> dict:
    return {"ok": ok, "data": data or {}, "error": error, "message": message}


def success_response(data=None, message="OK", status=200):
    return JSONResponse(status_code=status, content=_envelope(True, data, None, message))


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(status_code=status, content=_envelope(False, data, error_code, message))


def app_error_response(exc: AppError):
    """Render any error from the taxonomy with its own status code."""
    return error_response(exc.error_code, status=exc.status_code, message=exc.message)
