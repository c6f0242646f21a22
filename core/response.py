DUPLICATE = "duplicate"
NOT_FOUND = "not_found"
LIMIT_EXCEEDED = "limit_exceeded"
INVALID_QUERY = "invalid_query"
STORE_ERROR = "store_error"

# HTTP status used by the API layer for each service error code
STATUS_BY_CODE = {
    DUPLICATE: 409,
    NOT_FOUND: 404,
    LIMIT_EXCEEDED: 403,
    INVALID_QUERY: 422,
    STORE_ERROR: 503,
}


def ok(data=None):
    """Standard success envelope."""
    return {"ok": True, "data": data, "error": None}


def error(code: str = "internal_error", message: str = "An internal error occurred"):
    """Standard error envelope."""
    return {"ok": False, "data": None, "error": {"code": code, "message": message}}


def error_code(result: dict):
    """Return the error code of an envelope, or None for a success."""
    err = result.get("error") or {}
    return err.get("code")
