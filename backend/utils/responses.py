from fastapi.responses import JSONResponse

# HTTP status -> error kind for failures raised as HTTPException
HTTP_ERROR_KINDS = {
    400: "bad-request",
    401: "unauthenticated",
    403: "forbidden",
    404: "not-found",
    409: "conflict",
    422: "validation-error",
    429: "rate-limited",
}


def success_response(data=None, message="OK", status=200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data if data is not None else {},
            "error": None,
            "message": message,
        }
    )


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": data if data is not None else {},
            "error": error_code,
            "message": message,
        }
    )


def chat_error_response(exc, data=None):
    """Envelope for a services.errors.ChatError; internal detail stays in the logs."""
    return error_response(exc.error_kind, status=exc.status_code, message=exc.public_message, data=data)
