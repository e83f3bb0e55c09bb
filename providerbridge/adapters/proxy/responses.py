"""Error responses emitted by the proxy."""

from __future__ import annotations

from fastapi.responses import JSONResponse

PROXY_ERROR_TYPE = "proxy_error"


def proxy_error_response(status_code: int, message: str) -> JSONResponse:
    detail = (message or "").strip() or "proxy error"
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": detail,
                "type": PROXY_ERROR_TYPE,
                "code": status_code,
            }
        },
    )
