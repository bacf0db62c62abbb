from __future__ import annotations

from typing import Any

from flask import jsonify

ERROR_CODES_BY_STATUS = {
    400: "bad_request",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    412: "precondition_failed",
    500: "internal",
}


def error_code_for_status(status: int) -> str:
    return ERROR_CODES_BY_STATUS.get(int(status), "internal" if status >= 500 else "bad_request")


def build_error_payload(
    *,
    code: str,
    message: str,
    details: Any = None,
) -> dict[str, Any]:
    payload = {
        "code": str(code).strip() or "internal",
        "message": str(message).strip() or "Unknown error.",
        "details": details if details is not None else {},
    }
    # Older clients read "error".
    payload["error"] = payload["message"]
    return payload


def error_response(
    *,
    status: int,
    message: str,
    code: str | None = None,
    details: Any = None,
):
    resolved_code = code or error_code_for_status(status)
    return jsonify(
        build_error_payload(code=resolved_code, message=message, details=details)
    ), int(status)
