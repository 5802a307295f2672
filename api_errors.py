from __future__ import annotations

from typing import Any

from flask import current_app, jsonify

from game_errors import GameError, build_error_payload


def error_response(
    *,
    status: int,
    code: str,
    message: str,
    details: Any = None,
):
    return jsonify(build_error_payload(code=code, message=message, details=details)), int(
        status
    )


def game_error_response(
    exc: Exception,
    *,
    log_label: str,
    unavailable_code: str = "service_unavailable",
    unavailable_message: str = "The game service is temporarily unavailable.",
):
    """Map a raised error to a JSON error response.

    Game errors keep their own status and message. Backend failures (status
    500 and up) and anything unexpected are logged and reported generically.
    """
    if not isinstance(exc, GameError):
        current_app.logger.error(
            "%s API failure", log_label, exc_info=(type(exc), exc, exc.__traceback__)
        )
        return error_response(status=500, code=unavailable_code, message=unavailable_message)

    status_code = int(getattr(exc, "status_code", 500))
    if status_code >= 500:
        current_app.logger.error("%s API failure: %s", log_label, exc)
        return error_response(
            status=status_code, code=unavailable_code, message=unavailable_message
        )
    return error_response(status=status_code, code=exc.code, message=str(exc))
