from __future__ import annotations

from typing import Any


class GameError(Exception):
    code = "game_error"
    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(GameError):
    code = "validation_error"
    status_code = 400


class AuthError(GameError):
    code = "auth_error"
    status_code = 401


class NoSessionError(AuthError):
    code = "no_session"


class TransientBackendError(GameError):
    code = "backend_unavailable"
    status_code = 503


class SchemaError(TransientBackendError):
    """The backend rejected a write because it does not know an attribute."""

    code = "unknown_attribute"

    def __init__(self, message: str, attribute: str = ""):
        super().__init__(message)
        self.attribute = attribute


class WriteRetriesExhausted(TransientBackendError):
    code = "write_retries_exhausted"


class ConflictError(GameError):
    code = "conflict"
    status_code = 409


class DocumentNotFound(GameError):
    code = "document_not_found"
    status_code = 404


class RemoteError(GameError):
    code = "remote_error"
    status_code = 502


class StateConflictError(GameError):
    code = "state_conflict"
    status_code = 409


class NotHostError(StateConflictError):
    code = "not_host"
    status_code = 403


class GameNotFoundError(StateConflictError):
    code = "game_not_found"
    status_code = 404


class StartGateError(StateConflictError):
    code = "start_blocked"
    status_code = 400


class NoPromptsAvailable(StateConflictError):
    code = "no_prompts"


class SelfVoteError(GameError):
    code = "self_vote"
    status_code = 400


class AlreadyVotedError(GameError):
    code = "already_voted"
    status_code = 409


def build_error_payload(
    *,
    code: str,
    message: str,
    details: Any = None,
) -> dict[str, Any]:
    payload = {
        "code": str(code).strip() or "unknown_error",
        "message": str(message).strip() or "Unknown error.",
        "details": details if details is not None else {},
    }
    # Older page scripts read "error" directly.
    payload["error"] = payload["message"]
    return payload
