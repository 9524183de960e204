"""Engine error taxonomy.

Every failure the engine surfaces is an ``EngineError`` carrying a stable
``code`` and a human readable ``message``, so a presentation layer can render
it without inspecting exception types.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "ENGINE_ERROR"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        """Structured ``{code, message}`` form of the error."""
        return {"code": self.code, "message": self.message}


class ValidationError(EngineError):
    """Operation not allowed in the current state or with the given input."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(EngineError):
    """Unknown record id."""

    code = "NOT_FOUND"
    http_status = 404


class StoreError(EngineError):
    """Transport or persistence failure in the Data Store."""

    code = "STORE_ERROR"
    http_status = 502


class ConflictError(EngineError):
    """Invalid payment status transition or double-billed entry."""

    code = "CONFLICT"
    http_status = 409


class AuthError(EngineError):
    """No current actor."""

    code = "AUTH_ERROR"
    http_status = 401
