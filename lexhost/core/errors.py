from __future__ import annotations

from typing import Any


class LexhostError(Exception):
    """Base error for lexhost."""

    error_name = "InternalServerError"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class SchemaValidationError(LexhostError):
    """Lexicon document does not match the lexicon grammar."""

    error_name = "InvalidLexicon"
    status_code = 400

    def __init__(self, message: str, *, path: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(f"{path}: {message}" if path else message, details=details)
        self.path = path


class InvalidScriptError(LexhostError):
    """Method script failed to compile or lacks a handle() entry point."""

    error_name = "InvalidScript"
    status_code = 400


class MissingScriptError(LexhostError):
    """Query/procedure lexicon uploaded without a script."""

    error_name = "MissingScript"
    status_code = 400


class RecordValidationError(LexhostError):
    """Record payload violates its lexicon record schema."""

    error_name = "InvalidRecord"
    status_code = 400


class InvalidParamsError(LexhostError):
    """Query parameters failed lexicon validation."""

    error_name = "InvalidParams"
    status_code = 400


class InvalidInputError(LexhostError):
    """Procedure input failed lexicon validation."""

    error_name = "InvalidInput"
    status_code = 400


class AuthRequiredError(LexhostError):
    """Procedure invoked without an authenticated caller DID."""

    error_name = "AuthenticationRequired"
    status_code = 401


class NotFoundError(LexhostError):
    """Lexicon, record, admin or job does not exist."""

    error_name = "NotFound"
    status_code = 404


class MethodNotFoundError(LexhostError):
    """Unknown XRPC method or wrong dispatch path for its lexicon type."""

    error_name = "MethodNotFound"
    status_code = 404


class ConflictError(LexhostError):
    """Concurrent writers exhausted the compare-and-swap retry bound."""

    error_name = "Conflict"
    status_code = 409


class ScriptError(LexhostError):
    """User script raised or returned a value of the wrong shape."""

    error_name = "ScriptError"
    status_code = 500


class ScriptTimeoutError(ScriptError):
    """User script exceeded its execution budget."""

    error_name = "ScriptTimeout"
    status_code = 504
