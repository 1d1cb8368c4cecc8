"""
Error taxonomy shared by the store, the engines and the HTTP layer.

Each error carries the HTTP status it maps to, so route handlers never
translate by hand.
"""
from typing import Any, Dict, List, Optional


class DispatchError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message}


class ValidationFailed(DispatchError):
    """Client-correctable field errors. ``errors`` lists every violated field."""

    status_code = 400

    def __init__(self, errors: List[Dict[str, str]], message: str = "Validation failed"):
        super().__init__(message)
        self.errors = errors

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationFailed":
        return cls([{"field": field, "message": message}])

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationFailed":
        errors = []
        for err in exc.errors():
            loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
            errors.append({"field": ".".join(loc) or "__root__", "message": err.get("msg", "Invalid value")})
        return cls(errors)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "errors": self.errors}


class NotFound(DispatchError):
    status_code = 404


class Conflict(DispatchError):
    status_code = 409


class Internal(DispatchError):
    status_code = 500

    def __init__(self, message: str = "Internal server error", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
