from typing import List, Optional


class ChatError(Exception):
    """Base for failures reported back to the caller that caused them."""

    status_code = 500
    code = "server_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message, "code": self.code}


class AuthenticationFailure(ChatError):
    status_code = 401
    code = "not_authenticated"


class AuthorizationFailure(ChatError):
    status_code = 403
    code = "not_authorized"


class NotFound(ChatError):
    status_code = 404
    code = "not_found"


class ValidationFailure(ChatError):
    status_code = 400
    code = "validation_failed"

    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def field(cls, field: str, message: str) -> "ValidationFailure":
        return cls("Validation failed", [{"field": field, "message": message}])

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["errors"] = self.errors
        return out


class TransientStoreFailure(ChatError):
    code = "server_error"
