from __future__ import annotations


class ChatError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if code:
            self.code = code
        self.message = message or self.code.replace("_", " ").capitalize()
        super().__init__(self.message)

    def as_payload(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class ValidationError(ChatError):
    code = "VALIDATION_ERROR"
    status_code = 400


class Unauthorized(ChatError):
    code = "UNAUTHORIZED"
    status_code = 401


class NotFound(ChatError):
    code = "NOT_FOUND"
    status_code = 404


class Forbidden(ChatError):
    code = "FORBIDDEN"
    status_code = 403


class RateLimited(ChatError):
    code = "RATE_LIMITED"
    status_code = 429


class EngineUnavailable(ChatError):
    code = "ENGINE_UNAVAILABLE"
    status_code = 503


class EngineError(ChatError):
    code = "ENGINE_ERROR"
    status_code = 502


class GenerationCancelled(Exception):
    """Raised inside a turn once its cancellation signal fires. Not a failure."""
