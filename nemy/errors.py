from __future__ import annotations


class NemyError(Exception):
    """Base for domain failures that map onto a stable API error code."""

    code = "ERROR"
    status = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = dict(context)

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status),
        }
        if self.context:
            payload["context"] = {k: v for k, v in self.context.items() if v is not None}
        return payload


class ValidationError(NemyError):
    code = "VALIDATION_ERROR"
    status = 400


class AuthorizationError(NemyError):
    code = "FORBIDDEN"
    status = 403


class NotFoundError(NemyError):
    code = "NOT_FOUND"
    status = 404


class InvalidTransitionError(NemyError):
    code = "INVALID_TRANSITION"
    status = 409


class InsufficientFundsError(NemyError):
    code = "INSUFFICIENT_FUNDS"
    status = 409


class NoDriverAvailableError(NemyError):
    code = "NO_DRIVER_AVAILABLE"
    status = 409
