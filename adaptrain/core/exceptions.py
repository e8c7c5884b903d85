from fastapi import Request
from fastapi.responses import JSONResponse


class AdaptrainError(Exception):
    """Base exception for adaptrain errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class ConfigurationError(AdaptrainError):
    def __init__(self, message: str = "Invalid training configuration.", details: dict | None = None):
        super().__init__(code="configuration_error", message=message, status=400, details=details)


class InvalidStateError(AdaptrainError):
    def __init__(self, message: str = "Invalid session status transition.", details: dict | None = None):
        super().__init__(code="invalid_status_transition", message=message, status=409, details=details)


class NotFoundError(AdaptrainError):
    def __init__(self, message: str = "Resource not found.", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)


class ResourceError(AdaptrainError):
    def __init__(self, message: str = "Adapter resource unavailable.", details: dict | None = None):
        super().__init__(code="resource_error", message=message, status=500, details=details)


class TrainingError(AdaptrainError):
    def __init__(self, message: str = "Training step failed.", details: dict | None = None):
        super().__init__(code="training_error", message=message, status=500, details=details)


async def adaptrain_error_handler(request: Request, exc: AdaptrainError) -> JSONResponse:
    """Global exception handler for AdaptrainError and subclasses."""
    return JSONResponse(status_code=exc.status, content=exc.to_dict())
