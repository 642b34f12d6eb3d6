from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ErrorCode:
    code: str
    message: str


ENGINE_UNAVAILABLE = ErrorCode("engine_unavailable", "Chess engine service is not available.")
AI_UNAVAILABLE = ErrorCode("ai_unavailable", "AI service is unavailable or returned no usable answer.")
TIMEOUT = ErrorCode("timeout", "Operation exceeded its time budget.")
BAD_REQUEST = ErrorCode("bad_request", "Request payload is invalid.")
PAYLOAD_TOO_LARGE = ErrorCode("payload_too_large", "Screenshot file is too large. Please use a smaller image.")
INTERNAL = ErrorCode("internal", "An unexpected error occurred. Please try again later.")


def format_error(code: ErrorCode, *, detail: Optional[str] = None) -> Dict[str, Any]:
    return {"code": code.code, "message": code.message, "detail": detail}


class InvalidInputError(ValueError):
    """Raised when a coaching request is malformed (empty image, wrong type, ...)."""


class UploadTooLargeError(InvalidInputError):
    """Raised when the uploaded screenshot exceeds the configured size limit."""


class CoachingError(Exception):
    """
    Raised when the coaching pipeline fails in a way no step could recover from.

    Carries the request context so the failure can be logged with enough detail
    to reproduce it.
    """

    def __init__(self, message: str, *, moves: Optional[str] = None,
                 analysis_depth: Optional[int] = None, move_number: Optional[int] = None):
        super().__init__(message)
        self.moves = moves
        self.analysis_depth = analysis_depth
        self.move_number = move_number

    def __str__(self) -> str:
        text = super().__str__()
        if self.__cause__ is not None:
            text += f" (caused by: {self.__cause__})"
        return text

    def context(self) -> Dict[str, Any]:
        return {
            "moves": self.moves,
            "analysis_depth": self.analysis_depth,
            "move_number": self.move_number,
        }
