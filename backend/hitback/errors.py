from __future__ import annotations

from typing import Any, Dict, Optional


class GameError(Exception):
    """Expected gameplay failure; converted to a structured result at the store boundary."""

    code = "GAME_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(GameError):
    code = "VALIDATION_ERROR"


class InvalidTokenError(ValidationError):
    code = "INVALID_TOKEN"


class NotFoundError(GameError):
    code = "NOT_FOUND"


class StateError(GameError):
    code = "STATE_ERROR"


class ExternalServiceError(GameError):
    # raised by the audio resolver, never surfaced from nextRound
    code = "EXTERNAL_SERVICE_ERROR"
