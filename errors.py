"""Error taxonomy and the error envelope returned by story-relay."""
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class RelayError(Exception):
    """Base class for errors raised by the relay core."""


class RelayValidationError(RelayError):
    """Request failed structural validation before any downstream call."""

    def __init__(self, field_errors: Dict[str, str]):
        super().__init__(f"Invalid input parameters: {field_errors}")
        self.field_errors = field_errors


class AuthenticationError(RelayError):
    """Missing, malformed or expired credential.

    The message is deliberately the same for every cause.
    """

    MESSAGE = "Invalid or missing authentication token"

    def __init__(self, reason: str = ""):
        super().__init__(self.MESSAGE)
        self.reason = reason


class AuthorizationError(RelayError):
    """Valid credential that lacks permission for the resource."""

    MESSAGE = "You don't have permission to access this resource"

    def __init__(self, reason: str = ""):
        super().__init__(self.MESSAGE)
        self.reason = reason


class AiServerError(RelayError):
    """A downstream AI server failed, timed out or answered with nothing usable."""

    def __init__(self, server_type: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"[{server_type}] {message}")
        self.server_type = server_type
        self.cause = cause


class ErrorResponse(BaseModel):
    """Standard error envelope; one is built per failure."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    status: int
    error: str
    message: str
    path: str = "unknown"
    validation_errors: Optional[Dict[str, str]] = Field(default=None, alias="validationErrors")

    def to_content(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def validation_errors_from(errors) -> Dict[str, str]:
    """Flatten pydantic/FastAPI error dicts into ``{field path: message}``."""
    fields: Dict[str, str] = {}
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = ".".join(loc) or "body"
        fields.setdefault(field, error.get("msg", "Invalid value"))
    return fields
