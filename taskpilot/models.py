import enum
import logging
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .constants import TOKEN_EXPIRY_BUFFER

logger = logging.getLogger(__name__)


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AuthEvent(str, enum.Enum):
    """Session transitions reported by the identity provider."""
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


class NotificationKind(str, enum.Enum):
    SUCCESS = "success"
    INFO = "info"
    NOT_AUTHENTICATED = "not_authenticated"
    VALIDATION_ERROR = "validation_error"
    AUTH_UNAVAILABLE = "auth_unavailable"
    AUTH_REJECTED = "auth_rejected"
    NETWORK_ERROR = "network_error"
    UPSTREAM_ERROR = "upstream_error"


class UserIdentity(BaseModel):
    """The signed-in user as described by the identity provider."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return (
            self.user_metadata.get("full_name")
            or self.user_metadata.get("user_name")
            or self.email
            or self.id
        )


class Session(BaseModel):
    """Authenticated identity plus the bearer credential sent to the backend."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    user: UserIdentity
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None  # Unix timestamp
    token_type: str = "bearer"

    def is_expired(self, buffer_seconds: int = TOKEN_EXPIRY_BUFFER) -> bool:
        if self.expires_at is None:
            return False
        return time.time() >= (self.expires_at - buffer_seconds)


class Task(BaseModel):
    """A generated unit of work."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    title: str = Field(..., min_length=1)
    description: str = ""
    priority: Priority = Priority.MEDIUM

    @field_validator('priority', mode='before')
    @classmethod
    def normalize_priority(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator('description', mode='before')
    @classmethod
    def none_description_to_empty(cls, v):
        return "" if v is None else v


class GenerateTasksResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tasks: Optional[list[Task]] = None


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: NotificationKind
    message: str

    @property
    def is_error(self) -> bool:
        return self.kind not in (NotificationKind.SUCCESS, NotificationKind.INFO)


def _unwrap_session_payload(payload: Any) -> Optional[dict]:
    # Provider responses come as {"data": {"session": ...}}, {"session": ...} or the bare session.
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict) and "session" in data:
        payload = data.get("session")
    elif "session" in payload:
        payload = payload.get("session")
    if not isinstance(payload, dict) or not payload.get("access_token"):
        return None
    return payload


def extract_session(payload: Any) -> Optional[Session]:
    """
    Extract a Session from any identity-provider response.

    Returns None when the payload carries no session or the session is malformed;
    never raises for bad input.
    """
    raw = _unwrap_session_payload(payload)
    if raw is None:
        return None

    raw = dict(raw)
    if raw.get("expires_at") is None and raw.get("expires_in") is not None:
        try:
            raw["expires_at"] = time.time() + int(raw["expires_in"])
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid 'expires_in' value in session payload: {raw['expires_in']!r}")
            raw["expires_at"] = None

    try:
        return Session.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Discarding malformed session payload: {e.error_count()} validation error(s)")
        return None
