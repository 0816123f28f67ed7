import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_URL = "http://localhost:8000"
DEFAULT_REDIRECT_URI = "http://localhost:8765/auth/callback"
DEFAULT_SESSION_FILE = "taskpilot_session.json"
DEFAULT_REQUEST_TIMEOUT = 30.0


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


class Settings(BaseModel):
    """
    Process-wide configuration. Resolved once at startup; never reloaded.
    """
    model_config = ConfigDict(frozen=True)

    auth_url: str
    auth_public_key: str
    backend_url: str = DEFAULT_BACKEND_URL
    redirect_uri: str = DEFAULT_REDIRECT_URI
    session_file: str = DEFAULT_SESSION_FILE
    request_timeout: float = Field(DEFAULT_REQUEST_TIMEOUT, gt=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """
        Build settings from environment variables, loading a .env file first.

        Raises:
            ValueError: If the identity provider URL or public key is missing.
        """
        load_dotenv(env_file)

        auth_url = _first_env("TASKPILOT_AUTH_URL", "SUPABASE_URL")
        auth_public_key = _first_env("TASKPILOT_AUTH_PUBLIC_KEY", "SUPABASE_ANON_KEY")
        if not auth_url:
            raise ValueError("TASKPILOT_AUTH_URL is not set in environment or .env file.")
        if not auth_public_key:
            raise ValueError("TASKPILOT_AUTH_PUBLIC_KEY is not set in environment or .env file.")

        timeout_raw = os.environ.get("TASKPILOT_REQUEST_TIMEOUT")
        try:
            request_timeout = float(timeout_raw) if timeout_raw else DEFAULT_REQUEST_TIMEOUT
        except ValueError:
            raise ValueError(f"Invalid TASKPILOT_REQUEST_TIMEOUT value: {timeout_raw!r}")

        settings = cls(
            auth_url=auth_url.rstrip("/"),
            auth_public_key=auth_public_key,
            backend_url=(os.environ.get("TASKPILOT_BACKEND_URL") or DEFAULT_BACKEND_URL).rstrip("/"),
            redirect_uri=os.environ.get("TASKPILOT_REDIRECT_URI") or DEFAULT_REDIRECT_URI,
            session_file=os.environ.get("TASKPILOT_SESSION_FILE") or DEFAULT_SESSION_FILE,
            request_timeout=request_timeout,
            log_level=(os.environ.get("TASKPILOT_LOG_LEVEL") or "INFO").upper(),
        )
        logger.debug(f"Loaded settings: auth_url={settings.auth_url}, backend_url={settings.backend_url}")
        return settings
