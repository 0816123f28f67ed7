BASE_HEADERS = {
    'Accept': 'application/json',
    'Content-Type': 'application/json',
    'User-Agent': 'taskpilot/0.1',
}

GENERATE_TASKS_PATH = "/ai/generate-tasks"
CREATE_CARD_PATH = "/trello/create-card"

AUTHORIZE_PATH = "/auth/v1/authorize"
TOKEN_PATH = "/auth/v1/token"
LOGOUT_PATH = "/auth/v1/logout"

# Seconds before actual expiry at which a session is treated as expired.
TOKEN_EXPIRY_BUFFER = 60


class TaskPilotError(Exception):
    """Base class for errors raised by taskpilot collaborators."""
    kind = "upstream_error"


class AuthUnavailable(TaskPilotError):
    """The identity provider could not report the current session."""
    kind = "auth_unavailable"


class AuthRejected(TaskPilotError):
    """A backend or the identity provider refused the bearer credential."""
    kind = "auth_rejected"


class NetworkError(TaskPilotError):
    """The request never completed (unreachable host, timeout)."""
    kind = "network_error"


class UpstreamError(TaskPilotError):
    """The request completed but the remote side answered with an error."""
    kind = "upstream_error"

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class InputValidationError(TaskPilotError):
    """User input was rejected before any network call."""
    kind = "validation_error"


class NotAuthenticated(TaskPilotError):
    """An authenticated action was attempted without a session."""
    kind = "not_authenticated"
