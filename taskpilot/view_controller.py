import enum
import logging
from typing import Callable, List, Optional, Tuple

from .auth_gateway import AuthGateway, Subscription
from .constants import TaskPilotError
from .models import AuthEvent, Notification, NotificationKind, Session, Task, UserIdentity
from .service_clients import BoardServiceClient, TaskServiceClient
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class ViewState(str, enum.Enum):
    LOGGED_OUT = "logged_out"
    IDLE = "idle"
    GENERATING = "generating"
    SENDING = "sending"


class ViewController:
    """
    Owns the UI state (prompt, target list, generated tasks, in-flight flags) and
    coordinates the auth gateway and backend clients.

    Every user action checks the session store first and is refused without a
    session. Failures become notifications; no action raises to the caller.

    Use as an async context manager, or call start() and close() explicitly:

        async with ViewController(gateway, task_client, board_client) as controller:
            await controller.generate("Plan a launch")
    """

    def __init__(self,
                 auth_gateway: AuthGateway,
                 task_client: TaskServiceClient,
                 board_client: BoardServiceClient,
                 session_store: Optional[SessionStore] = None,
                 on_notify: Optional[Callable[[Notification], None]] = None,
                 on_state_change: Optional[Callable[[ViewState], None]] = None):
        self.auth_gateway = auth_gateway
        self.task_client = task_client
        self.board_client = board_client
        self.session_store = session_store or SessionStore()
        self.on_notify = on_notify
        self.on_state_change = on_state_change

        self.prompt: str = ""
        self.list_id: str = ""
        self.tasks: Tuple[Task, ...] = ()
        self.generating: bool = False
        self.sending: bool = False
        self.notifications: List[Notification] = []

        self._active = False
        self._subscription: Optional[Subscription] = None
        self._remove_store_listener: Optional[Callable[[], None]] = None
        self._auth_events_seen = 0
        self._last_state: Optional[ViewState] = None

    async def __aenter__(self) -> "ViewController":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def session(self) -> Optional[Session]:
        return self.session_store.current()

    @property
    def user(self) -> Optional[UserIdentity]:
        session = self.session_store.current()
        return session.user if session else None

    @property
    def state(self) -> ViewState:
        if self.session_store.current() is None:
            return ViewState.LOGGED_OUT
        if self.generating:
            return ViewState.GENERATING
        if self.sending:
            return ViewState.SENDING
        return ViewState.IDLE

    async def start(self) -> None:
        """
        Subscribe to session changes and load the current session.

        A failed session lookup is reported and treated as logged out. If start()
        itself fails, every registration made so far is released.
        """
        if self._active:
            return
        self._active = True
        try:
            self._remove_store_listener = self.session_store.on_change(self._on_session_changed)
            self._subscription = self.auth_gateway.subscribe(self._on_auth_event)

            events_before = self._auth_events_seen
            try:
                session = await self.auth_gateway.get_current_session()
            except TaskPilotError as e:
                logger.warning(f"Could not load current session, continuing signed out: {e}")
                self._notify(NotificationKind.AUTH_UNAVAILABLE, "Could not check your sign-in status. You appear signed out.")
                session = None
            except Exception as e:
                logger.error(f"Unexpected error loading current session, continuing signed out: {e}", exc_info=True)
                self._notify(NotificationKind.AUTH_UNAVAILABLE, "Could not check your sign-in status. You appear signed out.")
                session = None

            # A notification delivered while the lookup was pending is newer than its result
            if self._active and self._auth_events_seen == events_before:
                self.session_store.set(session)
            self._state_changed()
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        """Release the gateway subscription and store listener. Safe to call repeatedly."""
        self._active = False
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._remove_store_listener is not None:
            self._remove_store_listener()
            self._remove_store_listener = None

    def _on_auth_event(self, event: AuthEvent, session: Optional[Session]) -> None:
        if not self._active:
            logger.debug(f"Ignoring auth event {event.value} after close")
            return
        self._auth_events_seen += 1
        self.session_store.set(session)

    def _on_session_changed(self, previous: Optional[Session], current: Optional[Session]) -> None:
        if current is None or (previous is not None and previous.user.id != current.user.id):
            self.tasks = ()
        if current is not None and previous is None:
            logger.info(f"Signed in as {current.user.display_name}")
        elif current is None:
            logger.info("Signed out")
        self._state_changed()

    def sign_in(self, provider: str = "github") -> Optional[str]:
        """
        Start the provider's sign-in flow. The controller becomes signed in only when
        the gateway later reports the new session.

        Returns:
            The authorization URL, or None if the request was refused or failed.
        """
        if self.session_store.is_authenticated:
            self._notify(NotificationKind.INFO, "You are already signed in.")
            return None
        try:
            return self.auth_gateway.sign_in(provider)
        except TaskPilotError as e:
            logger.error(f"Sign-in with {provider} failed to start: {e}")
            self._notify_error(e)
            return None

    async def sign_out(self) -> bool:
        """
        Sign out optimistically: local session and tasks are cleared before the
        provider confirms.
        """
        if not self.session_store.is_authenticated:
            self._notify(NotificationKind.NOT_AUTHENTICATED, "You are not signed in.")
            return False

        self.tasks = ()
        self.session_store.clear()
        try:
            await self.auth_gateway.sign_out()
        except TaskPilotError as e:
            logger.error(f"Identity provider sign-out failed: {e}")
            self._notify_error(e)
        except Exception as e:
            logger.error(f"Unexpected error during sign-out: {e}", exc_info=True)
            self._notify(NotificationKind.UPSTREAM_ERROR, "Sign-out could not be confirmed with the provider.")
        else:
            self._notify(NotificationKind.SUCCESS, "Signed out.")
        return True

    async def generate(self, prompt: Optional[str] = None) -> bool:
        """
        Generate tasks for `prompt` (or the stored prompt) and replace the task list.

        Returns:
            True if the task list was replaced.
        """
        if prompt is not None:
            self.prompt = prompt
        if not self.prompt or not self.prompt.strip():
            return False

        session = self.session_store.current()
        if session is None:
            self._notify(NotificationKind.NOT_AUTHENTICATED, "Please sign in to generate tasks.")
            return False
        if self.generating:
            logger.info("Task generation already in progress; ignoring duplicate request")
            return False

        self.generating = True
        self._state_changed()
        try:
            tasks = await self.task_client.generate_tasks(self.prompt, session)
            accepted = self._accepts_result_for(session)
            if accepted:
                self.tasks = tuple(tasks)
        except TaskPilotError as e:
            logger.error(f"Task generation failed: {e}")
            self._notify_error(e)
            return False
        except Exception as e:
            logger.error(f"Unexpected error during task generation: {e}", exc_info=True)
            self._notify(NotificationKind.UPSTREAM_ERROR, "Failed to generate tasks.")
            return False
        finally:
            self.generating = False
            self._state_changed()

        if not accepted:
            logger.info("Discarding generated tasks: session changed while the request was in flight")
            return False

        self._notify(NotificationKind.SUCCESS, f"Generated {len(self.tasks)} task(s).")
        return True

    async def send_to_board(self, task: Task, list_id: Optional[str] = None) -> bool:
        """
        Create a Trello card for `task` in `list_id` (or the stored list id).

        Returns:
            True if the card was created.
        """
        if list_id is not None:
            self.list_id = list_id

        session = self.session_store.current()
        if session is None:
            self._notify(NotificationKind.NOT_AUTHENTICATED, "Please sign in to send tasks to Trello.")
            return False
        target = (self.list_id or "").strip()
        if not target:
            self._notify(NotificationKind.VALIDATION_ERROR, "Please enter a Trello list ID.")
            return False
        if self.sending:
            logger.info("A card is already being sent; ignoring duplicate request")
            return False

        self.sending = True
        self._state_changed()
        try:
            await self.board_client.create_card(target, task, session)
        except TaskPilotError as e:
            logger.error(f"Sending task '{task.title}' to Trello failed: {e}")
            self._notify_error(e)
            return False
        except Exception as e:
            logger.error(f"Unexpected error sending task to Trello: {e}", exc_info=True)
            self._notify(NotificationKind.UPSTREAM_ERROR, "Failed to send task to Trello.")
            return False
        finally:
            self.sending = False
            self._state_changed()

        self._notify(NotificationKind.SUCCESS, f"Task '{task.title}' sent to Trello.")
        return True

    def _accepts_result_for(self, session: Session) -> bool:
        current = self.session_store.current()
        return self._active and current is not None and current.user.id == session.user.id

    def _notify_error(self, error: TaskPilotError) -> None:
        try:
            kind = NotificationKind(error.kind)
        except ValueError:
            kind = NotificationKind.UPSTREAM_ERROR
        self._notify(kind, str(error) or kind.value.replace("_", " "))

    def _notify(self, kind: NotificationKind, message: str) -> None:
        if not self._active:
            logger.debug(f"Dropping notification after close: {message}")
            return
        notification = Notification(kind=kind, message=message)
        self.notifications.append(notification)
        if notification.is_error:
            logger.warning(f"[{kind.value}] {message}")
        else:
            logger.info(message)
        if self.on_notify is not None:
            try:
                self.on_notify(notification)
            except Exception as e:
                logger.error(f"Notification handler failed: {e}", exc_info=True)

    def _state_changed(self) -> None:
        if not self._active:
            return
        state = self.state
        if state == self._last_state:
            return
        self._last_state = state
        if self.on_state_change is not None:
            try:
                self.on_state_change(state)
            except Exception as e:
                logger.error(f"State change handler failed: {e}", exc_info=True)
