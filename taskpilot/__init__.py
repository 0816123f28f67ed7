import logging
import sys

from .session_store import SessionStore
from .auth_gateway import AuthGateway, SupabaseAuthGateway, Subscription
from .service_clients import TaskServiceClient, BoardServiceClient
from .view_controller import ViewController, ViewState
from .settings import Settings

time_format = "%Y-%m-%d %I:%M.%S %p"

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
stream_handler = logging.StreamHandler(sys.stdout)

formatter = logging.Formatter(fmt='%(asctime)s - %(levelname)s - %(message)s', datefmt=time_format)
stream_handler.setFormatter(formatter)

logger.addHandler(stream_handler)
