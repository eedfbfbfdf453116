"""In-memory checkpoint store."""
import structlog
from .base import CheckpointStore
from ..event_models import ReplayToken, format_replay_token

log = structlog.get_logger()


class InMemoryCheckpointStore(CheckpointStore):
    """In-memory implementation of checkpoint store.

    Survives reconnects within one process, not restarts.
    """

    def __init__(self, token: ReplayToken | None = None):
        self._token = token

    async def save(self, token: ReplayToken) -> None:
        """Remember the token."""
        self._token = token
        log.debug("checkpoint.saved", replay_token=format_replay_token(token), store="memory")

    async def load(self) -> ReplayToken | None:
        """Return the remembered token."""
        return self._token
