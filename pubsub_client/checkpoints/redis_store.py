"""Redis-backed checkpoint store."""
import structlog
from redis import Redis
from redis.exceptions import RedisError
from .base import CheckpointStore
from ..errors import CheckpointError
from ..event_models import ReplayToken, format_replay_token

log = structlog.get_logger()

KEY_PREFIX = "pubsub:checkpoint:"


class RedisCheckpointStore(CheckpointStore):
    """Redis implementation of checkpoint store.

    The last processed replay token of one subscription is kept under a
    single key, overwritten on every save.
    """

    def __init__(self, name: str, redis_url: str):
        """
        Initialize Redis checkpoint store.

        Args:
            name: Subscription name, usually the topic
            redis_url: Redis connection URL
        """
        self.redis_url = redis_url
        self._key = f"{KEY_PREFIX}{name}"
        self._client: Redis | None = None

    def _get_client(self) -> Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = Redis.from_url(
                self.redis_url,
                decode_responses=False,  # replay tokens are raw bytes
                socket_connect_timeout=5,
                socket_timeout=5
            )
        return self._client

    async def save(self, token: ReplayToken) -> None:
        """
        Store the replay token.

        Raises:
            CheckpointError: If unable to write to Redis
        """
        value = token.encode("utf-8") if isinstance(token, str) else bytes(token)
        try:
            self._get_client().set(self._key, value)
        except RedisError as e:
            log.error("redis.checkpoint_save_failed", error=str(e), key=self._key)
            raise CheckpointError(f"Failed to save checkpoint {self._key}: {e}") from e

        log.debug("checkpoint.saved", replay_token=format_replay_token(token), store="redis")

    async def load(self) -> ReplayToken | None:
        """
        Load the stored replay token.

        Raises:
            CheckpointError: If unable to read from Redis
        """
        try:
            value = self._get_client().get(self._key)
        except RedisError as e:
            log.error("redis.checkpoint_load_failed", error=str(e), key=self._key)
            raise CheckpointError(f"Failed to load checkpoint {self._key}: {e}") from e

        return bytes(value) if value is not None else None

    def close(self):
        """Close Redis connection."""
        if self._client:
            self._client.close()
            self._client = None
