"""Base interface for replay checkpoint stores."""
from abc import ABC, abstractmethod
from ..event_models import ReplayToken


class CheckpointStore(ABC):
    """Abstract interface for persisting the last processed replay token."""

    @abstractmethod
    async def save(self, token: ReplayToken) -> None:
        """
        Record the replay token of the last processed event.

        Args:
            token: Replay token to store

        Raises:
            CheckpointError: If the token could not be stored
        """
        pass

    @abstractmethod
    async def load(self) -> ReplayToken | None:
        """
        Return the last stored replay token.

        Returns:
            The stored token, or None if nothing was saved yet

        Raises:
            CheckpointError: If the store could not be read
        """
        pass

    def close(self):
        """Release store resources."""
        return None
