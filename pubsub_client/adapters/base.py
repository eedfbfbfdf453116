"""Base interfaces for event bus transports."""
from abc import ABC, abstractmethod
from typing import AsyncIterator
from ..event_models import EventBatch, SubscriptionRequest


class StreamTransport(ABC):
    """Abstract interface for the streaming side of an event bus."""

    @abstractmethod
    def open_stream(self, request: SubscriptionRequest) -> AsyncIterator[EventBatch]:
        """
        Open a server-streaming subscription.

        Implementations are async generators. Closing the iterator
        (``aclose()``) cancels the underlying call.

        Args:
            request: The validated subscription request

        Returns:
            Async iterator of event batches in bus order

        Raises:
            TransportError: If the stream fails to open or breaks
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None

    @property
    def name(self) -> str:
        """Return the transport name for logging."""
        return self.__class__.__name__


class SchemaSource(ABC):
    """Abstract interface for topic and schema metadata lookups."""

    @abstractmethod
    async def get_topic_schema_id(self, topic: str) -> str:
        """
        Look up the schema identifier of a topic.

        Raises:
            TransportError: If the lookup fails
        """
        pass

    @abstractmethod
    async def get_schema_definition(self, schema_id: str) -> str:
        """
        Fetch a schema definition as JSON text.

        Raises:
            TransportError: If the lookup fails
        """
        pass
