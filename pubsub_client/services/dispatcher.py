"""Per-event dispatch with failure isolation."""
import base64
import inspect
import time
from typing import Awaitable, Callable, Dict, Union
import structlog
from .schema_resolver import SchemaResolver
from ..decoding import decode_schemaless, decode_with_schema
from ..errors import DecodeError, HandlerError
from ..event_models import DecodedEvent, EventEnvelope, SchemaRef, format_replay_token
from ..metrics import SubscriberMetrics

log = structlog.get_logger()

# Handler receives (decoded fields, event attributes); returning False marks a failure
EventHandler = Callable[[DecodedEvent, Dict[str, str]], Union[Awaitable[bool | None], bool, None]]


class EventDispatcher:
    """
    Decode events and hand them to the caller's handler.

    Delivery is at-most-once and best-effort: an event that fails to decode
    or whose handler fails is logged with its replay token and skipped. The
    failure never propagates to the stream.
    """

    def __init__(self, resolver: SchemaResolver | None = None, metrics: SubscriberMetrics | None = None):
        """
        Initialize dispatcher.

        Args:
            resolver: Schema resolver; without one every event is decoded schema-less
            metrics: Optional metrics sink
        """
        self._resolver = resolver
        self._metrics = metrics
        self._topic = "unknown"
        self._topic_schema: SchemaRef | None = None

    async def prepare(self, topic: str) -> SchemaRef | None:
        """
        Resolve the topic schema once at subscription setup.

        Returns:
            The topic schema, or None when decoding will be schema-less
        """
        self._topic = topic
        if self._resolver is None:
            self._topic_schema = None
            log.info("schema.disabled", topic=topic)
            return None

        self._topic_schema = await self._resolver.resolve_topic(topic)
        if self._topic_schema is None or self._topic_schema.definition is None:
            log.warning("schema.unavailable", topic=topic, fallback="schemaless")
        return self._topic_schema

    async def decode(self, envelope: EventEnvelope) -> DecodedEvent:
        """
        Decode an event payload.

        Raises:
            DecodeError: If schema-aware decoding fails
        """
        schema = await self._schema_for(envelope)
        if schema is not None and schema.definition is not None:
            return decode_with_schema(envelope.raw_payload, schema.definition)

        if self._metrics:
            self._metrics.record_schemaless(self._topic)
        return decode_schemaless(envelope.raw_payload)

    async def dispatch(self, envelope: EventEnvelope, handler: EventHandler) -> bool:
        """
        Decode one event and invoke the handler with it.

        Args:
            envelope: The received event
            handler: Caller logic taking (decoded fields, attributes)

        Returns:
            True if the event was decoded and handled successfully
        """
        replay_token = format_replay_token(envelope.replay_token)

        try:
            decoded = await self.decode(envelope)
            await self._invoke(handler, decoded, envelope)
        except DecodeError as e:
            log.error(
                "event.decode_failed",
                replay_token=replay_token,
                event_id=envelope.event_id,
                error=str(e),
                detail=e.detail,
                payload_size=len(envelope.raw_payload),
                raw_payload=base64.b64encode(envelope.raw_payload).decode("ascii"),
            )
            if self._metrics:
                self._metrics.record_failure(self._topic, "decode")
            return False
        except HandlerError as e:
            log.error(
                "event.handler_failed",
                replay_token=replay_token,
                event_id=envelope.event_id,
                error=str(e),
                exc_info=e.__cause__ or e,
            )
            if self._metrics:
                self._metrics.record_failure(self._topic, "handler")
            return False
        except Exception as e:
            # Handler errors arrive wrapped, so anything else came from decoding
            log.error(
                "event.decode_failed",
                replay_token=replay_token,
                event_id=envelope.event_id,
                error=str(e),
                error_type=type(e).__name__,
                payload_size=len(envelope.raw_payload),
                raw_payload=base64.b64encode(envelope.raw_payload).decode("ascii"),
            )
            if self._metrics:
                self._metrics.record_failure(self._topic, "decode")
            return False

        log.debug("event.processed", replay_token=replay_token, event_id=envelope.event_id)
        return True

    async def _schema_for(self, envelope: EventEnvelope) -> SchemaRef | None:
        """Pick the schema an event was written with."""
        if envelope.schema_id is None or self._resolver is None:
            return self._topic_schema
        if self._topic_schema is not None and self._topic_schema.schema_id == envelope.schema_id:
            return self._topic_schema
        return await self._resolver.resolve(envelope.schema_id)

    async def _invoke(self, handler: EventHandler, decoded: DecodedEvent, envelope: EventEnvelope):
        start_time = time.perf_counter()
        try:
            outcome = handler(decoded, dict(envelope.attributes))
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            raise HandlerError(f"Handler raised {type(e).__name__}: {e}") from e

        if outcome is False:
            raise HandlerError("Handler reported failure")

        if self._metrics:
            self._metrics.record_dispatched(self._topic, time.perf_counter() - start_time)
