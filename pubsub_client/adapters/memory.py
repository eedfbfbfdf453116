"""In-memory replay-capable event bus transport."""
import asyncio
from collections import defaultdict
from collections.abc import Mapping
from typing import Any, AsyncIterator, Dict, List, Tuple
from uuid import uuid4

from fastavro.schema import fingerprint
import orjson
import structlog

from .base import SchemaSource, StreamTransport
from ..decoding import encode_with_schema, load_schema
from ..errors import TransportError
from ..event_models import (
    EventBatch,
    EventEnvelope,
    ReplayPreset,
    ReplayToken,
    SubscriptionRequest,
)

log = structlog.get_logger()

TOKEN_WIDTH = 8


class InMemoryTransport(StreamTransport, SchemaSource):
    """In-memory implementation of the event bus transport.

    Keeps an append-only log per topic. Replay tokens are the 8-byte
    big-endian log position of each event. Finite requests end the stream
    once their credits are spent; unbounded requests wait for new events
    until the transport is closed.
    """

    def __init__(self, batch_size: int = 100, close_when_drained: bool = False):
        """
        Initialize in-memory transport.

        Args:
            batch_size: Maximum events per delivered batch
            close_when_drained: End every stream once the log is exhausted
                instead of waiting for new events
        """
        self.batch_size = batch_size
        self.close_when_drained = close_when_drained
        self.requests: List[SubscriptionRequest] = []
        self._logs: Dict[str, List[EventEnvelope]] = defaultdict(list)
        self._topic_schemas: Dict[str, str] = {}
        self._schemas: Dict[str, str] = {}
        self._failures: Dict[str, Tuple[int, Exception]] = {}
        self._condition = asyncio.Condition()
        self._closed = False

    def register_schema(self, topic: str, schema: str | Mapping[str, Any]) -> str:
        """
        Attach an Avro schema to a topic.

        Returns:
            The schema identifier (CRC-64-AVRO fingerprint)
        """
        schema_json = schema if isinstance(schema, str) else orjson.dumps(dict(schema)).decode()
        parsed = load_schema(schema_json)
        schema_id = fingerprint(parsed, "CRC-64-AVRO")
        self._schemas[schema_id] = schema_json
        self._topic_schemas[topic] = schema_id
        log.info("schema.registered", topic=topic, schema_id=schema_id, transport="memory")
        return schema_id

    async def publish(
        self,
        topic: str,
        payload: bytes,
        attributes: Dict[str, str] | None = None,
        schema_id: str | None = None,
    ) -> EventEnvelope:
        """Append a raw event to the topic log and wake waiting streams."""
        async with self._condition:
            topic_log = self._logs[topic]
            envelope = EventEnvelope(
                replay_token=len(topic_log).to_bytes(TOKEN_WIDTH, "big"),
                attributes=attributes or {},
                raw_payload=payload,
                schema_id=schema_id,
                event_id=str(uuid4()),
            )
            topic_log.append(envelope)
            self._condition.notify_all()

        log.debug("event.published", topic=topic, event_id=envelope.event_id, transport="memory")
        return envelope

    async def publish_record(
        self,
        topic: str,
        record: Mapping[str, Any],
        attributes: Dict[str, str] | None = None,
    ) -> EventEnvelope:
        """Encode a record with the topic schema and publish it."""
        schema_id = self._topic_schemas.get(topic)
        if schema_id is None:
            raise ValueError(f"No schema registered for topic {topic}")
        payload = encode_with_schema(self._schemas[schema_id], record)
        return await self.publish(topic, payload, attributes=attributes, schema_id=schema_id)

    def fail_stream(self, topic: str, error: Exception, after_events: int = 0):
        """Make the next stream on a topic raise ``error`` after some events."""
        self._failures[topic] = (after_events, error)

    async def open_stream(self, request: SubscriptionRequest) -> AsyncIterator[EventBatch]:
        """Stream the topic log starting at the requested replay position."""
        self.requests.append(request)
        topic_log = self._logs[request.topic]
        position = self._start_position(request, len(topic_log))
        budget = request.requested_count or None
        delivered = 0

        log.info(
            "stream.opened",
            topic=request.topic,
            replay_preset=request.replay_preset.value,
            position=position,
            transport="memory",
        )

        while budget is None or delivered < budget:
            failure = self._failures.get(request.topic)
            if failure is not None and delivered >= failure[0]:
                del self._failures[request.topic]
                raise failure[1]

            async with self._condition:
                while position >= len(topic_log):
                    if self._closed or self.close_when_drained:
                        return
                    await self._condition.wait()

                end = min(len(topic_log), position + self.batch_size)
                if budget is not None:
                    end = min(end, position + budget - delivered)
                if failure is not None:
                    end = min(end, position + failure[0] - delivered)
                events = topic_log[position:end]

            position = end
            delivered += len(events)
            yield EventBatch(
                events=events,
                latest_replay_token=events[-1].replay_token,
                pending_count=None if budget is None else budget - delivered,
            )

    async def get_topic_schema_id(self, topic: str) -> str:
        schema_id = self._topic_schemas.get(topic)
        if schema_id is None:
            raise TransportError(f"Unknown topic: {topic}", code="NOT_FOUND")
        return schema_id

    async def get_schema_definition(self, schema_id: str) -> str:
        schema_json = self._schemas.get(schema_id)
        if schema_json is None:
            raise TransportError(f"Unknown schema: {schema_id}", code="NOT_FOUND")
        return schema_json

    async def close(self) -> None:
        """Close the bus; open unbounded streams end normally."""
        async with self._condition:
            self._closed = True
            self._condition.notify_all()
        log.info("transport.closed", transport="memory")

    @staticmethod
    def _start_position(request: SubscriptionRequest, log_length: int) -> int:
        if request.replay_preset == ReplayPreset.EARLIEST:
            return 0
        if request.replay_preset == ReplayPreset.LATEST:
            return log_length
        return min(log_length, _token_position(request.replay_token) + 1)


def _token_position(token: ReplayToken | None) -> int:
    try:
        raw = bytes.fromhex(token) if isinstance(token, str) else bytes(token)
    except (TypeError, ValueError) as e:
        raise TransportError(f"Invalid replay token: {token!r}", code="INVALID_ARGUMENT") from e
    if len(raw) != TOKEN_WIDTH:
        raise TransportError(f"Invalid replay token: {token!r}", code="INVALID_ARGUMENT")
    return int.from_bytes(raw, "big")
