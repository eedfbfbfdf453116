"""gRPC event bus transport."""
from types import ModuleType
from typing import Any, AsyncIterator, Dict, Sequence
import structlog
import grpc
from .base import SchemaSource, StreamTransport
from ..errors import TransportError
from ..event_models import EventBatch, EventEnvelope, ReplayToken, SubscriptionRequest

log = structlog.get_logger()

DEFAULT_SERVICE = "eventbus.v1.PubSub"
MEGABYTE = 1024 * 1024


class GrpcTransport(StreamTransport, SchemaSource):
    """gRPC implementation of the event bus transport.

    Message classes come from the protobuf module generated from the bus API
    definition (``FetchRequest``, ``FetchResponse``, ``TopicRequest``,
    ``TopicInfo``, ``SchemaRequest``, ``SchemaInfo``). Subscribe is issued as
    a unary-stream call; topic and schema lookups are unary calls.
    """

    def __init__(
        self,
        endpoint: str,
        messages: ModuleType,
        service: str = DEFAULT_SERVICE,
        interceptors: Sequence[Any] | None = None,
        max_receive_message_mb: int = 100,
        channel: grpc.aio.Channel | None = None,
    ):
        """
        Initialize gRPC transport.

        Args:
            endpoint: host:port of the bus API
            messages: Generated protobuf module with the bus message classes
            service: Fully qualified gRPC service name
            interceptors: Client interceptors (e.g. auth header injection)
            max_receive_message_mb: Receive size limit for the channel
            channel: Pre-built channel (mainly for tests)
        """
        self.endpoint = endpoint
        self.service = service
        self._messages = messages
        self._interceptors = list(interceptors or [])
        self._max_receive_bytes = max_receive_message_mb * MEGABYTE
        self._channel = channel

    def _get_channel(self) -> grpc.aio.Channel:
        """Get or create the secure channel."""
        if self._channel is None:
            self._channel = grpc.aio.secure_channel(
                self.endpoint,
                grpc.ssl_channel_credentials(),
                options=[("grpc.max_receive_message_length", self._max_receive_bytes)],
                interceptors=self._interceptors,
            )
            log.info("grpc.channel_created", endpoint=self.endpoint)
        return self._channel

    def _method(self, name: str) -> str:
        return f"/{self.service}/{name}"

    async def open_stream(self, request: SubscriptionRequest) -> AsyncIterator[EventBatch]:
        """
        Open the Subscribe stream and translate responses into batches.

        Raises:
            TransportError: If the call fails to start or breaks mid-stream
        """
        fetch_request = self._messages.FetchRequest(
            topic_name=request.topic,
            replay_preset=request.replay_preset.value,
            replay_id=_token_bytes(request.replay_token),
            num_requested=request.requested_count,
        )
        subscribe = self._get_channel().unary_stream(
            self._method("Subscribe"),
            request_serializer=self._messages.FetchRequest.SerializeToString,
            response_deserializer=self._messages.FetchResponse.FromString,
        )

        call = subscribe(fetch_request)
        try:
            async for response in call:
                yield self._to_batch(response)
        except grpc.aio.AioRpcError as e:
            log.error("grpc.subscribe_failed", code=e.code().name, details=e.details())
            raise TransportError(
                f"Subscribe failed: {e.details()}", code=e.code().name
            ) from e
        finally:
            call.cancel()

    async def get_topic_schema_id(self, topic: str) -> str:
        """Look up the schema id of a topic via GetTopic."""
        response = await self._unary(
            "GetTopic",
            self._messages.TopicRequest(topic_name=topic),
            self._messages.TopicRequest,
            self._messages.TopicInfo,
        )
        log.info("grpc.topic_info", topic=topic, schema_id=response.schema_id)
        return response.schema_id

    async def get_schema_definition(self, schema_id: str) -> str:
        """Fetch a schema's JSON definition via GetSchema."""
        response = await self._unary(
            "GetSchema",
            self._messages.SchemaRequest(schema_id=schema_id),
            self._messages.SchemaRequest,
            self._messages.SchemaInfo,
        )
        log.info("grpc.schema_info", schema_id=schema_id)
        return response.schema_json

    async def _unary(self, name: str, request: Any, request_cls: Any, response_cls: Any) -> Any:
        call = self._get_channel().unary_unary(
            self._method(name),
            request_serializer=request_cls.SerializeToString,
            response_deserializer=response_cls.FromString,
        )
        try:
            return await call(request)
        except grpc.aio.AioRpcError as e:
            log.warning("grpc.call_failed", method=name, code=e.code().name, details=e.details())
            raise TransportError(f"{name} failed: {e.details()}", code=e.code().name) from e

    async def close(self) -> None:
        """Close the gRPC channel."""
        if self._channel is not None:
            await self._channel.close()
            self._channel = None
            log.info("grpc.channel_closed", endpoint=self.endpoint)

    @staticmethod
    def _to_batch(response: Any) -> EventBatch:
        """Translate a FetchResponse into an EventBatch."""
        events = []
        for consumer_event in response.events:
            producer_event = consumer_event.event
            events.append(
                EventEnvelope(
                    replay_token=bytes(consumer_event.replay_id),
                    attributes=_header_map(producer_event.headers),
                    raw_payload=bytes(producer_event.payload),
                    schema_id=producer_event.schema_id or None,
                    event_id=producer_event.id or None,
                )
            )
        return EventBatch(
            events=events,
            latest_replay_token=bytes(response.latest_replay_id) or None,
            pending_count=response.pending_num_requested,
        )


def _header_map(headers: Any) -> Dict[str, str]:
    attributes = {}
    for header in headers:
        value = header.value
        if isinstance(value, (bytes, bytearray)):
            value = bytes(value).decode("utf-8", errors="replace")
        attributes[header.key] = value
    return attributes


def _token_bytes(token: ReplayToken | None) -> bytes:
    if token is None:
        return b""
    if isinstance(token, (bytes, bytearray)):
        return bytes(token)
    try:
        return bytes.fromhex(token)
    except ValueError:
        return token.encode("utf-8")
