"""Tests for event bus transports."""
import asyncio
from types import SimpleNamespace
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
import grpc
from pubsub_client.adapters.auth import AuthMetadataInterceptor
from pubsub_client.adapters.grpc_transport import GrpcTransport
from pubsub_client.adapters.memory import InMemoryTransport
from pubsub_client.errors import TransportError
from pubsub_client.event_models import ReplayPreset, SubscriptionRequest
from conftest import ORDER_SCHEMA, ORDER_TOPIC, make_order

TOPIC = "/event/Test__e"


async def collect(stream):
    return [batch async for batch in stream]


class TestInMemoryTransport:
    """Replay semantics of the in-memory bus"""

    @pytest.mark.asyncio
    async def test_publish_assigns_sequential_tokens(self):
        bus = InMemoryTransport()

        first = await bus.publish(TOPIC, b"{}", attributes={"k": "v"})
        second = await bus.publish(TOPIC, b"{}")

        assert first.replay_token == (0).to_bytes(8, "big")
        assert second.replay_token == (1).to_bytes(8, "big")
        assert first.attributes == {"k": "v"}
        assert first.event_id != second.event_id

    @pytest.mark.asyncio
    async def test_earliest_replays_history_in_batches(self):
        bus = InMemoryTransport(batch_size=2, close_when_drained=True)
        for i in range(5):
            await bus.publish(TOPIC, str(i).encode())

        batches = await collect(bus.open_stream(SubscriptionRequest(topic=TOPIC, replay_preset="EARLIEST")))

        assert [len(batch.events) for batch in batches] == [2, 2, 1]
        assert [e.raw_payload for batch in batches for e in batch.events] == [b"0", b"1", b"2", b"3", b"4"]
        assert batches[0].latest_replay_token == batches[0].events[-1].replay_token
        assert batches[0].pending_count is None

    @pytest.mark.asyncio
    async def test_requested_count_limits_delivery(self):
        """Test a finite request ends the stream once its credits are spent."""
        bus = InMemoryTransport(batch_size=2)
        for i in range(5):
            await bus.publish(TOPIC, str(i).encode())

        batches = await collect(
            bus.open_stream(SubscriptionRequest(topic=TOPIC, replay_preset="EARLIEST", requested_count=3))
        )

        assert sum(len(batch.events) for batch in batches) == 3
        assert [batch.pending_count for batch in batches] == [1, 0]

    @pytest.mark.asyncio
    async def test_custom_starts_after_token(self):
        bus = InMemoryTransport(close_when_drained=True)
        published = [await bus.publish(TOPIC, str(i).encode()) for i in range(3)]

        batches = await collect(bus.open_stream(SubscriptionRequest(
            topic=TOPIC, replay_preset=ReplayPreset.CUSTOM, replay_token=published[1].replay_token.hex()
        )))

        assert [e.raw_payload for e in batches[0].events] == [b"2"]

    @pytest.mark.asyncio
    async def test_invalid_custom_token(self):
        bus = InMemoryTransport(close_when_drained=True)
        request = SubscriptionRequest(topic=TOPIC, replay_preset="CUSTOM", replay_token=b"\x01")

        with pytest.raises(TransportError) as exc_info:
            await collect(bus.open_stream(request))

        assert exc_info.value.code == "INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_close_ends_waiting_stream(self):
        """Test closing the transport ends unbounded streams."""
        bus = InMemoryTransport()
        task = asyncio.create_task(collect(bus.open_stream(SubscriptionRequest(topic=TOPIC))))
        while not bus.requests:
            await asyncio.sleep(0.01)

        await bus.publish(TOPIC, b"live")
        await asyncio.sleep(0.01)
        await bus.close()
        batches = await asyncio.wait_for(task, timeout=2)

        assert [e.raw_payload for batch in batches for e in batch.events] == [b"live"]

    @pytest.mark.asyncio
    async def test_injected_failure_is_one_shot(self):
        bus = InMemoryTransport(close_when_drained=True)
        await bus.publish(TOPIC, b"0")
        bus.fail_stream(TOPIC, TransportError("down", code="UNAVAILABLE"))
        request = SubscriptionRequest(topic=TOPIC, replay_preset="EARLIEST")

        with pytest.raises(TransportError):
            await collect(bus.open_stream(request))
        batches = await collect(bus.open_stream(request))

        assert len(batches[0].events) == 1

    @pytest.mark.asyncio
    async def test_schema_registry(self):
        bus = InMemoryTransport()
        schema_id = bus.register_schema(ORDER_TOPIC, ORDER_SCHEMA)
        envelope = await bus.publish_record(ORDER_TOPIC, make_order())

        assert await bus.get_topic_schema_id(ORDER_TOPIC) == schema_id
        assert '"OrderCreated"' in await bus.get_schema_definition(schema_id)
        assert envelope.schema_id == schema_id

    @pytest.mark.asyncio
    async def test_schema_lookup_errors(self):
        bus = InMemoryTransport()

        with pytest.raises(TransportError) as exc_info:
            await bus.get_topic_schema_id("/event/Missing__e")
        assert exc_info.value.code == "NOT_FOUND"

        with pytest.raises(TransportError):
            await bus.get_schema_definition("nope")

        with pytest.raises(ValueError):
            await bus.publish_record("/event/Missing__e", {"a": 1})


class FakeMessage:
    """Stand-in for a generated protobuf message."""

    def __init__(self, **fields):
        self.__dict__.update(fields)

    def SerializeToString(self):
        return b""

    @classmethod
    def FromString(cls, data):
        return cls()


def fake_messages():
    names = ["FetchRequest", "FetchResponse", "TopicRequest", "TopicInfo", "SchemaRequest", "SchemaInfo"]
    return SimpleNamespace(**{name: type(name, (FakeMessage,), {}) for name in names})


class FakeStreamCall:
    """Async-iterable stand-in for a unary-stream call."""

    def __init__(self, responses, error=None):
        self._responses = list(responses)
        self._error = error
        self.cancelled = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for response in self._responses:
            yield response
        if self._error is not None:
            raise self._error

    def cancel(self):
        self.cancelled = True
        return True


def fetch_response(*events, latest=b"\x09", pending=0):
    return SimpleNamespace(
        events=[
            SimpleNamespace(
                replay_id=replay_id,
                event=SimpleNamespace(
                    id=event_id,
                    schema_id="schema-1",
                    payload=payload,
                    headers=[SimpleNamespace(key="origin", value=b"web")],
                ),
            )
            for replay_id, event_id, payload in events
        ],
        latest_replay_id=latest,
        pending_num_requested=pending,
    )


def rpc_error(code, details):
    return grpc.aio.AioRpcError(code, grpc.aio.Metadata(), grpc.aio.Metadata(), details=details)


class TestGrpcTransport:
    """gRPC transport against a mocked channel"""

    @pytest.mark.asyncio
    async def test_subscribe_builds_fetch_request(self):
        """Test the request fields and the stream translation."""
        call = FakeStreamCall([fetch_response((b"\x01", "e-1", b'{"a": 1}'), (b"\x02", "e-2", b"{}"), pending=8)])
        channel = MagicMock()
        channel.unary_stream.return_value = MagicMock(return_value=call)
        messages = fake_messages()
        transport = GrpcTransport("bus.example.com:443", messages, channel=channel)
        request = SubscriptionRequest(
            topic=TOPIC, replay_preset="CUSTOM", replay_token=b"\x00\x05", requested_count=10
        )

        batches = await collect(transport.open_stream(request))

        assert channel.unary_stream.call_args[0][0] == "/eventbus.v1.PubSub/Subscribe"
        fetch_request = channel.unary_stream.return_value.call_args[0][0]
        assert isinstance(fetch_request, messages.FetchRequest)
        assert fetch_request.topic_name == TOPIC
        assert fetch_request.replay_preset == "CUSTOM"
        assert fetch_request.replay_id == b"\x00\x05"
        assert fetch_request.num_requested == 10

        batch = batches[0]
        assert [e.replay_token for e in batch.events] == [b"\x01", b"\x02"]
        assert batch.events[0].raw_payload == b'{"a": 1}'
        assert batch.events[0].attributes == {"origin": "web"}
        assert batch.events[0].schema_id == "schema-1"
        assert batch.events[0].event_id == "e-1"
        assert batch.latest_replay_token == b"\x09"
        assert batch.pending_count == 8
        assert call.cancelled is True

    @pytest.mark.asyncio
    async def test_empty_token_for_latest(self):
        channel = MagicMock()
        channel.unary_stream.return_value = MagicMock(return_value=FakeStreamCall([]))
        transport = GrpcTransport("bus.example.com:443", fake_messages(), channel=channel)

        assert await collect(transport.open_stream(SubscriptionRequest(topic=TOPIC))) == []

        fetch_request = channel.unary_stream.return_value.call_args[0][0]
        assert fetch_request.replay_preset == "LATEST"
        assert fetch_request.replay_id == b""
        assert fetch_request.num_requested == 0

    @pytest.mark.asyncio
    async def test_stream_error_mapped(self):
        """Test RPC failures surface as TransportError with the status name."""
        call = FakeStreamCall(
            [fetch_response((b"\x01", "e-1", b"{}"))],
            error=rpc_error(grpc.StatusCode.UNAVAILABLE, "connection reset"),
        )
        channel = MagicMock()
        channel.unary_stream.return_value = MagicMock(return_value=call)
        transport = GrpcTransport("bus.example.com:443", fake_messages(), channel=channel)
        received = []

        with pytest.raises(TransportError, match="connection reset") as exc_info:
            async for batch in transport.open_stream(SubscriptionRequest(topic=TOPIC)):
                received.append(batch)

        assert exc_info.value.code == "UNAVAILABLE"
        assert len(received) == 1
        assert call.cancelled is True

    @pytest.mark.asyncio
    async def test_cancelled_status_flagged(self):
        call = FakeStreamCall([], error=rpc_error(grpc.StatusCode.CANCELLED, "Locally cancelled"))
        channel = MagicMock()
        channel.unary_stream.return_value = MagicMock(return_value=call)
        transport = GrpcTransport("bus.example.com:443", fake_messages(), channel=channel)

        with pytest.raises(TransportError) as exc_info:
            await collect(transport.open_stream(SubscriptionRequest(topic=TOPIC)))

        assert exc_info.value.cancelled is True

    @pytest.mark.asyncio
    async def test_topic_and_schema_lookup(self):
        channel = MagicMock()
        channel.unary_unary.side_effect = [
            AsyncMock(return_value=SimpleNamespace(schema_id="schema-1")),
            AsyncMock(return_value=SimpleNamespace(schema_json='{"type": "record"}')),
        ]
        messages = fake_messages()
        transport = GrpcTransport("bus.example.com:443", messages, service="custom.Bus", channel=channel)

        assert await transport.get_topic_schema_id(TOPIC) == "schema-1"
        assert await transport.get_schema_definition("schema-1") == '{"type": "record"}'

        methods = [c[0][0] for c in channel.unary_unary.call_args_list]
        assert methods == ["/custom.Bus/GetTopic", "/custom.Bus/GetSchema"]

    @pytest.mark.asyncio
    async def test_lookup_error_mapped(self):
        channel = MagicMock()
        channel.unary_unary.return_value = AsyncMock(
            side_effect=rpc_error(grpc.StatusCode.NOT_FOUND, "no such topic")
        )
        transport = GrpcTransport("bus.example.com:443", fake_messages(), channel=channel)

        with pytest.raises(TransportError) as exc_info:
            await transport.get_topic_schema_id(TOPIC)

        assert exc_info.value.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_channel_created_lazily_and_closed(self):
        """Test the secure channel uses the configured receive limit."""
        interceptor = AuthMetadataInterceptor({"accesstoken": "t"})
        with patch("grpc.ssl_channel_credentials") as mock_credentials, \
                patch("grpc.aio.secure_channel") as mock_secure_channel:
            channel = MagicMock()
            channel.close = AsyncMock()
            mock_secure_channel.return_value = channel
            transport = GrpcTransport(
                "bus.example.com:443", fake_messages(), interceptors=[interceptor], max_receive_message_mb=4
            )

            assert transport._get_channel() is channel
            assert transport._get_channel() is channel
            await transport.close()

        mock_secure_channel.assert_called_once_with(
            "bus.example.com:443",
            mock_credentials.return_value,
            options=[("grpc.max_receive_message_length", 4 * 1024 * 1024)],
            interceptors=[interceptor],
        )
        channel.close.assert_awaited_once()


class TestAuthMetadataInterceptor:
    """Header injection"""

    def details(self, metadata=None):
        return grpc.aio.ClientCallDetails(
            method="/eventbus.v1.PubSub/Subscribe",
            timeout=None,
            metadata=metadata,
            credentials=None,
            wait_for_ready=None,
        )

    @pytest.mark.asyncio
    async def test_headers_added_to_stream_calls(self):
        interceptor = AuthMetadataInterceptor(
            {"AccessToken": "tok", "instanceurl": "https://x.my.salesforce.com", "tenantid": "00D"}
        )
        continuation = AsyncMock(return_value="call")

        result = await interceptor.intercept_unary_stream(continuation, self.details(), "request")

        assert result == "call"
        new_details, request = continuation.call_args[0]
        assert request == "request"
        assert new_details.method == "/eventbus.v1.PubSub/Subscribe"
        assert sorted(new_details.metadata) == [
            ("accesstoken", "tok"),
            ("instanceurl", "https://x.my.salesforce.com"),
            ("tenantid", "00D"),
        ]

    @pytest.mark.asyncio
    async def test_existing_metadata_kept_and_overridden(self):
        interceptor = AuthMetadataInterceptor({"accesstoken": "fresh"})
        continuation = AsyncMock(return_value="response")
        metadata = grpc.aio.Metadata(("x-trace", "1"), ("accesstoken", "stale"))

        await interceptor.intercept_unary_unary(continuation, self.details(metadata), "request")

        new_details = continuation.call_args[0][0]
        assert sorted(new_details.metadata) == [("accesstoken", "fresh"), ("x-trace", "1")]
