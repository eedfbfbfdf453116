"""
Pub/Sub subscriber - long-running subscription to a replay-capable event bus.

Usage:
    python -m pubsub_client.main [config.json]

Settings come from the environment (or .env), or from the JSON file given as
the only argument.

Features:
- Structured logging with per-subscription context
- Prometheus metrics (when METRICS_PORT is set)
- Schema-aware payload decoding with a schema-less fallback
- Optional checkpointing, reconnection and credit renewal
"""
import asyncio
import importlib
import signal
import sys
from typing import Dict

from prometheus_client import start_http_server

from .adapters.auth import AuthMetadataInterceptor
from .adapters.grpc_transport import GrpcTransport
from .adapters.memory import InMemoryTransport
from .checkpoints.base import CheckpointStore
from .checkpoints.memory import InMemoryCheckpointStore
from .checkpoints.redis_store import RedisCheckpointStore
from .config import Settings, get_settings
from .errors import CheckpointError, ConfigurationError, TransportError
from .event_models import DecodedEvent, ReplayPreset, SubscriptionRequest, format_replay_token
from .logging import get_logger, setup_logging
from .metrics import SubscriberMetrics
from .services.dispatcher import EventDispatcher
from .services.runner import RetryPolicy, SubscriptionRunner
from .services.schema_resolver import SchemaResolver
from .services.subscriber import Subscriber

VERSION = "0.1.0"

logger = get_logger()


def create_checkpoint_store(settings: Settings) -> CheckpointStore | None:
    """
    Create the checkpoint store selected by configuration.

    Returns:
        CheckpointStore instance, or None when checkpointing is off
    """
    if settings.CHECKPOINT_BACKEND == "redis":
        if not settings.REDIS_URL:
            logger.warning(
                "checkpoint.fallback",
                requested="redis",
                actual="memory",
                reason="REDIS_URL not configured"
            )
            return InMemoryCheckpointStore()

        logger.info("checkpoint.selected", type="redis", url=str(settings.REDIS_URL))
        return RedisCheckpointStore(settings.TOPIC_NAME, str(settings.REDIS_URL))
    if settings.CHECKPOINT_BACKEND == "memory":
        logger.info("checkpoint.selected", type="memory")
        return InMemoryCheckpointStore()
    return None


def create_transport(settings: Settings) -> GrpcTransport | InMemoryTransport:
    """
    Create the transport selected by configuration.

    The gRPC transport gets auth header injection. The in-memory bus starts
    empty and is meant for local runs.
    """
    if settings.TRANSPORT == "memory":
        logger.info("transport.selected", type="memory")
        return InMemoryTransport()

    try:
        messages = importlib.import_module(settings.GRPC_MESSAGES_MODULE)
    except ImportError as e:
        raise ConfigurationError(
            f"Cannot import protobuf module {settings.GRPC_MESSAGES_MODULE!r}: {e}"
        ) from e

    logger.info("transport.selected", type="grpc", endpoint=settings.PUBSUB_ENDPOINT)
    return GrpcTransport(
        settings.PUBSUB_ENDPOINT,
        messages,
        service=settings.GRPC_SERVICE,
        interceptors=[AuthMetadataInterceptor(settings.auth_headers())],
        max_receive_message_mb=settings.MAX_RECEIVE_MESSAGE_MB,
    )


async def initial_request(settings: Settings, store: CheckpointStore | None) -> SubscriptionRequest:
    """Build the first request, resuming from a stored checkpoint when enabled."""
    if settings.RESUME_FROM_CHECKPOINT and store is not None:
        token = await store.load()
        if token:
            logger.info("checkpoint.resuming", replay_token=format_replay_token(token))
            return Subscriber.build_request(
                settings.TOPIC_NAME, ReplayPreset.CUSTOM, token, settings.NUM_REQUESTED
            )

    return Subscriber.build_request(
        settings.TOPIC_NAME,
        settings.REPLAY_PRESET,
        settings.replay_token(),
        settings.NUM_REQUESTED,
    )


async def log_event(fields: DecodedEvent, attributes: Dict[str, str]) -> bool:
    """Default handler: log the attributes and decoded fields of each event."""
    logger.info("event.received", attributes=attributes, fields=fields)
    return True


async def run(settings: Settings) -> int:
    """
    Wire the subscriber from settings and run it until it stops.

    Returns:
        Process exit code
    """
    try:
        settings.validate_connection()
        transport = create_transport(settings)
        store = create_checkpoint_store(settings)
        request = await initial_request(settings, store)
    except (ConfigurationError, CheckpointError) as e:
        logger.error("service.configuration_error", error=str(e))
        return 2

    metrics = SubscriberMetrics(version=VERSION)
    if settings.METRICS_PORT:
        start_http_server(settings.METRICS_PORT, registry=metrics.registry)
        logger.info("metrics.listening", port=settings.METRICS_PORT)

    resolver = SchemaResolver(transport) if settings.USE_SCHEMA else None
    subscriber = Subscriber(
        transport,
        dispatcher=EventDispatcher(resolver=resolver, metrics=metrics),
        checkpoint_store=store,
        metrics=metrics,
    )
    runner = SubscriptionRunner(
        subscriber,
        retry_policy=RetryPolicy(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        ),
        renew_credits=settings.RENEW_CREDITS,
        checkpoint_store=store,
    )

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    logger.info("service_starting", version=VERSION, env=settings.ENV, endpoint=settings.PUBSUB_ENDPOINT)
    try:
        result = await runner.run(request, log_event, cancel_event)
    except TransportError as e:
        logger.error("service.transport_error", error=str(e), code=e.code)
        return 1
    finally:
        await transport.close()
        if store is not None:
            store.close()
        logger.info("service_stopping")

    logger.info("service.subscription_ended", **result.model_dump(mode="json", exclude={"last_replay_token"}))
    return 0


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        settings = Settings.from_file(argv[0]) if argv else get_settings()
    except ConfigurationError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(json_output=settings.LOG_JSON, level=settings.LOG_LEVEL)
    return asyncio.run(run(settings))


if __name__ == "__main__":
    sys.exit(main())
