"""Subscription stream lifecycle."""
import asyncio
from typing import AsyncIterator
from uuid import uuid4
import structlog
from pydantic import ValidationError
from .dispatcher import EventDispatcher, EventHandler
from ..adapters.base import StreamTransport
from ..checkpoints.base import CheckpointStore
from ..errors import CheckpointError, ConfigurationError, TransportError
from ..event_models import (
    EventBatch,
    ReplayPreset,
    ReplayToken,
    SubscriptionRequest,
    SubscriptionResult,
    SubscriptionStatus,
    format_replay_token,
)
from ..metrics import SubscriberMetrics

log = structlog.get_logger()


class Subscriber:
    """
    Drive one subscription end to end.

    Each run opens exactly one stream and consumes it sequentially: a batch
    is fully dispatched, event by event and in order, before the next one is
    read. The run ends when the peer closes the stream (completed), when the
    cancel event fires (cancelled) or when the transport fails. Transport
    failures are raised to the caller; there is no retry here (see
    ``SubscriptionRunner``).
    """

    def __init__(
        self,
        transport: StreamTransport,
        dispatcher: EventDispatcher | None = None,
        checkpoint_store: CheckpointStore | None = None,
        metrics: SubscriberMetrics | None = None,
    ):
        """
        Initialize subscriber.

        Args:
            transport: Stream transport, owned by this subscriber
            dispatcher: Event dispatcher (defaults to schema-less dispatch)
            checkpoint_store: Optional store receiving each processed replay token
            metrics: Optional metrics sink
        """
        self._transport = transport
        self._dispatcher = dispatcher or EventDispatcher(metrics=metrics)
        self._checkpoints = checkpoint_store
        self._metrics = metrics
        self._handler: EventHandler | None = None

    def register_handler(self, handler: EventHandler) -> EventHandler:
        """
        Register the default per-event handler.

        Usable as a decorator:

            @subscriber.register_handler
            async def on_event(fields, attributes):
                ...
        """
        self._handler = handler
        return handler

    @staticmethod
    def build_request(
        topic: str,
        replay_preset: ReplayPreset | str = ReplayPreset.LATEST,
        replay_token: ReplayToken | None = None,
        requested_count: int = 0,
    ) -> SubscriptionRequest:
        """
        Build and validate a subscription request.

        Raises:
            ConfigurationError: If the parameters are invalid (for example
                CUSTOM replay without a token)
        """
        try:
            return SubscriptionRequest(
                topic=topic,
                replay_preset=replay_preset,
                replay_token=replay_token,
                requested_count=requested_count,
            )
        except ValidationError as e:
            problems = "; ".join(error["msg"] for error in e.errors())
            raise ConfigurationError(f"Invalid subscription request: {problems}") from e

    async def subscribe(
        self,
        topic: str,
        handler: EventHandler | None = None,
        *,
        replay_preset: ReplayPreset | str = ReplayPreset.LATEST,
        replay_token: ReplayToken | None = None,
        requested_count: int = 0,
        cancel_event: asyncio.Event | None = None,
    ) -> SubscriptionResult:
        """
        Validate the parameters, then run the subscription.

        Raises:
            ConfigurationError: Before any network activity, on invalid parameters
            TransportError: If the stream fails
        """
        request = self.build_request(topic, replay_preset, replay_token, requested_count)
        return await self.run(request, handler, cancel_event)

    async def run(
        self,
        request: SubscriptionRequest,
        handler: EventHandler | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SubscriptionResult:
        """
        Open one stream for ``request`` and dispatch everything it delivers.

        Args:
            request: Validated subscription request
            handler: Per-event handler (defaults to the registered one)
            cancel_event: Set to stop the subscription at the next yield point

        Returns:
            Result with status COMPLETED or CANCELLED

        Raises:
            ConfigurationError: If no handler is available
            TransportError: On transport failure; ``error.result`` holds the
                FAILED result
        """
        handler = handler or self._handler
        if handler is None:
            raise ConfigurationError("No event handler registered")
        cancel_event = cancel_event or asyncio.Event()
        result = SubscriptionResult(status=SubscriptionStatus.COMPLETED, topic=request.topic)

        with structlog.contextvars.bound_contextvars(subscription_id=str(uuid4()), topic=request.topic):
            log.info(
                "subscription.starting",
                replay_preset=request.replay_preset.value,
                replay_token=format_replay_token(request.replay_token),
                requested_count=request.requested_count,
                transport=self._transport.name,
            )
            if cancel_event.is_set():
                result.status = SubscriptionStatus.CANCELLED
                return self._finish(result)

            await self._dispatcher.prepare(request.topic)

            stream = self._transport.open_stream(request)
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            read_task: asyncio.Future | None = None
            try:
                while not cancel_event.is_set():
                    read_task = asyncio.ensure_future(stream.__anext__())
                    await asyncio.wait({read_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
                    if not read_task.done():
                        break

                    try:
                        batch = read_task.result()
                    except StopAsyncIteration:
                        log.info("subscription.stream_closed")
                        break

                    await self._dispatch_batch(batch, handler, cancel_event, result)

                if cancel_event.is_set():
                    result.status = SubscriptionStatus.CANCELLED

            except TransportError as e:
                if not e.cancelled:
                    self._fail(result, e)
                    e.result = result
                    raise
                result.status = SubscriptionStatus.CANCELLED
            except Exception as e:
                self._fail(result, e)
                raise TransportError(f"Stream failed: {e}", result=result) from e
            finally:
                cancel_wait.cancel()
                await self._close_stream(stream, read_task)

        return self._finish(result)

    async def _dispatch_batch(
        self,
        batch: EventBatch,
        handler: EventHandler,
        cancel_event: asyncio.Event,
        result: SubscriptionResult,
    ):
        result.batches_received += 1
        result.events_received += len(batch.events)
        if self._metrics:
            self._metrics.record_batch(result.topic, len(batch.events))
        log.info("subscription.batch_received", size=len(batch.events), pending=batch.pending_count)

        for envelope in batch.events:
            if cancel_event.is_set():
                return
            if not await self._dispatcher.dispatch(envelope, handler):
                result.events_failed += 1
            result.last_replay_token = envelope.replay_token
            await self._save_checkpoint(envelope.replay_token)

    async def _save_checkpoint(self, token: ReplayToken):
        if self._checkpoints is None:
            return
        try:
            await self._checkpoints.save(token)
        except CheckpointError as e:
            log.warning("checkpoint.save_failed", replay_token=format_replay_token(token), error=str(e))

    @staticmethod
    async def _close_stream(stream: AsyncIterator[EventBatch], read_task: asyncio.Future | None):
        if read_task is not None and not read_task.done():
            read_task.cancel()
            await asyncio.gather(read_task, return_exceptions=True)
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    def _fail(self, result: SubscriptionResult, error: Exception):
        result.status = SubscriptionStatus.FAILED
        result.error = str(error)
        log.error(
            "subscription.failed",
            error=str(error),
            error_type=type(error).__name__,
            last_replay_token=format_replay_token(result.last_replay_token),
        )
        self._finish(result)

    def _finish(self, result: SubscriptionResult) -> SubscriptionResult:
        if self._metrics:
            self._metrics.record_finished(result.topic, result.status.value)
        log.info(
            "subscription.finished",
            status=result.status.value,
            batches=result.batches_received,
            events=result.events_received,
            failed=result.events_failed,
        )
        return result
