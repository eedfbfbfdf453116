"""Reconnection and credit renewal around single-stream subscriptions."""
import asyncio
import random
from dataclasses import dataclass
import structlog
from .dispatcher import EventHandler
from .subscriber import Subscriber
from ..checkpoints.base import CheckpointStore
from ..errors import CheckpointError, TransportError
from ..event_models import (
    ReplayPreset,
    ReplayToken,
    SubscriptionRequest,
    SubscriptionResult,
    SubscriptionStatus,
    format_replay_token,
)

log = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter and a bounded number of attempts.

    ``max_attempts`` of 0 disables retries, -1 retries forever.
    """
    max_attempts: int = 0
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5

    def allows(self, attempt: int) -> bool:
        """Whether retry number ``attempt`` (1-based) may run."""
        return self.max_attempts < 0 or attempt <= self.max_attempts

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based), in seconds."""
        backoff = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return backoff + random.uniform(0, self.jitter)


class SubscriptionRunner:
    """
    Keep a subscription going across stream boundaries.

    A ``Subscriber`` run opens one stream and stops when it ends. The runner
    adds the two policies that a single stream leaves open:

    - reconnect after a transport failure, with backoff, resuming after the
      last processed event;
    - renew credits when a finite request has been fully delivered, by
      requesting the same number of events again from where it stopped.

    Both are off by default, which keeps the single fetch-and-drain behaviour.
    """

    def __init__(
        self,
        subscriber: Subscriber,
        retry_policy: RetryPolicy | None = None,
        renew_credits: bool = False,
        checkpoint_store: CheckpointStore | None = None,
    ):
        """
        Initialize runner.

        Args:
            subscriber: Subscriber that runs each stream
            retry_policy: Reconnection policy (no retries when None)
            renew_credits: Re-request ``requested_count`` events after each completed stream
            checkpoint_store: Source of the resume position; falls back to the
                last token seen by the previous stream
        """
        self._subscriber = subscriber
        self._retry_policy = retry_policy or RetryPolicy()
        self._renew_credits = renew_credits
        self._checkpoints = checkpoint_store

    async def run(
        self,
        request: SubscriptionRequest,
        handler: EventHandler | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SubscriptionResult:
        """
        Run ``request`` until it completes, is cancelled or retries run out.

        Returns:
            Result aggregated over every stream opened

        Raises:
            TransportError: When the failure is not retried
        """
        cancel_event = cancel_event or asyncio.Event()
        total = SubscriptionResult(status=SubscriptionStatus.COMPLETED, topic=request.topic)
        current = request
        attempt = 0

        while True:
            try:
                result = await self._subscriber.run(current, handler, cancel_event)
            except TransportError as e:
                if e.result is not None:
                    _accumulate(total, e.result)
                    if e.result.events_received > 0:
                        attempt = 0
                attempt += 1
                if not self._retry_policy.allows(attempt):
                    total.status = SubscriptionStatus.FAILED
                    total.error = str(e)
                    e.result = total
                    log.error("runner.retries_exhausted", attempts=attempt, error=str(e))
                    raise

                delay = self._retry_policy.delay(attempt)
                log.warning("runner.reconnecting", attempt=attempt, delay=round(delay, 2), error=str(e))
                if await _wait_cancelled(cancel_event, delay):
                    total.status = SubscriptionStatus.CANCELLED
                    return total
                current = await self._resume_request(request, total.last_replay_token)
                continue

            _accumulate(total, result)
            if result.events_received > 0:
                attempt = 0

            if self._should_renew(request, result):
                current = await self._resume_request(request, total.last_replay_token)
                log.info(
                    "runner.credits_renewed",
                    requested_count=request.requested_count,
                    replay_token=format_replay_token(current.replay_token),
                )
                continue

            total.status = result.status
            return total

    def _should_renew(self, request: SubscriptionRequest, result: SubscriptionResult) -> bool:
        return (
            self._renew_credits
            and request.requested_count > 0
            and result.status == SubscriptionStatus.COMPLETED
            and result.events_received > 0
        )

    async def _resume_request(self, request: SubscriptionRequest, last_token: ReplayToken | None) -> SubscriptionRequest:
        """Request continuing after the last processed event, if one is known."""
        token = None
        if self._checkpoints is not None:
            try:
                token = await self._checkpoints.load()
            except CheckpointError as e:
                log.warning(
                    "checkpoint.load_failed",
                    error=str(e),
                    fallback=format_replay_token(last_token),
                )
        token = token or last_token
        if not token:
            return request
        return request.model_copy(update={"replay_preset": ReplayPreset.CUSTOM, "replay_token": token})


def _accumulate(total: SubscriptionResult, result: SubscriptionResult):
    total.batches_received += result.batches_received
    total.events_received += result.events_received
    total.events_failed += result.events_failed
    if result.last_replay_token is not None:
        total.last_replay_token = result.last_replay_token


async def _wait_cancelled(cancel_event: asyncio.Event, timeout: float) -> bool:
    """Sleep for ``timeout`` seconds; True if cancelled meanwhile."""
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False
