"""Retry submission engine.

Hands queue entries to the platform one at a time, in insertion order, and
absorbs rate limits with a growing backoff. The engine is generic over a
`deliver` coroutine so the server (DJ device) and the listener client (its
own device) drive the same state machine:

    queued -> submitting -> delivered
                         -> rate_limited -> queued (after backoff)
                         -> failed

Rate-limited submissions are never dropped; only success, a non-retryable
error or an explicit `cancel` removes one from the pending deque.
"""

from __future__ import annotations
import asyncio
from collections import deque
from datetime import datetime, timedelta
from enum import Enum
import logging
import random
from typing import Awaitable, Callable, Deque, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import QueueEntry, now
from .platform import UpstreamRateLimited

logger = logging.getLogger(__name__)


class SubmissionState(str, Enum):
    QUEUED = "queued"
    SUBMITTING = "submitting"
    DELIVERED = "delivered"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RetryPolicy(BaseModel):
    """Backoff for consecutive rate limits of the same submission.

    The n-th consecutive rate limit waits ``base_delay * growth_factor ** (n-1)``
    seconds plus up to ``jitter * delay`` of random spread, capped at
    `max_delay`. A platform-provided Retry-After is honored as a floor, even
    above the cap.
    """

    base_delay: float = 1.0
    growth_factor: float = 1.5
    max_delay: Optional[float] = 30.0
    jitter: float = 0.1

    def delay_for(self, consecutive: int, retry_after: Optional[float] = None) -> float:
        delay = self.base_delay * (self.growth_factor ** max(0, consecutive - 1))
        if self.jitter > 0:
            delay += delay * self.jitter * random.random()
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


class PendingSubmission(BaseModel):
    submission_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    entry: QueueEntry
    state: SubmissionState = SubmissionState.QUEUED
    attempts: int = 0
    consecutive_rate_limits: int = 0
    next_attempt_at: datetime = Field(default_factory=now)
    last_delay: Optional[float] = None
    error: Optional[str] = None
    # runtime-only fields (credentials and the outcome future are never sent)
    access_token: Optional[str] = Field(default=None, exclude=True)
    device_id: Optional[str] = Field(default=None, exclude=True)
    origin: Optional[str] = Field(default=None, exclude=True)
    first_outcome: Optional[asyncio.Future] = Field(default=None, exclude=True)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, arbitrary_types_allowed=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


Deliver = Callable[[PendingSubmission], Awaitable[None]]
Hook = Callable[[PendingSubmission], None]


class SubmissionEngine:
    """Serialized FIFO delivery with backoff on rate limits.

    One worker task at most; it always works on the head of the deque, so a
    submission stuck behind rate limits holds back everything queued after it.
    """

    def __init__(
        self,
        deliver: Deliver,
        policy: Optional[RetryPolicy] = None,
        on_change: Optional[Callable[[List[PendingSubmission]], None]] = None,
        on_delivered: Optional[Hook] = None,
        on_failed: Optional[Hook] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._deliver = deliver
        self.policy = policy or RetryPolicy()
        self._on_change = on_change
        self._on_delivered = on_delivered
        self._on_failed = on_failed
        self._sleep = sleep
        self._pending: Deque[PendingSubmission] = deque()
        self._in_flight: Optional[PendingSubmission] = None
        self._worker: Optional[asyncio.Task] = None

    def pending(self) -> List[PendingSubmission]:
        return list(self._pending)

    @property
    def in_flight(self) -> Optional[PendingSubmission]:
        return self._in_flight

    @property
    def idle(self) -> bool:
        """True when a new submission would be attempted straight away.

        The worker only suspends while the head is still pending (delivering
        or backing off), so an empty deque means nothing is ahead.
        """
        return not self._pending and self._in_flight is None

    def submit(self, entry: QueueEntry, access_token: Optional[str] = None, device_id: Optional[str] = None, origin: Optional[str] = None) -> PendingSubmission:
        """Queue `entry` for delivery and make sure the worker is running.

        Must be called from inside the event loop. Await
        ``submission.first_outcome`` to learn whether the first attempt
        delivered, got deferred by a rate limit, or failed for good.
        """
        sub = PendingSubmission(
            entry=entry,
            access_token=access_token,
            device_id=device_id,
            origin=origin,
            first_outcome=asyncio.get_running_loop().create_future(),
        )
        self._pending.append(sub)
        logger.info("Queued submission %s for %s (pending=%d)", sub.submission_id, entry.uri, len(self._pending))
        self._notify()
        self._ensure_worker()
        return sub

    def cancel(self, submission_id: str) -> Optional[PendingSubmission]:
        """Drop a pending submission that is not currently being delivered."""
        for sub in self._pending:
            if sub.submission_id != submission_id:
                continue
            if sub is self._in_flight:
                logger.info("Refusing to cancel in-flight submission %s", submission_id)
                return None
            self._pending.remove(sub)
            sub.state = SubmissionState.CANCELLED
            self._resolve(sub, SubmissionState.CANCELLED)
            logger.info("Cancelled submission %s for %s", submission_id, sub.entry.uri)
            self._notify()
            return sub
        return None

    async def stop(self) -> None:
        """Stop the worker. Submissions still pending stay in the deque."""
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._in_flight = None
        for sub in self._pending:
            if sub.state == SubmissionState.SUBMITTING:
                sub.state = SubmissionState.QUEUED
            self._resolve(sub, SubmissionState.CANCELLED)

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while self._pending:
            await self._attempt(self._pending[0])

    async def _attempt(self, sub: PendingSubmission) -> None:
        self._in_flight = sub
        sub.state = SubmissionState.SUBMITTING
        sub.attempts += 1
        logger.info("Submitting %s (%s) attempt %d", sub.submission_id, sub.entry.uri, sub.attempts)
        try:
            await self._deliver(sub)
        except UpstreamRateLimited as e:
            self._in_flight = None
            sub.consecutive_rate_limits += 1
            delay = self.policy.delay_for(sub.consecutive_rate_limits, e.retry_after)
            sub.last_delay = delay
            sub.next_attempt_at = now() + timedelta(seconds=delay)
            sub.state = SubmissionState.QUEUED
            logger.warning("Rate limited on %s; retrying in %.2fs (attempt %d)", sub.submission_id, delay, sub.attempts)
            self._resolve(sub, SubmissionState.RATE_LIMITED)
            self._notify()
            # nothing else may be attempted before the deadline: order is FIFO
            await self._sleep(delay)
            return
        except Exception as e:
            self._in_flight = None
            self._discard(sub)
            sub.state = SubmissionState.FAILED
            sub.error = str(e) or e.__class__.__name__
            logger.warning("Submission %s for %s failed permanently: %s", sub.submission_id, sub.entry.uri, sub.error)
            self._resolve(sub, SubmissionState.FAILED)
            self._notify()
            self._fire(self._on_failed, sub)
            return

        self._in_flight = None
        self._discard(sub)
        sub.state = SubmissionState.DELIVERED
        logger.info("Delivered %s (%s) after %d attempt(s)", sub.submission_id, sub.entry.uri, sub.attempts)
        self._resolve(sub, SubmissionState.DELIVERED)
        self._notify()
        self._fire(self._on_delivered, sub)

    def _discard(self, sub: PendingSubmission) -> None:
        if sub in self._pending:
            self._pending.remove(sub)

    @staticmethod
    def _resolve(sub: PendingSubmission, state: SubmissionState) -> None:
        fut = sub.first_outcome
        if fut is not None and not fut.done():
            fut.set_result(state)

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.pending())
        except Exception:
            logger.exception("Pending-change hook failed")

    @staticmethod
    def _fire(hook: Optional[Hook], sub: PendingSubmission) -> None:
        if hook is None:
            return
        try:
            hook(sub)
        except Exception:
            logger.exception("Submission hook failed for %s", sub.submission_id)


__all__ = ["SubmissionState", "RetryPolicy", "PendingSubmission", "SubmissionEngine"]
