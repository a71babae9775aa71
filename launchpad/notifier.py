"""Progress change notifications.

Every committed write to a project publishes a :class:`ProgressEvent` on the
project's channel. Consumers (the SSE stream in :mod:`launchpad.app`) hold a
:class:`Subscription` and recompute progress whenever an event arrives. If
nothing arrives within the poll interval the subscription yields a synthetic
``POLL`` event, so a missed push degrades to a bounded refresh delay.

Events are published only after the database commit, which is what gives a
subscriber read-your-writes on its next ``compute``.

The channel is in-process. Running several server processes would need a
shared broker in front of :meth:`ProgressNotifier.publish`.
"""
from __future__ import annotations

import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import AsyncIterator

from launchpad.score_model import ConfigurationError, Status

log = logging.getLogger(__name__)


def poll_interval_from_env(default: float = 3.0) -> float:
    """Seconds between ``POLL`` events, from ``LAUNCHPAD_POLL_INTERVAL``."""
    raw = os.environ.get("LAUNCHPAD_POLL_INTERVAL")
    if raw is None or not raw.strip():
        return default
    try:
        seconds = float(raw)
    except ValueError:
        raise ConfigurationError(f"LAUNCHPAD_POLL_INTERVAL must be a number of seconds, got {raw!r}") from None
    if not 0 < seconds < float("inf"):
        raise ConfigurationError(f"LAUNCHPAD_POLL_INTERVAL must be positive, got {raw!r}")
    return seconds


POLL_FALLBACK_SECONDS = poll_interval_from_env()
QUEUE_SIZE = 32


class Trigger(str, Enum):
    STATUS_CONFIRMED = "status_confirmed"
    FORM_SUBMITTED = "form_submitted"
    MANUAL_REFRESH = "manual_refresh"
    POLL = "poll"
    PROJECT_DELETED = "project_deleted"


def trigger_for_status(status: Status) -> Trigger:
    """A status flip to ``confirmed`` is its own trigger; any other flip is a plain write."""
    return Trigger.STATUS_CONFIRMED if status is Status.CONFIRMED else Trigger.FORM_SUBMITTED


@dataclass(frozen=True)
class ProgressEvent:
    project_id: int
    trigger: Trigger
    version: int | None = None
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


class Subscription:
    def __init__(self, project_id: int, poll_interval: float):
        self.project_id = project_id
        self.poll_interval = poll_interval
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=QUEUE_SIZE)
        self.closed = False

    def offer(self, event: ProgressEvent) -> None:
        # Any event leads to a full recompute, so a full queue can drop extras.
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            log.debug("Dropping %s for project %s (queue full)", event.trigger.value, self.project_id)

    async def next(self) -> ProgressEvent:
        """Next pushed event, or a ``POLL`` event once the poll interval lapses."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return ProgressEvent(self.project_id, Trigger.POLL)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.next()


class ProgressNotifier:
    """Fan-out of progress events to subscribers, keyed by project id."""

    def __init__(self, poll_interval: float = POLL_FALLBACK_SECONDS):
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._subscribers: dict[int, set[Subscription]] = {}

    def publish(self, event: ProgressEvent) -> int:
        """Deliver to every subscriber of the project. Safe to call from any thread."""
        with self._lock:
            targets = list(self._subscribers.get(event.project_id, ()))
        delivered = 0
        for sub in targets:
            try:
                sub.loop.call_soon_threadsafe(sub.offer, event)
                delivered += 1
            except RuntimeError:
                log.warning("Subscriber loop for project %s is closed, dropping it", event.project_id)
                self._remove(sub)
        log.debug("Published %s for project %s to %d subscriber(s)",
                  event.trigger.value, event.project_id, delivered)
        return delivered

    @asynccontextmanager
    async def subscribe(self, project_id: int) -> AsyncIterator[Subscription]:
        sub = Subscription(project_id, self.poll_interval)
        with self._lock:
            self._subscribers.setdefault(project_id, set()).add(sub)
        try:
            yield sub
        finally:
            sub.closed = True
            self._remove(sub)

    def subscriber_count(self, project_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(project_id, ()))

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.project_id)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subscribers[sub.project_id]


notifier = ProgressNotifier()
