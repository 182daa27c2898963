"""
Broadcast channel for one relay endpoint.

BroadcastChannel multiplexes the output of at most one ProcessSupervisor to
any number of subscribers. The pipeline is spawned by the first subscriber
and disposed once the channel has had no subscribers for a grace window.

State machine:
    IDLE     --(subscribe, 0 -> 1)---------------> ACTIVE
    ACTIVE   --(unsubscribe, 1 -> 0)-------------> DRAINING  (teardown timer armed)
    DRAINING --(subscribe, 0 -> 1)---------------> ACTIVE    (timer cancelled)
    DRAINING --(timer fires, still 0)------------> IDLE      (pipeline disposed)
    ACTIVE   --(pipeline exits, n > 0)-----------> ACTIVE    (no pipeline until next subscribe)
    any      --(pipeline exits, 0 subscribers)---> IDLE
"""

import enum
import itertools
import logging
import threading
from typing import Any, Callable, Dict, Optional

from relay.core.endpoint import EndpointKey

logger = logging.getLogger(__name__)

# Grace window between the last subscriber leaving and pipeline disposal
DEFAULT_GRACE_SEC = 5.0


class ChannelState(enum.Enum):
    """Channel lifecycle state."""
    IDLE = 1
    ACTIVE = 2
    DRAINING = 3


class Subscription:
    """
    Handle for one subscriber's interest in a channel.

    Returned by BroadcastChannel.subscribe(); unsubscribe() is idempotent.
    """

    def __init__(
        self,
        channel: "BroadcastChannel",
        subscription_id: int,
        on_chunk: Callable[[bytes], None],
        on_end: Optional[Callable[[], None]],
        label: Optional[str],
    ) -> None:
        self._channel = channel
        self.id = subscription_id
        self.on_chunk = on_chunk
        self.on_end = on_end
        self.label = label or f"sub-{subscription_id}"
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def channel(self) -> "BroadcastChannel":
        return self._channel

    def unsubscribe(self) -> None:
        """Remove this subscription from its channel. Repeated calls do nothing."""
        self._channel._unsubscribe(self)

    def __repr__(self) -> str:
        return f"Subscription({self._channel.key}, {self.label}, active={self._active})"


class BroadcastChannel:
    """
    Reference-counted, lazily started, debounced-teardown pipeline owner.

    All events (subscribe, unsubscribe, chunk arrival, timer fire, pipeline
    exit) are serialized on one re-entrant lock, so a subscriber callback may
    unsubscribe from inside delivery. Spawning happens under the lock and only
    blocks this channel; disposal happens outside it, and a subscribe that
    needs a new pipeline waits until the old one has been released.

    Args:
        key: Endpoint this channel relays
        supervisor_factory: Called as factory(key, on_chunk, on_exit); must
            return an object with start() and dispose()
        grace_sec: Delay between the last unsubscribe and disposal
        timer_factory: Called as timer_factory(interval, function); must return
            an object with start() and cancel() (threading.Timer compatible)
    """

    def __init__(
        self,
        key: EndpointKey,
        supervisor_factory: Callable[..., Any],
        grace_sec: float = DEFAULT_GRACE_SEC,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.key = key
        self._supervisor_factory = supervisor_factory
        self._grace_sec = grace_sec
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        # Signalled whenever a detached supervisor finishes disposing
        self._released = threading.Condition(self._lock)
        self._pending_disposals = 0
        self._subscribers: Dict[int, Subscription] = {}
        self._supervisor: Optional[Any] = None
        self._teardown_timer: Optional[Any] = None
        self._state = ChannelState.IDLE
        self._ids = itertools.count(1)

        # Statistics
        self._spawn_count = 0
        self._dispose_count = 0
        self._delivery_failures = 0

    @property
    def state(self) -> ChannelState:
        with self._lock:
            return self._state

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def has_supervisor(self) -> bool:
        with self._lock:
            return self._supervisor is not None

    @property
    def spawn_count(self) -> int:
        return self._spawn_count

    @property
    def dispose_count(self) -> int:
        return self._dispose_count

    @property
    def grace_sec(self) -> float:
        return self._grace_sec

    def subscribe(
        self,
        on_chunk: Callable[[bytes], None],
        on_end: Optional[Callable[[], None]] = None,
        label: Optional[str] = None,
    ) -> Subscription:
        """
        Register a subscriber, starting the pipeline if none is running.

        Args:
            on_chunk: Called with every output chunk, in order
            on_end: Optional, called once if the pipeline ends or fails to spawn
            label: Optional identifier used in log lines (e.g. a request id)

        Returns:
            Subscription handle; call unsubscribe() exactly when done
        """
        with self._lock:
            subscription = Subscription(self, next(self._ids), on_chunk, on_end, label)
            self._subscribers[subscription.id] = subscription
            self._cancel_teardown_locked()
            self._state = ChannelState.ACTIVE
            count = len(self._subscribers)
            logger.debug(f"[{self.key}] subscribed {subscription.label} ({count} subscribers)")

            if self._supervisor is None and self._pending_disposals:
                logger.debug(f"[{self.key}] waiting for previous pipeline to be released")
                while self._pending_disposals:
                    self._released.wait()

            # Another subscriber may have spawned while this one waited
            if self._supervisor is None and subscription._active:
                self._spawn_locked()

        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if not subscription._active:
                return
            subscription._active = False
            self._subscribers.pop(subscription.id, None)
            count = len(self._subscribers)
            logger.debug(f"[{self.key}] unsubscribed {subscription.label} ({count} subscribers)")

            if count > 0:
                return
            if self._supervisor is None:
                self._state = ChannelState.IDLE
                return

            self._state = ChannelState.DRAINING
            self._arm_teardown_locked()

    def _spawn_locked(self) -> None:
        supervisor = None

        def on_chunk(chunk: bytes) -> None:
            self._deliver(supervisor, chunk)

        def on_exit(reason: str) -> None:
            self._handle_exit(supervisor, reason)

        supervisor = self._supervisor_factory(self.key, on_chunk, on_exit)
        self._supervisor = supervisor
        self._spawn_count += 1
        logger.info(f"[{self.key}] spawning pipeline (spawn #{self._spawn_count})", extra={"endpoint": str(self.key)})
        # A synchronous spawn failure re-enters _handle_exit on this thread
        supervisor.start()

    def _arm_teardown_locked(self) -> None:
        timer = None

        def fire() -> None:
            self._on_teardown_timer(timer)

        timer = self._timer_factory(self._grace_sec, fire)
        timer.daemon = True
        self._teardown_timer = timer
        timer.start()
        logger.debug(f"[{self.key}] no subscribers, disposing in {self._grace_sec:.1f}s unless one returns")

    def _cancel_teardown_locked(self) -> None:
        if self._teardown_timer is not None:
            self._teardown_timer.cancel()
            self._teardown_timer = None
            logger.debug(f"[{self.key}] teardown cancelled, reusing running pipeline")

    def _on_teardown_timer(self, timer: Any) -> None:
        with self._lock:
            if timer is not self._teardown_timer or self._state != ChannelState.DRAINING:
                # Cancelled after it had already started running
                logger.debug(f"[{self.key}] ignoring stale teardown timer")
                return
            self._teardown_timer = None
            if self._subscribers:
                self._state = ChannelState.ACTIVE
                return
            supervisor = self._detach_locked()
            self._state = ChannelState.IDLE

        logger.info(f"[{self.key}] grace window elapsed, disposing pipeline", extra={"endpoint": str(self.key)})
        self._release(supervisor)

    def _detach_locked(self) -> Optional[Any]:
        """Take the current supervisor out of the channel, reserving its disposal."""
        supervisor = self._supervisor
        self._supervisor = None
        if supervisor is not None:
            self._pending_disposals += 1
            self._dispose_count += 1
        return supervisor

    def _release(self, supervisor: Optional[Any]) -> None:
        """Dispose a detached supervisor outside the lock, then wake waiting subscribers."""
        if supervisor is None:
            return
        try:
            supervisor.dispose()
        except Exception as e:
            logger.error(f"[{self.key}] pipeline disposal failed: {e}", extra={"endpoint": str(self.key)})
        finally:
            with self._lock:
                self._pending_disposals -= 1
                self._released.notify_all()

    def _deliver(self, supervisor: Any, chunk: bytes) -> None:
        with self._lock:
            if supervisor is not self._supervisor:
                # Detached pipeline still flushing
                return
            for subscription in list(self._subscribers.values()):
                if not subscription._active:
                    continue
                try:
                    subscription.on_chunk(chunk)
                except Exception as e:
                    self._delivery_failures += 1
                    logger.warning(
                        f"[{self.key}] delivery to {subscription.label} failed: {e}",
                        extra={"endpoint": str(self.key), "request_id": subscription.label},
                    )

    def _handle_exit(self, supervisor: Any, reason: str) -> None:
        with self._lock:
            if supervisor is None or supervisor is not self._supervisor:
                return
            self._cancel_teardown_locked()
            if not self._subscribers:
                self._state = ChannelState.IDLE
            subscribers = list(self._subscribers.values())

            logger.warning(
                f"[{self.key}] pipeline ended ({reason}), {len(subscribers)} subscribers left without audio",
                extra={"endpoint": str(self.key)},
            )
            self._supervisor = None
            self._notify_end(subscribers)
            # Reserved after on_end so a callback that resubscribes cannot wait on this thread
            self._pending_disposals += 1
            self._dispose_count += 1

        # An exited pipeline still holds its pipes and stderr thread
        self._release(supervisor)

    def _notify_end(self, subscribers) -> None:
        for subscription in subscribers:
            if subscription.on_end is None or not subscription._active:
                continue
            try:
                subscription.on_end()
            except Exception as e:
                logger.warning(
                    f"[{self.key}] end notification to {subscription.label} failed: {e}",
                    extra={"endpoint": str(self.key), "request_id": subscription.label},
                )

    def shutdown(self) -> None:
        """
        Dispose the running pipeline immediately, regardless of subscribers.

        Subscribers are told the stream ended but remain registered until
        they unsubscribe.
        """
        with self._lock:
            self._cancel_teardown_locked()
            supervisor = self._detach_locked()
            subscribers = list(self._subscribers.values())
            self._state = ChannelState.ACTIVE if subscribers else ChannelState.IDLE

        if supervisor is not None:
            logger.info(f"[{self.key}] shutting down pipeline", extra={"endpoint": str(self.key)})
        self._release(supervisor)
        self._notify_end(subscribers)

    def stats(self) -> dict:
        with self._lock:
            return {
                "endpoint": str(self.key),
                "state": self._state.name,
                "subscribers": len(self._subscribers),
                "pipeline_running": self._supervisor is not None,
                "spawns": self._spawn_count,
                "disposals": self._dispose_count,
                "delivery_failures": self._delivery_failures,
            }
