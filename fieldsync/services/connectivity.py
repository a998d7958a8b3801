"""
Connectivity Monitor: debounced network status for the sync core.

Wraps a platform network-status source and turns its raw, possibly flapping,
signal into a stream of settled state transitions. Connectivity uncertainty
never raises into callers: an unreadable source is reported as offline.

Sources:
  * PushNetworkStatusSource: the application shell publishes the OS status
  * HttpProbeNetworkStatusSource: periodic HTTP probe of a health URL
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectivityState:
    """Snapshot of the network status."""
    connected: bool
    internet_reachable: Optional[bool] = None

    @property
    def is_online(self) -> bool:
        return self.connected and self.internet_reachable is True

    @classmethod
    def offline(cls) -> "ConnectivityState":
        return cls(connected=False, internet_reachable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "internet_reachable": self.internet_reachable,
            "is_online": self.is_online,
        }


StateHandler = Callable[[ConnectivityState], Any]


class NetworkStatusSource(ABC):
    """Platform network-status signal consumed by the monitor."""

    @abstractmethod
    async def fetch(self) -> ConnectivityState:
        """Current platform status."""

    @abstractmethod
    def add_listener(self, callback: StateHandler) -> Callable[[], None]:
        """Register for raw status changes; returns a remover."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class _ListenerMixin:
    def __init__(self):
        self._listeners: List[StateHandler] = []

    def add_listener(self, callback: StateHandler) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self, state: ConnectivityState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Network status listener failed: {e}")


class PushNetworkStatusSource(_ListenerMixin, NetworkStatusSource):
    """Status reported by the application shell (e.g. the OS network API)."""

    def __init__(self, initial: Optional[ConnectivityState] = None):
        super().__init__()
        self._state = initial or ConnectivityState(connected=False, internet_reachable=None)

    async def fetch(self) -> ConnectivityState:
        return self._state

    def publish(self, state: ConnectivityState) -> None:
        self._state = state
        self._notify(state)


class HttpProbeNetworkStatusSource(_ListenerMixin, NetworkStatusSource):
    """
    Probes a health URL on an interval.

    A refused connection or DNS failure means no link; a timeout means a link
    whose internet reachability could not be confirmed.
    """

    def __init__(self, url: str, interval: float = 15.0, timeout: float = 5.0):
        super().__init__()
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self._http_session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._last: Optional[ConnectivityState] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={'Cache-Control': 'no-cache'}
            )
        return self._http_session

    async def fetch(self) -> ConnectivityState:
        session = await self._get_session()
        try:
            async with session.head(self.url, allow_redirects=True) as response:
                reachable = response.status < 500
                return ConnectivityState(connected=True, internet_reachable=reachable)
        except asyncio.TimeoutError:
            return ConnectivityState(connected=True, internet_reachable=False)
        except aiohttp.ClientError as e:
            logger.debug(f"Connectivity probe to {self.url} failed: {e}")
            return ConnectivityState.offline()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._probe_loop())

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
        self._http_session = None

    async def _probe_loop(self) -> None:
        while True:
            try:
                state = await self.fetch()
            except Exception as e:
                logger.error(f"Connectivity probe error: {e}")
                state = ConnectivityState.offline()

            if state != self._last:
                self._last = state
                self._notify(state)

            await asyncio.sleep(self.interval)


class _Subscription:
    __slots__ = ("handler", "active")

    def __init__(self, handler: StateHandler):
        self.handler = handler
        self.active = True


class ConnectivityMonitor:
    """
    Debounced view over a network-status source.

    A raw state has to persist for ``debounce_interval`` seconds before it is
    emitted; subscribers are called once per distinct emitted state.
    """

    def __init__(self, source: NetworkStatusSource, debounce_interval: float = 0.3):
        self.source = source
        self.debounce_interval = debounce_interval
        self._current = ConnectivityState(connected=False, internet_reachable=None)
        self._emitted: Optional[ConnectivityState] = None
        self._pending_state: Optional[ConnectivityState] = None
        self._pending_handle: Optional[asyncio.TimerHandle] = None
        self._subscriptions: List[_Subscription] = []
        self._source_unsubscribe: Optional[Callable[[], None]] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Attach to the source and feed its current state through the debouncer."""
        if self._started:
            return
        self._started = True

        try:
            await self.source.start()
            self._source_unsubscribe = self.source.add_listener(self._on_raw_state)
        except Exception as e:
            logger.error(f"Error setting up network status subscription: {e}")
            self._current = ConnectivityState.offline()
            return

        self._on_raw_state(await self.refresh())

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._cancel_pending()

        if self._source_unsubscribe:
            try:
                self._source_unsubscribe()
            except Exception as e:
                logger.warning(f"Error removing network status listener: {e}")
            self._source_unsubscribe = None

        try:
            await self.source.stop()
        except Exception as e:
            logger.warning(f"Error stopping network status source: {e}")

    def current(self) -> ConnectivityState:
        """Last debounced state."""
        return self._current

    async def refresh(self) -> ConnectivityState:
        """
        Query the source directly, bypassing the debouncer.

        A source that cannot be read is fed to the debouncer as offline.
        """
        try:
            state = await self.source.fetch()
        except Exception as e:
            logger.error(f"Error checking online status: {e}")
            state = ConnectivityState.offline()
            self._on_raw_state(state)
            return state

        logger.info(f"Network status check: {'online' if state.is_online else 'offline'}")
        return state

    def subscribe(self, handler: StateHandler) -> Callable[[], None]:
        """
        Register for debounced transitions.

        Returns:
            Idempotent unsubscribe function, safe to call from inside a handler
        """
        subscription = _Subscription(handler)
        self._subscriptions.append(subscription)

        def unsubscribe():
            subscription.active = False
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def _on_raw_state(self, state: ConnectivityState) -> None:
        if not self._started:
            return
        if self._pending_handle is not None and state == self._pending_state:
            return

        self._cancel_pending()

        if state == self._emitted:
            return

        self._pending_state = state
        if self.debounce_interval <= 0:
            self._emit(state)
            return

        loop = asyncio.get_running_loop()
        self._pending_handle = loop.call_later(self.debounce_interval, self._emit, state)

    def _cancel_pending(self) -> None:
        if self._pending_handle is not None:
            self._pending_handle.cancel()
        self._pending_handle = None
        self._pending_state = None

    def _emit(self, state: ConnectivityState) -> None:
        self._pending_handle = None
        self._pending_state = None
        if not self._started or state == self._emitted:
            return

        self._emitted = state
        self._current = state
        logger.info(f"Connectivity changed: {state.to_dict()}")

        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                subscription.handler(state)
            except Exception as e:
                logger.error(f"Error in network change callback: {e}")
