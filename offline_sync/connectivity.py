"""
Connectivity detection.

The platform's online flag is necessary but not sufficient: the server
counts as reachable only after a bounded health probe succeeds. A failed
or timed-out probe means Offline even when the platform says online.
"""

import asyncio
import logging
from typing import Callable, Optional

from .config import SyncConfig
from .models import ConnectivityState
from .transport import Transport

logger = logging.getLogger(__name__)

TransitionListener = Callable[[ConnectivityState, ConnectivityState], None]


class ConnectivityMonitor:
    """Tracks Offline / Verifying / Online for one sync context."""

    def __init__(
        self,
        transport: Transport,
        config: SyncConfig,
        platform_online: bool = True,
    ):
        self.transport = transport
        self.config = config
        self._platform_online = platform_online
        self._state = ConnectivityState.OFFLINE
        self._listeners: list[TransitionListener] = []
        self._probe_task: Optional[asyncio.Task] = None
        self._check_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state == ConnectivityState.ONLINE

    @property
    def platform_online(self) -> bool:
        return self._platform_online

    def add_listener(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a (previous, current) transition callback."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, state: ConnectivityState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        logger.info(f"Connectivity: {previous.value} -> {state.value}")
        for listener in list(self._listeners):
            try:
                listener(previous, state)
            except Exception:
                logger.exception("Connectivity listener raised")

    async def check(self) -> ConnectivityState:
        """Run one active probe and update the state from its result."""
        if not self._platform_online:
            self._set_state(ConnectivityState.OFFLINE)
            return self._state

        # Stay Online while re-verifying so a healthy link does not flap
        if self._state == ConnectivityState.OFFLINE:
            self._set_state(ConnectivityState.VERIFYING)

        reachable = await self.transport.probe()

        if not self._platform_online:
            self._set_state(ConnectivityState.OFFLINE)
        elif reachable:
            self._set_state(ConnectivityState.ONLINE)
        else:
            self._set_state(ConnectivityState.OFFLINE)
        return self._state

    def set_platform_online(self, online: bool) -> None:
        """Feed the platform reachability signal."""
        self._platform_online = online
        if not online:
            self._set_state(ConnectivityState.OFFLINE)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; start() will verify
            return
        if self._check_task is None or self._check_task.done():
            self._check_task = loop.create_task(self.check())

    async def start(self) -> None:
        """Verify once, then keep probing at the configured cadence."""
        await self.check()
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = asyncio.create_task(self._probe_loop())

    async def stop(self) -> None:
        for task in (self._probe_task, self._check_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._probe_task = None
        self._check_task = None

    async def _probe_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.probe_interval)
                await self.check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in connectivity probe loop: {e}")
                self._set_state(ConnectivityState.OFFLINE)
