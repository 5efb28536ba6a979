"""
Sync scheduler: decides when the engine runs.

Triggers are reconnects, a periodic timer, manual requests, debounced
local writes and per-operation retry timers. Triggers that arrive while a
pass is running are coalesced into a single follow-up pass.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from .config import SyncConfig
from .connectivity import ConnectivityMonitor
from .engine import SyncEngine
from .errors import AlreadyInProgressError, OfflineError, SyncError
from .models import ConnectivityState, PassResult, SyncStatus
from .pull import PullService

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"


class SyncScheduler:
    """Owns every timer that can start a sync pass."""

    def __init__(
        self,
        engine: SyncEngine,
        connectivity: ConnectivityMonitor,
        config: SyncConfig,
        pull: Optional[PullService] = None,
    ):
        self.engine = engine
        self.connectivity = connectivity
        self.config = config
        self.pull = pull

        self.state = SchedulerState.IDLE
        self.passes_run = 0
        self.last_trigger: Optional[str] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._retry_handles: dict[str, asyncio.TimerHandle] = {}
        self._rerun = False
        self._remove_listener: Optional[Callable[[], None]] = None

    # === Lifecycle ===

    async def start(self) -> None:
        """Attach to the running loop and start the periodic timer."""
        if self._loop is not None:
            logger.warning("Sync scheduler already running")
            return
        self._loop = asyncio.get_running_loop()
        self._remove_listener = self.connectivity.add_listener(self._on_connectivity)
        self._periodic_task = asyncio.create_task(self._periodic_loop())
        logger.info("Sync scheduler started")

    async def stop(self) -> None:
        """Cancel timers and wait for a running pass to finish."""
        if self._remove_listener:
            self._remove_listener()
            self._remove_listener = None

        if self._periodic_task:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None

        if self._debounce_handle:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()

        self._rerun = False
        await self.wait_idle()
        self._loop = None
        logger.info("Sync scheduler stopped")

    # === Triggers ===

    def request_sync(self) -> None:
        """Manual trigger."""
        self.trigger("manual")

    def trigger(self, reason: str) -> None:
        """Ask for a pass; safe to call from any thread."""
        self._call_in_loop(self._trigger, reason)

    def notify_local_write(self) -> None:
        """Debounce a local mutation into a single trigger."""
        self._call_in_loop(self._arm_debounce)

    def schedule_retry(self, op_id: str, delay: float) -> None:
        """Trigger a pass once ``delay`` seconds have passed for this operation."""
        if self._loop is None:
            return
        self.cancel_retry(op_id)
        self._retry_handles[op_id] = self._loop.call_later(delay, self._fire_retry, op_id)

    def cancel_retry(self, op_id: str) -> None:
        """Drop the pending retry timer of a superseded operation."""
        handle = self._retry_handles.pop(op_id, None)
        if handle:
            handle.cancel()

    @property
    def pending_retries(self) -> list[str]:
        return list(self._retry_handles)

    async def wait_idle(self) -> None:
        """Wait until the current pass (and any coalesced follow-up) is done."""
        while self._task and not self._task.done():
            await asyncio.shield(self._task)

    async def sync_now(self) -> Optional[PassResult]:
        """
        Trigger a pass and wait for it.

        Returns the result of the pass, or None when no pass could run
        (scheduler not started or connectivity not verified).
        """
        if self._debounce_handle:
            # This pass picks up the writes the debounce was waiting for
            self._debounce_handle.cancel()
            self._debounce_handle = None
        self._trigger("manual")
        if self._task is None or self._task.done():
            return None
        await self.wait_idle()
        return self.engine.last_result

    # === Internals ===

    def _call_in_loop(self, fn, *args) -> None:
        if self._loop is None:
            logger.debug("Sync scheduler not started; trigger ignored")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            fn(*args)
        else:
            self._loop.call_soon_threadsafe(fn, *args)

    def _trigger(self, reason: str) -> None:
        if self._loop is None:
            return
        self.last_trigger = reason
        if not self.connectivity.is_online:
            logger.debug(f"Sync trigger '{reason}' ignored while {self.connectivity.state.value}")
            return
        if self._task and not self._task.done():
            self._rerun = True
            return
        self.state = SchedulerState.TRIGGERED
        self._task = self._loop.create_task(self._run(reason))

    def _arm_debounce(self) -> None:
        if self._loop is None:
            return
        if self._debounce_handle:
            self._debounce_handle.cancel()
        self._debounce_handle = self._loop.call_later(
            self.config.debounce_window, self._trigger, "local_write"
        )

    def _fire_retry(self, op_id: str) -> None:
        self._retry_handles.pop(op_id, None)
        self._trigger("retry")

    def _on_connectivity(self, previous: ConnectivityState, current: ConnectivityState) -> None:
        if current == ConnectivityState.ONLINE and previous != ConnectivityState.ONLINE:
            self._trigger("reconnect")

    async def _run(self, reason: str) -> None:
        try:
            while True:
                self._rerun = False
                result = await self._run_once(reason)
                needs_rerun = self._rerun or (result is not None and result.needs_rerun)
                if not needs_rerun or not self.connectivity.is_online:
                    break
                reason = "rerun"
        finally:
            self.state = SchedulerState.IDLE

    async def _run_once(self, reason: str) -> Optional[PassResult]:
        try:
            result = await self.engine.run_sync_pass()
        except (AlreadyInProgressError, OfflineError) as e:
            logger.debug(f"Sync pass skipped ({reason}): {e}")
            return None
        except Exception as e:
            logger.error(f"Sync pass ({reason}) failed: {e}")
            return None

        self.passes_run += 1
        logger.debug(f"Sync pass ({reason}) ended with {result.status.value}")

        if self.pull and self.config.pull_after_push and result.status != SyncStatus.ERROR:
            try:
                await self.pull.pull()
            except (SyncError, ValueError) as e:
                logger.warning(f"Pull after sync failed: {e}")
            except Exception as e:
                logger.error(f"Pull after sync failed unexpectedly: {e}")

        return result

    async def _periodic_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.periodic_interval)
                if self.connectivity.is_online:
                    self._trigger("periodic")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic sync loop: {e}")
